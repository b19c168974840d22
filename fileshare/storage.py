from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fileshare.errors import ChunkMissing, NotFound, store_errors
from fileshare.models import FileChunk, StagedChunk, utc_now


class ChunkStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _overwrite(self, chunk: StagedChunk, data: bytes) -> None:
        chunk.chunk_data = data
        chunk.created_at = utc_now()
        self.db.flush()

    # Callers own the transaction. An insert race rolls it back, so put must be its first write.
    def put(self, upload_id: str, chunk_index: int, data: bytes) -> None:
        with store_errors("staging chunk"):
            existing = self.db.get(StagedChunk, (upload_id, chunk_index))
            if existing:
                self._overwrite(existing, data)
                return
            try:
                self.db.add(StagedChunk(upload_id=upload_id, chunk_index=chunk_index, chunk_data=data))
                self.db.flush()
            except IntegrityError:
                # A concurrent retry of the same chunk won the insert.
                self.db.rollback()
                existing = self.db.get(StagedChunk, (upload_id, chunk_index))
                if existing is None:
                    raise
                self._overwrite(existing, data)

    def get(self, upload_id: str, chunk_index: int) -> bytes:
        with store_errors("reading staged chunk"):
            data = self.db.scalar(
                select(StagedChunk.chunk_data).where(
                    StagedChunk.upload_id == upload_id,
                    StagedChunk.chunk_index == chunk_index,
                )
            )
        if data is None:
            raise ChunkMissing(upload_id, chunk_index)
        return data

    def discard(self, upload_id: str) -> int:
        with store_errors("discarding staged chunks"):
            result = self.db.execute(delete(StagedChunk).where(StagedChunk.upload_id == upload_id))
        return result.rowcount or 0

    def sweep(self, older_than: timedelta, now: datetime | None = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - older_than
        with store_errors("sweeping staged chunks"):
            result = self.db.execute(delete(StagedChunk).where(StagedChunk.created_at < cutoff))
        return result.rowcount or 0


class FileStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def append_chunk(self, file_id: str, name: str, chunk_index: int, data: bytes) -> None:
        with store_errors("storing file chunk"):
            chunk = FileChunk(file_id=file_id, name=name, chunk_index=chunk_index, chunk_data=data)
            self.db.add(chunk)
            self.db.flush()
            # Flushed rows stay in the transaction; drop the ciphertext from the identity map.
            self.db.expunge(chunk)

    def read_name(self, file_id: str) -> str:
        with store_errors("reading file name"):
            name = self.db.scalar(select(FileChunk.name).where(FileChunk.file_id == file_id).limit(1))
        if name is None:
            raise NotFound("file not found")
        return name

    def read_ordered(self, file_id: str) -> Iterator[bytes]:
        # Each call is a fresh scan, fetched one row at a time.
        stmt = (
            select(FileChunk.chunk_data)
            .where(FileChunk.file_id == file_id)
            .order_by(FileChunk.chunk_index)
            .execution_options(yield_per=1)
        )
        with store_errors("reading file chunks"):
            result = self.db.scalars(stmt)
            try:
                for data in result:
                    yield data
            finally:
                result.close()
