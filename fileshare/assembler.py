from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from fileshare.crypto import generate_id, generate_key, seal
from fileshare.errors import BadRequest, store_errors
from fileshare.metrics import (
    bytes_staged_total,
    chunks_staged_total,
    complete_latency_seconds,
    files_completed_total,
    upload_failures_total,
)
from fileshare.models import UploadState
from fileshare.storage import ChunkStore, FileStore
from fileshare.tracing import tracer


@dataclass(frozen=True)
class UploadResult:
    file_id: str
    key: bytes = field(repr=False)
    chunk_count: int
    size_bytes: int

    @property
    def key_hex(self) -> str:
        return self.key.hex()


class UploadAssembler:
    def __init__(self, db: Session, discard_staged: bool = True) -> None:
        self.db = db
        self.chunks = ChunkStore(db)
        self.files = FileStore(db)
        self.discard_staged = discard_staged

    def receive_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> None:
        if not upload_id:
            raise BadRequest("missing upload id")
        if chunk_index < 0:
            raise BadRequest("chunk index must not be negative")
        try:
            self.chunks.put(upload_id, chunk_index, data)
            with store_errors("committing staged chunk"):
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        chunks_staged_total.inc()
        bytes_staged_total.inc(len(data))

    def complete(self, upload_id: str, chunk_count: int, file_name: str) -> UploadResult:
        if not upload_id:
            raise BadRequest("missing upload id")
        if chunk_count < 1:
            raise BadRequest("chunk count must be at least 1")
        if not file_name:
            raise BadRequest("missing file name")

        key = generate_key()
        file_id = generate_id()
        with tracer.start_as_current_span("upload.complete") as span, complete_latency_seconds.time():
            span.set_attribute("fileshare.chunk_count", chunk_count)
            span.set_attribute("fileshare.upload_state", UploadState.completing.value)
            size_bytes = 0
            try:
                # One transaction: a failure at any index leaves no rows under file_id.
                for index in range(chunk_count):
                    data = self.chunks.get(upload_id, index)
                    size_bytes += len(data)
                    self.files.append_chunk(file_id, file_name, index, seal(data, key))
                if self.discard_staged:
                    self.chunks.discard(upload_id)
                with store_errors("committing file"):
                    self.db.commit()
            except Exception:
                self.db.rollback()
                upload_failures_total.inc()
                span.set_attribute("fileshare.upload_state", UploadState.failed.value)
                raise
            span.set_attribute("fileshare.upload_state", UploadState.done.value)

        files_completed_total.labels(mode="chunked").inc()
        return UploadResult(file_id=file_id, key=key, chunk_count=chunk_count, size_bytes=size_bytes)

    def upload_single(self, data: bytes, file_name: str) -> UploadResult:
        if not file_name:
            raise BadRequest("missing file name")

        key = generate_key()
        file_id = generate_id()
        with tracer.start_as_current_span("upload.single"):
            try:
                self.files.append_chunk(file_id, file_name, 0, seal(data, key))
                with store_errors("committing file"):
                    self.db.commit()
            except Exception:
                self.db.rollback()
                upload_failures_total.inc()
                raise

        files_completed_total.labels(mode="single").inc()
        return UploadResult(file_id=file_id, key=key, chunk_count=1, size_bytes=len(data))
