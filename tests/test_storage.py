import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, func, select

from fileshare.assembler import UploadAssembler
from fileshare.db import Base, SessionLocal, engine
from fileshare.errors import ChunkMissing, NotFound
from fileshare.models import FileChunk, StagedChunk
from fileshare.storage import ChunkStore, FileStore


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        db.execute(delete(StagedChunk))
        db.execute(delete(FileChunk))
        db.commit()


def test_chunk_store_put_and_get() -> None:
    _reset_state()
    with SessionLocal() as db:
        store = ChunkStore(db)
        store.put("upload-1", 2, b"payload")
        db.commit()

    with SessionLocal() as db:
        assert ChunkStore(db).get("upload-1", 2) == b"payload"
        with pytest.raises(ChunkMissing) as exc_info:
            ChunkStore(db).get("upload-1", 0)
        assert exc_info.value.chunk_index == 0
        assert isinstance(exc_info.value, NotFound)


def test_chunk_store_repeated_put_overwrites() -> None:
    _reset_state()
    with SessionLocal() as db:
        ChunkStore(db).put("upload-1", 0, b"first")
        db.commit()
    with SessionLocal() as db:
        ChunkStore(db).put("upload-1", 0, b"second")
        db.commit()

    with SessionLocal() as db:
        count = db.scalar(select(func.count()).select_from(StagedChunk).where(StagedChunk.upload_id == "upload-1"))
        assert count == 1
        assert ChunkStore(db).get("upload-1", 0) == b"second"


def test_chunk_store_sweep_removes_only_old_chunks() -> None:
    _reset_state()
    old = datetime.now(timezone.utc) - timedelta(days=2)
    with SessionLocal() as db:
        db.add(StagedChunk(upload_id="abandoned", chunk_index=0, chunk_data=b"old", created_at=old))
        ChunkStore(db).put("fresh", 0, b"new")
        db.commit()

    with SessionLocal() as db:
        deleted = ChunkStore(db).sweep(timedelta(hours=24))
        db.commit()
        assert deleted == 1

    with SessionLocal() as db:
        store = ChunkStore(db)
        with pytest.raises(ChunkMissing):
            store.get("abandoned", 0)
        assert store.get("fresh", 0) == b"new"


def test_file_store_reads_in_index_order() -> None:
    _reset_state()
    with SessionLocal() as db:
        store = FileStore(db)
        for index in (2, 0, 1):
            store.append_chunk("file-1", "report.pdf", index, f"c{index}".encode())
        db.commit()

    with SessionLocal() as db:
        store = FileStore(db)
        assert store.read_name("file-1") == "report.pdf"
        assert list(store.read_ordered("file-1")) == [b"c0", b"c1", b"c2"]
        # A second scan starts over.
        assert list(store.read_ordered("file-1")) == [b"c0", b"c1", b"c2"]


def test_file_store_unknown_id() -> None:
    _reset_state()
    with SessionLocal() as db:
        store = FileStore(db)
        with pytest.raises(NotFound):
            store.read_name("missing")
        assert list(store.read_ordered("missing")) == []


def test_sqlite_runs_in_wal_mode() -> None:
    if engine.dialect.name != "sqlite" or engine.url.database in (None, "", ":memory:"):
        pytest.skip("file-backed sqlite only")
    with engine.connect() as conn:
        assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"


def test_chunk_store_put_recovers_from_lost_insert_race(monkeypatch) -> None:
    _reset_state()
    with SessionLocal() as db:
        ChunkStore(db).put("race", 0, b"first")
        db.commit()

    with SessionLocal() as db:
        real_get = db.get
        lookups = []

        def stale_get(entity, ident):
            lookups.append(ident)
            # The first lookup misses, as if the other writer had not committed yet.
            return None if len(lookups) == 1 else real_get(entity, ident)

        monkeypatch.setattr(db, "get", stale_get)
        ChunkStore(db).put("race", 0, b"second")
        db.commit()
        assert len(lookups) == 2

    with SessionLocal() as db:
        count = db.scalar(select(func.count()).select_from(StagedChunk).where(StagedChunk.upload_id == "race"))
        assert count == 1
        assert ChunkStore(db).get("race", 0) == b"second"


def test_concurrent_puts_of_same_chunk_keep_one_row() -> None:
    _reset_state()
    writers = 4
    barrier = threading.Barrier(writers)
    payloads = [f"payload-{n}".encode() for n in range(writers)]

    def _receive(payload: bytes) -> None:
        with SessionLocal() as db:
            assembler = UploadAssembler(db)
            barrier.wait(timeout=5)
            assembler.receive_chunk("shared-upload", 0, payload)
            assembler.receive_chunk("shared-upload", 1, payload)

    with ThreadPoolExecutor(max_workers=writers) as pool:
        list(pool.map(_receive, payloads))

    with SessionLocal() as db:
        rows = db.scalars(select(StagedChunk).where(StagedChunk.upload_id == "shared-upload")).all()
        assert sorted(row.chunk_index for row in rows) == [0, 1]
        assert all(row.chunk_data in payloads for row in rows)


def test_long_upload_ids_are_stored_whole() -> None:
    _reset_state()
    upload_id = "u" * 1000
    with SessionLocal() as db:
        UploadAssembler(db).receive_chunk(upload_id, 0, b"data")

    with SessionLocal() as db:
        assert db.scalar(select(StagedChunk.upload_id)) == upload_id
        result = UploadAssembler(db).complete(upload_id, 1, "long.txt")
    assert len(result.file_id) == 32
