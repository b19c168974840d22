import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError

from fileshare.assembler import UploadAssembler
from fileshare.crypto import NONCE_SIZE, open_sealed
from fileshare.db import Base, SessionLocal, engine
from fileshare.errors import BadRequest, ChunkMissing, StoreFailure
from fileshare.models import FileChunk, StagedChunk
from fileshare.storage import FileStore

CHUNKS = [b"alpha-", b"bravo-", b"charlie"]


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        db.execute(delete(StagedChunk))
        db.execute(delete(FileChunk))
        db.commit()


def _stage(upload_id: str, order: list[int], discard_staged: bool = True) -> None:
    with SessionLocal() as db:
        assembler = UploadAssembler(db, discard_staged=discard_staged)
        for index in order:
            assembler.receive_chunk(upload_id, index, CHUNKS[index])


def _plaintext(file_id: str, key: bytes) -> bytes:
    with SessionLocal() as db:
        return b"".join(open_sealed(blob, key) for blob in FileStore(db).read_ordered(file_id))


def _file_row_count(file_id: str | None = None) -> int:
    with SessionLocal() as db:
        stmt = select(func.count()).select_from(FileChunk)
        if file_id is not None:
            stmt = stmt.where(FileChunk.file_id == file_id)
        return db.scalar(stmt)


def test_out_of_order_chunks_match_in_order_upload() -> None:
    _reset_state()
    _stage("in-order", [0, 1, 2])
    _stage("shuffled", [2, 0, 1])

    with SessionLocal() as db:
        first = UploadAssembler(db).complete("in-order", 3, "a.txt")
        second = UploadAssembler(db).complete("shuffled", 3, "a.txt")

    assert first.file_id != second.file_id
    assert first.key != second.key
    assert first.size_bytes == second.size_bytes == sum(len(c) for c in CHUNKS)
    assert _plaintext(first.file_id, first.key) == b"".join(CHUNKS)
    assert _plaintext(second.file_id, second.key) == b"".join(CHUNKS)


def test_repeated_chunk_delivery_is_idempotent() -> None:
    _reset_state()
    _stage("retry", [0, 1, 1, 2, 0])

    with SessionLocal() as db:
        staged = db.scalar(select(func.count()).select_from(StagedChunk).where(StagedChunk.upload_id == "retry"))
        assert staged == 3
        result = UploadAssembler(db).complete("retry", 3, "retry.bin")

    assert _file_row_count(result.file_id) == 3
    assert _plaintext(result.file_id, result.key) == b"".join(CHUNKS)


def test_completion_stores_only_sealed_chunks() -> None:
    _reset_state()
    _stage("sealed", [0, 1, 2])
    with SessionLocal() as db:
        result = UploadAssembler(db).complete("sealed", 3, "sealed.bin")

    with SessionLocal() as db:
        rows = list(db.scalars(select(FileChunk).where(FileChunk.file_id == result.file_id).order_by(FileChunk.chunk_index)))
    assert [row.chunk_index for row in rows] == [0, 1, 2]
    assert all(row.name == "sealed.bin" for row in rows)
    for row, plain in zip(rows, CHUNKS):
        assert plain not in row.chunk_data
        assert len(row.chunk_data) == NONCE_SIZE + len(plain) + 16
    assert result.key_hex not in repr(result)


def test_missing_chunk_fails_and_leaves_no_file_rows() -> None:
    _reset_state()
    _stage("gap", [0, 2])

    with SessionLocal() as db:
        with pytest.raises(ChunkMissing) as exc_info:
            UploadAssembler(db).complete("gap", 3, "gap.bin")
    assert exc_info.value.chunk_index == 1
    assert _file_row_count() == 0

    # Staged chunks survive a failed completion, so the client can resend the gap.
    _stage("gap", [1])
    with SessionLocal() as db:
        result = UploadAssembler(db).complete("gap", 3, "gap.bin")
    assert _plaintext(result.file_id, result.key) == b"".join(CHUNKS)


def test_staged_chunks_discarded_after_completion() -> None:
    _reset_state()
    _stage("discard", [0, 1, 2])
    _stage("keep", [0, 1, 2])

    with SessionLocal() as db:
        UploadAssembler(db, discard_staged=True).complete("discard", 3, "d.bin")
        UploadAssembler(db, discard_staged=False).complete("keep", 3, "k.bin")
        remaining = dict(
            db.execute(select(StagedChunk.upload_id, func.count()).group_by(StagedChunk.upload_id)).all()
        )
    assert remaining == {"keep": 3}


def test_upload_single_round_trip() -> None:
    _reset_state()
    with SessionLocal() as db:
        result = UploadAssembler(db).upload_single(b"small file", "note.txt")
    assert result.chunk_count == 1
    assert _file_row_count(result.file_id) == 1
    assert _plaintext(result.file_id, result.key) == b"small file"


@pytest.mark.parametrize(
    ("upload_id", "chunk_count", "file_name"),
    [("", 1, "a"), ("u", 0, "a"), ("u", -2, "a"), ("u", 1, "")],
)
def test_complete_rejects_bad_arguments(upload_id: str, chunk_count: int, file_name: str) -> None:
    _reset_state()
    with SessionLocal() as db:
        with pytest.raises(BadRequest):
            UploadAssembler(db).complete(upload_id, chunk_count, file_name)


def test_receive_chunk_rejects_negative_index() -> None:
    _reset_state()
    with SessionLocal() as db:
        with pytest.raises(BadRequest):
            UploadAssembler(db).receive_chunk("u", -1, b"x")


def test_store_errors_surface_as_store_failure(monkeypatch) -> None:
    _reset_state()

    def _fail_commit() -> None:
        raise OperationalError("COMMIT", {}, Exception("database is unavailable"))

    with SessionLocal() as db:
        monkeypatch.setattr(db, "commit", _fail_commit)
        with pytest.raises(StoreFailure):
            UploadAssembler(db).receive_chunk("u", 0, b"x")
        with pytest.raises(StoreFailure):
            UploadAssembler(db).upload_single(b"x", "x.bin")

    assert _file_row_count() == 0
