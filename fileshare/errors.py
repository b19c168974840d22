from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError


class FileShareError(Exception):
    status_code = 500
    error_code = "internal_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class BadRequest(FileShareError):
    status_code = 400
    error_code = "bad_request"


class NotFound(FileShareError):
    status_code = 404
    error_code = "not_found"


class ChunkMissing(NotFound):
    error_code = "chunk_missing"

    def __init__(self, upload_id: str, chunk_index: int) -> None:
        super().__init__(f"chunk {chunk_index} of upload {upload_id} not found")
        self.upload_id = upload_id
        self.chunk_index = chunk_index


class DecryptionFailed(FileShareError):
    # Same message for tampered data and wrong keys.
    status_code = 403
    error_code = "decryption_failed"

    def __init__(self, detail: str = "error decrypting file") -> None:
        super().__init__(detail)


class PayloadTooLarge(FileShareError):
    status_code = 413
    error_code = "payload_too_large"


class StoreFailure(FileShareError):
    status_code = 500
    error_code = "store_failure"


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreFailure(f"{action} failed: {exc.__class__.__name__}") from exc
