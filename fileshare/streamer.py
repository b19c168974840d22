from collections.abc import Iterator
from dataclasses import dataclass
from urllib.parse import quote

from sqlalchemy.orm import Session

from fileshare.crypto import open_sealed
from fileshare.errors import DecryptionFailed
from fileshare.metrics import bytes_downloaded_total, decryption_failures_total
from fileshare.storage import FileStore
from fileshare.tracing import tracer

KIB = 1024
MIB = 1024 * 1024


def format_size(size_bytes: int) -> str:
    if size_bytes >= MIB:
        return f"{size_bytes / MIB:.2f} MB"
    return f"{size_bytes / KIB:.2f} KB"


def content_disposition(file_name: str) -> str:
    escaped = file_name.replace("\\", "\\\\").replace('"', '\\"')
    try:
        escaped.encode("ascii")
    except UnicodeEncodeError:
        fallback = escaped.encode("ascii", "replace").decode("ascii")
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(file_name, safe='')}"
    return f'attachment; filename="{escaped}"'


@dataclass(frozen=True)
class FileMetadata:
    file_name: str
    size_bytes: int

    @property
    def human_size(self) -> str:
        return format_size(self.size_bytes)


@dataclass
class DownloadStream:
    file_name: str
    chunks: Iterator[bytes]

    @property
    def content_disposition(self) -> str:
        return content_disposition(self.file_name)

    def close(self) -> None:
        close = getattr(self.chunks, "close", None)
        if close is not None:
            close()


class DownloadStreamer:
    def __init__(self, db: Session) -> None:
        self.files = FileStore(db)

    def _open(self, blob: bytes, key: bytes) -> bytes:
        try:
            return open_sealed(blob, key)
        except DecryptionFailed:
            decryption_failures_total.inc()
            raise

    def get_metadata(self, file_id: str, key: bytes) -> FileMetadata:
        file_name = self.files.read_name(file_id)
        with tracer.start_as_current_span("download.metadata"):
            size_bytes = sum(len(self._open(blob, key)) for blob in self.files.read_ordered(file_id))
        return FileMetadata(file_name=file_name, size_bytes=size_bytes)

    def download(self, file_id: str, key: bytes) -> DownloadStream:
        # Decrypt the first chunk now so a wrong key fails before headers are sent.
        file_name = self.files.read_name(file_id)
        sealed = self.files.read_ordered(file_id)
        try:
            first = next(sealed, None)
            plaintext = self._open(first, key) if first is not None else None
        except Exception:
            sealed.close()
            raise
        return DownloadStream(file_name=file_name, chunks=self._stream(plaintext, sealed, key))

    def _stream(self, first: bytes | None, sealed: Iterator[bytes], key: bytes) -> Iterator[bytes]:
        try:
            if first is not None:
                bytes_downloaded_total.inc(len(first))
                yield first
            for blob in sealed:
                plaintext = self._open(blob, key)
                bytes_downloaded_total.inc(len(plaintext))
                yield plaintext
        finally:
            sealed.close()
