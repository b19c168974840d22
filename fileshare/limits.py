from starlette.requests import Request

from fileshare.errors import BadRequest, PayloadTooLarge

LIMITED_PATHS = frozenset({"/upload", "/upload_chunk"})


class UploadSizeLimiter:
    def __init__(self, max_bytes: int, paths: frozenset[str] = LIMITED_PATHS) -> None:
        self.max_bytes = max_bytes
        self.paths = paths

    def check(self, request: Request) -> None:
        if request.method != "POST" or request.url.path not in self.paths:
            return
        raw = request.headers.get("content-length")
        if raw is None:
            return
        try:
            declared = int(raw)
        except ValueError as exc:
            raise BadRequest("invalid content-length") from exc
        if declared > self.max_bytes:
            raise PayloadTooLarge(f"request body exceeds {self.max_bytes} bytes")
