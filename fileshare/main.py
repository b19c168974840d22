import asyncio
import json
import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from sqlalchemy.orm import Session

from fileshare.assembler import UploadAssembler, UploadResult
from fileshare.config import settings
from fileshare.crypto import parse_key
from fileshare.db import SessionLocal, engine, get_db, init_db
from fileshare.errors import BadRequest, FileShareError, PayloadTooLarge
from fileshare.limits import UploadSizeLimiter
from fileshare.maintenance import cleanup_once
from fileshare.metrics import http_request_duration_seconds, metrics_response
from fileshare.models import UploadState
from fileshare.schemas import ErrorResponse, FileInfoResponse, UploadResponse
from fileshare.streamer import DownloadStream, DownloadStreamer
from fileshare.tracing import current_trace_id, setup_tracing


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
                break
            except asyncio.TimeoutError:
                pass
            try:
                stats = await asyncio.to_thread(_run_cleanup)
                _log_event({"event": "cleanup_completed", **stats})
            except Exception as exc:
                # The next tick retries; request handling is unaffected.
                _log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})

    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


def _run_cleanup() -> dict[str, int]:
    with SessionLocal() as db:
        return cleanup_once(db)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Request-ID"],
)
upload_size_limiter = UploadSizeLimiter(settings.max_upload_size_bytes)
request_logger = logging.getLogger("fileshare.request")
if not request_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    request_logger.addHandler(handler)
request_logger.setLevel(logging.INFO)
audit_logger = logging.getLogger("fileshare.audit")
if not audit_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
audit_logger.setLevel(logging.INFO)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _log_event(payload: dict) -> None:
    payload.setdefault("trace_id", current_trace_id())
    request_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":")))


def _audit_event(payload: dict) -> None:
    payload.setdefault("trace_id", current_trace_id())
    audit_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":")))


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        413: "payload_too_large",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_response(
    request: Request,
    status_code: int,
    detail: str,
    error_code: str,
    error_class: str,
    headers: dict | None = None,
    log_detail: str | None = None,
) -> JSONResponse:
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "error_code": error_code,
            "detail": log_detail or detail,
        }
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "error_code": error_code,
            "request_id": _request_id(request),
            "trace_id": current_trace_id(),
        },
        headers=headers or {},
    )


def _error_class(status_code: int) -> str:
    return "client_error" if 400 <= status_code < 500 else "server_error"


COMMON_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Malformed request"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}
UPLOAD_ERROR_RESPONSES = {
    **COMMON_ERROR_RESPONSES,
    413: {"model": ErrorResponse, "description": "Upload body too large"},
}
DOWNLOAD_ERROR_RESPONSES = {
    **COMMON_ERROR_RESPONSES,
    403: {"model": ErrorResponse, "description": "Decryption failed"},
    404: {"model": ErrorResponse, "description": "File not found"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    try:
        upload_size_limiter.check(request)
    except FileShareError as exc:
        response = _error_response(request, exc.status_code, exc.detail, exc.error_code, _error_class(exc.status_code))
    else:
        response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Fileshare-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    _log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(FileShareError)
async def fileshare_error_handler(request: Request, exc: FileShareError):
    return _error_response(request, exc.status_code, exc.detail, exc.error_code, _error_class(exc.status_code))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(
        request,
        exc.status_code,
        str(exc.detail),
        _error_code_for_status(exc.status_code),
        _error_class(exc.status_code),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    fields = sorted({".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()})
    return _error_response(request, 400, f"invalid request fields: {', '.join(fields)}", "bad_request", "client_error")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    return _error_response(
        request, 500, "internal server error", "internal_error", "unhandled_exception", log_detail=str(exc)
    )


def get_assembler(db: Session = Depends(get_db)) -> UploadAssembler:
    return UploadAssembler(db, discard_staged=settings.discard_staged_on_complete)


def get_streamer(db: Session = Depends(get_db)) -> DownloadStreamer:
    return DownloadStreamer(db)


def _parse_int(raw: str | None, field_name: str) -> int:
    if raw is None or not raw.strip():
        raise BadRequest(f"missing {field_name}")
    try:
        return int(raw)
    except ValueError as exc:
        raise BadRequest(f"invalid {field_name}: {raw!r}") from exc


def _read_upload(upload: UploadFile | None, field_name: str) -> bytes:
    if upload is None:
        raise BadRequest(f"missing {field_name} field")
    data = upload.file.read()
    if len(data) > upload_size_limiter.max_bytes:
        raise PayloadTooLarge(f"{field_name} exceeds {upload_size_limiter.max_bytes} bytes")
    return data


def _upload_response(result: UploadResult) -> UploadResponse:
    return UploadResponse(id=result.file_id, key=result.key_hex)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "database_backend": engine.dialect.name,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post("/upload", response_model=UploadResponse, responses=UPLOAD_ERROR_RESPONSES)
def upload_single(
    request: Request,
    file: UploadFile | None = File(default=None),
    assembler: UploadAssembler = Depends(get_assembler),
) -> Response:
    data = _read_upload(file, "file")
    result = assembler.upload_single(data, file.filename or "file")
    _audit_event(
        {
            "event": "audit",
            "action": "upload_single",
            "request_id": _request_id(request),
            "file_id": result.file_id,
            "file_size": result.size_bytes,
        }
    )
    accept = request.headers.get("accept", "")
    if "text/plain" in accept and "application/json" not in accept:
        return PlainTextResponse(f"id={result.file_id}&key={result.key_hex}")
    return JSONResponse(content=_upload_response(result).model_dump())


@app.post("/upload_chunk", responses=UPLOAD_ERROR_RESPONSES)
def upload_chunk(
    request: Request,
    chunk: UploadFile | None = File(default=None),
    upload_id: str | None = Form(default=None, alias="uploadId"),
    chunk_index: str | None = Form(default=None, alias="chunkIndex"),
    assembler: UploadAssembler = Depends(get_assembler),
) -> Response:
    index = _parse_int(chunk_index, "chunk index")
    data = _read_upload(chunk, "chunk")
    assembler.receive_chunk(upload_id or "", index, data)
    _audit_event(
        {
            "event": "audit",
            "action": "upload_chunk",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "chunk_index": index,
            "chunk_size": len(data),
            "state": UploadState.receiving.value,
        }
    )
    return Response(status_code=200)


@app.post(
    "/upload_complete",
    response_model=UploadResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Staged chunk missing"}},
)
def upload_complete(
    request: Request,
    upload_id: str | None = Form(default=None, alias="uploadId"),
    chunk_count: str | None = Form(default=None, alias="chunkCount"),
    file_name: str | None = Form(default=None, alias="fileName"),
    assembler: UploadAssembler = Depends(get_assembler),
) -> UploadResponse:
    count = _parse_int(chunk_count, "chunk count")
    audit = {
        "event": "audit",
        "action": "upload_complete",
        "request_id": _request_id(request),
        "upload_id": upload_id,
        "chunk_count": count,
    }
    try:
        result = assembler.complete(upload_id or "", count, file_name or "")
    except FileShareError as exc:
        _audit_event({**audit, "state": UploadState.failed.value, "error_code": exc.error_code})
        raise
    _audit_event({**audit, "state": UploadState.done.value, "file_id": result.file_id, "file_size": result.size_bytes})
    return _upload_response(result)


def _close_after(stream: DownloadStream, db: Session, request_id: str) -> Iterator[bytes]:
    try:
        yield from stream.chunks
    except Exception as exc:
        # Headers are already sent; the client sees a truncated body.
        _log_event(
            {
                "event": "download_aborted",
                "request_id": request_id,
                "error_class": exc.__class__.__name__,
                "detail": str(exc),
            }
        )
        raise
    finally:
        stream.close()
        db.close()


@app.get("/download/{file_id}", responses=DOWNLOAD_ERROR_RESPONSES)
def download(request: Request, file_id: str, key: str | None = None) -> StreamingResponse:
    key_bytes = parse_key(key)
    # The session has to outlive this handler, until the body is fully sent.
    db = SessionLocal()
    try:
        stream = DownloadStreamer(db).download(file_id, key_bytes)
    except Exception:
        db.close()
        raise
    _audit_event(
        {
            "event": "audit",
            "action": "download",
            "request_id": _request_id(request),
            "file_id": file_id,
        }
    )
    return StreamingResponse(
        _close_after(stream, db, _request_id(request)),
        media_type="application/octet-stream",
        headers={"Content-Disposition": stream.content_disposition},
    )


@app.get("/get/{file_id}", response_model=FileInfoResponse, responses=DOWNLOAD_ERROR_RESPONSES)
def get_file_info(
    request: Request,
    file_id: str,
    key: str | None = None,
    streamer: DownloadStreamer = Depends(get_streamer),
) -> FileInfoResponse:
    key_bytes = parse_key(key)
    metadata = streamer.get_metadata(file_id, key_bytes)
    _audit_event(
        {
            "event": "audit",
            "action": "file_info",
            "request_id": _request_id(request),
            "file_id": file_id,
            "file_size": metadata.size_bytes,
        }
    )
    return FileInfoResponse(file_name=metadata.file_name, file_size=metadata.human_size)
