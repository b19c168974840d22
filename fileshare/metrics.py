from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

chunks_staged_total = Counter("chunks_staged_total", "Total chunks staged")
bytes_staged_total = Counter("bytes_staged_total", "Total plaintext bytes staged")
files_completed_total = Counter("files_completed_total", "Total files sealed and persisted", ["mode"])
upload_failures_total = Counter("upload_failures_total", "Total failed upload completions")
bytes_downloaded_total = Counter("bytes_downloaded_total", "Total plaintext bytes streamed to clients")
decryption_failures_total = Counter("decryption_failures_total", "Total failed chunk decryptions")
staged_chunks_swept_total = Counter("staged_chunks_swept_total", "Total staged chunks removed by the sweep")

complete_latency_seconds = Histogram("complete_latency_seconds", "Upload completion latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
