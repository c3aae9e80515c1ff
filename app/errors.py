"""Error taxonomy shared by the watermark pipeline, job registry and HTTP layer.

Components raise these instead of ``HTTPException`` so they stay usable outside a
request; ``app.main`` renders them as ``{"error": ..., "detail": ...}`` responses.
"""

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500
    error = "internal_error"

    def __init__(self, message: str, *, headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.headers = headers or {}

    def to_payload(self) -> Dict[str, object]:
        return {"error": self.error, "detail": self.message}


class InvalidInput(ServiceError):
    status_code = 400
    error = "invalid_input"


class PayloadTooLarge(ServiceError):
    status_code = 413
    error = "file_too_large"


class WatermarkNotFound(ServiceError):
    status_code = 500
    error = "watermark_not_found"


class DownloadError(ServiceError):
    status_code = 502
    error = "download_failed"


class ProcessError(ServiceError):
    """ffmpeg could not be started or exited with a non-zero status."""

    status_code = 500
    error = "ffmpeg_failed"

    def __init__(
        self,
        message: str,
        *,
        exit_code: Optional[int] = None,
        stderr_tail: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail

    def to_payload(self) -> Dict[str, object]:
        payload = super().to_payload()
        payload["exit_code"] = self.exit_code
        return payload


class TransformTimeout(ProcessError):
    status_code = 504
    error = "processing_timeout"


class QueueFull(ServiceError):
    status_code = 503
    error = "queue_full"

    def __init__(self, message: str = "Server is busy, retry later", *, retry_after: int = 30) -> None:
        super().__init__(message, headers={"Retry-After": str(retry_after)})
        self.retry_after = retry_after


class JobNotFound(ServiceError):
    status_code = 404
    error = "job_not_found"


class JobNotReady(ServiceError):
    status_code = 404
    error = "job_not_ready"


class InsufficientStorage(ServiceError):
    status_code = 507
    error = "insufficient_storage"


class ClientDisconnected(ServiceError):
    """The caller went away before the response was ready; nobody reads this status."""

    status_code = 499
    error = "client_closed_request"
