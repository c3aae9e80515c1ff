import atexit
import io
import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Optional

import structlog

REQUEST_ID_CTX: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

logger = logging.getLogger("wmapi")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)
struct_logger = structlog.get_logger("wmapi")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging infrastructure
        record.request_id = REQUEST_ID_CTX.get(None) or "-"
        return True


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"


def configure_logging(logs_dir: Path) -> Path:
    """Send root logging to ``logs_dir/application.log`` and stdout; return the file path."""
    # Force unbuffered output when supported
    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except (AttributeError, io.UnsupportedOperation):
        pass

    app_log_file = logs_dir / "application.log"
    file_stream = open(app_log_file, "a", encoding="utf-8", buffering=1)
    atexit.register(file_stream.close)

    request_id_filter = RequestIdFilter()

    file_handler = logging.StreamHandler(file_stream)
    file_handler.setLevel(logging.INFO)
    file_handler.addFilter(request_id_filter)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.addFilter(request_id_filter)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # Root logger catches everything, uvicorn included
    logging.basicConfig(level=logging.INFO, handlers=[file_handler, console_handler], force=True)

    for name in ("uvicorn", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.addHandler(file_handler)
    return app_log_file


def flush_logs() -> None:
    """Force flush all log handlers."""
    for handler in logging.getLogger().handlers:
        handler.flush()
