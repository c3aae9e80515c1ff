import asyncio
import subprocess
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Dict, Optional, Set, Tuple, TypeVar
from uuid import uuid4

import anyio
import anyio.to_thread
import uvicorn
from fastapi import FastAPI, File, Form, Query, Request, UploadFile, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import ValidationError
from starlette.datastructures import Headers, MutableHeaders
from structlog.contextvars import bind_contextvars, clear_contextvars

from .admission import AdmissionController, AdmissionTicket
from .config import Settings
from .errors import (
    ClientDisconnected,
    InvalidInput,
    JobNotFound,
    ProcessError,
    ServiceError,
)
from .jobs import Job, JobProgressReporter, JobRegistry, JobStatus
from .log import REQUEST_ID_CTX, configure_logging, flush_logs, logger
from .models import VideoSource, WatermarkOptions
from .rooms import Participant, RoomHub
from .sources import WatermarkResolver, download_to, make_async_client
from .transform import TransformTask, WatermarkTransformer
from .workspace import (
    Workspace,
    check_disk_space,
    cleanup_stale_workspaces,
    ensure_upload_type,
    stream_upload_to_path,
)

T = TypeVar("T")

settings = Settings.load()

WORK_DIR = settings.WORK_DIR.resolve()
LOGS_DIR = settings.LOGS_DIR.resolve()
for p in (WORK_DIR, LOGS_DIR):
    p.mkdir(parents=True, exist_ok=True)

APP_LOG_FILE = configure_logging(LOGS_DIR)

ALLOWED_ORIGINS = settings.ALLOWED_ORIGINS
DISCONNECT_POLL_SECONDS = 0.5
FILE_CHUNK_SIZE = 64 * 1024

ADMISSION = AdmissionController(settings.MAX_CONCURRENCY, settings.QUEUE_MAX_LENGTH)
JOBS = JobRegistry(ttl_seconds=settings.JOB_TTL_SECONDS)
ROOMS = RoomHub()
TRANSFORMER = WatermarkTransformer(
    binary=settings.FFMPEG_BIN,
    preset=settings.FFMPEG_PRESET,
    crf=settings.FFMPEG_CRF,
    threads=settings.FFMPEG_THREADS,
    timeout=settings.FFMPEG_TIMEOUT_SECONDS,
    logs_dir=LOGS_DIR,
    default_wm_width=settings.WM_WIDTH_PX,
)
WATERMARKS = WatermarkResolver(
    url=settings.WATERMARK_URL,
    path=settings.WATERMARK_PATH,
    bundled=settings.WATERMARK_ASSET,
    timeout=settings.DOWNLOAD_TIMEOUT_SECONDS,
    max_retries=settings.DOWNLOAD_RETRIES,
)

# Strong references so running job workers are not garbage collected
BACKGROUND_TASKS: Set["asyncio.Task[Any]"] = set()

_make_async_client = make_async_client
_FFMPEG_VERSION_CACHE: Optional[Dict[str, Any]] = None


def _stale_workspace_age() -> float:
    return settings.JOB_TTL_SECONDS + settings.FFMPEG_TIMEOUT_SECONDS


@asynccontextmanager
async def lifespan(app):
    """Lifespan event handler for FastAPI application startup and shutdown."""
    logger.info("Watermark API is ready to accept requests")
    try:
        cleanup_stale_workspaces(WORK_DIR, _stale_workspace_age())
    except Exception as exc:
        logger.warning("Initial workspace cleanup failed: %s", exc)
    periodic = [
        asyncio.create_task(_periodic_jobs_cleanup()),
        asyncio.create_task(_periodic_room_sweep()),
    ]
    flush_logs()

    yield

    logger.info("Watermark API is shutting down")
    for task in periodic:
        task.cancel()
    await asyncio.gather(*periodic, return_exceptions=True)
    # Workers still write into job workspaces; stop them before draining
    workers = list(BACKGROUND_TASKS)
    for task in workers:
        task.cancel()
    await asyncio.gather(*workers, return_exceptions=True)
    dropped = JOBS.drain()
    if dropped:
        logger.info("Dropped %d jobs on shutdown", dropped)
    flush_logs()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(ALLOWED_ORIGINS),
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Request-ID"],
)


class RequestContextMiddleware:
    """Request id and security headers as plain ASGI.

    ``receive`` is passed through untouched so ``Request.is_disconnected`` in
    the routes sees the client's ``http.disconnect``.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get("x-request-id") or uuid4().hex

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                headers = MutableHeaders(scope=message)
                headers["X-Request-ID"] = request_id
                headers.setdefault("X-Content-Type-Options", "nosniff")
                headers.setdefault("X-Frame-Options", "DENY")
            await send(message)

        token = REQUEST_ID_CTX.set(request_id)
        bind_contextvars(request_id=request_id)
        try:
            await self.app(scope, receive, send_with_headers)
        finally:
            clear_contextvars()
            REQUEST_ID_CTX.reset(token)


app.add_middleware(RequestContextMiddleware)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.error, exc.message)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.error, exc.message)
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=exc.headers or None)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": InvalidInput.error, "detail": _describe_errors(exc.errors())},
        status_code=InvalidInput.status_code,
    )


def _describe_errors(errors) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(item) for item in err.get("loc", ()) if item not in ("body", "query"))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


def ffmpeg_snapshot() -> Dict[str, Any]:
    global _FFMPEG_VERSION_CACHE
    if _FFMPEG_VERSION_CACHE is not None:
        return dict(_FFMPEG_VERSION_CACHE)
    try:
        result = subprocess.run(
            [settings.FFMPEG_BIN, "-version"], capture_output=True, text=True, timeout=5
        )
        available = result.returncode == 0
        version_line = (result.stdout or "").splitlines()[0] if available and result.stdout else ""
        error = None if available else (result.stderr or "Unknown failure")
    except Exception as exc:
        available = False
        version_line = ""
        error = str(exc)
    snapshot = {"available": available, "version": version_line, "error": error}
    _FFMPEG_VERSION_CACHE = dict(snapshot)
    return snapshot


def _parse_options(
    position: Optional[str],
    margin: Optional[str],
    wm_width: Optional[str],
    filename: Optional[str],
) -> WatermarkOptions:
    raw = {"position": position, "margin": margin, "wm_width": wm_width, "filename": filename}
    try:
        return WatermarkOptions(**{key: value for key, value in raw.items() if value not in (None, "")})
    except ValidationError as exc:
        raise InvalidInput(_describe_errors(exc.errors())) from exc


def _select_source(video: Optional[UploadFile], video_url: Optional[str]) -> Optional[str]:
    """Validate that exactly one input was given; return the normalized URL if it is remote."""
    has_upload = video is not None and bool(video.filename)
    url = (video_url or "").strip()
    if has_upload and url:
        raise InvalidInput("Provide either 'video' or 'videoUrl', not both.")
    if not has_upload and not url:
        raise InvalidInput("Provide 'video' or 'videoUrl'.")
    if has_upload:
        ensure_upload_type(video, "video/mp4", "video")
        return None
    try:
        return str(VideoSource(url=url).url)
    except ValidationError as exc:
        raise InvalidInput("videoUrl must be an http(s) URL") from exc


async def _persist_upload(video: UploadFile, workspace: Workspace) -> Path:
    dest = workspace.path("input.mp4")
    size = await stream_upload_to_path(
        video,
        dest,
        max_bytes=settings.max_upload_bytes,
        chunk_size=settings.UPLOAD_CHUNK_SIZE,
    )
    logger.info("Received upload %s (%d bytes)", video.filename, size)
    return dest


async def _prepare_inputs(
    workspace: Workspace,
    *,
    upload_path: Optional[Path],
    video_url: Optional[str],
    reporter: Optional[JobProgressReporter] = None,
) -> Tuple[Path, Path]:
    async with _make_async_client() as client:
        if upload_path is not None:
            input_path = upload_path
        else:
            if reporter is not None:
                reporter.stage(10, "Downloading video")
            input_path = workspace.path("input.mp4")
            await download_to(
                video_url,
                input_path,
                client=client,
                max_bytes=settings.max_upload_bytes,
                timeout=settings.DOWNLOAD_TIMEOUT_SECONDS,
                max_retries=settings.DOWNLOAD_RETRIES,
                chunk_size=settings.UPLOAD_CHUNK_SIZE,
            )
        if reporter is not None:
            reporter.stage(20, "Resolving watermark")
        watermark_path = await WATERMARKS.resolve(workspace, client)
    return input_path, watermark_path


def _attachment_headers(filename: str) -> Dict[str, str]:
    return {"Content-Disposition": f'attachment; filename="{filename}"'}


async def _run_unless_disconnected(request: Request, awaitable: Awaitable[T]) -> T:
    """Await ``awaitable``; cancel it and raise ClientDisconnected if the caller goes away."""
    task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected from %s, abandoning work", request.url.path)
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                raise ClientDisconnected("Client disconnected")
    finally:
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


async def _cancel_on_disconnect(request: Request, task: TransformTask) -> None:
    while task.running:
        if await request.is_disconnected():
            logger.info("Client disconnected mid-stream, terminating ffmpeg pid=%s", task.pid)
            await task.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def _iter_file(path: Path, workspace: Workspace) -> AsyncIterator[bytes]:
    try:
        with path.open("rb") as handle:
            while True:
                chunk = await anyio.to_thread.run_sync(handle.read, FILE_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
    finally:
        workspace.remove()


async def _first_chunk(chunks: AsyncGenerator[bytes, None]) -> Optional[bytes]:
    async for chunk in chunks:
        return chunk
    return None


async def _stream_transform(
    request: Request,
    task: TransformTask,
    chunks: AsyncGenerator[bytes, None],
    first_chunk: bytes,
    workspace: Workspace,
    ticket: AdmissionTicket,
) -> AsyncIterator[bytes]:
    watcher = asyncio.create_task(_cancel_on_disconnect(request, task))
    try:
        yield first_chunk
        async for chunk in chunks:
            yield chunk
        await task.wait()
        logger.info("Streamed watermark output for pid=%s", task.pid)
    except ProcessError as exc:
        if task.cancelled:
            return
        # Headers are already sent; raising aborts the connection
        logger.error("Streaming transform failed after response started: %s", exc.message)
        flush_logs()
        raise
    finally:
        watcher.cancel()
        with anyio.CancelScope(shield=True):
            await asyncio.gather(watcher, return_exceptions=True)
            await chunks.aclose()
            await task.cancel()
        workspace.remove()
        ticket.release()


async def _start_streaming_response(
    request: Request,
    options: WatermarkOptions,
    input_path: Path,
    watermark_path: Path,
    workspace: Workspace,
    ticket: AdmissionTicket,
) -> StreamingResponse:
    task = await TRANSFORMER.start_stream(
        input_path,
        watermark_path,
        corner=options.position,
        margin=options.margin,
        wm_width=options.wm_width,
        log_path=workspace.path("ffmpeg.log"),
    )
    chunks = task.iter_output()
    try:
        # Surface immediate ffmpeg failures as a proper error status
        first_chunk = await _run_unless_disconnected(request, _first_chunk(chunks))
        if first_chunk is None:
            await task.wait()
            raise ProcessError("ffmpeg produced no output", exit_code=task.returncode, stderr_tail=task.stderr_tail)
    except BaseException:
        with anyio.CancelScope(shield=True):
            await chunks.aclose()
            await task.cancel()
        raise
    return StreamingResponse(
        _stream_transform(request, task, chunks, first_chunk, workspace, ticket),
        media_type="video/mp4",
        headers=_attachment_headers(options.filename),
    )


@app.get("/", include_in_schema=False)
def root():
    return PlainTextResponse("Watermark API is running. POST /watermark, WS /ws?streamId=...\n")


@app.get("/health")
async def health():
    logger.info("Health check requested")
    ffmpeg_info = await anyio.to_thread.run_sync(ffmpeg_snapshot)
    return {
        "ok": True,
        "time": int(time.time()),
        "ffmpeg": ffmpeg_info,
        "admission": ADMISSION.snapshot(),
        "jobs": JOBS.counts(),
        "rooms": ROOMS.snapshot(),
    }


@app.post("/watermark")
async def watermark(
    request: Request,
    video: Optional[UploadFile] = File(None),
    videoUrl: Optional[str] = Form(None),
    position: Optional[str] = Form(None),
    margin: Optional[str] = Form(None),
    wmWidth: Optional[str] = Form(None),
    filename: Optional[str] = Form(None),
    stream: bool = Query(False),
):
    """Watermark a video and return it in the response body.

    With ``stream=true`` ffmpeg writes fragmented MP4 to stdout and bytes are
    relayed as they are produced; otherwise the output is rendered to a file
    in the request workspace first.
    """
    options = _parse_options(position, margin, wmWidth, filename)
    video_url = _select_source(video, videoUrl)
    ticket = ADMISSION.reserve()
    workspace = Workspace.create(WORK_DIR)
    handed_off = False
    try:
        check_disk_space(WORK_DIR, settings.MIN_FREE_SPACE_MB)
        upload_path = await _persist_upload(video, workspace) if video_url is None else None
        await _run_unless_disconnected(request, ticket.wait())
        input_path, watermark_path = await _prepare_inputs(
            workspace, upload_path=upload_path, video_url=video_url
        )

        if stream:
            response = await _start_streaming_response(
                request, options, input_path, watermark_path, workspace, ticket
            )
            handed_off = True
            return response

        output_path = workspace.path("output.mp4")
        await _run_unless_disconnected(
            request,
            TRANSFORMER.render_to_file(
                input_path,
                watermark_path,
                output_path,
                corner=options.position,
                margin=options.margin,
                wm_width=options.wm_width,
                log_path=workspace.path("ffmpeg.log"),
            ),
        )
        ticket.release()
        handed_off = True
        return StreamingResponse(
            _iter_file(output_path, workspace),
            media_type="video/mp4",
            headers=_attachment_headers(options.filename),
        )
    finally:
        if not handed_off:
            ticket.release()
            workspace.remove()


@app.post("/watermark/async", status_code=202)
async def watermark_async(
    video: Optional[UploadFile] = File(None),
    videoUrl: Optional[str] = Form(None),
    position: Optional[str] = Form(None),
    margin: Optional[str] = Form(None),
    wmWidth: Optional[str] = Form(None),
    filename: Optional[str] = Form(None),
):
    """Queue a watermark job and return immediately with polling URLs."""
    options = _parse_options(position, margin, wmWidth, filename)
    video_url = _select_source(video, videoUrl)
    ticket = ADMISSION.reserve()
    workspace = Workspace.create(WORK_DIR)
    try:
        check_disk_space(WORK_DIR, settings.MIN_FREE_SPACE_MB)
        upload_path = await _persist_upload(video, workspace) if video_url is None else None
        job = JOBS.create(options, workspace)
    except BaseException:
        ticket.release()
        workspace.remove()
        raise

    worker = asyncio.create_task(
        _process_watermark_job(job, ticket, upload_path=upload_path, video_url=video_url)
    )
    BACKGROUND_TASKS.add(worker)
    worker.add_done_callback(BACKGROUND_TASKS.discard)

    return JSONResponse(
        {
            "ok": True,
            "jobId": job.id,
            "statusUrl": f"/watermark/status/{job.id}",
            "resultUrl": f"/watermark/result/{job.id}",
        },
        status_code=202,
    )


async def _process_watermark_job(
    job: Job,
    ticket: AdmissionTicket,
    *,
    upload_path: Optional[Path],
    video_url: Optional[str],
) -> None:
    job_id = job.id
    reporter = JobProgressReporter(JOBS, job_id)
    try:
        await ticket.wait()
        JOBS.mark_processing(job_id)
        input_path, watermark_path = await _prepare_inputs(
            job.workspace, upload_path=upload_path, video_url=video_url, reporter=reporter
        )
        reporter.stage(JobProgressReporter.ENCODE_START, "Encoding")
        output_path = await TRANSFORMER.render_to_file(
            input_path,
            watermark_path,
            job.workspace.path("output.mp4"),
            corner=job.options.position,
            margin=job.options.margin,
            wm_width=job.options.wm_width,
            log_path=job.workspace.path("ffmpeg.log"),
            on_progress=reporter.encoding,
        )
        JOBS.complete(job_id, output_path)
    except asyncio.CancelledError:
        JOBS.fail(job_id, "Job cancelled")
        raise
    except ServiceError as exc:
        JOBS.fail(job_id, exc.message)
    except Exception as exc:
        logger.exception("Watermark job %s failed unexpectedly", job_id)
        JOBS.fail(job_id, str(exc) or exc.__class__.__name__)
    finally:
        ticket.release()
        if job_id not in JOBS and job.status != JobStatus.COMPLETED:
            job.workspace.remove()
        flush_logs()


@app.get("/watermark/status/{job_id}")
def watermark_status(job_id: str):
    view = JOBS.get(job_id)
    payload: Dict[str, Any] = {"ok": True, **view}
    if view["ready"]:
        payload["resultUrl"] = f"/watermark/result/{job_id}"
    return payload


@app.get("/watermark/result/{job_id}")
def watermark_result(job_id: str):
    """Stream a finished job's output once; the job is gone afterwards."""
    job = JOBS.claim(job_id)
    output_path = job.output_path
    if output_path is None or not output_path.is_file():
        job.workspace.remove()
        raise JobNotFound(f"Output for job {job_id} is no longer available")
    return StreamingResponse(
        _iter_file(output_path, job.workspace),
        media_type="video/mp4",
        headers=_attachment_headers(job.options.filename),
    )


def _origin_allowed(origin: Optional[str]) -> bool:
    if not origin:
        return True
    return "*" in ALLOWED_ORIGINS or origin.rstrip("/") in ALLOWED_ORIGINS


@app.websocket("/ws")
async def room_socket(websocket: WebSocket):
    origin = websocket.headers.get("origin")
    stream_id = (websocket.query_params.get("streamId") or "").strip()
    if not _origin_allowed(origin):
        logger.warning("Rejected websocket from origin %s", origin)
        await websocket.close(code=1008)
        return
    if not stream_id:
        logger.info("Rejected websocket without streamId")
        await websocket.close(code=1008)
        return

    await websocket.accept()
    participant = Participant(websocket)
    await ROOMS.join(stream_id, participant)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            await ROOMS.handle_message(participant, raw)
    finally:
        ROOMS.leave(participant)


async def _periodic_jobs_cleanup():
    """Periodically drop expired jobs and workspaces nothing owns any more."""
    while True:
        await asyncio.sleep(settings.JOB_SWEEP_INTERVAL_SECONDS)
        try:
            JOBS.sweep()
            cleanup_stale_workspaces(WORK_DIR, _stale_workspace_age())
        except Exception as exc:
            logger.warning("Periodic jobs cleanup failed: %s", exc)


async def _periodic_room_sweep():
    while True:
        await asyncio.sleep(settings.HEARTBEAT_SECONDS)
        try:
            dropped = await ROOMS.sweep()
            if dropped:
                logger.info("Room sweep removed %d closed participants", dropped)
        except Exception as exc:
            logger.warning("Room sweep failed: %s", exc)


def custom_openapi():
    """OpenAPI schema with a short service description."""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title="Watermark API",
        version="1.0.0",
        description=(
            "## Video watermarking and room broadcast\n\n"
            "- `POST /watermark` returns the watermarked MP4 (add `stream=true` to pipe it)\n"
            "- `POST /watermark/async` queues a job; poll `/watermark/status/{job_id}`\n"
            "- `WS /ws?streamId=...` joins a broadcast room\n"
        ),
        routes=app.routes,
    )
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


def run():
    """Serve the app; uvicorn's WebSocket pings carry the room liveness check."""
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        ws_ping_interval=settings.HEARTBEAT_SECONDS,
        ws_ping_timeout=settings.HEARTBEAT_SECONDS,
    )


if __name__ == "__main__":
    run()
