"""ffmpeg invocation for the watermark composite.

The pixel work happens in ffmpeg; this module builds its arguments and owns the
subprocess lifecycle through :class:`TransformTask`, which can write to a file or
stream stdout to a consumer and can be terminated when that consumer goes away.
"""

import asyncio
import os
import re
import shutil
import signal
import time
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import IO, Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Tuple
from uuid import uuid4

from .errors import ProcessError, TransformTimeout
from .log import flush_logs, logger, struct_logger

STREAM_OUTPUT = "pipe:1"
STREAM_MOVFLAGS = "frag_keyframe+empty_moov+default_base_moof"
DEFAULT_MARGIN = 24
STDERR_TAIL_LINES = 20
STREAM_CHUNK_SIZE = 64 * 1024
STREAM_BUFFER_CHUNKS = 16


class Corner(str, Enum):
    BOTTOM_RIGHT = "br"
    BOTTOM_LEFT = "bl"
    TOP_RIGHT = "tr"
    TOP_LEFT = "tl"


def overlay_position(corner: Corner, margin: int) -> Tuple[str, str]:
    """Return ffmpeg overlay x/y expressions placing the watermark ``margin`` px inside ``corner``."""
    m = int(margin)
    right = f"main_w-overlay_w-{m}"
    bottom = f"main_h-overlay_h-{m}"
    if corner == Corner.TOP_LEFT:
        return str(m), str(m)
    if corner == Corner.TOP_RIGHT:
        return right, str(m)
    if corner == Corner.BOTTOM_LEFT:
        return str(m), bottom
    return right, bottom


def build_filter(corner: Corner, margin: int, wm_width: Optional[int] = None) -> str:
    x, y = overlay_position(corner, margin)
    if wm_width and int(wm_width) > 0:
        return f"[1:v]scale={int(wm_width)}:-1[wm];[0:v][wm]overlay={x}:{y}:format=auto"
    return f"[0:v][1:v]overlay={x}:{y}:format=auto"


def build_ffmpeg_command(
    input_path: Path,
    watermark_path: Path,
    output: str,
    *,
    corner: Corner = Corner.BOTTOM_RIGHT,
    margin: int = DEFAULT_MARGIN,
    wm_width: Optional[int] = None,
    preset: str = "ultrafast",
    crf: int = 20,
    threads: int = 2,
    binary: str = "ffmpeg",
) -> List[str]:
    cmd = [
        binary,
        "-y",
        "-nostdin",
        "-i",
        str(input_path),
        "-i",
        str(watermark_path),
        "-filter_complex",
        build_filter(corner, margin, wm_width),
        "-c:v",
        "libx264",
        "-preset",
        preset,
        "-crf",
        str(crf),
        "-pix_fmt",
        "yuv420p",
        "-c:a",
        "copy",
    ]
    if threads > 0:
        cmd += ["-threads", str(threads)]
    if output == STREAM_OUTPUT:
        # Fragmented MP4 can be written to a non-seekable pipe
        cmd += ["-movflags", STREAM_MOVFLAGS, "-f", "mp4"]
    cmd.append(output)
    return cmd


class FFmpegProgressParser:
    """Turn ffmpeg stderr lines into an encoding percentage.

    The total duration is read from the ``Duration:`` line ffmpeg prints for the
    first input, so no separate probe is needed.
    """

    _DURATION_PATTERN = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
    _TIME_PATTERN = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")

    def __init__(self, callback: Callable[[float], None], total_seconds: Optional[float] = None) -> None:
        self._callback = callback
        self._total = total_seconds
        self._last_percent = -1.0

    @staticmethod
    def _seconds(match: "re.Match[str]") -> float:
        hours, minutes, seconds = match.groups()
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)

    def __call__(self, line: str) -> None:
        if self._total is None:
            match = self._DURATION_PATTERN.search(line)
            if match:
                self._total = max(self._seconds(match), 0.001)
            return
        match = self._TIME_PATTERN.search(line)
        if not match:
            return
        percent = min(99.0, (self._seconds(match) / self._total) * 100.0)
        if percent <= self._last_percent + 0.5:
            return
        self._last_percent = percent
        self._callback(percent)


def save_log(log_path: Path, logs_dir: Path, operation: str) -> Optional[Path]:
    """Copy an ffmpeg log into the persistent logs directory and return the saved path."""
    if not log_path.exists():
        return None
    now = datetime.now(timezone.utc)
    folder = logs_dir / now.strftime("%Y%m%d")
    try:
        folder.mkdir(parents=True, exist_ok=True)
        dst = folder / (now.strftime("%Y%m%d_%H%M%S_") + uuid4().hex[:8] + f"_{operation}.log")
        shutil.copy2(str(log_path), str(dst))
        return dst
    except OSError as exc:
        logger.warning("Failed to save ffmpeg log %s: %s", log_path, exc)
        return None


def _child_setup() -> None:
    signal.signal(signal.SIGTERM, signal.SIG_DFL)


class TransformTask:
    """Owns one ffmpeg subprocess.

    ``start`` spawns it, ``wait`` resolves to success or raises
    :class:`ProcessError`, ``iter_output`` yields stdout in streaming mode and
    ``cancel`` terminates it (SIGTERM, then SIGKILL after the grace period).
    """

    def __init__(
        self,
        cmd: List[str],
        *,
        timeout: float,
        log_path: Optional[Path] = None,
        progress: Optional[Callable[[str], None]] = None,
        stream_output: bool = False,
        terminate_grace: float = 5.0,
    ) -> None:
        self.cmd = cmd
        self.timeout = timeout
        self.log_path = log_path
        self.stream_output = stream_output
        self.terminate_grace = terminate_grace
        self.cancelled = False
        self._progress = progress
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._log_handle: Optional[IO[str]] = None
        self._stderr_task: Optional["asyncio.Task[None]"] = None
        self._stdout_task: Optional["asyncio.Task[None]"] = None
        # None marks end of output
        self._chunks: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=STREAM_BUFFER_CHUNKS)
        self._discard_output = False
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._started_at: Optional[float] = None

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def _remaining(self) -> float:
        if self._started_at is None:
            return self.timeout
        return self.timeout - (time.monotonic() - self._started_at)

    async def start(self) -> "TransformTask":
        if self._proc is not None:
            raise RuntimeError("transform already started")
        kwargs: Dict[str, Any] = {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE if self.stream_output else asyncio.subprocess.DEVNULL,
            "stderr": asyncio.subprocess.PIPE,
        }
        if os.name != "nt":
            kwargs["preexec_fn"] = _child_setup
        try:
            self._proc = await asyncio.create_subprocess_exec(*self.cmd, **kwargs)
        except (OSError, ValueError) as exc:
            logger.error("Failed to launch ffmpeg command %s: %s", self.cmd, exc)
            flush_logs()
            raise ProcessError(f"Failed to start ffmpeg: {exc}") from exc
        self._started_at = time.monotonic()
        if self.log_path is not None:
            self._log_handle = self.log_path.open("w", encoding="utf-8", errors="ignore")
        self._stderr_task = asyncio.create_task(self._pump_stderr())
        if self.stream_output:
            self._stdout_task = asyncio.create_task(self._pump_stdout())
        logger.info("Started ffmpeg pid=%s", self._proc.pid)
        return self

    async def _pump_stderr(self) -> None:
        stream = self._proc.stderr if self._proc is not None else None
        if stream is None:
            return
        buffer = ""
        while True:
            # Small reads capture ffmpeg's \r-terminated stats lines
            chunk = await stream.read(1024)
            if not chunk:
                break
            buffer += chunk.decode("utf-8", errors="ignore")
            parts = re.split(r"[\r\n]", buffer)
            buffer = parts[-1]
            for line in parts[:-1]:
                if line:
                    self._handle_line(line)
        if buffer:
            self._handle_line(buffer)

    async def _pump_stdout(self) -> None:
        # Sole reader of stdout; terminate() flips to discard mode so the pipe
        # keeps draining after the consumer is gone.
        stream = self._proc.stdout if self._proc is not None else None
        if stream is None:
            return
        while True:
            chunk = await stream.read(STREAM_CHUNK_SIZE)
            if not chunk:
                break
            if not self._discard_output:
                await self._chunks.put(chunk)
        if self._discard_output:
            self._clear_chunks()
            self._chunks.put_nowait(None)
        else:
            await self._chunks.put(None)

    def _clear_chunks(self) -> None:
        while not self._chunks.empty():
            self._chunks.get_nowait()

    def _handle_line(self, line: str) -> None:
        self._stderr_tail.append(line)
        if self._log_handle is not None:
            self._log_handle.write(line + "\n")
        if self._progress is not None:
            try:
                self._progress(line)
            except Exception as exc:
                logger.debug("Progress parser failed on line: %s - %s", line[:100], exc)

    async def _finish_pump(self) -> None:
        for pump in (self._stderr_task, self._stdout_task):
            if pump is None:
                continue
            try:
                await asyncio.wait_for(asyncio.shield(pump), timeout=5)
            except asyncio.TimeoutError:
                pump.cancel()
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

    async def _on_timeout(self) -> TransformTimeout:
        logger.error(
            "FFmpeg process timed out after %d seconds for command: %s",
            self.timeout,
            " ".join(self.cmd[:10]),
        )
        flush_logs()
        await self.terminate()
        return TransformTimeout(
            f"ffmpeg timed out after {self.timeout} seconds",
            exit_code=self.returncode,
            stderr_tail=self.stderr_tail,
        )

    async def iter_output(self) -> AsyncIterator[bytes]:
        if self._stdout_task is None:
            raise RuntimeError("transform was not started in streaming mode")
        while True:
            try:
                chunk = await asyncio.wait_for(self._chunks.get(), timeout=max(self._remaining(), 0))
            except asyncio.TimeoutError:
                raise await self._on_timeout()
            if chunk is None:
                return
            yield chunk

    async def wait(self) -> None:
        if self._proc is None:
            raise RuntimeError("transform was not started")
        try:
            return_code = await asyncio.wait_for(self._proc.wait(), timeout=max(self._remaining(), 0))
        except asyncio.TimeoutError:
            raise await self._on_timeout()
        await self._finish_pump()
        if return_code != 0:
            reason = "terminated" if self.cancelled else f"exited with {return_code}"
            raise ProcessError(
                f"ffmpeg {reason}",
                exit_code=return_code,
                stderr_tail=self.stderr_tail,
            )

    async def terminate(self, grace: Optional[float] = None) -> None:
        proc = self._proc
        # Nobody reads the queue from here on; unblock a pending put
        self._discard_output = True
        self._clear_chunks()
        if proc is None or proc.returncode is not None:
            await self._finish_pump()
            return
        grace = self.terminate_grace if grace is None else grace
        try:
            proc.terminate()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("ffmpeg pid=%s ignored SIGTERM, killing", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=1)
            except asyncio.TimeoutError:
                logger.error("ffmpeg pid=%s did not exit after SIGKILL", proc.pid)
        await self._finish_pump()

    async def cancel(self, grace: Optional[float] = None) -> None:
        """Stop the transform because its consumer went away.

        Safe after the process has exited: queued output is still discarded
        and the pumps and log file are closed.
        """
        was_running = self.running
        if was_running:
            self.cancelled = True
        await self.terminate(grace)
        if was_running:
            struct_logger.info("transform_cancelled", pid=self.pid, returncode=self.returncode)


class WatermarkTransformer:
    """Builds and runs ffmpeg watermark invocations with the configured encoder settings."""

    def __init__(
        self,
        *,
        binary: str = "ffmpeg",
        preset: str = "ultrafast",
        crf: int = 20,
        threads: int = 2,
        timeout: float = 120,
        logs_dir: Optional[Path] = None,
        default_wm_width: int = 0,
    ) -> None:
        self.binary = binary
        self.preset = preset
        self.crf = crf
        self.threads = threads
        self.timeout = timeout
        self.logs_dir = logs_dir
        self.default_wm_width = default_wm_width

    def command(
        self,
        input_path: Path,
        watermark_path: Path,
        output: str,
        *,
        corner: Corner,
        margin: int,
        wm_width: Optional[int] = None,
    ) -> List[str]:
        return build_ffmpeg_command(
            input_path,
            watermark_path,
            output,
            corner=corner,
            margin=margin,
            wm_width=wm_width or self.default_wm_width or None,
            preset=self.preset,
            crf=self.crf,
            threads=self.threads,
            binary=self.binary,
        )

    def _keep_log(self, log_path: Optional[Path], operation: str) -> None:
        if log_path is not None and self.logs_dir is not None:
            save_log(log_path, self.logs_dir, operation)

    async def render_to_file(
        self,
        input_path: Path,
        watermark_path: Path,
        output_path: Path,
        *,
        corner: Corner,
        margin: int,
        wm_width: Optional[int] = None,
        log_path: Optional[Path] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> Path:
        cmd = self.command(input_path, watermark_path, str(output_path), corner=corner, margin=margin, wm_width=wm_width)
        parser = FFmpegProgressParser(on_progress) if on_progress is not None else None
        task = TransformTask(cmd, timeout=self.timeout, log_path=log_path, progress=parser)
        await task.start()
        try:
            await task.wait()
        except ProcessError:
            self._keep_log(log_path, "watermark")
            raise
        finally:
            if task.running:
                await task.terminate()
        if not output_path.exists():
            self._keep_log(log_path, "watermark")
            raise ProcessError("ffmpeg produced no output", exit_code=task.returncode, stderr_tail=task.stderr_tail)
        return output_path

    async def start_stream(
        self,
        input_path: Path,
        watermark_path: Path,
        *,
        corner: Corner,
        margin: int,
        wm_width: Optional[int] = None,
        log_path: Optional[Path] = None,
    ) -> TransformTask:
        cmd = self.command(input_path, watermark_path, STREAM_OUTPUT, corner=corner, margin=margin, wm_width=wm_width)
        task = TransformTask(cmd, timeout=self.timeout, log_path=log_path, stream_output=True)
        return await task.start()
