"""Per-request scratch directories and upload persistence.

A :class:`Workspace` is acquired when a request or job starts and released on
every exit path.  Releasing is idempotent and never raises: deletion problems
are logged so they cannot mask the outcome of the operation that used it.
"""

import shutil
import tempfile
import time
from pathlib import Path
from typing import Optional, Union

from fastapi import UploadFile

from .errors import InsufficientStorage, InvalidInput, PayloadTooLarge, ServiceError
from .log import flush_logs, logger

WORKSPACE_PREFIX = "wmk-"


def safe_unlink(path: Optional[Union[str, Path]]) -> None:
    if not path:
        return
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to delete %s: %s", path, exc)


def check_disk_space(path: Path, required_mb: int) -> None:
    target = path if path.exists() else path.parent
    target.mkdir(parents=True, exist_ok=True)
    stat = shutil.disk_usage(target)
    available_mb = stat.free / (1024 * 1024)
    if available_mb < required_mb:
        logger.warning(
            "Insufficient disk space at %s: %.1f MB available, %d MB required",
            target,
            available_mb,
            required_mb,
        )
        flush_logs()
        raise InsufficientStorage("Insufficient disk space")


class Workspace:
    """A uniquely named temporary directory owned by one request or job."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._removed = False

    @classmethod
    def create(cls, base: Path, prefix: str = WORKSPACE_PREFIX) -> "Workspace":
        base.mkdir(parents=True, exist_ok=True)
        return cls(Path(tempfile.mkdtemp(prefix=prefix, dir=str(base))))

    @property
    def removed(self) -> bool:
        return self._removed

    def path(self, name: str) -> Path:
        return self.root / name

    def prune(self, keep: Path) -> None:
        """Delete every file except ``keep``."""
        try:
            children = list(self.root.iterdir())
        except FileNotFoundError:
            return
        for child in children:
            if child == keep:
                continue
            if child.is_dir():
                shutil.rmtree(child, ignore_errors=True)
            else:
                safe_unlink(child)

    def remove(self) -> None:
        if self._removed:
            return
        self._removed = True
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove workspace %s: %s", self.root, exc)

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.remove()

    def __repr__(self) -> str:
        return f"Workspace({str(self.root)!r})"


def cleanup_stale_workspaces(base: Path, max_age_seconds: float, *, prefix: str = WORKSPACE_PREFIX) -> int:
    """Remove leftover workspaces (e.g. from a crashed process) older than ``max_age_seconds``."""
    if not base.exists():
        return 0
    cutoff = time.time() - max_age_seconds
    removed = 0
    for child in base.iterdir():
        if not child.is_dir() or not child.name.startswith(prefix):
            continue
        try:
            if child.stat().st_mtime >= cutoff:
                continue
        except FileNotFoundError:
            continue
        try:
            shutil.rmtree(child)
            removed += 1
        except OSError as exc:
            logger.warning("Failed to remove stale workspace %s: %s", child, exc)
    if removed:
        logger.info("Cleanup: removed %s stale workspaces from %s", removed, base)
    return removed


def ensure_upload_type(upload: UploadFile, expected_prefix: str, field: str) -> None:
    content_type = (upload.content_type or "").lower()
    if not content_type.startswith(expected_prefix):
        logger.warning(
            "%s upload rejected due to invalid content-type: %s",
            field,
            content_type or "unknown",
        )
        raise InvalidInput(f"{field} must be {expected_prefix}, got {content_type or 'unknown'}")


async def stream_upload_to_path(
    upload: UploadFile,
    dest: Path,
    *,
    max_bytes: int,
    chunk_size: int = 1024 * 1024,
) -> int:
    await upload.seek(0)
    total = 0
    temp_dest = dest.with_name(dest.name + ".partial")
    try:
        with temp_dest.open("wb") as buffer:
            while True:
                chunk = await upload.read(chunk_size)
                if not chunk:
                    break
                if total + len(chunk) > max_bytes:
                    logger.warning("Upload exceeded max size: %s", upload.filename)
                    flush_logs()
                    raise PayloadTooLarge("File too large")
                buffer.write(chunk)
                total += len(chunk)
    except ServiceError:
        safe_unlink(temp_dest)
        raise
    except Exception as exc:
        safe_unlink(temp_dest)
        logger.error("Failed to persist upload %s: %s", upload.filename, exc)
        flush_logs()
        raise ServiceError("Failed to save upload") from exc
    temp_dest.replace(dest)
    return total
