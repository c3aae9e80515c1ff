"""In-memory registry for background watermark jobs.

Lifecycle: ``queued -> processing -> completed | failed``.  A completed job
keeps exactly one file (its output) until it is claimed or its TTL runs out;
a failed job keeps no files and only its error until the TTL sweep drops it.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .errors import JobNotFound, JobNotReady
from .log import logger, struct_logger
from .models import WatermarkOptions
from .workspace import Workspace

JOB_HISTORY_LIMIT = 20


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: str
    options: WatermarkOptions
    workspace: Workspace
    status: JobStatus = JobStatus.QUEUED
    created: float = field(default_factory=time.time)
    updated: float = field(default_factory=time.time)
    started: Optional[float] = None
    finished: Optional[float] = None
    progress: int = 0
    message: str = "Queued"
    output_path: Optional[Path] = None
    error: Optional[str] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, progress: int, message: str, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        self.progress = max(0, min(100, int(progress)))
        self.message = message
        self.updated = now
        self.history.append({"timestamp": now, "progress": self.progress, "message": message})
        if len(self.history) > JOB_HISTORY_LIMIT:
            self.history = self.history[-JOB_HISTORY_LIMIT:]

    def view(self) -> Dict[str, Any]:
        ready = self.status == JobStatus.COMPLETED
        payload: Dict[str, Any] = {
            "jobId": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "ready": ready,
            "createdAt": self.created,
            "updatedAt": self.updated,
            "filename": self.options.filename,
            "history": list(self.history),
        }
        if self.started is not None:
            payload["startedAt"] = self.started
        if self.finished is not None:
            payload["finishedAt"] = self.finished
        if self.status == JobStatus.FAILED:
            payload["error"] = self.error
        return payload


class JobRegistry:
    """Owns every job; all access goes through short critical sections on one lock."""

    def __init__(self, ttl_seconds: float = 3600) -> None:
        self.ttl_seconds = ttl_seconds
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def create(self, options: WatermarkOptions, workspace: Workspace) -> Job:
        job = Job(id=uuid4().hex, options=options, workspace=workspace)
        job.record(0, "Queued", job.created)
        with self._lock:
            self._jobs[job.id] = job
        struct_logger.info("job_created", job_id=job.id, corner=options.position.value)
        return job

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def get(self, job_id: str) -> Dict[str, Any]:
        with self._lock:
            return self._require(job_id).view()

    def status(self, job_id: str) -> JobStatus:
        with self._lock:
            return self._require(job_id).status

    def mark_processing(self, job_id: str) -> None:
        with self._lock:
            job = self._require(job_id)
            now = time.time()
            job.status = JobStatus.PROCESSING
            job.started = now
            job.record(5, "Job started", now)
        struct_logger.info("job_started", job_id=job_id)

    def update_progress(self, job_id: str, percent: float, message: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return
            clamped = int(percent)
            if clamped == job.progress and message == job.message:
                return
            job.record(clamped, message)

    def complete(self, job_id: str, output_path: Path) -> None:
        with self._lock:
            job = self._require(job_id)
            now = time.time()
            job.status = JobStatus.COMPLETED
            job.output_path = output_path
            job.finished = now
            job.record(100, "Completed", now)
            workspace = job.workspace
            duration = now - (job.started or job.created)
        # Inputs and any downloaded watermark are no longer needed
        workspace.prune(keep=output_path)
        struct_logger.info("job_completed", job_id=job_id, duration_ms=round(duration * 1000, 1))

    def fail(self, job_id: str, error: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            now = time.time()
            job.status = JobStatus.FAILED
            job.error = error
            job.output_path = None
            job.finished = now
            job.record(100, "Failed", now)
            workspace = job.workspace
        workspace.remove()
        struct_logger.error("job_failed", job_id=job_id, error=error)

    def claim(self, job_id: str) -> Job:
        """Take a completed job out of the registry.

        The caller streams ``job.output_path`` and then releases ``job.workspace``.
        Whoever pops the entry first (a claim or the TTL sweep) owns the files.
        """
        with self._lock:
            job = self._require(job_id)
            if job.status == JobStatus.FAILED:
                raise JobNotReady(f"Job {job_id} failed: {job.error}")
            if job.status != JobStatus.COMPLETED:
                raise JobNotReady(f"Job {job_id} is {job.status.value}")
            del self._jobs[job_id]
        struct_logger.info("job_claimed", job_id=job_id)
        return job

    def sweep(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        cutoff = now - self.ttl_seconds
        expired: List[Job] = []
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if job.status not in {JobStatus.COMPLETED, JobStatus.FAILED}:
                    continue
                if (job.finished or job.updated) < cutoff:
                    expired.append(self._jobs.pop(job_id))
        for job in expired:
            job.workspace.remove()
            struct_logger.info("job_expired", job_id=job.id, status=job.status.value)
        if expired:
            logger.info("Swept %d expired jobs", len(expired))
        return len(expired)

    def drain(self) -> int:
        """Remove every job and its files (shutdown)."""
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
        for job in jobs:
            job.workspace.remove()
        return len(jobs)

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status.value] += 1
        return counts


class JobProgressReporter:
    """Maps pipeline stages and ffmpeg encoding percentage onto a job's progress."""

    ENCODE_START = 30
    ENCODE_END = 95

    def __init__(self, registry: JobRegistry, job_id: str) -> None:
        self.registry = registry
        self.job_id = job_id

    def stage(self, percent: int, message: str) -> None:
        self.registry.update_progress(self.job_id, percent, message)

    def encoding(self, percent: float) -> None:
        span = self.ENCODE_END - self.ENCODE_START
        mapped = self.ENCODE_START + span * max(0.0, min(100.0, percent)) / 100.0
        self.registry.update_progress(self.job_id, mapped, "Encoding")
