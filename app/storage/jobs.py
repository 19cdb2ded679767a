# storage/jobs.py
from __future__ import annotations
import asyncio
import enum
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from core.errors import Expired, NotFound, NotReady
from storage.workspace import Workspace, remove_tree

logger = logging.getLogger(__name__)

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

class JobStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

class JobPhase(str, enum.Enum):
    extracting = "extracting"
    detecting = "detecting"
    rendering = "rendering"
    packaging = "packaging"

PHASE_ORDER = [JobPhase.extracting, JobPhase.detecting, JobPhase.rendering, JobPhase.packaging]
TERMINAL = (JobStatus.completed, JobStatus.failed)

@dataclass
class Job:
    id: str
    resolution: str = "hd"
    status: JobStatus = JobStatus.pending
    phase: Optional[JobPhase] = None
    current: int = 0
    total: int = 0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    output_path: Optional[Path] = None
    workspace: Optional[Workspace] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

class ProgressSink:
    """What the capture stage publishes (done, total) to; the status endpoint reads the Job."""

    def __init__(self, manager: "JobManager", job_id: str):
        self._manager = manager
        self.job_id = job_id

    def publish(self, current: int, total: int) -> None:
        self._manager.publish_progress(self.job_id, current, total)

class JobManager:
    """
    In-memory job table, keyed by job id.

    One instance per process. Each record is written by the pipeline that
    owns it, and evicted by the cleanup sweep once it has been terminal for
    longer than job_ttl_seconds.
    """

    def __init__(
        self,
        work_root: Path,
        max_concurrent_jobs: int = 3,
        job_ttl_seconds: float = 30 * 60,
        cleanup_interval_seconds: float = 60,
    ):
        self.work_root = Path(work_root)
        self.max_concurrent_jobs = max_concurrent_jobs
        self.job_ttl = timedelta(seconds=job_ttl_seconds)
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.jobs: Dict[str, Job] = {}
        self._active = 0
        self._sweeper: Optional[asyncio.Task] = None

    # --- admission ---
    @property
    def active_count(self) -> int:
        return self._active

    def try_admit(self) -> bool:
        # check and reserve in one step: no await in between, so concurrent
        # submissions on the event loop cannot overshoot the ceiling
        if self._active >= self.max_concurrent_jobs:
            return False
        self._active += 1
        logger.debug("Slot reserved, active=%d", self._active)
        return True

    def release(self) -> None:
        self._active = max(0, self._active - 1)
        logger.debug("Slot released, active=%d", self._active)

    # --- records ---
    def create(self, resolution: str = "hd") -> str:
        job_id = secrets.token_urlsafe(9)
        while job_id in self.jobs:
            job_id = secrets.token_urlsafe(9)
        self.jobs[job_id] = Job(id=job_id, resolution=resolution)
        logger.info("Job created: %s (resolution=%s)", job_id, resolution)
        return job_id

    def get(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    def require(self, job_id: str) -> Job:
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFound("Job not found")
        return job

    def mark_processing(self, job_id: str, workspace: Workspace) -> None:
        job = self.jobs.get(job_id)
        if job and job.status == JobStatus.pending:
            job.status = JobStatus.processing
            job.workspace = workspace

    def set_phase(self, job_id: str, phase: JobPhase) -> None:
        job = self.jobs.get(job_id)
        if not job or job.status != JobStatus.processing:
            return
        if job.phase is not None and PHASE_ORDER.index(phase) <= PHASE_ORDER.index(job.phase):
            return
        job.phase = phase
        logger.info("Job %s phase: %s", job_id, phase.value)

    def publish_progress(self, job_id: str, current: int, total: int) -> None:
        job = self.jobs.get(job_id)
        if not job or job.is_terminal:
            return
        if total > 0:
            job.total = total
        job.current = max(job.current, current)

    def progress_sink(self, job_id: str) -> ProgressSink:
        return ProgressSink(self, job_id)

    def complete(self, job_id: str, output_path: Path) -> bool:
        job = self.jobs.get(job_id)
        if not job or job.is_terminal:
            return False
        job.status = JobStatus.completed
        job.output_path = Path(output_path)
        job.completed_at = utc_now()
        logger.info("Job completed: %s", job_id)
        return True

    def fail(self, job_id: str, message: str) -> bool:
        """Marks the job failed. The first failure wins; later ones are ignored."""
        job = self.jobs.get(job_id)
        if not job or job.is_terminal:
            return False
        job.status = JobStatus.failed
        job.error = message
        job.completed_at = utc_now()
        logger.error("Job failed: %s: %s", job_id, message)
        return True

    def output_for(self, job_id: str) -> Path:
        job = self.require(job_id)
        if job.status != JobStatus.completed:
            raise NotReady("Job is not ready for download")
        if job.output_path is None or not job.output_path.exists():
            raise Expired("Output file no longer available")
        return job.output_path

    # --- expiry ---
    def expired(self, now: Optional[datetime] = None) -> List[Job]:
        now = now or utc_now()
        return [
            job for job in list(self.jobs.values())
            if job.completed_at is not None and now - job.completed_at > self.job_ttl
        ]

    def _evict(self, now: Optional[datetime]) -> List[Job]:
        evicted = self.expired(now)
        for job in evicted:
            logger.info("Cleaning up expired job: %s", job.id)
            self.jobs.pop(job.id, None)
        return evicted

    def sweep(self, now: Optional[datetime] = None) -> int:
        evicted = self._evict(now)
        for job in evicted:
            if job.workspace is not None:
                remove_tree(job.workspace.base, self.work_root)
        return len(evicted)

    async def sweep_async(self, now: Optional[datetime] = None) -> int:
        # records are evicted on the loop; directory deletion runs in a thread
        evicted = self._evict(now)
        for job in evicted:
            if job.workspace is not None:
                await asyncio.to_thread(remove_tree, job.workspace.base, self.work_root)
        return len(evicted)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                await self.sweep_async()
            except Exception:
                logger.exception("Cleanup sweep failed")

    def start_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())
        logger.info("Job cleanup scheduler started (every %ss)", self.cleanup_interval_seconds)

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
