# worker/runner.py
from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import Optional

from core.config import Settings
from core.errors import SlideCaptureError
from storage import archive
from storage.jobs import JobManager, JobPhase
from storage.package import package
from storage.workspace import Workspace, remove_tree, workspace_for
from worker.cancel import CancelToken
from worker.capture import RESOLUTION_SCALE, CaptureOrchestrator
from worker.detector import detect

logger = logging.getLogger(__name__)

class JobRunner:
    """
    Runs one job's pipeline: extract -> detect -> render -> package.

    The caller must already hold an admission slot (JobManager.try_admit);
    run() gives it back on every exit path.
    """

    def __init__(self, manager: JobManager, capture: CaptureOrchestrator, settings: Settings):
        self.manager = manager
        self.capture = capture
        self.settings = settings

    async def run(self, job_id: str, payload: bytes, filename: Optional[str] = None) -> None:
        manager = self.manager
        job = manager.get(job_id)
        if job is None:
            manager.release()
            return

        cancel = CancelToken()
        timeout_s = self.settings.job_timeout_seconds
        timer: Optional[asyncio.TimerHandle] = None
        workspace: Optional[Workspace] = None
        completed = False

        def on_timeout() -> None:
            cancel.cancel("Job timed out")
            manager.fail(job_id, f"Job timed out after {timeout_s:g} seconds")

        try:
            workspace = workspace_for(self.settings.work_root, job_id)
            await asyncio.to_thread(workspace.ensure)
            manager.mark_processing(job_id, workspace)
            timer = asyncio.get_running_loop().call_later(timeout_s, on_timeout)

            manager.set_phase(job_id, JobPhase.extracting)
            extracted = await asyncio.to_thread(
                archive.extract, payload, workspace.input_dir, filename, self.settings.max_extracted_bytes
            )
            payload = b""
            cancel.raise_if_cancelled()

            manager.set_phase(job_id, JobPhase.detecting)
            layout = await asyncio.to_thread(detect, extracted.root_dir)
            manager.publish_progress(job_id, 0, layout.slide_count)
            cancel.raise_if_cancelled()

            manager.set_phase(job_id, JobPhase.rendering)
            captured = await self.capture.capture(
                layout,
                extracted.root_dir,
                workspace.output_dir,
                cancel,
                manager.progress_sink(job_id),
                device_scale_factor=RESOLUTION_SCALE.get(job.resolution, 1.0),
            )
            cancel.raise_if_cancelled()

            manager.set_phase(job_id, JobPhase.packaging)
            output = await asyncio.to_thread(
                package, workspace.output_dir, workspace.archive_path, captured
            )
            cancel.raise_if_cancelled()

            completed = manager.complete(job_id, output)

        except SlideCaptureError as e:
            manager.fail(job_id, e.detail)
        except asyncio.CancelledError:
            manager.fail(job_id, "Job cancelled")
            raise
        except Exception as e:
            logger.exception("Job %s crashed", job_id)
            manager.fail(job_id, f"{type(e).__name__}: {e}")
        finally:
            if timer is not None:
                timer.cancel()
            if workspace is not None:
                await asyncio.to_thread(self._cleanup, workspace, completed)
            manager.release()

    def _cleanup(self, workspace: Workspace, completed: bool) -> None:
        root = Path(self.settings.work_root)
        if completed:
            # keep only slides.zip until the job expires
            remove_tree(workspace.input_dir, root)
            remove_tree(workspace.output_dir, root)
        else:
            remove_tree(workspace.base, root)
