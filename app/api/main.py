# api/main.py
from __future__ import annotations
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from api.models import ErrorBody, JobAccepted, JobInfo
from core.config import settings
from core.errors import AdmissionRejected, Expired, NotFound, NotReady, SlideCaptureError
from core.logs import configure_logging
from storage.jobs import JobManager
from worker.browser import SurfacePool
from worker.capture import RESOLUTION_SCALE, CaptureOrchestrator
from worker.runner import JobRunner

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

# --- process-wide singletons ---
manager = JobManager(
    work_root=settings.work_root,
    max_concurrent_jobs=settings.max_concurrent_jobs,
    job_ttl_seconds=settings.job_ttl_seconds,
    cleanup_interval_seconds=settings.cleanup_interval_seconds,
)
pool = SurfacePool()
runner = JobRunner(manager, CaptureOrchestrator(pool), settings)
STARTED_AT = time.monotonic()

QUERY_ERROR_STATUS = {NotFound: 404, NotReady: 400, Expired: 410}

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.work_root.mkdir(parents=True, exist_ok=True)
    manager.start_sweeper()
    logger.info("Slide capture API started (env=%s, max_jobs=%d)", settings.app_env, settings.max_concurrent_jobs)
    try:
        yield
    finally:
        logger.info("Shutting down")
        await manager.stop_sweeper()
        await pool.shutdown()

app = FastAPI(title="Slide Capture API", version="1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins if settings.is_production else ["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)

@app.exception_handler(SlideCaptureError)
async def slide_capture_error_handler(request: Request, exc: SlideCaptureError):
    if isinstance(exc, AdmissionRejected):
        body = ErrorBody(error=exc.detail, retry_after_seconds=settings.retry_after_seconds)
        return JSONResponse(
            status_code=503,
            content=body.model_dump(by_alias=True),
            headers={"Retry-After": str(settings.retry_after_seconds)},
        )
    status = QUERY_ERROR_STATUS.get(type(exc), 500)
    if status == 500:
        logger.error("Unhandled error on %s: %s", request.url.path, exc.detail)
    return JSONResponse(status_code=status, content=ErrorBody(error=exc.detail).model_dump(by_alias=True, exclude_none=True))

@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

@app.get("/api/health")
def health():
    return {"status": "ok", "uptime": round(time.monotonic() - STARTED_AT, 1)}

@app.post("/api/render", status_code=202, response_model=JobAccepted)
async def submit_render(
    background_tasks: BackgroundTasks,
    zip_file: Optional[UploadFile] = File(None, alias="zipFile"),
    resolution: str = Form("hd"),
):
    if zip_file is None:
        raise HTTPException(status_code=400, detail="No ZIP file provided")
    if resolution not in RESOLUTION_SCALE:
        raise HTTPException(status_code=400, detail=f"Invalid resolution: {resolution}")

    payload = await zip_file.read()
    if not payload:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(payload) > settings.max_file_size_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum size is {settings.max_file_size_mb}MB.",
        )

    if not manager.try_admit():
        raise AdmissionRejected("Server busy. Please try again shortly.")

    job_id = manager.create(resolution)
    background_tasks.add_task(runner.run, job_id, payload, zip_file.filename)
    return JobAccepted(job_id=job_id)

@app.get("/api/jobs/{job_id}", response_model=JobInfo)
def get_job(job_id: str):
    return JobInfo.from_job(manager.require(job_id))

@app.get("/api/jobs/{job_id}/download")
def download_slides(job_id: str):
    output = manager.output_for(job_id)
    return FileResponse(
        output,
        media_type="application/zip",
        filename=f"slides-{job_id}.zip",
    )

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
