# api/models.py
from __future__ import annotations
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from storage.jobs import Job

JobStatus = Literal["pending", "processing", "completed", "failed"]
JobPhase = Literal["extracting", "detecting", "rendering", "packaging"]

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class Progress(CamelModel):
    current: int = 0
    total: int = 0

class JobInfo(CamelModel):
    job_id: str
    status: JobStatus
    phase: Optional[JobPhase] = None
    progress: Progress = Progress()
    error: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobInfo":
        return cls(
            job_id=job.id,
            status=job.status.value,
            phase=job.phase.value if job.phase else None,
            progress=Progress(current=job.current, total=job.total),
            error=job.error,
            created_at=job.created_at.isoformat(),
            completed_at=job.completed_at.isoformat() if job.completed_at else None,
        )

class JobAccepted(CamelModel):
    job_id: str
    status: JobStatus = "pending"

class ErrorBody(CamelModel):
    error: str
    retry_after_seconds: Optional[int] = None
