# core/config.py
from __future__ import annotations
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None

def _origins_env() -> List[str]:
    raw = os.environ.get("ALLOWED_ORIGINS", "")
    if not raw.strip():
        return ["http://localhost:5173"]
    return [s.strip() for s in raw.split(",") if s.strip()]

@dataclass(frozen=True)
class Settings:
    app_env: str = "development"
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    allowed_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])

    max_file_size_mb: int = 50
    max_extracted_mb: int = 500

    max_concurrent_jobs: int = 3
    job_timeout_seconds: float = 5 * 60
    job_ttl_seconds: float = 30 * 60
    cleanup_interval_seconds: float = 60
    retry_after_seconds: int = 30

    work_root: Path = Path(tempfile.gettempdir()) / "slidecapture"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def max_extracted_bytes(self) -> int:
        return self.max_extracted_mb * 1024 * 1024

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

def load_settings() -> Settings:
    work_root = os.environ.get("WORK_ROOT", "")
    return Settings(
        app_env=os.environ.get("APP_ENV", "development"),
        host=os.environ.get("HOST", "0.0.0.0"),
        port=_int_env("PORT", 3001),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        allowed_origins=_origins_env(),
        max_file_size_mb=_int_env("MAX_FILE_SIZE_MB", 50),
        max_extracted_mb=_int_env("MAX_EXTRACTED_MB", 500),
        max_concurrent_jobs=_int_env("MAX_CONCURRENT_JOBS", 3),
        job_timeout_seconds=_int_env("JOB_TIMEOUT_MINUTES", 5) * 60,
        job_ttl_seconds=_int_env("JOB_TTL_MINUTES", 30) * 60,
        cleanup_interval_seconds=_int_env("CLEANUP_INTERVAL_SECONDS", 60),
        retry_after_seconds=_int_env("RETRY_AFTER_SECONDS", 30),
        work_root=Path(work_root) if work_root else Path(tempfile.gettempdir()) / "slidecapture",
    )

settings = load_settings()
