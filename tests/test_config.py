from pathlib import Path

import pytest

from core.config import load_settings


def test_defaults_when_unset(monkeypatch):
    for name in ("MAX_CONCURRENT_JOBS", "JOB_TIMEOUT_MINUTES", "PORT", "APP_ENV"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.max_concurrent_jobs == 3
    assert settings.job_timeout_seconds == 300
    assert settings.port == 3001
    assert not settings.is_production


def test_values_are_read_from_the_environment(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("MAX_CONCURRENT_JOBS", " 5 ")
    monkeypatch.setenv("JOB_TTL_MINUTES", "2")
    monkeypatch.setenv("MAX_FILE_SIZE_MB", "1")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("WORK_ROOT", str(tmp_path))
    settings = load_settings()
    assert settings.max_concurrent_jobs == 5
    assert settings.job_ttl_seconds == 120
    assert settings.max_file_size_bytes == 1024 * 1024
    assert settings.allowed_origins == ["https://a.example", "https://b.example"]
    assert settings.work_root == tmp_path


def test_malformed_integer_fails_at_startup(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENT_JOBS", "abc")
    with pytest.raises(ValueError, match="MAX_CONCURRENT_JOBS"):
        load_settings()
