"""Pytest configuration and fixtures for scheduled-job tests"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from scheduled_job.core.config import JobConfig, LockStrategy
from scheduled_job.core.constants import MONITORED_ENV_VARS


@pytest.fixture(autouse=True)
def clean_job_environment(monkeypatch):
    """Keep host environment variables out of configuration resolution"""
    for name in MONITORED_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)


@pytest.fixture(autouse=True)
def reset_root_logging():
    """Drop handlers installed by setup_logging so they don't outlive capsys streams"""
    before = list(logging.root.handlers)
    level = logging.root.level
    yield
    logging.root.setLevel(level)
    for handler in logging.root.handlers[:]:
        if handler not in before:
            handler.close()
            logging.root.removeHandler(handler)


@pytest.fixture
def lock_dirs(tmp_path) -> dict[str, Path]:
    """Isolated directories for mutexes, lock files and completion markers"""
    dirs = {
        "mutex_dir": tmp_path / "mutexes",
        "lock_dir": tmp_path / "locks",
        "marker_dir": tmp_path / "markers",
    }
    for path in dirs.values():
        path.mkdir()
    return dirs


@pytest.fixture
def make_config(lock_dirs):
    """Factory for JobConfig objects rooted in tmp_path"""

    def _make(
        instance_name: str = "test-job",
        strategy: LockStrategy = LockStrategy.MUTEX,
        duration_seconds: int = 0,
        **overrides,
    ) -> JobConfig:
        values = {
            "instance_name": instance_name,
            "lock_strategy": strategy,
            "duration_seconds": duration_seconds,
            "lock_file": lock_dirs["lock_dir"] / f"{instance_name or 'unnamed'}.lock",
            "mutex_dir": lock_dirs["mutex_dir"],
            "marker_dir": lock_dirs["marker_dir"],
        }
        values.update(overrides)
        return JobConfig(**values)

    return _make

