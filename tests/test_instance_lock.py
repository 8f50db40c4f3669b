"""Tests for InstanceLock acquisition, fallback and cross-process exclusion."""

from __future__ import annotations

import errno
import json
import logging
import os
import socket
import subprocess
import sys
import time
from pathlib import Path

import pytest

import scheduled_job.core.locks.backends as backends_module
from scheduled_job.core.config import LockStrategy
from scheduled_job.core.exceptions import ConfigurationError, LockEnvironmentError
from scheduled_job.core.locks import AcquireStatus, InstanceLock, LockState

_HOLDER_SCRIPT = """
import sys
import time
from pathlib import Path

from scheduled_job.core.locks import InstanceLock

name, strategy, lock_file, mutex_dir, ready_path, hold_seconds = sys.argv[1:7]
lock = InstanceLock(name, strategy, lock_file=Path(lock_file), mutex_dir=Path(mutex_dir))
result = lock.try_acquire()
Path(ready_path).write_text(result.status.value, encoding="utf-8")
time.sleep(float(hold_seconds))
lock.release()
"""


def _make_lock(lock_dirs, name: str = "test-job", strategy=LockStrategy.MUTEX, **kwargs) -> InstanceLock:
    return InstanceLock(
        name,
        strategy,
        lock_file=lock_dirs["lock_dir"] / f"{name}.lock",
        mutex_dir=lock_dirs["mutex_dir"],
        **kwargs,
    )


def _start_holder(lock_dirs, tmp_path: Path, strategy: str, hold_seconds: float, name: str = "test-job"):
    ready_path = tmp_path / f"ready-{strategy}.txt"
    proc = subprocess.Popen(
        [
            sys.executable,
            "-c",
            _HOLDER_SCRIPT,
            name,
            strategy,
            str(lock_dirs["lock_dir"] / f"{name}.lock"),
            str(lock_dirs["mutex_dir"]),
            str(ready_path),
            str(hold_seconds),
        ]
    )
    return proc, ready_path


def _wait_for_ready(path: Path, timeout_seconds: float = 10.0) -> str:
    deadline = time.time() + timeout_seconds
    while time.time() < deadline:
        if path.exists():
            status = path.read_text(encoding="utf-8").strip()
            if status:
                return status
        time.sleep(0.02)
    raise AssertionError(f"Timed out waiting for ready signal: {path}")


def _require_fcntl() -> None:
    if backends_module.fcntl is None:
        pytest.skip("fcntl not available on this platform")


class TestInstanceLockBasics:
    def test_empty_name_is_rejected(self, lock_dirs):
        with pytest.raises(ConfigurationError):
            _make_lock(lock_dirs, name="  ")

    def test_acquire_and_release_mutex(self, lock_dirs):
        _require_fcntl()
        lock = _make_lock(lock_dirs)

        result = lock.try_acquire()

        assert result.acquired
        assert result.status is AcquireStatus.CREATED
        assert lock.held
        assert lock.state is LockState.HELD
        assert lock.active_strategy is LockStrategy.MUTEX
        info = lock.read_info()
        assert info is not None
        assert info["pid"] == os.getpid()
        assert info["owner"] == "test-job"

        lock.release()

        assert not lock.held
        assert lock.state is LockState.RELEASED
        assert lock.active_strategy is None

    def test_release_is_idempotent(self, lock_dirs):
        lock = _make_lock(lock_dirs, strategy=LockStrategy.FILE_LOCK)
        lock.try_acquire()

        lock.release()
        lock.release()

        assert not lock.held
        assert not (lock_dirs["lock_dir"] / "test-job.lock").exists()

    def test_release_without_acquire_is_noop(self, lock_dirs):
        lock = _make_lock(lock_dirs)

        lock.release()

        assert lock.state is LockState.UNLOCKED

    def test_try_acquire_while_held_returns_same_result(self, lock_dirs):
        lock = _make_lock(lock_dirs, strategy=LockStrategy.FILE_LOCK)
        try:
            first = lock.try_acquire()
            second = lock.try_acquire()

            assert second == first
            assert lock.held
        finally:
            lock.release()

    def test_lock_can_be_reacquired_after_release(self, lock_dirs):
        _require_fcntl()
        lock = _make_lock(lock_dirs)

        assert lock.try_acquire().acquired
        lock.release()

        result = lock.try_acquire()
        try:
            assert result.acquired
            assert result.status is AcquireStatus.ACQUIRED
        finally:
            lock.release()

    def test_context_manager_releases_on_exception(self, lock_dirs):
        lock_file = lock_dirs["lock_dir"] / "test-job.lock"

        with pytest.raises(RuntimeError):
            with _make_lock(lock_dirs, strategy=LockStrategy.FILE_LOCK) as lock:
                assert lock.held
                assert lock_file.exists()
                raise RuntimeError("boom")

        assert not lock_file.exists()

    def test_string_strategy_is_parsed(self, lock_dirs):
        lock = _make_lock(lock_dirs, strategy="file-lock")

        assert lock.strategy is LockStrategy.FILE_LOCK


@pytest.mark.parametrize("strategy", [LockStrategy.MUTEX, LockStrategy.FILE_LOCK])
class TestInstanceLockExclusion:
    def test_second_lock_with_same_name_is_contended(self, lock_dirs, strategy):
        if strategy is LockStrategy.MUTEX:
            _require_fcntl()
        first = _make_lock(lock_dirs, strategy=strategy)
        second = _make_lock(lock_dirs, strategy=strategy)
        try:
            assert first.try_acquire().acquired

            result = second.try_acquire()

            assert not result.acquired
            assert result.status is AcquireStatus.CONTENDED
            assert not second.held
            assert second.state is LockState.UNLOCKED
        finally:
            first.release()
            second.release()

    def test_different_names_do_not_contend(self, lock_dirs, strategy):
        first = _make_lock(lock_dirs, name="job-a", strategy=strategy)
        second = _make_lock(lock_dirs, name="job-b", strategy=strategy)
        try:
            assert first.try_acquire().acquired
            assert second.try_acquire().acquired
        finally:
            first.release()
            second.release()

    def test_lock_is_free_again_after_release(self, lock_dirs, strategy):
        first = _make_lock(lock_dirs, strategy=strategy)
        second = _make_lock(lock_dirs, strategy=strategy)

        first.try_acquire()
        first.release()

        try:
            assert second.try_acquire().acquired
        finally:
            second.release()


class TestInstanceLockFallback:
    def test_unsupported_mutex_falls_back_to_file_lock(self, lock_dirs, monkeypatch, caplog):
        _require_fcntl()

        def _unsupported_flock(_fd, _operation):
            raise OSError(errno.ENOLCK, "No locks available")

        monkeypatch.setattr(backends_module.fcntl, "flock", _unsupported_flock)
        lock = _make_lock(lock_dirs)

        with caplog.at_level(logging.INFO, logger="scheduled_job"):
            result = lock.try_acquire()
        try:
            assert result.acquired
            assert result.strategy is LockStrategy.FILE_LOCK
            assert lock.active_strategy is LockStrategy.FILE_LOCK
            assert (lock_dirs["lock_dir"] / "test-job.lock").exists()
            assert "falling back to file lock" in caplog.text
        finally:
            lock.release()

    def test_missing_fcntl_falls_back_to_file_lock(self, lock_dirs, monkeypatch):
        monkeypatch.setattr(backends_module, "fcntl", None)
        lock = _make_lock(lock_dirs)

        result = lock.try_acquire()
        try:
            assert result.acquired
            assert lock.active_strategy is LockStrategy.FILE_LOCK
        finally:
            lock.release()

    def test_unusable_mutex_directory_falls_back_to_file_lock(self, lock_dirs, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        lock = InstanceLock(
            "test-job",
            LockStrategy.MUTEX,
            lock_file=lock_dirs["lock_dir"] / "test-job.lock",
            mutex_dir=blocker / "mutexes",
        )

        result = lock.try_acquire()
        try:
            assert result.acquired
            assert lock.active_strategy is LockStrategy.FILE_LOCK
        finally:
            lock.release()

    def test_mutex_contention_does_not_fall_back(self, lock_dirs):
        _require_fcntl()
        first = _make_lock(lock_dirs)
        second = _make_lock(lock_dirs)
        try:
            first.try_acquire()

            result = second.try_acquire()

            assert result.status is AcquireStatus.CONTENDED
            assert result.strategy is LockStrategy.MUTEX
            assert not (lock_dirs["lock_dir"] / "test-job.lock").exists()
        finally:
            first.release()

    def test_mutex_owned_by_another_user_does_not_fall_back(self, lock_dirs, monkeypatch, caplog):
        _require_fcntl()
        lock = _make_lock(lock_dirs)
        lock.mutex_path.parent.mkdir(parents=True, exist_ok=True)
        lock.mutex_path.write_text("", encoding="utf-8")

        def _permission_denied(path):
            raise PermissionError(errno.EACCES, "Permission denied", str(path))

        monkeypatch.setattr(backends_module, "_open_lock_file", _permission_denied)

        with caplog.at_level(logging.INFO, logger="scheduled_job"):
            result = lock.try_acquire()

        assert result.status is AcquireStatus.CONTENDED
        assert result.strategy is LockStrategy.MUTEX
        assert not lock.held
        assert "falling back" not in caplog.text
        assert "mutex is owned by another user" in caplog.text
        assert not (lock_dirs["lock_dir"] / "test-job.lock").exists()

    def test_unusable_lock_file_location_raises_environment_error(self, lock_dirs, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        lock = InstanceLock(
            "test-job",
            LockStrategy.FILE_LOCK,
            lock_file=blocker / "test-job.lock",
            mutex_dir=lock_dirs["mutex_dir"],
        )

        with pytest.raises(LockEnvironmentError) as exc_info:
            lock.try_acquire()

        assert exc_info.value.strategy == "file"
        assert not lock.held


class TestInstanceLockDiagnostics:
    def test_abandoned_mutex_is_recovered_with_warning(self, lock_dirs, caplog):
        _require_fcntl()
        lock = _make_lock(lock_dirs)
        lock.try_acquire()
        mutex_path = lock.mutex_path
        payload = mutex_path.read_text(encoding="utf-8")
        lock.release()
        # Simulate a holder that died without a clean release
        mutex_path.write_text(payload, encoding="utf-8")

        successor = _make_lock(lock_dirs)
        with caplog.at_level(logging.WARNING, logger="scheduled_job"):
            result = successor.try_acquire()
        try:
            assert result.acquired
            assert result.recovered
            recovered = [r for r in caplog.records if getattr(r, "lock_event", None) == "recovered"]
            assert recovered
            assert recovered[0].levelno == logging.WARNING
        finally:
            successor.release()

    def test_stale_lock_file_logs_hung_warning(self, lock_dirs, caplog):
        holder = _make_lock(lock_dirs, strategy=LockStrategy.FILE_LOCK)
        assert holder.try_acquire().acquired
        lock_file = lock_dirs["lock_dir"] / "test-job.lock"
        old = time.time() - 7200
        os.utime(lock_file, (old, old))
        lock = _make_lock(lock_dirs, strategy=LockStrategy.FILE_LOCK, stale_threshold_seconds=3600)
        try:
            with caplog.at_level(logging.INFO, logger="scheduled_job"):
                result = lock.try_acquire()

            assert not result.acquired
            assert result.stale
            assert "might be hung" in caplog.text
            assert "Existing instance lock file age" in caplog.text
            assert f"PID {os.getpid()}" in caplog.text
            assert lock_file.exists()
        finally:
            holder.release()

    def test_lock_file_left_by_dead_holder_is_recovered(self, lock_dirs, caplog):
        finished = subprocess.Popen([sys.executable, "-c", "pass"])
        finished.wait()
        lock_file = lock_dirs["lock_dir"] / "test-job.lock"
        lock_file.write_text(
            json.dumps(
                {
                    "lock_id": "dead",
                    "pid": finished.pid,
                    "host": socket.gethostname(),
                    "owner": "test-job",
                    "started_at": "2000-01-01T00:00:00+00:00",
                    "backend": "file",
                }
            ),
            encoding="utf-8",
        )
        lock = _make_lock(lock_dirs, strategy=LockStrategy.FILE_LOCK)

        with caplog.at_level(logging.INFO, logger="scheduled_job"):
            result = lock.try_acquire()
        try:
            assert result.acquired
            assert result.status is AcquireStatus.RECOVERED
            assert "Acquired abandoned file lock" in caplog.text
            assert f"PID {finished.pid}" in caplog.text
            recovered = [r for r in caplog.records if getattr(r, "lock_event", None) == "recovered"]
            assert recovered
            assert lock.read_info()["pid"] == os.getpid()
        finally:
            lock.release()

        assert not lock_file.exists()


class TestInstanceLockAcrossProcesses:
    @pytest.mark.parametrize("strategy", ["mutex", "file"])
    def test_holder_in_other_process_blocks_acquisition(self, lock_dirs, tmp_path, strategy):
        if strategy == "mutex":
            _require_fcntl()
        proc, ready_path = _start_holder(lock_dirs, tmp_path, strategy, hold_seconds=30)
        try:
            assert _wait_for_ready(ready_path) in ("created", "acquired")

            lock = _make_lock(lock_dirs, strategy=LockStrategy.parse(strategy))
            result = lock.try_acquire()

            assert result.status is AcquireStatus.CONTENDED
            assert result.holder is not None
            assert result.holder.pid == proc.pid
        finally:
            proc.kill()
            proc.wait(timeout=10)

    def test_killed_mutex_holder_is_recovered(self, lock_dirs, tmp_path):
        _require_fcntl()
        proc, ready_path = _start_holder(lock_dirs, tmp_path, "mutex", hold_seconds=30)
        try:
            _wait_for_ready(ready_path)
        finally:
            proc.kill()
            proc.wait(timeout=10)

        lock = _make_lock(lock_dirs)
        result = lock.try_acquire()
        try:
            assert result.acquired
            assert result.status is AcquireStatus.RECOVERED
            assert result.holder is not None
            assert result.holder.pid == proc.pid
        finally:
            lock.release()

    def test_killed_file_lock_holder_is_recovered(self, lock_dirs, tmp_path):
        proc, ready_path = _start_holder(lock_dirs, tmp_path, "file", hold_seconds=30)
        try:
            assert _wait_for_ready(ready_path) == "created"
        finally:
            proc.kill()
            proc.wait(timeout=10)

        lock = _make_lock(lock_dirs, strategy=LockStrategy.FILE_LOCK)
        result = lock.try_acquire()
        try:
            assert result.acquired
            assert result.status is AcquireStatus.RECOVERED
            assert result.holder is not None
            assert result.holder.pid == proc.pid
        finally:
            lock.release()

        # The reclaimed lock is released cleanly, so later runs start fresh.
        successor = _make_lock(lock_dirs, strategy=LockStrategy.FILE_LOCK)
        try:
            assert successor.try_acquire().status is AcquireStatus.CREATED
        finally:
            successor.release()
