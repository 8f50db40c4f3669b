"""Instance lock orchestrating backend selection, fallback and lifecycle."""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import replace
from datetime import timedelta
from enum import Enum
from pathlib import Path

from scheduled_job.core.config import JobConfig, LockStrategy
from scheduled_job.core.exceptions import ConfigurationError, LockEnvironmentError
from scheduled_job.core.locks.backends import (
    AcquireResult,
    AcquireStatus,
    ExclusiveFileLockBackend,
    LockBackend,
    LockBackendUnavailableError,
    LockHandle,
    LockInfo,
    MutexLockBackend,
    is_process_running,
    mutex_identifier,
)


class LockState(Enum):
    """Lifecycle of an InstanceLock."""

    UNLOCKED = "unlocked"
    HELD = "held"
    RELEASED = "released"


def create_lock_backend(strategy: LockStrategy) -> LockBackend:
    """Create the backend implementing ``strategy``."""
    if strategy is LockStrategy.MUTEX:
        return MutexLockBackend()
    return ExclusiveFileLockBackend()


def _format_age(seconds: float) -> str:
    return str(timedelta(seconds=int(seconds)))


class InstanceLock:
    """Host-wide, non-blocking admission control for one named job.

    Usage:
        with InstanceLock("nightly", LockStrategy.MUTEX, lock_file=..., mutex_dir=...) as lock:
            if not lock.held:
                return EXIT_LOCK_NOT_ACQUIRED
            # ... run the job ...

    Args:
        name: Logical job identity
        strategy: Preferred strategy; MUTEX falls back to FILE_LOCK when the
            mutex cannot be used on this host
        lock_file: Lock file path for the file-lock strategy
        mutex_dir: Directory holding named mutexes
        stale_threshold_seconds: Age after which a held lock file is reported as stale
        logger: Logger for acquisition events
    """

    def __init__(
        self,
        name: str,
        strategy: LockStrategy | str = LockStrategy.MUTEX,
        *,
        lock_file: Path,
        mutex_dir: Path,
        stale_threshold_seconds: int = 3600,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        if not name or not name.strip():
            raise ConfigurationError("Instance name must not be empty", field="instance_name")
        self.name = name
        self.strategy = LockStrategy.parse(strategy)
        self.lock_file = Path(lock_file)
        self.mutex_path = Path(mutex_dir) / f"{mutex_identifier(name)}.mutex"
        self.stale_threshold_seconds = max(1, stale_threshold_seconds)
        self.logger = logger or logging.getLogger(__name__)

        self.state = LockState.UNLOCKED
        self.last_result: AcquireResult | None = None
        self._backend: LockBackend | None = None
        self._handle: LockHandle | None = None
        self._state_lock = threading.RLock()

    @classmethod
    def from_config(
        cls, config: JobConfig, logger: logging.Logger | logging.LoggerAdapter | None = None
    ) -> InstanceLock:
        return cls(
            config.instance_name,
            config.lock_strategy,
            lock_file=config.resolved_lock_file,
            mutex_dir=config.resolved_mutex_dir,
            stale_threshold_seconds=config.stale_threshold_seconds,
            logger=logger,
        )

    def __enter__(self) -> InstanceLock:
        self.try_acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    @property
    def held(self) -> bool:
        with self._state_lock:
            return self._handle is not None

    @property
    def active_strategy(self) -> LockStrategy | None:
        """Strategy backing the held lock (FILE_LOCK after a fallback)."""
        with self._state_lock:
            if self._backend is None or self._handle is None:
                return None
            return self._backend.strategy

    def try_acquire(self) -> AcquireResult:
        """Attempt lock acquisition without blocking.

        Returns a result whose ``acquired`` flag tells the caller whether it
        may run the job. Raises LockEnvironmentError only when neither
        strategy can be set up at all.
        """
        with self._state_lock:
            if self._handle is not None and self.last_result is not None:
                return self.last_result

        self.logger.info("Attempting to acquire instance lock for '%s'...", self.name)

        if self.strategy is LockStrategy.MUTEX:
            try:
                result = self._attempt(MutexLockBackend(), self.mutex_path)
            except OSError as e:
                # Anything other than contention means the mutex is unusable here.
                kind = "unavailable" if isinstance(e, LockBackendUnavailableError) else "failed"
                self.logger.warning("Mutex lock %s (%s); falling back to file lock", kind, e)
                result = self._attempt_file_lock()
        else:
            result = self._attempt_file_lock()

        self._log_result(result)
        return result

    def _attempt_file_lock(self) -> AcquireResult:
        try:
            return self._attempt(ExclusiveFileLockBackend(), self.lock_file)
        except OSError as e:
            raise LockEnvironmentError(
                "Unable to set up instance lock",
                lock_path=str(self.lock_file),
                strategy=LockStrategy.FILE_LOCK.value,
                details=str(e),
                original_error=e,
            ) from e

    def _attempt(self, backend: LockBackend, lock_path: Path) -> AcquireResult:
        self.logger.debug("Attempting to acquire %s lock: %s", backend.name, lock_path)
        result = backend.acquire(lock_path, self.stale_threshold_seconds)
        handle = result.handle
        if not result.acquired or handle is None:
            return replace(result, handle=None)

        info = LockInfo.for_current_process(handle.lock_id, owner=self.name, backend=backend.name)
        try:
            backend.write_info(handle, info)
        except OSError as e:
            # Payload is diagnostic only; the kernel/exclusive-create state is the lock.
            self.logger.warning("Could not write lock holder info to %s: %s", lock_path, e)

        public_result = replace(result, handle=None)
        with self._state_lock:
            self._backend = backend
            self._handle = handle
            self.state = LockState.HELD
            self.last_result = public_result
        return public_result

    def _log_result(self, result: AcquireResult) -> None:
        if result.status is AcquireStatus.CREATED:
            if result.strategy is LockStrategy.MUTEX:
                self.logger.info("Successfully acquired mutex lock (new instance)")
            else:
                self.logger.info("Successfully acquired file lock")
            return
        kind = "mutex" if result.strategy is LockStrategy.MUTEX else "file"
        if result.status is AcquireStatus.ACQUIRED:
            self.logger.info("Successfully acquired existing %s lock", kind)
            return
        if result.status is AcquireStatus.RECOVERED:
            previous = result.holder.describe() if result.holder else "unknown holder"
            self.logger.warning(
                "Acquired abandoned %s lock (previous instance may have crashed: %s)",
                kind,
                previous,
                extra={"lock_event": "recovered"},
            )
            return

        self.logger.warning("Another instance is already running (%s)", result.reason or "lock is held")
        self._log_holder_diagnostics(result)

    def _log_holder_diagnostics(self, result: AcquireResult) -> None:
        if result.holder is not None:
            self.logger.info("Existing instance: %s", result.holder.describe())
        if result.lock_age_seconds is None:
            return

        self.logger.info("Existing instance lock file age: %s", _format_age(result.lock_age_seconds))
        if result.stale:
            self.logger.warning(
                "Lock file is older than %s, the other instance might be hung",
                _format_age(self.stale_threshold_seconds),
            )
        holder = result.holder
        if holder is not None and holder.host == socket.gethostname() and not is_process_running(holder.pid):
            self.logger.warning(
                "Lock holder PID %s is no longer running but %s is still locked (inherited by a child process?)",
                holder.pid,
                result.lock_path,
            )

    def release(self) -> None:
        """Release lock if held. Safe to call any number of times."""
        with self._state_lock:
            handle = self._handle
            backend = self._backend
            self._handle = None
            if handle is None or backend is None:
                return
            self.state = LockState.RELEASED

        self.logger.info("Releasing instance lock...")
        try:
            backend.release(handle)
        except OSError as e:
            self.logger.error("Error releasing lock: %s", e)
            return
        self.logger.info("%s lock released", "Mutex" if backend.strategy is LockStrategy.MUTEX else "File")

    def read_info(self) -> dict | None:
        """Read holder payload for diagnostics."""
        strategy = self.active_strategy or self.strategy
        path = self.mutex_path if strategy is LockStrategy.MUTEX else self.lock_file
        lock_info = create_lock_backend(strategy).read_info(path)
        if lock_info is None:
            return None
        return lock_info.to_dict()
