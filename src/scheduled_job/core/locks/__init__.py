"""Locking subsystem for host-wide single-instance enforcement.

This package centralizes lock acquisition/release behavior behind
backend abstractions so the CLI and tests use one stable API.
"""

from scheduled_job.core.locks.backends import (
    AcquireResult,
    AcquireStatus,
    ExclusiveFileLockBackend,
    LockBackendUnavailableError,
    LockInfo,
    MutexLockBackend,
    mutex_identifier,
)
from scheduled_job.core.locks.manager import InstanceLock, LockState, create_lock_backend

__all__ = [
    "AcquireResult",
    "AcquireStatus",
    "ExclusiveFileLockBackend",
    "InstanceLock",
    "LockBackendUnavailableError",
    "LockInfo",
    "LockState",
    "MutexLockBackend",
    "create_lock_backend",
    "mutex_identifier",
]
