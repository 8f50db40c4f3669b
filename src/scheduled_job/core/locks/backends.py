"""Lock backend implementations.

Design principles:
- Ownership is defined by backend lock state (kernel lock or exclusive
  file creation), never by the payload written into the lock file.
- Contention is a normal result (``AcquireStatus.CONTENDED``), not an error.
- Backends do not log; the instance lock turns results into log events.
"""

from __future__ import annotations

import contextlib
import errno
import hashlib
import json
import os
import socket
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from scheduled_job.core.config import LockStrategy, sanitize_instance_name
from scheduled_job.core.constants import MUTEX_DIGEST_LENGTH

try:
    import fcntl
except ImportError:  # pragma: no cover - exercised on non-POSIX only
    fcntl = None

_FLOCK_CONTENTION_ERRNOS = {errno.EAGAIN, errno.EWOULDBLOCK, errno.EACCES}
_FLOCK_UNSUPPORTED_ERRNOS = {
    err_no
    for err_no in (
        getattr(errno, "ENOTSUP", None),
        getattr(errno, "EOPNOTSUPP", None),
        getattr(errno, "ENOSYS", None),
        getattr(errno, "ENOLCK", None),
    )
    if err_no is not None
}

# Other users lock through a read-only descriptor.
LOCK_FILE_MODE = 0o644


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def mutex_identifier(instance_name: str) -> str:
    """Stable, collision-resistant mutex id for ``instance_name``.

    The same name always maps to the same id, so repeated runs of one job
    contend for the same mutex.
    """
    digest = hashlib.sha256(instance_name.encode("utf-8")).hexdigest()[:MUTEX_DIGEST_LENGTH]
    return f"{sanitize_instance_name(instance_name)}-{digest}"


def _write_all(fd: int, payload: bytes) -> None:
    """Write complete payload to fd, handling short writes."""
    total_written = 0
    while total_written < len(payload):
        written = os.write(fd, payload[total_written:])
        if written <= 0:
            raise OSError("short write while persisting lock metadata")
        total_written += written


def _write_info_fd(fd: int, info: LockInfo) -> None:
    payload = (json.dumps(info.to_dict(), sort_keys=True) + "\n").encode("utf-8")
    os.lseek(fd, 0, os.SEEK_SET)
    os.ftruncate(fd, 0)
    _write_all(fd, payload)
    os.fsync(fd)


def _read_fd(fd: int) -> bytes:
    os.lseek(fd, 0, os.SEEK_SET)
    chunks = []
    while True:
        chunk = os.read(fd, 4096)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


def _parse_info(raw: bytes | str) -> LockInfo | None:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    return LockInfo.from_dict(data)


def read_lock_info(lock_path: Path) -> LockInfo | None:
    """Read lock payload for diagnostics, if available."""
    try:
        raw = lock_path.read_bytes()
    except OSError:
        return None
    if not raw.strip():
        return None
    return _parse_info(raw)


def is_process_running(pid: int) -> bool:
    """Return True when ``pid`` exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as e:
        return e.errno == errno.EPERM


class LockBackendUnavailableError(OSError):
    """Raised when a backend exists but is unusable for the target lock path."""


@dataclass
class LockInfo:
    """Serializable lock holder payload for diagnostics."""

    lock_id: str
    pid: int
    host: str
    owner: str
    started_at: str
    backend: str
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockInfo | None:
        try:
            return cls(
                lock_id=str(data["lock_id"]),
                pid=int(data["pid"]),
                host=str(data["host"]),
                owner=str(data.get("owner", "")),
                started_at=str(data["started_at"]),
                backend=str(data.get("backend", "")),
                version=int(data.get("version", 1)),
            )
        except (KeyError, TypeError, ValueError):
            return None

    @classmethod
    def for_current_process(cls, lock_id: str, owner: str, backend: str) -> LockInfo:
        return cls(
            lock_id=lock_id,
            pid=os.getpid(),
            host=socket.gethostname(),
            owner=owner,
            started_at=_utcnow_iso(),
            backend=backend,
        )

    def describe(self) -> str:
        return f"PID {self.pid} on {self.host}, started {self.started_at}"


class AcquireStatus(Enum):
    """Outcome of one non-blocking acquisition attempt."""

    CREATED = "created"  # Lock object did not exist; this call created and took it
    ACQUIRED = "acquired"  # Lock object existed and was free
    RECOVERED = "recovered"  # Previous holder ended without releasing
    CONTENDED = "contended"  # Held by another live process


@dataclass(frozen=True)
class AcquireResult:
    """Result of a lock acquisition attempt.

    Attributes:
        status: What happened
        strategy: Strategy that produced this result (FILE_LOCK after a fallback)
        lock_path: Mutex or lock file path involved
        holder: Payload of the other (or previous) holder, when readable
        lock_age_seconds: Age of a contended lock file
        stale: True when a contended lock file is older than the stale threshold
        reason: Human-readable explanation for a negative result
    """

    status: AcquireStatus
    strategy: LockStrategy
    lock_path: Path
    holder: LockInfo | None = None
    lock_age_seconds: float | None = None
    stale: bool = False
    reason: str | None = None
    handle: LockHandle | None = field(default=None, repr=False, compare=False)

    @property
    def acquired(self) -> bool:
        return self.status is not AcquireStatus.CONTENDED

    @property
    def fresh(self) -> bool:
        return self.status is AcquireStatus.CREATED

    @property
    def recovered(self) -> bool:
        return self.status is AcquireStatus.RECOVERED


class LockHandle(Protocol):
    """Opaque backend-specific lock handle."""

    lock_path: Path
    lock_id: str
    fd: int
    closed: bool


class LockBackend(Protocol):
    """Backend abstraction for lock acquisition and metadata operations."""

    name: str
    strategy: LockStrategy

    def acquire(self, lock_path: Path, stale_threshold_seconds: int) -> AcquireResult:
        """Try acquiring lock non-blocking."""

    def release(self, handle: LockHandle) -> None:
        """Release lock held by handle."""

    def write_info(self, handle: LockHandle, info: LockInfo) -> None:
        """Persist payload for the currently held lock."""

    def read_info(self, lock_path: Path) -> LockInfo | None:
        """Read payload for diagnostics, if available."""


@dataclass
class _FdLockHandle:
    lock_path: Path
    fd: int
    lock_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    closed: bool = False
    flocked: bool = False


def _open_lock_file(lock_path: Path) -> tuple[int, bool]:
    """Open ``lock_path``, creating it when missing. Returns ``(fd, created)``.

    A lock file created by another user cannot be opened for writing, but a
    read-only descriptor is enough to take the flock.
    """
    try:
        return os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_RDWR, LOCK_FILE_MODE), True
    except FileExistsError:
        pass
    try:
        return os.open(str(lock_path), os.O_RDWR), False
    except PermissionError:
        return os.open(str(lock_path), os.O_RDONLY), False


def _try_flock(fd: int, lock_path: Path) -> bool:
    """Take an exclusive flock without blocking. False means another process holds it."""
    assert fcntl is not None  # For type checkers.
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        if isinstance(e, BlockingIOError) or e.errno in _FLOCK_CONTENTION_ERRNOS:
            return False
        if e.errno in _FLOCK_UNSUPPORTED_ERRNOS:
            raise LockBackendUnavailableError(e.errno, f"flock is unsupported for lock path '{lock_path}'") from e
        raise
    return True


def _is_same_file(fd: int, lock_path: Path) -> bool:
    """True while ``lock_path`` still names the inode open on ``fd``."""
    try:
        path_stat = os.stat(lock_path)
    except FileNotFoundError:
        return False
    fd_stat = os.fstat(fd)
    return (fd_stat.st_dev, fd_stat.st_ino) == (path_stat.st_dev, path_stat.st_ino)


def _status_after_lock(fd: int, created: bool) -> tuple[AcquireStatus, LockInfo | None]:
    # A clean release leaves no payload behind; anything left belongs to a dead holder.
    if created:
        return AcquireStatus.CREATED, None
    try:
        leftover = _read_fd(fd)
    except OSError:
        leftover = b""
    if leftover.strip():
        return AcquireStatus.RECOVERED, _parse_info(leftover)
    return AcquireStatus.ACQUIRED, None


def _unlock_and_close(handle: _FdLockHandle) -> None:
    try:
        if handle.flocked and fcntl is not None:
            fcntl.flock(handle.fd, fcntl.LOCK_UN)
    except OSError:
        pass
    finally:
        with contextlib.suppress(OSError):
            os.close(handle.fd)
        handle.closed = True


class MutexLockBackend:
    """Named host-wide mutex backed by `fcntl.flock`.

    The mutex is a file named by :func:`mutex_identifier` in a per-host
    directory. The kernel drops the flock when the holding process exits,
    however it exits, so a crashed holder never blocks the next run. The
    file itself is kept between runs; a clean release truncates it, so a
    payload found after taking the lock means the previous holder was
    abandoned.
    """

    name = "mutex"
    strategy = LockStrategy.MUTEX

    @staticmethod
    def is_supported() -> bool:
        return fcntl is not None

    def acquire(self, lock_path: Path, stale_threshold_seconds: int) -> AcquireResult:
        del stale_threshold_seconds  # Kernel-managed lifetime; nothing goes stale.
        if fcntl is None:
            raise LockBackendUnavailableError("fcntl is not available on this platform")

        lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd, created = _open_lock_file(lock_path)
        except PermissionError:
            if not lock_path.exists():
                raise
            # The mutex exists but belongs to another user; it still names this job.
            return AcquireResult(
                status=AcquireStatus.CONTENDED,
                strategy=self.strategy,
                lock_path=lock_path,
                reason="mutex is owned by another user",
            )

        try:
            locked = _try_flock(fd, lock_path)
        except OSError:
            os.close(fd)
            raise
        if not locked:
            os.close(fd)
            return AcquireResult(
                status=AcquireStatus.CONTENDED,
                strategy=self.strategy,
                lock_path=lock_path,
                holder=read_lock_info(lock_path),
                reason="mutex is held by another process",
            )

        status, holder = _status_after_lock(fd, created)
        return AcquireResult(
            status=status,
            strategy=self.strategy,
            lock_path=lock_path,
            holder=holder,
            handle=_FdLockHandle(lock_path=lock_path, fd=fd, flocked=True),
        )

    def release(self, handle: _FdLockHandle) -> None:
        if handle.closed:
            return
        # An empty mutex file marks a clean release for the next acquirer.
        with contextlib.suppress(OSError):
            os.ftruncate(handle.fd, 0)
        _unlock_and_close(handle)

    def write_info(self, handle: _FdLockHandle, info: LockInfo) -> None:
        if handle.closed:
            raise OSError("lock handle is closed")
        _write_info_fd(handle.fd, info)

    def read_info(self, lock_path: Path) -> LockInfo | None:
        return read_lock_info(lock_path)


class ExclusiveFileLockBackend:
    """Lock file at a configurable path, deleted when released.

    Ownership is an open-handle `fcntl.flock` on the file, so the lock dies
    with its holder and a file left behind by a killed process is reclaimed
    (RECOVERED) by the next run. A release unlinks the file while still
    holding the flock; an acquirer that locked the unlinked inode sees that
    the path no longer names it and retries.

    Without ``fcntl`` (or where the filesystem refuses flock) the lock falls
    back to exclusive creation. A leftover file is then reclaimed only when
    its holder ran on this host and that PID is gone.
    """

    name = "file"
    strategy = LockStrategy.FILE_LOCK
    acquire_attempts = 3

    def acquire(self, lock_path: Path, stale_threshold_seconds: int) -> AcquireResult:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        if fcntl is None:
            return self._acquire_exclusive(lock_path, stale_threshold_seconds)

        for _ in range(self.acquire_attempts):
            try:
                fd, created = _open_lock_file(lock_path)
            except FileNotFoundError:
                continue  # Released between our create and open attempts.
            except PermissionError:
                if not lock_path.exists():
                    raise
                contended = self._contended(lock_path, stale_threshold_seconds, "lock file is owned by another user")
                if contended is None:
                    continue
                return contended

            try:
                locked = _try_flock(fd, lock_path)
                current = locked and _is_same_file(fd, lock_path)
            except LockBackendUnavailableError:
                os.close(fd)
                if created:
                    with contextlib.suppress(FileNotFoundError):
                        lock_path.unlink()
                return self._acquire_exclusive(lock_path, stale_threshold_seconds)
            except OSError:
                os.close(fd)
                raise

            if not locked:
                os.close(fd)
                contended = self._contended(lock_path, stale_threshold_seconds, "lock file is held by another process")
                if contended is None:
                    continue
                return contended
            if not current:
                # We locked an inode the previous holder already unlinked.
                os.close(fd)
                continue

            status, holder = _status_after_lock(fd, created)
            return AcquireResult(
                status=status,
                strategy=self.strategy,
                lock_path=lock_path,
                holder=holder,
                handle=_FdLockHandle(lock_path=lock_path, fd=fd, flocked=True),
            )

        return self._changed_hands(lock_path)

    def _acquire_exclusive(self, lock_path: Path, stale_threshold_seconds: int) -> AcquireResult:
        reclaimed: LockInfo | None = None
        for _ in range(self.acquire_attempts):
            try:
                fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_RDWR, LOCK_FILE_MODE)
            except FileExistsError:
                holder = read_lock_info(lock_path)
                if holder is not None and self._holder_is_dead(holder):
                    if read_lock_info(lock_path) == holder:
                        with contextlib.suppress(FileNotFoundError):
                            lock_path.unlink()
                    reclaimed = holder
                    continue
                contended = self._contended(lock_path, stale_threshold_seconds, "lock file is held by another process")
                if contended is None:
                    continue
                return contended
            return AcquireResult(
                status=AcquireStatus.RECOVERED if reclaimed else AcquireStatus.CREATED,
                strategy=self.strategy,
                lock_path=lock_path,
                holder=reclaimed,
                handle=_FdLockHandle(lock_path=lock_path, fd=fd),
            )

        return self._changed_hands(lock_path)

    @staticmethod
    def _holder_is_dead(holder: LockInfo) -> bool:
        # Liveness can only be checked for holders on this host.
        return holder.host == socket.gethostname() and not is_process_running(holder.pid)

    def _contended(self, lock_path: Path, stale_threshold_seconds: int, reason: str) -> AcquireResult | None:
        """Contention result with holder diagnostics; None when the file vanished meanwhile."""
        try:
            age_seconds = max(0.0, time.time() - lock_path.stat().st_mtime)
        except FileNotFoundError:
            return None
        return AcquireResult(
            status=AcquireStatus.CONTENDED,
            strategy=self.strategy,
            lock_path=lock_path,
            holder=read_lock_info(lock_path),
            lock_age_seconds=age_seconds,
            stale=age_seconds > max(1, stale_threshold_seconds),
            reason=reason,
        )

    def _changed_hands(self, lock_path: Path) -> AcquireResult:
        return AcquireResult(
            status=AcquireStatus.CONTENDED,
            strategy=self.strategy,
            lock_path=lock_path,
            reason="lock file changed hands during acquisition",
        )

    def release(self, handle: _FdLockHandle) -> None:
        if handle.closed:
            return
        try:
            lock_info = read_lock_info(handle.lock_path)
            # Unlink before unlocking so nobody can lock this path's inode in between.
            # An unreadable payload is still ours while we hold the lock.
            owned = lock_info is None or lock_info.lock_id == handle.lock_id
            if owned and (not handle.flocked or _is_same_file(handle.fd, handle.lock_path)):
                with contextlib.suppress(FileNotFoundError):
                    handle.lock_path.unlink()
        finally:
            _unlock_and_close(handle)

    def write_info(self, handle: _FdLockHandle, info: LockInfo) -> None:
        if handle.closed:
            raise OSError("lock handle is closed")
        _write_info_fd(handle.fd, info)

    def read_info(self, lock_path: Path) -> LockInfo | None:
        return read_lock_info(lock_path)
