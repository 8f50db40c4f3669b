"""Configuration dataclasses for scheduled-job.

Configuration is resolved once by the CLI layer (flags, then environment
variables, then defaults) and passed immutably into the lock coordinator
and the job runner. Nothing below the CLI reads the environment.
"""

from __future__ import annotations

import argparse
import os
import re
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from scheduled_job.core.constants import (
    DEFAULT_DURATION_SECONDS,
    DEFAULT_INSTANCE_NAME,
    DEFAULT_MARKER_DIR,
    DEFAULT_STALE_THRESHOLD_SECONDS,
    ENV_DURATION_SECONDS,
    ENV_INSTANCE_NAME,
    ENV_LOCK_FILE,
    ENV_LOCK_TYPE,
    ENV_LOG_LEVEL,
    ENV_MARKER_DIR,
    LOG_FILE_BACKUP_COUNT,
    LOG_FILE_MAX_BYTES,
    MUTEX_DIR_NAME,
)
from scheduled_job.core.exceptions import ConfigurationError

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


class LockStrategy(Enum):
    """Exclusivity mechanism used to guard a job instance."""

    MUTEX = "mutex"  # Kernel-managed lock, released by the OS if the holder dies
    FILE_LOCK = "file"  # Exclusively created lock file, deleted on release

    @classmethod
    def parse(cls, value: str | LockStrategy) -> LockStrategy:
        """Parse a strategy name such as ``mutex``, ``file`` or ``file-lock``."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "").replace("_", "")
        if normalized == "mutex":
            return cls.MUTEX
        if normalized in ("file", "filelock"):
            return cls.FILE_LOCK
        raise ConfigurationError(
            f"Unknown lock strategy '{value}'",
            field="lock_strategy",
            details="expected 'mutex' or 'file'",
        )


def sanitize_instance_name(name: str) -> str:
    """Return ``name`` reduced to characters that are safe in a filename."""
    return _UNSAFE_FILENAME_CHARS.sub("_", name.strip())


def default_lock_file(instance_name: str, base_dir: Path | None = None) -> Path:
    """Lock file path for ``instance_name`` (``<tmp>/<name>.lock`` by default)."""
    directory = base_dir if base_dir is not None else Path(tempfile.gettempdir())
    return directory / f"{sanitize_instance_name(instance_name)}.lock"


def default_mutex_dir() -> Path:
    """Directory holding named mutexes for this host.

    Prefers the RAM-backed ``/dev/shm`` when it is writable so mutexes never
    outlive a reboot, and falls back to the system temp directory.
    """
    shm = Path("/dev/shm")
    if shm.is_dir() and os.access(shm, os.W_OK):
        return shm / MUTEX_DIR_NAME
    return Path(tempfile.gettempdir()) / MUTEX_DIR_NAME


@dataclass(frozen=True)
class LogConfig:
    """Configuration for logging behavior.

    Attributes:
        level: Logging level string (default: "INFO")
        format: "text" or "json"
        log_dir: Directory for rotating log files (None = console only)
        file_max_bytes: Maximum size per log file (default: 10MB)
        file_backup_count: Number of backup log files (default: 5)
    """

    level: str = "INFO"
    format: str = "text"
    log_dir: str | None = None
    file_max_bytes: int = LOG_FILE_MAX_BYTES
    file_backup_count: int = LOG_FILE_BACKUP_COUNT


@dataclass(frozen=True)
class JobConfig:
    """Resolved configuration for one job process.

    Attributes:
        instance_name: Logical job identity; derives the mutex id and lock file
        lock_strategy: Preferred exclusivity mechanism
        duration_seconds: Length of the simulated work (validated by the runner)
        lock_file: Lock file used by the file-lock strategy
        mutex_dir: Directory holding named mutexes
        stale_threshold_seconds: Age after which a held lock file is reported as stale
        marker_dir: Directory for completion markers
        show_progress_bar: Draw a console progress bar while the job runs
        quiet: Suppress console-only output (banners, progress bar)
        log: Logging configuration
    """

    instance_name: str = DEFAULT_INSTANCE_NAME
    lock_strategy: LockStrategy = LockStrategy.MUTEX
    duration_seconds: int = DEFAULT_DURATION_SECONDS
    lock_file: Path | None = None
    mutex_dir: Path | None = None
    stale_threshold_seconds: int = DEFAULT_STALE_THRESHOLD_SECONDS
    marker_dir: Path = Path(DEFAULT_MARKER_DIR)
    show_progress_bar: bool = False
    quiet: bool = False
    log: LogConfig = field(default_factory=LogConfig)

    @property
    def resolved_lock_file(self) -> Path:
        return self.lock_file if self.lock_file is not None else default_lock_file(self.instance_name)

    @property
    def resolved_mutex_dir(self) -> Path:
        return self.mutex_dir if self.mutex_dir is not None else default_mutex_dir()

    def validate(self) -> None:
        """Validate settings that must hold before a lock is requested.

        The job duration is not checked here: the runner
        classifies a negative duration as a failed run.
        """
        if not self.instance_name or not self.instance_name.strip():
            raise ConfigurationError("Instance name must not be empty", field="instance_name")
        if not sanitize_instance_name(self.instance_name).strip("_."):
            raise ConfigurationError(
                "Instance name has no usable characters",
                field="instance_name",
                details=repr(self.instance_name),
            )
        if self.stale_threshold_seconds < 1:
            raise ConfigurationError(
                "Stale threshold must be at least 1 second",
                field="stale_threshold_seconds",
                details=str(self.stale_threshold_seconds),
            )

    @classmethod
    def from_args(cls, args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> JobConfig:
        """Create configuration from parsed arguments and environment variables.

        Priority: 1) command-line flag, 2) environment variable, 3) default.
        """
        env = os.environ if environ is None else environ

        instance_name = getattr(args, "instance_name", None)
        if instance_name is None:
            instance_name = env.get(ENV_INSTANCE_NAME, DEFAULT_INSTANCE_NAME)

        strategy_value = getattr(args, "lock_strategy", None)
        if strategy_value is None and getattr(args, "enable_file_lock", False):
            strategy_value = LockStrategy.FILE_LOCK.value
        if strategy_value is None:
            strategy_value = env.get(ENV_LOCK_TYPE) or LockStrategy.MUTEX.value
        lock_strategy = LockStrategy.parse(strategy_value)

        duration = getattr(args, "sleep_seconds", None)
        if duration is None:
            duration = parse_env_int(env, ENV_DURATION_SECONDS, DEFAULT_DURATION_SECONDS)

        lock_file = getattr(args, "lock_file", None) or env.get(ENV_LOCK_FILE) or None
        mutex_dir = getattr(args, "mutex_dir", None)
        marker_dir = getattr(args, "marker_dir", None) or env.get(ENV_MARKER_DIR) or DEFAULT_MARKER_DIR

        stale_threshold = getattr(args, "stale_threshold", None)
        if stale_threshold is None:
            stale_threshold = DEFAULT_STALE_THRESHOLD_SECONDS

        return cls(
            instance_name=instance_name,
            lock_strategy=lock_strategy,
            duration_seconds=int(duration),
            lock_file=Path(lock_file) if lock_file else default_lock_file(instance_name),
            mutex_dir=Path(mutex_dir) if mutex_dir else default_mutex_dir(),
            stale_threshold_seconds=int(stale_threshold),
            marker_dir=Path(marker_dir),
            show_progress_bar=bool(getattr(args, "progress_bar", False)),
            quiet=bool(getattr(args, "quiet", False)),
            log=LogConfig(
                level=getattr(args, "log_level", None)
                or env.get(ENV_LOG_LEVEL)
                or ("WARNING" if getattr(args, "quiet", False) else "INFO"),
                format=getattr(args, "log_format", None) or "text",
                log_dir=getattr(args, "log_dir", None),
            ),
        )


def parse_env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    """Read an integer environment variable, raising ConfigurationError if malformed."""
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationError(
            f"Environment variable {name} must be an integer",
            field=name,
            details=repr(raw),
        ) from None
