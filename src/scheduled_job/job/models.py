"""Result types for one job execution."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from scheduled_job.core.constants import EXIT_CONFIGURATION_ERROR, EXIT_ERROR, EXIT_SUCCESS


class JobStatus(Enum):
    """Terminal classification of a job run."""

    SUCCESS = "success"
    CANCELLED = "cancelled"  # Requested graceful stop, not an error
    FAILED = "failed"

    @property
    def marker_kind(self) -> str:
        """Kind used in the completion marker file name."""
        if self is JobStatus.FAILED:
            return "error"
        return self.value


class RunnerState(Enum):
    """JobRunner lifecycle. Terminal states never go back to IDLE."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @classmethod
    def for_status(cls, status: JobStatus) -> RunnerState:
        return {
            JobStatus.SUCCESS: cls.COMPLETED,
            JobStatus.CANCELLED: cls.CANCELLED,
            JobStatus.FAILED: cls.FAILED,
        }[status]


class ErrorKind(Enum):
    """Why a run failed."""

    CONFIGURATION = "configuration"  # Rejected before any work began
    EXECUTION = "execution"  # Raised inside the work loop


@dataclass(frozen=True)
class JobError:
    """Structured cause of a failed run."""

    message: str
    error_type: str
    kind: ErrorKind

    @classmethod
    def from_exception(cls, exc: BaseException, kind: ErrorKind) -> JobError:
        return cls(message=str(exc) or type(exc).__name__, error_type=type(exc).__name__, kind=kind)

    def to_dict(self) -> dict[str, str]:
        return {"message": self.message, "type": self.error_type, "kind": self.kind.value}


@dataclass(frozen=True)
class ProgressUpdate:
    """Observation emitted periodically while the work loop runs."""

    elapsed_seconds: float
    total_seconds: float

    @property
    def percent(self) -> float:
        if self.total_seconds <= 0:
            return 100.0
        return min(100.0, self.elapsed_seconds / self.total_seconds * 100)


def format_duration(duration: timedelta) -> str:
    """Format as ``hh:mm:ss.fff``."""
    total_ms = max(0, int(round(duration.total_seconds() * 1000)))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


@dataclass(frozen=True)
class JobRun:
    """Immutable record of one finished job execution.

    Attributes:
        job_id: Random id correlating log lines and the completion marker
        instance_name: Job instance that ran
        start_time: UTC start time
        end_time: UTC end time
        status: Terminal classification
        duration: Wall-clock time spent, recorded for every outcome
        configured_seconds: Requested work duration
        error: Present iff status is FAILED
        marker_path: Completion marker location, None if it could not be written
    """

    job_id: str
    instance_name: str
    start_time: datetime
    end_time: datetime
    status: JobStatus
    duration: timedelta
    configured_seconds: int
    error: JobError | None = None
    marker_path: Path | None = None

    def __post_init__(self) -> None:
        if (self.status is JobStatus.FAILED) != (self.error is not None):
            raise ValueError("JobRun.error must be set if and only if the run failed")

    @property
    def exit_code(self) -> int:
        """Process exit code for this outcome."""
        if self.status is JobStatus.FAILED:
            if self.error is not None and self.error.kind is ErrorKind.CONFIGURATION:
                return EXIT_CONFIGURATION_ERROR
            return EXIT_ERROR
        return EXIT_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "instance_name": self.instance_name,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration": format_duration(self.duration),
            "duration_seconds": round(self.duration.total_seconds(), 3),
            "configured_seconds": self.configured_seconds,
            "error": self.error.to_dict() if self.error else None,
        }
