"""Job execution: cancellable runner, result types and completion markers."""

from scheduled_job.job.cancellation import CancellationToken, install_signal_handlers
from scheduled_job.job.markers import CompletionMarkerWriter, build_marker_payload, marker_filename
from scheduled_job.job.models import (
    ErrorKind,
    JobError,
    JobRun,
    JobStatus,
    ProgressUpdate,
    RunnerState,
    format_duration,
)
from scheduled_job.job.runner import JobRunner

__all__ = [
    "CancellationToken",
    "CompletionMarkerWriter",
    "ErrorKind",
    "JobError",
    "JobRun",
    "JobRunner",
    "JobStatus",
    "ProgressUpdate",
    "RunnerState",
    "build_marker_payload",
    "format_duration",
    "install_signal_handlers",
    "marker_filename",
]
