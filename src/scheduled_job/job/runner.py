"""Cancellable job execution.

A JobRunner executes one unit of work per instance: an interruptible wait
for the configured duration that checks its CancellationToken at least once
per poll interval. Every outcome is classified (success, cancelled, failed)
and recorded with a completion marker before control returns.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta

from tqdm import tqdm

from scheduled_job.core.config import JobConfig
from scheduled_job.core.constants import (
    BANNER_WIDTH,
    LONG_DURATION_WARNING_SECONDS,
    POLL_INTERVAL_SECONDS,
    PROGRESS_INTERVAL_SECONDS,
    PROGRESS_MIN_DURATION_SECONDS,
)
from scheduled_job.core.exceptions import ConfigurationError, JobStateError
from scheduled_job.core.logging import with_log_context
from scheduled_job.job.cancellation import CancellationToken
from scheduled_job.job.markers import CompletionMarkerWriter
from scheduled_job.job.models import (
    ErrorKind,
    JobError,
    JobRun,
    JobStatus,
    ProgressUpdate,
    RunnerState,
    format_duration,
)

ProgressCallback = Callable[[ProgressUpdate], None]


def new_job_id() -> str:
    return uuid.uuid4().hex[:8]


class JobRunner:
    """Run the configured job exactly once and classify the outcome.

    Args:
        config: Resolved job configuration
        logger: Logger; every line is tagged with ``job_id`` and ``instance``
        marker_writer: Completion marker writer (defaults to ``config.marker_dir``)
        progress_callback: Called with each ProgressUpdate; an exception raised
            here fails the run
        poll_interval_seconds: Upper bound on cancellation latency
        progress_interval_seconds: Wall-clock spacing of progress reports
    """

    def __init__(
        self,
        config: JobConfig,
        *,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        marker_writer: CompletionMarkerWriter | None = None,
        progress_callback: ProgressCallback | None = None,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        progress_interval_seconds: float = PROGRESS_INTERVAL_SECONDS,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.marker_writer = marker_writer or CompletionMarkerWriter(config.marker_dir, logger=self.logger)
        self.progress_callback = progress_callback
        self.poll_interval_seconds = max(0.01, poll_interval_seconds)
        self.progress_interval_seconds = max(0.01, progress_interval_seconds)
        self.state = RunnerState.IDLE

    def run(self, token: CancellationToken | None = None) -> JobRun:
        """Execute the job, returning its finalized JobRun.

        Never raises for job outcomes: configuration problems, errors in the
        work loop and cancellation all come back as a JobRun. Raises
        JobStateError if this runner was already used.
        """
        if self.state is not RunnerState.IDLE:
            raise JobStateError(self.state.value)
        self.state = RunnerState.RUNNING
        token = token or CancellationToken()

        job_id = new_job_id()
        log = with_log_context(self.logger, job_id=job_id, instance=self.config.instance_name)
        start_time = datetime.now(UTC)
        started = time.monotonic()

        log.info("=== Job Execution Started ===")
        log.info("Job ID: %s", job_id)
        log.info("Start Time: %s UTC", start_time.strftime("%Y-%m-%d %H:%M:%S"))
        log.info("Configured Sleep Duration: %s seconds", self.config.duration_seconds)

        error: JobError | None = None
        cancelled = False
        try:
            self._validate_duration(log)
            cancelled = self._work(token, log)
        except ConfigurationError as e:
            log.error("Job configuration rejected: %s", e)
            error = JobError.from_exception(e, ErrorKind.CONFIGURATION)
        except KeyboardInterrupt:
            token.cancel(reason="keyboard interrupt")
            cancelled = True
        except Exception as e:
            log.error(
                "Job execution failed after %dms: %s",
                (time.monotonic() - started) * 1000,
                e,
                exc_info=True,
            )
            error = JobError.from_exception(e, ErrorKind.EXECUTION)

        elapsed = timedelta(seconds=time.monotonic() - started)
        if error is not None:
            status = JobStatus.FAILED
        elif cancelled:
            status = JobStatus.CANCELLED
            log.warning(
                "Job execution cancelled after %dms (%s)",
                elapsed.total_seconds() * 1000,
                token.reason or "cancel requested",
            )
        else:
            status = JobStatus.SUCCESS

        job_run = JobRun(
            job_id=job_id,
            instance_name=self.config.instance_name,
            start_time=start_time,
            end_time=datetime.now(UTC),
            status=status,
            duration=elapsed,
            configured_seconds=self.config.duration_seconds,
            error=error,
        )
        job_run = replace(job_run, marker_path=self.marker_writer.write(job_run))
        self.state = RunnerState.for_status(status)
        self._log_summary(job_run, log)
        return job_run

    def _validate_duration(self, log: logging.Logger | logging.LoggerAdapter) -> None:
        duration = self.config.duration_seconds
        if duration < 0:
            raise ConfigurationError(
                f"Invalid sleep duration: {duration}. Must be >= 0.",
                field="duration_seconds",
            )
        if duration > LONG_DURATION_WARNING_SECONDS:
            log.warning("Sleep duration is longer than 1 hour: %s seconds", duration)

    def _work(self, token: CancellationToken, log: logging.Logger | logging.LoggerAdapter) -> bool:
        """Run the interruptible wait. Returns True if cancelled before completion."""
        total = float(self.config.duration_seconds)
        report_progress = self.config.duration_seconds >= PROGRESS_MIN_DURATION_SECONDS
        next_report = self.progress_interval_seconds

        log.info("Starting simulated work (sleeping for %s seconds)...", self.config.duration_seconds)
        started = time.monotonic()

        with tqdm(
            total=total,
            desc=self.config.instance_name,
            unit="s",
            bar_format="{l_bar}{bar}| {n:.0f}/{total:.0f}s [{elapsed}<{remaining}]",
            leave=False,
            disable=self.config.quiet or not self.config.show_progress_bar or total <= 0,
        ) as pbar:
            while True:
                elapsed = time.monotonic() - started
                if elapsed >= total:
                    pbar.update(total - pbar.n)
                    log.info("Simulated work completed successfully")
                    return False
                if token.is_cancelled:
                    return True

                token.wait(min(self.poll_interval_seconds, total - elapsed))
                if token.is_cancelled:
                    return True

                elapsed = min(time.monotonic() - started, total)
                pbar.update(elapsed - pbar.n)
                if report_progress and elapsed >= next_report:
                    self._report_progress(ProgressUpdate(elapsed_seconds=elapsed, total_seconds=total), log)
                    intervals_done = int(elapsed // self.progress_interval_seconds)
                    next_report = (intervals_done + 1) * self.progress_interval_seconds

    def _report_progress(self, update: ProgressUpdate, log: logging.Logger | logging.LoggerAdapter) -> None:
        log.info(
            "Progress: %.1f%% (%ds / %ds)",
            update.percent,
            update.elapsed_seconds,
            update.total_seconds,
            extra={"progress_percent": round(update.percent, 1)},
        )
        if self.progress_callback is not None:
            self.progress_callback(update)

    def _log_summary(self, job_run: JobRun, log: logging.Logger | logging.LoggerAdapter) -> None:
        if job_run.status is JobStatus.SUCCESS:
            log.info("=== Job Execution Completed ===")
        else:
            log.info("=== Job Execution Finished ===")
        log.info("Job ID: %s", job_run.job_id)
        log.info("End Time: %s UTC", job_run.end_time.strftime("%Y-%m-%d %H:%M:%S"))
        log.info("Duration: %s", format_duration(job_run.duration))
        log.info("Actual Elapsed Time: %dms", job_run.duration.total_seconds() * 1000)
        log.info("Status: %s", job_run.status.value.upper())
        if job_run.error is not None:
            log.info("Error: %s (%s)", job_run.error.message, job_run.error.error_type)
        log.debug("=" * BANNER_WIDTH)
