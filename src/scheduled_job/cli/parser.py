"""Argument parsing for the scheduled-job command."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence

from scheduled_job.core.config import LockStrategy
from scheduled_job.core.constants import APP_NAME, EXIT_CONFIGURATION_ERROR, VALID_LOG_FORMATS, VALID_LOG_LEVELS
from scheduled_job.core.version import __version__

# Attempt to load argcomplete for shell tab-completion (optional dependency)
_ARGCOMPLETE_AVAILABLE = False
try:
    import argcomplete

    _ARGCOMPLETE_AVAILABLE = True
except ImportError:
    pass  # argcomplete not installed


class JobArgumentParser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors exit with the configuration error code.

    argparse exits with 2 by default, which this tool reserves for
    "another instance is running".
    """

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(EXIT_CONFIGURATION_ERROR, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = JobArgumentParser(
        prog=APP_NAME,
        description="Scheduled job runner with single-instance enforcement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the default job for 10 seconds
  scheduled-job

  # Named job, one minute of work
  scheduled-job --instance-name nightly --sleep-seconds 60

  # Use a lock file instead of the named mutex
  scheduled-job --lock-strategy file --lock-file /var/run/nightly.lock

  # JSON logs for container log collectors
  scheduled-job --log-format json

Environment:
  INSTANCE_NAME, INSTANCE_LOCK_TYPE (mutex|file), INSTANCE_LOCK_FILE,
  SLEEP_DURATION_SECONDS, JOB_MARKER_DIR, LOG_LEVEL
  Command-line flags take precedence over environment variables.

Exit Codes:
  0 - Success (including graceful shutdown on SIGINT/SIGTERM)
  1 - Job execution failed
  2 - Another instance is already running
  3 - Configuration error
        """,
    )

    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}", help="Show program version and exit"
    )
    parser.add_argument("--exit-codes", action="store_true", help="Display exit code reference and exit")

    job_group = parser.add_argument_group("Job")
    job_group.add_argument(
        "--sleep-seconds",
        "--duration",
        dest="sleep_seconds",
        type=int,
        default=None,
        metavar="SECONDS",
        help="Duration of the simulated work in seconds (default: 10, env: SLEEP_DURATION_SECONDS)",
    )
    job_group.add_argument(
        "--instance-name",
        default=None,
        help="Instance identifier used for mutex and lock file naming (default: ScheduledJobApp)",
    )
    job_group.add_argument(
        "--marker-dir",
        default=None,
        metavar="DIR",
        help="Directory for completion markers (default: ./logs, env: JOB_MARKER_DIR)",
    )
    job_group.add_argument(
        "--progress-bar",
        action="store_true",
        help="Show a console progress bar while the job runs",
    )

    lock_group = parser.add_argument_group("Instance lock")
    lock_group.add_argument(
        "--lock-strategy",
        choices=[strategy.value for strategy in LockStrategy],
        default=None,
        help="Exclusivity mechanism (default: mutex, env: INSTANCE_LOCK_TYPE)",
    )
    lock_group.add_argument(
        "--enable-file-lock",
        action="store_true",
        help="Use file-based locking instead of the mutex (same as --lock-strategy file)",
    )
    lock_group.add_argument(
        "--lock-file",
        default=None,
        metavar="PATH",
        help="Lock file path for the file strategy (default: <tmp>/<instance>.lock, env: INSTANCE_LOCK_FILE)",
    )
    lock_group.add_argument(
        "--mutex-dir",
        default=None,
        metavar="DIR",
        help="Directory holding named mutexes (default: /dev/shm or the temp directory)",
    )
    lock_group.add_argument(
        "--stale-threshold",
        type=int,
        default=None,
        metavar="SECONDS",
        help="Warn when a held lock file is older than this (default: 3600)",
    )

    log_group = parser.add_argument_group("Logging")
    log_group.add_argument(
        "--log-level",
        type=str.upper,
        choices=list(VALID_LOG_LEVELS),
        default=None,
        help="Logging verbosity (default: INFO, env: LOG_LEVEL)",
    )
    log_group.add_argument(
        "--log-format",
        choices=list(VALID_LOG_FORMATS),
        default=None,
        help="Log output format: text (default) or json",
    )
    log_group.add_argument("--log-dir", default=None, metavar="DIR", help="Also write rotating log files here")
    log_group.add_argument("--quiet", "-q", action="store_true", help="Only log warnings and errors")

    # Enable shell tab-completion if argcomplete is installed
    if _ARGCOMPLETE_AVAILABLE:
        argcomplete.autocomplete(parser)

    return parser


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments"""
    return build_parser().parse_args(argv)

