"""Command-line entry point: resolve configuration, take the instance lock, run the job."""

from __future__ import annotations

import getpass
import logging
import os
import platform
import socket
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

from scheduled_job.cli.parser import parse_arguments
from scheduled_job.core.config import JobConfig
from scheduled_job.core.constants import (
    APP_NAME,
    BANNER_WIDTH,
    ENV_DURATION_SECONDS,
    EXIT_CONFIGURATION_ERROR,
    EXIT_ERROR,
    EXIT_LOCK_NOT_ACQUIRED,
    EXIT_SUCCESS,
    MONITORED_ENV_VARS,
)
from scheduled_job.core.exceptions import ConfigurationError, LockEnvironmentError
from scheduled_job.core.locks import InstanceLock
from scheduled_job.core.logging import flush_logging_handlers, setup_logging
from scheduled_job.core.version import __version__
from scheduled_job.job import CancellationToken, JobRunner, JobStatus, install_signal_handlers

EXIT_CODE_DESCRIPTIONS: dict[int, str] = {
    EXIT_SUCCESS: "Success",
    EXIT_ERROR: "Job execution failed",
    EXIT_LOCK_NOT_ACQUIRED: "Instance already running",
    EXIT_CONFIGURATION_ERROR: "Configuration error",
}


def show_exit_codes() -> None:
    print("=" * BANNER_WIDTH)
    print("EXIT CODE REFERENCE")
    print("=" * BANNER_WIDTH)
    print()
    print("  Code  Meaning")
    print("  ----  " + "-" * 50)
    print("    0   Success")
    print("        - Job completed")
    print("        - Job cancelled by SIGINT/SIGTERM (graceful shutdown)")
    print()
    print("    1   Job execution failed")
    print("        - Unexpected error inside the work loop")
    print()
    print("    2   Instance already running")
    print("        - Another process holds the mutex or lock file")
    print("        - Use a different --instance-name or stop the other instance")
    print()
    print("    3   Configuration error")
    print("        - Empty instance name, negative duration, invalid flag value")
    print("        - No usable location for the instance lock")
    print()
    print("=" * BANNER_WIDTH)


def _load_dotenv() -> bool | None:
    """Load .env variables if python-dotenv is available.

    Returns True/False for found/not found, None when python-dotenv is missing.
    """
    try:
        from dotenv import load_dotenv
    except ImportError:
        return None
    return load_dotenv()


def log_startup_info(logger: logging.Logger) -> None:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"

    logger.info("=== Application Startup ===")
    logger.info("Application: %s", APP_NAME)
    logger.info("Version: %s", __version__)
    logger.info("Hostname: %s", socket.gethostname())
    logger.info("Platform: %s", platform.platform())
    logger.info("Python: %s", platform.python_version())
    logger.info("Working Directory: %s", Path.cwd())
    logger.info("User: %s", user)
    logger.info("Process ID: %s", os.getpid())


def log_environment_info(config: JobConfig, environ: Mapping[str, str], logger: logging.Logger) -> None:
    """Log environment variables that affect execution."""
    logger.debug("=== Environment Information ===")
    for name in MONITORED_ENV_VARS:
        value = environ.get(name)
        if value:
            logger.debug("Environment: %s=%s", name, value)

    env_duration = environ.get(ENV_DURATION_SECONDS, "").strip()
    try:
        env_seconds = int(env_duration) if env_duration else None
    except ValueError:
        env_seconds = None
    if env_seconds is not None and env_seconds != config.duration_seconds:
        logger.info(
            "Note: Sleep duration from command-line (%ss) differs from environment variable (%ss). "
            "Using command-line value.",
            config.duration_seconds,
            env_seconds,
        )

    logger.debug(
        "Resolved configuration: instance=%s strategy=%s duration=%ss lock_file=%s mutex_dir=%s marker_dir=%s",
        config.instance_name,
        config.lock_strategy.value,
        config.duration_seconds,
        config.resolved_lock_file,
        config.resolved_mutex_dir,
        config.marker_dir,
    )


def run_job(
    config: JobConfig,
    logger: logging.Logger,
    token: CancellationToken | None = None,
    *,
    install_signals: bool = True,
) -> int:
    """Take the instance lock, run the job and map the outcome to an exit code.

    The lock is released only after the runner has returned, which includes
    writing the completion marker.
    """
    token = token or CancellationToken()
    restore_signals = install_signal_handlers(token, logger) if install_signals else None
    try:
        config.validate()
        logger.info("Checking for existing instances...")
        with InstanceLock.from_config(config, logger=logger) as lock:
            if not lock.held:
                logger.error("Another instance is already running. Exiting with code %d.", EXIT_LOCK_NOT_ACQUIRED)
                logger.info("To override, use a different --instance-name or terminate the existing instance")
                return EXIT_LOCK_NOT_ACQUIRED

            strategy = lock.active_strategy
            logger.info(
                "Instance lock acquired successfully (%s), proceeding with job execution",
                strategy.value if strategy else "unknown",
            )
            job_run = JobRunner(config, logger=logger).run(token)

        if job_run.status is JobStatus.CANCELLED:
            logger.warning("Job execution was cancelled; graceful shutdown is still considered success")
        elif job_run.status is JobStatus.FAILED:
            logger.error("Job execution failed with error: %s", job_run.error.message if job_run.error else "unknown")
        else:
            logger.info("Job execution completed, shutting down application")
        return job_run.exit_code
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIGURATION_ERROR
    except LockEnvironmentError as e:
        logger.error("Instance lock could not be set up: %s", e)
        return EXIT_CONFIGURATION_ERROR
    finally:
        if restore_signals is not None:
            restore_signals()


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the script"""
    args = parse_arguments(argv)

    if args.exit_codes:
        show_exit_codes()
        return EXIT_SUCCESS

    dotenv_loaded = _load_dotenv()
    environ = os.environ

    try:
        config = JobConfig.from_args(args, environ)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIGURATION_ERROR

    logger = setup_logging(
        instance_name=config.instance_name,
        log_level=config.log.level,
        log_format=config.log.format,
        log_dir=config.log.log_dir,
        max_bytes=config.log.file_max_bytes,
        backup_count=config.log.file_backup_count,
    )
    if dotenv_loaded is None:
        logger.debug("python-dotenv not installed (.env files will not be auto-loaded)")
    elif dotenv_loaded:
        logger.debug(".env file found and loaded")

    exit_code = EXIT_ERROR
    try:
        log_startup_info(logger)
        log_environment_info(config, environ, logger)
        exit_code = run_job(config, logger)
    except Exception as e:
        logger.error("Application failed: %s", e, exc_info=True)
        exit_code = EXIT_ERROR
    finally:
        logger.info("=== Application Exit ===")
        logger.info("Exit Code: %d (%s)", exit_code, EXIT_CODE_DESCRIPTIONS.get(exit_code, "Unknown"))
        flush_logging_handlers(logger)
    return exit_code


def console_main() -> None:
    sys.exit(main())
