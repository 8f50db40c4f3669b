"""Core module - Foundation components shared by the job runner and CLI.

This module provides the basic building blocks used throughout the application:
- Version information
- Custom exceptions
- Configuration dataclasses
- Constants and defaults
"""

from scheduled_job.core.version import __version__

from scheduled_job.core.exceptions import (
    ScheduledJobError,
    ConfigurationError,
    LockEnvironmentError,
    JobStateError,
)

from scheduled_job.core.config import (
    LockStrategy,
    LogConfig,
    JobConfig,
    default_lock_file,
    default_mutex_dir,
    sanitize_instance_name,
)

from scheduled_job.core.constants import (
    EXIT_SUCCESS,
    EXIT_ERROR,
    EXIT_LOCK_NOT_ACQUIRED,
    EXIT_CONFIGURATION_ERROR,
    DEFAULT_INSTANCE_NAME,
    DEFAULT_DURATION_SECONDS,
    DEFAULT_STALE_THRESHOLD_SECONDS,
)

__all__ = [
    # Version
    '__version__',
    # Exceptions
    'ScheduledJobError',
    'ConfigurationError',
    'LockEnvironmentError',
    'JobStateError',
    # Config
    'LockStrategy',
    'LogConfig',
    'JobConfig',
    'default_lock_file',
    'default_mutex_dir',
    'sanitize_instance_name',
    # Constants
    'EXIT_SUCCESS',
    'EXIT_ERROR',
    'EXIT_LOCK_NOT_ACQUIRED',
    'EXIT_CONFIGURATION_ERROR',
    'DEFAULT_INSTANCE_NAME',
    'DEFAULT_DURATION_SECONDS',
    'DEFAULT_STALE_THRESHOLD_SECONDS',
]
