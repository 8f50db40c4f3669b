"""Constants and default values for scheduled-job.

This module centralizes exit codes, default configuration values, timing
thresholds and the environment variable names read by the CLI layer.
"""

# ==================== EXIT CODES ====================

EXIT_SUCCESS: int = 0  # Completed, or cancelled by a graceful shutdown
EXIT_ERROR: int = 1  # Job execution failed
EXIT_LOCK_NOT_ACQUIRED: int = 2  # Another instance holds the lock
EXIT_CONFIGURATION_ERROR: int = 3  # Invalid configuration detected before the run

# ==================== DISPLAY CONSTANTS ====================

APP_NAME: str = "scheduled-job"
BANNER_WIDTH: int = 60

# ==================== JOB DEFAULTS ====================

DEFAULT_INSTANCE_NAME: str = "ScheduledJobApp"
DEFAULT_DURATION_SECONDS: int = 10
LONG_DURATION_WARNING_SECONDS: int = 3600  # Accepted, but logged as a warning

# Work loop checks the cancel token at least this often
POLL_INTERVAL_SECONDS: float = 1.0

# Progress is only reported for jobs at least this long, at this cadence
PROGRESS_MIN_DURATION_SECONDS: int = 10
PROGRESS_INTERVAL_SECONDS: float = 5.0

# ==================== LOCK DEFAULTS ====================

# Held lock files older than this are reported as possibly hung
DEFAULT_STALE_THRESHOLD_SECONDS: int = 3600
MUTEX_DIR_NAME: str = "scheduled-job-mutexes"
MUTEX_DIGEST_LENGTH: int = 16  # Hex characters of sha256(name) in the mutex id

# ==================== OUTPUT DEFAULTS ====================

DEFAULT_MARKER_DIR: str = "logs"
MARKER_SUFFIX: str = ".marker"

# ==================== LOGGING DEFAULTS ====================

LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024  # 10MB max per log file
LOG_FILE_BACKUP_COUNT: int = 5  # Number of backup log files to keep
VALID_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_LOG_FORMATS: tuple[str, ...] = ("text", "json")

# ==================== ENVIRONMENT VARIABLES ====================

ENV_INSTANCE_NAME: str = "INSTANCE_NAME"
ENV_LOCK_TYPE: str = "INSTANCE_LOCK_TYPE"
ENV_LOCK_FILE: str = "INSTANCE_LOCK_FILE"
ENV_DURATION_SECONDS: str = "SLEEP_DURATION_SECONDS"
ENV_MARKER_DIR: str = "JOB_MARKER_DIR"
ENV_LOG_LEVEL: str = "LOG_LEVEL"

# Variables echoed at DEBUG level during startup diagnostics
MONITORED_ENV_VARS: tuple[str, ...] = (
    ENV_INSTANCE_NAME,
    ENV_DURATION_SECONDS,
    ENV_LOCK_TYPE,
    ENV_LOCK_FILE,
    ENV_MARKER_DIR,
    ENV_LOG_LEVEL,
)
