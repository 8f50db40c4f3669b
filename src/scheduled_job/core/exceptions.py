"""Custom exceptions for scheduled-job.

Expected outcomes (another instance holding the lock, a recovered lock,
a cancelled run) are reported as data. The classes below cover the cases
the caller cannot continue from.
"""


class ScheduledJobError(Exception):
    """Base exception for all scheduled-job errors."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(ScheduledJobError):
    """Exception raised for invalid job configuration.

    Examples:
        - Empty instance name
        - Unknown lock strategy
        - Non-integer duration in SLEEP_DURATION_SECONDS
    """

    def __init__(self, message: str, field: str | None = None, details: str | None = None):
        self.field = field
        super().__init__(message, details)


class LockEnvironmentError(ScheduledJobError):
    """Raised when no lock strategy can be set up on this host.

    This is an environment problem (for example, no writable directory for
    the lock file), not a signal that another instance is running.

    Attributes:
        lock_path: Path that could not be used
        strategy: Strategy that was being attempted
        original_error: Underlying OS error, if any
    """

    def __init__(
        self,
        message: str,
        lock_path: str | None = None,
        strategy: str | None = None,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.lock_path = lock_path
        self.strategy = strategy
        self.original_error = original_error
        super().__init__(message, details)

    def __str__(self) -> str:
        parts = [self.message]
        if self.strategy:
            parts.append(f"strategy {self.strategy}")
        if self.lock_path:
            parts.append(f"path {self.lock_path}")
        if self.details:
            parts.append(self.details)
        return " - ".join(parts)


class JobStateError(ScheduledJobError):
    """Raised when a JobRunner is asked to run more than once."""

    def __init__(self, state: str):
        self.state = state
        super().__init__("JobRunner has already been used", f"current state is {state}")
