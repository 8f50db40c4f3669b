"""Version information for scheduled-job."""

__version__ = "1.0.0"
