"""
scheduled-job - Single-instance scheduled job runner

Runs one cancellable job per host and instance name, guarded by a named
mutex or an exclusive lock file, and records each outcome in a completion
marker.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from scheduled_job.core.version import __version__

__all__ = ["__version__", "main"]

if TYPE_CHECKING:
    from scheduled_job.cli.main import main


def __getattr__(name: str) -> Any:
    if name == "main":
        from scheduled_job.cli import main as cli_main

        return cli_main.main
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
