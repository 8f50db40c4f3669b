"""CLI module - Command-line interface components."""

from scheduled_job.cli.main import main, run_job
from scheduled_job.cli.parser import build_parser, parse_arguments

__all__ = ["build_parser", "main", "parse_arguments", "run_job"]
