"""Completion marker persistence.

Every finished run leaves one small JSON file named
``job-<job_id>-<kind>.marker`` (kind is ``success``, ``cancelled`` or
``error``). Writing it is best-effort: a marker failure is logged and never
changes the run's status or the process exit code.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import socket
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from scheduled_job.core.constants import MARKER_SUFFIX
from scheduled_job.job.models import JobRun


def marker_filename(run: JobRun) -> str:
    return f"job-{run.job_id}-{run.status.marker_kind}{MARKER_SUFFIX}"


def build_marker_payload(run: JobRun) -> dict[str, Any]:
    """Marker schema: the run summary plus where and when it was recorded."""
    payload = run.to_dict()
    payload.update(
        {
            "marker_kind": run.status.marker_kind,
            "timestamp": datetime.now(UTC).isoformat(),
            "host": socket.gethostname(),
            "pid": os.getpid(),
        }
    )
    if payload["error"] is None:
        del payload["error"]
    return payload


class CompletionMarkerWriter:
    """Writes completion markers into ``marker_dir``."""

    def __init__(self, marker_dir: Path, logger: logging.Logger | logging.LoggerAdapter | None = None):
        self.marker_dir = Path(marker_dir)
        self.logger = logger or logging.getLogger(__name__)

    def marker_path(self, run: JobRun) -> Path:
        return self.marker_dir / marker_filename(run)

    def write(self, run: JobRun) -> Path | None:
        """Persist the marker for ``run``. Returns its path, or None on failure."""
        path = self.marker_path(run)
        try:
            self.marker_dir.mkdir(parents=True, exist_ok=True)
            content = json.dumps(build_marker_payload(run), indent=2, sort_keys=True) + "\n"
            self._atomic_write(path, content)
        except Exception as e:
            # Don't fail the job if we can't write the marker
            self.logger.warning("Failed to write completion marker %s: %s", path, e)
            return None

        self.logger.debug("Completion marker written: %s", path)
        return path

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
