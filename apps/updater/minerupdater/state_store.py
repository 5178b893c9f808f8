"""Persist the report of the last update run.

Writes are atomic (write-to-temp + ``os.replace``); reads tolerate missing or
malformed JSON and return ``None``.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from .models import UpdateReport

LOGGER = logging.getLogger(__name__)

REPORT_FILE_NAME = "last_update.json"


class ReportStore:
    def __init__(self, state_dir: Path) -> None:
        self._path = state_dir / REPORT_FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> UpdateReport | None:
        if not self._path.is_file():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return UpdateReport.from_dict(data)
        except (json.JSONDecodeError, ValueError, KeyError, TypeError, AttributeError) as exc:
            LOGGER.warning("Corrupt update report %s: %s", self._path, exc)
            return None
        except OSError as exc:
            LOGGER.warning("Cannot read update report %s: %s", self._path, exc)
            return None

    def save(self, report: UpdateReport) -> bool:
        """Write *report* atomically.  Returns False when it could not be persisted."""
        payload = json.dumps(report.to_dict(), indent=2, default=str) + "\n"
        tmp: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=str(self._path.parent), prefix=".last_update_", suffix=".tmp"
            )
            try:
                os.write(fd, payload.encode("utf-8"))
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(tmp, str(self._path))
        except OSError as exc:
            LOGGER.warning("Failed to persist update report to %s: %s", self._path, exc)
            if tmp is not None:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
            return False
        return True
