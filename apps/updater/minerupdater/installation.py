"""On-disk layout of a RefurbMiner installation.

The versioned source tree is replaceable; the user-owned items below must
survive every update::

    <install>/
        .env                    # RIG_TOKEN, API_URL, log settings
        config/config.json      # generated runtime config (minerId)
        apps/                   # ccminer binary and its config
        package.json            # version marker
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

ENV_FILE = ".env"
CONFIG_FILE = "config/config.json"
BINARIES_DIR = "apps"
PACKAGE_MANIFEST = "package.json"
# Always regenerated by the agent; its local edits block a clean checkout.
REGENERATED_MINER_CONFIG = "apps/ccminer/config.json"

USER_STATE_FILES: tuple[str, ...] = (ENV_FILE, CONFIG_FILE)
USER_STATE_DIRS: tuple[str, ...] = (BINARIES_DIR,)

_VERSION_RE = re.compile(r'"version"\s*:\s*"([^"]*)"')


def grep_field(text: str, pattern: re.Pattern[str]) -> str | None:
    match = pattern.search(text)
    if match is None:
        return None
    value = match.group(1).strip()
    return value or None


@dataclass(frozen=True, slots=True)
class Installation:
    root: Path

    @property
    def env_file(self) -> Path:
        return self.root / ENV_FILE

    @property
    def config_file(self) -> Path:
        return self.root / CONFIG_FILE

    @property
    def binaries_dir(self) -> Path:
        return self.root / BINARIES_DIR

    @property
    def package_manifest(self) -> Path:
        return self.root / PACKAGE_MANIFEST

    @property
    def regenerated_miner_config(self) -> Path:
        return self.root / REGENERATED_MINER_CONFIG

    @property
    def git_dir(self) -> Path:
        return self.root / ".git"

    def exists(self) -> bool:
        return self.root.is_dir()

    def read_version(self) -> str:
        """Return the ``version`` of package.json, or ``"unknown"``."""
        path = self.package_manifest
        if not path.is_file():
            return "unknown"
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Cannot read %s: %s", path, exc)
            return "unknown"
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            # A half-written manifest still usually carries the field.
            return grep_field(text, _VERSION_RE) or "unknown"
        version = data.get("version") if isinstance(data, dict) else None
        return str(version) if version else "unknown"

    def read_env_value(self, key: str) -> str | None:
        """Single-field ``KEY=VALUE`` lookup in the .env file."""
        if not self.env_file.is_file():
            return None
        pattern = re.compile(rf"^\s*{re.escape(key)}\s*=\s*(.*?)\s*$", re.MULTILINE)
        try:
            text = self.env_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None
        value = grep_field(text, pattern)
        if value and len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        return value
