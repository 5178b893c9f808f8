"""Best-effort completion report to the RefurbMiner API."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from datetime import UTC, datetime
from http.client import HTTPException
from pathlib import Path
from urllib.request import Request, urlopen

from .installation import Installation, grep_field

LOGGER = logging.getLogger(__name__)

LOGS_ENDPOINT = "/api/miners/logs"
_MINER_ID_RE = re.compile(r'"minerId"\s*:\s*"([^"]*)"')


def read_node_identifier(config_file: Path) -> str | None:
    """Grep ``minerId`` out of the runtime config without parsing it."""
    try:
        text = config_file.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return grep_field(text, _MINER_ID_RE)


def resolve_api_url(installation: Installation, default: str) -> str:
    return (installation.read_env_value("API_URL") or default).rstrip("/")


def build_payload(
    miner_id: str,
    *,
    status: str,
    version: str,
    previous_version: str,
    updated_components: Sequence[str],
    timestamp: datetime | None = None,
) -> dict[str, object]:
    when = (timestamp or datetime.now(UTC)).strftime("%Y-%m-%dT%H:%M:%SZ")
    return {
        "minerId": miner_id,
        "message": f"RefurbMiner updated to version {version}",
        "additionalInfo": {
            "type": "software_update",
            "status": status,
            "version": version,
            "updatedComponents": list(updated_components),
            "timestamp": when,
            "previousVersion": previous_version,
        },
    }


def notify_update(
    installation: Installation,
    *,
    default_api_url: str,
    status: str,
    version: str,
    previous_version: str,
    updated_components: Sequence[str] = ("software",),
    timeout_s: float = 10,
) -> bool:
    """POST the update event.  Returns False instead of raising on any problem."""
    miner_id = read_node_identifier(installation.config_file)
    if not miner_id:
        LOGGER.info("No minerId in %s; skipping update notification", installation.config_file)
        return False

    url = resolve_api_url(installation, default_api_url) + LOGS_ENDPOINT
    payload = build_payload(
        miner_id,
        status=status,
        version=version,
        previous_version=previous_version,
        updated_components=updated_components,
    )
    req = Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout_s):  # noqa: S310
            pass
    except (OSError, ValueError, HTTPException) as exc:
        LOGGER.warning("Update notification to %s failed: %s", url, exc)
        return False
    LOGGER.info("Update notification sent for miner %s", miner_id)
    return True
