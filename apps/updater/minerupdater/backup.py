"""Backup snapshots of user-owned installation state.

Snapshot directory structure::

    <backup_root>/
        backup_20250615020000/
            .env
            config/config.json
            apps/...
            _meta.json      # {created_at, version, install_dir, items, missing}

Snapshots live outside the installation so ``git clean`` and re-clones can
never remove them.  They are never modified after creation.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .installation import USER_STATE_DIRS, USER_STATE_FILES, Installation

LOGGER = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "backup_"
_META_FILE = "_meta.json"
_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
_SNAPSHOT_RE = re.compile(rf"^{SNAPSHOT_PREFIX}(\d{{14}})(?:_(\d+))?$")


@dataclass
class BackupSnapshot:
    path: Path
    created_at: str = ""
    version: str = ""
    items: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    def has(self, relative: str) -> bool:
        return (self.path / relative).exists()

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at,
            "version": self.version,
            "items": list(self.items),
            "missing": list(self.missing),
        }

    @classmethod
    def load(cls, path: Path) -> BackupSnapshot:
        meta: dict[str, Any] = {}
        meta_path = path / _META_FILE
        if meta_path.is_file():
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                LOGGER.warning("Ignoring unreadable snapshot metadata %s: %s", meta_path, exc)
                meta = {}
        return cls(
            path=path,
            created_at=str(meta.get("created_at", "")),
            version=str(meta.get("version", "")),
            items=list(meta.get("items") or []),
            missing=list(meta.get("missing") or []),
        )


def _sort_key(path: Path) -> tuple[str, int]:
    match = _SNAPSHOT_RE.match(path.name)
    if match is None:
        return ("", 0)
    return (match.group(1), int(match.group(2) or 0))


def _unique_snapshot_dir(backup_root: Path, stamp: str) -> Path:
    # Suffixes only grow, so a pruned name is never reused out of order.
    taken = [
        _sort_key(p)[1]
        for p in backup_root.iterdir()
        if _sort_key(p)[0] == stamp
    ]
    if not taken:
        return backup_root / f"{SNAPSHOT_PREFIX}{stamp}"
    return backup_root / f"{SNAPSHOT_PREFIX}{stamp}_{max(taken) + 1}"


def _copy_item(src: Path, dest: Path) -> None:
    if src.is_dir():
        shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
    else:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)


def create_snapshot(
    installation: Installation,
    backup_root: Path,
    *,
    version: str = "",
    now: Callable[[], datetime] = lambda: datetime.now(UTC),
) -> BackupSnapshot:
    """Copy the user-state items present in *installation* into a new snapshot."""
    backup_root.mkdir(parents=True, exist_ok=True)
    created = now()
    snapshot_dir = _unique_snapshot_dir(backup_root, created.strftime(_TIMESTAMP_FORMAT))
    snapshot_dir.mkdir()

    items: list[str] = []
    missing: list[str] = []
    for relative in (*USER_STATE_FILES, *USER_STATE_DIRS):
        src = installation.root / relative
        if not src.exists():
            missing.append(relative)
            LOGGER.info("Nothing to back up for %s (not present)", relative)
            continue
        _copy_item(src, snapshot_dir / relative)
        items.append(relative)
        LOGGER.info("Backed up %s", relative)

    snapshot = BackupSnapshot(
        path=snapshot_dir,
        created_at=created.isoformat(),
        version=version,
        items=items,
        missing=missing,
    )
    meta = {**snapshot.to_dict(), "install_dir": str(installation.root)}
    (snapshot_dir / _META_FILE).write_text(
        json.dumps(meta, indent=2, sort_keys=True) + "\n", encoding="utf-8"
    )
    LOGGER.info("Backup snapshot created at %s", snapshot_dir)
    return snapshot


def restore_snapshot(snapshot: BackupSnapshot, installation: Installation) -> list[str]:
    """Reapply the snapshot's user state onto *installation*.

    Items missing from the snapshot are skipped.  Copies overwrite file by
    file, so restoring the same snapshot twice gives the same tree.
    """
    restored: list[str] = []
    for relative in (*USER_STATE_FILES, *USER_STATE_DIRS):
        src = snapshot.path / relative
        if not src.exists():
            continue
        _copy_item(src, installation.root / relative)
        restored.append(relative)
        LOGGER.info("Restored %s", relative)
    return restored


def list_snapshots(backup_root: Path) -> list[BackupSnapshot]:
    """All snapshots under *backup_root*, newest first."""
    if not backup_root.is_dir():
        return []
    dirs = [p for p in backup_root.iterdir() if p.is_dir() and _SNAPSHOT_RE.match(p.name)]
    dirs.sort(key=_sort_key, reverse=True)
    return [BackupSnapshot.load(p) for p in dirs]


def prune_snapshots(backup_root: Path, keep: int) -> list[Path]:
    """Delete every snapshot beyond the *keep* newest.  Returns removed paths."""
    if keep < 1:
        raise ValueError(f"keep must be >= 1, got {keep}")
    removed: list[Path] = []
    for snapshot in list_snapshots(backup_root)[keep:]:
        try:
            shutil.rmtree(snapshot.path)
        except OSError as exc:
            LOGGER.warning("Could not remove old backup %s: %s", snapshot.path, exc)
            continue
        removed.append(snapshot.path)
        LOGGER.info("Removed old backup %s", snapshot.path)
    return removed
