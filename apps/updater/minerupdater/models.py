"""Data models and error taxonomy for the update workflow."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class UpdateState(enum.StrEnum):
    idle = "idle"
    running = "running"
    success = "success"
    degraded = "degraded"
    failed = "failed"


class UpdatePhase(enum.StrEnum):
    idle = "idle"
    preflight = "preflight"
    stopping_worker = "stopping_worker"
    backing_up = "backing_up"
    syncing = "syncing"
    restoring = "restoring"
    building = "building"
    launching = "launching"
    notifying = "notifying"
    done = "done"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class UpdateError(Exception):
    """Base class for fatal stage failures."""

    phase: UpdatePhase = UpdatePhase.idle


class PreconditionError(UpdateError):
    phase = UpdatePhase.preflight


class NetworkUnavailableError(PreconditionError):
    pass


class RemoteConfigError(PreconditionError):
    pass


class SyncFailedError(UpdateError):
    phase = UpdatePhase.syncing


class BuildFailedError(UpdateError):
    phase = UpdatePhase.building


class LaunchError(UpdateError):
    phase = UpdatePhase.launching


class LockHeldError(RuntimeError):
    def __init__(self, path: str, pid: int | None) -> None:
        suffix = f" (pid {pid})" if pid else ""
        super().__init__(f"Another update run is already in progress{suffix}; lock file {path}")
        self.path = path
        self.pid = pid


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


@dataclass
class UpdateIssue:
    phase: str
    message: str
    detail: str = ""
    fatal: bool = False


@dataclass
class UpdateReport:
    state: UpdateState = UpdateState.idle
    phase: UpdatePhase = UpdatePhase.idle
    started_at: float | None = None
    finished_at: float | None = None
    previous_version: str = ""
    current_version: str = ""
    snapshot_path: str = ""
    sync_strategy: str = ""
    failure_backup: str = ""
    build_strategy: str = ""
    launch_verified: bool | None = None
    notified: bool = False
    issues: list[UpdateIssue] = field(default_factory=list)
    exit_code: int | None = None

    def add_issue(self, phase: str, message: str, detail: str = "", *, fatal: bool = False) -> None:
        self.issues.append(UpdateIssue(phase=phase, message=message, detail=detail, fatal=fatal))

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "phase": self.phase.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "previous_version": self.previous_version,
            "current_version": self.current_version,
            "snapshot_path": self.snapshot_path,
            "sync_strategy": self.sync_strategy,
            "failure_backup": self.failure_backup,
            "build_strategy": self.build_strategy,
            "launch_verified": self.launch_verified,
            "notified": self.notified,
            "issues": [
                {"phase": i.phase, "message": i.message, "detail": i.detail, "fatal": i.fatal}
                for i in self.issues
            ],
            "exit_code": self.exit_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UpdateReport:
        """Reconstruct from a serialised dict (e.g. loaded from disk)."""
        issues = [
            UpdateIssue(
                phase=str(i.get("phase", "")),
                message=str(i.get("message", "")),
                detail=str(i.get("detail", "")),
                fatal=bool(i.get("fatal", False)),
            )
            for i in (data.get("issues") or [])
        ]
        launch_verified = data.get("launch_verified")
        return cls(
            state=UpdateState(data.get("state", "idle")),
            phase=UpdatePhase(data.get("phase", "idle")),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            previous_version=str(data.get("previous_version", "")),
            current_version=str(data.get("current_version", "")),
            snapshot_path=str(data.get("snapshot_path", "")),
            sync_strategy=str(data.get("sync_strategy", "")),
            failure_backup=str(data.get("failure_backup", "")),
            build_strategy=str(data.get("build_strategy", "")),
            launch_verified=None if launch_verified is None else bool(launch_verified),
            notified=bool(data.get("notified", False)),
            issues=issues,
            exit_code=data.get("exit_code"),
        )
