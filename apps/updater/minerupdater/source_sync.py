"""Bring the working copy to the upstream tip.

Strategies are tried in order until one succeeds::

    pull         git pull <remote> <branch>
    hard_reset   reset --hard HEAD, clean -fd, fetch, reset --hard <remote>/<branch>
    force_checkout   fetch, checkout -f <remote>/<branch>
    reclone      move tree aside, fresh clone, carry user state forward

The re-clone either succeeds or puts the original tree back exactly as it
was before raising :class:`SyncFailedError`.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .installation import USER_STATE_DIRS, USER_STATE_FILES, Installation
from .log_setup import success
from .models import SyncFailedError
from .runner import CommandResult, CommandRunner

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SyncContext:
    runner: CommandRunner
    installation: Installation
    repo_url: str
    remote: str = "origin"
    branch: str = "master"
    timeout_s: float = 60
    clone_timeout_s: float = 600
    now: Callable[[], datetime] = lambda: datetime.now(UTC)

    @property
    def upstream(self) -> str:
        return f"{self.remote}/{self.branch}"

    def git(self, *args: str, timeout_s: float | None = None) -> CommandResult:
        return self.runner.run(
            ["git", "-C", str(self.installation.root), *args],
            timeout_s=timeout_s or self.timeout_s,
        )


@dataclass(slots=True)
class StrategyOutcome:
    ok: bool
    detail: str = ""


@dataclass(slots=True)
class SyncResult:
    strategy: str
    attempts: list[tuple[str, str]] = field(default_factory=list)
    failure_backup: Path | None = None


Strategy = tuple[str, Callable[[SyncContext], StrategyOutcome]]


def _run_steps(ctx: SyncContext, steps: Sequence[Sequence[str]]) -> StrategyOutcome:
    for step in steps:
        result = ctx.git(*step)
        if not result.ok:
            return StrategyOutcome(False, f"git {' '.join(step)}: {result.output()}")
    return StrategyOutcome(True)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def pull(ctx: SyncContext) -> StrategyOutcome:
    return _run_steps(ctx, [("pull", ctx.remote, ctx.branch)])


def hard_reset(ctx: SyncContext) -> StrategyOutcome:
    return _run_steps(
        ctx,
        [
            ("reset", "--hard", "HEAD"),
            ("clean", "-fd"),
            ("fetch", ctx.remote),
            ("reset", "--hard", ctx.upstream),
        ],
    )


def force_checkout(ctx: SyncContext) -> StrategyOutcome:
    return _run_steps(ctx, [("fetch", ctx.remote), ("checkout", "-f", ctx.upstream)])


def _failure_backup_path(root: Path, stamp: str) -> Path:
    candidate = root.with_name(f"{root.name}.failed_{stamp}")
    counter = 1
    while candidate.exists():
        candidate = root.with_name(f"{root.name}.failed_{stamp}_{counter}")
        counter += 1
    return candidate


def _carry_forward(src_root: Path, dest_root: Path) -> None:
    for relative in (*USER_STATE_FILES, *USER_STATE_DIRS):
        src = src_root / relative
        dest = dest_root / relative
        if src.is_dir():
            shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
        elif src.is_file():
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
        else:
            continue
        LOGGER.info("Carried %s forward into the fresh clone", relative)


def reclone(ctx: SyncContext) -> StrategyOutcome:
    root = ctx.installation.root
    failed = _failure_backup_path(root, ctx.now().strftime("%Y%m%d%H%M%S"))
    LOGGER.warning("Moving %s aside to %s for a fresh clone", root, failed)
    try:
        shutil.move(str(root), str(failed))
    except OSError as exc:
        raise SyncFailedError(f"Cannot move {root} aside for re-clone: {exc}") from exc

    result = ctx.runner.run(
        ["git", "clone", "--branch", ctx.branch, ctx.repo_url, str(root)],
        timeout_s=ctx.clone_timeout_s,
        cwd=str(root.parent),
    )
    if result.ok:
        _carry_forward(failed, root)
        LOGGER.info("Previous tree kept at %s", failed)
        return StrategyOutcome(True, str(failed))

    LOGGER.error("Fresh clone failed: %s; putting the previous tree back", result.output())
    try:
        if root.exists():
            shutil.rmtree(root)
        shutil.move(str(failed), str(root))
    except OSError as exc:
        raise SyncFailedError(
            f"Clone failed and the previous tree could not be restored from {failed}: {exc}"
        ) from exc
    raise SyncFailedError(f"All sync strategies failed; last error: {result.output()}")


STRATEGIES: tuple[Strategy, ...] = (
    ("pull", pull),
    ("hard_reset", hard_reset),
    ("force_checkout", force_checkout),
    ("reclone", reclone),
)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def list_failure_backups(root: Path) -> list[Path]:
    """Trees moved aside by earlier re-clones, newest first."""
    pattern = re.compile(rf"^{re.escape(root.name)}\.failed_(\d{{14}})(?:_(\d+))?$")
    found: list[tuple[str, int, Path]] = []
    if not root.parent.is_dir():
        return []
    for path in root.parent.iterdir():
        match = pattern.match(path.name)
        if match and path.is_dir():
            found.append((match.group(1), int(match.group(2) or 0), path))
    found.sort(reverse=True)
    return [path for _, _, path in found]


def prune_failure_backups(root: Path, keep: int) -> list[Path]:
    """Delete re-clone leftovers beyond the *keep* newest.  Returns removed paths."""
    if keep < 1:
        raise ValueError(f"keep must be >= 1, got {keep}")
    removed: list[Path] = []
    for path in list_failure_backups(root)[keep:]:
        try:
            shutil.rmtree(path)
        except OSError as exc:
            LOGGER.warning("Could not remove old re-clone leftover %s: %s", path, exc)
            continue
        removed.append(path)
        LOGGER.info("Removed old re-clone leftover %s", path)
    return removed


def remove_regenerated_config(installation: Installation) -> bool:
    path = installation.regenerated_miner_config
    if not path.is_file():
        return False
    path.unlink()
    LOGGER.info("Removed %s to prevent checkout conflicts", path)
    return True


def synchronize(
    ctx: SyncContext, strategies: Sequence[Strategy] = STRATEGIES
) -> SyncResult:
    """Try each strategy in order; the first success wins."""
    remove_regenerated_config(ctx.installation)
    attempts: list[tuple[str, str]] = []
    for name, strategy in strategies:
        LOGGER.info("Sync strategy: %s", name)
        outcome = strategy(ctx)
        if outcome.ok:
            success(LOGGER, "Repository updated (strategy: %s)", name)
            failure_backup = Path(outcome.detail) if name == "reclone" and outcome.detail else None
            return SyncResult(strategy=name, attempts=attempts, failure_backup=failure_backup)
        LOGGER.warning("Sync strategy %s failed: %s", name, outcome.detail)
        attempts.append((name, outcome.detail))
    raise SyncFailedError(
        "All sync strategies failed: " + "; ".join(f"{n}: {d}" for n, d in attempts)
    )
