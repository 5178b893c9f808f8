"""Install dependencies and build the agent, escalating on failure."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .installation import Installation
from .log_setup import success
from .models import BuildFailedError
from .runner import CommandRunner

LOGGER = logging.getLogger(__name__)

DEFAULT_ENTRY_POINTS: tuple[str, ...] = ("dist/main.js", "dist/src/main.js", "dist/index.js")


@dataclass(frozen=True, slots=True)
class BuildContext:
    runner: CommandRunner
    installation: Installation
    timeout_s: float = 1200
    entry_points: tuple[str, ...] = DEFAULT_ENTRY_POINTS

    def npm(self, *args: str) -> tuple[bool, str]:
        result = self.runner.run(
            ["npm", *args], timeout_s=self.timeout_s, cwd=str(self.installation.root)
        )
        if result.returncode == 127:
            return False, "npm is not installed"
        return result.ok, f"npm {' '.join(args)}: {result.output()}"


@dataclass(slots=True)
class BuildResult:
    strategy: str
    degraded: bool = False
    entry_point: str = ""
    attempts: list[tuple[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class BuildOutcome:
    ok: bool
    detail: str = ""
    degraded: bool = False


BuildStrategy = tuple[str, Callable[[BuildContext], BuildOutcome]]


def _install_and_build(ctx: BuildContext, *install_args: str) -> BuildOutcome:
    ok, detail = ctx.npm("install", *install_args)
    if not ok:
        return BuildOutcome(False, detail)
    ok, detail = ctx.npm("run", "build")
    if not ok:
        return BuildOutcome(False, detail)
    return BuildOutcome(True)


def standard(ctx: BuildContext) -> BuildOutcome:
    return _install_and_build(ctx)


def clean_reinstall(ctx: BuildContext) -> BuildOutcome:
    root = ctx.installation.root
    node_modules = root / "node_modules"
    if node_modules.is_dir():
        LOGGER.info("Removing %s", node_modules)
        shutil.rmtree(node_modules, ignore_errors=True)
    (root / "package-lock.json").unlink(missing_ok=True)
    ok, detail = ctx.npm("cache", "clean", "--force")
    if not ok:
        LOGGER.warning("Could not clear the npm cache: %s", detail)
    return _install_and_build(ctx, "--force")


def legacy_peer_deps(ctx: BuildContext) -> BuildOutcome:
    return _install_and_build(ctx, "--legacy-peer-deps")


def existing_entry_point(ctx: BuildContext) -> BuildOutcome:
    for relative in ctx.entry_points:
        if (ctx.installation.root / relative).is_file():
            return BuildOutcome(True, relative, degraded=True)
    return BuildOutcome(False, "no built entry point found: " + ", ".join(ctx.entry_points))


STRATEGIES: tuple[BuildStrategy, ...] = (
    ("standard", standard),
    ("clean_reinstall", clean_reinstall),
    ("legacy_peer_deps", legacy_peer_deps),
    ("existing_entry_point", existing_entry_point),
)


def build(ctx: BuildContext, strategies: Sequence[BuildStrategy] = STRATEGIES) -> BuildResult:
    attempts: list[tuple[str, str]] = []
    for name, strategy in strategies:
        LOGGER.info("Build strategy: %s", name)
        outcome = strategy(ctx)
        if outcome.ok:
            if outcome.degraded:
                LOGGER.warning(
                    "Build failed but %s exists; continuing with the previous build", outcome.detail
                )
            else:
                success(LOGGER, "Application built (strategy: %s)", name)
            return BuildResult(
                strategy=name,
                degraded=outcome.degraded,
                entry_point=outcome.detail if outcome.degraded else "",
                attempts=attempts,
            )
        LOGGER.warning("Build strategy %s failed: %s", name, outcome.detail)
        attempts.append((name, outcome.detail))
    raise BuildFailedError(
        "All build strategies failed: " + "; ".join(f"{n}: {d}" for n, d in attempts)
    )
