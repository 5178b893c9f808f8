"""Update workflow: preflight, stop worker, back up, sync, restore, build,
launch, prune, notify.

Fatal failures are raised by the stages as :class:`UpdateError` subclasses
and mapped here to a rollback action and an exit code:

==========================  ====================  =========
error                       rollback              exit code
==========================  ====================  =========
PreconditionError           nothing touched yet   2
SyncFailedError             restore snapshot      1
BuildFailedError            none (tree kept)      1
LaunchError                 none                  1
unexpected, before build    restore snapshot      1
==========================  ====================  =========
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .backup import BackupSnapshot, create_snapshot, prune_snapshots, restore_snapshot
from .build import BuildContext, build
from .config import RunContext
from .launch import LaunchSupervisor
from .lock import LOCK_FILE_NAME, RunLock
from .log_setup import success
from .models import (
    BuildFailedError,
    LaunchError,
    LockHeldError,
    PreconditionError,
    SyncFailedError,
    UpdateError,
    UpdatePhase,
    UpdateReport,
    UpdateState,
)
from .network import check_connectivity, ensure_remote
from .notifier import notify_update
from .process_control import CommandProcessInspector, ProcessController, ProcessInspector
from .runner import CommandRunner, SubprocessRunner
from .source_sync import SyncContext, prune_failure_backups, synchronize
from .state_store import ReportStore

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PRECONDITION = 2
EXIT_LOCKED = 3

_ROLLBACK_PHASES = (UpdatePhase.syncing, UpdatePhase.restoring)


class UpdateOrchestrator:
    def __init__(
        self,
        ctx: RunContext,
        *,
        runner: CommandRunner | None = None,
        inspector: ProcessInspector | None = None,
        connectivity_check: Callable[[], str] | None = None,
        store: ReportStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
        notify: bool = True,
        launch: bool = True,
    ) -> None:
        self._ctx = ctx
        self._runner = runner or SubprocessRunner()
        self._inspector = inspector or CommandProcessInspector(
            self._runner,
            privilege_prefix=ctx.platform.privilege_prefix,
        )
        self._connectivity_check = connectivity_check
        self._store = store
        self._sleep = sleep
        self._notify = notify and ctx.config.notify.enabled
        self._launch = launch
        self._snapshot: BackupSnapshot | None = None
        self._report = UpdateReport()

    @property
    def report(self) -> UpdateReport:
        return self._report

    def _fatal(self, exc: BaseException, exit_code: int) -> None:
        report = self._report
        log_file = self._ctx.config.logging.log_file
        report.add_issue(report.phase.value, str(exc), fatal=True)
        report.state = UpdateState.failed
        report.exit_code = exit_code
        LOGGER.error("%s (see %s for details)", exc, log_file)

    def _rollback(self) -> None:
        if self._snapshot is None:
            LOGGER.warning("No backup snapshot available; nothing to restore")
            return
        LOGGER.info("Restoring configuration from %s", self._snapshot.path)
        try:
            restore_snapshot(self._snapshot, self._ctx.installation)
        except OSError as exc:
            self._report.add_issue(
                "rollback", "Restoring the backup snapshot failed", str(exc), fatal=True
            )
            LOGGER.error(
                "Could not restore configuration (%s); copy it back manually from %s",
                exc,
                self._snapshot.path,
            )
            return
        success(LOGGER, "Restored previous configuration")

    def run(self) -> UpdateReport:
        report = self._report
        report.state = UpdateState.running
        report.started_at = time.time()
        try:
            self._run_inner()
        except PreconditionError as exc:
            self._fatal(exc, EXIT_PRECONDITION)
        except SyncFailedError as exc:
            self._fatal(exc, EXIT_FAILED)
            self._rollback()
        except BuildFailedError as exc:
            self._fatal(exc, EXIT_FAILED)
            LOGGER.error("The new source tree was left in place; re-run the updater to retry")
        except LaunchError as exc:
            self._fatal(exc, EXIT_FAILED)
        except UpdateError as exc:
            self._fatal(exc, EXIT_FAILED)
        except Exception as exc:
            LOGGER.exception("update: unexpected error during %s", report.phase.value)
            self._fatal(exc, EXIT_FAILED)
            if report.phase in _ROLLBACK_PHASES:
                self._rollback()
        finally:
            report.finished_at = time.time()
            if report.state == UpdateState.running:
                report.state = UpdateState.failed
                report.exit_code = EXIT_FAILED
            if report.state != UpdateState.failed:
                report.phase = UpdatePhase.done
            if self._store is not None and not self._store.save(report):
                LOGGER.warning("This run was not recorded; --status shows an older run")

        if report.state == UpdateState.success:
            success(LOGGER, "RefurbMiner update complete (version %s)", report.current_version)
            if report.failure_backup:
                LOGGER.info("Previous tree kept at %s", report.failure_backup)
        else:
            self._print_hints()
        return report

    def _run_inner(self) -> None:
        report = self._report
        cfg = self._ctx.config
        installation = self._ctx.installation

        # --- Phase: preflight ---
        report.phase = UpdatePhase.preflight
        platform = self._ctx.platform
        LOGGER.debug("Platform: termux=%s root=%s", platform.is_termux, platform.has_root)
        if not installation.exists():
            raise PreconditionError(f"RefurbMiner installation not found at {installation.root}")
        report.previous_version = installation.read_version()
        LOGGER.info("Installed version: %s", report.previous_version)
        probe = (self._connectivity_check or check_connectivity)()
        LOGGER.info("Network reachable (%s probe)", probe)
        ensure_remote(self._runner, installation, cfg.install.remote, cfg.install.repo_url)

        # --- Phase: stop worker ---
        report.phase = UpdatePhase.stopping_worker
        stopped = ProcessController(
            self._inspector, cfg.worker, cfg.timing, sleep=self._sleep
        ).stop_all()
        if not stopped.clean:
            report.add_issue(
                report.phase.value,
                "Worker could not be stopped completely",
                f"port_clear={stopped.port_clear} leftover={stopped.leftover_pids}",
            )

        # --- Phase: backup ---
        report.phase = UpdatePhase.backing_up
        self._snapshot = create_snapshot(
            installation, cfg.backup.root, version=report.previous_version
        )
        report.snapshot_path = str(self._snapshot.path)

        # --- Phase: sync ---
        report.phase = UpdatePhase.syncing
        synced = synchronize(
            SyncContext(
                runner=self._runner,
                installation=installation,
                repo_url=cfg.install.repo_url,
                remote=cfg.install.remote,
                branch=cfg.install.branch,
                timeout_s=cfg.timing.command_timeout_s,
                clone_timeout_s=cfg.timing.clone_timeout_s,
            )
        )
        report.sync_strategy = synced.strategy
        if synced.failure_backup is not None:
            report.failure_backup = str(synced.failure_backup)

        # --- Phase: restore ---
        report.phase = UpdatePhase.restoring
        restore_snapshot(self._snapshot, installation)

        # --- Phase: build ---
        report.phase = UpdatePhase.building
        built = build(
            BuildContext(
                runner=self._runner,
                installation=installation,
                timeout_s=cfg.timing.build_timeout_s,
                entry_points=cfg.build.entry_points,
            )
        )
        report.build_strategy = built.strategy
        degraded = built.degraded
        if built.degraded:
            report.add_issue(
                report.phase.value,
                "Build failed; running the previously built entry point",
                built.entry_point,
            )

        # --- Phase: launch ---
        report.phase = UpdatePhase.launching
        if self._launch:
            launched = LaunchSupervisor(
                self._runner, self._inspector, cfg.worker, cfg.timing, sleep=self._sleep
            ).launch(installation)
            report.launch_verified = launched.verified
            if not launched.verified:
                degraded = True
                report.add_issue(
                    report.phase.value,
                    "Worker started but not verified",
                    f"session_seen={launched.session_seen} port_bound={launched.port_bound}",
                )
        else:
            LOGGER.info("Launch skipped; start the worker manually")

        report.current_version = installation.read_version()
        if report.current_version != report.previous_version:
            LOGGER.info(
                "Version changed: %s -> %s", report.previous_version, report.current_version
            )

        prune_snapshots(cfg.backup.root, cfg.backup.keep_count)
        prune_failure_backups(installation.root, cfg.backup.keep_count)

        # --- Phase: notify ---
        report.phase = UpdatePhase.notifying
        if self._notify:
            components = ["source"] if built.degraded else ["source", "dependencies", "build"]
            report.notified = notify_update(
                installation,
                default_api_url=cfg.notify.api_url,
                status="degraded" if degraded else "success",
                version=report.current_version,
                previous_version=report.previous_version,
                updated_components=components,
                timeout_s=cfg.notify.timeout_s,
            )

        report.state = UpdateState.degraded if degraded else UpdateState.success
        report.exit_code = EXIT_OK

    def _print_hints(self) -> None:
        cfg = self._ctx.config
        LOGGER.warning("Troubleshooting:")
        LOGGER.warning("  Check what holds the port:  ss -ltnp | grep :%s", cfg.worker.port)
        LOGGER.warning("  Attach to the worker:       screen -r %s", cfg.worker.session_name)
        LOGGER.warning(
            "  Start it manually:          cd %s && %s",
            cfg.install.dir,
            cfg.worker.start_command,
        )
        LOGGER.warning("  Re-run the updater:         refurbminer-update")
        LOGGER.warning("  Full log:                   %s", cfg.logging.log_file)


def run_update(
    ctx: RunContext,
    *,
    notify: bool = True,
    launch: bool = True,
    runner: CommandRunner | None = None,
) -> int:
    """Run one update under the run lock and return the process exit code."""
    state_dir = ctx.config.state_dir
    try:
        with RunLock(state_dir / LOCK_FILE_NAME):
            report = UpdateOrchestrator(
                ctx,
                runner=runner,
                store=ReportStore(state_dir),
                notify=notify,
                launch=launch,
            ).run()
    except LockHeldError as exc:
        LOGGER.error("%s", exc)
        return EXIT_LOCKED
    return EXIT_FAILED if report.exit_code is None else report.exit_code
