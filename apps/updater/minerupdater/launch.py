"""Start the worker in a detached screen session and confirm it came up."""

from __future__ import annotations

import logging
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass

from .config import TimingConfig, WorkerConfig
from .installation import Installation
from .log_setup import success
from .models import LaunchError
from .process_control import ProcessInspector
from .runner import CommandRunner

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class LaunchResult:
    session_seen: bool
    port_bound: bool

    @property
    def verified(self) -> bool:
        return self.session_seen and self.port_bound


def wait_for_port_free(
    inspector: ProcessInspector,
    port: int,
    *,
    attempts: int,
    interval_s: float,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    for attempt in range(1, attempts + 1):
        if not inspector.port_in_use(port):
            return
        LOGGER.warning("Port %s still in use (attempt %d/%d)", port, attempt, attempts)
        sleep(interval_s)
    if not inspector.port_in_use(port):
        return
    raise LaunchError(f"port still in use: {port} (waited {attempts * interval_s:.0f}s)")


def launch_command(worker: WorkerConfig, installation: Installation) -> list[str]:
    inner = f"cd {shlex.quote(str(installation.root))} && {worker.start_command}"
    return ["screen", "-dmS", worker.session_name, "bash", "-c", inner]


class LaunchSupervisor:
    def __init__(
        self,
        runner: CommandRunner,
        inspector: ProcessInspector,
        worker: WorkerConfig,
        timing: TimingConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._runner = runner
        self._inspector = inspector
        self._worker = worker
        self._timing = timing
        self._sleep = sleep

    def launch(self, installation: Installation) -> LaunchResult:
        port = self._worker.port
        wait_for_port_free(
            self._inspector,
            port,
            attempts=self._timing.port_poll_attempts,
            interval_s=self._timing.port_poll_interval_s,
            sleep=self._sleep,
        )

        LOGGER.info("Launching '%s' in a detached screen session", self._worker.session_name)
        result = self._runner.run(
            launch_command(self._worker, installation),
            timeout_s=self._timing.command_timeout_s,
        )
        if not result.ok:
            raise LaunchError(f"Failed to launch screen session: {result.output()}")

        self._sleep(self._timing.settle_s)
        session_seen = bool(self._inspector.list_sessions([self._worker.session_name]))
        if not session_seen:
            LOGGER.warning("Screen session '%s' not found after launch", self._worker.session_name)

        self._sleep(self._timing.settle_s)
        port_bound = self._inspector.port_in_use(port)
        if not port_bound:
            LOGGER.warning("Worker has not bound port %s yet; it may still be starting", port)

        launched = LaunchResult(session_seen=session_seen, port_bound=port_bound)
        if launched.verified:
            success(LOGGER, "'%s' is running on port %s", self._worker.session_name, port)
        else:
            LOGGER.warning("Worker started but could not be fully verified")
        return launched
