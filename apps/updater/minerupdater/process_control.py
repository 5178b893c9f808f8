"""Quiesce the mining worker before the installation is touched.

Everything OS-specific goes through :class:`ProcessInspector`; the
controller itself only sequences graceful-then-forceful termination so it
can be exercised with a fake inspector.
"""

from __future__ import annotations

import logging
import os
import re
import socket
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .config import TimingConfig, WorkerConfig
from .runner import CommandResult, CommandRunner

LOGGER = logging.getLogger(__name__)

_SCREEN_LINE_RE = re.compile(r"^\s*(\d+\.\S+)\s")
_SS_PID_RE = re.compile(r"pid=(\d+)")


def _parse_pids(text: str) -> list[int]:
    pids: list[int] = []
    for token in text.split():
        if token.isdigit():
            pids.append(int(token))
    return pids


class ProcessInspector:
    """OS process/session queries.  Override for testing."""

    def list_sessions(self, patterns: Iterable[str]) -> list[str]:
        raise NotImplementedError

    def quit_session(self, session_id: str) -> bool:
        raise NotImplementedError

    def kill_sessions(self, pattern: str) -> None:
        raise NotImplementedError

    def wipe_sessions(self) -> None:
        raise NotImplementedError

    def port_in_use(self, port: int) -> bool:
        raise NotImplementedError

    def port_pids(self, port: int) -> list[int]:
        raise NotImplementedError

    def pids_matching(self, signature: str) -> list[int]:
        raise NotImplementedError

    def signal(self, pid: int, sig: str) -> bool:
        raise NotImplementedError

    def is_alive(self, pid: int) -> bool:
        raise NotImplementedError


class CommandProcessInspector(ProcessInspector):
    """Inspector backed by screen, ss/lsof, pgrep and kill."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        privilege_prefix: Iterable[str] = (),
        timeout_s: float = 10,
    ) -> None:
        self._runner = runner
        self._prefix = list(privilege_prefix)
        self._timeout_s = timeout_s

    def list_sessions(self, patterns: Iterable[str]) -> list[str]:
        # screen -ls exits 1 whenever sessions exist on some builds; parse regardless.
        result = self._runner.run(["screen", "-ls"], timeout_s=self._timeout_s)
        wanted = [p for p in patterns if p]
        sessions: list[str] = []
        for line in result.stdout.splitlines():
            match = _SCREEN_LINE_RE.match(line)
            if match is None:
                continue
            session_id = match.group(1)
            name = session_id.split(".", 1)[1]
            if any(p in name for p in wanted):
                sessions.append(session_id)
        return sessions

    def quit_session(self, session_id: str) -> bool:
        result = self._runner.run(
            ["screen", "-S", session_id, "-X", "quit"], timeout_s=self._timeout_s
        )
        return result.ok

    def kill_sessions(self, pattern: str) -> None:
        self._runner.run(
            ["pkill", "-9", "-f", f"[Ss][Cc][Rr][Ee][Ee][Nn].*{re.escape(pattern)}"],
            timeout_s=self._timeout_s,
        )

    def wipe_sessions(self) -> None:
        self._runner.run(["screen", "-wipe"], timeout_s=self._timeout_s)

    def port_in_use(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(1.0)
            return sock.connect_ex(("127.0.0.1", port)) == 0

    def _privileged(self, argv: list[str]) -> CommandResult:
        """Run *argv* with the privilege prefix, falling back to the plain call.

        ``sudo -n`` fails outright when a password is required; the plain call
        still sees and signals the user's own processes.
        """
        if self._prefix:
            result = self._runner.run([*self._prefix, *argv], timeout_s=self._timeout_s)
            if result.ok:
                return result
            LOGGER.debug(
                "Privileged %s failed (%s); retrying without %s",
                argv[0],
                result.output(),
                " ".join(self._prefix),
            )
        return self._runner.run(argv, timeout_s=self._timeout_s)

    def port_pids(self, port: int) -> list[int]:
        ss = self._privileged(["ss", "-ltnpH", f"sport = :{port}"])
        if ss.ok:
            pids = sorted({int(pid) for pid in _SS_PID_RE.findall(ss.stdout)})
            if pids or not ss.stdout.strip():
                return pids
        lsof = self._privileged(["lsof", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"])
        if lsof.ok:
            return sorted(set(_parse_pids(lsof.stdout)))
        return []

    def pids_matching(self, signature: str) -> list[int]:
        result = self._runner.run(["pgrep", "-f", signature], timeout_s=self._timeout_s)
        if not result.ok:
            return []
        own = os.getpid()
        return [pid for pid in _parse_pids(result.stdout) if pid != own]

    def signal(self, pid: int, sig: str) -> bool:
        return self._privileged(["kill", f"-{sig}", str(pid)]).ok

    def is_alive(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True


@dataclass
class StopResult:
    sessions_stopped: list[str] = field(default_factory=list)
    sessions_force_killed: bool = False
    pids_terminated: list[int] = field(default_factory=list)
    pids_force_killed: list[int] = field(default_factory=list)
    leftover_pids: list[int] = field(default_factory=list)
    port_clear: bool = True

    @property
    def clean(self) -> bool:
        return self.port_clear and not self.leftover_pids


class ProcessController:
    def __init__(
        self,
        inspector: ProcessInspector,
        worker: WorkerConfig,
        timing: TimingConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._inspector = inspector
        self._worker = worker
        self._timing = timing
        self._sleep = sleep

    @property
    def _patterns(self) -> list[str]:
        patterns = [self._worker.session_name, *self._worker.session_patterns]
        return list(dict.fromkeys(patterns))

    def _stop_sessions(self, result: StopResult) -> None:
        sessions = self._inspector.list_sessions(self._patterns)
        if not sessions:
            LOGGER.info("No active miner sessions found")
            return
        for session_id in sessions:
            LOGGER.info("Stopping screen session %s", session_id)
            self._inspector.quit_session(session_id)
        result.sessions_stopped.extend(sessions)
        self._sleep(self._timing.grace_s)

        remaining = self._inspector.list_sessions(self._patterns)
        if not remaining:
            return
        LOGGER.warning("Sessions still present after quit: %s; force-killing", ", ".join(remaining))
        for pattern in self._patterns:
            self._inspector.kill_sessions(pattern)
        result.sessions_force_killed = True

    def _escalate(self, pids: list[int], label: str, result: StopResult) -> None:
        if not pids:
            return
        LOGGER.info("Terminating %s: %s", label, ", ".join(str(p) for p in pids))
        for pid in pids:
            self._inspector.signal(pid, "TERM")
        result.pids_terminated.extend(pids)
        self._sleep(self._timing.grace_s)

        survivors = [pid for pid in pids if self._inspector.is_alive(pid)]
        for pid in survivors:
            LOGGER.warning("Process %s ignored SIGTERM; sending SIGKILL", pid)
            self._inspector.signal(pid, "KILL")
        result.pids_force_killed.extend(survivors)
        if survivors:
            self._sleep(1.0)
            result.leftover_pids.extend(p for p in survivors if self._inspector.is_alive(p))

    def stop_all(self) -> StopResult:
        """Stop sessions, port holders and stray workers.  Never raises on leftovers."""
        result = StopResult()
        self._stop_sessions(result)

        port = self._worker.port
        self._escalate(self._inspector.port_pids(port), f"processes on port {port}", result)

        for signature in self._worker.launch_signatures:
            pids = [
                pid
                for pid in self._inspector.pids_matching(signature)
                if pid not in result.pids_terminated
            ]
            self._escalate(pids, f"processes matching '{signature}'", result)

        self._inspector.wipe_sessions()

        result.port_clear = not self._inspector.port_in_use(port)
        if not result.port_clear:
            LOGGER.warning(
                "Port %s is still in use after stopping the worker; "
                "launch will re-check before starting",
                port,
            )
        if result.leftover_pids:
            LOGGER.warning(
                "Processes survived SIGKILL: %s", ", ".join(str(p) for p in result.leftover_pids)
            )
        return result
