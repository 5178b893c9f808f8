"""Command runner abstraction and log-redaction helpers."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Log sanitisation
# ---------------------------------------------------------------------------

_SECRET_RE = re.compile(r"(?i)(rig_token|token|psk|password|secret|key)\s*[=:]\s*\S+")


def sanitize_log_line(line: str) -> str:
    """Remove potential credential leaks from log lines."""
    line = _SECRET_RE.sub(r"\1=***", line)
    return line[:500]


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def output(self) -> str:
        return (self.stderr or self.stdout or f"exit {self.returncode}").strip()


class CommandRunner:
    """Execute external commands.  Override for testing."""

    def run(
        self,
        argv: list[str],
        *,
        timeout_s: float = 30,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        raise NotImplementedError


class SubprocessRunner(CommandRunner):
    def run(
        self,
        argv: list[str],
        *,
        timeout_s: float = 30,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        cmd_for_log = sanitize_log_line(" ".join(argv))
        LOGGER.debug("$ %s", cmd_for_log)
        merged_env = {**os.environ, **(env or {})}
        try:
            completed = subprocess.run(
                argv,
                check=False,
                text=True,
                capture_output=True,
                timeout=timeout_s,
                cwd=cwd,
                env=merged_env,
            )
        except FileNotFoundError:
            return CommandResult(returncode=127, stdout="", stderr=f"missing command: {argv[0]}")
        except subprocess.TimeoutExpired:
            LOGGER.warning("Command timed out after %.0fs: %s", timeout_s, cmd_for_log)
            return CommandResult(returncode=124, stdout="", stderr=f"timeout: {cmd_for_log}")
        except OSError as exc:
            return CommandResult(returncode=1, stdout="", stderr=str(exc))

        result = CommandResult(
            returncode=completed.returncode,
            stdout=completed.stdout.strip(),
            stderr=completed.stderr.strip(),
        )
        if result.stdout:
            LOGGER.debug("stdout: %s", sanitize_log_line(result.stdout))
        if result.stderr:
            LOGGER.debug("stderr: %s", sanitize_log_line(result.stderr))
        if not result.ok:
            LOGGER.debug("exit code: %s", result.returncode)
        return result
