"""Shared test doubles and builders for the updater test suite."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from minerupdater.config import PlatformInfo, RunContext, build_context, load_config
from minerupdater.installation import Installation
from minerupdater.process_control import ProcessInspector
from minerupdater.runner import CommandResult, CommandRunner

# ---------------------------------------------------------------------------
# Command runner double
# ---------------------------------------------------------------------------

Response = CommandResult | Callable[[list[str]], CommandResult]


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(returncode=0, stdout=stdout, stderr="")


def err(stderr: str = "failed", rc: int = 1) -> CommandResult:
    return CommandResult(returncode=rc, stdout="", stderr=stderr)


class FakeRunner(CommandRunner):
    """Returns scripted results for commands containing a substring.

    Later registrations win, so a test can override a default response.
    Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.cwds: list[str | None] = []
        self._responses: list[tuple[str, Response]] = []

    def set_response(self, match_substr: str, response: Response) -> None:
        self._responses.insert(0, (match_substr, response))

    def commands(self) -> list[str]:
        return [" ".join(argv) for argv in self.calls]

    def ran(self, substr: str) -> bool:
        return any(substr in cmd for cmd in self.commands())

    def run(
        self,
        argv: list[str],
        *,
        timeout_s: float = 30,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        self.calls.append(list(argv))
        self.cwds.append(cwd)
        joined = " ".join(argv)
        for match_substr, response in self._responses:
            if match_substr in joined:
                return response(argv) if callable(response) else response
        return ok()


# ---------------------------------------------------------------------------
# Process inspector double
# ---------------------------------------------------------------------------


class FakeInspector(ProcessInspector):
    def __init__(
        self,
        *,
        sessions: Iterable[str] = (),
        port_busy: bool = False,
        port_holders: Iterable[int] = (),
        signature_pids: dict[str, list[int]] | None = None,
        immortal: Iterable[int] = (),
        sticky_sessions: bool = False,
    ) -> None:
        self.sessions = list(sessions)
        self.port_busy = port_busy
        self.port_holders = list(port_holders)
        self.signature_pids = dict(signature_pids or {})
        self.immortal = set(immortal)
        self.sticky_sessions = sticky_sessions
        self.signals: list[tuple[int, str]] = []
        self.quit_requests: list[str] = []
        self.killed_patterns: list[str] = []
        self.wiped = False
        self._dead: set[int] = set()

    def list_sessions(self, patterns: Iterable[str]) -> list[str]:
        wanted = list(patterns)
        return [s for s in self.sessions if any(p in s.split(".", 1)[-1] for p in wanted)]

    def quit_session(self, session_id: str) -> bool:
        self.quit_requests.append(session_id)
        if not self.sticky_sessions and session_id in self.sessions:
            self.sessions.remove(session_id)
        return True

    def kill_sessions(self, pattern: str) -> None:
        self.killed_patterns.append(pattern)
        self.sessions = [s for s in self.sessions if pattern not in s]

    def wipe_sessions(self) -> None:
        self.wiped = True

    def port_in_use(self, port: int) -> bool:
        return self.port_busy

    def port_pids(self, port: int) -> list[int]:
        return [pid for pid in self.port_holders if pid not in self._dead]

    def pids_matching(self, signature: str) -> list[int]:
        return [pid for pid in self.signature_pids.get(signature, []) if pid not in self._dead]

    def signal(self, pid: int, sig: str) -> bool:
        self.signals.append((pid, sig))
        if pid not in self.immortal:
            self._dead.add(pid)
            if pid in self.port_holders and not any(
                p not in self._dead for p in self.port_holders
            ):
                self.port_busy = False
        return True

    def is_alive(self, pid: int) -> bool:
        return pid not in self._dead


def no_sleep(_seconds: float) -> None:
    return None


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# Installation builders
# ---------------------------------------------------------------------------

ENV_TEXT = "RIG_TOKEN=abc123\nAPI_URL=https://api.example.test\nLOG_LEVEL=info\n"
CONFIG_TEXT = '{\n  "minerId": "miner-42",\n  "rigId": "rig-1"\n}\n'


def write_manifest(root: Path, version: str) -> None:
    (root / "package.json").write_text(
        json.dumps({"name": "refurbminer", "version": version}, indent=2) + "\n",
        encoding="utf-8",
    )


def make_installation(
    root: Path,
    *,
    version: str = "1.0.0",
    env_text: str | None = ENV_TEXT,
    config_text: str | None = CONFIG_TEXT,
    with_binaries: bool = True,
    with_git: bool = True,
) -> Installation:
    root.mkdir(parents=True, exist_ok=True)
    write_manifest(root, version)
    (root / "src").mkdir(exist_ok=True)
    (root / "src" / "main.ts").write_text("console.log('agent');\n", encoding="utf-8")
    if env_text is not None:
        (root / ".env").write_text(env_text, encoding="utf-8")
    if config_text is not None:
        (root / "config").mkdir(exist_ok=True)
        (root / "config" / "config.json").write_text(config_text, encoding="utf-8")
    if with_binaries:
        ccminer = root / "apps" / "ccminer"
        ccminer.mkdir(parents=True, exist_ok=True)
        (ccminer / "ccminer").write_bytes(b"\x7fELF-binary")
        (ccminer / "config.json").write_text('{"pools": []}\n', encoding="utf-8")
    if with_git:
        (root / ".git").mkdir(exist_ok=True)
        (root / ".git" / "HEAD").write_text("ref: refs/heads/master\n", encoding="utf-8")
    return Installation(root)


def snapshot_tree(root: Path) -> dict[str, bytes]:
    """Relative path -> content for every file under *root*."""
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def make_context(tmp_path: Path, **install_kwargs) -> RunContext:
    config_file = tmp_path / "updater.yaml"
    config_file.write_text(
        "\n".join(
            [
                "install:",
                f"  dir: {tmp_path / 'refurbminer'}",
                "backup:",
                f"  root: {tmp_path / 'backups'}",
                "logging:",
                f"  log_file: {tmp_path / 'update.log'}",
                "state:",
                f"  dir: {tmp_path / 'state'}",
                "",
            ]
        ),
        encoding="utf-8",
    )
    config = load_config(config_file)
    make_installation(config.install.dir, **install_kwargs)
    return build_context(config, PlatformInfo(is_termux=False, has_root=False))


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("REFURBMINER_DIR", raising=False)
    monkeypatch.delenv("REFURBMINER_UPDATER_CONFIG", raising=False)
