from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .installation import Installation
from .runner import CommandRunner, SubprocessRunner

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.config/refurbminer/updater.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "install": {
        "dir": "~/refurbminer",
        "repo_url": "https://github.com/dismaster/refurbminer",
        "remote": "origin",
        "branch": "master",
    },
    "worker": {
        "session_name": "refurbminer",
        "session_patterns": ["refurbminer", "miner", "CCminer", "Scheduler"],
        "port": 3000,
        "launch_signatures": ["node dist/main", "apps/ccminer/ccminer"],
        "start_command": "npm start",
    },
    "backup": {
        "root": "~/refurbminer_backups",
        "keep_count": 3,
    },
    "timing": {
        "grace_s": 3.0,
        "port_poll_attempts": 12,
        "port_poll_interval_s": 5.0,
        "settle_s": 5.0,
        "command_timeout_s": 60,
        "build_timeout_s": 1200,
        "clone_timeout_s": 600,
    },
    "build": {
        "entry_points": ["dist/main.js", "dist/src/main.js", "dist/index.js"],
    },
    "notify": {
        "enabled": True,
        "api_url": "https://api.refurbminer.de",
        "timeout_s": 10,
    },
    "logging": {
        "log_file": "~/refurbminer_update.log",
        "level": "INFO",
    },
    "state": {
        "dir": "~/.refurbminer-updater",
    },
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _expand(path_text: str) -> Path:
    return Path(os.path.expandvars(path_text)).expanduser()


def _str_tuple(value: Any, name: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"{name} must be a list of strings, got {value!r}")
    return tuple(str(v) for v in value if str(v).strip())


@dataclass(frozen=True, slots=True)
class InstallConfig:
    dir: Path
    repo_url: str
    remote: str
    branch: str

    def __post_init__(self) -> None:
        if not self.repo_url:
            raise ValueError("install.repo_url must not be empty")
        if not self.remote or not self.branch:
            raise ValueError("install.remote and install.branch must not be empty")


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    session_name: str
    session_patterns: tuple[str, ...]
    port: int
    launch_signatures: tuple[str, ...]
    start_command: str

    def __post_init__(self) -> None:
        if not isinstance(self.port, int) or not (1 <= self.port <= 65535):
            raise ValueError(f"worker.port must be 1-65535, got {self.port!r}")
        if not self.session_name.strip():
            raise ValueError("worker.session_name must not be empty")


@dataclass(frozen=True, slots=True)
class BackupConfig:
    root: Path
    keep_count: int

    def __post_init__(self) -> None:
        if not isinstance(self.keep_count, int) or self.keep_count < 1:
            raise ValueError(f"backup.keep_count must be >= 1, got {self.keep_count!r}")


@dataclass(frozen=True, slots=True)
class TimingConfig:
    grace_s: float
    port_poll_attempts: int
    port_poll_interval_s: float
    settle_s: float
    command_timeout_s: float
    build_timeout_s: float
    clone_timeout_s: float

    def __post_init__(self) -> None:
        for name in ("grace_s", "port_poll_interval_s", "settle_s"):
            if getattr(self, name) < 0:
                raise ValueError(f"timing.{name} must not be negative")
        if self.port_poll_attempts < 1:
            raise ValueError(
                f"timing.port_poll_attempts must be >= 1, got {self.port_poll_attempts!r}"
            )
        for name in ("command_timeout_s", "build_timeout_s", "clone_timeout_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"timing.{name} must be positive")


@dataclass(frozen=True, slots=True)
class BuildConfig:
    entry_points: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class NotifyConfig:
    enabled: bool
    api_url: str
    timeout_s: float


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    log_file: Path
    level: str


@dataclass(frozen=True, slots=True)
class UpdaterConfig:
    install: InstallConfig
    worker: WorkerConfig
    backup: BackupConfig
    timing: TimingConfig
    build: BuildConfig
    notify: NotifyConfig
    logging: LoggingConfig
    state_dir: Path
    config_path: Path | None = None


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    is_termux: bool
    has_root: bool
    privilege_prefix: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RunContext:
    """Everything a stage needs, built once at startup."""

    config: UpdaterConfig
    platform: PlatformInfo
    installation: Installation


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a YAML object at the top level.")
        return data


def resolve_config_path(config_path: Path | None = None) -> Path:
    if config_path is not None:
        return config_path.expanduser()
    return _expand(os.environ.get("REFURBMINER_UPDATER_CONFIG", DEFAULT_CONFIG_PATH))


def load_config(config_path: Path | None = None) -> UpdaterConfig:
    path = resolve_config_path(config_path)
    override = _read_config_file(path)
    merged = _deep_merge(DEFAULT_CONFIG, override)

    install = merged["install"]
    install_dir = os.environ.get("REFURBMINER_DIR") or str(install["dir"])
    worker = merged["worker"]
    timing = merged["timing"]

    config = UpdaterConfig(
        install=InstallConfig(
            dir=_expand(install_dir),
            repo_url=str(install["repo_url"]),
            remote=str(install["remote"]),
            branch=str(install["branch"]),
        ),
        worker=WorkerConfig(
            session_name=str(worker["session_name"]),
            session_patterns=_str_tuple(worker["session_patterns"], "worker.session_patterns"),
            port=int(worker["port"]),
            launch_signatures=_str_tuple(worker["launch_signatures"], "worker.launch_signatures"),
            start_command=str(worker["start_command"]),
        ),
        backup=BackupConfig(
            root=_expand(str(merged["backup"]["root"])),
            keep_count=int(merged["backup"]["keep_count"]),
        ),
        timing=TimingConfig(
            grace_s=float(timing["grace_s"]),
            port_poll_attempts=int(timing["port_poll_attempts"]),
            port_poll_interval_s=float(timing["port_poll_interval_s"]),
            settle_s=float(timing["settle_s"]),
            command_timeout_s=float(timing["command_timeout_s"]),
            build_timeout_s=float(timing["build_timeout_s"]),
            clone_timeout_s=float(timing["clone_timeout_s"]),
        ),
        build=BuildConfig(
            entry_points=_str_tuple(merged["build"]["entry_points"], "build.entry_points"),
        ),
        notify=NotifyConfig(
            enabled=bool(merged["notify"]["enabled"]),
            api_url=str(merged["notify"]["api_url"]).rstrip("/"),
            timeout_s=float(merged["notify"]["timeout_s"]),
        ),
        logging=LoggingConfig(
            log_file=_expand(str(merged["logging"]["log_file"])),
            level=str(merged["logging"]["level"]).upper(),
        ),
        state_dir=_expand(str(merged["state"]["dir"])),
        config_path=path if path.exists() else None,
    )
    LOGGER.debug(
        "Loaded config=%s install_dir=%s backup_root=%s",
        config.config_path or "<defaults>",
        config.install.dir,
        config.backup.root,
    )
    return config


def detect_platform(runner: CommandRunner | None = None) -> PlatformInfo:
    prefix = os.environ.get("PREFIX", "")
    is_termux = "com.termux" in prefix or Path("/data/data/com.termux").is_dir()
    has_root = os.geteuid() == 0
    privilege_prefix: tuple[str, ...] = ()
    if not has_root and not is_termux and shutil.which("sudo"):
        # Only passwordless sudo is usable from a non-interactive run.
        sudo_check = (runner or SubprocessRunner()).run(["sudo", "-n", "true"], timeout_s=5)
        if sudo_check.ok:
            privilege_prefix = ("sudo", "-n")
        else:
            LOGGER.debug("sudo needs a password; running process commands unprivileged")
    return PlatformInfo(is_termux=is_termux, has_root=has_root, privilege_prefix=privilege_prefix)


def build_context(config: UpdaterConfig, platform: PlatformInfo | None = None) -> RunContext:
    return RunContext(
        config=config,
        platform=platform or detect_platform(),
        installation=Installation(config.install.dir),
    )
