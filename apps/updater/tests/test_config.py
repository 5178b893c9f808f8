from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeRunner, err

from minerupdater.config import (
    PlatformInfo,
    build_context,
    detect_platform,
    load_config,
)


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg.config_path is None
        assert cfg.install.dir == Path("~/refurbminer").expanduser()
        assert cfg.install.remote == "origin"
        assert cfg.install.branch == "master"
        assert cfg.worker.session_name == "refurbminer"
        assert cfg.worker.port == 3000
        assert cfg.backup.keep_count == 3
        assert cfg.timing.port_poll_attempts == 12
        assert cfg.timing.port_poll_interval_s == 5.0
        assert cfg.notify.api_url == "https://api.refurbminer.de"

    def test_partial_override_is_deep_merged(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path / "updater.yaml",
            "worker:\n  port: 3100\nbackup:\n  keep_count: 5\n",
        )
        cfg = load_config(path)
        assert cfg.config_path == path
        assert cfg.worker.port == 3100
        assert cfg.worker.session_name == "refurbminer"
        assert cfg.backup.keep_count == 5
        assert cfg.backup.root == Path("~/refurbminer_backups").expanduser()

    def test_env_var_selects_config_and_install_dir(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        path = _write(tmp_path / "custom.yaml", "notify:\n  enabled: false\n")
        monkeypatch.setenv("REFURBMINER_UPDATER_CONFIG", str(path))
        monkeypatch.setenv("REFURBMINER_DIR", str(tmp_path / "rm"))
        cfg = load_config()
        assert cfg.notify.enabled is False
        assert cfg.install.dir == tmp_path / "rm"

    def test_session_patterns_accept_single_string(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "u.yaml", "worker:\n  session_patterns: miner\n")
        assert load_config(path).worker.session_patterns == ("miner",)

    def test_api_url_trailing_slash_stripped(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "u.yaml", "notify:\n  api_url: https://api.example.test/\n")
        assert load_config(path).notify.api_url == "https://api.example.test"

    def test_log_level_upper_cased(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "u.yaml", "logging:\n  level: debug\n")
        assert load_config(path).logging.level == "DEBUG"


class TestConfigValidation:
    @pytest.mark.parametrize(
        "text",
        [
            "worker:\n  port: 0\n",
            "worker:\n  port: 70000\n",
            "backup:\n  keep_count: 0\n",
            "timing:\n  grace_s: -1\n",
            "timing:\n  port_poll_attempts: 0\n",
            "timing:\n  build_timeout_s: 0\n",
            "install:\n  repo_url: ''\n",
        ],
    )
    def test_invalid_values_raise(self, tmp_path: Path, text: str) -> None:
        path = _write(tmp_path / "bad.yaml", text)
        with pytest.raises(ValueError):
            load_config(path)

    def test_non_mapping_top_level_rejected(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "bad.yaml", "- just\n- a list\n")
        with pytest.raises(ValueError, match="YAML object"):
            load_config(path)


class TestContext:
    def test_build_context_uses_given_platform(self, tmp_path: Path) -> None:
        cfg = load_config(tmp_path / "absent.yaml")
        platform = PlatformInfo(is_termux=True, has_root=False)
        ctx = build_context(cfg, platform)
        assert ctx.platform is platform
        assert ctx.installation.root == cfg.install.dir

    def test_context_is_immutable(self, tmp_path: Path) -> None:
        cfg = load_config(tmp_path / "absent.yaml")
        ctx = build_context(cfg, PlatformInfo(is_termux=False, has_root=True))
        with pytest.raises(AttributeError):
            ctx.config = cfg  # type: ignore[misc]


class TestDetectPlatform:
    @pytest.fixture
    def plain_user(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PREFIX", raising=False)
        monkeypatch.setattr("minerupdater.config.os.geteuid", lambda: 1000)
        monkeypatch.setattr("minerupdater.config.shutil.which", lambda name: f"/usr/bin/{name}")

    def test_passwordless_sudo_sets_prefix(self, plain_user: None) -> None:
        runner = FakeRunner()
        platform = detect_platform(runner)
        assert runner.calls == [["sudo", "-n", "true"]]
        assert platform.privilege_prefix == ("sudo", "-n")
        assert not platform.has_root

    def test_sudo_needing_password_runs_unprivileged(self, plain_user: None) -> None:
        runner = FakeRunner()
        runner.set_response("sudo -n true", err("sudo: a password is required"))
        assert detect_platform(runner).privilege_prefix == ()

    def test_root_skips_sudo(self, plain_user: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("minerupdater.config.os.geteuid", lambda: 0)
        runner = FakeRunner()
        platform = detect_platform(runner)
        assert platform.has_root
        assert platform.privilege_prefix == ()
        assert runner.calls == []

    def test_termux_skips_sudo(self, plain_user: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PREFIX", "/data/data/com.termux/files/usr")
        runner = FakeRunner()
        platform = detect_platform(runner)
        assert platform.is_termux
        assert platform.privilege_prefix == ()
        assert runner.calls == []
