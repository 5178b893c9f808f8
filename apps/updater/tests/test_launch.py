from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeInspector, FakeRunner, SleepRecorder, err, make_installation, no_sleep, ok

from minerupdater.config import load_config
from minerupdater.launch import LaunchSupervisor, launch_command, wait_for_port_free
from minerupdater.models import LaunchError


def _supervisor(
    tmp_path: Path, runner: FakeRunner, inspector: FakeInspector, sleep=no_sleep
) -> LaunchSupervisor:
    cfg = load_config(tmp_path / "absent.yaml")
    return LaunchSupervisor(runner, inspector, cfg.worker, cfg.timing, sleep=sleep)


def _starts_worker(inspector: FakeInspector, *, binds: bool = True):
    def start(argv: list[str]):
        inspector.sessions.append("999.refurbminer")
        inspector.port_busy = binds
        return ok()

    return start


class TestWaitForPortFree:
    def test_free_port_returns_immediately(self) -> None:
        sleep = SleepRecorder()
        wait_for_port_free(FakeInspector(), 3000, attempts=12, interval_s=5, sleep=sleep)
        assert sleep.calls == []

    def test_stuck_port_times_out_after_about_a_minute(self) -> None:
        sleep = SleepRecorder()
        with pytest.raises(LaunchError, match="port still in use"):
            wait_for_port_free(
                FakeInspector(port_busy=True), 3000, attempts=12, interval_s=5, sleep=sleep
            )
        assert sum(sleep.calls) == 60


class TestLaunchSupervisor:
    def test_verified_launch(self, tmp_path: Path) -> None:
        inst = make_installation(tmp_path / "rm")
        runner = FakeRunner()
        inspector = FakeInspector()
        runner.set_response("screen -dmS", _starts_worker(inspector))
        result = _supervisor(tmp_path, runner, inspector).launch(inst)
        assert result.verified
        assert runner.calls[0] == [
            "screen",
            "-dmS",
            "refurbminer",
            "bash",
            "-c",
            f"cd {inst.root} && npm start",
        ]

    def test_session_launch_failure_is_fatal(self, tmp_path: Path) -> None:
        runner = FakeRunner()
        runner.set_response("screen -dmS", err("screen: command not found", rc=127))
        with pytest.raises(LaunchError, match="Failed to launch"):
            _supervisor(tmp_path, runner, FakeInspector()).launch(
                make_installation(tmp_path / "rm")
            )

    def test_slow_bind_is_unverified_not_fatal(self, tmp_path: Path) -> None:
        runner = FakeRunner()
        inspector = FakeInspector()
        runner.set_response("screen -dmS", _starts_worker(inspector, binds=False))
        result = _supervisor(tmp_path, runner, inspector).launch(
            make_installation(tmp_path / "rm")
        )
        assert result.session_seen
        assert not result.port_bound
        assert not result.verified

    def test_stuck_port_never_launches(self, tmp_path: Path) -> None:
        runner = FakeRunner()
        with pytest.raises(LaunchError, match="port still in use"):
            _supervisor(tmp_path, runner, FakeInspector(port_busy=True)).launch(
                make_installation(tmp_path / "rm")
            )
        assert runner.calls == []

    def test_install_dir_with_spaces_is_quoted(self, tmp_path: Path) -> None:
        cfg = load_config(tmp_path / "absent.yaml")
        inst = make_installation(tmp_path / "my miner")
        argv = launch_command(cfg.worker, inst)
        assert argv[-1] == f"cd '{inst.root}' && npm start"
