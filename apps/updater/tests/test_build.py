from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeRunner, err, make_installation, ok

from minerupdater.build import BuildContext, build
from minerupdater.models import BuildFailedError


def _ctx(tmp_path: Path, runner: FakeRunner) -> BuildContext:
    return BuildContext(runner=runner, installation=make_installation(tmp_path / "rm"))


class TestBuildLadder:
    def test_standard_build(self, tmp_path: Path) -> None:
        runner = FakeRunner()
        ctx = _ctx(tmp_path, runner)
        result = build(ctx)
        assert result.strategy == "standard"
        assert not result.degraded
        assert runner.commands() == ["npm install", "npm run build"]
        assert set(runner.cwds) == {str(ctx.installation.root)}

    def test_clean_reinstall_after_install_failure(self, tmp_path: Path) -> None:
        runner = FakeRunner()
        ctx = _ctx(tmp_path, runner)
        root = ctx.installation.root
        (root / "node_modules" / "left-pad").mkdir(parents=True)
        (root / "package-lock.json").write_text("{}", encoding="utf-8")
        installs = iter([err("ERESOLVE"), ok()])
        runner.set_response("npm install", lambda argv: next(installs))
        result = build(ctx)
        assert result.strategy == "clean_reinstall"
        assert not (root / "node_modules").exists()
        assert not (root / "package-lock.json").exists()
        assert "npm cache clean --force" in runner.commands()
        assert "npm install --force" in runner.commands()

    def test_legacy_peer_deps(self, tmp_path: Path) -> None:
        runner = FakeRunner()
        runner.set_response("npm install", err("ERESOLVE unable to resolve dependency tree"))
        runner.set_response("npm install --legacy-peer-deps", ok())
        result = build(_ctx(tmp_path, runner))
        assert result.strategy == "legacy_peer_deps"
        assert runner.commands()[-1] == "npm run build"

    def test_existing_entry_point_is_degraded_success(self, tmp_path: Path) -> None:
        runner = FakeRunner()
        runner.set_response("npm run build", err("tsc: error TS2304"))
        ctx = _ctx(tmp_path, runner)
        (ctx.installation.root / "dist" / "src").mkdir(parents=True)
        (ctx.installation.root / "dist" / "src" / "main.js").write_text("", encoding="utf-8")
        result = build(ctx)
        assert result.strategy == "existing_entry_point"
        assert result.degraded
        assert result.entry_point == "dist/src/main.js"
        assert [name for name, _ in result.attempts] == [
            "standard",
            "clean_reinstall",
            "legacy_peer_deps",
        ]

    def test_all_strategies_fail(self, tmp_path: Path) -> None:
        runner = FakeRunner()
        runner.set_response("npm", err("npm ERR!"))
        with pytest.raises(BuildFailedError, match="no built entry point"):
            build(_ctx(tmp_path, runner))

    def test_missing_npm_reported(self, tmp_path: Path) -> None:
        runner = FakeRunner()
        runner.set_response("npm", err("missing command: npm", rc=127))
        with pytest.raises(BuildFailedError, match="npm is not installed"):
            build(_ctx(tmp_path, runner))
