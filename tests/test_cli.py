"""Tests for the appforge command line (appforge.cli).

Tests cover:
- Argument parsing (targets, defaults, required subcommand)
- ``reap`` removes only stale job directories
- ``build`` runs one job to completion and writes the project
- ``cleanup`` with the port sweep mocked out
- ``logs`` replays the on-disk build log
- ``config`` writes the effective settings; ``--config`` reads them back
"""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from appforge.cli import build_parser, main
from appforge.config import BuildConfig, Config


@pytest.fixture(autouse=True)
def _isolated_env():
    env = {"APPFORGE_MIN_PORT": "46100", "APPFORGE_MAX_PORT": "46104"}
    with patch.dict(os.environ, env, clear=False):
        yield


class TestParser:
    @pytest.mark.unit
    def test_build_defaults(self):
        args = build_parser().parse_args(["build", "a todo app"])
        assert args.command == "build"
        assert args.prompt == "a todo app"
        assert args.target == "web"
        assert args.user == "cli"
        assert args.preview is False
        assert args.cache_dir is None

    @pytest.mark.unit
    def test_build_options(self):
        args = build_parser().parse_args(
            ["--cache-dir", "/tmp/x", "build", "shop", "-t", "ios", "-u", "alice", "--preview"]
        )
        assert args.cache_dir == "/tmp/x"
        assert args.target == "ios"
        assert args.user == "alice"
        assert args.preview is True

    @pytest.mark.unit
    def test_unknown_target_rejected(self):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["build", "shop", "--target", "desktop"])
        assert exc_info.value.code == 2

    @pytest.mark.unit
    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestReapCommand:
    @pytest.mark.unit
    def test_removes_stale_directories(self, tmp_path: Path, capsys):
        cache = tmp_path / "cache"
        stale, fresh = cache / "stale-job", cache / "fresh-job"
        stale.mkdir(parents=True)
        fresh.mkdir()
        old = time.time() - 7200
        os.utime(stale, (old, old))

        main(["--cache-dir", str(cache), "reap", "--max-age-hours", "1"])

        assert not stale.exists()
        assert fresh.exists()
        assert "Removed 1 job directory" in capsys.readouterr().out


class TestBuildCommand:
    @pytest.mark.unit
    def test_build_without_preview(self, tmp_path: Path, capsys):
        cache = tmp_path / "cache"

        main(["--cache-dir", str(cache), "build", "a todo app"])

        out = capsys.readouterr().out
        assert "status -> complete" in out
        job_dirs = [p for p in cache.iterdir() if p.is_dir()]
        assert len(job_dirs) == 1
        assert (job_dirs[0] / "generated" / "package.json").is_file()
        assert (job_dirs[0] / "logs" / "build.log").is_file()


class TestCleanupCommand:
    @pytest.mark.unit
    def test_reports_reclaimed_ports(self, tmp_path: Path, capsys):
        async def fake_kill(port: int) -> list[int]:
            return [4242] if port == 46102 else []

        with patch(
            "appforge.process.supervisor.ProcessSupervisor.kill_processes_on_port",
            new=AsyncMock(side_effect=fake_kill),
        ) as mock_kill:
            main(["--cache-dir", str(tmp_path / "cache"), "cleanup"])

        assert mock_kill.await_count == 5
        out = capsys.readouterr().out
        assert "46102" in out
        assert "4242" in out

    @pytest.mark.unit
    def test_nothing_to_reclaim(self, tmp_path: Path, capsys):
        with patch(
            "appforge.process.supervisor.ProcessSupervisor.kill_processes_on_port",
            new=AsyncMock(return_value=[]),
        ):
            main(["--cache-dir", str(tmp_path / "cache"), "cleanup"])

        assert "No stray preview processes found" in capsys.readouterr().out


class TestLogsCommand:
    @pytest.mark.unit
    def test_replays_build_log(self, tmp_path: Path, capsys):
        cache = tmp_path / "cache"
        main(["--cache-dir", str(cache), "build", "a todo app"])
        job_id = next(p.name for p in cache.iterdir() if p.is_dir())
        capsys.readouterr()

        main(["--cache-dir", str(cache), "logs", job_id])

        out = capsys.readouterr().out
        assert "Starting build pipeline" in out
        assert "Build complete!" in out

    @pytest.mark.unit
    def test_unknown_job_warns_and_fails(self, tmp_path: Path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--cache-dir", str(tmp_path / "cache"), "logs", "missing-job"])

        assert exc_info.value.code == 1
        assert "No build log for job missing-job" in capsys.readouterr().out


class TestConfigCommand:
    @pytest.mark.unit
    def test_writes_effective_configuration(self, tmp_path: Path, capsys):
        target = tmp_path / "appforge.json"

        main(["--cache-dir", str(tmp_path / "cache"), "config", "--output", str(target)])

        saved = json.loads(target.read_text())
        assert saved["ports"]["min_port"] == 46100
        assert saved["ports"]["max_port"] == 46104
        assert "Configuration written" in capsys.readouterr().out

    @pytest.mark.unit
    def test_config_file_drives_later_commands(self, tmp_path: Path, capsys):
        cache = tmp_path / "cache"
        stale = cache / "old-job"
        stale.mkdir(parents=True)
        old = time.time() - 2 * 3600
        os.utime(stale, (old, old))
        path = Config(cache_dir=cache, build=BuildConfig(retention_hours=1.0)).save(tmp_path / "cfg.json")

        main(["--config", str(path), "reap"])

        assert not stale.exists()
        assert "Removed 1 job directory" in capsys.readouterr().out
