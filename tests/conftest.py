"""Shared pytest fixtures for the AppForge test suite.

Provides reusable fixtures for:
- A tmp_path-rooted Config with small timeouts and a high port range
- Fake dev-server scripts (ready, port conflict, silent, crashing, flaky,
  oversized output, conflict on the first run only)
- Completed build jobs with a runnable project on disk
- A lookup stub standing in for the build registry
"""

from __future__ import annotations

import os
import sys
import textwrap
import time
from pathlib import Path
from typing import Callable

import pytest

from appforge.config import BuildConfig, Config, PortRangeConfig, PreviewConfig
from appforge.models import BuildJob, JobStatus

# ---------------------------------------------------------------------------
# Fake dev servers
# ---------------------------------------------------------------------------

_SERVER_SCRIPTS: dict[str, str] = {
    # Serves HTTP on the given port, records its env, then prints a ready line.
    "ready": """
        import http.server
        import json
        import os
        import sys

        port = int(sys.argv[1])

        class Handler(http.server.BaseHTTPRequestHandler):
            def do_GET(self):
                body = b"preview ok"
                self.send_response(200)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, *args):
                pass

        with open("env.json", "w") as fh:
            json.dump({key: os.environ.get(key) for key in ("PORT", "NODE_ENV", "NEXT_TELEMETRY_DISABLED")}, fh)

        server = http.server.ThreadingHTTPServer(("127.0.0.1", port), Handler)
        print("compiling...", flush=True)
        print(f"ready started server on 127.0.0.1:{port}", flush=True)
        server.serve_forever()
    """,
    "conflict": """
        import sys
        import time

        sys.stderr.write(f"Error: listen EADDRINUSE: address already in use :::{sys.argv[1]}\\n")
        sys.stderr.flush()
        time.sleep(30)
    """,
    "silent": """
        import time

        time.sleep(60)
    """,
    "crash": """
        import sys

        print("booting", flush=True)
        sys.exit(3)
    """,
    # Reports ready, then dies shortly afterwards.
    "flaky": """
        import sys
        import time

        print(f"Local: http://localhost:{sys.argv[1]}", flush=True)
        time.sleep(0.5)
        sys.exit(1)
    """,
    # A minified stack trace bigger than the reader's line limit, then ready.
    "long_line": """
        import sys
        import time

        sys.stdout.write("x" * (2 * 1024 * 1024) + "\\n")
        print(f"ready started server on 127.0.0.1:{sys.argv[1]}", flush=True)
        time.sleep(60)
    """,
    # Port conflict on the first run in a project, ready on every later run.
    "conflict_once": """
        import os
        import sys
        import time

        with open("ports.txt", "a") as fh:
            fh.write(sys.argv[1] + "\\n")
        if not os.path.exists("conflicted"):
            open("conflicted", "w").close()
            sys.stderr.write(f"Error: listen EADDRINUSE: address already in use :::{sys.argv[1]}\\n")
            sys.stderr.flush()
            time.sleep(30)
        print(f"Local: http://localhost:{sys.argv[1]}", flush=True)
        time.sleep(60)
    """,
}


@pytest.fixture
def server_script(tmp_path: Path) -> Callable[[str], Path]:
    """Factory writing one of the fake dev-server scripts to disk."""
    scripts_dir = tmp_path / "scripts"
    scripts_dir.mkdir(exist_ok=True)

    def _make(kind: str) -> Path:
        path = scripts_dir / f"{kind}_server.py"
        path.write_text(textwrap.dedent(_SERVER_SCRIPTS[kind]), encoding="utf-8")
        return path

    return _make


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory for a Config rooted in tmp_path.

    Keyword arguments prefixed ``build_`` / ``preview_`` override the
    matching sub-config fields; ``script`` sets the dev command to run a
    fake server script with the Python interpreter.
    """

    def _make(
        script: Path | None = None,
        min_port: int = 45000,
        max_port: int = 45999,
        **overrides: object,
    ) -> Config:
        build = {"dispatch_interval": 0.05, "build_timeout": 10.0}
        preview = {
            "startup_timeout": 10.0,
            "idle_timeout": 60.0,
            "kill_grace": 2.0,
            "start_retries": 0,
            "retry_delay": 0.0,
            "health_check_interval": 0.0,
        }
        for key, value in overrides.items():
            if key.startswith("build_"):
                build[key[len("build_"):]] = value
            elif key.startswith("preview_"):
                preview[key[len("preview_"):]] = value
            else:
                raise TypeError(f"Unknown override {key}")
        if script is not None:
            preview["dev_command"] = [sys.executable, str(script), "{port}"]
        return Config(
            cache_dir=tmp_path / "cache",
            shared_deps_dir=tmp_path / "shared",
            ports=PortRangeConfig(min_port=min_port, max_port=max_port),
            build=BuildConfig(**build),
            preview=PreviewConfig(**preview),
        )

    return _make


@pytest.fixture
def config(make_config) -> Config:
    return make_config()


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class FakeJobs:
    """Minimal stand-in for the build registry (``get_job`` only)."""

    def __init__(self) -> None:
        self.jobs: dict[str, BuildJob] = {}

    def add(self, job: BuildJob) -> BuildJob:
        self.jobs[job.job_id] = job
        return job

    def get_job(self, job_id: str) -> BuildJob | None:
        return self.jobs.get(job_id)


@pytest.fixture
def fake_jobs() -> FakeJobs:
    return FakeJobs()


@pytest.fixture
def completed_job(tmp_path: Path, fake_jobs: FakeJobs) -> Callable[..., BuildJob]:
    """Factory registering a complete job whose project is ready to serve."""

    def _make(
        job_id: str = "job-1",
        status: JobStatus = JobStatus.COMPLETE,
        manifest: bool = True,
        dependencies: bool = True,
    ) -> BuildJob:
        project = tmp_path / "projects" / job_id
        project.mkdir(parents=True, exist_ok=True)
        if manifest:
            (project / "package.json").write_text('{"name": "demo", "private": true}\n', encoding="utf-8")
        if dependencies:
            deps = project / "node_modules"
            deps.mkdir(exist_ok=True)
            # Newer than the manifest, so never treated as stale.
            os.utime(deps)
        return fake_jobs.add(
            BuildJob(
                job_id=job_id,
                user_id="user-1",
                prompt="todo app",
                status=status,
                started_at=time.time(),
                completed_at=time.time() if status.is_terminal else None,
                output_path=project,
            )
        )

    return _make
