"""End-to-end build and preview flow.

Runs a real AppForgeRuntime: the reference template generator writes a
project, a one-time install creates the dependency directory, and a fake dev
server (a Python script standing in for ``next dev``) serves the preview.
Nothing outside the test's tmp_path is touched.
"""

from __future__ import annotations

import asyncio
import json
import sys

import httpx
import pytest

from appforge.errors import JobNotReady
from appforge.models import JobStatus, PreviewStatus
from appforge.runtime import AppForgeRuntime

_INSTALL_SCRIPT = "import os; os.makedirs('node_modules', exist_ok=True)"


@pytest.fixture
async def runtime(make_config, server_script):
    config = make_config(
        script=server_script("ready"),
        preview_host="127.0.0.1",
        preview_install_command=[sys.executable, "-c", _INSTALL_SCRIPT],
    )
    runtime = AppForgeRuntime(config)
    await runtime.start(install_signal_handlers=False)
    yield runtime
    await runtime.shutdown()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_build_then_preview(runtime):
    orchestrator = runtime.orchestrator
    job_id = await orchestrator.create_job("user-1", "a todo app", "web")

    job = await orchestrator.wait_for(job_id, timeout=15)
    assert job.status is JobStatus.COMPLETE
    assert "package.json" in orchestrator.list_generated_files(job_id)
    manifest = json.loads(orchestrator.read_generated_file(job_id, "package.json"))
    assert manifest["scripts"]["dev"] == "next dev"

    preview = await runtime.gateway.start_optimized_preview(job_id)
    port = preview["port"]
    assert preview["url"] == f"http://127.0.0.1:{port}"
    assert (job.output_path / "node_modules").is_dir()

    async with httpx.AsyncClient() as client:
        response = await client.get(preview["url"], timeout=5)
    assert response.status_code == 200
    assert response.text == "preview ok"
    assert await runtime.gateway.health_check_preview(job_id) is True

    child_env = json.loads((job.output_path / "env.json").read_text())
    assert child_env["PORT"] == str(port)

    # A second start is served from the registry.
    again = await runtime.gateway.start_optimized_preview(job_id)
    assert again == preview
    assert runtime.supervisor.spawn_count == 1

    assert await runtime.gateway.stop_preview(job_id) is True
    assert runtime.gateway.get_preview_status(job_id) is None
    assert not runtime.ports.is_held(port)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_previews_get_distinct_ports(runtime):
    orchestrator = runtime.orchestrator
    job_ids = [await orchestrator.create_job("user-1", f"app {i}") for i in range(3)]
    for job_id in job_ids:
        assert (await orchestrator.wait_for(job_id, timeout=15)).status is JobStatus.COMPLETE

    previews = await asyncio.gather(*(runtime.gateway.start_optimized_preview(j) for j in job_ids))

    ports = {preview["port"] for preview in previews}
    assert len(ports) == 3
    assert all(info.status is PreviewStatus.READY for info in runtime.previews.list_previews())
    assert runtime.gateway.stats()["total_active"] == 3


@pytest.mark.integration
@pytest.mark.asyncio
async def test_cancelled_build_cannot_be_previewed(runtime):
    orchestrator = runtime.orchestrator
    job_id = await orchestrator.create_job("user-1", "a todo app")
    orchestrator.cancel_job(job_id)

    with pytest.raises(JobNotReady):
        await runtime.gateway.start_optimized_preview(job_id)
    assert runtime.ports.held == frozenset()
