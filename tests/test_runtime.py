"""Tests for appforge.runtime.AppForgeRuntime.

Tests cover:
- Component wiring from one Config
- start / shutdown (idempotent) / async context manager
- Health monitor started with the runtime and stopped at shutdown
- Signal-triggered shutdown stops running previews
"""

from __future__ import annotations

import asyncio
import signal

import pytest

from appforge.models import JobStatus
from appforge.runtime import AppForgeRuntime


class TestWiring:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_components_share_allocator_and_supervisor(self, config):
        runtime = AppForgeRuntime(config)

        assert runtime.ports.min_port == config.ports.min_port
        assert runtime.previews._ports is runtime.ports
        assert runtime.gateway._ports is runtime.ports
        assert runtime.previews._supervisor is runtime.supervisor
        assert runtime.previews._jobs is runtime.orchestrator


class TestLifecycle:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_start_runs_builds(self, config):
        runtime = AppForgeRuntime(config)
        await runtime.start(install_signal_handlers=False)
        try:
            job_id = await runtime.orchestrator.create_job("user-1", "todo app")
            job = await runtime.orchestrator.wait_for(job_id, timeout=10)
            assert job.status is JobStatus.COMPLETE
            assert config.cache_dir.is_dir()
        finally:
            await runtime.shutdown()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, config):
        runtime = AppForgeRuntime(config)
        await runtime.start(install_signal_handlers=False)

        await runtime.shutdown()
        await runtime.shutdown()

        await asyncio.wait_for(runtime.wait_closed(), timeout=1)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_context_manager(self, config):
        async with AppForgeRuntime(config) as runtime:
            assert runtime.orchestrator._dispatcher is not None
        await asyncio.wait_for(runtime.wait_closed(), timeout=1)
        assert runtime._installed_signals == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_monitor_follows_lifecycle(self, make_config):
        runtime = AppForgeRuntime(make_config(preview_health_check_interval=30.0))
        await runtime.start(install_signal_handlers=False)
        monitor = runtime.gateway._health_task
        assert monitor is not None and not monitor.done()

        await runtime.shutdown()

        assert runtime.gateway._health_task is None
        assert monitor.cancelled()


class TestSignalShutdown:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signal_stops_previews(self, make_config, server_script, fake_jobs, completed_job):
        config = make_config(script=server_script("ready"))
        runtime = AppForgeRuntime(config)
        await runtime.start(install_signal_handlers=False)

        completed_job("job-1")
        runtime.previews._jobs = fake_jobs
        url, port = await runtime.previews.start_preview_server("job-1")
        process = runtime.previews._servers["job-1"].process

        runtime._on_signal(signal.SIGTERM)
        runtime._on_signal(signal.SIGTERM)
        await asyncio.wait_for(runtime.wait_closed(), timeout=10)

        assert runtime.previews.list_previews() == []
        assert not runtime.ports.is_held(port)
        assert process.returncode is not None
