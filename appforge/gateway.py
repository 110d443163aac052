"""Preview gateway.

Thin facade used by the transport layer: starts previews (after an optional
shared-dependency warm-up), stops them, reports status, health-checks the
live URL, periodically sweeps unhealthy previews and reclaims ports during
an emergency cleanup.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import httpx

from appforge.config import Config
from appforge.errors import AppForgeError
from appforge.models import PreviewStatus
from appforge.preview.manager import JobLookup, PreviewServerManager
from appforge.preview.ports import PortAllocator
from appforge.process.supervisor import ProcessSupervisor
from appforge.utils import console, ensure_dir, fetch_status, is_alive_status, run_command


class PreviewGateway:
    """Coordinates the preview manager, port allocator and supervisor."""

    def __init__(
        self,
        config: Config,
        manager: PreviewServerManager,
        jobs: JobLookup,
        ports: PortAllocator,
        supervisor: ProcessSupervisor,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.settings = config.preview
        self.manager = manager
        self._jobs = jobs
        self._ports = ports
        self._supervisor = supervisor
        self._client = client
        self._shared_ready = False
        self._shared_lock = asyncio.Lock()
        self._health_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Shared dependency cache
    # ------------------------------------------------------------------

    @property
    def shared_dependencies_path(self) -> Path:
        return self.config.shared_deps_dir / self.settings.dependencies_dir

    async def ensure_shared_dependencies(self) -> bool:
        """Create the shared dependency cache once.

        Failures are reported and swallowed; returns whether the cache is
        usable.
        """
        if not self.settings.share_dependencies:
            return False
        async with self._shared_lock:
            if self._shared_ready:
                return True
            try:
                self._shared_ready = await self._install_shared_dependencies()
            except Exception as exc:  # noqa: BLE001
                console.print(f"[yellow][Gateway] Shared dependency warm-up failed: {exc}[/yellow]")
                self._shared_ready = False
        return self._shared_ready

    async def _install_shared_dependencies(self) -> bool:
        if self.shared_dependencies_path.exists():
            console.print("[dim][Gateway] Shared dependencies already present[/dim]")
            return True

        shared_dir = ensure_dir(self.config.shared_deps_dir)
        manifest = {
            "name": "appforge-shared-deps",
            "version": "1.0.0",
            "private": True,
            "dependencies": dict(self.settings.shared_packages),
        }
        (shared_dir / self.settings.manifest_file).write_text(json.dumps(manifest, indent=2), encoding="utf-8")

        console.print("[cyan][Gateway][/cyan] Installing shared dependencies (one-time)...")
        returncode, _, stderr = await run_command(
            list(self.settings.install_command), cwd=shared_dir, timeout=self.settings.install_timeout
        )
        if returncode != 0:
            console.print(f"[yellow][Gateway] Shared install exited with {returncode}: {stderr[-300:]}[/yellow]")
            return False
        console.print("[green][Gateway] Shared dependencies installed[/green]")
        return True

    def _link_shared_dependencies(self, project: Path) -> bool:
        link = project / self.settings.dependencies_dir
        if link.exists() or link.is_symlink() or not self.shared_dependencies_path.is_dir():
            return False
        os.symlink(self.shared_dependencies_path.resolve(), link, target_is_directory=True)
        console.print(f"[dim][Gateway] Linked shared dependencies into {project}[/dim]")
        return True

    # ------------------------------------------------------------------
    # Preview operations
    # ------------------------------------------------------------------

    async def start_optimized_preview(self, job_id: str) -> dict[str, Any]:
        """Warm the shared cache if enabled, then start the preview.

        Only the warm-up is best effort; preview errors propagate unchanged.
        """
        if self.settings.share_dependencies:
            try:
                if await self.ensure_shared_dependencies():
                    job = self._jobs.get_job(job_id)
                    if job is not None and job.output_path is not None:
                        self._link_shared_dependencies(Path(job.output_path))
            except OSError as exc:
                console.print(f"[yellow][Gateway] Could not link shared dependencies: {exc}[/yellow]")

        url, port = await self.manager.start_preview_server(job_id)
        return {"url": url, "port": port}

    async def stop_preview(self, job_id: str) -> bool:
        return await self.manager.stop_preview_server(job_id)

    def get_preview_status(self, job_id: str) -> dict[str, Any] | None:
        info = self.manager.get_preview_server(job_id)
        if info is None:
            return None
        return {"url": info.url, "port": info.port, "status": info.status.value}

    async def health_check_preview(self, job_id: str) -> bool:
        """Check the registered URL; never changes any state."""
        info = self.manager.get_preview_server(job_id)
        if info is None or info.url is None:
            return False
        status_code = await fetch_status(info.url, timeout=self.settings.health_timeout, client=self._client)
        healthy = is_alive_status(status_code)
        if not healthy:
            console.print(f"[yellow][Gateway] Health check failed for {job_id} ({info.url})[/yellow]")
        return healthy

    async def health_check_all(self) -> list[str]:
        """Check every ready preview and stop the ones that do not answer.

        Unhealthy servers are not restarted.  Healthy ones keep their original
        idle deadline.  Returns the ids of the stopped previews.
        """
        ready = [info.job_id for info in self.manager.list_previews() if info.status is PreviewStatus.READY]
        if not ready:
            return []
        console.print(f"[cyan][Gateway][/cyan] Health sweep over {len(ready)} preview(s)")
        results = await asyncio.gather(*(self.health_check_preview(job_id) for job_id in ready))

        stopped: list[str] = []
        for job_id, healthy in zip(ready, results):
            if healthy:
                continue
            console.print(f"[yellow][Gateway] Stopping unhealthy preview {job_id}[/yellow]")
            if await self.manager.stop_preview_server(job_id):
                stopped.append(job_id)
        return stopped

    def start_health_monitor(self) -> None:
        """Run :meth:`health_check_all` every ``health_check_interval`` seconds.

        An interval of 0 disables the sweep.
        """
        if self.settings.health_check_interval <= 0:
            return
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())

    async def stop_health_monitor(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_check_interval)
            try:
                await self.health_check_all()
            except AppForgeError as exc:
                console.print(f"[red][Gateway] Health sweep failed: {exc}[/red]")

    async def emergency_cleanup(self, concurrency: int = 16) -> dict[int, list[int]]:
        """Kill whatever is bound to every port in the configured range.

        Returns a map of port -> killed pids for the ports that had listeners.
        """
        console.print(
            f"[bold yellow][Gateway] Emergency cleanup of ports "
            f"{self._ports.min_port}-{self._ports.max_port}[/bold yellow]"
        )
        semaphore = asyncio.Semaphore(concurrency)

        async def _reclaim(port: int) -> tuple[int, list[int]]:
            async with semaphore:
                return port, await self._supervisor.kill_processes_on_port(port)

        results = await asyncio.gather(*(_reclaim(port) for port in self._ports.port_range()))
        reclaimed = {port: pids for port, pids in results if pids}
        console.print(f"[green][Gateway] Emergency cleanup complete ({len(reclaimed)} port(s) reclaimed)[/green]")
        return reclaimed

    def stats(self) -> dict[str, Any]:
        previews = self.manager.list_previews()
        started = [info.started_at for info in previews]
        return {
            **self.manager.stats(),
            "oldest_start_time": min(started) if started else None,
            "newest_start_time": max(started) if started else None,
            "ports": self._ports.info(),
            "shared_dependencies": self._shared_ready,
        }
