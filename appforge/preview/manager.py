"""Preview server manager.

Runs one supervised dev server per completed build job:

- verifies the job's output directory holds a runnable project,
- installs dependencies if they are missing or older than the manifest,
- allocates a port and spawns the dev server rooted at the project,
- classifies startup from the child's output (ready / port conflict / crash),
- retries a failed start a bounded number of times on a new port,
- tears the server down on explicit stop, idle expiry, crash or shutdown.

Concurrent starts for the same job share a single in-flight attempt, so a job
never has more than one child process.
"""

from __future__ import annotations

import asyncio
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from rich.markup import escape

from appforge.config import Config
from appforge.errors import (
    AppForgeError,
    DependencyInstallError,
    JobNotFound,
    JobNotReady,
    MissingManifest,
    PortConflict,
    PreviewError,
    ProcessCrashed,
    ProcessError,
    StartupTimeout,
)
from appforge.models import BuildJob, JobStatus, PreviewInfo, PreviewStatus
from appforge.preview.ports import PortAllocator
from appforge.preview.signatures import StartupSignal, classify_output
from appforge.process.supervisor import (
    ErroredEvent,
    ExitedEvent,
    OutputEvent,
    ProcessSupervisor,
    SupervisedProcess,
    describe_exit,
)
from appforge.utils import console, format_duration, run_command

# Failures of the child itself; worth another attempt on a new port.
_RETRIABLE = (StartupTimeout, PortConflict, ProcessCrashed)


class JobLookup(Protocol):
    """Read-only view of the build registry."""

    def get_job(self, job_id: str) -> BuildJob | None: ...


@dataclass
class _PreviewEntry:
    job_id: str
    started_at: float
    status: PreviewStatus = PreviewStatus.STARTING
    port: int | None = None
    owns_port: bool = False
    url: str | None = None
    error: str | None = None
    process: SupervisedProcess | None = None
    ready: asyncio.Future | None = None
    attempt: asyncio.Task | None = None
    idle_task: asyncio.Task | None = None
    watch_task: asyncio.Task | None = None
    stopping: bool = False
    stop_requested: asyncio.Event = field(default_factory=asyncio.Event)
    retries: int = 0

    def snapshot(self) -> PreviewInfo:
        return PreviewInfo(
            job_id=self.job_id,
            port=self.port,
            url=self.url,
            status=self.status,
            started_at=self.started_at,
            pid=self.process.pid if self.process is not None else None,
            error=self.error,
            retries=self.retries,
        )


def _settle(future: asyncio.Future | None, result: Any = None, error: BaseException | None = None) -> None:
    """Resolve *future* once; later outcomes are ignored."""
    if future is None or future.done():
        return
    if error is None:
        future.set_result(result)
        return
    future.set_exception(error)
    # Mark as retrieved: nobody may be awaiting it any more.
    future.exception()


class PreviewServerManager:
    """Registry and lifecycle owner for preview servers.

    Attributes:
        config: Global configuration; ``config.preview`` drives timeouts,
            commands and the manifest check.
    """

    def __init__(
        self,
        config: Config,
        jobs: JobLookup,
        ports: PortAllocator,
        supervisor: ProcessSupervisor,
    ) -> None:
        self.config = config
        self.settings = config.preview
        self._jobs = jobs
        self._ports = ports
        self._supervisor = supervisor
        self._servers: dict[str, _PreviewEntry] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_preview_server(self, job_id: str) -> tuple[str, int]:
        """Start (or join) the preview for *job_id* and return ``(url, port)``.

        Raises:
            JobNotReady: The job is unknown or not complete.
            MissingManifest: The output directory is missing or incomplete.
            DependencyInstallError: The one-time install failed.
            PortExhausted: No free port in the configured range.
            PortConflict: Another process on the host already bound the port.
            StartupTimeout: No ready signature within ``startup_timeout``.
            ProcessError: The child could not be spawned or crashed early.
        """
        entry = self._servers.get(job_id)
        if entry is not None:
            if entry.status is PreviewStatus.READY:
                return entry.url, entry.port  # type: ignore[return-value]
            if entry.status is PreviewStatus.STARTING and entry.attempt is not None:
                console.print(f"[dim][Preview:{job_id}] Joining in-flight start[/dim]")
                return await asyncio.shield(entry.attempt)
            # A failed entry only lingers for status polls; its resources are gone.
            self._forget(entry)

        entry = _PreviewEntry(job_id=job_id, started_at=time.time())
        self._servers[job_id] = entry
        entry.idle_task = asyncio.create_task(self._expire_when_idle(entry))
        entry.attempt = asyncio.create_task(self._launch(entry))
        return await asyncio.shield(entry.attempt)

    async def stop_preview_server(self, job_id: str) -> bool:
        """Tear down the preview for *job_id*.  Returns whether one existed."""
        entry = self._servers.get(job_id)
        if entry is None:
            console.print(f"[dim][Preview] No server found for build {job_id}[/dim]")
            return False
        await self._stop_entry(entry)
        return True

    async def restart_preview_server(self, job_id: str) -> tuple[str, int]:
        await self.stop_preview_server(job_id)
        return await self.start_preview_server(job_id)

    def get_preview_server(self, job_id: str) -> PreviewInfo | None:
        entry = self._servers.get(job_id)
        return entry.snapshot() if entry is not None else None

    def list_previews(self) -> list[PreviewInfo]:
        return [entry.snapshot() for entry in self._servers.values()]

    async def stop_all(self) -> None:
        """Stop every registered preview through the normal teardown path."""
        entries = list(self._servers.values())
        if not entries:
            return
        console.print(f"[cyan][Preview][/cyan] Stopping all preview servers ({len(entries)} active)")
        await asyncio.gather(*(self._stop_entry(entry) for entry in entries))

    def stats(self) -> dict[str, Any]:
        now = time.time()
        return {
            "total_active": len(self._servers),
            "servers": [
                {
                    "job_id": entry.job_id,
                    "port": entry.port,
                    "url": entry.url,
                    "status": entry.status.value,
                    "uptime": format_duration(now - entry.started_at),
                    "retry_count": entry.retries,
                }
                for entry in self._servers.values()
            ],
        }

    # ------------------------------------------------------------------
    # Start-up
    # ------------------------------------------------------------------

    async def _launch(self, entry: _PreviewEntry) -> tuple[str, int]:
        try:
            return await self._start_with_retries(entry)
        except asyncio.CancelledError:
            await self._fail(entry, "Preview start cancelled")
            raise
        except AppForgeError as exc:
            if isinstance(exc, PreviewError) and exc.job_id is None:
                exc.job_id = entry.job_id
            await self._fail(entry, str(exc))
            raise
        except Exception as exc:
            await self._fail(entry, str(exc))
            raise ProcessError(f"Preview start failed: {exc}", job_id=entry.job_id) from exc

    async def _start_with_retries(self, entry: _PreviewEntry) -> tuple[str, int]:
        """Run :meth:`_bring_up`, retrying runtime failures on a new port.

        Only failures of the child itself are retried; validation and install
        errors would fail the same way again.  The failed port stays held
        until the next attempt is over so the allocator cannot hand it back.
        """
        attempts = self.settings.start_retries + 1
        attempt = 1
        held_back: int | None = None
        try:
            while True:
                try:
                    return await self._bring_up(entry)
                except _RETRIABLE as exc:
                    if entry.stopping or attempt >= attempts:
                        raise
                    console.print(
                        f"[yellow][Preview:{entry.job_id}] Attempt {attempt}/{attempts} failed: "
                        f"{escape(str(exc))}. Retrying in {self.settings.retry_delay:g}s[/yellow]"
                    )
                if held_back is not None:
                    self._ports.release(held_back)
                held_back = await self._retire_attempt(entry)
                entry.retries = attempt
                attempt += 1
                try:
                    await asyncio.wait_for(entry.stop_requested.wait(), timeout=self.settings.retry_delay)
                except asyncio.TimeoutError:
                    pass
                self._check_active(entry)
        finally:
            if held_back is not None:
                self._ports.release(held_back)

    async def _retire_attempt(self, entry: _PreviewEntry) -> int | None:
        """Kill the failed child and reset the entry; returns the port it held."""
        port = entry.port if entry.owns_port else None
        entry.owns_port = False
        await self._release(entry)
        entry.process = None
        entry.ready = None
        entry.watch_task = None
        entry.port = None
        entry.url = None
        return port

    async def _bring_up(self, entry: _PreviewEntry) -> tuple[str, int]:
        job_id = entry.job_id
        console.print(f"[cyan][Preview:{job_id}][/cyan] Starting preview server")

        project = self._verify_project(job_id)
        await self._ensure_dependencies(job_id, project)
        self._check_active(entry)

        port = self._ports.acquire()
        entry.port = port
        entry.owns_port = True
        entry.url = f"http://{self.settings.host}:{port}"

        process = await self._supervisor.spawn(
            self._dev_command(port), cwd=project, env=self._child_env(port)
        )
        entry.process = process
        self._check_active(entry)

        entry.ready = asyncio.get_running_loop().create_future()
        entry.watch_task = asyncio.create_task(self._watch(entry, process))

        timeout = self.settings.startup_timeout
        try:
            await asyncio.wait_for(asyncio.shield(entry.ready), timeout=timeout)
        except asyncio.TimeoutError:
            raise StartupTimeout(
                f"Server failed to start within {timeout:g} seconds", timeout=timeout, job_id=job_id
            ) from None

        elapsed = time.time() - entry.started_at
        console.print(
            f"[green][Preview:{job_id}] Server ready at {entry.url} "
            f"({format_duration(elapsed)})[/green]"
        )
        return entry.url, port

    def _verify_project(self, job_id: str) -> Path:
        job = self._jobs.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status is not JobStatus.COMPLETE:
            raise JobNotReady(
                f"Build {job_id} is not complete yet (status: {job.status.value})", job_id=job_id
            )
        if job.output_path is None or not Path(job.output_path).is_dir():
            raise MissingManifest(f"Generated app files not found for build {job_id}", job_id=job_id)

        project = Path(job.output_path)
        if not (project / self.settings.manifest_file).is_file():
            raise MissingManifest(
                f"Missing {self.settings.manifest_file} in generated app", job_id=job_id
            )
        return project

    def _dependencies_stale(self, project: Path) -> bool:
        """True when the installed tree predates the manifest.

        A symlinked tree is the gateway's shared cache and is never
        considered stale here.
        """
        deps = project / self.settings.dependencies_dir
        if deps.is_symlink():
            return False
        manifest = project / self.settings.manifest_file
        return deps.stat().st_mtime < manifest.stat().st_mtime

    async def _ensure_dependencies(self, job_id: str, project: Path) -> None:
        deps = project / self.settings.dependencies_dir
        if deps.exists():
            if not self._dependencies_stale(project):
                console.print(f"[dim][Preview:{job_id}] Dependencies already installed[/dim]")
                return
            console.print(
                f"[yellow][Preview:{job_id}] {self.settings.dependencies_dir} is older than "
                f"{self.settings.manifest_file}, reinstalling[/yellow]"
            )
            try:
                await asyncio.to_thread(shutil.rmtree, deps)
            except OSError as exc:
                raise DependencyInstallError(
                    f"Could not remove stale dependencies: {exc}", job_id=job_id
                ) from exc

        console.print(f"[cyan][Preview:{job_id}][/cyan] Installing dependencies...")
        try:
            returncode, stdout, stderr = await run_command(
                list(self.settings.install_command),
                cwd=project,
                timeout=self.settings.install_timeout,
            )
        except OSError as exc:
            raise DependencyInstallError(
                f"Dependency install could not start: {exc}", job_id=job_id
            ) from exc

        if returncode != 0:
            tail = (stderr or stdout)[-500:]
            raise DependencyInstallError(
                f"Dependency install failed with code {returncode}: {tail}", job_id=job_id
            )
        console.print(f"[green][Preview:{job_id}] Dependencies installed[/green]")

    def _check_active(self, entry: _PreviewEntry) -> None:
        if entry.stopping:
            raise PreviewError(
                f"Preview for build {entry.job_id} was stopped before it became ready",
                job_id=entry.job_id,
            )

    def _dev_command(self, port: int) -> list[str]:
        return [
            part.replace("{port}", str(port)).replace("{bind_host}", self.settings.bind_host)
            for part in self.settings.dev_command
        ]

    @staticmethod
    def _child_env(port: int) -> dict[str, str]:
        return {
            "PORT": str(port),
            "NODE_ENV": "development",
            "NEXT_TELEMETRY_DISABLED": "1",
        }

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def _watch(self, entry: _PreviewEntry, process: SupervisedProcess) -> None:
        try:
            outcome = await process.wait_for_output(lambda event: self._startup_signal(entry, event))
        except ProcessError as exc:
            exc.job_id = entry.job_id
            _settle(entry.ready, error=exc)
        else:
            if outcome is StartupSignal.READY:
                entry.status = PreviewStatus.READY
                _settle(entry.ready, result=(entry.url, entry.port))
            else:
                console.print(f"[red][Preview:{entry.job_id}] Port {entry.port} is already in use[/red]")
                _settle(entry.ready, error=PortConflict(entry.port, job_id=entry.job_id))  # type: ignore[arg-type]

        async for event in process.events():
            if isinstance(event, OutputEvent):
                self._echo(entry, event)
            elif isinstance(event, ExitedEvent):
                await self._on_exit(entry, event)
            else:
                await self._on_error(entry, event)

    def _startup_signal(self, entry: _PreviewEntry, event: OutputEvent) -> StartupSignal | None:
        self._echo(entry, event)
        return classify_output(event.stream, event.line, entry.port)

    @staticmethod
    def _echo(entry: _PreviewEntry, event: OutputEvent) -> None:
        console.print(f"[dim][Preview:{entry.job_id}] {escape(event.line)}[/dim]", highlight=False)

    async def _on_exit(self, entry: _PreviewEntry, event: ExitedEvent) -> None:
        if entry.status is PreviewStatus.READY and not entry.stopping:
            how = describe_exit(event)
            console.print(f"[yellow][Preview:{entry.job_id}] Server exited unexpectedly ({how})[/yellow]")
            entry.error = f"Process exited with {how}"
            await self._stop_entry(entry)

    async def _on_error(self, entry: _PreviewEntry, event: ErroredEvent) -> None:
        if entry.status is PreviewStatus.READY and not entry.stopping:
            console.print(f"[red][Preview:{entry.job_id}] Lost track of the dev server: {event.cause}[/red]")
            entry.error = f"Lost track of the dev server: {event.cause}"
            await self._stop_entry(entry)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _expire_when_idle(self, entry: _PreviewEntry) -> None:
        # Measured from creation, not from the last request.
        await asyncio.sleep(self.settings.idle_timeout)
        if self._servers.get(entry.job_id) is entry:
            console.print(
                f"[yellow][Preview:{entry.job_id}] Idle timeout reached after "
                f"{format_duration(self.settings.idle_timeout)}, stopping server[/yellow]"
            )
            await self._stop_entry(entry)

    async def _fail(self, entry: _PreviewEntry, reason: str) -> None:
        console.print(f"[red][Preview:{entry.job_id}] Failed to start preview: {reason}[/red]")
        entry.error = reason
        await self._release(entry)
        if not entry.stopping:
            entry.status = PreviewStatus.FAILED

    async def _stop_entry(self, entry: _PreviewEntry) -> None:
        if self._servers.get(entry.job_id) is entry:
            del self._servers[entry.job_id]
        entry.stopping = True
        entry.stop_requested.set()
        console.print(f"[cyan][Preview:{entry.job_id}][/cyan] Stopping preview server")

        if entry.idle_task is not None and entry.idle_task is not asyncio.current_task():
            entry.idle_task.cancel()
        _settle(
            entry.ready,
            error=PreviewError(
                f"Preview for build {entry.job_id} was stopped before it became ready",
                job_id=entry.job_id,
            ),
        )
        await self._release(entry)
        entry.status = PreviewStatus.STOPPED

    async def _release(self, entry: _PreviewEntry) -> None:
        """Kill the child (graceful, then forced) and give the port back."""
        if entry.watch_task is not None and entry.watch_task is not asyncio.current_task():
            entry.watch_task.cancel()
        if entry.process is not None:
            await self._supervisor.kill(entry.process, graceful=True, grace_period=self.settings.kill_grace)
        if entry.owns_port and entry.port is not None:
            entry.owns_port = False
            self._ports.release(entry.port)

    def _forget(self, entry: _PreviewEntry) -> None:
        if entry.idle_task is not None:
            entry.idle_task.cancel()
        if self._servers.get(entry.job_id) is entry:
            del self._servers[entry.job_id]
