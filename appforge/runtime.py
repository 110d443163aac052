"""Wiring for a complete AppForge process.

Builds the allocator, supervisor, orchestrator, preview manager and gateway
from one :class:`Config` and owns the shutdown hook that stops every preview
before the process exits.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any

from appforge.builder.collaborators import BlueprintGenerator, CodeGenerator
from appforge.builder.orchestrator import BuildOrchestrator
from appforge.config import Config
from appforge.gateway import PreviewGateway
from appforge.preview.manager import PreviewServerManager
from appforge.preview.ports import PortAllocator
from appforge.process.supervisor import ProcessSupervisor
from appforge.utils import console

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class AppForgeRuntime:
    """Owns every long-lived component of the build/preview subsystem.

    Usage::

        async with AppForgeRuntime(Config.from_env()) as runtime:
            job_id = await runtime.orchestrator.create_job("user", "todo app")
            ...
    """

    def __init__(
        self,
        config: Config,
        code_generator: CodeGenerator | None = None,
        blueprint_generator: BlueprintGenerator | None = None,
        supervisor: ProcessSupervisor | None = None,
        ports: PortAllocator | None = None,
    ) -> None:
        self.config = config
        self.ports = ports or PortAllocator.from_config(config.ports)
        self.supervisor = supervisor or ProcessSupervisor()
        self.orchestrator = BuildOrchestrator(
            config, code_generator=code_generator, blueprint_generator=blueprint_generator
        )
        self.previews = PreviewServerManager(config, self.orchestrator, self.ports, self.supervisor)
        self.gateway = PreviewGateway(config, self.previews, self.orchestrator, self.ports, self.supervisor)

        self._closed = asyncio.Event()
        self._shutdown_task: asyncio.Task | None = None
        self._installed_signals: list[int] = []

    async def start(self, install_signal_handlers: bool = True) -> None:
        self.config.ensure_directories()
        self.orchestrator.start()
        self.gateway.start_health_monitor()
        if install_signal_handlers:
            self._install_signal_handlers()
        console.print(
            f"[cyan][Runtime][/cyan] Started (ports {self.ports.min_port}-{self.ports.max_port}, "
            f"{self.config.build.max_concurrent_builds} concurrent builds)"
        )

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread.
                continue
            self._installed_signals.append(sig)

    def _on_signal(self, sig: int) -> None:
        console.print(f"[yellow][Runtime] Received {signal.Signals(sig).name}, shutting down[/yellow]")
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self.shutdown())

    async def shutdown(self) -> None:
        """Stop the health sweep, every preview (normal teardown path), then the orchestrator."""
        if self._closed.is_set():
            return
        await self.gateway.stop_health_monitor()
        await self.previews.stop_all()
        await self.orchestrator.stop()

        loop = asyncio.get_running_loop()
        for sig in self._installed_signals:
            loop.remove_signal_handler(sig)
        self._installed_signals.clear()

        self._closed.set()
        console.print("[cyan][Runtime][/cyan] Shutdown complete")

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def __aenter__(self) -> "AppForgeRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()
