"""Child process supervision for preview servers.

Spawns long-running children with stdout/stderr captured as decoded lines
and surfaces everything that happens to a child as a tagged event stream
(:class:`OutputEvent`, :class:`ExitedEvent`, :class:`ErroredEvent`) consumed
by a single dispatch loop per process.  Also provides the kill and liveness
primitives used during teardown; "already gone" is always success.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar, Union

import httpx

from appforge.errors import ProcessCrashed, ProcessError, ProcessSpawnError, StartupTimeout
from appforge.utils import console, fetch_status, is_alive_status, run_command

# Dev servers can print very long lines (minified stack traces).
_STREAM_LIMIT = 1024 * 1024
_DRAIN_TIMEOUT = 1.0


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutputEvent:
    """One decoded line from the child's stdout or stderr."""

    stream: str
    line: str


@dataclass(frozen=True)
class ExitedEvent:
    """The child exited.  ``signal`` is set when it was killed by one."""

    code: int | None
    signal: int | None


@dataclass(frozen=True)
class ErroredEvent:
    """Supervision itself failed (e.g. an unreadable stream)."""

    cause: BaseException


ProcessEvent = Union[OutputEvent, ExitedEvent, ErroredEvent]

T = TypeVar("T")


def describe_exit(event: ExitedEvent) -> str:
    return f"code {event.code}" if event.signal is None else f"signal {event.signal}"


# ---------------------------------------------------------------------------
# SupervisedProcess
# ---------------------------------------------------------------------------


class SupervisedProcess:
    """Handle to one spawned child.

    Output is pumped into an internal queue as soon as the process starts, so
    no line is lost between spawning and the first call to :meth:`events`.
    The child is started in its own session so a kill reaches any helper
    processes it forks (``npx`` -> ``node`` and friends).
    """

    def __init__(self, process: asyncio.subprocess.Process, command: Sequence[str], cwd: Path) -> None:
        self.process = process
        self.pid: int = process.pid
        self.command = list(command)
        self.cwd = cwd
        self.started_at = time.monotonic()
        self._events: asyncio.Queue[ProcessEvent] = asyncio.Queue()
        self._pump_task = asyncio.create_task(self._pump())

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def is_running(self) -> bool:
        return self.process.returncode is None

    async def _read_lines(self, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        oversized = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                # EOF; whatever is left is an unterminated last line.
                raw = exc.partial
                if not raw:
                    return
            except asyncio.LimitOverrunError as exc:
                # Drop the buffered part of an oversized line and keep reading.
                await stream.readexactly(exc.consumed)
                if not oversized:
                    oversized = True
                    await self._events.put(
                        OutputEvent(stream=name, line=f"[output line longer than {_STREAM_LIMIT} bytes dropped]")
                    )
                continue
            if oversized:
                # Tail of the dropped line.
                oversized = False
                continue
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            await self._events.put(OutputEvent(stream=name, line=line))

    async def _pump(self) -> None:
        readers = [
            asyncio.create_task(self._read_lines(self.process.stdout, "stdout")),
            asyncio.create_task(self._read_lines(self.process.stderr, "stderr")),
        ]
        try:
            returncode = await self.process.wait()
            # Grandchildren may keep the pipes open after the child is gone.
            done, pending = await asyncio.wait(readers, timeout=_DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()
            for task in done:
                error = task.exception()
                if error is not None:
                    raise error
        except asyncio.CancelledError:
            for task in readers:
                task.cancel()
            raise
        except Exception as exc:  # noqa: BLE001
            await self._events.put(ErroredEvent(cause=exc))
            return

        if returncode < 0:
            event = ExitedEvent(code=None, signal=-returncode)
        else:
            event = ExitedEvent(code=returncode, signal=None)
        await self._events.put(event)

    async def events(self) -> AsyncIterator[ProcessEvent]:
        """Yield events until the terminal ``Exited``/``Errored`` event."""
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, (ExitedEvent, ErroredEvent)):
                return

    async def wait_for_output(
        self,
        match: Callable[[OutputEvent], T | None],
        timeout: float | None = None,
    ) -> T:
        """Consume output lines until *match* returns something other than ``None``.

        Lines that do not match are discarded.  A terminal event is left in
        the queue so a later :meth:`events` loop still observes it.

        Raises:
            ProcessCrashed: The child exited before a line matched.
            ProcessError: Supervision failed before a line matched.
            StartupTimeout: Nothing matched within *timeout* seconds.
        """

        async def _scan() -> T:
            while True:
                event = await self._events.get()
                if isinstance(event, OutputEvent):
                    result = match(event)
                    if result is not None:
                        return result
                    continue
                self._events.put_nowait(event)
                if isinstance(event, ExitedEvent):
                    raise ProcessCrashed(
                        f"Process exited with {describe_exit(event)} before it was ready",
                        exit_code=event.code,
                        signal=event.signal,
                    )
                raise ProcessError(f"Lost track of the process: {event.cause}") from event.cause

        if timeout is None:
            return await _scan()
        try:
            return await asyncio.wait_for(_scan(), timeout=timeout)
        except asyncio.TimeoutError:
            raise StartupTimeout(
                f"No matching output from PID {self.pid} within {timeout:g} seconds", timeout=timeout
            ) from None

    async def wait(self) -> int:
        return await self.process.wait()

    def _signal(self, sig: int) -> None:
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # macOS reports EPERM for a group whose leader is a zombie.
            try:
                self.process.send_signal(sig)
            except ProcessLookupError:
                pass

    async def kill(self, graceful: bool = True, grace_period: float = 5.0) -> None:
        """Stop the child; escalate to SIGKILL after *grace_period* seconds."""
        if self.process.returncode is not None:
            return

        if graceful:
            self._signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(self.process.wait(), timeout=grace_period)
                return
            except asyncio.TimeoutError:
                console.print(
                    f"[yellow][Supervisor] PID {self.pid} ignored SIGTERM for "
                    f"{grace_period:g}s, sending SIGKILL[/yellow]"
                )

        self._signal(signal.SIGKILL)
        try:
            await asyncio.wait_for(self.process.wait(), timeout=max(grace_period, 1.0))
        except asyncio.TimeoutError:
            console.print(f"[red][Supervisor] PID {self.pid} did not exit after SIGKILL[/red]")


# ---------------------------------------------------------------------------
# Module-level primitives
# ---------------------------------------------------------------------------


def is_alive(pid: int) -> bool:
    """Non-destructive existence check (signal 0)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else.
        return True
    return True


async def kill_process(pid: int, interval: float = 2.0) -> bool:
    """SIGTERM *pid*, wait *interval* seconds, SIGKILL it if still alive.

    A pid that no longer exists counts as successfully killed.
    """
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True

    await asyncio.sleep(interval)

    if is_alive(pid):
        console.print(f"[yellow][Supervisor] Process {pid} still alive, sending SIGKILL[/yellow]")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    return True


async def wait_for_url(
    url: str,
    timeout: float = 120.0,
    interval: float = 0.5,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """Poll *url* until it answers with a 2xx or 404.

    Raises:
        StartupTimeout: If the budget is exhausted first.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        status = await fetch_status(url, timeout=3.0, client=client)
        if is_alive_status(status):
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise StartupTimeout(f"Timeout waiting for {url} after {timeout:g}s", timeout=timeout)
        await asyncio.sleep(min(interval, remaining))


async def kill_processes_on_port(port: int) -> list[int]:
    """Force-kill every process listening on *port*.

    Listeners are discovered with ``lsof``; if it is not installed there is
    nothing we can reclaim and an empty list is returned.
    """
    try:
        returncode, stdout, _ = await run_command(["lsof", "-ti", f":{port}"], timeout=10)
    except FileNotFoundError:
        return []
    if returncode not in (0, 1):
        return []

    killed: list[int] = []
    for token in stdout.split():
        if not token.isdigit():
            continue
        pid = int(token)
        if pid == os.getpid():
            continue
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            continue
        console.print(f"[yellow][Supervisor] Killed process {pid} on port {port}[/yellow]")
        killed.append(pid)
    return killed


# ---------------------------------------------------------------------------
# ProcessSupervisor
# ---------------------------------------------------------------------------


class ProcessSupervisor:
    """Spawns supervised children and keeps track of the live ones.

    The preview manager receives one instance by injection, which keeps the
    spawn path replaceable in tests.
    """

    def __init__(self, kill_interval: float = 2.0) -> None:
        self.kill_interval = kill_interval
        self.processes: dict[int, SupervisedProcess] = {}
        self.spawn_count = 0
        self._watchers: set[asyncio.Task] = set()

    async def spawn(
        self,
        command: Sequence[str],
        cwd: str | Path,
        env: dict[str, str] | None = None,
    ) -> SupervisedProcess:
        """Launch *command* in *cwd* with *env* merged over ``os.environ``.

        Raises:
            ProcessSpawnError: If the OS refuses to start the process.
        """
        if not command:
            raise ProcessSpawnError("Cannot spawn an empty command")

        merged_env = {**os.environ, **(env or {})}
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=merged_env,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to launch '{command[0]}': {exc}") from exc

        self.spawn_count += 1
        supervised = SupervisedProcess(process, command, Path(cwd))
        self.processes[supervised.pid] = supervised
        watcher = asyncio.create_task(self._forget_on_exit(supervised))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        console.print(
            f"[cyan][Supervisor][/cyan] Spawned PID {supervised.pid}: "
            f"[dim]{' '.join(command)}[/dim]"
        )
        return supervised

    async def _forget_on_exit(self, supervised: SupervisedProcess) -> None:
        returncode = await supervised.wait()
        self.processes.pop(supervised.pid, None)
        console.print(f"[dim][Supervisor] PID {supervised.pid} exited with {returncode}[/dim]")

    async def kill(self, supervised: SupervisedProcess, graceful: bool = True, grace_period: float = 5.0) -> None:
        await supervised.kill(graceful=graceful, grace_period=grace_period)

    async def kill_process(self, pid: int) -> bool:
        return await kill_process(pid, interval=self.kill_interval)

    def is_alive(self, pid: int) -> bool:
        return is_alive(pid)

    async def wait_for_url(self, url: str, timeout: float = 120.0, interval: float = 0.5) -> bool:
        return await wait_for_url(url, timeout=timeout, interval=interval)

    async def kill_processes_on_port(self, port: int) -> list[int]:
        return await kill_processes_on_port(port)
