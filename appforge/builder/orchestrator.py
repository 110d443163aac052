"""Build registry and orchestrator.

Owns the in-memory job queue and log store and runs the generation pipeline::

    queued -> running -> complete | failed | cancelled

A dispatcher task promotes queued jobs in FIFO order while fewer than
``max_concurrent_builds`` are running.  Each running job executes the
pipeline (blueprint -> codegen -> write to disk) inside a wall-clock
timeout.  Every step appends a :class:`BuildLog`, mirrored to
``<cache_dir>/<job_id>/logs/build.log`` as JSON lines.
"""

from __future__ import annotations

import asyncio
import shutil
import time
import uuid
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from appforge.builder.blueprint import blueprint_summary, fallback_blueprint
from appforge.builder.codegen import TemplateCodeGenerator
from appforge.builder.collaborators import (
    BlueprintGenerator,
    CodeGenerator,
    call_collaborator,
    coerce_project,
)
from appforge.config import Config
from appforge.errors import (
    BuildTimeout,
    FallbackUsed,
    GenerationError,
    JobNotFound,
    JobNotReady,
    UnsafePathError,
)
from appforge.models import (
    BuildJob,
    BuildLog,
    BuildTarget,
    GeneratedProject,
    JobStatus,
    LogStatus,
    StreamEvent,
)
from appforge.utils import append_json_line, console, ensure_dir, format_duration, resolve_inside

_DONE_LOG_STATUS = {
    JobStatus.COMPLETE: LogStatus.SUCCESS,
    JobStatus.FAILED: LogStatus.ERROR,
    JobStatus.CANCELLED: LogStatus.WARN,
}


class BuildOrchestrator:
    """Queue, dispatcher and pipeline runner for build jobs.

    Args:
        config: Global configuration (``config.build`` holds the limits).
        code_generator: Collaborator turning a blueprint into a file map.
            Defaults to :class:`TemplateCodeGenerator`.
        blueprint_generator: Collaborator turning a prompt into a blueprint.
            When absent every job uses the fallback blueprint.
    """

    def __init__(
        self,
        config: Config,
        code_generator: CodeGenerator | None = None,
        blueprint_generator: BlueprintGenerator | None = None,
    ) -> None:
        self.config = config
        self.settings = config.build
        self.code_generator = code_generator or TemplateCodeGenerator()
        self.blueprint_generator = blueprint_generator

        self._jobs: dict[str, BuildJob] = {}
        self._logs: dict[str, list[BuildLog]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._changed: dict[str, asyncio.Event] = {}
        self._sealed: set[str] = set()
        self._wakeup = asyncio.Event()
        self._dispatcher: asyncio.Task | None = None
        self._reaper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the dispatcher and the retention reaper (idempotent)."""
        self._ensure_dispatcher()
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_loop())

    async def stop(self) -> None:
        """Stop background loops, interrupt running pipelines and cancel queued jobs.

        Every job is terminal afterwards, so no ``stream`` or ``wait_for``
        caller is left waiting.
        """
        background = [t for t in (self._dispatcher, self._reaper) if t is not None]
        running = list(self._tasks.values())
        for task in background + running:
            task.cancel()
        await asyncio.gather(*background, *running, return_exceptions=True)
        self._dispatcher = None
        self._reaper = None
        for job in list(self._jobs.values()):
            if job.status is JobStatus.QUEUED:
                self._log(job.job_id, "cancel", LogStatus.WARN, "Build cancelled: orchestrator stopped")
                self._finish(job, JobStatus.CANCELLED, error="Orchestrator stopped")
            elif job.status is JobStatus.RUNNING:
                # Its task was cancelled before it ever ran.
                self._log(job.job_id, "error", LogStatus.ERROR, "Build interrupted")
                self._finish(job, JobStatus.FAILED, error="Build interrupted")
        console.print("[cyan][Orchestrator][/cyan] Stopped")

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_job(
        self,
        user_id: str,
        prompt: str,
        target: BuildTarget | str = BuildTarget.WEB,
    ) -> str:
        """Register a new job in the ``queued`` state and return its id.

        Raises:
            ValueError: If *target* is not a known build target.
        """
        target = BuildTarget(target)
        job_id = uuid.uuid4().hex
        ensure_dir(self.config.generated_dir(job_id).parent)
        ensure_dir(self.config.logs_dir(job_id))

        self._jobs[job_id] = BuildJob(
            job_id=job_id,
            user_id=user_id,
            prompt=prompt,
            target=target,
            started_at=time.time(),
        )
        self._logs[job_id] = []
        self._changed[job_id] = asyncio.Event()

        queued = sum(1 for job in self._jobs.values() if job.status is JobStatus.QUEUED)
        self._log(job_id, "queued", LogStatus.INFO, f"Build queued (position {queued})")
        console.print(
            f"[cyan][Orchestrator][/cyan] Created job {job_id} "
            f"for user {user_id} ({target.value})"
        )

        self._ensure_dispatcher()
        self._wakeup.set()
        return job_id

    def get_job(self, job_id: str) -> BuildJob | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    def get_logs(self, job_id: str) -> list[BuildLog]:
        return [entry.model_copy() for entry in self._logs.get(job_id, [])]

    def list_jobs(self, user_id: str | None = None) -> list[BuildJob]:
        """All jobs in creation order, optionally limited to one owner."""
        return [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if user_id is None or job.user_id == user_id
        ]

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a queued or running job.  Terminal jobs are left untouched."""
        job = self._jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return False

        self._log(job_id, "cancel", LogStatus.WARN, "Build cancelled by user")
        self._finish(job, JobStatus.CANCELLED)

        task = self._tasks.get(job_id)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        return True

    async def wait_for(self, job_id: str, timeout: float | None = None) -> BuildJob | None:
        """Block until *job_id* is terminal.  Returns ``None`` for unknown jobs."""

        async def _drain() -> None:
            async for _ in self.stream(job_id):
                pass

        await asyncio.wait_for(_drain(), timeout=timeout)
        return self.get_job(job_id)

    async def stream(self, job_id: str) -> AsyncIterator[StreamEvent]:
        """Replay and follow a job's events until it reaches a terminal status.

        Yields ``log`` events for every BuildLog, a ``status`` event whenever
        the status changes, and finally ``done``.  An unknown (or reaped) job
        yields a single ``error`` event.
        """
        sent = 0
        last_status: JobStatus | None = None
        while True:
            job = self._jobs.get(job_id)
            changed = self._changed.get(job_id)
            if job is None or changed is None:
                yield StreamEvent(type="error", data={"job_id": job_id, "message": f"Build {job_id} not found"})
                return

            logs = self._logs[job_id]
            while sent < len(logs):
                yield StreamEvent(type="log", data=logs[sent].model_dump(mode="json"))
                sent += 1

            if job.status is not last_status:
                last_status = job.status
                yield StreamEvent(
                    type="status",
                    data={"job_id": job_id, "status": job.status.value, "error": job.error},
                )

            if job_id in self._sealed and sent >= len(self._logs.get(job_id, [])):
                yield StreamEvent(
                    type="done",
                    data={
                        "job_id": job_id,
                        "status": job.status.value,
                        "error": job.error,
                        "output_path": str(job.output_path) if job.output_path else None,
                        "file_count": job.file_count,
                    },
                )
                return

            await changed.wait()

    def list_generated_files(self, job_id: str) -> list[str]:
        """Relative POSIX paths of every generated file, sorted."""
        job = self._jobs.get(job_id)
        if job is None or job.output_path is None or not Path(job.output_path).is_dir():
            return []
        root = Path(job.output_path)
        return sorted(
            path.relative_to(root).as_posix() for path in root.rglob("*") if path.is_file()
        )

    def read_generated_file(self, job_id: str, relative_path: str) -> str:
        """Read one generated file as text.

        Raises:
            JobNotFound: Unknown job.
            JobNotReady: The job has not written any files.
            UnsafePathError: *relative_path* escapes the output directory.
            FileNotFoundError: The file does not exist.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.output_path is None:
            raise JobNotReady(f"Build {job_id} has no generated files", job_id=job_id)
        target = resolve_inside(Path(job.output_path), relative_path)
        if target is None:
            raise UnsafePathError(f"Invalid file path: {relative_path}")
        return target.read_text(encoding="utf-8", errors="replace")

    async def reap_expired(self, max_age: float | None = None) -> list[str]:
        """Drop terminal jobs older than *max_age* seconds and delete their files.

        Defaults to the configured retention window.  Returns the removed ids.
        """
        max_age = self.settings.retention_seconds if max_age is None else max_age
        cutoff = time.time() - max_age
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal and job.completed_at is not None and job.completed_at <= cutoff
        ]

        for job_id in expired:
            del self._jobs[job_id]
            self._logs.pop(job_id, None)
            self._sealed.discard(job_id)
            event = self._changed.pop(job_id, None)
            if event is not None:
                event.set()
            await asyncio.to_thread(_remove_tree, self.config.job_dir(job_id))

        if expired:
            console.print(f"[cyan][Orchestrator][/cyan] Reaped {len(expired)} expired job(s)")
        return expired

    def stats(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return {
            "total": len(self._jobs),
            "max_concurrent": self.settings.max_concurrent_builds,
            **counts,
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while True:
            self._wakeup.clear()
            self._promote_queued()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.settings.dispatch_interval)
            except asyncio.TimeoutError:
                pass

    def _promote_queued(self) -> None:
        running = sum(1 for job in self._jobs.values() if job.status is JobStatus.RUNNING)
        limit = self.settings.max_concurrent_builds
        # Dict order is creation order, which gives FIFO.
        for job in list(self._jobs.values()):
            if running >= limit:
                return
            if job.status is not JobStatus.QUEUED:
                continue
            job.status = JobStatus.RUNNING
            job.running_at = time.time()
            running += 1
            waited = job.running_at - job.started_at
            console.print(
                f"[cyan][Orchestrator][/cyan] Job {job.job_id} running "
                f"({running}/{limit}, queued {format_duration(waited)})"
            )
            self._notify(job.job_id)
            self._tasks[job.job_id] = asyncio.create_task(self._run_job(job))

    async def _run_job(self, job: BuildJob) -> None:
        job_id = job.job_id
        timeout = self.settings.build_timeout
        try:
            await asyncio.wait_for(self._execute_pipeline(job), timeout=timeout)
        except asyncio.TimeoutError:
            error = BuildTimeout(job_id, timeout)
            console.print(f"[red][Orchestrator] Job {job_id}: {error}[/red]")
            self._log(job_id, "timeout", LogStatus.ERROR, f"Build timed out after {format_duration(timeout)}")
            self._finish(job, JobStatus.FAILED, error=str(error))
        except asyncio.CancelledError:
            if not job.status.is_terminal:
                self._log(job_id, "error", LogStatus.ERROR, "Build interrupted")
                self._finish(job, JobStatus.FAILED, error="Build interrupted")
            raise
        except Exception as exc:  # noqa: BLE001
            if not job.status.is_terminal:
                console.print(f"[red][Orchestrator] Job {job_id} failed: {exc}[/red]")
                self._log(job_id, "error", LogStatus.ERROR, f"Build failed: {exc}")
                self._finish(job, JobStatus.FAILED, error=str(exc))
        finally:
            self._tasks.pop(job_id, None)
            self._wakeup.set()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _execute_pipeline(self, job: BuildJob) -> None:
        job_id = job.job_id
        self._log(job_id, "start", LogStatus.INFO, "Starting build pipeline...", progress=0)

        # Step 1: blueprint (recoverable)
        self._log(
            job_id, "blueprint", LogStatus.INFO,
            "Analyzing the prompt and generating an app blueprint...", progress=10,
        )
        blueprint = await self._generate_blueprint(job)
        job.blueprint = blueprint
        app_name, page_count, entity_count = blueprint_summary(blueprint)
        self._log(
            job_id, "architecture", LogStatus.INFO,
            f"Planning architecture: {page_count} pages, {entity_count} entities", progress=40,
        )

        # Step 2: code generation (fatal)
        self._log(job_id, "codegen", LogStatus.INFO, "Generating project files from blueprint...", progress=50)
        project = await self._generate_code(job, blueprint)
        file_count = len(project.files)
        self._log(job_id, "codegen", LogStatus.SUCCESS, f"Generated {file_count} files", progress=70)

        # Step 3: write to disk
        self._log(job_id, "storage", LogStatus.INFO, "Writing files to storage...", progress=80)
        output_dir = self.config.generated_dir(job_id)
        total_bytes = await asyncio.to_thread(_write_project, output_dir, project.files)
        if job.status is not JobStatus.RUNNING:
            return

        job.output_path = output_dir
        job.file_count = file_count
        job.artifacts = {
            "app_name": app_name,
            "files": sorted(project.files),
            "bytes": total_bytes,
        }
        self._log(job_id, "storage", LogStatus.SUCCESS, f"Saved {file_count} files to storage", progress=90)

        # Step 4: complete
        self._log(
            job_id, "complete", LogStatus.SUCCESS,
            "Build complete! The app is ready to preview and download.", progress=100,
        )
        self._finish(job, JobStatus.COMPLETE)

    async def _generate_blueprint(self, job: BuildJob) -> dict[str, Any]:
        if self.blueprint_generator is None:
            return self._use_fallback(job, "no blueprint generator configured")

        try:
            blueprint = await call_collaborator(self.blueprint_generator.generate, job.prompt, job.target)
            if not isinstance(blueprint, dict):
                raise TypeError(f"expected a blueprint object, got {type(blueprint).__name__}")
        except Exception as exc:  # noqa: BLE001
            return self._use_fallback(job, str(exc) or type(exc).__name__)

        app_name, _, _ = blueprint_summary(blueprint)
        self._log(
            job.job_id, "blueprint", LogStatus.SUCCESS,
            f'Generated blueprint for "{app_name}" ({job.target.value} app)', progress=30,
        )
        return blueprint

    def _use_fallback(self, job: BuildJob, reason: str) -> dict[str, Any]:
        warning = FallbackUsed(job.job_id, reason)
        console.print(f"[yellow][Orchestrator] Job {job.job_id}: {warning}[/yellow]")
        self._log(job.job_id, "blueprint", LogStatus.WARN, str(warning), progress=30)
        return fallback_blueprint(job.target, reason)

    async def _generate_code(self, job: BuildJob, blueprint: dict[str, Any]) -> GeneratedProject:
        try:
            result = await call_collaborator(self.code_generator.generate, job.job_id, blueprint)
            project = coerce_project(result)
        except GenerationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise GenerationError(job.job_id, str(exc)) from exc
        if not project.files:
            raise GenerationError(job.job_id, "Code generator produced no files")
        return project

    # ------------------------------------------------------------------
    # Log store
    # ------------------------------------------------------------------

    def _log(
        self,
        job_id: str,
        step: str,
        status: LogStatus,
        detail: str,
        progress: int | None = None,
    ) -> BuildLog | None:
        """Append a log entry.  No-op once the job's stream is sealed."""
        if job_id in self._sealed or job_id not in self._logs:
            return None
        logs = self._logs[job_id]
        timestamp = time.time()
        if logs and timestamp < logs[-1].timestamp:
            timestamp = logs[-1].timestamp

        entry = BuildLog(step=step, timestamp=timestamp, status=status, detail=detail, progress=progress)
        logs.append(entry)
        try:
            append_json_line(self.config.log_file(job_id), {"job_id": job_id, **entry.model_dump(mode="json")})
        except OSError as exc:
            console.print(f"[yellow][Orchestrator] Could not mirror log for {job_id}: {exc}[/yellow]")
        self._notify(job_id)
        return entry

    def _finish(self, job: BuildJob, status: JobStatus, error: str | None = None) -> None:
        if job.status.is_terminal:
            return
        job.status = status
        job.completed_at = time.time()
        job.error = error

        elapsed = format_duration(job.completed_at - job.started_at)
        colour = {"complete": "green", "failed": "red"}.get(status.value, "yellow")
        console.print(f"[{colour}][Orchestrator] Job {job.job_id} {status.value} after {elapsed}[/{colour}]")

        self._log(job.job_id, "done", _DONE_LOG_STATUS[status], f"Build {status.value}")
        self._sealed.add(job.job_id)
        self._notify(job.job_id)
        self._wakeup.set()

    def _notify(self, job_id: str) -> None:
        event = self._changed.get(job_id)
        if event is None:
            return
        event.set()
        self._changed[job_id] = asyncio.Event()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.reaper_interval)
            await self.reap_expired()


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------


def _write_project(root: Path, files: dict[str, str | bytes]) -> int:
    """Write every file under *root*; returns the number of bytes written."""
    root.mkdir(parents=True, exist_ok=True)
    base = root.resolve()
    total = 0
    for relative_path, content in files.items():
        target = resolve_inside(root, relative_path)
        if target is None or target == base:
            raise UnsafePathError(f"Refusing to write outside the output directory: {relative_path}")
        data = content if isinstance(content, bytes) else content.encode("utf-8")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        total += len(data)
    return total


def _remove_tree(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        console.print(f"[yellow][Orchestrator] Could not delete {path}: {exc}[/yellow]")


def reap_stale_directories(cache_dir: str | Path, max_age_seconds: float) -> list[str]:
    """Delete job directories under *cache_dir* not modified for *max_age_seconds*.

    Used when no orchestrator is running (e.g. from the CLI after a restart),
    so the decision is based on directory mtimes rather than job state.
    """
    root = Path(cache_dir)
    if not root.is_dir():
        return []
    cutoff = time.time() - max_age_seconds
    removed: list[str] = []
    for entry in sorted(root.iterdir()):
        if not entry.is_dir() or entry.stat().st_mtime > cutoff:
            continue
        _remove_tree(entry)
        removed.append(entry.name)
    return removed
