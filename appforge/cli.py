"""Command-line entry point.

Examples::

    appforge build "a todo app with due dates" --target web --preview
    appforge cleanup
    appforge reap --max-age-hours 48
    appforge logs 3f2a...
    appforge config --output appforge.json
    appforge --config appforge.json build "a recipe box"
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from rich.markup import escape

from appforge.builder.orchestrator import reap_stale_directories
from appforge.config import Config
from appforge.errors import PreviewError
from appforge.models import BuildTarget, JobStatus, StreamEvent
from appforge.runtime import AppForgeRuntime
from appforge.utils import (
    console,
    print_error,
    print_success,
    print_summary_table,
    print_warning,
    read_json_lines,
)

_LOG_COLOURS = {"info": "cyan", "warn": "yellow", "error": "red", "success": "green"}


def _print_event(event: StreamEvent) -> None:
    if event.type == "log":
        colour = _LOG_COLOURS.get(event.data.get("status", "info"), "white")
        progress = event.data.get("progress")
        prefix = f"{progress:>3}%" if progress is not None else "    "
        console.print(f"  [dim]{prefix}[/dim] [{colour}]{event.data['step']:<12}[/{colour}] {escape(event.data['detail'])}")
    elif event.type == "status":
        console.print(f"  [bold]status -> {event.data['status']}[/bold]")
    elif event.type == "error":
        print_error(event.data.get("message", "Unknown error"))


async def _run_build(config: Config, args: argparse.Namespace) -> int:
    async with AppForgeRuntime(config) as runtime:
        job_id = await runtime.orchestrator.create_job(args.user, args.prompt, args.target)
        console.print(f"[bold]Build {job_id}[/bold]")
        async for event in runtime.orchestrator.stream(job_id):
            _print_event(event)

        job = runtime.orchestrator.get_job(job_id)
        if job is None or job.status is not JobStatus.COMPLETE:
            print_error(f"Build did not complete: {job.error if job else 'job missing'}")
            return 1

        print_summary_table(
            {
                "Job": job.job_id,
                "Target": job.target.value,
                "Files": job.file_count,
                "Output": job.output_path,
            },
            title="Build",
        )

        if not args.preview:
            return 0

        try:
            preview = await runtime.gateway.start_optimized_preview(job_id)
        except PreviewError as exc:
            print_error(f"Preview failed: {exc}")
            return 1
        print_success(f"Preview running at {preview['url']} (Ctrl+C to stop)")
        await runtime.wait_closed()
    return 0


async def _run_cleanup(config: Config) -> int:
    runtime = AppForgeRuntime(config)
    reclaimed = await runtime.gateway.emergency_cleanup()
    if reclaimed:
        print_summary_table(
            {str(port): ", ".join(str(pid) for pid in pids) for port, pids in reclaimed.items()},
            title="Reclaimed ports",
        )
    else:
        print_success("No stray preview processes found")
    return 0


def _run_reap(config: Config, max_age_hours: float | None) -> int:
    hours = config.build.retention_hours if max_age_hours is None else max_age_hours
    console.print(f"Removing job directories under {config.cache_dir} older than {hours:g}h")
    removed = reap_stale_directories(config.cache_dir, hours * 3600.0)
    print_success(f"Removed {len(removed)} job director{'y' if len(removed) == 1 else 'ies'}")
    return 0


def _run_logs(config: Config, job_id: str) -> int:
    """Replay a job's build log from its on-disk JSON-lines mirror."""
    records = read_json_lines(config.log_file(job_id))
    if not records:
        print_warning(f"No build log for job {escape(job_id)} under {config.cache_dir}")
        return 1
    for record in records:
        _print_event(StreamEvent(type="log", data=record))
    return 0


def _run_config(config: Config, output: str | None) -> int:
    path = config.save(Path(output) if output else None)
    print_success(f"Configuration written to {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="appforge",
        description="AppForge -- prompt-to-app builds with live previews",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--cache-dir",
        default=None,
        help="Job cache root (default: $APPFORGE_CACHE_DIR or ./.cache/appforge)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="JSON configuration file written by `appforge config` (default: APPFORGE_* environment)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Run one build job to completion")
    build.add_argument("prompt", help="Natural-language description of the app")
    build.add_argument(
        "--target", "-t",
        default=BuildTarget.WEB.value,
        choices=[target.value for target in BuildTarget],
        help="Build target (default: web)",
    )
    build.add_argument("--user", "-u", default="cli", help="Owner recorded on the job (default: cli)")
    build.add_argument("--preview", action="store_true", help="Serve a live preview after the build")

    sub.add_parser("cleanup", help="Kill anything bound to the preview port range")

    reap = sub.add_parser("reap", help="Delete expired job directories")
    reap.add_argument(
        "--max-age-hours",
        type=float,
        default=None,
        help="Retention window in hours (default: configured retention)",
    )

    logs = sub.add_parser("logs", help="Print a job's build log from disk")
    logs.add_argument("job_id", help="Job id printed by `appforge build`")

    config = sub.add_parser("config", help="Write the effective configuration as JSON")
    config.add_argument(
        "--output", "-o",
        default=None,
        help="Destination file (default: <cache-dir>/config.json)",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for ``appforge`` and ``python -m appforge``."""
    args = build_parser().parse_args(argv)

    config = Config.load(Path(args.config)) if args.config else Config.from_env()
    if args.cache_dir:
        config.cache_dir = Path(args.cache_dir)

    if args.command == "build":
        code = asyncio.run(_run_build(config, args))
    elif args.command == "cleanup":
        code = asyncio.run(_run_cleanup(config))
    elif args.command == "logs":
        code = _run_logs(config, args.job_id)
    elif args.command == "config":
        code = _run_config(config, args.output)
    else:
        code = _run_reap(config, args.max_age_hours)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
