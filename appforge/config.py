"""AppForge configuration.

Typed configuration for the build orchestrator and the preview servers.  All
settings use Pydantic v2 models so they are validated at construction time and
can be serialised to/from JSON or read from ``APPFORGE_*`` environment
variables.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator


class PortRangeConfig(BaseModel):
    """Inclusive port range handed out to preview servers."""

    min_port: int = Field(default=4110, ge=1, le=65535)
    max_port: int = Field(default=4990, ge=1, le=65535)
    max_attempts: int = Field(
        default=100, ge=1, description="Rejection-sampling attempts before giving up"
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "PortRangeConfig":
        if self.min_port > self.max_port:
            raise ValueError(
                f"min_port ({self.min_port}) must not exceed max_port ({self.max_port})"
            )
        return self

    @property
    def size(self) -> int:
        return self.max_port - self.min_port + 1


class BuildConfig(BaseModel):
    """Tuning knobs for the build queue and pipeline."""

    max_concurrent_builds: int = Field(
        default=3, ge=1, description="Maximum jobs in the running state at once"
    )
    build_timeout: float = Field(
        default=300.0, gt=0, description="Wall-clock budget for one pipeline run in seconds"
    )
    retention_hours: float = Field(
        default=24.0, gt=0, description="How long terminal jobs are kept before reaping"
    )
    reaper_interval: float = Field(default=3600.0, gt=0)
    dispatch_interval: float = Field(
        default=1.0, gt=0, description="Upper bound between dispatcher re-checks"
    )

    @property
    def retention_seconds(self) -> float:
        return self.retention_hours * 3600.0


class PreviewConfig(BaseModel):
    """Settings for the supervised dev-server children."""

    host: str = Field(default="localhost", description="Host used in preview URLs")
    bind_host: str = Field(default="0.0.0.0", description="Interface the dev server binds")
    startup_timeout: float = Field(default=120.0, gt=0)
    idle_timeout: float = Field(
        default=300.0, gt=0, description="Lifetime measured from start, not last access"
    )
    kill_grace: float = Field(default=5.0, ge=0)
    install_timeout: float = Field(default=600.0, gt=0)
    health_timeout: float = Field(default=3.0, gt=0)
    health_check_interval: float = Field(
        default=120.0, ge=0, description="Seconds between health sweeps; 0 disables the sweep"
    )
    start_retries: int = Field(
        default=3, ge=0, description="Extra start attempts on a new port after a runtime failure"
    )
    retry_delay: float = Field(default=2.0, ge=0)
    manifest_file: str = Field(default="package.json")
    dependencies_dir: str = Field(default="node_modules")
    dev_command: list[str] = Field(
        default_factory=lambda: ["npx", "next", "dev", "-p", "{port}", "-H", "{bind_host}"],
        description="Argv template; {port} and {bind_host} are substituted",
    )
    install_command: list[str] = Field(default_factory=lambda: ["npm", "install"])
    share_dependencies: bool = Field(
        default=False, description="Warm and symlink a shared dependency cache"
    )
    shared_packages: dict[str, str] = Field(
        default_factory=lambda: {
            "next": "^15.1.6",
            "react": "^19.0.0",
            "react-dom": "^19.0.0",
            "typescript": "^5.7.2",
        }
    )


class Config(BaseModel):
    """Global AppForge configuration.

    Holds every tuneable parameter and the on-disk layout.  One job owns
    ``<cache_dir>/<job_id>/`` with a ``generated/`` tree for the project files
    and a ``logs/`` tree mirroring the in-memory build log.
    """

    cache_dir: Path = Field(default=Path("./.cache/appforge"))
    shared_deps_dir: Path = Field(default=Path("./.cache/shared"))
    ports: PortRangeConfig = Field(default_factory=PortRangeConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    preview: PreviewConfig = Field(default_factory=PreviewConfig)

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    def job_dir(self, job_id: str) -> Path:
        return self.cache_dir / job_id

    def generated_dir(self, job_id: str) -> Path:
        return self.job_dir(job_id) / "generated"

    def logs_dir(self, job_id: str) -> Path:
        return self.job_dir(job_id) / "logs"

    def log_file(self, job_id: str) -> Path:
        """Append-only JSON-lines mirror of a job's build log."""
        return self.logs_dir(job_id) / "build.log"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<cache_dir>/config.json``.

        Returns:
            The path where the file was written.
        """
        target = path or (self.cache_dir / "config.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            APPFORGE_CACHE_DIR, APPFORGE_SHARED_DEPS_DIR,
            APPFORGE_MIN_PORT, APPFORGE_MAX_PORT,
            APPFORGE_MAX_CONCURRENT_BUILDS, APPFORGE_BUILD_TIMEOUT,
            APPFORGE_RETENTION_HOURS, APPFORGE_PREVIEW_HOST,
            APPFORGE_STARTUP_TIMEOUT, APPFORGE_IDLE_TIMEOUT,
            APPFORGE_START_RETRIES, APPFORGE_HEALTH_CHECK_INTERVAL,
            APPFORGE_DEV_COMMAND (JSON list), APPFORGE_SHARE_DEPENDENCIES.
        """
        port_kwargs: dict[str, Any] = {}
        if os.environ.get("APPFORGE_MIN_PORT"):
            port_kwargs["min_port"] = int(os.environ["APPFORGE_MIN_PORT"])
        if os.environ.get("APPFORGE_MAX_PORT"):
            port_kwargs["max_port"] = int(os.environ["APPFORGE_MAX_PORT"])

        build_kwargs: dict[str, Any] = {}
        if os.environ.get("APPFORGE_MAX_CONCURRENT_BUILDS"):
            build_kwargs["max_concurrent_builds"] = int(os.environ["APPFORGE_MAX_CONCURRENT_BUILDS"])
        if os.environ.get("APPFORGE_BUILD_TIMEOUT"):
            build_kwargs["build_timeout"] = float(os.environ["APPFORGE_BUILD_TIMEOUT"])
        if os.environ.get("APPFORGE_RETENTION_HOURS"):
            build_kwargs["retention_hours"] = float(os.environ["APPFORGE_RETENTION_HOURS"])

        preview_kwargs: dict[str, Any] = {}
        if os.environ.get("APPFORGE_PREVIEW_HOST"):
            preview_kwargs["host"] = os.environ["APPFORGE_PREVIEW_HOST"]
        if os.environ.get("APPFORGE_STARTUP_TIMEOUT"):
            preview_kwargs["startup_timeout"] = float(os.environ["APPFORGE_STARTUP_TIMEOUT"])
        if os.environ.get("APPFORGE_IDLE_TIMEOUT"):
            preview_kwargs["idle_timeout"] = float(os.environ["APPFORGE_IDLE_TIMEOUT"])
        if os.environ.get("APPFORGE_START_RETRIES"):
            preview_kwargs["start_retries"] = int(os.environ["APPFORGE_START_RETRIES"])
        if os.environ.get("APPFORGE_HEALTH_CHECK_INTERVAL"):
            preview_kwargs["health_check_interval"] = float(os.environ["APPFORGE_HEALTH_CHECK_INTERVAL"])
        if os.environ.get("APPFORGE_DEV_COMMAND"):
            preview_kwargs["dev_command"] = json.loads(os.environ["APPFORGE_DEV_COMMAND"])
        if os.environ.get("APPFORGE_SHARE_DEPENDENCIES"):
            preview_kwargs["share_dependencies"] = (
                os.environ["APPFORGE_SHARE_DEPENDENCIES"].strip().lower() in ("1", "true", "yes")
            )

        return cls(
            cache_dir=Path(os.environ.get("APPFORGE_CACHE_DIR", "./.cache/appforge")),
            shared_deps_dir=Path(os.environ.get("APPFORGE_SHARED_DEPS_DIR", "./.cache/shared")),
            ports=PortRangeConfig(**port_kwargs),
            build=BuildConfig(**build_kwargs),
            preview=PreviewConfig(**preview_kwargs),
        )

    def ensure_directories(self) -> None:
        """Create the cache root before any job is created."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
