"""Pydantic v2 models shared by the build orchestrator and preview manager."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class BuildTarget(str, Enum):
    """Platform the generated app is aimed at."""
    WEB = "web"
    IOS = "ios"
    ANDROID = "android"
    MULTI = "multi"


class JobStatus(str, Enum):
    """Lifecycle of a build job: queued -> running -> terminal."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED})


class LogStatus(str, Enum):
    """Severity of a build log entry."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


class PreviewStatus(str, Enum):
    """Lifecycle of a preview server entry."""
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Build jobs
# ---------------------------------------------------------------------------

class BuildJob(BaseModel):
    """One prompt-to-project generation request."""
    job_id: str = Field(..., description="Opaque unique id")
    user_id: str = Field(..., description="Owner of the job")
    prompt: str = Field(..., description="Natural-language description of the app")
    target: BuildTarget = Field(default=BuildTarget.WEB)
    status: JobStatus = Field(default=JobStatus.QUEUED)
    started_at: float = Field(..., description="Creation time (epoch seconds)")
    running_at: Optional[float] = Field(default=None, description="When the dispatcher promoted the job")
    completed_at: Optional[float] = Field(default=None, description="Set iff the status is terminal")
    error: Optional[str] = Field(default=None)
    blueprint: Optional[dict[str, Any]] = Field(default=None)
    output_path: Optional[Path] = Field(default=None, description="Root of the generated files")
    file_count: int = Field(default=0, ge=0)
    artifacts: dict[str, Any] = Field(default_factory=dict)


class BuildLog(BaseModel):
    """An append-only progress event tied to a job."""
    step: str = Field(..., description="Short tag, e.g. 'blueprint' or 'codegen'")
    timestamp: float = Field(..., description="Epoch seconds; non-decreasing per job")
    status: LogStatus = Field(default=LogStatus.INFO)
    detail: str = Field(default="")
    progress: Optional[int] = Field(default=None, ge=0, le=100)


class GeneratedProject(BaseModel):
    """Output of the code generator: relative path -> file content."""
    files: dict[str, str | bytes] = Field(default_factory=dict)


class StreamEvent(BaseModel):
    """One push-delivery message for a job's event stream."""
    type: Literal["log", "status", "done", "error"]
    data: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Preview servers
# ---------------------------------------------------------------------------

class PreviewInfo(BaseModel):
    """Read-only snapshot of a preview server registry entry."""
    job_id: str
    port: Optional[int] = None
    url: Optional[str] = None
    status: PreviewStatus
    started_at: float
    pid: Optional[int] = None
    error: Optional[str] = None
    retries: int = 0
