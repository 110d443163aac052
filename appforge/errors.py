"""Typed errors for the build and preview subsystem.

Pipeline failures derive from :class:`BuildError` and end up recorded on the
owning job.  Preview-start failures derive from :class:`PreviewError` and are
always raised to the caller after the port and child process have been
cleaned up, so a retry is always safe.
"""

from __future__ import annotations


class AppForgeError(Exception):
    """Base class for every error raised by ``appforge``."""


# ---------------------------------------------------------------------------
# Build pipeline
# ---------------------------------------------------------------------------


class BuildError(AppForgeError):
    """Raised when a build job cannot make progress."""

    def __init__(self, job_id: str | None, message: str) -> None:
        self.job_id = job_id
        super().__init__(message)


class GenerationError(BuildError):
    """The code generator failed.  Fatal to the job."""


class FallbackUsed(BuildError):
    """The blueprint step failed and a fallback blueprint was substituted.

    Never raised out of the pipeline; it only shapes the warning log line.
    """

    def __init__(self, job_id: str | None, reason: str) -> None:
        self.reason = reason
        super().__init__(job_id, f"Blueprint generation warning: {reason}")


class BuildTimeout(BuildError):
    """The pipeline did not reach a terminal status within its budget."""

    def __init__(self, job_id: str | None, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(job_id, f"Build timed out after {timeout:g}s")


class UnsafePathError(AppForgeError):
    """A relative path tried to escape the job's output directory."""


# ---------------------------------------------------------------------------
# Preview servers
# ---------------------------------------------------------------------------


class PreviewError(AppForgeError):
    """Raised when a preview server cannot be started."""

    def __init__(self, message: str, job_id: str | None = None) -> None:
        self.job_id = job_id
        super().__init__(message)


class JobNotReady(PreviewError):
    """A preview was requested for a job that has not completed."""


class JobNotFound(JobNotReady):
    """No job with the requested id exists in the registry."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Build {job_id} not found", job_id=job_id)


class MissingManifest(PreviewError):
    """The job's output directory is missing or has no runnable manifest."""


class DependencyInstallError(PreviewError):
    """The one-time dependency install before spawning failed."""


class PortExhausted(PreviewError):
    """No free port was found within the attempt budget."""

    def __init__(self, min_port: int, max_port: int, attempts: int) -> None:
        self.min_port = min_port
        self.max_port = max_port
        self.attempts = attempts
        super().__init__(
            f"No available ports in range {min_port}-{max_port} "
            f"after {attempts} attempts"
        )


class PortConflict(PreviewError):
    """Another process on the host grabbed the allocated port first."""

    def __init__(self, port: int, job_id: str | None = None) -> None:
        self.port = port
        super().__init__(
            f"Port {port} is already in use. Please try again.", job_id=job_id
        )


class StartupTimeout(PreviewError):
    """The child never produced a ready signature in time."""

    def __init__(self, message: str, timeout: float, job_id: str | None = None) -> None:
        self.timeout = timeout
        super().__init__(message, job_id=job_id)


class ProcessError(PreviewError):
    """Base class for OS-level child process failures."""


class ProcessSpawnError(ProcessError):
    """The OS refused to launch the child process."""


class ProcessCrashed(ProcessError):
    """The child exited before it signalled readiness."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        signal: int | None = None,
        job_id: str | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.signal = signal
        super().__init__(message, job_id=job_id)
