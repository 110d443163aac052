"""Startup classification for dev-server output.

Readiness is inferred from substrings in unstructured output.  Every rule
lives in :func:`classify_output` so the preview state machine never looks at
raw lines itself.
"""

from __future__ import annotations

from enum import Enum


class StartupSignal(str, Enum):
    READY = "ready"
    PORT_CONFLICT = "port_conflict"


READY_MARKERS = (
    "Ready in",
    "ready started server",
    "started server on",
    "compiled successfully",
    "Local:",
)

PORT_CONFLICT_MARKERS = (
    "eaddrinuse",
    "address already in use",
)

_BOUND_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0", "[::]", "[::1]")


def classify_output(stream: str, line: str, port: int | None = None) -> StartupSignal | None:
    """Map one output line to a startup signal, or ``None`` if it means nothing.

    Ready markers (or the bound ``host:port``) are only trusted on stdout;
    "address already in use" is only trusted on stderr.
    """
    if stream == "stdout":
        if any(marker in line for marker in READY_MARKERS):
            return StartupSignal.READY
        if port is not None and any(f"{host}:{port}" in line for host in _BOUND_HOSTS):
            return StartupSignal.READY
        return None

    if stream == "stderr":
        lowered = line.lower()
        if any(marker in lowered for marker in PORT_CONFLICT_MARKERS):
            return StartupSignal.PORT_CONFLICT
    return None
