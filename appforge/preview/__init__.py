"""Preview servers: port allocation, startup classification and lifecycle."""

from .manager import PreviewServerManager
from .ports import PortAllocator
from .signatures import StartupSignal, classify_output

__all__ = [
    "PortAllocator",
    "PreviewServerManager",
    "StartupSignal",
    "classify_output",
]
