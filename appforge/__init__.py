"""AppForge build and preview orchestration.

Turns prompts into generated Next.js projects through a bounded build queue
and serves each finished project from a supervised dev server on its own port.

Key classes:
    BuildOrchestrator     - Job queue, dispatcher and generation pipeline
    PreviewServerManager  - One supervised dev server per completed job
    PreviewGateway        - Facade for the transport layer
    AppForgeRuntime       - Wiring plus the shutdown hook
"""

from .builder import BuildOrchestrator, TemplateCodeGenerator
from .config import Config
from .gateway import PreviewGateway
from .preview import PortAllocator, PreviewServerManager
from .process import ProcessSupervisor
from .runtime import AppForgeRuntime

__version__ = "0.1.0"

__all__ = [
    "AppForgeRuntime",
    "BuildOrchestrator",
    "Config",
    "PortAllocator",
    "PreviewGateway",
    "PreviewServerManager",
    "ProcessSupervisor",
    "TemplateCodeGenerator",
]
