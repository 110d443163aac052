"""AppForge builder module.

Runs the prompt -> blueprint -> code -> disk pipeline behind a bounded queue.

Key classes:
    BuildOrchestrator     - Job registry, dispatcher, pipeline and log stream
    TemplateCodeGenerator - Jinja2 reference generator for Next.js projects
    BlueprintGenerator    - Protocol for the external blueprint collaborator
    CodeGenerator         - Protocol for the external code collaborator
"""

from .blueprint import blueprint_summary, fallback_blueprint
from .codegen import TemplateCodeGenerator
from .collaborators import BlueprintGenerator, CodeGenerator
from .orchestrator import BuildOrchestrator, reap_stale_directories

__all__ = [
    # Orchestration
    "BuildOrchestrator",
    "reap_stale_directories",
    # Collaborators
    "BlueprintGenerator",
    "CodeGenerator",
    "TemplateCodeGenerator",
    # Blueprints
    "fallback_blueprint",
    "blueprint_summary",
]
