"""Blueprint helpers.

A blueprint is the structured description of the app to generate, produced by
an external generator.  The orchestrator treats it as an opaque dict and only
reads the page and entity counts for its progress log.
"""

from __future__ import annotations

from typing import Any

from appforge.models import BuildTarget

FALLBACK_APP_NAME = "My App"


def fallback_blueprint(target: BuildTarget | str, reason: str) -> dict[str, Any]:
    """Minimal single-page blueprint used when the generator is unavailable."""
    target_value = target.value if isinstance(target, BuildTarget) else str(target)
    return {
        "appName": FALLBACK_APP_NAME,
        "target": target_value,
        "pages": [
            {
                "id": "home",
                "title": "Home",
                "route": "/",
                "layout": "landing",
                "sections": [{"type": "hero", "title": "Welcome"}],
            }
        ],
        "dataModel": [],
        "authRequired": False,
        "notes": f"Fallback blueprint due to: {reason}",
    }


def blueprint_summary(blueprint: dict[str, Any]) -> tuple[str, int, int]:
    """Return ``(app_name, page_count, entity_count)`` for logging.

    Missing or malformed keys count as zero rather than raising.
    """
    app_name = str(blueprint.get("appName") or FALLBACK_APP_NAME)
    pages = blueprint.get("pages")
    entities = blueprint.get("dataModel")
    page_count = len(pages) if isinstance(pages, list) else 0
    entity_count = len(entities) if isinstance(entities, list) else 0
    return app_name, page_count, entity_count
