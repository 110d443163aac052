"""Jinja2-backed reference code generator.

Turns a blueprint into the file map of a minimal Next.js (app router) project
that ``next dev`` can serve.  Real deployments plug in their own generator;
this one keeps the pipeline runnable end to end without external services.
"""

from __future__ import annotations

import json
import re
from typing import Any

from jinja2 import Environment, select_autoescape

from appforge.builder.blueprint import FALLBACK_APP_NAME
from appforge.errors import GenerationError
from appforge.models import GeneratedProject
from appforge.utils import sanitize_name

# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

_NEXT_CONFIG = """\
/** @type {import('next').NextConfig} */
const nextConfig = {
  reactStrictMode: true,
};

module.exports = nextConfig;
"""

_GITIGNORE = """\
node_modules/
.next/
out/
*.log
.env*.local
"""

_README = """\
# {{ app_name }}

{{ description }}

## Getting started

```bash
npm install
npm run dev
```

## Pages

{% for page in pages %}
- `{{ page.route }}` - {{ page.title }}
{% endfor %}
{% if entities %}

## Data model

{% for entity in entities %}
- {{ entity }}
{% endfor %}
{% endif %}
"""

_LAYOUT = """\
import type { Metadata } from "next";

export const metadata: Metadata = {
  title: {{ app_name | tojson }},
  description: {{ description | tojson }},
};

export default function RootLayout({ children }: { children: React.ReactNode }) {
  return (
    <html lang="en">
      <body>
        <nav>
{% for page in pages %}
          <a href="{{ page.route }}">{{ page.title | jsx_text }}</a>
{% endfor %}
        </nav>
        <main>{children}</main>
      </body>
    </html>
  );
}
"""

_PAGE = """\
// Generated from blueprint page {{ page.id | tojson }}
export default function {{ page.component }}() {
  return (
    <section>
      <h1>{{ page.title | jsx_text }}</h1>
{% for section in page.sections %}
      <div data-section="{{ section.type | slugify }}">
{% if section.title %}
        <h2>{{ section.title | jsx_text }}</h2>
{% endif %}
{% if section.description %}
        <p>{{ section.description | jsx_text }}</p>
{% endif %}
{% for field in section.fields %}
        <label>{{ field | jsx_text }} <input name="{{ field | slugify }}" /></label>
{% endfor %}
      </div>
{% else %}
      <p>Page content goes here.</p>
{% endfor %}
    </section>
  );
}
"""

_TSCONFIG: dict[str, Any] = {
    "compilerOptions": {
        "target": "ES2017",
        "lib": ["dom", "dom.iterable", "esnext"],
        "allowJs": True,
        "skipLibCheck": True,
        "strict": True,
        "noEmit": True,
        "esModuleInterop": True,
        "module": "esnext",
        "moduleResolution": "bundler",
        "resolveJsonModule": True,
        "isolatedModules": True,
        "jsx": "preserve",
        "incremental": True,
    },
    "include": ["next-env.d.ts", "**/*.ts", "**/*.tsx"],
    "exclude": ["node_modules"],
}


# ---------------------------------------------------------------------------
# TemplateCodeGenerator
# ---------------------------------------------------------------------------


class TemplateCodeGenerator:
    """Renders a blueprint into a Next.js project file map.

    Attributes:
        dependencies: ``package.json`` runtime dependencies written into every
            generated project.
    """

    def __init__(self, dependencies: dict[str, str] | None = None) -> None:
        self.dependencies = dependencies or {
            "next": "^14.2.0",
            "react": "^18.3.0",
            "react-dom": "^18.3.0",
        }
        self.env = Environment(
            autoescape=select_autoescape([], default_for_string=False),
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["slugify"] = _slugify_filter
        self.env.filters["jsx_text"] = _jsx_text_filter

    def render_string(self, template_string: str, context: dict[str, Any]) -> str:
        return self.env.from_string(template_string).render(**context)

    def generate(self, job_id: str, blueprint: dict[str, Any]) -> GeneratedProject:
        """Produce the project files for *blueprint*.

        Raises:
            GenerationError: If the blueprint has no usable pages.
        """
        pages = self._normalise_pages(job_id, blueprint.get("pages"))
        app_name = str(blueprint.get("appName") or FALLBACK_APP_NAME)
        description = str(blueprint.get("notes") or f"{app_name} - generated by AppForge")
        entities = [
            entity.get("name", "entity") if isinstance(entity, dict) else str(entity)
            for entity in blueprint.get("dataModel") or []
        ]
        context = {
            "app_name": app_name,
            "description": description,
            "pages": pages,
            "entities": entities,
        }

        files: dict[str, str | bytes] = {
            "package.json": self._package_json(app_name, description),
            "next.config.js": _NEXT_CONFIG,
            "tsconfig.json": json.dumps(_TSCONFIG, indent=2) + "\n",
            ".gitignore": _GITIGNORE,
            "README.md": self.render_string(_README, context),
            "src/app/layout.tsx": self.render_string(_LAYOUT, context),
        }

        home, *others = pages
        files["src/app/page.tsx"] = self.render_string(_PAGE, {"page": home})
        for page in others:
            files[f"src/app/{page['slug']}/page.tsx"] = self.render_string(_PAGE, {"page": page})

        return GeneratedProject(files=files)

    # -- Helpers -----------------------------------------------------------

    def _package_json(self, app_name: str, description: str) -> str:
        manifest = {
            "name": sanitize_name(app_name) or "generated-app",
            "version": "0.1.0",
            "private": True,
            "description": description,
            "scripts": {
                "dev": "next dev",
                "build": "next build",
                "start": "next start",
            },
            "dependencies": dict(self.dependencies),
            "devDependencies": {
                "@types/node": "^20",
                "@types/react": "^18",
                "typescript": "^5",
            },
        }
        return json.dumps(manifest, indent=2) + "\n"

    @staticmethod
    def _normalise_pages(job_id: str, raw_pages: Any) -> list[dict[str, Any]]:
        if not isinstance(raw_pages, list) or not raw_pages:
            raise GenerationError(job_id, "Blueprint has no pages to generate")

        pages: list[dict[str, Any]] = []
        seen: set[str] = set()
        for index, raw in enumerate(raw_pages):
            if not isinstance(raw, dict):
                raise GenerationError(job_id, f"Blueprint page #{index} is not an object")
            page_id = str(raw.get("id") or f"page{index}")
            title = str(raw.get("title") or page_id.title())
            route = str(raw.get("route") or f"/{page_id}")

            segments = [sanitize_name(part) for part in route.strip("/").split("/")]
            slug = "/".join(part for part in segments if part) or sanitize_name(page_id) or f"page{index}"
            if index > 0 and slug in seen:
                slug = f"{slug}-{index}"
            seen.add(slug)

            sections = []
            for section in raw.get("sections") or []:
                if isinstance(section, dict):
                    sections.append(
                        {
                            "type": str(section.get("type", "content")),
                            "title": section.get("title"),
                            "description": section.get("description"),
                            "fields": [str(f) for f in section.get("fields") or []],
                        }
                    )

            pages.append(
                {
                    "id": page_id,
                    "title": title,
                    "route": "/" if index == 0 else f"/{slug}",
                    "slug": slug,
                    "component": _pascal_case(page_id) + "Page",
                    "sections": sections,
                }
            )
        return pages


# ---------------------------------------------------------------------------
# Jinja2 filters
# ---------------------------------------------------------------------------


def _slugify_filter(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(value).lower().strip())
    return slug.strip("-")


def _jsx_text_filter(value: Any) -> str:
    """Escape characters that JSX would treat as markup or expressions."""
    text = str(value)
    for char, entity in (("&", "&amp;"), ("<", "&lt;"), (">", "&gt;"), ("{", "&#123;"), ("}", "&#125;")):
        text = text.replace(char, entity)
    return text


def _pascal_case(value: str) -> str:
    parts = re.split(r"[^A-Za-z0-9]+", value)
    name = "".join(word[:1].upper() + word[1:] for word in parts if word)
    if not name or name[0].isdigit():
        name = f"Generated{name}"
    return name
