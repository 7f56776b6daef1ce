"""Placeholder substitution for service configuration documents.

Templates are plain YAML with ``{{NAME}}`` placeholders. Rendering is literal
substring replacement: values are inserted verbatim, without quoting or
escaping, so a value must never contain placeholder syntax itself.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from importlib import resources
from pathlib import Path

from .errors import ConfigRenderError

TEMPLATE_PACKAGE = "ephemeral_cluster.data"
TEMPLATE_SUBDIR = "templates"

AUTH_TEMPLATE = "auth.yaml"
PROXY_TEMPLATE = "proxy.yaml"
SSH_TEMPLATE = "ssh.yaml"


def placeholder(name: str) -> str:
    """Return the placeholder token for *name*."""
    return "{{" + name + "}}"


def render_template(template: str, values: Mapping[str, object]) -> str:
    """Replace every ``{{NAME}}`` in *template* with ``values[NAME]``."""
    rendered = template
    for name, value in values.items():
        rendered = rendered.replace(placeholder(name), str(value))
    return rendered


@dataclass(slots=True)
class TemplateEngine:
    """Load named templates from an override directory or the packaged set."""

    override_dir: Path | None = None

    @classmethod
    def with_overrides(cls, override_dir: str | Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found under *override_dir*."""
        return cls(Path(override_dir).expanduser() if override_dir else None)

    def load(self, name: str) -> str:
        """Return the raw text of template *name*."""
        if self.override_dir is not None:
            candidate = self.override_dir / name
            if candidate.is_file():
                try:
                    return candidate.read_text(encoding="utf-8")
                except OSError as exc:
                    raise ConfigRenderError(f"Failed to read template {candidate}: {exc}") from exc

        resource = resources.files(TEMPLATE_PACKAGE).joinpath(TEMPLATE_SUBDIR).joinpath(name)
        try:
            return resource.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigRenderError(f"Unknown configuration template '{name}'.") from exc

    def render_to_string(self, name: str, values: Mapping[str, object]) -> str:
        """Render template *name* with *values*."""
        return render_template(self.load(name), values)


__all__ = [
    "AUTH_TEMPLATE",
    "PROXY_TEMPLATE",
    "SSH_TEMPLATE",
    "TemplateEngine",
    "placeholder",
    "render_template",
]
