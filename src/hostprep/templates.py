"""Jinja2 rendering for files hostprep manages on the host."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be loaded or rendered."""


@dataclass(slots=True)
class TemplateEngine:
    """Render packaged templates, optionally shadowed by an override directory."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and override_dir.is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("hostprep", "templates"))
        environment = Environment(  # noqa: S701 - renders config files, not HTML
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render {template_name}: {exc}") from exc


__all__ = ["TemplateEngine", "TemplateRenderError"]
