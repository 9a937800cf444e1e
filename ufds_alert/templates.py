"""Plain-text mail body rendering backed by Jinja2."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import jinja2

TEMPLATE_DIR = Path(__file__).resolve().parent / "tpl"
TEMPLATE_SUFFIX = ".txt"


def format_timestamp(value: Any) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%Y-%m-%d %H:%M:%S UTC")
    return str(value)


class TemplateRenderer:
    """Render named templates, compiling each one at most once.

    ``cloud_name`` and ``company`` are added to the variables of every render.
    Missing templates and template errors propagate to the caller.
    """

    def __init__(
        self,
        directory: Optional[Path] = None,
        *,
        cloud_name: str,
        company: str,
    ) -> None:
        self._directory = directory or TEMPLATE_DIR
        self._ambient = {"cloud_name": cloud_name, "company": company}
        self._env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(self._directory)),
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._env.filters["timestamp"] = format_timestamp
        self._cache: Dict[str, jinja2.Template] = {}

    @property
    def directory(self) -> Path:
        return self._directory

    def is_cached(self, name: str) -> bool:
        return name in self._cache

    def _compile(self, name: str) -> jinja2.Template:
        template = self._cache.get(name)
        if template is None:
            template = self._env.get_template(name + TEMPLATE_SUFFIX)
            self._cache[name] = template
        return template

    def render(self, name: str, variables: Mapping[str, Any] | None = None) -> str:
        context = dict(variables or {})
        context.update(self._ambient)
        return self._compile(name).render(context)


__all__ = ["TEMPLATE_DIR", "TemplateRenderer", "format_timestamp"]
