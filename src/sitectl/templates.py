"""Jinja2 template rendering with operator overrides.

Built-in templates ship in the ``resources`` directory beside this module.
An override directory (``templates_dir`` in config) is searched first, so an
operator can replace any template by placing a file at the same relative path.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent / "resources"


class TemplateEngine:
    """Render templates to strings or files."""

    def __init__(self, search_paths: list[Path]) -> None:
        """Create an environment searching *search_paths* in order."""
        loaders = [FileSystemLoader(str(path)) for path in search_paths]
        self._env = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers *override_dir* over built-in templates."""
        paths: list[Path] = []
        if override_dir is not None and Path(override_dir).is_dir():
            paths.append(Path(override_dir))
        paths.append(BUILTIN_TEMPLATES_DIR)
        return cls(paths)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        template = self._env.get_template(template_name)
        return template.render(**dict(context))

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination* atomically; return ``True`` when content changed."""
        rendered = self.render_to_string(template_name, context)
        destination = Path(destination)
        if destination.exists() and destination.read_text(encoding="utf-8") == rendered:
            os.chmod(destination, mode)
            return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, destination)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        return True


__all__ = ["BUILTIN_TEMPLATES_DIR", "TemplateEngine"]
