"""Theme catalog and installer."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum

from ..errors import CommandError, ParseError, ThemeResolutionError
from ..models import ThemeDescriptor
from ..parsers import parse_theme_list
from ..providers.wpcli import WPCli
from ..state import StateRegistry

LOGGER = logging.getLogger(__name__)


class ThemeSource(str, Enum):
    """Where an applied theme came from."""

    ALREADY_INSTALLED = "already-installed"
    CATALOG_URL = "catalog-url"
    REPOSITORY = "repository"
    FALLBACK = "fallback"


@dataclass(frozen=True, slots=True)
class ThemeApplyResult:
    """Outcome of :meth:`ThemeInstaller.apply`."""

    slug: str
    source: ThemeSource


@dataclass(slots=True)
class ThemeCatalog:
    """Theme rows stored in ``themes.yml``."""

    registry: StateRegistry
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def list_themes(self) -> list[ThemeDescriptor]:
        """Return every catalog row."""
        raw = self.registry.read_themes().get("themes", [])
        if not isinstance(raw, list):
            return []
        return [
            ThemeDescriptor.from_mapping(item)
            for item in raw
            if isinstance(item, dict) and item.get("slug")
        ]

    def get(self, slug: str) -> ThemeDescriptor | None:
        """Return the active descriptor for *slug*, or ``None``."""
        for theme in self.list_themes():
            if theme.slug == slug and theme.active:
                return theme
        return None

    def upsert(self, descriptor: ThemeDescriptor) -> None:
        """Add or replace the row keyed by ``descriptor.slug``."""
        with self._lock:
            rows = [t for t in self.list_themes() if t.slug != descriptor.slug]
            rows.append(descriptor)
            self.registry.write_themes(t.to_dict() for t in rows)

    def increment_usage(self, slug: str) -> int:
        """Bump the usage counter for *slug* and return the new value."""
        with self._lock:
            rows = self.list_themes()
            count = 0
            updated: list[ThemeDescriptor] = []
            for theme in rows:
                if theme.slug == slug:
                    theme = replace(theme, usage_count=theme.usage_count + 1)
                    count = theme.usage_count
                updated.append(theme)
            self.registry.write_themes(t.to_dict() for t in updated)
        return count


@dataclass(slots=True)
class ThemeInstaller:
    """Install and activate themes inside a site container."""

    wp: WPCli
    catalog: ThemeCatalog

    def installed_themes(self, ref: str) -> set[str]:
        """Return theme names installed in *ref*."""
        result = self.wp.run(ref, ["theme", "list", "--field=name", "--format=csv"])
        return parse_theme_list(result.stdout)

    def apply(self, ref: str, slug: str) -> ThemeApplyResult:
        """Install (when needed) and activate the catalog theme *slug*.

        When the catalog path fails, installing *slug* from the public
        repository is tried once; if that also fails the catalog-path error is
        raised as the cause of :class:`ThemeResolutionError`.
        """
        descriptor = self.catalog.get(slug)
        if descriptor is None:
            raise ThemeResolutionError(f"Theme '{slug}' is not an active catalog entry.")

        try:
            source = self._install_from_catalog(ref, descriptor)
            self.wp.run(ref, ["theme", "activate", descriptor.slug])
        except (CommandError, ParseError) as original:
            LOGGER.warning("catalog install of %s failed on %s: %s", slug, ref, original)
            try:
                self.wp.run(ref, ["theme", "install", descriptor.slug])
                self.wp.run(ref, ["theme", "activate", descriptor.slug])
            except CommandError as fallback_error:
                LOGGER.error("fallback install of %s failed on %s: %s", slug, ref, fallback_error)
                raise ThemeResolutionError(
                    f"Could not install theme '{slug}': {original}"
                ) from original
            source = ThemeSource.FALLBACK

        self.catalog.increment_usage(descriptor.slug)
        LOGGER.info("theme %s active on %s (%s)", descriptor.slug, ref, source.value)
        return ThemeApplyResult(slug=descriptor.slug, source=source)

    def _install_from_catalog(self, ref: str, descriptor: ThemeDescriptor) -> ThemeSource:
        if descriptor.slug in self.installed_themes(ref):
            return ThemeSource.ALREADY_INSTALLED
        if descriptor.download_url:
            self.wp.run(ref, ["theme", "install", descriptor.download_url])
            return ThemeSource.CATALOG_URL
        self.wp.run(ref, ["theme", "install", descriptor.slug])
        return ThemeSource.REPOSITORY


__all__ = ["ThemeApplyResult", "ThemeCatalog", "ThemeInstaller", "ThemeSource"]
