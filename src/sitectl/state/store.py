"""Persistence of site instances and their health series."""
from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from ..models import HealthRecord, SiteInstance
from .registry import StateRegistry, StateRegistryError


class SiteStore(Protocol):
    """Storage contract used by provisioning and monitoring code."""

    def get(self, slug: str) -> SiteInstance | None:
        """Return the instance for *slug*, if any."""
        ...

    def save(self, site: SiteInstance) -> None:
        """Insert or replace *site* keyed by its slug."""
        ...

    def modify(self, slug: str, mutate: Callable[[SiteInstance], None]) -> SiteInstance:
        """Apply *mutate* to the stored instance atomically and return it."""
        ...

    def remove(self, slug: str) -> None:
        """Delete the instance for *slug*."""
        ...

    def list_sites(self, *, active_only: bool = False) -> list[SiteInstance]:
        """Return stored instances."""
        ...

    def append_health(self, record: HealthRecord) -> None:
        """Append one health observation."""
        ...

    def health_history(self, slug: str, *, limit: int | None = None) -> list[HealthRecord]:
        """Return health observations, oldest first."""
        ...


@dataclass(slots=True)
class RegistrySiteStore:
    """:class:`SiteStore` backed by ``sites.yml`` and ``health/<slug>.jsonl``.

    A process-wide lock serialises read-modify-write cycles so concurrent
    health checks never lose each other's updates.
    """

    registry: StateRegistry
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def get(self, slug: str) -> SiteInstance | None:
        """Return the instance for *slug*, if any."""
        with self._lock:
            entry = self.registry.get_site(slug)
        return SiteInstance.from_mapping(entry) if entry else None

    def save(self, site: SiteInstance) -> None:
        """Insert or replace *site* keyed by its slug."""
        with self._lock:
            self.registry.upsert_site(site.to_dict())

    def modify(self, slug: str, mutate: Callable[[SiteInstance], None]) -> SiteInstance:
        """Apply *mutate* to the stored instance and persist the result."""
        with self._lock:
            entry = self.registry.get_site(slug)
            if entry is None:
                raise StateRegistryError(f"Site '{slug}' not found in registry")
            site = SiteInstance.from_mapping(entry)
            mutate(site)
            self.registry.upsert_site(site.to_dict())
            return site

    def remove(self, slug: str) -> None:
        """Delete the instance for *slug*."""
        with self._lock:
            self.registry.remove_site(slug)

    def list_sites(self, *, active_only: bool = False) -> list[SiteInstance]:
        """Return stored instances sorted by slug."""
        with self._lock:
            entries = self.registry.list_sites()
        sites = [SiteInstance.from_mapping(entry) for entry in entries if entry.get("site_slug")]
        if active_only:
            sites = [site for site in sites if site.active]
        return sorted(sites, key=lambda site: site.site_slug)

    def append_health(self, record: HealthRecord) -> None:
        """Append one health observation to the site's series."""
        with self._lock:
            self.registry.append_jsonl(
                self.registry.health_series_name(record.site_slug), record.to_dict()
            )

    def health_history(self, slug: str, *, limit: int | None = None) -> list[HealthRecord]:
        """Return health observations for *slug*, oldest first."""
        with self._lock:
            rows = self.registry.read_jsonl(self.registry.health_series_name(slug))
        records = [HealthRecord.from_mapping(row) for row in rows]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records


__all__ = ["RegistrySiteStore", "SiteStore"]
