"""Helpers for interacting with the sitectl state registry.

The registry directory (``/var/lib/sitectl/registry`` by default) stores YAML
artifacts such as ``sites.yml``, ``themes.yml``, ``ports.yml`` and ``monitor.yml`` plus
append-only JSONL series under ``health/``. This module provides lightweight
helpers to read and write those files using atomic operations.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

SITES_FILE = "sites.yml"
THEMES_FILE = "themes.yml"
PORTS_FILE = "ports.yml"
MONITOR_FILE = "monitor.yml"
HEALTH_DIR = "health"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    def append_jsonl(self, name: str, record: Mapping[str, object]) -> None:
        """Append one JSON line to *name*, creating parent directories."""
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(dict(record), sort_keys=True) + "\n")

    def read_jsonl(self, name: str) -> list[dict[str, Any]]:
        """Return every JSON object stored in *name* (empty list if missing)."""
        path = self.path_for(name)
        if not path.exists():
            return []
        rows: list[dict[str, Any]] = []
        for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                value = json.loads(line)
            except json.JSONDecodeError as exc:
                raise StateRegistryError(f"Invalid JSON in {path}:{number}: {exc}") from exc
            if isinstance(value, dict):
                rows.append(value)
        return rows

    # Convenience wrappers -------------------------------------------------
    def read_sites(self) -> Mapping[str, object]:
        """Return the contents of ``sites.yml`` (empty mapping if missing)."""
        value = self.read(SITES_FILE, default={"sites": []})
        return value if isinstance(value, Mapping) else {"sites": []}

    def read_ports(self) -> Mapping[str, object]:
        """Return the contents of ``ports.yml`` (empty mapping if missing)."""
        value = self.read(PORTS_FILE, default={"ports": []})
        return value if isinstance(value, Mapping) else {"ports": []}

    def read_themes(self) -> Mapping[str, object]:
        """Return the contents of ``themes.yml`` (empty mapping if missing)."""
        value = self.read(THEMES_FILE, default={"themes": []})
        return value if isinstance(value, Mapping) else {"themes": []}

    def write_sites(self, sites: Iterable[object]) -> None:
        """Persist site entries to ``sites.yml``."""
        self.write(SITES_FILE, {"sites": list(sites)})

    def write_ports(self, ports: Iterable[object]) -> None:
        """Persist port reservations to ``ports.yml``."""
        self.write(PORTS_FILE, {"ports": list(ports)})

    def write_themes(self, themes: Iterable[object]) -> None:
        """Persist catalog rows to ``themes.yml``."""
        self.write(THEMES_FILE, {"themes": list(themes)})

    def read_monitor(self) -> dict[str, Any]:
        """Return the contents of ``monitor.yml`` (empty mapping if missing)."""
        value = self.read(MONITOR_FILE, default={})
        return dict(value) if isinstance(value, Mapping) else {}

    def write_monitor(self, state: Mapping[str, object]) -> None:
        """Persist health monitor bookkeeping to ``monitor.yml``."""
        self.write(MONITOR_FILE, dict(state))

    # Site helpers -------------------------------------------------
    def list_sites(self) -> list[dict[str, Any]]:
        """Return every site mapping in ``sites.yml``."""
        raw_sites = self.read_sites().get("sites", [])
        if not isinstance(raw_sites, list):
            return []
        return [dict(entry) for entry in raw_sites if isinstance(entry, Mapping)]

    def get_site(self, slug: str) -> dict[str, Any] | None:
        """Return the site mapping for *slug* if registered."""
        normalized = _normalize_slug(slug)
        for entry in self.list_sites():
            if entry.get("site_slug") == normalized:
                return entry
        return None

    def upsert_site(self, entry: Mapping[str, object]) -> None:
        """Add or replace the site entry keyed by ``site_slug``."""
        slug = _normalize_slug(str(entry.get("site_slug", "")))
        sites: list[object] = []
        replaced = False
        for existing in self.list_sites():
            if existing.get("site_slug") == slug:
                if replaced:
                    continue
                sites.append(dict(entry))
                replaced = True
            else:
                sites.append(existing)
        if not replaced:
            sites.append(dict(entry))
        self.write_sites(sites)

    def update_site(self, slug: str, updates: Mapping[str, object]) -> None:
        """Apply *updates* to the registered site *slug*."""
        normalized = _normalize_slug(slug)
        sites: list[object] = []
        found = False
        for entry in self.list_sites():
            if entry.get("site_slug") == normalized:
                merged = dict(entry)
                merged.update(updates)
                sites.append(merged)
                found = True
            else:
                sites.append(entry)
        if not found:
            raise StateRegistryError(f"Site '{normalized}' not found in registry")
        self.write_sites(sites)

    def remove_site(self, slug: str) -> None:
        """Remove the site *slug* from the registry."""
        normalized = _normalize_slug(slug)
        entries = self.list_sites()
        sites = [entry for entry in entries if entry.get("site_slug") != normalized]
        if len(sites) == len(entries):
            raise StateRegistryError(f"Site '{normalized}' not found in registry")
        self.write_sites(sites)

    def health_series_name(self, slug: str) -> str:
        """Return the registry-relative name of the health series for *slug*."""
        return f"{HEALTH_DIR}/{_normalize_slug(slug)}.jsonl"


def _normalize_slug(slug: str) -> str:
    normalized = slug.strip()
    if not normalized:
        raise StateRegistryError("Site slug must be a non-empty string.")
    return normalized


__all__ = ["StateRegistry", "StateRegistryError"]
