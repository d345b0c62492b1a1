"""State management helpers for sitectl."""
from __future__ import annotations

from .registry import StateRegistry, StateRegistryError
from .store import RegistrySiteStore, SiteStore

__all__ = ["RegistrySiteStore", "SiteStore", "StateRegistry", "StateRegistryError"]
