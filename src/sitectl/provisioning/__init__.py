"""Provisioning pipeline: network, database, container, bootstrap and themes."""
from __future__ import annotations

from .bootstrap import BootstrapAutomator, BootstrapResult
from .containers import LifecycleState, ReuseStatus, SiteContainerManager, SiteSpec
from .database import DatabaseProvisioner
from .network import NetworkManager
from .themes import ThemeApplyResult, ThemeCatalog, ThemeInstaller, ThemeSource

__all__ = [
    "BootstrapAutomator",
    "BootstrapResult",
    "DatabaseProvisioner",
    "LifecycleState",
    "NetworkManager",
    "ReuseStatus",
    "SiteContainerManager",
    "SiteSpec",
    "ThemeApplyResult",
    "ThemeCatalog",
    "ThemeInstaller",
    "ThemeSource",
]
