"""Health probing, debounced monitoring and alert delivery."""
from __future__ import annotations

from .alerts import AlertDispatcher, LoggingNotifier, Notifier, SiteAlert
from .monitor import CheckResult, HealthMonitor, SweepGuard, SweepReport, next_state
from .probe import HealthProbe, ProbeOutcome

__all__ = [
    "AlertDispatcher",
    "CheckResult",
    "HealthMonitor",
    "HealthProbe",
    "LoggingNotifier",
    "Notifier",
    "ProbeOutcome",
    "SiteAlert",
    "SweepGuard",
    "SweepReport",
    "next_state",
]
