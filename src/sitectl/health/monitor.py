"""Debounced health monitoring of provisioned sites.

A site is only persisted as ``down`` after ``failure_threshold`` consecutive
failed probes; any non-down probe resets the counter. Every check appends one
:class:`~sitectl.models.HealthRecord` and alerts on a change to ``warning``
or ``down``.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime

from ..models import HealthRecord, HealthStatus, SiteInstance, utcnow
from ..state import SiteStore, StateRegistry
from .alerts import AlertDispatcher, SiteAlert
from .probe import HealthProbe, ProbeOutcome

LOGGER = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_INTERVAL = 300.0
DEFAULT_MAX_CONCURRENCY = 8
_ALERT_STATUSES = (HealthStatus.WARNING, HealthStatus.DOWN)


def next_state(
    previous_failed: int,
    outcome: ProbeOutcome,
    threshold: int = DEFAULT_FAILURE_THRESHOLD,
) -> tuple[HealthStatus, int]:
    """Return the persisted ``(status, failed_checks_count)`` after *outcome*."""
    failed = previous_failed + 1 if outcome.status is HealthStatus.DOWN else 0
    if failed >= threshold:
        return HealthStatus.DOWN, failed
    if outcome.status is HealthStatus.WARNING:
        return HealthStatus.WARNING, failed
    return HealthStatus.HEALTHY, failed


@dataclass(frozen=True, slots=True)
class CheckResult:
    """Outcome of :meth:`HealthMonitor.check_site`."""

    site_slug: str
    previous_status: HealthStatus
    status: HealthStatus
    failed_checks_count: int
    outcome: ProbeOutcome
    alerted: bool = False

    @property
    def changed(self) -> bool:
        """Return ``True`` when the persisted status changed."""
        return self.status is not self.previous_status

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "site_slug": self.site_slug,
            "previous_status": self.previous_status.value,
            "status": self.status.value,
            "failed_checks_count": self.failed_checks_count,
            "transport_failure": self.outcome.transport_failure,
            "response_time_ms": self.outcome.response_time_ms,
            "alerted": self.alerted,
            "error": self.outcome.error,
        }


@dataclass(slots=True)
class SweepReport:
    """Results of one :meth:`HealthMonitor.sweep`."""

    started_at: datetime
    finished_at: datetime | None = None
    results: list[CheckResult] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def checked(self) -> int:
        """Number of sites that completed a check."""
        return len(self.results)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "results": [result.to_dict() for result in self.results],
            "errors": dict(self.errors),
        }


class HealthMonitor:
    """Probe sites, debounce failures, persist history and raise alerts."""

    def __init__(
        self,
        store: SiteStore,
        probe: HealthProbe,
        *,
        alerts: AlertDispatcher | None = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        interval: float = DEFAULT_INTERVAL,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.probe = probe
        self.alerts = alerts
        self.failure_threshold = failure_threshold
        self.interval = interval
        self.max_concurrency = max(1, max_concurrency)
        self._clock = clock

    def check_site(self, site: SiteInstance) -> CheckResult:
        """Probe *site* once and persist the debounced result.

        The transition is computed from the stored counter inside the store's
        read-modify-write, not from the caller's copy of *site*.
        """
        outcome = self.probe.check(site)
        checked_at = self._clock()
        transition: dict[str, object] = {}

        def mutate(record: SiteInstance) -> None:
            status, failed = next_state(
                record.failed_checks_count, outcome, self.failure_threshold
            )
            transition.update(previous=record.health_status, status=status, failed=failed)
            record.health_status = status
            record.failed_checks_count = failed
            record.last_health_check = checked_at
            if not outcome.transport_failure:
                record.software_versions = outcome.software_versions
                record.resource_metrics = outcome.resource_metrics

        updated = self.store.modify(site.site_slug, mutate)
        previous_status = HealthStatus(transition["previous"])
        status = HealthStatus(transition["status"])
        failed = int(transition["failed"])  # type: ignore[call-overload]
        self.store.append_health(
            HealthRecord(
                site_slug=site.site_slug,
                status=status,
                checked_at=checked_at,
                response_time_ms=outcome.response_time_ms,
                resource_metrics=outcome.resource_metrics,
                software_versions=outcome.software_versions,
                failed_checks_count=failed,
            )
        )

        alerted = False
        if status is not previous_status and status in _ALERT_STATUSES:
            alerted = self._alert(updated, status, failed)
        LOGGER.debug(
            "health %s: %s -> %s (failed=%d)",
            site.site_slug,
            previous_status.value,
            status.value,
            failed,
        )
        return CheckResult(
            site_slug=site.site_slug,
            previous_status=previous_status,
            status=status,
            failed_checks_count=failed,
            outcome=outcome,
            alerted=alerted,
        )

    def _alert(self, site: SiteInstance, status: HealthStatus, failed: int) -> bool:
        if self.alerts is None:
            return False
        self.alerts.submit(
            SiteAlert(
                site_slug=site.site_slug,
                owner_user_id=site.owner_user_id,
                site_name=site.site_name,
                health_status=status.value,
                failed_checks=failed,
                port=site.port,
            )
        )
        return True

    def sweep(self) -> SweepReport:
        """Check every active site; one failing site never stops the others."""
        report = SweepReport(started_at=self._clock())
        sites = self.store.list_sites(active_only=True)
        if not sites:
            report.finished_at = self._clock()
            return report

        workers = min(self.max_concurrency, len(sites))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sitectl-health") as pool:
            futures = {site.site_slug: pool.submit(self.check_site, site) for site in sites}
            for slug, future in futures.items():
                try:
                    report.results.append(future.result())
                except Exception as exc:  # noqa: BLE001
                    LOGGER.warning("health check for %s failed: %s", slug, exc)
                    report.errors[slug] = str(exc)
        report.finished_at = self._clock()
        LOGGER.info("health sweep: %d checked, %d errors", report.checked, len(report.errors))
        return report

    def run_forever(self, stop_event: threading.Event) -> None:
        """Sweep every ``interval`` seconds until *stop_event* is set."""
        while not stop_event.is_set():
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                LOGGER.exception("health sweep aborted")
            stop_event.wait(self.interval)


class SweepGuard:
    """Run an on-demand sweep at most once per interval.

    With a *registry* the last sweep time is kept in ``monitor.yml`` so the
    interval holds across separate CLI invocations; callers sharing a host
    serialise :meth:`maybe_sweep` with the global lock.
    """

    def __init__(
        self,
        monitor: HealthMonitor,
        *,
        registry: StateRegistry | None = None,
        interval: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._monitor = monitor
        self._registry = registry
        self._interval = monitor.interval if interval is None else interval
        self._clock = clock
        self._last: float | None = None
        self._lock = threading.Lock()

    @property
    def last_sweep(self) -> float | None:
        """Clock value of the last triggered sweep."""
        if self._registry is not None:
            return _as_float(self._registry.read_monitor().get("last_sweep"))
        return self._last

    def maybe_sweep(self, now: float | None = None) -> SweepReport | None:
        """Sweep when the interval has elapsed; return ``None`` otherwise."""
        now = self._clock() if now is None else now
        with self._lock:
            last = self.last_sweep
            if last is not None and 0 <= now - last < self._interval:
                LOGGER.debug("on-demand sweep skipped; last ran %.0fs ago", now - last)
                return None
            self._last = now
            if self._registry is not None:
                state = self._registry.read_monitor()
                state["last_sweep"] = now
                self._registry.write_monitor(state)
        return self._monitor.sweep()


def _as_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


__all__ = [
    "CheckResult",
    "HealthMonitor",
    "SweepGuard",
    "SweepReport",
    "next_state",
]
