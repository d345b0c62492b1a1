"""Fire-and-forget delivery of site alerts."""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Protocol

LOGGER = logging.getLogger(__name__)

HEALTH_CHANGED = "health-changed"
SITE_CREATED = "site-created"


@dataclass(frozen=True, slots=True)
class SiteAlert:
    """Notification payload for one site."""

    site_slug: str
    owner_user_id: str | None
    site_name: str
    health_status: str | None = None
    failed_checks: int = 0
    event: str = HEALTH_CHANGED
    port: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "event": self.event,
            "site_slug": self.site_slug,
            "owner_user_id": self.owner_user_id,
            "site_name": self.site_name,
            "health_status": self.health_status,
            "failed_checks": self.failed_checks,
            "port": self.port,
        }


class Notifier(Protocol):
    """Delivery backend for :class:`SiteAlert`."""

    def notify(self, alert: SiteAlert) -> None:
        """Deliver *alert*."""


class LoggingNotifier:
    """Notifier that writes alerts to the ``sitectl.alerts`` logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("sitectl.alerts")

    def notify(self, alert: SiteAlert) -> None:
        if alert.event == SITE_CREATED:
            self._logger.info("site %s created for %s", alert.site_slug, alert.owner_user_id)
            return
        self._logger.warning(
            "site %s is %s (%d failed checks)",
            alert.site_slug,
            alert.health_status,
            alert.failed_checks,
        )


class AlertDispatcher:
    """Queue alerts and deliver them from a background worker thread.

    :meth:`submit` never blocks on delivery. Notifier exceptions are logged
    and dropped so one bad alert does not stop the worker.
    """

    def __init__(self, notifier: Notifier | None = None) -> None:
        self._notifier = notifier or LoggingNotifier()
        self._queue: queue.Queue[SiteAlert | None] = queue.Queue()
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()

    def submit(self, alert: SiteAlert) -> None:
        """Queue *alert* for delivery, starting the worker on first use."""
        self._ensure_worker()
        self._queue.put(alert)

    def flush(self) -> None:
        """Block until every queued alert has been handled."""
        self._queue.join()

    def close(self) -> None:
        """Deliver what is queued, then stop the worker."""
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is None:
            return
        self._queue.put(None)
        worker.join()

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._drain, name="sitectl-alerts", daemon=True
            )
            self._worker.start()

    def _drain(self) -> None:
        while True:
            alert = self._queue.get()
            try:
                if alert is None:
                    return
                self._notifier.notify(alert)
            except Exception:  # noqa: BLE001
                LOGGER.exception("alert delivery failed for %s", alert.site_slug if alert else "?")
            finally:
                self._queue.task_done()


__all__ = [
    "AlertDispatcher",
    "HEALTH_CHANGED",
    "LoggingNotifier",
    "Notifier",
    "SITE_CREATED",
    "SiteAlert",
]
