"""HTTP probe for the per-site health endpoint."""
from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from ..errors import HealthProbeError
from ..models import HealthStatus, ResourceMetrics, SiteInstance, SoftwareVersions

LOGGER = logging.getLogger(__name__)

HEALTH_PATH = "/wp-json/custom/healthcheck"
DEFAULT_TIMEOUT = 4.0


class HttpGetter(Protocol):
    """The subset of :class:`requests.Session` used by the probe."""

    def get(self, url: str, *, timeout: float) -> requests.Response:
        """Issue a GET request."""


@dataclass(frozen=True, slots=True)
class ProbeOutcome:
    """One observation of a site's health endpoint."""

    status: HealthStatus
    transport_failure: bool = False
    response_time_ms: float | None = None
    resource_metrics: ResourceMetrics = field(default_factory=ResourceMetrics)
    software_versions: SoftwareVersions = field(default_factory=SoftwareVersions)
    updates_available: int | None = None
    error: str | None = None

    @classmethod
    def down(cls, error: str) -> ProbeOutcome:
        """Return a transport failure outcome."""
        return cls(status=HealthStatus.DOWN, transport_failure=True, error=error)

    @classmethod
    def from_payload(
        cls, payload: Mapping[str, Any], *, elapsed_ms: float | None = None
    ) -> ProbeOutcome:
        """Build an outcome from the endpoint's JSON document."""
        server = payload.get("server")
        server = server if isinstance(server, Mapping) else {}
        plugins = payload.get("plugins")
        plugins = plugins if isinstance(plugins, Mapping) else {}
        response_time = payload.get("response_time")
        updates = plugins.get("updates_available")
        return cls(
            status=HealthStatus.parse(payload.get("status") or HealthStatus.HEALTHY.value),
            response_time_ms=_number(response_time) if response_time is not None else elapsed_ms,
            resource_metrics=ResourceMetrics.from_mapping(
                {
                    "cpu": server.get("cpu_load"),
                    "mem_mb": server.get("memory_current"),
                    "disk_mb": server.get("disk_used"),
                }
            ),
            software_versions=SoftwareVersions.from_mapping(
                {
                    "app": payload.get("wp_version"),
                    "lang": payload.get("php_version"),
                    "db": payload.get("db_version"),
                }
            ),
            updates_available=int(updates) if isinstance(updates, (int, float)) else None,
        )


class HealthProbe:
    """Query ``<base_url>:<port>/wp-json/custom/healthcheck``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        session: HttpGetter | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def url_for(self, site: SiteInstance) -> str:
        """Return the health endpoint URL for *site*."""
        return f"{self._base_url}:{site.port}{HEALTH_PATH}"

    def check(self, site: SiteInstance) -> ProbeOutcome:
        """Probe *site*; transport errors come back as a ``down`` outcome."""
        if site.port is None:
            return ProbeOutcome.down(f"{site.site_slug} has no port")
        started = time.monotonic()
        try:
            payload = self.fetch(self.url_for(site))
        except HealthProbeError as exc:
            LOGGER.debug("health probe for %s failed: %s", site.site_slug, exc)
            return ProbeOutcome.down(str(exc))
        elapsed_ms = round((time.monotonic() - started) * 1000, 1)
        return ProbeOutcome.from_payload(payload, elapsed_ms=elapsed_ms)

    def fetch(self, url: str) -> Mapping[str, Any]:
        """Return the JSON object served at *url* or raise :class:`HealthProbeError`."""
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise HealthProbeError(f"GET {url} failed: {exc}") from exc
        except ValueError as exc:
            raise HealthProbeError(f"GET {url} returned invalid JSON: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise HealthProbeError(f"GET {url} did not return a JSON object")
        return payload


def _number(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


__all__ = ["HEALTH_PATH", "HealthProbe", "HttpGetter", "ProbeOutcome"]
