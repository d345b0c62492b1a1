"""Bounded retry used by every readiness probe."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .errors import SitectlError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReadinessResult:
    """Outcome of :func:`wait_until_ready`."""

    ready: bool
    attempts: int
    last_error: str | None = None


def wait_until_ready(
    probe: Callable[[], bool],
    *,
    max_attempts: int,
    backoff: float,
    label: str = "probe",
    sleep: Callable[[float], None] = time.sleep,
) -> ReadinessResult:
    """Call *probe* until it returns ``True`` or *max_attempts* is reached.

    A probe that raises :class:`SitectlError` counts as a failed attempt. The
    function sleeps *backoff* seconds between attempts, never after the last.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    last_error: str | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            if probe():
                LOGGER.debug("%s ready after %d attempt(s)", label, attempt)
                return ReadinessResult(ready=True, attempts=attempt)
            last_error = None
        except SitectlError as exc:
            last_error = str(exc)
        if attempt < max_attempts:
            sleep(backoff)
    LOGGER.warning("%s not ready after %d attempt(s)", label, max_attempts)
    return ReadinessResult(ready=False, attempts=max_attempts, last_error=last_error)


__all__ = ["ReadinessResult", "wait_until_ready"]
