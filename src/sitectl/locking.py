"""File-based locks that serialise mutations on a single host.

Locks are ``fcntl.flock`` advisory locks on files under the runtime
directory. ``sitectl.lock`` guards registry-wide mutations; ``<slug>.lock``
guards provisioning of one site. Lock files are left in place after release
and carry the owning PID for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO

GLOBAL_LOCK_NAME = "sitectl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and the time spent waiting for it."""

    path: Path
    wait_ms: int
    _handle: IO[str]


@dataclass(slots=True)
class LockBundle:
    """Several held locks acquired in order."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total wait time across all acquired locks."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-site locks under ``runtime_dir``."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = float(default_timeout)

    @contextmanager
    def site_lock(self, slug: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for *slug* for the duration of the block."""
        path = self.runtime_dir / f"{slug}.lock"
        with self._acquire(path, timeout) as handle:
            yield handle

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the registry-wide lock for the duration of the block."""
        with self._acquire(self.runtime_dir / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def mutate_sites(
        self,
        slugs: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by each site lock in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for slug in sorted(set(slugs)):
                handles.append(stack.enter_context(self.site_lock(slug, timeout=timeout)))
            yield LockBundle(handles=handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from exc
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            handle.seek(0)
            handle.truncate()
            handle.write(json.dumps({"pid": os.getpid(), "path": str(path)}))
            handle.flush()
            try:
                yield LockHandle(path=path, wait_ms=wait_ms, _handle=handle)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
