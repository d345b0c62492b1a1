"""Port allocation helpers for sitectl.

:class:`PortAllocator` asks the OS for a free ephemeral port; nothing is held
after it returns, so the caller binds the container promptly.
:class:`PortsRegistry` records which site owns which host port in
``ports.yml`` so ports stay unique across active sites.
"""
from __future__ import annotations

import socket
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .state import StateRegistry

MAX_ALLOCATION_ATTEMPTS = 20


class PortsRegistryError(RuntimeError):
    """Raised when port allocation or release fails."""


class PortAllocator:
    """Yield free TCP ports chosen by the operating system."""

    def __init__(self, bind_host: str = "") -> None:
        """Bind on *bind_host* (all interfaces by default) when probing."""
        self.bind_host = bind_host

    def allocate(self) -> int:
        """Bind port 0, read the assigned port and release it immediately."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((self.bind_host, 0))
            return int(sock.getsockname()[1])


@dataclass(slots=True)
class PortsRegistry:
    """Manage the ports registry stored under ``ports.yml``."""

    registry: StateRegistry
    allocator: Callable[[], int] = field(default_factory=lambda: PortAllocator().allocate)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        """Make sure the registry directory exists."""
        self.registry.ensure_root()

    # ------------------------------------------------------------------
    def list_entries(self) -> list[dict[str, Any]]:
        """Return the current port reservations sorted by port."""
        raw = self.registry.read_ports()
        ports = raw.get("ports", [])
        entries: list[dict[str, Any]] = []
        if isinstance(ports, Iterable):
            for item in ports:
                if not isinstance(item, dict):
                    continue
                name = str(item.get("name", "")).strip()
                port_value = item.get("port")
                if not name:
                    continue
                if not isinstance(port_value, (int, str)):
                    continue
                try:
                    port = int(port_value)
                except ValueError:
                    continue
                entries.append({"name": name, "port": port})
        entries.sort(key=lambda entry: entry["port"])
        return entries

    def get_port(self, name: str) -> int | None:
        """Return the reserved port for *name*, if present."""
        normalized = _normalize_name(name)
        for entry in self.list_entries():
            if entry["name"] == normalized:
                return entry["port"]
        return None

    def reserve(self, name: str, *, requested_port: int | None = None) -> int:
        """Reserve a port for *name* and return the assigned value."""
        normalized = _normalize_name(name)
        with self._lock:
            entries = self.list_entries()
            if any(entry["name"] == normalized for entry in entries):
                raise PortsRegistryError(f"Port already reserved for site '{normalized}'.")

            used_ports = {entry["port"] for entry in entries}
            if requested_port is not None:
                if not 1 <= requested_port <= 65535:
                    raise PortsRegistryError(f"Requested port {requested_port} is out of range.")
                if requested_port in used_ports:
                    raise PortsRegistryError(f"Port {requested_port} is already in use.")
                port = requested_port
            else:
                port = self._next_available_port(used_ports)

            entries.append({"name": normalized, "port": port})
            self.registry.write_ports(entries)
        return port

    def release(self, name: str) -> None:
        """Release the port reserved for *name*."""
        normalized = _normalize_name(name)
        with self._lock:
            entries = self.list_entries()
            filtered = [entry for entry in entries if entry["name"] != normalized]
            if len(filtered) == len(entries):
                raise PortsRegistryError(f"No port reservation found for site '{normalized}'.")
            self.registry.write_ports(filtered)

    # Internal helpers -------------------------------------------------
    def _next_available_port(self, used: set[int]) -> int:
        """Ask the allocator for a port not reserved by another site."""
        for _ in range(MAX_ALLOCATION_ATTEMPTS):
            candidate = self.allocator()
            if candidate not in used:
                return candidate
        raise PortsRegistryError(
            f"Allocator returned reserved ports {MAX_ALLOCATION_ATTEMPTS} times in a row."
        )


def _normalize_name(name: str) -> str:
    """Return a normalised site slug."""
    normalized = name.strip()
    if not normalized:
        raise PortsRegistryError("Site name must be a non-empty string.")
    return normalized


__all__ = ["PortAllocator", "PortsRegistry", "PortsRegistryError"]
