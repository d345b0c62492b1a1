"""Tests for host port allocation and the ports registry."""
from __future__ import annotations

import socket
from pathlib import Path

import pytest

from sitectl.ports import PortAllocator, PortsRegistry, PortsRegistryError
from sitectl.state import StateRegistry


def test_allocator_returns_bindable_port() -> None:
    """The OS-assigned port is free again once the allocator returns."""
    port = PortAllocator("127.0.0.1").allocate()

    assert 1 <= port <= 65535
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("127.0.0.1", port))


def test_ephemeral_reservations_come_from_allocator(ports: PortsRegistry) -> None:
    """Ephemeral reservations use the injected allocator."""
    assert ports.reserve("acme-cafe") == 49200
    assert ports.reserve("bistro") == 49201
    assert ports.get_port("acme-cafe") == 49200
    assert ports.list_entries() == [
        {"name": "acme-cafe", "port": 49200},
        {"name": "bistro", "port": 49201},
    ]


def test_ephemeral_skips_ports_already_reserved(tmp_path: Path) -> None:
    """A candidate that is already reserved is discarded."""
    candidates = iter([49200, 49200, 49300])
    registry = PortsRegistry(
        registry=StateRegistry(tmp_path / "registry"),
        allocator=lambda: next(candidates),
    )

    assert registry.reserve("acme-cafe") == 49200
    assert registry.reserve("bistro") == 49300


def test_allocator_exhaustion_raises(tmp_path: Path) -> None:
    """An allocator that keeps returning reserved ports gives up."""
    registry = PortsRegistry(
        registry=StateRegistry(tmp_path / "registry"),
        allocator=lambda: 49200,
    )
    registry.reserve("acme-cafe")

    with pytest.raises(PortsRegistryError, match="reserved ports"):
        registry.reserve("bistro")


def test_release_frees_port_for_reuse(tmp_path: Path) -> None:
    """Releasing a port makes it available for future reservations."""
    candidates = iter([49200, 49201, 49200])
    ports = PortsRegistry(
        registry=StateRegistry(tmp_path / "registry"),
        allocator=lambda: next(candidates),
    )
    assert (ports.reserve("alpha"), ports.reserve("beta")) == (49200, 49201)

    ports.release("alpha")

    assert ports.reserve("gamma") == 49200
    assert ports.list_entries() == [
        {"name": "gamma", "port": 49200},
        {"name": "beta", "port": 49201},
    ]


def test_duplicate_reserve_raises(ports: PortsRegistry) -> None:
    """A site holds at most one reservation."""
    ports.reserve("alpha")
    with pytest.raises(PortsRegistryError, match="already reserved"):
        ports.reserve("alpha")


def test_requested_port_and_collision(ports: PortsRegistry) -> None:
    """Specific port requests succeed when free and fail when in use."""
    assert ports.reserve("alpha", requested_port=8080) == 8080

    with pytest.raises(PortsRegistryError, match="already in use"):
        ports.reserve("beta", requested_port=8080)
    with pytest.raises(PortsRegistryError, match="out of range"):
        ports.reserve("beta", requested_port=70000)


def test_release_missing_and_blank_names_raise(ports: PortsRegistry) -> None:
    """Unknown and blank site names are rejected."""
    with pytest.raises(PortsRegistryError):
        ports.release("missing")
    with pytest.raises(PortsRegistryError):
        ports.reserve("   ")


def test_default_allocator_asks_the_os(tmp_path: Path) -> None:
    """Without an injected allocator the registry binds port 0 to pick one."""
    ports = PortsRegistry(registry=StateRegistry(tmp_path / "registry"))

    port = ports.reserve("alpha")

    assert 1 <= port <= 65535
    assert ports.get_port("alpha") == port


def test_persist_failure_bubbles_up(
    ports: PortsRegistry, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Write failures reach the caller."""

    def fail_write(self: StateRegistry, entries: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(StateRegistry, "write_ports", fail_write)

    with pytest.raises(OSError):
        ports.reserve("alpha")
