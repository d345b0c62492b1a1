"""State registry and site store tests."""
from __future__ import annotations

import threading
from datetime import UTC, datetime
from pathlib import Path

import pytest

from sitectl.models import (
    HealthRecord,
    HealthStatus,
    ResourceMetrics,
    SiteInstance,
    SiteStatus,
    SoftwareVersions,
    slugify,
)
from sitectl.state import RegistrySiteStore, StateRegistry, StateRegistryError


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    assert registry.read("sites.yml", default={"sites": []}) == {"sites": []}
    assert registry.read_sites() == {"sites": []}
    assert registry.read_themes() == {"themes": []}
    assert registry.read_ports() == {"ports": []}


def test_write_is_atomic_and_restricted(tmp_path: Path) -> None:
    """Written files are complete, mode 0640 and leave no temporaries."""
    registry = StateRegistry(tmp_path)
    payload = {"sites": [{"site_slug": "acme-cafe"}]}

    registry.write("sites.yml", payload)

    path = tmp_path / "sites.yml"
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.read("sites.yml") == payload
    assert [p.name for p in tmp_path.iterdir()] == ["sites.yml"]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "sites.yml").write_text("::: not yaml :::\n")

    with pytest.raises(StateRegistryError):
        registry.read("sites.yml")


def test_update_and_remove_unknown_site_raise(tmp_path: Path) -> None:
    """Updating or removing an unregistered site fails loudly."""
    registry = StateRegistry(tmp_path)

    with pytest.raises(StateRegistryError):
        registry.update_site("ghost", {"port": 1})
    with pytest.raises(StateRegistryError):
        registry.remove_site("ghost")
    with pytest.raises(StateRegistryError):
        registry.get_site("  ")


def test_jsonl_series_appends_and_reports_corruption(tmp_path: Path) -> None:
    """Health series are append-only JSON lines."""
    registry = StateRegistry(tmp_path)
    name = registry.health_series_name("acme-cafe")

    registry.append_jsonl(name, {"n": 1})
    registry.append_jsonl(name, {"n": 2})

    assert name == "health/acme-cafe.jsonl"
    assert registry.read_jsonl(name) == [{"n": 1}, {"n": 2}]

    with (tmp_path / name).open("a", encoding="utf-8") as handle:
        handle.write("{broken\n")
    with pytest.raises(StateRegistryError, match=":3"):
        registry.read_jsonl(name)


def test_store_round_trips_site_instance(store: RegistrySiteStore) -> None:
    """Saved instances come back equal, including nested records."""
    site = SiteInstance.new("acme-cafe", site_name="Acme Café", owner_user_id="42")
    site.port = 49200
    site.status = SiteStatus.READY
    site.software_versions = SoftwareVersions(app="6.5", lang="8.2", db="8.0")
    site.last_health_check = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)

    store.save(site)
    loaded = store.get("acme-cafe")

    assert loaded == site
    assert loaded is not None
    assert loaded.app_ref == "acme-cafe_wp"
    assert loaded.db_ref == "acme-cafe_db"
    assert loaded.network_name == "acme-cafe_network"


def test_store_modify_and_list(store: RegistrySiteStore) -> None:
    """Modify persists the mutation; list can filter inactive sites."""
    store.save(SiteInstance.new("alpha"))
    store.save(SiteInstance.new("beta"))

    def deactivate(site: SiteInstance) -> None:
        site.active = False

    updated = store.modify("beta", deactivate)

    assert updated.active is False
    assert [s.site_slug for s in store.list_sites()] == ["alpha", "beta"]
    assert [s.site_slug for s in store.list_sites(active_only=True)] == ["alpha"]
    with pytest.raises(StateRegistryError):
        store.modify("ghost", deactivate)


def test_store_modify_is_serialised(store: RegistrySiteStore) -> None:
    """Concurrent increments through modify are never lost."""
    store.save(SiteInstance.new("alpha"))

    def bump(site: SiteInstance) -> None:
        site.failed_checks_count += 1

    threads = [threading.Thread(target=store.modify, args=("alpha", bump)) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stored = store.get("alpha")
    assert stored is not None
    assert stored.failed_checks_count == 8


def test_health_history_is_ordered_and_limited(store: RegistrySiteStore) -> None:
    """History returns the newest records last and honours the limit."""
    statuses = [HealthStatus.HEALTHY, HealthStatus.WARNING, HealthStatus.DOWN]
    for minute, status in enumerate(statuses):
        store.append_health(
            HealthRecord(
                site_slug="alpha",
                status=status,
                checked_at=datetime(2026, 1, 1, 0, minute, tzinfo=UTC),
                response_time_ms=12.5,
                resource_metrics=ResourceMetrics(cpu=0.5),
                software_versions=SoftwareVersions(),
            )
        )

    history = store.health_history("alpha")
    assert [record.status for record in history] == [
        HealthStatus.HEALTHY,
        HealthStatus.WARNING,
        HealthStatus.DOWN,
    ]
    assert [r.status for r in store.health_history("alpha", limit=1)] == [HealthStatus.DOWN]
    assert store.health_history("alpha", limit=0) == []
    assert store.health_history("beta") == []


@pytest.mark.parametrize(
    ("name", "slug"),
    [
        ("Acme Café", "acme-cafe"),
        ("  Crème & Brûlée  ", "creme-brulee"),
        ("Boulangerie--du  Port", "boulangerie-du-port"),
        ("!!!", ""),
    ],
)
def test_slugify_folds_accents(name: str, slug: str) -> None:
    """Site slugs are ASCII words joined by single dashes."""
    assert slugify(name) == slug
