"""Tests for site generation and preview reuse."""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest
from conftest import FakeRunner, running_inspect

from sitectl.content import StructureApplier, StructureResult
from sitectl.coordinator import PreviewReuseCoordinator
from sitectl.errors import QuotaExceededError, ValidationError
from sitectl.health import AlertDispatcher, SiteAlert
from sitectl.models import (
    AdminIdentity,
    PageSpec,
    SiteInstance,
    SiteRequest,
    SiteStatus,
    StructureSpec,
)
from sitectl.provisioning import (
    BootstrapAutomator,
    SiteContainerManager,
    ThemeInstaller,
)
from sitectl.provisioning.containers import ReuseStatus
from sitectl.provisioning.themes import ThemeApplyResult, ThemeSource
from sitectl.state import RegistrySiteStore

STRUCTURE = StructureSpec(pages=(PageSpec(title="Accueil", slug="accueil"),))
REQUEST = SiteRequest(
    site_name="Acme Café",
    owner_user_id="42",
    theme_slug="neve",
    admin=AdminIdentity(email="owner@acme.test"),
    structure=STRUCTURE,
    business_context={"business_type": "restaurant"},
)


class _Docker:
    def __init__(self, port: int) -> None:
        self.port = port

    def host_port(self, ref: str) -> int:
        return self.port


class _Containers:
    def __init__(self, *, reusable: bool = False, port: int = 49153) -> None:
        self.reusable = reusable
        self.docker = _Docker(port)
        self.created: list[Any] = []

    def prepare_for_reuse(self, ref: str) -> ReuseStatus:
        if self.reusable:
            return ReuseStatus(ready=True, port=self.docker.port)
        return ReuseStatus(ready=False, error=f"container {ref} not found")

    def create(self, spec: Any) -> SiteInstance:
        self.created.append(spec)
        site = SiteInstance.new(spec.site_slug, site_name=spec.site_name)
        site.port = 49200
        return site


class _Bootstrap:
    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []

    def update_admin_credentials(self, ref: str, admin: AdminIdentity) -> bool:
        self.calls.append(("update_admin_credentials", ref))
        return True

    def configure_final(self, ref: str, site_url: str, admin: AdminIdentity) -> None:
        self.calls.append(("configure_final", ref, site_url))

    def install_runtime_plugins(self, ref: str) -> None:
        self.calls.append(("install_runtime_plugins", ref))

    def install_health_endpoint(self, ref: str, slug: str) -> None:
        self.calls.append(("install_health_endpoint", ref))


class _Themes:
    def __init__(self) -> None:
        self.applied: list[str] = []

    def apply(self, ref: str, slug: str) -> ThemeApplyResult:
        self.applied.append(slug)
        return ThemeApplyResult(slug=slug, source=ThemeSource.REPOSITORY)


class _Structure:
    def __init__(self) -> None:
        self.applied: list[Mapping[str, Any]] = []
        self.structures: list[StructureSpec] = []
        self.flushed: list[str] = []
        self.cleaned: list[str] = []

    def apply(
        self, ref: str, structure: StructureSpec, context: Mapping[str, Any]
    ) -> StructureResult:
        self.applied.append(context)
        self.structures.append(structure)
        return StructureResult(homepage_id=10)

    def flush(self, ref: str) -> bool:
        self.flushed.append(ref)
        return True

    def cleanup_preview_homepages(self, ref: str) -> list[int]:
        self.cleaned.append(ref)
        return [7]


class _Recorder(AlertDispatcher):
    def __init__(self) -> None:
        super().__init__()
        self.submitted: list[SiteAlert] = []

    def submit(self, alert: SiteAlert) -> None:
        self.submitted.append(alert)


class _Refuse:
    def check(self, request: SiteRequest) -> None:
        raise QuotaExceededError(f"{request.owner_user_id} has reached the site limit")


def _coordinator(
    tmp_path: Path,
    store: RegistrySiteStore,
    containers: _Containers,
    **kwargs: Any,
) -> tuple[PreviewReuseCoordinator, _Bootstrap, _Themes, _Structure]:
    bootstrap, themes, structure = _Bootstrap(), _Themes(), _Structure()
    coordinator = PreviewReuseCoordinator(
        containers,  # type: ignore[arg-type]
        bootstrap,  # type: ignore[arg-type]
        themes,  # type: ignore[arg-type]
        structure,  # type: ignore[arg-type]
        store,
        sites_dir=tmp_path / "sites",
        sandbox_dir=tmp_path / "sandbox",
        base_url="http://localhost",
        **kwargs,
    )
    return coordinator, bootstrap, themes, structure


def test_generate_reuses_ready_preview(tmp_path: Path, store: RegistrySiteStore) -> None:
    """A ready preview becomes the final site without provisioning."""
    containers = _Containers(reusable=True)
    alerts = _Recorder()
    coordinator, bootstrap, themes, structure = _coordinator(
        tmp_path, store, containers, alerts=alerts
    )

    outcome = coordinator.generate(REQUEST)

    assert outcome.reused is True
    assert outcome.port == 49153
    assert outcome.site_url == "http://localhost:49153"
    assert outcome.admin_url == "http://localhost:49153/wp-admin"
    assert outcome.cleaned_pages == [7]
    assert outcome.sandbox_applied is False
    assert containers.created == []
    assert themes.applied == []
    assert structure.applied == []
    assert structure.flushed == ["acme-cafe_wp"]
    assert ("update_admin_credentials", "acme-cafe_wp") in bootstrap.calls

    site = store.get("acme-cafe")
    assert site is not None
    assert site.port == 49153
    assert site.status is SiteStatus.READY
    assert site.content.created_from_preview is True
    assert [alert.event for alert in alerts.submitted] == ["site-created"]


def test_generate_provisions_when_no_preview(tmp_path: Path, store: RegistrySiteStore) -> None:
    """Without a usable preview the site is created and content applied."""
    containers = _Containers()
    coordinator, bootstrap, themes, structure = _coordinator(tmp_path, store, containers)

    outcome = coordinator.generate(REQUEST)

    assert outcome.reused is False
    assert outcome.port == 49200
    assert [spec.site_slug for spec in containers.created] == ["acme-cafe"]
    assert ("configure_final", "acme-cafe_wp", "http://localhost:49200") in bootstrap.calls
    assert themes.applied == ["neve"]
    assert structure.applied == [
        {"site_name": "Acme Café", "locale": "fr_FR", "business_type": "restaurant"}
    ]
    assert outcome.structure_result is not None
    assert outcome.to_dict()["theme"] == {"slug": "neve", "source": "repository"}

    site = store.get("acme-cafe")
    assert site is not None
    assert site.content.structure_applied is True
    assert site.content.theme_applied is True
    assert site.content.created_from_preview is False


def test_generate_writes_site_config(tmp_path: Path, store: RegistrySiteStore) -> None:
    """A configuration snapshot is saved under the sites directory."""
    coordinator, *_ = _coordinator(tmp_path, store, _Containers(reusable=True))

    coordinator.generate(REQUEST)

    snapshot = json.loads((tmp_path / "sites" / "acme-cafe" / "site-config.json").read_text())
    assert snapshot["port"] == 49153
    assert snapshot["theme"] == "neve"
    assert snapshot["admin_email"] == "owner@acme.test"
    assert snapshot["generated_from_preview"] is True
    assert snapshot["business_context"] == {"business_type": "restaurant"}


def test_generate_applies_saved_sandbox(tmp_path: Path, store: RegistrySiteStore) -> None:
    """Saved editor modifications are handed to the sandbox applier."""
    seen: list[tuple[str, Path]] = []

    class Sandbox:
        def apply(
            self, ref: str, sandbox_path: Path, theme_slug: str | None, site_slug: str
        ) -> bool:
            seen.append((ref, sandbox_path))
            return True

    saved = tmp_path / "sandbox" / "acme-cafe"
    saved.mkdir(parents=True)
    (saved / "style.css").write_text("body { color: red; }\n")
    coordinator, *_ = _coordinator(
        tmp_path, store, _Containers(reusable=True), sandbox=Sandbox()
    )

    outcome = coordinator.generate(REQUEST)

    assert outcome.sandbox_applied is True
    assert seen == [("acme-cafe_wp", saved)]


def test_quota_is_checked_before_provisioning(tmp_path: Path, store: RegistrySiteStore) -> None:
    """A refused request never touches containers or the store."""
    containers = _Containers()
    coordinator, bootstrap, *_ = _coordinator(tmp_path, store, containers, quota=_Refuse())

    with pytest.raises(QuotaExceededError):
        coordinator.generate(REQUEST)
    with pytest.raises(QuotaExceededError):
        coordinator.preview(REQUEST)

    assert containers.created == []
    assert bootstrap.calls == []
    assert store.list_sites() == []


@pytest.mark.parametrize("name", ["", "!!!", "   "])
def test_unusable_site_name_is_rejected(
    tmp_path: Path, store: RegistrySiteStore, name: str
) -> None:
    """Names that slugify to nothing are validation errors."""
    coordinator, *_ = _coordinator(tmp_path, store, _Containers())

    with pytest.raises(ValidationError, match="usable slug"):
        coordinator.generate(SiteRequest(site_name=name))


def test_preview_creates_instance_with_sandbox_mount(
    tmp_path: Path, store: RegistrySiteStore
) -> None:
    """A missing preview is created with the sandbox directory mounted."""
    containers = _Containers()
    alerts = _Recorder()
    coordinator, _, themes, structure = _coordinator(tmp_path, store, containers, alerts=alerts)

    outcome = coordinator.preview(REQUEST)

    assert outcome.reused is False
    (spec,) = containers.created
    assert spec.content_dir == tmp_path / "sandbox" / "acme-cafe"
    assert spec.content_dir.is_dir()
    assert themes.applied == ["neve"]
    assert len(structure.applied) == 1
    assert len(alerts.submitted) == 1


def test_preview_reuses_running_instance(tmp_path: Path, store: RegistrySiteStore) -> None:
    """An existing preview keeps its content unless a refresh is forced."""
    containers = _Containers(reusable=True)
    alerts = _Recorder()
    coordinator, _, _, structure = _coordinator(tmp_path, store, containers, alerts=alerts)

    outcome = coordinator.preview(REQUEST)
    refreshed = coordinator.preview(REQUEST, force_refresh=True)

    assert outcome.reused is True
    assert outcome.port == 49153
    assert outcome.structure_result is None
    assert refreshed.structure_result is not None
    assert containers.created == []
    assert len(structure.applied) == 1
    assert alerts.submitted == []


def test_generate_reuse_through_real_providers(
    tmp_path: Path,
    fake_runner: FakeRunner,
    manager: SiteContainerManager,
    bootstrap: BootstrapAutomator,
    theme_installer: ThemeInstaller,
    store: RegistrySiteStore,
) -> None:
    """A running installed preview on port 49153 is reused with no docker run."""
    fake_runner.on("inspect", "acme-cafe_wp", stdout=running_inspect("acme-cafe_wp"))
    fake_runner.on("port", "acme-cafe_wp", stdout="80/tcp -> 0.0.0.0:49153\n")
    coordinator = PreviewReuseCoordinator(
        manager,
        bootstrap,
        theme_installer,
        StructureApplier(bootstrap.wp),
        store,
        sites_dir=tmp_path / "sites",
        sandbox_dir=tmp_path / "sandbox",
        base_url="http://localhost",
    )

    outcome = coordinator.generate(REQUEST)

    assert outcome.reused is True
    assert outcome.site_url == "http://localhost:49153"
    assert not fake_runner.called("run")
    assert not fake_runner.called("network", "create")
    assert fake_runner.called("exec", "acme-cafe_wp", "wp", "cache", "flush")
    site = store.get("acme-cafe")
    assert site is not None and site.port == 49153


def test_generate_without_structure_uses_starter_pages(
    tmp_path: Path, store: RegistrySiteStore
) -> None:
    """A new site with no structure gets the starter pages for its business."""
    coordinator, _, _, structure = _coordinator(tmp_path, store, _Containers())

    outcome = coordinator.generate(replace(REQUEST, structure=None))

    (applied,) = structure.structures
    assert [page.slug for page in applied.pages] == [
        "accueil",
        "a-propos",
        "menu",
        "services",
        "contact",
    ]
    assert outcome.structure_result is not None


def test_preview_replaces_half_built_instance(
    tmp_path: Path,
    fake_runner: FakeRunner,
    manager: SiteContainerManager,
    bootstrap: BootstrapAutomator,
    theme_installer: ThemeInstaller,
    store: RegistrySiteStore,
) -> None:
    """A running container without a WordPress install is replaced, not reused."""
    fake_runner.on("inspect", "acme-cafe_db", stdout=running_inspect("acme-cafe_db"))
    fake_runner.on("inspect", "acme-cafe_wp", stdout=running_inspect("acme-cafe_wp"))
    fake_runner.on("port", "acme-cafe_wp", stdout="80/tcp -> 0.0.0.0:49153\n")
    fake_runner.on("exec", "acme-cafe_wp", "wp", "core", "is-installed", exit_code=1, times=1)
    coordinator = PreviewReuseCoordinator(
        manager,
        bootstrap,
        theme_installer,
        StructureApplier(bootstrap.wp),
        store,
        sites_dir=tmp_path / "sites",
        sandbox_dir=tmp_path / "sandbox",
        base_url="http://localhost",
    )

    outcome = coordinator.preview(replace(REQUEST, theme_slug=None))

    assert outcome.reused is False
    assert outcome.port == 49200
    assert fake_runner.called("rm", "-f", "acme-cafe_wp")
    app_run = fake_runner.called("run", "-d", "--name", "acme-cafe_wp")
    assert len(app_run) == 1
    assert any(arg.endswith(":/var/www/html/wp-content") for arg in app_run[0])
    site = store.get("acme-cafe")
    assert site is not None
    assert site.status is SiteStatus.READY
    assert site.port == 49200
