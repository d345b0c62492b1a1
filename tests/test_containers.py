"""Tests for the site container lifecycle."""
from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
from conftest import FakeRunner, running_inspect

from sitectl.errors import (
    ParseError,
    ProvisioningError,
    ReadinessTimeoutError,
    ToolchainInstallError,
)
from sitectl.models import SiteStatus
from sitectl.ports import PortsRegistry
from sitectl.provisioning import LifecycleState, SiteContainerManager, SiteSpec
from sitectl.state import RegistrySiteStore

REF = "acme-cafe_wp"
SPEC = SiteSpec(site_slug="acme-cafe", site_name="Acme Café", owner_user_id="42")


def _fresh_host(fake_runner: FakeRunner) -> None:
    fake_runner.on("network", "inspect", exit_code=1, times=1)
    fake_runner.missing("acme-cafe_db")
    fake_runner.missing(REF)
    fake_runner.on("run", stdout="c0ffee\n")


def test_create_provisions_a_fresh_site(
    fake_runner: FakeRunner,
    manager: SiteContainerManager,
    store: RegistrySiteStore,
    ports: PortsRegistry,
) -> None:
    """A fresh host gets network, database, container and a WordPress install."""
    _fresh_host(fake_runner)
    fake_runner.on("exec", REF, "wp", "core", "is-installed", exit_code=1, times=1)

    site = manager.create(SPEC)

    assert site.status is SiteStatus.READY
    assert site.port == 49200
    assert site.site_name == "Acme Café"
    assert site.owner_user_id == "42"
    assert ports.get_port("acme-cafe") == 49200
    assert manager.state_of(REF) is LifecycleState.READY
    assert fake_runner.called("network", "create", "acme-cafe_network")
    assert len(fake_runner.called("run")) == 2
    app_run = fake_runner.called("run", "-d", "--name", REF)[0]
    assert "49200:80" in app_run
    assert "WORDPRESS_DB_HOST=acme-cafe_db" in app_run
    install = fake_runner.called("exec", REF, "wp", "core", "install")
    assert len(install) == 1
    assert "--url=http://localhost:49200" in install[0]
    assert "--title=Acme Café" in install[0]
    assert fake_runner.called("exec", REF, "wp", "language", "core", "install", "fr_FR")
    assert fake_runner.called("cp", "*", f"{REF}:/etc/apache2/conf-available/sandbox.conf")

    stored = store.get("acme-cafe")
    assert stored is not None and stored.status is SiteStatus.READY


def test_create_skips_install_when_already_installed(
    fake_runner: FakeRunner, manager: SiteContainerManager
) -> None:
    """An existing install is kept; core install is not run."""
    _fresh_host(fake_runner)

    manager.create(SPEC)

    assert not fake_runner.called("exec", REF, "wp", "core", "install")


def test_create_is_idempotent_on_port_and_record(
    fake_runner: FakeRunner,
    manager: SiteContainerManager,
    store: RegistrySiteStore,
    ports: PortsRegistry,
) -> None:
    """Running create twice keeps one port reservation and one record."""
    _fresh_host(fake_runner)
    first = manager.create(SPEC)

    fake_runner.rules.clear()
    fake_runner.on("inspect", "acme-cafe_db", stdout=running_inspect("acme-cafe_db"))
    fake_runner.on("inspect", REF, stdout=running_inspect(REF))
    second = manager.create(SPEC)

    assert second.port == first.port
    assert ports.list_entries() == [{"name": "acme-cafe", "port": first.port}]
    assert [site.site_slug for site in store.list_sites()] == ["acme-cafe"]
    assert second.created_at == first.created_at
    assert fake_runner.called("rm", "-f", REF)


def test_toolchain_failure_replaces_container_once(
    fake_runner: FakeRunner, manager: SiteContainerManager
) -> None:
    """A failed WP-CLI install recreates the container with a health check."""
    _fresh_host(fake_runner)
    fake_runner.on("exec", REF, "wp", "--info", exit_code=1, times=1)

    site = manager.create(SPEC)

    assert site.status is SiteStatus.READY
    assert fake_runner.called("stop", REF)
    assert fake_runner.called("rm", REF)
    health_runs = [call for call in fake_runner.called("run") if "--health-retries=3" in call]
    assert len(health_runs) == 1
    assert fake_runner.called("exec", REF, "mv", "/tmp/wp-cli.phar", "/usr/local/bin/wp")


def test_toolchain_failure_twice_marks_site_failed(
    fake_runner: FakeRunner,
    manager: SiteContainerManager,
    store: RegistrySiteStore,
) -> None:
    """A second toolchain failure is fatal and the record is marked failed."""
    _fresh_host(fake_runner)
    fake_runner.on("exec", REF, "wp", "--info", stderr="wp: not found", exit_code=127)

    with pytest.raises(ToolchainInstallError) as excinfo:
        manager.create(SPEC)

    assert excinfo.value.__cause__ is not None
    stored = store.get("acme-cafe")
    assert stored is not None and stored.status is SiteStatus.FAILED
    assert manager.state_of(REF) is LifecycleState.FAILED


def test_container_start_failure_is_provisioning_error(
    fake_runner: FakeRunner, manager: SiteContainerManager
) -> None:
    """docker run refusing the app container aborts provisioning."""
    fake_runner.missing("acme-cafe_db")
    fake_runner.missing(REF)
    fake_runner.on("run", "-d", "--name", REF, stderr="port is already allocated", exit_code=125)

    with pytest.raises(ProvisioningError, match="port is already allocated"):
        manager.create(SPEC)


def test_unusable_content_dir_marks_site_failed(
    tmp_path: Path,
    fake_runner: FakeRunner,
    manager: SiteContainerManager,
    store: RegistrySiteStore,
) -> None:
    """A content directory that cannot be created fails provisioning cleanly."""
    _fresh_host(fake_runner)
    blocker = tmp_path / "sandbox-file"
    blocker.write_text("not a directory\n")

    with pytest.raises(ProvisioningError, match="content directory"):
        manager.create(replace(SPEC, content_dir=blocker))

    assert not fake_runner.called("run", "-d", "--name", REF)
    stored = store.get("acme-cafe")
    assert stored is not None and stored.status is SiteStatus.FAILED
    assert manager.state_of(REF) is LifecycleState.FAILED


def test_install_page_never_answering_times_out(
    fake_runner: FakeRunner, manager: SiteContainerManager
) -> None:
    """The install page probe is bounded by the readiness attempts."""
    _fresh_host(fake_runner)
    fake_runner.on("exec", REF, "curl", "-f", exit_code=22)

    with pytest.raises(ReadinessTimeoutError):
        manager.create(SPEC)

    assert len(fake_runner.called("exec", REF, "curl", "-f")) == 3


def test_frame_header_failure_does_not_abort(
    fake_runner: FakeRunner, manager: SiteContainerManager
) -> None:
    """Relaxing frame headers is best effort."""
    _fresh_host(fake_runner)
    fake_runner.on("exec", REF, "a2enmod", exit_code=1)

    assert manager.create(SPEC).status is SiteStatus.READY


def test_prepare_for_reuse_of_running_instance(
    fake_runner: FakeRunner, manager: SiteContainerManager
) -> None:
    """A running installed container is reused without provisioning."""
    fake_runner.on("inspect", REF, stdout=running_inspect(REF))
    fake_runner.on("port", REF, stdout="80/tcp -> 0.0.0.0:49153\n")

    status = manager.prepare_for_reuse(REF)

    assert status.ready is True
    assert status.port == 49153
    assert status.site_url == "http://localhost:49153"
    assert not fake_runner.called("run")
    assert not fake_runner.called("start")


def test_prepare_for_reuse_starts_stopped_instance(
    fake_runner: FakeRunner, manager: SiteContainerManager
) -> None:
    """A stopped container is started before probing."""
    fake_runner.on("inspect", REF, stdout=running_inspect(REF, running=False))
    fake_runner.on("port", REF, stdout="80/tcp -> 0.0.0.0:49153\n")

    assert manager.prepare_for_reuse(REF).ready is True
    assert fake_runner.called("start", REF)


def test_prepare_for_reuse_reports_missing_or_uninstalled(
    fake_runner: FakeRunner, manager: SiteContainerManager
) -> None:
    """Missing containers and missing installs are not reusable."""
    fake_runner.missing(REF)
    assert manager.prepare_for_reuse(REF).ready is False

    fake_runner.rules.clear()
    fake_runner.on("inspect", REF, stdout=running_inspect(REF))
    fake_runner.on("exec", REF, "wp", "core", "is-installed", exit_code=1)
    status = manager.prepare_for_reuse(REF)
    assert status.ready is False
    assert status.error is not None and "not installed" in status.error


def test_prepare_for_reuse_raises_on_unparseable_port(
    fake_runner: FakeRunner, manager: SiteContainerManager
) -> None:
    """Port output without an IPv4 mapping is a parse error."""
    fake_runner.on("inspect", REF, stdout=running_inspect(REF))
    fake_runner.on("port", REF, stdout="80/tcp -> [::]:49153\n")

    with pytest.raises(ParseError):
        manager.prepare_for_reuse(REF)


def test_remove_releases_port_and_deactivates(
    fake_runner: FakeRunner,
    manager: SiteContainerManager,
    store: RegistrySiteStore,
    ports: PortsRegistry,
) -> None:
    """Removal frees the port and keeps an inactive record."""
    _fresh_host(fake_runner)
    manager.create(SPEC)
    fake_runner.on("network", "rm", stderr="has active endpoints", exit_code=1)

    leftovers = manager.remove("acme-cafe")

    assert leftovers == ["acme-cafe_network"]
    assert ports.get_port("acme-cafe") is None
    stored = store.get("acme-cafe")
    assert stored is not None
    assert stored.active is False
    assert stored.port is None
    assert manager.state_of(REF) is LifecycleState.ABSENT
