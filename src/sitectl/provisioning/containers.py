"""Application container lifecycle for a site.

:class:`SiteContainerManager` owns the per-container state machine
``absent -> creating -> starting -> ready`` with ``failed`` reachable from any
step, and mirrors it onto the persisted :class:`~sitectl.models.SiteInstance`.
"""
from __future__ import annotations

import logging
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from ..errors import (
    CommandError,
    ParseError,
    ProvisioningError,
    ReadinessTimeoutError,
    SitectlError,
    ToolchainInstallError,
)
from ..models import (
    AdminIdentity,
    DatabaseCredentials,
    ResourceNames,
    SiteInstance,
    SiteStatus,
)
from ..ports import PortsRegistry, PortsRegistryError
from ..providers.docker import DockerClient, HealthCheckOptions, RunSpec
from ..providers.wpcli import WPCli
from ..retry import ReadinessResult, wait_until_ready
from ..state import SiteStore
from ..templates import TemplateEngine
from .bootstrap import BootstrapAutomator, BootstrapResult
from .database import DatabaseProvisioner
from .network import NetworkManager

LOGGER = logging.getLogger(__name__)

WP_CLI_PATH = "/usr/local/bin/wp"
WP_CLI_TMP_PATH = "/tmp/wp-cli.phar"  # noqa: S108 - path inside the container
SANDBOX_CONF_TEMPLATE = "apache/sandbox.conf.j2"
SANDBOX_CONF_PATH = "/etc/apache2/conf-available/sandbox.conf"
INSTALL_PAGE_URL = "http://localhost:80/wp-admin/install.php"


class LifecycleState(str, Enum):
    """Provisioning state of an application container."""

    ABSENT = "absent"
    CREATING = "creating"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


_PERSISTED_STATUS = {
    LifecycleState.CREATING: SiteStatus.PROVISIONING,
    LifecycleState.STARTING: SiteStatus.PROVISIONING,
    LifecycleState.READY: SiteStatus.READY,
    LifecycleState.FAILED: SiteStatus.FAILED,
}


@dataclass(frozen=True, slots=True)
class SiteSpec:
    """Everything :meth:`SiteContainerManager.create` needs for one site."""

    site_slug: str
    site_name: str
    owner_user_id: str | None = None
    locale: str = "fr_FR"
    admin: AdminIdentity = field(default_factory=AdminIdentity)
    theme_slug: str | None = None
    requested_port: int | None = None
    content_dir: Path | None = None

    @property
    def names(self) -> ResourceNames:
        """Return the container runtime names for this site."""
        return ResourceNames.for_slug(self.site_slug)


@dataclass(frozen=True, slots=True)
class ReuseStatus:
    """Result of :meth:`SiteContainerManager.prepare_for_reuse`."""

    ready: bool
    port: int | None = None
    site_url: str | None = None
    error: str | None = None


@dataclass(slots=True)
class SiteContainerManager:
    """Create, reuse, start, stop and remove site application containers."""

    docker: DockerClient
    wp: WPCli
    networks: NetworkManager
    database: DatabaseProvisioner
    bootstrap: BootstrapAutomator
    ports: PortsRegistry
    store: SiteStore
    templates: TemplateEngine
    app_image: str = "wordpress:php8.2-apache"
    wp_cli_url: str = "https://raw.githubusercontent.com/wp-cli/builds/gh-pages/phar/wp-cli.phar"
    base_url: str = "http://localhost"
    db_user: str = "root"
    db_password: str = "root"
    grace_period: float = 5.0
    extended_grace_period: float = 10.0
    readiness_attempts: int = 30
    readiness_backoff: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    _states: dict[str, LifecycleState] = field(default_factory=dict, init=False, repr=False)
    _states_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def state_of(self, ref: str) -> LifecycleState:
        """Return the last recorded lifecycle state for *ref*."""
        with self._states_lock:
            return self._states.get(ref, LifecycleState.ABSENT)

    def _transition(
        self, site_slug: str, ref: str, state: LifecycleState, **updates: object
    ) -> None:
        with self._states_lock:
            self._states[ref] = state
        LOGGER.debug("%s -> %s", ref, state.value)
        status = _PERSISTED_STATUS.get(state)
        if self.store.get(site_slug) is None:
            return

        def mutate(site: SiteInstance) -> None:
            if status is not None:
                site.status = status
            for key, value in updates.items():
                setattr(site, key, value)

        self.store.modify(site_slug, mutate)

    def credentials_for(self, names: ResourceNames) -> DatabaseCredentials:
        """Return the database credentials used by the site *names*."""
        return DatabaseCredentials(
            user=self.db_user, password=self.db_password, database=names.db_name
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def ensure_exists(self, ref: str) -> None:
        """Raise :class:`NotFoundError` unless the container *ref* exists."""
        self.docker.require(ref)

    def ensure_running(self, ref: str) -> bool:
        """Start *ref* when stopped and return whether it is running."""
        try:
            state = self.docker.inspect(ref)
            if state is None:
                return False
            if not state.running:
                LOGGER.info("starting stopped container %s", ref)
                self.docker.start(ref)
                self.sleep(self.grace_period)
        except SitectlError as exc:
            LOGGER.warning("could not ensure %s is running: %s", ref, exc)
            return False
        return True

    def wait_for_install_page(self, ref: str) -> ReadinessResult:
        """Poll the install page inside *ref* until it answers."""
        return wait_until_ready(
            lambda: self.docker.exec(
                ref,
                ["curl", "-f", INSTALL_PAGE_URL, "--silent", "--max-time", "10"],
                check=False,
            ).ok,
            max_attempts=self.readiness_attempts,
            backoff=self.readiness_backoff,
            label=f"install page on {ref}",
            sleep=self.sleep,
        )

    def prepare_for_reuse(self, ref: str) -> ReuseStatus:
        """Bring an existing installed container back and resolve its URL.

        Returns ``ready=False`` when the container is missing, never becomes
        reachable, or has no WordPress install. A port mapping that cannot be
        parsed raises :class:`ParseError`.
        """
        try:
            state = self.docker.require(ref)
            if not state.running:
                LOGGER.info("starting stopped container %s for reuse", ref)
                self.docker.start(ref)
            readiness = self.wait_for_install_page(ref)
            if not readiness.ready:
                return ReuseStatus(ready=False, error=f"{ref} did not answer the install probe")
            if not self.wp.is_installed(ref):
                return ReuseStatus(ready=False, error=f"WordPress is not installed in {ref}")
            port = self.docker.host_port(ref)
        except ParseError:
            raise
        except SitectlError as exc:
            return ReuseStatus(ready=False, error=str(exc))
        with self._states_lock:
            self._states[ref] = LifecycleState.READY
        return ReuseStatus(ready=True, port=port, site_url=f"{self.base_url}:{port}")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create(self, spec: SiteSpec) -> SiteInstance:
        """Provision network, database and application container for *spec*."""
        names = spec.names
        ref = names.app_container
        creds = self.credentials_for(names)
        existing = self.store.get(spec.site_slug)
        site = SiteInstance.new(
            spec.site_slug,
            site_name=spec.site_name,
            owner_user_id=spec.owner_user_id,
            theme_slug=spec.theme_slug,
        )
        if existing is not None:
            site.created_at = existing.created_at
            site.content = existing.content
        self.store.save(site)
        self._transition(spec.site_slug, ref, LifecycleState.CREATING)

        try:
            self.networks.ensure_network(names.network)
            self.database.ensure_database(names.db_container, names.network, creds)
            port = self._reserve_port(spec)
            self._transition(spec.site_slug, ref, LifecycleState.CREATING, port=port)

            if self.docker.inspect(ref) is not None:
                LOGGER.warning("replacing leftover container %s", ref)
                self.docker.remove(ref, force=True)

            run_spec = self._app_run_spec(spec, names, creds, port)
            try:
                self.docker.run(run_spec)
            except CommandError as exc:
                raise ProvisioningError(f"Failed to start container {ref}: {exc}") from exc
            self._transition(spec.site_slug, ref, LifecycleState.STARTING)
            self.sleep(self.grace_period)

            self.install_toolchain(ref, run_spec)
            self.relax_frame_headers(ref, spec.site_slug)

            readiness = self.wait_for_install_page(ref)
            if not readiness.ready:
                raise ReadinessTimeoutError(
                    f"WordPress in {ref} not ready after {readiness.attempts} attempts"
                )

            result: BootstrapResult = self.bootstrap.configure(
                ref,
                names.db_container,
                creds,
                spec.site_name,
                spec.locale,
                port,
                spec.admin,
            )
            LOGGER.info(
                "bootstrapped %s (installed_now=%s, locale=%s)",
                ref,
                result.installed_now,
                result.locale,
            )
        except PortsRegistryError as exc:
            self._transition(spec.site_slug, ref, LifecycleState.FAILED)
            raise ProvisioningError(f"Port reservation failed for {spec.site_slug}: {exc}") from exc
        except SitectlError:
            self._transition(spec.site_slug, ref, LifecycleState.FAILED)
            raise

        self._transition(spec.site_slug, ref, LifecycleState.READY)
        stored = self.store.get(spec.site_slug)
        if stored is None:
            raise ProvisioningError(
                f"Site {spec.site_slug} vanished from the registry during creation"
            )
        return stored

    def _reserve_port(self, spec: SiteSpec) -> int:
        current = self.ports.get_port(spec.site_slug)
        if current is not None and spec.requested_port in (None, current):
            return current
        if current is not None:
            self.ports.release(spec.site_slug)
        return self.ports.reserve(spec.site_slug, requested_port=spec.requested_port)

    def _app_run_spec(
        self,
        spec: SiteSpec,
        names: ResourceNames,
        creds: DatabaseCredentials,
        port: int,
    ) -> RunSpec:
        volumes: list[str] = []
        if spec.content_dir is not None:
            content_root = Path(spec.content_dir) / "wp-content"
            try:
                content_root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ProvisioningError(
                    f"Cannot prepare content directory {content_root}: {exc}"
                ) from exc
            volumes.append(f"{content_root}:/var/www/html/wp-content")
        return RunSpec(
            name=names.app_container,
            image=self.app_image,
            network=names.network,
            ports={port: 80},
            volumes=tuple(volumes),
            env={
                "WORDPRESS_DB_HOST": names.db_container,
                "WORDPRESS_DB_NAME": creds.database,
                "WORDPRESS_DB_USER": creds.user,
                "WORDPRESS_DB_PASSWORD": creds.password,
            },
        )

    def install_toolchain(self, ref: str, run_spec: RunSpec) -> None:
        """Install ``wp`` in *ref*, replacing the container once on failure."""
        try:
            self.docker.exec(ref, ["apt-get", "update"])
            self.docker.exec(ref, ["apt-get", "install", "-y", "curl"])
            self.docker.exec(ref, ["curl", "-o", WP_CLI_PATH, self.wp_cli_url])
            self.docker.exec(ref, ["chmod", "+x", WP_CLI_PATH])
            self.docker.exec(ref, ["wp", "--info"])
            return
        except CommandError as exc:
            LOGGER.warning("WP-CLI install failed in %s, replacing container: %s", ref, exc)

        self.docker.stop(ref, check=False)
        self.docker.remove(ref, check=False)
        try:
            self.docker.run(replace(run_spec, health_check=HealthCheckOptions()))
            self.sleep(self.extended_grace_period)
            self.docker.exec(ref, ["curl", "-o", WP_CLI_TMP_PATH, self.wp_cli_url])
            self.docker.exec(ref, ["chmod", "+x", WP_CLI_TMP_PATH])
            self.docker.exec(ref, ["mv", WP_CLI_TMP_PATH, WP_CLI_PATH])
            self.docker.exec(ref, ["wp", "--info"])
        except CommandError as exc:
            raise ToolchainInstallError(
                f"WP-CLI could not be installed in {ref} after replacing the container: {exc}"
            ) from exc

    def relax_frame_headers(self, ref: str, site_slug: str) -> bool:
        """Allow framing and cross-origin calls for the editor preview.

        Failures are logged and reported as ``False``; provisioning continues.
        """
        context = {
            "site_slug": site_slug,
            "allow_origin": "*",
            "allow_headers": "Content-Type, Authorization",
            "allow_methods": "GET, POST, PUT, DELETE, OPTIONS",
        }
        try:
            self.docker.exec(ref, ["a2enmod", "headers", "rewrite"])
            with tempfile.TemporaryDirectory(prefix="sitectl-apache-") as tmp_dir:
                local_conf = Path(tmp_dir) / "sandbox.conf"
                self.templates.render_to_path(SANDBOX_CONF_TEMPLATE, local_conf, context)
                self.docker.copy_into(str(local_conf), ref, SANDBOX_CONF_PATH)
            self.docker.exec(ref, ["a2enconf", "sandbox"])
            self.docker.exec(ref, ["service", "apache2", "reload"])
        except CommandError as exc:
            LOGGER.warning("Could not relax frame headers on %s: %s", ref, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def stop(self, ref: str) -> bool:
        """Stop *ref*; return ``False`` when the runtime refused."""
        return self.docker.stop(ref, check=False).ok

    def start(self, ref: str) -> bool:
        """Start *ref* and wait the grace period; ``False`` when it failed."""
        return self.ensure_running(ref)

    def remove(self, site_slug: str) -> list[str]:
        """Remove containers and network for *site_slug* and release its port.

        Returns the names of resources that could not be removed.
        """
        names = ResourceNames.for_slug(site_slug)
        leftovers: list[str] = []
        for container in (names.app_container, names.db_container):
            if not self.docker.remove(container, force=True, check=False).ok:
                leftovers.append(container)
        if not self.networks.remove_network(names.network):
            leftovers.append(names.network)
        try:
            self.ports.release(site_slug)
        except PortsRegistryError as exc:
            LOGGER.debug("no port to release for %s: %s", site_slug, exc)
        with self._states_lock:
            self._states[names.app_container] = LifecycleState.ABSENT
        if self.store.get(site_slug) is not None:

            def deactivate(site: SiteInstance) -> None:
                site.active = False
                site.port = None

            self.store.modify(site_slug, deactivate)
        return leftovers


__all__ = ["LifecycleState", "ReuseStatus", "SiteContainerManager", "SiteSpec"]
