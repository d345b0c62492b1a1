"""WordPress bootstrap through WP-CLI.

:class:`BootstrapAutomator` takes a running application container with the
``wp`` toolchain present and turns it into an installed, localised site:
``wp-config.php`` pointing at the site database, core install, language pack,
runtime plugins and the health endpoint plugin that the monitor polls.
"""
from __future__ import annotations

import logging
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .. import __version__
from ..errors import CommandError, ProvisioningError
from ..models import AdminIdentity, DatabaseCredentials
from ..providers.docker import DockerClient
from ..providers.wpcli import WPCli
from ..templates import TemplateEngine
from .database import DatabaseProvisioner

LOGGER = logging.getLogger(__name__)

RUNTIME_PLUGINS = ("jwt-authentication-for-wp-rest-api", "classic-editor")
PERMALINK_STRUCTURE = "/%postname%/"
HEALTH_PLUGIN_SLUG = "custom-healthcheck"
HEALTH_PLUGIN_DIR = f"/var/www/html/wp-content/plugins/{HEALTH_PLUGIN_SLUG}"
HEALTH_PLUGIN_TEMPLATE = "plugins/custom-healthcheck.php.j2"
HEALTH_ROUTE_NAMESPACE = "custom"
HEALTH_ROUTE_PATH = "healthcheck"


@dataclass(frozen=True, slots=True)
class BootstrapResult:
    """Outcome of :meth:`BootstrapAutomator.configure`."""

    installed_now: bool
    locale: str
    admin_password: str | None = None


@dataclass(slots=True)
class BootstrapAutomator:
    """Drive WP-CLI to install and configure a site."""

    wp: WPCli
    docker: DockerClient
    database: DatabaseProvisioner
    templates: TemplateEngine
    base_url: str = "http://localhost"
    db_max_attempts: int = 30
    db_backoff: float = 2.0

    def configure(
        self,
        ref: str,
        db_ref: str,
        creds: DatabaseCredentials,
        site_name: str,
        locale: str,
        port: int,
        admin: AdminIdentity | None = None,
    ) -> BootstrapResult:
        """Write the config, install core when needed and activate *locale*."""
        admin = admin or AdminIdentity()
        self.database.wait_ready(
            db_ref, creds, max_attempts=self.db_max_attempts, backoff=self.db_backoff
        )

        try:
            self.wp.run(
                ref,
                [
                    "config",
                    "create",
                    f"--dbname={creds.database}",
                    f"--dbuser={creds.user}",
                    f"--dbpass={creds.password}",
                    f"--dbhost={db_ref}",
                    f"--locale={locale}",
                    "--force",
                ],
            )
        except CommandError as exc:
            LOGGER.warning("wp config create failed on %s (config may already exist): %s", ref, exc)

        installed_now = False
        password: str | None = None
        if not self.wp.is_installed(ref):
            password = admin.password or secrets.token_urlsafe(16)
            try:
                self.wp.run(
                    ref,
                    [
                        "core",
                        "install",
                        f"--url={self.base_url}:{port}",
                        f"--title={site_name}",
                        f"--admin_user={admin.user}",
                        f"--admin_password={password}",
                        f"--admin_email={admin.email}",
                        f"--locale={locale}",
                        "--skip-email",
                    ],
                )
            except CommandError as exc:
                raise ProvisioningError(f"WordPress core install failed on {ref}: {exc}") from exc
            installed_now = True
        else:
            LOGGER.info("WordPress already installed on %s; skipping core install", ref)

        try:
            self.wp.run(ref, ["language", "core", "install", locale, "--activate"])
            self.wp.option_update(ref, "WPLANG", locale)
        except CommandError as exc:
            raise ProvisioningError(f"Failed to activate locale {locale} on {ref}: {exc}") from exc

        return BootstrapResult(installed_now=installed_now, locale=locale, admin_password=password)

    def configure_final(self, ref: str, site_url: str, admin: AdminIdentity) -> None:
        """Point ``home``/``siteurl`` at *site_url* and set the admin account."""
        try:
            self.wp.option_update(ref, "home", site_url)
            self.wp.option_update(ref, "siteurl", site_url)
        except CommandError as exc:
            raise ProvisioningError(f"Failed to set site URL on {ref}: {exc}") from exc
        self.update_admin_credentials(ref, admin)

    def update_admin_credentials(self, ref: str, admin: AdminIdentity) -> bool:
        """Update the first user's email, display name and password when given."""
        args = [
            "user",
            "update",
            "1",
            f"--user_email={admin.email}",
            f"--display_name={admin.display_name}",
        ]
        if admin.password:
            args.append(f"--user_pass={admin.password}")
        try:
            self.wp.run(ref, args)
        except CommandError as exc:
            LOGGER.warning("Failed to update admin credentials on %s: %s", ref, exc)
            return False
        return True

    def install_runtime_plugins(self, ref: str) -> None:
        """Install and activate the REST auth and classic editor plugins."""
        try:
            for plugin in RUNTIME_PLUGINS:
                self.wp.run(ref, ["plugin", "install", plugin, "--activate"])
            self.wp.run(ref, ["rewrite", "structure", PERMALINK_STRUCTURE])
        except CommandError as exc:
            raise ProvisioningError(f"Failed to install runtime plugins on {ref}: {exc}") from exc

    def install_health_endpoint(self, ref: str, site_slug: str) -> None:
        """Render the health plugin, copy it into *ref* and activate it."""
        context = {
            "plugin_title": "Custom Healthcheck",
            "site_slug": site_slug,
            "version": __version__,
            "route_namespace": HEALTH_ROUTE_NAMESPACE,
            "route_path": HEALTH_ROUTE_PATH,
        }
        with tempfile.TemporaryDirectory(prefix="sitectl-plugin-") as tmp_dir:
            local_file = Path(tmp_dir) / f"{HEALTH_PLUGIN_SLUG}.php"
            self.templates.render_to_path(HEALTH_PLUGIN_TEMPLATE, local_file, context, mode=0o644)
            try:
                self.docker.exec(ref, ["mkdir", "-p", HEALTH_PLUGIN_DIR])
                self.docker.copy_into(
                    str(local_file), ref, f"{HEALTH_PLUGIN_DIR}/{HEALTH_PLUGIN_SLUG}.php"
                )
                self.wp.run(ref, ["plugin", "activate", HEALTH_PLUGIN_SLUG])
            except CommandError as exc:
                raise ProvisioningError(
                    f"Failed to install the health endpoint on {ref}: {exc}"
                ) from exc
        LOGGER.info("health endpoint active on %s", ref)


__all__ = ["BootstrapAutomator", "BootstrapResult", "HEALTH_ROUTE_NAMESPACE", "HEALTH_ROUTE_PATH"]
