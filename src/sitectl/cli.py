"""Typer-powered command line interface for ``sitectl``.

Commands share one :class:`RuntimeContext` built from the layered
configuration. Every command runs inside a structured logger operation so the
outcome lands in ``operations.jsonl`` alongside the console output.
"""
from __future__ import annotations

import json
import textwrap
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .content import StructureApplier, validate_structure
from .coordinator import GenerationOutcome, PreviewReuseCoordinator
from .errors import SitectlError, StructureValidationError
from .exit_codes import ExitCode
from .health import AlertDispatcher, HealthMonitor, HealthProbe, SweepGuard
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import AdminIdentity, SiteInstance, SiteRequest, StructureSpec, slugify
from .ports import PortsRegistry, PortsRegistryError
from .providers import DockerClient, WPCli
from .provisioning import (
    BootstrapAutomator,
    DatabaseProvisioner,
    NetworkManager,
    SiteContainerManager,
    SiteSpec,
    ThemeCatalog,
    ThemeInstaller,
)
from .runner import SubprocessRunner, describe_failure
from .state import RegistrySiteStore, StateRegistry, StateRegistryError
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sitectl's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of a table.")
OWNER_OPTION = typer.Option(None, "--owner", help="Identifier of the user owning the site.")
THEME_OPTION = typer.Option(None, "--theme", help="Theme slug from the catalog.")
LOCALE_OPTION = typer.Option(None, "--locale", help="Site locale (defaults to config).")
ADMIN_EMAIL_OPTION = typer.Option(
    "admin@example.com", "--admin-email", help="Administrator e-mail address."
)
ADMIN_PASSWORD_OPTION = typer.Option(
    None,
    "--admin-password",
    help="Administrator password (generated on first install when omitted).",
)
STRUCTURE_OPTION = typer.Option(
    None,
    "--structure",
    dir_okay=False,
    exists=True,
    help="YAML or JSON file describing pages and menu.",
)
CONTEXT_OPTION = typer.Option(
    None,
    "--context",
    metavar="KEY=VALUE",
    help="Business context passed to content generation (repeatable).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Per-tenant WordPress site provisioning and monitoring.

        Sites run as a database container plus an application container on a
        private network; content and health checks go through WP-CLI and the
        site's health endpoint.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    store: RegistrySiteStore
    ports: PortsRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    docker: DockerClient
    wp: WPCli
    containers: SiteContainerManager
    bootstrap: BootstrapAutomator
    themes: ThemeInstaller
    structure: StructureApplier
    alerts: AlertDispatcher
    coordinator: PreviewReuseCoordinator

    def build_monitor(self) -> HealthMonitor:
        """Return a health monitor wired to the configured thresholds."""
        health = self.config.health
        return HealthMonitor(
            self.store,
            HealthProbe(self.config.base_url, timeout=health.request_timeout),
            alerts=self.alerts,
            failure_threshold=health.failure_threshold,
            interval=health.interval,
            max_concurrency=health.max_concurrency,
        )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    registry = StateRegistry(config.registry_dir)
    registry.ensure_root()
    store = RegistrySiteStore(registry)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    ports_registry = PortsRegistry(registry=registry)

    runner = SubprocessRunner(default_timeout=float(config.timeouts.command))
    docker = DockerClient(runner, docker_bin=config.docker.bin)
    wp = WPCli(docker)
    database = DatabaseProvisioner(docker, image=config.docker.db_image)
    bootstrap = BootstrapAutomator(
        wp,
        docker,
        database,
        templates,
        base_url=config.base_url,
        db_max_attempts=config.readiness.max_attempts,
        db_backoff=config.readiness.backoff,
    )
    containers = SiteContainerManager(
        docker=docker,
        wp=wp,
        networks=NetworkManager(docker),
        database=database,
        bootstrap=bootstrap,
        ports=ports_registry,
        store=store,
        templates=templates,
        app_image=config.docker.app_image,
        wp_cli_url=config.docker.wp_cli_url,
        base_url=config.base_url,
        db_user=config.database.user,
        db_password=config.database.password,
        grace_period=config.timeouts.grace_period,
        extended_grace_period=config.timeouts.extended_grace_period,
        readiness_attempts=config.readiness.max_attempts,
        readiness_backoff=config.readiness.backoff,
    )
    themes = ThemeInstaller(wp, ThemeCatalog(registry))
    structure = StructureApplier(wp)
    alerts = AlertDispatcher()
    coordinator = PreviewReuseCoordinator(
        containers,
        bootstrap,
        themes,
        structure,
        store,
        sites_dir=config.sites_dir,
        sandbox_dir=config.sandbox_dir,
        base_url=config.base_url,
        alerts=alerts,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        store=store,
        ports=ports_registry,
        locks=locks,
        logger=logger,
        templates=templates,
        docker=docker,
        wp=wp,
        containers=containers,
        bootstrap=bootstrap,
        themes=themes,
        structure=structure,
        alerts=alerts,
        coordinator=coordinator,
    )
    ctx.obj = runtime
    ctx.call_on_close(alerts.close)
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the sitectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    try:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    except (ConfigError, StateRegistryError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"sitectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: Exception) -> NoReturn:
    """Map *exc* to its exit code and terminate the command."""
    if isinstance(exc, SitectlError):
        _command_error(op, str(exc), rc=int(exc.exit_code), errors=[describe_failure(exc)])
    if isinstance(exc, LockTimeoutError | StateRegistryError):
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))


def _validate_slug(value: str) -> str:
    slug = slugify(value)
    if not slug:
        raise typer.BadParameter(f"'{value}' does not yield a valid site slug.")
    return slug


def _require_site(runtime: RuntimeContext, slug: str, op: OperationScope) -> SiteInstance:
    site = runtime.store.get(slug)
    if site is None:
        _command_error(op, f"Site '{slug}' is not registered.", rc=int(ExitCode.VALIDATION))
    return site


def _refresh_health(runtime: RuntimeContext, op: OperationScope) -> None:
    """Run the interval-guarded on-demand sweep before a listing."""
    guard = SweepGuard(runtime.build_monitor(), registry=runtime.registry)
    try:
        with runtime.locks.global_lock() as handle:
            op.set_lock_wait_ms(handle.wait_ms)
            report = guard.maybe_sweep()
    except LockTimeoutError as exc:
        op.add_step("health.refresh", status="skipped", detail={"reason": str(exc)})
        return
    except StateRegistryError as exc:
        _fail(op, exc)
    if report is None:
        op.add_step("health.refresh", status="skipped", detail={"reason": "interval"})
        return
    op.add_step(
        "health.refresh",
        detail={"checked": report.checked, "errors": sorted(report.errors)},
    )


def _parse_context(items: Sequence[str] | None) -> dict[str, str]:
    context: dict[str, str] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Context entry '{item}' must look like KEY=VALUE.")
        context[key.strip()] = value.strip()
    return context


def _load_structure(path: Path | None) -> StructureSpec | None:
    if path is None:
        return None
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise StructureValidationError(f"Could not read structure file {path}: {exc}") from exc
    return validate_structure(raw)


def _site_request(
    runtime: RuntimeContext,
    name: str,
    *,
    owner: str | None,
    theme: str | None,
    locale: str | None,
    admin_email: str,
    admin_password: str | None,
    structure: StructureSpec | None,
    context: Mapping[str, Any],
) -> SiteRequest:
    return SiteRequest(
        site_name=name,
        owner_user_id=owner,
        theme_slug=theme,
        locale=locale or runtime.config.default_locale,
        admin=AdminIdentity(email=admin_email, password=admin_password),
        structure=structure,
        business_context=dict(context),
    )


def _render_outcome(outcome: GenerationOutcome, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=outcome.to_dict())
        return
    mode = "reused preview" if outcome.reused else "new instance"
    console.print(f"[green]{outcome.site_slug}[/green] ready ({mode})")
    console.print(f"  Site URL: {outcome.site_url}")
    console.print(f"  Admin URL: {outcome.admin_url}")
    if outcome.theme_result is not None:
        console.print(
            f"  Theme: {outcome.theme_result.slug} ({outcome.theme_result.source.value})"
        )
    if outcome.structure_result is not None:
        result = outcome.structure_result
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Page", style="bold")
        table.add_column("Slug")
        table.add_column("Status")
        table.add_column("ID")
        for page in result.pages:
            status = "[green]success[/green]" if page.ok else f"[red]error[/red] {page.error}"
            table.add_row(page.title, page.slug, status, str(page.id or ""))
        console.print(table)
        console.print(f"  Menu: {'created' if result.menu else 'not created'}")
        if result.menu_error:
            console.print(f"  [yellow]Menu warning:[/yellow] {result.menu_error}")


def _outcome_warnings(outcome: GenerationOutcome) -> list[str]:
    warnings: list[str] = []
    result = outcome.structure_result
    if result is None:
        return warnings
    warnings.extend(f"page {page.slug}: {page.error}" for page in result.failed_pages)
    if result.menu_error:
        warnings.append(f"menu: {result.menu_error}")
    if not result.cache_flushed:
        warnings.append("cache flush failed")
    return warnings


site_app = typer.Typer(help="Provision and manage tenant sites.")
structure_app = typer.Typer(help="Apply content structures to sites.")
theme_app = typer.Typer(help="Install and activate themes.")
health_app = typer.Typer(help="Probe and monitor site health.")
ports_app = typer.Typer(help="Inspect port reservations.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(site_app, name="site")
app.add_typer(structure_app, name="structure")
app.add_typer(theme_app, name="theme")
app.add_typer(health_app, name="health")
app.add_typer(ports_app, name="ports")
app.add_typer(config_app, name="config")


# ----------------------------------------------------------------------
# site
# ----------------------------------------------------------------------
@site_app.command("create")
def site_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Human readable site name."),
    owner: str | None = OWNER_OPTION,
    theme: str | None = THEME_OPTION,
    locale: str | None = LOCALE_OPTION,
    port: int | None = typer.Option(None, "--port", help="Request a specific host port."),
    admin_email: str = ADMIN_EMAIL_OPTION,
    admin_password: str | None = ADMIN_PASSWORD_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision network, database and application container for a site."""
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    args = {"name": name, "owner": owner, "theme": theme, "locale": locale, "port": port}
    with runtime.logger.operation(
        "site create",
        args=args,
        target={"kind": "site", "slug": slug},
    ) as op:
        spec = SiteSpec(
            site_slug=slug,
            site_name=name,
            owner_user_id=owner,
            locale=locale or runtime.config.default_locale,
            admin=AdminIdentity(email=admin_email, password=admin_password),
            theme_slug=theme,
            requested_port=port,
        )
        try:
            with runtime.locks.mutate_sites([slug]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                site = runtime.containers.create(spec)
                op.add_step("site.create", detail={"port": site.port})
        except (SitectlError, LockTimeoutError, StateRegistryError) as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data=site.to_dict())
        else:
            console.print(
                f"Site [bold]{slug}[/bold] is {site.status.value} on "
                f"{runtime.config.base_url}:{site.port}"
            )
        op.success("Site provisioned.", changed=1, context={"port": site.port})


def _run_generation(
    ctx: typer.Context,
    operation: str,
    name: str,
    *,
    owner: str | None,
    theme: str | None,
    locale: str | None,
    admin_email: str,
    admin_password: str | None,
    structure_file: Path | None,
    context_items: Sequence[str] | None,
    json_output: bool,
    force_refresh: bool = False,
) -> None:
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    context = _parse_context(context_items)
    args = {
        "name": name,
        "owner": owner,
        "theme": theme,
        "locale": locale,
        "structure": str(structure_file) if structure_file else None,
        "context": context,
        "force_refresh": force_refresh,
    }
    with runtime.logger.operation(
        operation,
        args=args,
        target={"kind": "site", "slug": slug},
    ) as op:
        try:
            structure = _load_structure(structure_file)
            request = _site_request(
                runtime,
                name,
                owner=owner,
                theme=theme,
                locale=locale,
                admin_email=admin_email,
                admin_password=admin_password,
                structure=structure,
                context=context,
            )
            with runtime.locks.site_lock(slug) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                if operation == "site preview":
                    outcome = runtime.coordinator.preview(request, force_refresh=force_refresh)
                else:
                    outcome = runtime.coordinator.generate(request)
        except (SitectlError, LockTimeoutError, StateRegistryError) as exc:
            _fail(op, exc)

        op.add_step("site.reuse" if outcome.reused else "site.provision")
        _render_outcome(outcome, json_output=json_output)
        warnings = _outcome_warnings(outcome)
        if warnings:
            op.warning(
                "Site ready with content warnings.",
                warnings=warnings,
                changed=1,
                context=outcome.to_dict(),
            )
        else:
            op.success("Site ready.", changed=1, context=outcome.to_dict())


@site_app.command("generate")
def site_generate(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Human readable site name."),
    owner: str | None = OWNER_OPTION,
    theme: str | None = THEME_OPTION,
    locale: str | None = LOCALE_OPTION,
    admin_email: str = ADMIN_EMAIL_OPTION,
    admin_password: str | None = ADMIN_PASSWORD_OPTION,
    structure_file: Path | None = STRUCTURE_OPTION,
    context_items: list[str] | None = CONTEXT_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Emit the outcome as JSON."),
) -> None:
    """Produce the final site, reusing a ready preview instance when present."""
    _run_generation(
        ctx,
        "site generate",
        name,
        owner=owner,
        theme=theme,
        locale=locale,
        admin_email=admin_email,
        admin_password=admin_password,
        structure_file=structure_file,
        context_items=context_items,
        json_output=json_output,
    )


@site_app.command("preview")
def site_preview(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Human readable site name."),
    owner: str | None = OWNER_OPTION,
    theme: str | None = THEME_OPTION,
    locale: str | None = LOCALE_OPTION,
    admin_email: str = ADMIN_EMAIL_OPTION,
    admin_password: str | None = ADMIN_PASSWORD_OPTION,
    structure_file: Path | None = STRUCTURE_OPTION,
    context_items: list[str] | None = CONTEXT_OPTION,
    force_refresh: bool = typer.Option(
        False,
        "--force-refresh",
        help="Reapply the structure even when the preview instance already exists.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit the outcome as JSON."),
) -> None:
    """Provision or reuse the preview instance and apply the structure."""
    _run_generation(
        ctx,
        "site preview",
        name,
        owner=owner,
        theme=theme,
        locale=locale,
        admin_email=admin_email,
        admin_password=admin_password,
        structure_file=structure_file,
        context_items=context_items,
        json_output=json_output,
        force_refresh=force_refresh,
    )


@site_app.command("reuse")
def site_reuse(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site name or slug."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Check whether an existing instance can be reused and report its URL."""
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    ref = SiteInstance.new(slug).app_ref
    with runtime.logger.operation(
        "site reuse",
        args={"name": name, "json": json_output},
        target={"kind": "site", "slug": slug},
    ) as op:
        try:
            status = runtime.containers.prepare_for_reuse(ref)
        except SitectlError as exc:
            _fail(op, exc)
        payload = {
            "site_slug": slug,
            "ready": status.ready,
            "port": status.port,
            "site_url": status.site_url,
            "error": status.error,
        }
        if json_output:
            console.print_json(data=payload)
        elif status.ready:
            console.print(f"[green]{slug}[/green] can be reused at {status.site_url}")
        else:
            console.print(f"[yellow]{slug}[/yellow] cannot be reused: {status.error}")
        if not status.ready:
            op.error(status.error or "Instance not reusable.", rc=int(ExitCode.PROVIDER))
            raise typer.Exit(code=int(ExitCode.PROVIDER))
        op.success("Instance ready for reuse.", changed=0, context=payload)


@site_app.command("status")
def site_status(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Limit output to one site."),
    refresh: bool = typer.Option(
        True,
        "--refresh/--no-refresh",
        help="Sweep site health first when the last sweep is older than health.interval.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show registered sites with their lifecycle and health state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site status",
        args={"name": name, "refresh": refresh, "json": json_output},
        target={"kind": "site", "slug": name or "*"},
    ) as op:
        slug = _validate_slug(name) if name is not None else None
        if slug is not None:
            _require_site(runtime, slug, op)
        if refresh:
            _refresh_health(runtime, op)
        if slug is not None:
            sites = [_require_site(runtime, slug, op)]
        else:
            sites = runtime.store.list_sites()

        if json_output:
            console.print_json(data={"sites": [site.to_dict() for site in sites]})
            op.success("Reported site status as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Site", style="bold")
        table.add_column("Status")
        table.add_column("Active")
        table.add_column("Port")
        table.add_column("Health")
        table.add_column("Failed checks")
        table.add_column("Last check")

        if not sites:
            table.add_row("(none)", "", "", "", "", "", "")
        for site in sites:
            table.add_row(
                site.site_slug,
                site.status.value,
                "yes" if site.active else "no",
                str(site.port or ""),
                site.health_status.value,
                str(site.failed_checks_count),
                site.last_health_check.isoformat() if site.last_health_check else "",
            )
        console.print(table)
        op.success("Reported site status.", changed=0)


@site_app.command("start")
def site_start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site name or slug."),
) -> None:
    """Start a stopped site container."""
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    with runtime.logger.operation(
        "site start",
        args={"name": name},
        target={"kind": "site", "slug": slug},
    ) as op:
        site = _require_site(runtime, slug, op)
        try:
            with runtime.locks.mutate_sites([slug]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                done = runtime.containers.start(site.app_ref)
        except LockTimeoutError as exc:
            _fail(op, exc)
        if not done:
            _command_error(op, f"Container {site.app_ref} could not be started.", rc=4)
        console.print(f"Started [bold]{site.app_ref}[/bold].")
        op.success("Site started.", changed=1)


@site_app.command("stop")
def site_stop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site name or slug."),
) -> None:
    """Stop a running site container."""
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    with runtime.logger.operation(
        "site stop",
        args={"name": name},
        target={"kind": "site", "slug": slug},
    ) as op:
        site = _require_site(runtime, slug, op)
        try:
            with runtime.locks.mutate_sites([slug]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                done = runtime.containers.stop(site.app_ref)
        except LockTimeoutError as exc:
            _fail(op, exc)
        if not done:
            _command_error(op, f"Container {site.app_ref} could not be stopped.", rc=4)
        console.print(f"Stopped [bold]{site.app_ref}[/bold].")
        op.success("Site stopped.", changed=1)


@site_app.command("remove")
def site_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site name or slug."),
    purge: bool = typer.Option(
        False,
        "--purge",
        help="Also delete the registry record instead of marking it inactive.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        help="Skip confirmation prompt and proceed non-interactively.",
    ),
) -> None:
    """Remove a site's containers and network and release its port."""
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    with runtime.logger.operation(
        "site remove",
        args={"name": name, "purge": purge},
        target={"kind": "site", "slug": slug},
    ) as op:
        _require_site(runtime, slug, op)
        if not yes and not typer.confirm(f"Remove site '{slug}' and its containers?"):
            console.print("[yellow]Removal cancelled.[/yellow]")
            op.warning("Site removal cancelled by operator.", warnings=["user-cancelled"])
            return
        try:
            with runtime.locks.mutate_sites([slug]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                leftovers = runtime.containers.remove(slug)
                if purge:
                    runtime.store.remove(slug)
        except (SitectlError, LockTimeoutError, StateRegistryError) as exc:
            _fail(op, exc)

        if leftovers:
            console.print(f"[yellow]Could not remove:[/yellow] {', '.join(leftovers)}")
            op.warning(
                "Site removed with leftovers.",
                warnings=[f"leftover: {item}" for item in leftovers],
                changed=1,
            )
            return
        console.print(f"Removed site [bold]{slug}[/bold].")
        op.success("Site removed.", changed=1)


@site_app.command("pages")
def site_pages(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site name or slug."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List published pages of a site."""
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    with runtime.logger.operation(
        "site pages",
        args={"name": name, "json": json_output},
        target={"kind": "site", "slug": slug},
    ) as op:
        site = _require_site(runtime, slug, op)
        try:
            pages = runtime.structure.list_pages(site.app_ref)
        except SitectlError as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(
                data={
                    "pages": [
                        {"id": page.id, "title": page.title, "slug": page.slug, "url": page.url}
                        for page in pages
                    ]
                }
            )
            op.success("Reported pages as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Title")
        table.add_column("Slug")
        table.add_column("URL")
        if not pages:
            table.add_row("(none)", "", "", "")
        for page in pages:
            table.add_row(str(page.id), page.title, page.slug, page.url)
        console.print(table)
        op.success("Reported pages.", changed=0)


# ----------------------------------------------------------------------
# structure / theme
# ----------------------------------------------------------------------
@structure_app.command("apply")
def structure_apply(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site name or slug."),
    structure_file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="YAML or JSON structure file."
    ),
    context_items: list[str] | None = CONTEXT_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Emit the result as JSON."),
) -> None:
    """Create pages, front page and menu from a structure file."""
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    context = _parse_context(context_items)
    with runtime.logger.operation(
        "structure apply",
        args={"name": name, "structure": str(structure_file), "context": context},
        target={"kind": "site", "slug": slug},
    ) as op:
        site = _require_site(runtime, slug, op)
        try:
            structure = _load_structure(structure_file)
            assert structure is not None
            with runtime.locks.site_lock(slug) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = runtime.structure.apply(site.app_ref, structure, context)

                def mark(record: SiteInstance) -> None:
                    record.content.structure_applied = True

                runtime.store.modify(slug, mark)
        except (SitectlError, LockTimeoutError, StateRegistryError) as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data=result.to_dict())
        else:
            for page in result.pages:
                marker = "[green]ok[/green]" if page.ok else f"[red]error[/red] {page.error}"
                console.print(f"  {page.slug}: {marker}")
            console.print(f"Menu: {'created' if result.menu else 'not created'}")
        warnings = [f"page {page.slug}: {page.error}" for page in result.failed_pages]
        if result.menu_error:
            warnings.append(f"menu: {result.menu_error}")
        if warnings:
            op.warning(
                "Structure applied with errors.",
                warnings=warnings,
                changed=len(result.pages) - len(result.failed_pages),
                context=result.to_dict(),
            )
        else:
            op.success("Structure applied.", changed=len(result.pages), context=result.to_dict())


@theme_app.command("apply")
def theme_apply(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site name or slug."),
    theme: str = typer.Argument(..., help="Theme slug from the catalog."),
) -> None:
    """Install (when needed) and activate a catalog theme on a site."""
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    with runtime.logger.operation(
        "theme apply",
        args={"name": name, "theme": theme},
        target={"kind": "site", "slug": slug},
    ) as op:
        site = _require_site(runtime, slug, op)
        try:
            with runtime.locks.site_lock(slug) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = runtime.themes.apply(site.app_ref, theme)

                def mark(record: SiteInstance) -> None:
                    record.theme_slug = result.slug
                    record.content.theme_applied = True

                runtime.store.modify(slug, mark)
        except (SitectlError, LockTimeoutError, StateRegistryError) as exc:
            _fail(op, exc)
        console.print(f"Theme [bold]{result.slug}[/bold] active ({result.source.value}).")
        op.success("Theme applied.", changed=1, context={"source": result.source.value})


# ----------------------------------------------------------------------
# health
# ----------------------------------------------------------------------
@health_app.command("check")
def health_check(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site name or slug."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Probe one site and record the debounced result."""
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    with runtime.logger.operation(
        "health check",
        args={"name": name, "json": json_output},
        target={"kind": "site", "slug": slug},
    ) as op:
        site = _require_site(runtime, slug, op)
        result = runtime.build_monitor().check_site(site)
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            console.print(
                f"{slug}: {result.status.value} "
                f"(failed checks: {result.failed_checks_count})"
            )
        op.success("Health check recorded.", changed=1, context=result.to_dict())


@health_app.command("sweep")
def health_sweep(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Probe every active site once."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "health sweep",
        args={"json": json_output},
        target={"kind": "sites"},
    ) as op:
        report = runtime.build_monitor().sweep()
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Site", style="bold")
            table.add_column("Status")
            table.add_column("Failed checks")
            table.add_column("Response (ms)")
            if not report.results and not report.errors:
                table.add_row("(none)", "", "", "")
            for result in report.results:
                table.add_row(
                    result.site_slug,
                    result.status.value,
                    str(result.failed_checks_count),
                    str(result.outcome.response_time_ms or ""),
                )
            for slug, error in report.errors.items():
                table.add_row(slug, f"[red]error[/red] {error}", "", "")
            console.print(table)
        if report.errors:
            op.warning(
                "Health sweep finished with errors.",
                warnings=[f"{slug}: {error}" for slug, error in report.errors.items()],
                changed=report.checked,
            )
            return
        op.success("Health sweep finished.", changed=report.checked)


@health_app.command("watch")
def health_watch(
    ctx: typer.Context,
    interval: float | None = typer.Option(
        None,
        "--interval",
        min=1.0,
        help="Seconds between sweeps (defaults to health.interval).",
    ),
) -> None:
    """Sweep on a schedule until interrupted."""
    runtime = _get_runtime(ctx)
    monitor = runtime.build_monitor()
    if interval is not None:
        monitor.interval = interval
    stop_event = threading.Event()
    with runtime.logger.operation(
        "health watch",
        args={"interval": monitor.interval},
        target={"kind": "sites"},
    ) as op:
        console.print(f"Sweeping every {monitor.interval:g}s; press Ctrl+C to stop.")
        try:
            monitor.run_forever(stop_event)
        except KeyboardInterrupt:
            stop_event.set()
            console.print("[yellow]Stopped.[/yellow]")
        op.success("Health watch stopped.", changed=0)


@health_app.command("history")
def health_history(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site name or slug."),
    limit: int = typer.Option(20, "--limit", min=1, help="Number of records to show."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show recorded health observations for a site."""
    runtime = _get_runtime(ctx)
    slug = _validate_slug(name)
    with runtime.logger.operation(
        "health history",
        args={"name": name, "limit": limit, "json": json_output},
        target={"kind": "site", "slug": slug},
    ) as op:
        _require_site(runtime, slug, op)
        records = runtime.store.health_history(slug, limit=limit)
        if json_output:
            console.print_json(data={"records": [record.to_dict() for record in records]})
            op.success("Reported health history as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Checked at", style="bold")
        table.add_column("Status")
        table.add_column("Failed checks")
        table.add_column("Response (ms)")
        table.add_column("CPU")
        table.add_column("Memory (MB)")
        if not records:
            table.add_row("(none)", "", "", "", "", "")
        for record in records:
            metrics = record.resource_metrics
            table.add_row(
                record.checked_at.isoformat(),
                record.status.value,
                str(record.failed_checks_count),
                str(record.response_time_ms if record.response_time_ms is not None else ""),
                str(metrics.cpu if metrics.cpu is not None else ""),
                str(metrics.mem_mb if metrics.mem_mb is not None else ""),
            )
        console.print(table)
        op.success("Reported health history.", changed=0)


# ----------------------------------------------------------------------
# ports / config
# ----------------------------------------------------------------------
@ports_app.command("list")
def ports_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit port reservations as JSON instead of a table.",
    ),
) -> None:
    """List reserved site ports."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        try:
            entries = runtime.ports.list_entries()
        except (PortsRegistryError, StateRegistryError) as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"ports": entries})
            op.success("Reported port reservations as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Site", style="bold")
        table.add_column("Port")

        if not entries:
            table.add_row("(none)", "")
        else:
            for entry in entries:
                table.add_row(entry["name"], str(entry["port"]))

        console.print(table)
        op.success("Reported port reservations.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
