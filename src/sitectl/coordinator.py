"""Site generation and preview, reusing preview instances when possible.

``generate`` turns a running preview instance into the final site without
re-provisioning it; when no usable preview exists it provisions a new one.
``preview`` provisions (or reuses) the instance the editor works against.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .content.blocks import default_structure
from .content.structure import StructureApplier, StructureResult
from .errors import ProvisioningError, SitectlError, ValidationError
from .health.alerts import SITE_CREATED, AlertDispatcher, SiteAlert
from .models import (
    ContentFlags,
    ResourceNames,
    SiteInstance,
    SiteRequest,
    SiteStatus,
    StructureSpec,
    utcnow,
)
from .provisioning.bootstrap import BootstrapAutomator
from .provisioning.containers import SiteContainerManager, SiteSpec
from .provisioning.themes import ThemeApplyResult, ThemeInstaller
from .state import SiteStore

LOGGER = logging.getLogger(__name__)

SITE_CONFIG_NAME = "site-config.json"


class QuotaGuard(Protocol):
    """Raises :class:`QuotaExceededError` when *request* is over its limits."""

    def check(self, request: SiteRequest) -> None:
        """Validate *request* before any provisioning starts."""


class SandboxApplier(Protocol):
    """Applies editor modifications saved in a sandbox directory."""

    def apply(self, ref: str, sandbox_path: Path, theme_slug: str | None, site_slug: str) -> bool:
        """Return ``True`` when the saved modifications were applied."""


class UnlimitedQuota:
    """:class:`QuotaGuard` that accepts every request."""

    def check(self, request: SiteRequest) -> None:
        return None


class NoopSandboxApplier:
    """:class:`SandboxApplier` that accepts saved files without changing the site."""

    def apply(self, ref: str, sandbox_path: Path, theme_slug: str | None, site_slug: str) -> bool:
        LOGGER.info("sandbox modifications for %s found in %s", site_slug, sandbox_path)
        return True


@dataclass(slots=True)
class GenerationOutcome:
    """What :meth:`PreviewReuseCoordinator.generate` produced."""

    site_slug: str
    port: int | None
    site_url: str
    admin_url: str
    reused: bool
    sandbox_applied: bool = False
    structure_result: StructureResult | None = None
    theme_result: ThemeApplyResult | None = None
    cleaned_pages: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "site_slug": self.site_slug,
            "port": self.port,
            "site_url": self.site_url,
            "admin_url": self.admin_url,
            "reused": self.reused,
            "sandbox_applied": self.sandbox_applied,
            "structure": self.structure_result.to_dict() if self.structure_result else None,
            "theme": (
                {"slug": self.theme_result.slug, "source": self.theme_result.source.value}
                if self.theme_result
                else None
            ),
            "cleaned_pages": list(self.cleaned_pages),
        }


class PreviewReuseCoordinator:
    """Drive provisioning, bootstrap, theme and structure for one request."""

    def __init__(
        self,
        containers: SiteContainerManager,
        bootstrap: BootstrapAutomator,
        themes: ThemeInstaller,
        structure: StructureApplier,
        store: SiteStore,
        *,
        sites_dir: Path,
        sandbox_dir: Path,
        base_url: str,
        quota: QuotaGuard | None = None,
        sandbox: SandboxApplier | None = None,
        alerts: AlertDispatcher | None = None,
    ) -> None:
        self.containers = containers
        self.bootstrap = bootstrap
        self.themes = themes
        self.structure = structure
        self.store = store
        self.sites_dir = Path(sites_dir)
        self.sandbox_dir = Path(sandbox_dir)
        self.base_url = base_url.rstrip("/")
        self.quota = quota or UnlimitedQuota()
        self.sandbox = sandbox or NoopSandboxApplier()
        self.alerts = alerts

    # ------------------------------------------------------------------
    # Final site
    # ------------------------------------------------------------------
    def generate(self, request: SiteRequest) -> GenerationOutcome:
        """Produce the final site for *request*, reusing a preview when ready."""
        slug = _require_slug(request)
        self.quota.check(request)
        names = ResourceNames.for_slug(slug)
        ref = names.app_container

        reuse = self.containers.prepare_for_reuse(ref)
        if reuse.ready:
            LOGGER.info("reusing preview instance %s on port %s", ref, reuse.port)
            outcome = self._finish_reused(request, slug, ref, reuse.port)
        else:
            LOGGER.info("no reusable instance for %s (%s); provisioning", slug, reuse.error)
            outcome = self._finish_new(request, slug, ref)

        self.structure.flush(ref)
        self._save_site_config(request, outcome)
        self._announce(request, slug, outcome.port)
        return outcome

    def _finish_reused(
        self, request: SiteRequest, slug: str, ref: str, port: int | None
    ) -> GenerationOutcome:
        site_url = f"{self.base_url}:{port}"
        self.bootstrap.update_admin_credentials(ref, request.admin)
        sandbox_applied = self._apply_sandbox(slug, ref, request.theme_slug)
        cleaned = self.structure.cleanup_preview_homepages(ref)
        if request.structure is not None and request.structure.pages:
            LOGGER.info("structure for %s was applied during preview; not reapplying", slug)
        self._record(
            request,
            slug,
            port,
            created_from_preview=True,
            structure_applied=None,
            theme_applied=None,
        )
        return GenerationOutcome(
            site_slug=slug,
            port=port,
            site_url=site_url,
            admin_url=f"{site_url}/wp-admin",
            reused=True,
            sandbox_applied=sandbox_applied,
            cleaned_pages=cleaned,
        )

    def _finish_new(self, request: SiteRequest, slug: str, ref: str) -> GenerationOutcome:
        site = self.containers.create(self._site_spec(request, slug))
        site_url = f"{self.base_url}:{site.port}"
        self.bootstrap.configure_final(ref, site_url, request.admin)
        theme_result, structure_result = self._apply_content(request, slug, ref)
        self._record(
            request,
            slug,
            site.port,
            created_from_preview=False,
            structure_applied=structure_result is not None,
            theme_applied=theme_result is not None,
        )
        return GenerationOutcome(
            site_slug=slug,
            port=site.port,
            site_url=site_url,
            admin_url=f"{site_url}/wp-admin",
            reused=False,
            structure_result=structure_result,
            theme_result=theme_result,
        )

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------
    def preview(self, request: SiteRequest, *, force_refresh: bool = False) -> GenerationOutcome:
        """Provision or reuse the preview instance and apply the structure.

        Only an installed, reachable instance is reused; anything else,
        including an instance abandoned half-way through provisioning, is
        replaced through :meth:`SiteContainerManager.create`. The structure is
        applied on a new instance, or on a reused one when *force_refresh* is
        set.
        """
        slug = _require_slug(request)
        self.quota.check(request)
        names = ResourceNames.for_slug(slug)
        ref = names.app_container
        content_dir = self.sandbox_dir / slug
        try:
            content_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ProvisioningError(
                f"Cannot prepare sandbox directory {content_dir}: {exc}"
            ) from exc

        reuse = self.containers.prepare_for_reuse(ref)
        if reuse.ready:
            port: int | None = reuse.port
            LOGGER.info("reusing preview instance %s on port %s", ref, port)
        else:
            LOGGER.info("preview %s not reusable (%s); provisioning", ref, reuse.error)
            site = self.containers.create(self._site_spec(request, slug, content_dir=content_dir))
            port = site.port
        reused = reuse.ready

        theme_result, structure_result = self._apply_content(
            request, slug, ref, apply_structure=not reused or force_refresh
        )
        self.structure.flush(ref)
        self._record(
            request,
            slug,
            port,
            created_from_preview=None,
            structure_applied=structure_result is not None or None,
            theme_applied=theme_result is not None or None,
        )
        if not reused:
            self._announce(request, slug, port)
        site_url = f"{self.base_url}:{port}"
        return GenerationOutcome(
            site_slug=slug,
            port=port,
            site_url=site_url,
            admin_url=f"{site_url}/wp-admin",
            reused=reused,
            structure_result=structure_result,
            theme_result=theme_result,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _site_spec(
        self, request: SiteRequest, slug: str, *, content_dir: Path | None = None
    ) -> SiteSpec:
        return SiteSpec(
            site_slug=slug,
            site_name=request.site_name,
            owner_user_id=request.owner_user_id,
            locale=request.locale,
            admin=request.admin,
            theme_slug=request.theme_slug,
            content_dir=content_dir,
        )

    def _apply_content(
        self,
        request: SiteRequest,
        slug: str,
        ref: str,
        *,
        apply_structure: bool = True,
    ) -> tuple[ThemeApplyResult | None, StructureResult | None]:
        self.bootstrap.install_runtime_plugins(ref)
        self.bootstrap.install_health_endpoint(ref, slug)

        theme_result = None
        if request.theme_slug:
            theme_result = self.themes.apply(ref, request.theme_slug)

        structure_result = None
        if apply_structure:
            structure_result = self.structure.apply(
                ref, self._structure_for(request), self._content_context(request)
            )
        return theme_result, structure_result

    def _structure_for(self, request: SiteRequest) -> StructureSpec:
        """Return the requested structure, or the starter one for the business type."""
        if request.structure is not None and request.structure.pages:
            return request.structure
        business_type = request.business_context.get("business_type")
        LOGGER.info("no structure for %s; using the starter pages", request.site_name)
        return default_structure(
            request.site_name,
            str(business_type) if business_type else None,
            request.locale,
        )

    def _content_context(self, request: SiteRequest) -> dict[str, Any]:
        context: dict[str, Any] = {
            "site_name": request.site_name,
            "locale": request.locale,
        }
        context.update(request.business_context)
        return context

    def _apply_sandbox(self, slug: str, ref: str, theme_slug: str | None) -> bool:
        path = self.sandbox_dir / slug
        try:
            if not path.is_dir() or not any(path.iterdir()):
                return False
            return self.sandbox.apply(ref, path, theme_slug, slug)
        except (OSError, SitectlError) as exc:
            LOGGER.warning("sandbox modifications for %s not applied: %s", slug, exc)
            return False

    def _record(
        self,
        request: SiteRequest,
        slug: str,
        port: int | None,
        *,
        created_from_preview: bool | None,
        structure_applied: bool | None,
        theme_applied: bool | None,
    ) -> SiteInstance:
        if self.store.get(slug) is None:
            self.store.save(
                SiteInstance.new(
                    slug,
                    site_name=request.site_name,
                    owner_user_id=request.owner_user_id,
                    theme_slug=request.theme_slug,
                )
            )

        def mutate(site: SiteInstance) -> None:
            site.port = port
            site.status = SiteStatus.READY
            site.active = True
            if request.theme_slug:
                site.theme_slug = request.theme_slug
            if request.owner_user_id is not None:
                site.owner_user_id = request.owner_user_id
            flags = site.content
            site.content = ContentFlags(
                structure_applied=(
                    flags.structure_applied if structure_applied is None else structure_applied
                ),
                theme_applied=flags.theme_applied if theme_applied is None else theme_applied,
                created_from_preview=(
                    flags.created_from_preview
                    if created_from_preview is None
                    else created_from_preview
                ),
            )

        return self.store.modify(slug, mutate)

    def _save_site_config(self, request: SiteRequest, outcome: GenerationOutcome) -> Path | None:
        site_dir = self.sites_dir / outcome.site_slug
        snapshot: Mapping[str, object] = {
            "site_name": request.site_name,
            "port": outcome.port,
            "theme": request.theme_slug,
            "admin_email": request.admin.email,
            "locale": request.locale,
            "business_context": dict(request.business_context),
            "generated_from_preview": outcome.reused,
            "modifications_applied": outcome.sandbox_applied,
            "content_generated": bool(request.structure and request.structure.pages),
            "created_at": utcnow().isoformat(),
        }
        path = site_dir / SITE_CONFIG_NAME
        try:
            site_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(snapshot, indent=2, default=str) + "\n", encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("could not save %s: %s", path, exc)
            return None
        return path

    def _announce(self, request: SiteRequest, slug: str, port: int | None) -> None:
        if self.alerts is None:
            return
        self.alerts.submit(
            SiteAlert(
                site_slug=slug,
                owner_user_id=request.owner_user_id,
                site_name=request.site_name,
                event=SITE_CREATED,
                port=port,
            )
        )


def _require_slug(request: SiteRequest) -> str:
    slug = request.site_slug
    if not slug:
        raise ValidationError(f"Site name {request.site_name!r} does not yield a usable slug.")
    return slug


__all__ = [
    "GenerationOutcome",
    "NoopSandboxApplier",
    "PreviewReuseCoordinator",
    "QuotaGuard",
    "SandboxApplier",
    "UnlimitedQuota",
]
