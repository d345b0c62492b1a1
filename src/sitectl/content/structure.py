"""Apply a content structure (pages and menu) to a site.

Pages are created one by one and failures are isolated: every input page gets
exactly one :class:`PageOutcome`. The menu, front page and cache flush are
best-effort steps recorded on the :class:`StructureResult`.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..errors import (
    CommandError,
    MenuAssignmentError,
    PageCreationError,
    ParseError,
    SitectlError,
    StructureValidationError,
)
from ..models import Block, MenuItem, PageSpec, StructureSpec, blocks_from_sequence
from ..parsers import (
    PageSummary,
    parse_created_post_id,
    parse_id_list,
    parse_menu_locations,
    parse_page_list,
)
from ..providers.wpcli import WPCli
from .blocks import (
    fallback_blocks,
    infer_page_type,
    is_homepage,
    repair_blocks,
    validate_menu,
)
from .codec import ContentBlockCodec

LOGGER = logging.getLogger(__name__)

ContentGenerator = Callable[[str, str, Mapping[str, Any]], Any]
"""``(page_title, page_type, business_context) -> {"blocks": [...]}``."""

DEFAULT_MENU_NAME = "Menu Principal"
PREFERRED_MENU_LOCATIONS = ("primary", "header", "main-menu", "top", "main")
DEFAULT_MENU_LOCATIONS = ("primary", "header", "main-menu", "top")
PREVIEW_HOMEPAGE_SLUG = "accueil-personnalise"


@dataclass(frozen=True, slots=True)
class PageOutcome:
    """Result of creating one page."""

    title: str
    slug: str
    status: str
    id: int | None = None
    error: str | None = None
    content_generated: bool = False

    @property
    def ok(self) -> bool:
        """Return ``True`` when the page was created."""
        return self.status == "success"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "title": self.title,
            "slug": self.slug,
            "status": self.status,
            "id": self.id,
            "error": self.error,
            "content_generated": self.content_generated,
        }


@dataclass(slots=True)
class StructureResult:
    """Aggregated outcome of :meth:`StructureApplier.apply`."""

    pages: list[PageOutcome] = field(default_factory=list)
    menu: bool = False
    menu_error: str | None = None
    menu_location: str | None = None
    homepage_id: int | None = None
    cache_flushed: bool = False

    @property
    def failed_pages(self) -> list[PageOutcome]:
        """Return outcomes with ``status == "error"``."""
        return [page for page in self.pages if not page.ok]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "pages": [page.to_dict() for page in self.pages],
            "menu": self.menu,
            "menu_error": self.menu_error,
            "menu_location": self.menu_location,
            "homepage_id": self.homepage_id,
            "cache_flushed": self.cache_flushed,
        }


def validate_structure(raw: object) -> StructureSpec:
    """Return a :class:`StructureSpec` or raise :class:`StructureValidationError`."""
    if isinstance(raw, StructureSpec):
        for index, page in enumerate(raw.pages):
            if not page.title.strip() or not page.slug.strip():
                raise StructureValidationError(f"Page #{index + 1} needs a title and a slug.")
        return raw
    if not isinstance(raw, Mapping):
        raise StructureValidationError("Structure must be a mapping.")
    pages_raw = raw.get("pages")
    if not isinstance(pages_raw, list):
        raise StructureValidationError("Structure must contain a list of pages.")

    pages: list[PageSpec] = []
    for index, page in enumerate(pages_raw):
        if not isinstance(page, Mapping):
            raise StructureValidationError(f"Page #{index + 1} must be a mapping.")
        title = str(page.get("title") or "").strip()
        slug = str(page.get("slug") or "").strip()
        if not title or not slug:
            raise StructureValidationError(f"Page #{index + 1} needs a title and a slug.")
        blocks_raw = page.get("blocks")
        content = page.get("content")
        if blocks_raw is None and isinstance(content, Mapping):
            blocks_raw = content.get("blocks")
        blocks = blocks_from_sequence(blocks_raw) if isinstance(blocks_raw, list) else ()
        pages.append(PageSpec(title=title, slug=slug, blocks=blocks))

    menu_raw = raw.get("menu") or []
    if not isinstance(menu_raw, list):
        raise StructureValidationError("Structure menu must be a list.")
    menu = tuple(MenuItem.from_mapping(item) for item in menu_raw if isinstance(item, Mapping))

    suggestions_raw = raw.get("theme_suggestions", raw.get("themeSuggestions")) or []
    if not isinstance(suggestions_raw, list):
        raise StructureValidationError("theme_suggestions must be a list.")
    return StructureSpec(
        pages=tuple(pages),
        menu=menu,
        theme_suggestions=tuple(str(item) for item in suggestions_raw),
    )


@dataclass(slots=True)
class StructureApplier:
    """Create pages, front page and menu inside a site container."""

    wp: WPCli
    codec: ContentBlockCodec = field(default_factory=ContentBlockCodec)
    generator: ContentGenerator | None = None
    menu_name: str = DEFAULT_MENU_NAME

    def apply(
        self,
        ref: str,
        structure: StructureSpec | Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
    ) -> StructureResult:
        """Apply *structure* to *ref*; only invalid input raises."""
        spec = validate_structure(structure)
        context = dict(context or {})
        result = StructureResult()
        created: dict[str, int] = {}

        for page in spec.pages:
            outcome = self._create_page(ref, page, context)
            result.pages.append(outcome)
            if outcome.ok and outcome.id is not None:
                created[page.slug] = outcome.id

        result.homepage_id = self._set_homepage(ref, spec.pages, created)

        menu = validate_menu(spec.menu, [page.slug for page in spec.pages])
        if len(menu) < len(spec.menu):
            LOGGER.info(
                "dropped %d menu item(s) without a page on %s", len(spec.menu) - len(menu), ref
            )
        if menu:
            self._apply_menu(ref, menu, spec.pages, created, result)

        result.cache_flushed = self.flush(ref)
        LOGGER.info(
            "structure applied to %s: %d/%d pages, menu=%s",
            ref,
            len(result.pages) - len(result.failed_pages),
            len(result.pages),
            result.menu,
        )
        return result

    # Pages -------------------------------------------------------------
    def page_blocks(self, page: PageSpec, context: Mapping[str, Any]) -> tuple[list[Block], bool]:
        """Return the blocks to publish for *page* and whether they were generated.

        Without a context or a generator the page's own blocks are used; a
        page without blocks gets the fallback content.
        """
        locale = context.get("locale") or context.get("language")
        site_name = str(context.get("site_name") or "")
        if not context or self.generator is None:
            return repair_blocks(list(page.blocks), page.title, locale, site_name), False

        page_type = infer_page_type(page.title, page.slug)
        try:
            generated = self.generator(page.title, page_type, context)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("content generation failed for %s: %s", page.title, exc)
            return fallback_blocks(page.title, locale, site_name), False

        raw_blocks = _extract_blocks(generated)
        if raw_blocks is None:
            LOGGER.warning("content generator returned no blocks for %s", page.title)
            return fallback_blocks(page.title, locale, site_name), False
        return repair_blocks(raw_blocks, page.title, locale, site_name), True

    def _create_page(
        self, ref: str, page: PageSpec, context: Mapping[str, Any]
    ) -> PageOutcome:
        try:
            blocks, generated = self.page_blocks(page, context)
            markup = self.codec.encode(blocks)
            page_id = self.create_page(ref, page.title, page.slug, markup)
        except SitectlError as exc:
            LOGGER.warning("page %s failed on %s: %s", page.slug, ref, exc)
            return PageOutcome(title=page.title, slug=page.slug, status="error", error=str(exc))
        return PageOutcome(
            title=page.title,
            slug=page.slug,
            status="success",
            id=page_id,
            content_generated=generated,
        )

    def create_page(self, ref: str, title: str, slug: str, markup: str) -> int:
        """Publish one page and return its id."""
        try:
            result = self.wp.run(
                ref,
                [
                    "post",
                    "create",
                    "--post_type=page",
                    f"--post_title={title}",
                    f"--post_name={slug}",
                    "--post_status=publish",
                    f"--post_content={markup}",
                ],
            )
            return parse_created_post_id(result.stdout)
        except (CommandError, ParseError) as exc:
            raise PageCreationError(f"Could not create page '{slug}': {exc}") from exc

    def list_pages(self, ref: str) -> list[PageSummary]:
        """Return published pages."""
        result = self.wp.run(
            ref,
            [
                "post",
                "list",
                "--post_type=page",
                "--post_status=publish",
                "--fields=ID,post_title,post_name",
                "--format=json",
            ],
        )
        return parse_page_list(result.stdout)

    def find_page_ids(self, ref: str, slug: str, *, status: str = "publish") -> list[int]:
        """Return ids of pages named *slug*."""
        result = self.wp.run(
            ref,
            [
                "post",
                "list",
                "--post_type=page",
                f"--post_status={status}",
                f"--name={slug}",
                "--field=ID",
                "--format=ids",
            ],
        )
        return parse_id_list(result.stdout)

    # Front page ----------------------------------------------------------
    def _set_homepage(
        self, ref: str, pages: Sequence[PageSpec], created: Mapping[str, int]
    ) -> int | None:
        candidate = next((page for page in pages if is_homepage(page)), None)
        if candidate is None:
            return None
        try:
            page_id = created.get(candidate.slug)
            if page_id is None:
                ids = self.find_page_ids(ref, candidate.slug)
                if not ids:
                    return None
                page_id = ids[0]
            self.wp.option_update(ref, "show_on_front", "page")
            self.wp.option_update(ref, "page_on_front", page_id)
        except SitectlError as exc:
            LOGGER.warning("could not set front page on %s: %s", ref, exc)
            return None
        return page_id

    # Menu ----------------------------------------------------------------
    def _apply_menu(
        self,
        ref: str,
        items: Sequence[MenuItem],
        pages: Sequence[PageSpec],
        created: Mapping[str, int],
        result: StructureResult,
    ) -> None:
        try:
            self.wp.run(ref, ["menu", "create", self.menu_name])
        except CommandError as exc:
            LOGGER.warning("menu creation failed on %s: %s", ref, exc)
            result.menu = False
            result.menu_error = str(exc)
            return
        result.menu = True

        home_slug = next((page.slug for page in pages if is_homepage(page)), None)
        for item in items:
            self._add_menu_item(ref, item, created, home_slug, parent_id=None)

        try:
            result.menu_location = self.assign_menu(ref)
        except MenuAssignmentError as exc:
            LOGGER.warning("%s", exc)
            result.menu_error = str(exc)

    def _add_menu_item(
        self,
        ref: str,
        item: MenuItem,
        created: Mapping[str, int],
        home_slug: str | None,
        *,
        parent_id: int | None,
    ) -> None:
        target = item.target_slug or (home_slug or "")
        page_id = created.get(target)
        if page_id is None:
            LOGGER.debug("menu item %s skipped: page %r was not created", item.label, target)
            return
        args = ["menu", "item", "add-post", self.menu_name, str(page_id), f"--title={item.label}"]
        if parent_id is not None:
            args.append(f"--parent-id={parent_id}")
        args.append("--porcelain")
        try:
            output = self.wp.run(ref, args).stdout
            ids = parse_id_list(output)
        except (CommandError, ParseError) as exc:
            LOGGER.warning("menu item %s failed on %s: %s", item.label, ref, exc)
            return
        item_id = ids[0] if ids else None
        for child in item.children:
            if item_id is None:
                break
            self._add_menu_item(ref, child, created, home_slug, parent_id=item_id)

    def menu_locations(self, ref: str) -> list[str]:
        """Return unassigned theme menu locations, or common defaults."""
        try:
            output = self.wp.run(ref, ["menu", "location", "list", "--format=json"]).stdout
            locations = [loc.location for loc in parse_menu_locations(output) if not loc.assigned]
        except (CommandError, ParseError) as exc:
            LOGGER.debug("menu location discovery failed on %s: %s", ref, exc)
            locations = []
        return locations or list(DEFAULT_MENU_LOCATIONS)

    def assign_menu(self, ref: str) -> str:
        """Assign the menu to the best location, trying the others on failure."""
        locations = self.menu_locations(ref)
        preferred = next((loc for loc in PREFERRED_MENU_LOCATIONS if loc in locations), None)
        ordered = [preferred] if preferred else []
        ordered.extend(loc for loc in locations if loc != preferred)
        errors: list[str] = []
        for location in ordered:
            try:
                self.wp.run(ref, ["menu", "location", "assign", self.menu_name, location])
            except CommandError as exc:
                errors.append(f"{location}: {exc}")
                continue
            return location
        raise MenuAssignmentError(
            f"Menu '{self.menu_name}' could not be assigned on {ref}: " + "; ".join(errors)
        )

    # Maintenance -----------------------------------------------------------
    def flush(self, ref: str) -> bool:
        """Flush object cache and rewrite rules; ``False`` when it failed."""
        try:
            self.wp.flush_caches(ref)
        except CommandError as exc:
            LOGGER.warning("cache flush failed on %s: %s", ref, exc)
            return False
        return True

    def cleanup_preview_homepages(self, ref: str) -> list[int]:
        """Delete preview-only home pages and reset the front page if it was one."""
        try:
            ids = self.find_page_ids(ref, PREVIEW_HOMEPAGE_SLUG, status="any")
            for page_id in ids:
                self.wp.run(ref, ["post", "delete", str(page_id), "--force"])
            front = self.wp.option_get(ref, "page_on_front")
            if ids and front and front.isdigit() and int(front) in ids:
                self.wp.option_update(ref, "show_on_front", "posts")
        except SitectlError as exc:
            LOGGER.warning("preview page cleanup failed on %s: %s", ref, exc)
            return []
        return ids


def _extract_blocks(generated: object) -> list[Any] | None:
    if not isinstance(generated, Mapping):
        return None
    blocks = generated.get("blocks")
    if blocks is None:
        content = generated.get("content")
        if isinstance(content, Mapping):
            blocks = content.get("blocks")
    if not isinstance(blocks, list) or not blocks:
        return None
    return blocks


__all__ = [
    "ContentGenerator",
    "PageOutcome",
    "StructureApplier",
    "StructureResult",
    "validate_structure",
]
