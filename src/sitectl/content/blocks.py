"""Page type inference, block repair and deterministic fallback content."""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from ..models import Block, BlockType, MenuItem, PageSpec, StructureSpec, slugify

LOGGER = logging.getLogger(__name__)

SUPPORTED_LOCALES = ("fr_FR", "en_US")
HOMEPAGE_KEYS = ("home", "accueil")
MAX_MENU_ITEMS = 6

# (page type, keywords matched against the lowercased title, keywords matched against the slug)
_PAGE_TYPE_RULES: tuple[tuple[str, tuple[str, ...], tuple[str, ...]], ...] = (
    ("homepage", ("accueil", "home"), ("accueil", "home")),
    ("about", ("à propos", "a propos", "about"), ("a-propos", "about")),
    ("services", ("service",), ("service",)),
    ("contact", ("contact",), ("contact",)),
    ("menu", ("menu",), ("menu",)),
    ("portfolio", ("portfolio", "galerie", "gallery"), ("portfolio", "galerie", "gallery")),
    ("blog", ("blog", "actualité", "news"), ("blog", "actualite", "news")),
    ("shop", ("boutique", "shop", "store"), ("boutique", "shop")),
    ("products", ("produit", "product"), ("produit", "product")),
    ("pricing", ("tarif", "price", "pricing"), ("tarif", "price")),
    ("team", ("équipe", "team"), ("equipe", "team")),
    ("testimonials", ("témoignage", "testimonial", "avis"), ("temoignage", "testimonial")),
)

_FALLBACK_TEXT: Mapping[str, Mapping[str, str]] = {
    "fr_FR": {
        "homepage": "Bienvenue sur le site {site}. Découvrez nos services et notre expertise.",
        "about": "Apprenez-en plus sur {site}, notre histoire et nos valeurs.",
        "services": "Découvrez la gamme complète de services proposés par {site}.",
        "contact": "Contactez {site} pour toute question ou demande de devis.",
        "menu": "Découvrez la carte de {site}, élaborée avec des produits frais.",
        "portfolio": "Parcourez une sélection de réalisations de {site}.",
        "blog": "Retrouvez les dernières actualités de {site}.",
        "generic": "Contenu de la page {title}.",
    },
    "en_US": {
        "homepage": "Welcome to {site}. Discover our services and expertise.",
        "about": "Learn more about {site}, our story and our values.",
        "services": "Discover the complete range of services offered by {site}.",
        "contact": "Contact {site} for any question or quote request.",
        "menu": "Discover the menu of {site}, crafted from fresh products.",
        "portfolio": "Browse a selection of work by {site}.",
        "blog": "Read the latest news from {site}.",
        "generic": "Content for the {title} page.",
    },
}

_DEFAULT_BLOCK_TEXT = {"fr_FR": "Contenu de la page {title}", "en_US": "Content for {title} page"}

_BASE_PAGES = {
    "fr_FR": (
        ("Accueil", "accueil"),
        ("À propos", "a-propos"),
        ("Services", "services"),
        ("Contact", "contact"),
    ),
    "en_US": (
        ("Home", "home"),
        ("About", "about"),
        ("Services", "services"),
        ("Contact", "contact"),
    ),
}

_BUSINESS_PAGES: Mapping[str, Mapping[str, tuple[tuple[str, str], ...]]] = {
    "restaurant": {"fr_FR": (("Menu", "menu"),), "en_US": (("Menu", "menu"),)},
    "portfolio": {"fr_FR": (("Galerie", "galerie"),), "en_US": (("Gallery", "gallery"),)},
    "blog": {"fr_FR": (("Blog", "blog"),), "en_US": (("Blog", "blog"),)},
    "shop": {"fr_FR": (("Boutique", "boutique"),), "en_US": (("Shop", "shop"),)},
}


def normalize_locale(locale: str | None) -> str:
    """Return a supported locale, defaulting to ``fr_FR``."""
    if locale in SUPPORTED_LOCALES:
        return str(locale)
    if locale and str(locale).lower().startswith("en"):
        return "en_US"
    return "fr_FR"


def infer_page_type(title: str, slug: str = "") -> str:
    """Classify a page by keywords in its title or slug."""
    lowered_title = title.lower()
    lowered_slug = slug.lower()
    for page_type, title_keys, slug_keys in _PAGE_TYPE_RULES:
        if any(key in lowered_title for key in title_keys):
            return page_type
        if any(key in lowered_slug for key in slug_keys):
            return page_type
    return "generic"


def is_homepage(page: PageSpec) -> bool:
    """Return ``True`` when the page slug or title names the home page."""
    return page.slug.lower() in HOMEPAGE_KEYS or page.title.strip().lower() in HOMEPAGE_KEYS


def fallback_blocks(title: str, locale: str | None, site_name: str = "") -> list[Block]:
    """Return a heading and one descriptive paragraph for *title*."""
    lang = normalize_locale(locale)
    page_type = infer_page_type(title)
    texts = _FALLBACK_TEXT[lang]
    template = texts.get(page_type, texts["generic"])
    text = template.format(site=site_name or title, title=title)
    return [
        Block(type=BlockType.HEADING.value, content=title, attributes={"level": 1}),
        Block(type=BlockType.PARAGRAPH.value, content=text),
    ]


def clean_attributes(block_type: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
    """Drop or coerce attributes that the encoder for *block_type* cannot use."""
    cleaned = dict(attributes)
    if block_type == BlockType.HERO.value:
        allowed = {"subtitle", "buttonText", "buttonLink", "image"}
        cleaned = {key: value for key, value in cleaned.items() if key in allowed}
    elif block_type == BlockType.FEATURES.value:
        items = cleaned.get("items")
        if items is not None and not isinstance(items, list):
            cleaned["items"] = [items]
    elif block_type == BlockType.HEADING.value:
        level = cleaned.get("level", 2)
        if isinstance(level, str) and level.isdigit():
            level = int(level)
        if isinstance(level, bool) or not isinstance(level, int) or not 1 <= level <= 6:
            level = 2
        cleaned["level"] = level
    return cleaned


def repair_blocks(
    raw_blocks: object,
    title: str,
    locale: str | None,
    site_name: str = "",
) -> list[Block]:
    """Return usable blocks for a page from untrusted generator output.

    Anything that is not a non-empty list becomes the fallback blocks. Unknown
    types become paragraphs and empty content is filled in.
    """
    if not isinstance(raw_blocks, Sequence) or isinstance(raw_blocks, (str, bytes)):
        return fallback_blocks(title, locale, site_name)
    lang = normalize_locale(locale)
    supported = {member.value for member in BlockType}
    repaired: list[Block] = []
    for raw in raw_blocks:
        if isinstance(raw, Block):
            block = raw
        elif isinstance(raw, Mapping):
            block = Block.from_mapping(raw)
        else:
            LOGGER.debug("dropping non-mapping block for %s: %r", title, raw)
            continue
        block_type = block.type if block.type in supported else BlockType.PARAGRAPH.value
        content = block.content.strip() or _DEFAULT_BLOCK_TEXT[lang].format(title=title)
        repaired.append(
            Block(
                type=block_type,
                content=content,
                attributes=clean_attributes(block_type, block.attributes),
            )
        )
    if not repaired:
        return fallback_blocks(title, locale, site_name)
    return repaired


def validate_menu(items: Sequence[MenuItem], page_slugs: Sequence[str]) -> list[MenuItem]:
    """Keep menu items whose target page exists (``/`` is always kept)."""
    available = set(page_slugs)
    kept: list[MenuItem] = []
    for item in items:
        if item.url.strip() != "/" and item.target_slug not in available:
            continue
        children = tuple(validate_menu(item.children, page_slugs)) if item.children else ()
        kept.append(MenuItem(label=item.label, url=item.url, type=item.type, children=children))
    return kept


def default_structure(
    site_name: str,
    business_type: str | None = None,
    locale: str | None = None,
) -> StructureSpec:
    """Return a deterministic starter structure for *business_type*."""
    lang = normalize_locale(locale)
    pages = list(_BASE_PAGES[lang])
    extra = _BUSINESS_PAGES.get(slugify(business_type or ""), {}).get(lang, ())
    pages[2:2] = extra
    specs = tuple(
        PageSpec(title=title, slug=slug, blocks=tuple(fallback_blocks(title, lang, site_name)))
        for title, slug in pages
    )
    menu = tuple(
        MenuItem(label=spec.title, url=f"/{spec.slug}") for spec in specs[:MAX_MENU_ITEMS]
    )
    return StructureSpec(pages=specs, menu=menu)


__all__ = [
    "clean_attributes",
    "default_structure",
    "fallback_blocks",
    "infer_page_type",
    "is_homepage",
    "normalize_locale",
    "repair_blocks",
    "validate_menu",
]
