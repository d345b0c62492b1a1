"""Block-editor markup for the content block vocabulary.

Encoding is a pure function of the blocks. Block text is inserted verbatim;
attribute values that land inside HTML attributes are escaped.
"""
from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping, Sequence
from html import escape
from typing import Any

from ..models import Block, BlockType

DEFAULT_PARAGRAPH_TEXT = "Contenu de la page"
_IMAGE_ALIGNMENTS = {"left", "center", "right", "wide", "full"}


def _attr(value: object) -> str:
    return escape("" if value is None else str(value), quote=True)


def _comment(name: str, attrs: Mapping[str, Any] | None = None) -> str:
    if attrs:
        return f"<!-- wp:{name} {json.dumps(dict(attrs), separators=(',', ':'))} -->"
    return f"<!-- wp:{name} -->"


def encode_paragraph(block: Block) -> str:
    """Encode a paragraph."""
    return f"{_comment('paragraph')}\n<p>{block.content}</p>\n<!-- /wp:paragraph -->"


def encode_heading(block: Block) -> str:
    """Encode a heading; levels outside 1..6 fall back to 2."""
    level = block.attributes.get("level", 2)
    if isinstance(level, bool) or not isinstance(level, int) or not 1 <= level <= 6:
        level = 2
    return (
        f"{_comment('heading', {'level': level})}\n"
        f"<h{level}>{block.content}</h{level}>\n"
        "<!-- /wp:heading -->"
    )


def encode_hero(block: Block) -> str:
    """Encode a hero as a full-width cover with a title, subtitle and optional button."""
    attributes = block.attributes
    image = attributes.get("image")
    image_url = image.get("url") if isinstance(image, Mapping) else image
    cover_attrs: dict[str, Any] = {"dimRatio": 50, "align": "full"}
    if image_url:
        cover_attrs["url"] = str(image_url)
    parts = [
        _comment("cover", cover_attrs),
        '<div class="wp-block-cover alignfull">'
        '<span aria-hidden="true" class="wp-block-cover__background has-background-dim"></span>',
    ]
    if image_url:
        parts.append(
            f'<img class="wp-block-cover__image-background" alt="" src="{_attr(image_url)}"/>'
        )
    parts.append('<div class="wp-block-cover__inner-container">')
    parts.append(
        f"{_comment('heading', {'level': 1})}\n<h1>{block.content}</h1>\n<!-- /wp:heading -->"
    )
    parts.append(
        f"{_comment('paragraph')}\n<p>{attributes.get('subtitle') or ''}</p>\n"
        "<!-- /wp:paragraph -->"
    )
    button_text = attributes.get("buttonText")
    if button_text:
        parts.append(_button_group(str(button_text), attributes.get("buttonLink")))
    parts.append("</div></div>")
    parts.append("<!-- /wp:cover -->")
    return "\n".join(parts)


def encode_features(block: Block) -> str:
    """Encode a features block as an optional heading followed by a bullet list."""
    items = block.attributes.get("items") or []
    if isinstance(items, (str, bytes)) or not isinstance(items, Iterable):
        items = [items]
    entries = [str(item) for item in items if item not in (None, "")]
    parts: list[str] = []
    if block.content:
        parts.append(
            f"{_comment('heading', {'level': 3})}\n<h3>{block.content}</h3>\n<!-- /wp:heading -->"
        )
    if not entries:
        entries = [block.content or DEFAULT_PARAGRAPH_TEXT]
    list_items = "".join(f"<li>{entry}</li>" for entry in entries)
    parts.append(f"{_comment('list')}\n<ul>{list_items}</ul>\n<!-- /wp:list -->")
    return "\n".join(parts)


def _button_group(text: str, link: object) -> str:
    href = _attr(link or "#")
    return (
        f"{_comment('buttons')}\n"
        '<div class="wp-block-buttons">'
        f"{_comment('button')}\n"
        f'<div class="wp-block-button"><a class="wp-block-button__link wp-element-button" '
        f'href="{href}">{text}</a></div>\n'
        "<!-- /wp:button --></div>\n"
        "<!-- /wp:buttons -->"
    )


def encode_cta(block: Block) -> str:
    """Encode a call-to-action as a single button linking to ``buttonLink``."""
    text = block.content or str(block.attributes.get("buttonText") or "")
    return _button_group(text, block.attributes.get("buttonLink"))


def encode_image(block: Block) -> str:
    """Encode a single image; ``content`` leads the caption and is the default alt text."""
    attributes = block.attributes
    alignment = str(attributes.get("alignment") or attributes.get("align") or "center")
    if alignment not in _IMAGE_ALIGNMENTS:
        alignment = "center"
    url = attributes.get("url") or ""
    alt = attributes.get("alt") or block.content
    caption = " ".join(
        dict.fromkeys(str(part) for part in (block.content, attributes.get("caption")) if part)
    )
    figcaption = f"<figcaption>{caption}</figcaption>" if caption else ""
    return (
        f"{_comment('image', {'align': alignment})}\n"
        f'<figure class="wp-block-image align{alignment}">'
        f'<img src="{_attr(url)}" alt="{_attr(alt)}"/>{figcaption}</figure>\n'
        "<!-- /wp:image -->"
    )


def encode_gallery(block: Block) -> str:
    """Encode a gallery of nested images; ``content`` becomes the gallery caption."""
    images = block.attributes.get("images") or []
    if not isinstance(images, Sequence) or isinstance(images, (str, bytes)):
        images = []
    inner: list[str] = []
    for image in images:
        if isinstance(image, Mapping):
            url = image.get("url") or ""
            alt = image.get("alt") or ""
            image_id = image.get("id")
        else:
            url, alt, image_id = str(image), "", None
        inner.append(
            f"{_comment('image', {'id': image_id, 'sizeSlug': 'large', 'linkDestination': 'none'})}"
            "\n"
            '<figure class="wp-block-image size-large">'
            f'<img src="{_attr(url)}" alt="{_attr(alt)}"/></figure>\n'
            "<!-- /wp:image -->"
        )
    caption = (
        f'<figcaption class="blocks-gallery-caption">{block.content}</figcaption>'
        if block.content
        else ""
    )
    return (
        f"{_comment('gallery', {'linkTo': 'none'})}\n"
        '<figure class="wp-block-gallery has-nested-images columns-3 is-cropped">'
        + "\n".join(inner)
        + caption
        + "</figure>\n<!-- /wp:gallery -->"
    )


ENCODERS: Mapping[str, Callable[[Block], str]] = {
    BlockType.HERO.value: encode_hero,
    BlockType.HEADING.value: encode_heading,
    BlockType.PARAGRAPH.value: encode_paragraph,
    BlockType.FEATURES.value: encode_features,
    BlockType.CTA.value: encode_cta,
    BlockType.IMAGE.value: encode_image,
    BlockType.GALLERY.value: encode_gallery,
}


class ContentBlockCodec:
    """Encode blocks to block-editor markup."""

    def __init__(self, encoders: Mapping[str, Callable[[Block], str]] | None = None) -> None:
        """Use *encoders* keyed by block type (the built-in set by default)."""
        self._encoders = dict(encoders or ENCODERS)

    def encode_block(self, block: Block) -> str:
        """Encode one block; unknown types encode as a paragraph."""
        encoder = self._encoders.get(block.type, encode_paragraph)
        return encoder(block)

    def encode(self, blocks: Sequence[Block]) -> str:
        """Encode *blocks* in order; an empty list encodes a placeholder paragraph."""
        if not blocks:
            blocks = [Block(type=BlockType.PARAGRAPH.value, content=DEFAULT_PARAGRAPH_TEXT)]
        return "\n\n".join(self.encode_block(block) for block in blocks)


__all__ = ["ContentBlockCodec", "ENCODERS"]
