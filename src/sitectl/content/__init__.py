"""Content layer: block codec, block repair and structure application."""
from __future__ import annotations

from .blocks import default_structure, fallback_blocks, infer_page_type, repair_blocks
from .codec import ContentBlockCodec
from .structure import (
    ContentGenerator,
    PageOutcome,
    StructureApplier,
    StructureResult,
    validate_structure,
)

__all__ = [
    "ContentBlockCodec",
    "ContentGenerator",
    "PageOutcome",
    "StructureApplier",
    "StructureResult",
    "default_structure",
    "fallback_blocks",
    "infer_page_type",
    "repair_blocks",
    "validate_structure",
]
