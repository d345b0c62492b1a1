"""Data models shared by provisioning, content and health code."""
from __future__ import annotations

import re
import unicodedata
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_COLLAPSE_RE = re.compile(r"[\s-]+")


class SiteStatus(str, Enum):
    """Provisioning lifecycle of a site instance."""

    PROVISIONING = "provisioning"
    READY = "ready"
    UPDATING = "updating"
    FAILED = "failed"


class HealthStatus(str, Enum):
    """Health state reported by the probe and persisted after debouncing."""

    HEALTHY = "healthy"
    WARNING = "warning"
    DOWN = "down"

    @classmethod
    def parse(cls, value: object) -> HealthStatus:
        """Return the member for *value*; anything not warning or down is ``HEALTHY``."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.HEALTHY


class BlockType(str, Enum):
    """Supported content block vocabulary."""

    HERO = "hero"
    HEADING = "heading"
    PARAGRAPH = "paragraph"
    FEATURES = "features"
    CTA = "cta"
    IMAGE = "image"
    GALLERY = "gallery"


def slugify(value: str) -> str:
    """Fold accents, lowercase *value* and join its ``[a-z0-9]`` words with ``-``."""
    folded = unicodedata.normalize("NFKD", str(value)).encode("ascii", "ignore").decode("ascii")
    text = _SLUG_STRIP_RE.sub("", folded.lower().strip())
    return _SLUG_COLLAPSE_RE.sub("-", text).strip("-")


def utcnow() -> datetime:
    """Return the current UTC time without microseconds."""
    return datetime.now(tz=UTC).replace(microsecond=0)


@dataclass(frozen=True, slots=True)
class ResourceNames:
    """Container runtime names derived from a site slug."""

    slug: str
    network: str
    db_container: str
    db_name: str
    app_container: str

    @classmethod
    def for_slug(cls, slug: str) -> ResourceNames:
        """Return the names used for *slug*."""
        return cls(
            slug=slug,
            network=f"{slug}_network",
            db_container=f"{slug}_db",
            db_name=f"{slug}_db",
            app_container=f"{slug}_wp",
        )


@dataclass(frozen=True, slots=True)
class DatabaseCredentials:
    """Credentials the application uses to reach its database."""

    user: str
    password: str
    database: str


@dataclass(frozen=True, slots=True)
class AdminIdentity:
    """Administrator account configured on a site."""

    user: str = "admin"
    password: str | None = None
    email: str = "admin@example.com"
    display_name: str = "Administrator"


@dataclass(slots=True)
class ResourceMetrics:
    """Resource usage reported by the health endpoint."""

    cpu: float | None = None
    mem_mb: float | None = None
    disk_mb: float | None = None

    def to_dict(self) -> dict[str, float | None]:
        """Return a serialisable representation."""
        return {"cpu": self.cpu, "mem_mb": self.mem_mb, "disk_mb": self.disk_mb}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> ResourceMetrics:
        """Build metrics from a stored mapping."""
        data = data or {}
        return cls(
            cpu=_optional_float(data.get("cpu")),
            mem_mb=_optional_float(data.get("mem_mb")),
            disk_mb=_optional_float(data.get("disk_mb")),
        )


@dataclass(slots=True)
class SoftwareVersions:
    """Runtime versions reported by the health endpoint."""

    app: str | None = None
    lang: str | None = None
    db: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        """Return a serialisable representation."""
        return {"app": self.app, "lang": self.lang, "db": self.db}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> SoftwareVersions:
        """Build versions from a stored mapping."""
        data = data or {}
        return cls(
            app=_optional_str(data.get("app")),
            lang=_optional_str(data.get("lang")),
            db=_optional_str(data.get("db")),
        )


@dataclass(slots=True)
class ContentFlags:
    """What has been applied to a site's content."""

    structure_applied: bool = False
    theme_applied: bool = False
    created_from_preview: bool = False

    def to_dict(self) -> dict[str, bool]:
        """Return a serialisable representation."""
        return {
            "structure_applied": self.structure_applied,
            "theme_applied": self.theme_applied,
            "created_from_preview": self.created_from_preview,
        }


@dataclass(slots=True)
class SiteInstance:
    """Persisted record for one tenant site."""

    site_slug: str
    site_name: str
    owner_user_id: str | None
    network_name: str
    db_ref: str
    app_ref: str
    port: int | None = None
    theme_slug: str | None = None
    status: SiteStatus = SiteStatus.PROVISIONING
    active: bool = True
    health_status: HealthStatus = HealthStatus.HEALTHY
    failed_checks_count: int = 0
    last_health_check: datetime | None = None
    software_versions: SoftwareVersions = field(default_factory=SoftwareVersions)
    resource_metrics: ResourceMetrics = field(default_factory=ResourceMetrics)
    content: ContentFlags = field(default_factory=ContentFlags)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        slug: str,
        *,
        site_name: str | None = None,
        owner_user_id: str | None = None,
        theme_slug: str | None = None,
    ) -> SiteInstance:
        """Return a fresh provisioning record for *slug*."""
        names = ResourceNames.for_slug(slug)
        return cls(
            site_slug=slug,
            site_name=site_name or slug,
            owner_user_id=owner_user_id,
            network_name=names.network,
            db_ref=names.db_container,
            app_ref=names.app_container,
            theme_slug=theme_slug,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a YAML/JSON-serialisable representation."""
        return {
            "site_slug": self.site_slug,
            "site_name": self.site_name,
            "owner_user_id": self.owner_user_id,
            "network_name": self.network_name,
            "db_ref": self.db_ref,
            "app_ref": self.app_ref,
            "port": self.port,
            "theme_slug": self.theme_slug,
            "status": self.status.value,
            "active": self.active,
            "health_status": self.health_status.value,
            "failed_checks_count": self.failed_checks_count,
            "last_health_check": (
                self.last_health_check.isoformat() if self.last_health_check else None
            ),
            "software_versions": self.software_versions.to_dict(),
            "resource_metrics": self.resource_metrics.to_dict(),
            "content": self.content.to_dict(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> SiteInstance:
        """Build a record from its stored mapping."""
        slug = str(data["site_slug"])
        names = ResourceNames.for_slug(slug)
        content_raw = data.get("content") or {}
        known = {item.name for item in fields(ContentFlags)}
        content = ContentFlags(**{k: bool(v) for k, v in content_raw.items() if k in known})
        port = data.get("port")
        owner = data.get("owner_user_id")
        return cls(
            site_slug=slug,
            site_name=str(data.get("site_name") or slug),
            owner_user_id=str(owner) if owner is not None else None,
            network_name=str(data.get("network_name") or names.network),
            db_ref=str(data.get("db_ref") or names.db_container),
            app_ref=str(data.get("app_ref") or names.app_container),
            port=int(port) if port is not None else None,
            theme_slug=_optional_str(data.get("theme_slug")),
            status=SiteStatus(str(data.get("status", SiteStatus.PROVISIONING.value))),
            active=bool(data.get("active", True)),
            health_status=HealthStatus.parse(data.get("health_status", "healthy")),
            failed_checks_count=int(data.get("failed_checks_count", 0) or 0),
            last_health_check=_parse_datetime(data.get("last_health_check")),
            software_versions=SoftwareVersions.from_mapping(data.get("software_versions")),
            resource_metrics=ResourceMetrics.from_mapping(data.get("resource_metrics")),
            content=content,
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
        )


@dataclass(frozen=True, slots=True)
class HealthRecord:
    """One health observation. Records are appended, never mutated."""

    site_slug: str
    status: HealthStatus
    checked_at: datetime
    response_time_ms: float | None
    resource_metrics: ResourceMetrics
    software_versions: SoftwareVersions
    failed_checks_count: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "site_slug": self.site_slug,
            "status": self.status.value,
            "checked_at": self.checked_at.isoformat(),
            "response_time_ms": self.response_time_ms,
            "resource_metrics": self.resource_metrics.to_dict(),
            "software_versions": self.software_versions.to_dict(),
            "failed_checks_count": self.failed_checks_count,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> HealthRecord:
        """Build a record from a stored mapping."""
        return cls(
            site_slug=str(data["site_slug"]),
            status=HealthStatus.parse(data.get("status")),
            checked_at=_parse_datetime(data.get("checked_at")) or utcnow(),
            response_time_ms=_optional_float(data.get("response_time_ms")),
            resource_metrics=ResourceMetrics.from_mapping(data.get("resource_metrics")),
            software_versions=SoftwareVersions.from_mapping(data.get("software_versions")),
            failed_checks_count=int(data.get("failed_checks_count", 0) or 0),
        )


@dataclass(frozen=True, slots=True)
class Block:
    """One typed content block. ``type`` is kept raw so unknown types survive parsing."""

    type: str
    content: str = ""
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Block:
        """Build a block from a loosely-typed mapping."""
        attributes = data.get("attributes")
        content = data.get("content", "")
        return cls(
            type=str(data.get("type") or BlockType.PARAGRAPH.value),
            content="" if content is None else str(content),
            attributes=dict(attributes) if isinstance(attributes, Mapping) else {},
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"type": self.type, "content": self.content, "attributes": dict(self.attributes)}


@dataclass(frozen=True, slots=True)
class PageSpec:
    """A page to create: title, slug and ordered blocks."""

    title: str
    slug: str
    blocks: tuple[Block, ...] = ()


@dataclass(frozen=True, slots=True)
class MenuItem:
    """A navigation entry pointing at a page by URL."""

    label: str
    url: str
    type: str = "page"
    children: tuple[MenuItem, ...] = ()

    @property
    def target_slug(self) -> str:
        """Return the page slug referenced by ``url``."""
        return self.url.strip().strip("/")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> MenuItem:
        """Build a menu item from a loosely-typed mapping."""
        children_raw = data.get("children") or ()
        children = tuple(
            cls.from_mapping(child) for child in children_raw if isinstance(child, Mapping)
        )
        return cls(
            label=str(data.get("label") or "Menu Item"),
            url=str(data.get("url") or "/"),
            type=str(data.get("type") or "page"),
            children=children,
        )


@dataclass(frozen=True, slots=True)
class StructureSpec:
    """Content tree applied to a site."""

    pages: tuple[PageSpec, ...] = ()
    menu: tuple[MenuItem, ...] = ()
    theme_suggestions: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ThemeDescriptor:
    """Catalog row describing an installable theme."""

    slug: str
    name: str
    download_url: str | None = None
    active: bool = True
    usage_count: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "slug": self.slug,
            "name": self.name,
            "download_url": self.download_url,
            "active": self.active,
            "usage_count": self.usage_count,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ThemeDescriptor:
        """Build a descriptor from a stored mapping."""
        slug = str(data["slug"])
        return cls(
            slug=slug,
            name=str(data.get("name") or slug),
            download_url=_optional_str(data.get("download_url")),
            active=bool(data.get("active", True)),
            usage_count=int(data.get("usage_count", 0) or 0),
        )


@dataclass(frozen=True, slots=True)
class SiteRequest:
    """Input to site generation and preview."""

    site_name: str
    owner_user_id: str | None = None
    theme_slug: str | None = None
    locale: str = "fr_FR"
    admin: AdminIdentity = field(default_factory=AdminIdentity)
    structure: StructureSpec | None = None
    business_context: Mapping[str, Any] = field(default_factory=dict)

    @property
    def site_slug(self) -> str:
        """Return the slug derived from ``site_name``."""
        return slugify(self.site_name)


def _optional_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _parse_datetime(value: object) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def blocks_from_sequence(items: Sequence[Any]) -> tuple[Block, ...]:
    """Build blocks from a sequence, skipping entries that are not mappings."""
    return tuple(Block.from_mapping(item) for item in items if isinstance(item, Mapping))


__all__ = [
    "AdminIdentity",
    "Block",
    "BlockType",
    "ContentFlags",
    "DatabaseCredentials",
    "HealthRecord",
    "HealthStatus",
    "MenuItem",
    "PageSpec",
    "ResourceMetrics",
    "ResourceNames",
    "SiteInstance",
    "SiteRequest",
    "SiteStatus",
    "SoftwareVersions",
    "StructureSpec",
    "ThemeDescriptor",
    "blocks_from_sequence",
    "slugify",
]
