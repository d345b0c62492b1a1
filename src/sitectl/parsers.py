"""Typed parsers for container runtime and WP-CLI text output."""
from __future__ import annotations

import csv
import io
import json
import re
from dataclasses import dataclass

from .errors import ParseError

_PORT_MAPPING_RE = re.compile(r"(?P<container>\d+)/tcp -> 0\.0\.0\.0:(?P<host>\d+)")
_CREATED_POST_RE = re.compile(r"Created post (\d+)")


@dataclass(frozen=True, slots=True)
class ContainerState:
    """Subset of ``docker inspect`` output used for lifecycle decisions."""

    name: str
    running: bool
    status: str
    health: str | None = None


@dataclass(frozen=True, slots=True)
class MenuLocation:
    """A theme menu location as reported by ``wp menu location list``."""

    location: str
    description: str
    assigned: bool


@dataclass(frozen=True, slots=True)
class PageSummary:
    """A published page as reported by ``wp post list``."""

    id: int
    title: str
    slug: str
    url: str


def parse_port_mapping(text: str, *, container_port: int = 80) -> int:
    """Return the host port bound to *container_port* in ``docker port`` output."""
    for match in _PORT_MAPPING_RE.finditer(text):
        if int(match.group("container")) == container_port:
            return int(match.group("host"))
    raise ParseError(f"No 0.0.0.0 mapping for {container_port}/tcp in: {text.strip()!r}")


def parse_created_post_id(text: str) -> int:
    """Return the id from ``wp post create`` output (``Created post <id>``)."""
    match = _CREATED_POST_RE.search(text)
    if not match:
        raise ParseError(f"Could not find created post id in: {text.strip()!r}")
    return int(match.group(1))


def parse_container_state(text: str) -> ContainerState:
    """Parse ``docker inspect <ref>`` JSON into a :class:`ContainerState`."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"docker inspect output is not JSON: {exc}") from exc
    if isinstance(data, list):
        if not data:
            raise ParseError("docker inspect returned an empty list.")
        data = data[0]
    if not isinstance(data, dict):
        raise ParseError("docker inspect output must be an object or a list of objects.")
    state = data.get("State")
    if not isinstance(state, dict):
        raise ParseError("docker inspect output is missing the State object.")
    health = state.get("Health")
    health_status = health.get("Status") if isinstance(health, dict) else None
    return ContainerState(
        name=str(data.get("Name", "")).lstrip("/"),
        running=bool(state.get("Running", False)),
        status=str(state.get("Status", "unknown")),
        health=str(health_status) if health_status else None,
    )


def parse_menu_locations(text: str) -> list[MenuLocation]:
    """Parse ``wp menu location list --format=json`` output."""
    try:
        data = json.loads(text or "[]")
    except json.JSONDecodeError as exc:
        raise ParseError(f"Menu location list is not JSON: {exc}") from exc
    if not isinstance(data, list):
        raise ParseError("Menu location list must be a JSON array.")
    locations: list[MenuLocation] = []
    for entry in data:
        if not isinstance(entry, dict) or not entry.get("location"):
            continue
        assigned = entry.get("assigned", entry.get("menus", 0))
        locations.append(
            MenuLocation(
                location=str(entry["location"]),
                description=str(entry.get("description", "")),
                assigned=_truthy_assignment(assigned),
            )
        )
    return locations


def _truthy_assignment(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip() not in {"", "0"}
    return bool(value)


def parse_theme_list(text: str) -> set[str]:
    """Parse ``wp theme list --field=name --format=csv`` into a set of theme names."""
    names: set[str] = set()
    reader = csv.reader(io.StringIO(text))
    for row in reader:
        if not row:
            continue
        value = row[0].strip()
        if not value or value == "name":
            continue
        names.add(value)
    return names


def parse_id_list(text: str) -> list[int]:
    """Parse whitespace-separated ids (``--format=ids`` or ``--field=ID``)."""
    ids: list[int] = []
    for token in text.split():
        if not token.isdigit():
            raise ParseError(f"Unexpected token in id list: {token!r}")
        ids.append(int(token))
    return ids


def parse_page_list(text: str) -> list[PageSummary]:
    """Parse ``wp post list --format=json --fields=ID,post_title,post_name``."""
    try:
        data = json.loads(text or "[]")
    except json.JSONDecodeError as exc:
        raise ParseError(f"Page list is not JSON: {exc}") from exc
    if not isinstance(data, list):
        raise ParseError("Page list must be a JSON array.")
    pages: list[PageSummary] = []
    for entry in data:
        if not isinstance(entry, dict) or "ID" not in entry:
            raise ParseError(f"Malformed page entry: {entry!r}")
        pages.append(
            PageSummary(
                id=int(entry["ID"]),
                title=str(entry.get("post_title", "")),
                slug=str(entry.get("post_name", "")),
                url=str(entry.get("url") or f"/{entry.get('post_name', '')}"),
            )
        )
    return pages


__all__ = [
    "ContainerState",
    "MenuLocation",
    "PageSummary",
    "parse_container_state",
    "parse_created_post_id",
    "parse_id_list",
    "parse_menu_locations",
    "parse_page_list",
    "parse_port_mapping",
    "parse_theme_list",
]
