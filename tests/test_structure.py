"""Tests for structure validation and application."""
from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import pytest
from conftest import FakeRunner

from sitectl.content import StructureApplier, validate_structure
from sitectl.errors import StructureValidationError
from sitectl.providers import WPCli

REF = "acme-cafe_wp"
CREATE = ("exec", REF, "wp", "post", "create", "--post_type=page", "*")


def _page(title: str, slug: str) -> dict[str, object]:
    return {"title": title, "slug": slug, "blocks": [{"type": "paragraph", "content": title}]}


def _created(fake_runner: FakeRunner, slug: str, post_id: int) -> None:
    fake_runner.on(*CREATE, f"--post_name={slug}", stdout=f"Success: Created post {post_id}.\n")


def test_validate_structure_accepts_nested_content() -> None:
    """Pages may carry blocks directly or under ``content``."""
    spec = validate_structure(
        {
            "pages": [
                {"title": "Accueil", "slug": "accueil", "content": {"blocks": [{"type": "hero"}]}},
                {"title": "Contact", "slug": "contact"},
            ],
            "menu": [{"label": "Contact", "url": "/contact"}],
            "themeSuggestions": ["neve"],
        }
    )

    assert spec.pages[0].blocks[0].type == "hero"
    assert spec.pages[1].blocks == ()
    assert spec.menu[0].target_slug == "contact"
    assert spec.theme_suggestions == ("neve",)


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ([], "must be a mapping"),
        ({}, "list of pages"),
        ({"pages": ["accueil"]}, "Page #1 must be a mapping"),
        ({"pages": [{"title": "Accueil"}]}, "needs a title and a slug"),
        ({"pages": [], "menu": "primary"}, "menu must be a list"),
        ({"pages": [], "theme_suggestions": "neve"}, "theme_suggestions"),
    ],
)
def test_validate_structure_rejects_bad_input(raw: object, message: str) -> None:
    """Malformed structures raise before anything is created."""
    with pytest.raises(StructureValidationError, match=message):
        validate_structure(raw)


def test_invalid_structure_touches_nothing(fake_runner: FakeRunner, wp: WPCli) -> None:
    """Validation failures never reach the container."""
    with pytest.raises(StructureValidationError):
        StructureApplier(wp).apply(REF, {"pages": "nope"})

    assert fake_runner.calls == []


def test_failing_page_is_isolated(fake_runner: FakeRunner, wp: WPCli) -> None:
    """One failing page leaves the others created and the cache flushed."""
    slugs = ["accueil", "a-propos", "services", "contact", "blog"]
    for index, slug in enumerate(slugs, start=10):
        if slug == "services":
            fake_runner.on(*CREATE, "--post_name=services", stderr="db gone", exit_code=1)
        else:
            _created(fake_runner, slug, index)
    structure = {"pages": [_page(slug.title(), slug) for slug in slugs]}

    result = StructureApplier(wp).apply(REF, structure)

    assert [page.slug for page in result.pages] == slugs
    assert [page.status for page in result.pages] == [
        "success",
        "success",
        "error",
        "success",
        "success",
    ]
    assert result.pages[2].id is None
    assert result.pages[2].error is not None and "services" in result.pages[2].error
    assert [page.id for page in result.pages if page.ok] == [10, 11, 13, 14]
    assert result.homepage_id == 10
    assert fake_runner.called("exec", REF, "wp", "option", "update", "page_on_front", "10")
    assert result.cache_flushed is True
    assert fake_runner.called("exec", REF, "wp", "cache", "flush")
    assert fake_runner.called("exec", REF, "wp", "rewrite", "flush")


def test_created_page_carries_encoded_markup(fake_runner: FakeRunner, wp: WPCli) -> None:
    """Page content is the block markup of its blocks."""
    _created(fake_runner, "contact", 5)

    StructureApplier(wp).apply(REF, {"pages": [_page("Contact", "contact")]})

    (call,) = fake_runner.called(*CREATE)
    assert "--post_content=<!-- wp:paragraph -->\n<p>Contact</p>\n<!-- /wp:paragraph -->" in call


def test_homepage_found_by_lookup_when_creation_failed(
    fake_runner: FakeRunner, wp: WPCli
) -> None:
    """An existing home page is used when this run could not create it."""
    fake_runner.on(*CREATE, "--post_name=accueil", exit_code=1)
    fake_runner.on(
        "exec", REF, "wp", "post", "list", "--post_type=page", "--post_status=publish",
        "--name=accueil", stdout="31\n",
    )

    result = StructureApplier(wp).apply(REF, {"pages": [_page("Accueil", "accueil")]})

    assert result.homepage_id == 31
    assert fake_runner.called("exec", REF, "wp", "option", "update", "show_on_front", "page")


def test_menu_falls_back_to_next_location(fake_runner: FakeRunner, wp: WPCli) -> None:
    """A refused location is skipped and the next one is used."""
    _created(fake_runner, "accueil", 10)
    _created(fake_runner, "contact", 11)
    fake_runner.on(
        "exec", REF, "wp", "menu", "location", "list",
        stdout=json.dumps(
            [
                {"location": "primary", "description": "Primary"},
                {"location": "header", "description": "Header"},
            ]
        ),
    )
    fake_runner.on(
        "exec", REF, "wp", "menu", "location", "assign", "*", "primary",
        stderr="invalid location", exit_code=1,
    )
    structure = {
        "pages": [_page("Accueil", "accueil"), _page("Contact", "contact")],
        "menu": [{"label": "Accueil", "url": "/"}, {"label": "Contact", "url": "/contact"}],
    }

    result = StructureApplier(wp).apply(REF, structure)

    assert result.menu is True
    assert result.menu_location == "header"
    assert result.menu_error is None
    items = fake_runner.called("exec", REF, "wp", "menu", "item", "add-post")
    assert [call[7] for call in items] == ["10", "11"]


def test_menu_assignment_failure_is_recorded(fake_runner: FakeRunner, wp: WPCli) -> None:
    """When no location accepts the menu the pages still stand."""
    _created(fake_runner, "contact", 11)
    fake_runner.on("exec", REF, "wp", "menu", "location", "assign", exit_code=1)

    result = StructureApplier(wp).apply(
        REF,
        {"pages": [_page("Contact", "contact")], "menu": [{"label": "Contact", "url": "/contact"}]},
    )

    assert result.pages[0].ok
    assert result.menu is True
    assert result.menu_location is None
    assert result.menu_error is not None and "could not be assigned" in result.menu_error
    assigned = fake_runner.called("exec", REF, "wp", "menu", "location", "assign")
    assert [call[7] for call in assigned] == ["primary", "header", "main-menu", "top"]


def test_menu_children_use_parent_item_id(fake_runner: FakeRunner, wp: WPCli) -> None:
    """Child items are attached to the id returned for their parent."""
    _created(fake_runner, "services", 20)
    _created(fake_runner, "traiteur", 21)
    fake_runner.on("exec", REF, "wp", "menu", "item", "add-post", "*", "20", stdout="88\n")
    structure = {
        "pages": [_page("Services", "services"), _page("Traiteur", "traiteur")],
        "menu": [
            {
                "label": "Services",
                "url": "/services",
                "children": [{"label": "Traiteur", "url": "/traiteur"}],
            }
        ],
    }

    StructureApplier(wp).apply(REF, structure)

    (child,) = fake_runner.called("exec", REF, "wp", "menu", "item", "add-post", "*", "21")
    assert "--parent-id=88" in child


def test_generator_output_is_used_with_context(fake_runner: FakeRunner, wp: WPCli) -> None:
    """Generated blocks replace the page's own blocks when a context is given."""
    _created(fake_runner, "services", 3)
    seen: list[tuple[str, str]] = []

    def generator(title: str, page_type: str, context: Mapping[str, Any]) -> object:
        seen.append((title, page_type))
        return {"blocks": [{"type": "heading", "content": "Nos prestations"}]}

    applier = StructureApplier(wp, generator=generator)
    result = applier.apply(
        REF, {"pages": [_page("Services", "services")]}, {"site_name": "Acme", "locale": "fr_FR"}
    )

    assert seen == [("Services", "services")]
    assert result.pages[0].content_generated is True
    (call,) = fake_runner.called(*CREATE)
    assert "<h2>Nos prestations</h2>" in call[-2]


def test_generator_failure_uses_fallback(fake_runner: FakeRunner, wp: WPCli) -> None:
    """A raising generator never fails the page."""
    _created(fake_runner, "contact", 4)

    def generator(title: str, page_type: str, context: Mapping[str, Any]) -> object:
        raise RuntimeError("quota exceeded")

    result = StructureApplier(wp, generator=generator).apply(
        REF, {"pages": [_page("Contact", "contact")]}, {"site_name": "Acme Café"}
    )

    assert result.pages[0].ok
    assert result.pages[0].content_generated is False
    (call,) = fake_runner.called(*CREATE)
    assert "Contactez Acme Café" in call[-2]


def test_cleanup_preview_homepages(fake_runner: FakeRunner, wp: WPCli) -> None:
    """Preview home pages are deleted and the front page is reset."""
    fake_runner.on(
        "exec", REF, "wp", "post", "list", "--post_type=page", "--post_status=any",
        "--name=accueil-personnalise", stdout="7 9\n",
    )
    fake_runner.on("exec", REF, "wp", "option", "get", "page_on_front", stdout="9\n")

    deleted = StructureApplier(wp).cleanup_preview_homepages(REF)

    assert deleted == [7, 9]
    assert fake_runner.called("exec", REF, "wp", "post", "delete", "7", "--force")
    assert fake_runner.called("exec", REF, "wp", "post", "delete", "9", "--force")
    assert fake_runner.called("exec", REF, "wp", "option", "update", "show_on_front", "posts")


def test_menu_items_without_pages_are_dropped(fake_runner: FakeRunner, wp: WPCli) -> None:
    """Only items pointing at pages of the structure reach the menu."""
    _created(fake_runner, "contact", 11)
    structure = {
        "pages": [_page("Contact", "contact")],
        "menu": [
            {"label": "Blog", "url": "/blog"},
            {"label": "Contact", "url": "/contact"},
        ],
    }

    result = StructureApplier(wp).apply(REF, structure)

    assert result.menu is True
    items = fake_runner.called("exec", REF, "wp", "menu", "item", "add-post")
    assert [call[7] for call in items] == ["11"]
    assert all("--title=Blog" not in call for call in items)


def test_menu_without_matching_pages_is_not_created(fake_runner: FakeRunner, wp: WPCli) -> None:
    """A menu whose items all point elsewhere is skipped."""
    _created(fake_runner, "contact", 11)

    result = StructureApplier(wp).apply(
        REF,
        {"pages": [_page("Contact", "contact")], "menu": [{"label": "Blog", "url": "/blog"}]},
    )

    assert result.menu is False
    assert not fake_runner.called("exec", REF, "wp", "menu", "create")
