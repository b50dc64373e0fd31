from __future__ import annotations

import pytest

from cmsagent.tools.demo import DEMO_METADATA, build_demo_registry


def _handlers():
    registry, cms = build_demo_registry()
    return {spec.name: spec.handler for spec in registry.list_tools()}, cms


def test_registry_covers_every_tool() -> None:
    registry, _cms = build_demo_registry()

    assert [spec.name for spec in registry.list_tools()] == [tool.name for tool in DEMO_METADATA]
    assert all(spec.input_schema.get("type") == "object" for spec in registry.list_tools())


def test_page_lifecycle() -> None:
    handlers, cms = _handlers()

    created = handlers["createPage"]({"name": "Home", "slug": "home"})
    page_id = created["page"]["id"]
    handlers["updatePage"]({"id": page_id, "updates": {"name": "Homepage"}})
    listing = handlers["getPage"]({"all": True})
    deleted = handlers["deletePage"]({"slug": "home", "confirmed": True})

    assert created["created"] is True
    assert listing["count"] == 1
    assert listing["items"][0]["name"] == "Homepage"
    assert deleted == {"deleted": True, "id": page_id, "sectionsRemoved": 0}
    assert cms.pages == {}


def test_section_lifecycle() -> None:
    handlers, _cms = _handlers()
    handlers["createPage"]({"name": "Home", "slug": "home"})

    created = handlers["createSection"]({"pageSlug": "home", "kind": "hero", "content": {"a": 1}})
    section_id = created["section"]["id"]
    handlers["updateSection"]({"id": section_id, "content": {"b": 2}})
    fetched = handlers["getSection"]({"id": section_id})
    page = handlers["getPage"]({"slug": "home", "includeContent": True})["items"][0]

    assert fetched["section"]["content"] == {"a": 1, "b": 2}
    assert page["sections"][0]["kind"] == "hero"

    handlers["deleteSection"]({"id": section_id})

    assert handlers["getPage"]({"slug": "home"})["items"][0]["sections"] == 0


@pytest.mark.parametrize(
    ("tool", "args", "message"),
    [
        ("createPage", {"name": "Home", "slug": "Not A Slug"}, "Validation failed"),
        ("createPage", {"slug": "home"}, "name is a required field"),
        ("getPage", {"slug": "missing"}, "Page not found: missing"),
        ("deletePage", {"slug": "home"}, "confirmed is a required field"),
        ("getSection", {"id": "nope"}, "Section not found: nope"),
        ("updatePage", {"slug": "home", "updates": {"color": "red"}}, "invalid fields"),
    ],
)
def test_handler_errors(tool: str, args: dict, message: str) -> None:
    handlers, _cms = _handlers()
    handlers["createPage"]({"name": "Home", "slug": "home"})

    with pytest.raises(ValueError, match=message):
        handlers[tool](args)


def test_duplicate_slug_is_a_constraint_error() -> None:
    handlers, _cms = _handlers()
    handlers["createPage"]({"name": "Home", "slug": "home"})

    with pytest.raises(ValueError, match="already exists"):
        handlers["createPage"]({"name": "Other", "slug": "home"})
