from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Any

from cmsagent.core.types import new_id
from cmsagent.tools.registry import ToolMetadata, ToolRegistry

_SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_SLUG_ERROR = "Validation failed: slug must be lowercase words joined by '-'"


@dataclass(slots=True)
class DemoCms:
    """A tiny in-memory page/section store so the agent loop has something to edit."""

    pages: dict[str, dict[str, Any]] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def find_page(self, *, page_id: str | None = None, slug: str | None = None) -> dict[str, Any]:
        with self.lock:
            for page in self.pages.values():
                if page_id is not None and page["id"] == page_id:
                    return page
                if slug is not None and page["slug"] == slug:
                    return page
        raise ValueError(f"Page not found: {page_id or slug}")


def _page_summary(page: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": page["id"],
        "name": page["name"],
        "slug": page["slug"],
        "sections": len(page["sections"]),
    }


def _lookup(cms: DemoCms, args: dict[str, Any]) -> dict[str, Any]:
    page_id = args.get("id")
    slug = args.get("slug")
    if page_id is None and slug is None:
        raise ValueError("Validation failed: id or slug is a required field")
    if page_id is not None and not isinstance(page_id, str):
        raise ValueError("Validation failed: id must be a string")
    if slug is not None and not isinstance(slug, str):
        raise ValueError("Validation failed: slug must be a string")
    return cms.find_page(page_id=page_id, slug=slug)


def get_page_handler(cms: DemoCms) -> Any:
    def handler(args: dict[str, Any]) -> dict[str, Any]:
        if args.get("all") or (args.get("id") is None and args.get("slug") is None):
            with cms.lock:
                items = [_page_summary(page) for page in cms.pages.values()]
            return {"items": items, "count": len(items)}
        page = _lookup(cms, args)
        if args.get("includeContent"):
            return {"items": [dict(page, sections=[dict(s) for s in page["sections"]])]}
        return {"items": [_page_summary(page)]}

    return handler


def create_page_handler(cms: DemoCms) -> Any:
    def handler(args: dict[str, Any]) -> dict[str, Any]:
        name = args.get("name")
        slug = args.get("slug")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Validation failed: name is a required field")
        if not isinstance(slug, str) or not _SLUG_RE.match(slug):
            raise ValueError(_SLUG_ERROR)
        with cms.lock:
            if any(page["slug"] == slug for page in cms.pages.values()):
                raise ValueError(f"Page with slug '{slug}' already exists")
            page = {"id": new_id(), "name": name.strip(), "slug": slug, "sections": []}
            cms.pages[page["id"]] = page
        return {"created": True, "page": _page_summary(page)}

    return handler


def update_page_handler(cms: DemoCms) -> Any:
    def handler(args: dict[str, Any]) -> dict[str, Any]:
        page = _lookup(cms, args)
        updates = args.get("updates") or {}
        if not isinstance(updates, dict):
            raise ValueError("Validation failed: updates must be an object")
        unknown = set(updates) - {"name", "slug"}
        if unknown:
            raise ValueError(f"Validation failed: invalid fields {sorted(unknown)}")
        new_slug = updates.get("slug")
        with cms.lock:
            if new_slug is not None and new_slug != page["slug"]:
                if not isinstance(new_slug, str) or not _SLUG_RE.match(new_slug):
                    raise ValueError(_SLUG_ERROR)
                if any(other["slug"] == new_slug for other in cms.pages.values()):
                    raise ValueError(f"Page with slug '{new_slug}' already exists")
            page.update(updates)
        return {"updated": True, "page": _page_summary(page)}

    return handler


def delete_page_handler(cms: DemoCms) -> Any:
    def handler(args: dict[str, Any]) -> dict[str, Any]:
        if args.get("confirmed") is not True:
            raise ValueError("Validation failed: confirmed is a required field")
        page = _lookup(cms, args)
        with cms.lock:
            cms.pages.pop(page["id"], None)
        return {"deleted": True, "id": page["id"], "sectionsRemoved": len(page["sections"])}

    return handler


def create_section_handler(cms: DemoCms) -> Any:
    def handler(args: dict[str, Any]) -> dict[str, Any]:
        page = cms.find_page(page_id=args.get("pageId"), slug=args.get("pageSlug"))
        kind = args.get("kind")
        content = args.get("content") or {}
        if not isinstance(kind, str) or not kind:
            raise ValueError("Validation failed: kind is a required field")
        if not isinstance(content, dict):
            raise ValueError("Validation failed: content must be an object")
        section = {"id": new_id(), "kind": kind, "content": dict(content)}
        with cms.lock:
            page["sections"].append(section)
        return {"created": True, "section": section, "pageId": page["id"]}

    return handler


def _find_section(cms: DemoCms, section_id: Any) -> dict[str, Any]:
    if not isinstance(section_id, str):
        raise ValueError("Validation failed: id is a required field")
    with cms.lock:
        for page in cms.pages.values():
            for section in page["sections"]:
                if section["id"] == section_id:
                    return section
    raise ValueError(f"Section not found: {section_id}")


def get_section_handler(cms: DemoCms) -> Any:
    def handler(args: dict[str, Any]) -> dict[str, Any]:
        return {"section": dict(_find_section(cms, args.get("id")))}

    return handler


def update_section_handler(cms: DemoCms) -> Any:
    def handler(args: dict[str, Any]) -> dict[str, Any]:
        section = _find_section(cms, args.get("id"))
        content = args.get("content")
        if not isinstance(content, dict):
            raise ValueError("Validation failed: content must be an object")
        with cms.lock:
            section["content"].update(content)
        return {"updated": True, "section": dict(section)}

    return handler


def delete_section_handler(cms: DemoCms) -> Any:
    def handler(args: dict[str, Any]) -> dict[str, Any]:
        section = _find_section(cms, args.get("id"))
        with cms.lock:
            for page in cms.pages.values():
                if section in page["sections"]:
                    page["sections"].remove(section)
        return {"deleted": True, "id": section["id"]}

    return handler


DEMO_METADATA: tuple[ToolMetadata, ...] = (
    ToolMetadata(
        name="getPage",
        description="Get page(s). By id, slug, or all. includeContent for full sections.",
        phrases=["get page", "find page", "show page", "list pages", "all pages", "page by slug"],
        category="read",
        related_tools=["getSection", "updateSection"],
    ),
    ToolMetadata(
        name="createPage",
        description="Create a new page with a unique slug.",
        phrases=["create page", "new page", "add page", "make page"],
        category="write",
        related_tools=["createSection", "getPage"],
        risk_level="moderate",
    ),
    ToolMetadata(
        name="updatePage",
        description="Rename a page or change its slug.",
        phrases=["update page", "rename page", "change slug", "edit page"],
        category="write",
        related_tools=["getPage"],
        risk_level="moderate",
    ),
    ToolMetadata(
        name="deletePage",
        description="Delete a page and all its sections. Requires confirmed.",
        phrases=["delete page", "remove page", "trash page", "destroy page"],
        category="delete",
        related_tools=["getPage"],
        risk_level="destructive",
        requires_confirmation=True,
    ),
    ToolMetadata(
        name="getSection",
        description="Get one section by id with its content.",
        phrases=["get section", "show section", "section content", "read section"],
        category="read",
        related_tools=["updateSection"],
    ),
    ToolMetadata(
        name="createSection",
        description="Add a section of a given kind (hero, text, cta) to a page.",
        phrases=["add section", "create section", "new section", "add hero", "insert block"],
        category="write",
        related_tools=["updateSection", "getPage"],
        risk_level="moderate",
    ),
    ToolMetadata(
        name="updateSection",
        description="Update section content. Merges with existing.",
        phrases=["update section", "edit section", "change heading", "edit hero", "update cta"],
        category="write",
        related_tools=["getSection"],
        risk_level="moderate",
    ),
    ToolMetadata(
        name="deleteSection",
        description="Remove a section from its page.",
        phrases=["delete section", "remove section", "drop block"],
        category="delete",
        related_tools=["getPage"],
        risk_level="destructive",
        requires_confirmation=True,
    ),
)

_HANDLERS = {
    "getPage": get_page_handler,
    "createPage": create_page_handler,
    "updatePage": update_page_handler,
    "deletePage": delete_page_handler,
    "getSection": get_section_handler,
    "createSection": create_section_handler,
    "updateSection": update_section_handler,
    "deleteSection": delete_section_handler,
}

_SCHEMAS: dict[str, dict[str, Any]] = {
    "getPage": {
        "type": "object",
        "properties": {
            "id": {"type": "string"},
            "slug": {"type": "string"},
            "all": {"type": "boolean"},
            "includeContent": {"type": "boolean"},
        },
    },
    "createPage": {
        "type": "object",
        "properties": {"name": {"type": "string"}, "slug": {"type": "string"}},
        "required": ["name", "slug"],
    },
    "updatePage": {
        "type": "object",
        "properties": {
            "id": {"type": "string"},
            "slug": {"type": "string"},
            "updates": {"type": "object"},
        },
        "required": ["updates"],
    },
    "deletePage": {
        "type": "object",
        "properties": {
            "id": {"type": "string"},
            "slug": {"type": "string"},
            "confirmed": {"type": "boolean"},
        },
        "required": ["confirmed"],
    },
    "getSection": {
        "type": "object",
        "properties": {"id": {"type": "string"}},
        "required": ["id"],
    },
    "createSection": {
        "type": "object",
        "properties": {
            "pageId": {"type": "string"},
            "pageSlug": {"type": "string"},
            "kind": {"type": "string"},
            "content": {"type": "object"},
        },
        "required": ["kind"],
    },
    "updateSection": {
        "type": "object",
        "properties": {"id": {"type": "string"}, "content": {"type": "object"}},
        "required": ["id", "content"],
    },
    "deleteSection": {
        "type": "object",
        "properties": {"id": {"type": "string"}},
        "required": ["id"],
    },
}


def build_demo_registry(cms: DemoCms | None = None) -> tuple[ToolRegistry, DemoCms]:
    """Registry wired to a fresh (or given) DemoCms."""
    cms = cms or DemoCms()
    registry = ToolRegistry()
    for metadata in DEMO_METADATA:
        factory = _HANDLERS[metadata.name]
        registry.register(metadata.name, factory(cms), metadata, _SCHEMAS[metadata.name])
    return registry, cms
