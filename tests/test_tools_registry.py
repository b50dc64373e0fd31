from __future__ import annotations

import pytest

from cmsagent.tools.registry import ToolMetadata, ToolRegistry


def test_tool_registry_register_and_lookup() -> None:
    registry = ToolRegistry()

    def handler(args: dict[str, str]) -> dict[str, str]:
        return args

    registry.register("getPage", handler)

    spec = registry.get("getPage")
    assert spec is not None
    assert spec.name == "getPage"
    assert spec.handler is handler
    assert spec.metadata.risk_level == "safe"
    assert [tool.name for tool in registry.list_tools()] == ["getPage"]


def test_tool_registry_rejects_duplicates() -> None:
    registry = ToolRegistry()
    registry.register("getPage", lambda args: args)

    with pytest.raises(ValueError, match="already registered"):
        registry.register("getPage", lambda args: args)


def test_tool_metadata_validates_risk_level() -> None:
    with pytest.raises(ValueError):
        ToolMetadata(name="wipe", description="wipe", risk_level="catastrophic")


def test_definitions_follow_requested_names() -> None:
    registry = ToolRegistry()
    schema = {"type": "object", "properties": {"slug": {"type": "string"}}}
    registry.register(
        "getPage", lambda args: args, ToolMetadata(name="getPage", description="Get a page"), schema
    )
    registry.register("deletePage", lambda args: args)

    definitions = registry.definitions(["getPage", "missing"])

    assert [definition.name for definition in definitions] == ["getPage"]
    assert definitions[0].description == "Get a page"
    assert definitions[0].parameters == schema
    assert len(registry.definitions()) == 2
