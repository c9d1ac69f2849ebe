"""MCP bindings: tool/resource listings and request handlers."""

from __future__ import annotations

import asyncio
import json

import pytest
from mcp import types

import daytona_mcp_server as dm


class TestListings:
    def test_tools_carry_schemas(self, server):
        tools = {t.name: t for t in server.list_tools()}
        assert len(tools) == len(dm.operations)
        exec_tool = tools["execute-command"]
        assert exec_tool.description.startswith("Execute a shell command")
        assert exec_tool.inputSchema["type"] == "object"
        assert {"sandboxId", "command"} <= set(exec_tool.inputSchema["required"])

    def test_static_resources_and_templates_are_split(self, server):
        static = [str(r.uri).rstrip("/") for r in server.list_resources()]
        templates = [t.uriTemplate for t in server.list_resource_templates()]
        assert static == ["daytona://sandboxes"]
        assert "daytona://sandboxes/{sandbox_id}/files/{path*}" in templates
        assert "daytona://sandboxes" not in templates


class TestWrappers:
    def test_call_tool_renders_json(self, server):
        content = asyncio.run(server.call_tool("get-sandbox", {"sandboxId": "sb1"}))
        assert content[0].type == "text"
        assert json.loads(content[0].text)["id"] == "sb1"

    def test_call_tool_renders_text(self, server):
        content = asyncio.run(server.call_tool("stop-sandbox", {"sandboxId": "sb1"}))
        assert content[0].text == "Sandbox sb1 stopped successfully"

    def test_call_tool_propagates_kind(self, server):
        with pytest.raises(dm.UnknownOperation):
            asyncio.run(server.call_tool("no-such-tool", {}))

    def test_read_resource(self, server):
        contents = asyncio.run(server.read_resource("daytona://sandboxes/sb1"))
        assert contents[0].mime_type == "application/json"
        assert json.loads(contents[0].content)["id"] == "sb1"


class TestRequestHandlers:
    def test_handlers_registered(self, server):
        handlers = server.server.request_handlers
        for request_type in (
            types.ListToolsRequest,
            types.CallToolRequest,
            types.ListResourcesRequest,
            types.ListResourceTemplatesRequest,
            types.ReadResourceRequest,
        ):
            assert request_type in handlers

    def test_list_tools_request(self, server):
        handler = server.server.request_handlers[types.ListToolsRequest]
        result = asyncio.run(handler(types.ListToolsRequest(method="tools/list")))
        assert len(result.root.tools) == len(dm.operations)

    def test_call_tool_error_is_structured(self, server):
        handler = server.server.request_handlers[types.CallToolRequest]
        request = types.CallToolRequest(
            method="tools/call",
            params=types.CallToolRequestParams(
                name="get-sandbox", arguments={"sandboxId": "missing"}
            ),
        )
        result = asyncio.run(handler(request))
        assert result.root.isError is True
        error = json.loads(result.root.content[0].text)
        assert error["kind"] == "NotFound"
        assert "missing" in error["message"]

    def test_call_tool_invalid_input_uses_our_kind(self, server, fake_client):
        handler = server.server.request_handlers[types.CallToolRequest]
        request = types.CallToolRequest(
            method="tools/call",
            params=types.CallToolRequestParams(
                name="create-sandbox", arguments={"badField": 1}
            ),
        )
        result = asyncio.run(handler(request))
        assert result.root.isError is True
        assert json.loads(result.root.content[0].text)["kind"] == "InvalidInput"
        assert fake_client.calls == []

    def test_read_resource_request(self, server):
        handler = server.server.request_handlers[types.ReadResourceRequest]
        request = types.ReadResourceRequest(
            method="resources/read",
            params=types.ReadResourceRequestParams(uri="daytona://sandboxes/sb2"),
        )
        result = asyncio.run(handler(request))
        assert json.loads(result.root.contents[0].text)["status"] == "stopped"


class TestConstruction:
    def test_servers_have_isolated_caches(self, fake_client):
        a = dm.DaytonaMcpServer(dm.DaytonaBackend(fake_client))
        b = dm.DaytonaMcpServer(dm.DaytonaBackend(fake_client))
        asyncio.run(a.invoke("get-sandbox", {"sandboxId": "sb1"}))
        assert "sb1" in a.cache
        assert "sb1" not in b.cache

    def test_cache_settings_applied(self, fake_client):
        srv = dm.DaytonaMcpServer(dm.DaytonaBackend(fake_client), cache_ttl=5, cache_size=7)
        assert srv.cache.ttl == 5
        assert srv.cache.max_entries == 7

    def test_verbose_options_leave_logger_level_alone(self, monkeypatch):
        monkeypatch.setattr(dm, "Daytona", lambda config: object())
        level = dm.log.level
        options = dm.ServerOptions(api_key="k", verbose=True)
        dm.DaytonaMcpServer.from_options(options)
        assert dm.log.level == level

    def test_from_options_builds_sdk_client(self, monkeypatch):
        created = {}

        class FakeSdk:
            def __init__(self, config):
                created["config"] = config

        monkeypatch.setattr(dm, "Daytona", FakeSdk)
        options = dm.ServerOptions(api_key="k", server_url="https://x/api", target="eu", cache_ttl=3)
        srv = dm.DaytonaMcpServer.from_options(options)
        assert srv.cache.ttl == 3
        config = created["config"]
        assert config.api_key == "k"
        assert config.api_url == "https://x/api"
        assert config.target == "eu"


class TestMain:
    def test_main_exits_without_api_key(self, monkeypatch):
        monkeypatch.delenv("DAYTONA_API_KEY", raising=False)
        with pytest.raises(SystemExit) as exc:
            dm.main()
        assert exc.value.code == 1
