"""
Tests for the MCP SDK session helpers.
"""

import asyncio
from contextlib import asynccontextmanager
from functools import partial

import httpx
import pytest
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, ErrorData, ListToolsResult, TextContent, Tool
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route

from tenant_bridge import session as session_module
from tenant_bridge.errors import (
    AuthenticationError,
    InstanceContextError,
    MCPConnectionError,
    MCPHTTPError,
    ToolExecutionError,
)


class FakeSession:
    """Stands in for mcp.ClientSession."""

    tools = []
    call_result = None
    error = None
    delay = 0

    def __init__(self, read, write):
        self.read = read
        self.write = write

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def initialize(self):
        if self.delay:
            await asyncio.sleep(self.delay)

    async def list_tools(self):
        if self.error:
            raise self.error
        return ListToolsResult(tools=self.tools)

    async def call_tool(self, name, arguments):
        if self.error:
            raise self.error
        return self.call_result


@pytest.fixture
def transport(monkeypatch):
    captured = {}

    @asynccontextmanager
    async def fake_streamablehttp_client(url, headers=None):
        captured["url"] = url
        captured["headers"] = headers
        yield ("read", "write", lambda: None)

    class Session(FakeSession):
        pass

    monkeypatch.setattr(session_module, "streamablehttp_client", fake_streamablehttp_client)
    monkeypatch.setattr(session_module, "ClientSession", Session)
    captured["session"] = Session
    return captured


@pytest.mark.asyncio
async def test_list_tools_sends_tenant_headers(transport, tenant_context):
    transport["session"].tools = [
        Tool(name="n8n_list_workflows", description="List workflows", inputSchema={"type": "object", "properties": {}}),
    ]

    tools = await session_module.list_tenant_tools("https://mcp.example.com/", "token", tenant_context)

    assert [tool.name for tool in tools] == ["n8n_list_workflows"]
    assert tools[0].input_schema == {"type": "object", "properties": {}}
    assert transport["url"] == "https://mcp.example.com/mcp"
    assert transport["headers"]["Authorization"] == "Bearer token"
    assert transport["headers"]["X-N8n-Key"] == "n8n_api_1234567890abcdef"
    assert "Accept" not in transport["headers"]


@pytest.mark.asyncio
async def test_call_tool(transport):
    transport["session"].call_result = CallToolResult(content=[TextContent(type="text", text="done")])

    result = await session_module.call_tenant_tool("https://mcp.example.com", "token", "n8n_health_check")

    assert result.tool == "n8n_health_check"
    assert result.content == [{"type": "text", "text": "done"}]


@pytest.mark.asyncio
async def test_call_tool_error_result(transport):
    transport["session"].call_result = CallToolResult(content=[TextContent(type="text", text="boom")], isError=True)

    with pytest.raises(ToolExecutionError):
        await session_module.call_tenant_tool("https://mcp.example.com", "token", "n8n_health_check")


@pytest.mark.asyncio
async def test_instance_context_error_is_mapped(transport, tenant_context):
    transport["session"].error = McpError(ErrorData(code=-32602, message="Invalid instance context"))

    with pytest.raises(InstanceContextError):
        await session_module.list_tenant_tools("https://mcp.example.com", "token", tenant_context)


@pytest.mark.asyncio
async def test_timeout(transport):
    transport["session"].delay = 1

    with pytest.raises(MCPConnectionError):
        await session_module.list_tenant_tools("https://mcp.example.com", "token", timeout=0.01)


def answering_server(status_code, body):
    """A Starlette app whose /mcp endpoint always answers with the given status."""

    async def mcp_endpoint(request):
        return JSONResponse(body, status_code=status_code)

    return Starlette(routes=[Route("/mcp", mcp_endpoint, methods=["GET", "POST", "DELETE"])])


@pytest.fixture
def asgi_server(monkeypatch):
    """Routes the real SDK transport to an in-process ASGI app."""

    def serve(app):
        def client_factory(headers=None, timeout=None, auth=None):
            return httpx.AsyncClient(
                transport=httpx.ASGITransport(app=app),
                headers=headers,
                timeout=timeout,
                auth=auth,
                follow_redirects=True,
            )

        monkeypatch.setattr(
            session_module, "streamablehttp_client", partial(streamablehttp_client, httpx_client_factory=client_factory),
        )

    return serve


@pytest.mark.asyncio
async def test_rejected_token_raises_authentication_error(asgi_server):
    asgi_server(answering_server(401, {"error": "Unauthorized"}))

    with pytest.raises(AuthenticationError) as exc_info:
        await session_module.list_tenant_tools("http://mcp.test", "wrong-token", timeout=5)
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_server_error_raises_http_error(asgi_server):
    asgi_server(answering_server(500, {"error": "Internal Server Error"}))

    with pytest.raises(MCPHTTPError) as exc_info:
        await session_module.call_tenant_tool("http://mcp.test", "token", "n8n_health_check", timeout=5)
    assert exc_info.value.status_code == 500
    assert not isinstance(exc_info.value, AuthenticationError)


@pytest.mark.asyncio
async def test_wrapped_errors_are_unwrapped(transport):
    transport["session"].error = ExceptionGroup("task group", [
        McpError(ErrorData(code=-32602, message="Invalid instance context")),
    ])

    with pytest.raises(InstanceContextError):
        await session_module.list_tenant_tools("https://mcp.example.com", "token")
