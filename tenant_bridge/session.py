"""
Session management for the n8n-mcp-tenant-bridge application.
Talks to n8n-mcp servers through the MCP SDK's streamable HTTP transport.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Any, List, Optional

import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError

from .client import raise_for_rpc_error
from .context import InstanceContext, build_tenant_headers
from .errors import AuthenticationError, BridgeError, MCPConnectionError, MCPHTTPError, ToolExecutionError
from .models import ToolCallResult, ToolDescription

# Set up logging
logger = logging.getLogger('tenant_bridge.session')

LIST_TIMEOUT = 15.0
CALL_TIMEOUT = 30.0


def _transport_headers(auth_token: str, context: Optional[InstanceContext]) -> Dict[str, str]:
    # The SDK sets its own Content-Type and Accept headers
    headers = build_tenant_headers(auth_token, context)
    headers.pop("Content-Type", None)
    headers.pop("Accept", None)
    return headers


@asynccontextmanager
async def open_tenant_session(server_url: str, auth_token: str, context: Optional[InstanceContext] = None):
    """Open and initialize an MCP client session for one tenant."""
    url = f"{server_url.rstrip('/')}/mcp"
    tenant = context.instance_id if context else "default"
    logger.info(f"Opening MCP session to {url} for tenant {tenant}")
    async with streamablehttp_client(url, headers=_transport_headers(auth_token, context)) as (read, write, _):
        async with ClientSession(read, write) as session:
            await session.initialize()
            logger.info(f"Session initialized for tenant {tenant}")
            yield session


def _content_to_dicts(content) -> List[Dict[str, Any]]:
    items = []
    for item in content:
        if hasattr(item, "model_dump"):
            items.append(item.model_dump(exclude_none=True))
        else:
            items.append(dict(item))
    return items


def _leaf_exceptions(exc: BaseException) -> List[BaseException]:
    # The SDK transport runs requests in task groups, which wrap failures in exception groups
    if isinstance(exc, BaseExceptionGroup):
        leaves = []
        for inner in exc.exceptions:
            leaves.extend(_leaf_exceptions(inner))
        return leaves
    return [exc]


def _raise_for_transport_error(exc: BaseException, what: str):
    """Raise the bridge error matching a failure of the SDK session."""
    leaves = _leaf_exceptions(exc)
    for leaf in leaves:
        if isinstance(leaf, BridgeError):
            raise leaf
        if isinstance(leaf, McpError):
            raise_for_rpc_error({"code": leaf.error.code, "message": leaf.error.message, "data": leaf.error.data})
        if isinstance(leaf, httpx.HTTPStatusError):
            status_code = leaf.response.status_code
            try:
                body = leaf.response.text
            except httpx.ResponseNotRead:
                body = ""
            logger.error(f"MCP server returned HTTP {status_code} while {what}")
            if status_code == 401:
                raise AuthenticationError(401, body) from leaf
            raise MCPHTTPError(status_code, body) from leaf
    for leaf in leaves:
        if isinstance(leaf, (httpx.TimeoutException, TimeoutError)):
            logger.error(f"Timeout while {what}")
            raise MCPConnectionError(f"Timeout while {what}") from leaf
    logger.error(f"Error while {what}: {str(exc)}")
    raise MCPConnectionError(f"Error while {what}: {str(exc)}") from exc


async def _run_with_timeout(coro, timeout: float, what: str):
    try:
        async with asyncio.timeout(timeout):
            return await coro
    except asyncio.TimeoutError as e:
        logger.error(f"Timeout while {what}")
        raise MCPConnectionError(f"Timeout while {what}") from e
    except Exception as e:
        _raise_for_transport_error(e, what)


async def list_tenant_tools(
    server_url: str,
    auth_token: str,
    context: Optional[InstanceContext] = None,
    timeout: float = LIST_TIMEOUT,
) -> List[ToolDescription]:
    """List tools for a tenant through the MCP SDK."""

    async def _list():
        async with open_tenant_session(server_url, auth_token, context) as session:
            tools_response = await session.list_tools()
            return [ToolDescription.from_tool(tool.model_dump()) for tool in tools_response.tools]

    return await _run_with_timeout(_list(), timeout, f"listing tools on {server_url}")


async def call_tenant_tool(
    server_url: str,
    auth_token: str,
    tool_name: str,
    arguments: Optional[Dict[str, Any]] = None,
    context: Optional[InstanceContext] = None,
    timeout: float = CALL_TIMEOUT,
) -> ToolCallResult:
    """Call a tool for a tenant through the MCP SDK."""

    async def _call():
        async with open_tenant_session(server_url, auth_token, context) as session:
            logger.info(f"Calling tool {tool_name} on {server_url}")
            return await session.call_tool(tool_name, arguments or {})

    tool_response = await _run_with_timeout(_call(), timeout, f"calling tool {tool_name} on {server_url}")
    content = _content_to_dicts(tool_response.content)
    if tool_response.isError:
        raise ToolExecutionError(tool_name, content)
    return ToolCallResult(tool=tool_name, content=content)
