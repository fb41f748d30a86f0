"""
JSON-RPC client for n8n-mcp servers over HTTP.
Sends MCP requests to the /mcp endpoint with per-tenant headers.
"""

import itertools
import json
import logging
from typing import Dict, Any, List, Optional, Union

import requests
from pydantic import ValidationError

from . import __version__
from .context import InstanceContext, build_tenant_headers, mask_secret
from .errors import (
    AuthenticationError,
    InstanceContextError,
    JsonRpcError,
    MCPConnectionError,
    MCPHTTPError,
    ToolExecutionError,
)
from .models import HealthStatus, JsonRpcRequest, ToolCallResult, ToolDescription

# Set up logging
logger = logging.getLogger('tenant_bridge.client')

PROTOCOL_VERSION = "2025-03-26"


def parse_sse_messages(text: str) -> List[Dict[str, Any]]:
    """
    Parse a text/event-stream body into the JSON messages carried by its data lines.
    Multi-line data fields are joined with newlines, as the SSE format requires.
    """
    messages = []
    data_lines = []
    for line in text.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))
        elif not line.strip():
            if data_lines:
                payload = "\n".join(data_lines)
                data_lines = []
                try:
                    messages.append(json.loads(payload))
                except ValueError:
                    logger.warning(f"Skipping non-JSON event payload: {payload[:100]}")
    return messages


def raise_for_rpc_error(error: Dict[str, Any]):
    """Raise the exception matching a JSON-RPC error member."""
    code = error.get("code", -32603)
    message = error.get("message", "Unknown error")
    data = error.get("data")
    if "instance context" in message.lower():
        problems = []
        if isinstance(data, dict):
            problems = data.get("errors") or data.get("problems") or []
        raise InstanceContextError(message, problems=problems, code=code, data=data)
    raise JsonRpcError(code, message, data)


class MCPHttpClient:
    """
    Client for the JSON-RPC /mcp endpoint of an n8n-mcp server.

    The client is bound to one tenant through its instance context. When no
    context is given, the server's own n8n configuration is used.
    """

    def __init__(
        self,
        server_url: str,
        auth_token: str,
        context: Optional[InstanceContext] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.auth_token = auth_token
        self.context = context
        self.timeout = timeout
        self.http = session or requests.Session()
        self.mcp_session_id = None
        self._ids = itertools.count(1)

    @property
    def endpoint(self) -> str:
        return f"{self.server_url}/mcp"

    def with_context(self, context: Optional[InstanceContext]) -> "MCPHttpClient":
        """Return a client for another tenant that shares this client's HTTP session."""
        return MCPHttpClient(self.server_url, self.auth_token, context, self.timeout, self.http)

    def _headers(self) -> Dict[str, str]:
        return build_tenant_headers(self.auth_token, self.context, self.mcp_session_id)

    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        tenant = self.context.instance_id if self.context else "default"
        logger.debug(f"POST {self.endpoint} method={payload.get('method')} tenant={tenant}")
        try:
            response = self.http.post(
                self.endpoint,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise MCPConnectionError(f"Timeout while communicating with the MCP server at {self.endpoint}") from e
        except requests.RequestException as e:
            raise MCPConnectionError(f"Could not reach the MCP server at {self.endpoint}: {str(e)}") from e

        if response.status_code == 401:
            raise AuthenticationError(401, response.text)
        if response.status_code >= 400:
            # Some servers report an invalid instance context as an HTTP error with a JSON-RPC body
            body = self._json_or_none(response)
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                if "instance context" in str(body["error"].get("message", "")).lower():
                    raise_for_rpc_error(body["error"])
            raise MCPHTTPError(response.status_code, response.text)

        session_id = response.headers.get("Mcp-Session-Id")
        if session_id:
            self.mcp_session_id = session_id
        return response

    @staticmethod
    def _json_or_none(response: requests.Response):
        try:
            return response.json()
        except ValueError:
            return None

    def _extract_message(self, response: requests.Response, request_id) -> Dict[str, Any]:
        content_type = response.headers.get("Content-Type", "")
        if "text/event-stream" in content_type:
            messages = parse_sse_messages(response.text)
        else:
            body = self._json_or_none(response)
            if body is None:
                raise MCPHTTPError(response.status_code, f"Invalid JSON response: {response.text[:200]}")
            messages = body if isinstance(body, list) else [body]

        for message in messages:
            if isinstance(message, dict) and message.get("id") == request_id:
                return message
        raise MCPHTTPError(response.status_code, f"No response for request {request_id} in server reply")

    def request(self, method: str, params: Optional[Union[Dict[str, Any], List[Any]]] = None) -> Any:
        """Send a JSON-RPC request and return its result."""
        request_id = next(self._ids)
        payload = JsonRpcRequest(method=method, params=params, id=request_id).model_dump(exclude_none=True)
        response = self._post(payload)
        message = self._extract_message(response, request_id)
        if message.get("error"):
            raise_for_rpc_error(message["error"])
        return message.get("result")

    def notify(self, method: str, params: Optional[Union[Dict[str, Any], List[Any]]] = None):
        """Send a JSON-RPC notification, which has no response."""
        payload = JsonRpcRequest(method=method, params=params).model_dump(exclude_none=True)
        self._post(payload)

    def initialize(self, client_name: str = "n8n-mcp-tenant-bridge", client_version: str = __version__) -> Dict[str, Any]:
        """Perform the MCP initialize handshake."""
        result = self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": client_name, "version": client_version},
        })
        self.notify("notifications/initialized")
        server_info = (result or {}).get("serverInfo", {})
        logger.info(
            f"Initialized MCP session with {server_info.get('name', 'unknown server')} "
            f"{server_info.get('version', '')} at {self.server_url}"
        )
        return result or {}

    def list_tools(self) -> List[ToolDescription]:
        """List the tools available to this client's tenant."""
        tools = []
        cursor = None
        while True:
            params = {"cursor": cursor} if cursor else None
            result = self.request("tools/list", params) or {}
            tools.extend(ToolDescription.from_tool(tool) for tool in result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                break
        return tools

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None, tool_call_id: Optional[str] = None) -> ToolCallResult:
        """Call a tool and return its content. Raises ToolExecutionError on a tool-level failure."""
        if self.context is not None:
            logger.info(
                f"Calling tool {name} for instance {self.context.instance_id or 'anonymous'} "
                f"({self.context.n8n_api_url}, key {mask_secret(self.context.n8n_api_key)})"
            )
        else:
            logger.info(f"Calling tool {name}")
        result = self.request("tools/call", {"name": name, "arguments": arguments or {}}) or {}
        content = result.get("content", [])
        if result.get("isError"):
            raise ToolExecutionError(name, content)
        return ToolCallResult(tool=name, tool_call_id=tool_call_id, content=content)

    def health(self) -> HealthStatus:
        """Fetch the server's /health endpoint."""
        url = f"{self.server_url}/health"
        try:
            response = self.http.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise MCPConnectionError(f"Could not reach {url}: {str(e)}") from e
        if response.status_code >= 400:
            raise MCPHTTPError(response.status_code, response.text)
        body = self._json_or_none(response)
        if not isinstance(body, dict):
            raise MCPHTTPError(response.status_code, f"Invalid health response: {response.text[:200]}")
        try:
            return HealthStatus.model_validate(body)
        except ValidationError as e:
            raise MCPHTTPError(response.status_code, f"Invalid health response: {response.text[:200]}") from e

    def close(self):
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
