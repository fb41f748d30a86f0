"""
Exceptions raised by the n8n-mcp-tenant-bridge client, vault and proxy.
"""

from typing import Any, List, Optional


class BridgeError(Exception):
    """Base exception for all bridge operations."""
    pass


class MCPConnectionError(BridgeError):
    """Raised when the MCP server cannot be reached or times out."""
    pass


class MCPHTTPError(BridgeError):
    """Raised when the MCP server answers with an unexpected HTTP status."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"MCP server returned HTTP {status_code}: {body[:200]}")


class AuthenticationError(MCPHTTPError):
    """Raised when the bearer token is missing or rejected (401)."""
    pass


class JsonRpcError(BridgeError):
    """Raised when the server answers with a JSON-RPC error member."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"JSON-RPC error {code}: {message}")


class InstanceContextError(JsonRpcError):
    """Raised when an instance context is invalid, locally or according to the server."""

    def __init__(self, message: str, problems: Optional[List[str]] = None, code: int = -32602, data: Any = None):
        self.problems = problems or []
        super().__init__(code, message, data)


class ToolExecutionError(BridgeError):
    """Raised when a tool call completes but the server flags the result as an error."""

    def __init__(self, tool_name: str, content: List[dict]):
        self.tool_name = tool_name
        self.content = content
        texts = [item.get("text", "") for item in content if item.get("type") == "text"]
        detail = "; ".join(t for t in texts if t) or "no details"
        super().__init__(f"Tool {tool_name} failed: {detail}")


class CredentialNotFoundError(BridgeError):
    """Raised when no credentials are stored for a tenant."""
    pass


class CredentialDecryptionError(BridgeError):
    """Raised when stored credentials cannot be decrypted with the configured key."""
    pass
