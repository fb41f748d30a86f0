"""
Data models for the n8n-mcp-tenant-bridge application.
"""

from typing import Dict, Any, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class JsonRpcRequest(BaseModel):
    """Model for JSON-RPC 2.0 requests sent to the /mcp endpoint."""
    jsonrpc: str = "2.0"
    method: str
    params: Optional[Union[Dict[str, Any], List[Any]]] = None
    id: Optional[Union[int, str]] = None


class JsonRpcErrorBody(BaseModel):
    """Model for the error member of a JSON-RPC response."""
    code: int
    message: str
    data: Optional[Any] = None


class JsonRpcResponse(BaseModel):
    """Model for JSON-RPC 2.0 responses."""
    jsonrpc: str = "2.0"
    id: Optional[Union[int, str]] = None
    result: Optional[Any] = None
    error: Optional[JsonRpcErrorBody] = None


class ToolDescription(BaseModel):
    """Model for a tool advertised by tools/list."""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_tool(cls, tool: Dict[str, Any]) -> "ToolDescription":
        """Build a description from a raw tool entry, filling in a missing schema."""
        name = tool.get("name", "")
        schema = tool.get("inputSchema") or tool.get("input_schema")
        if not schema:
            schema = {
                "type": "object",
                "properties": {},
                "description": f"Schema not provided by the MCP server. Please refer to documentation for {name}.",
            }
        return cls(name=name, description=tool.get("description") or "", input_schema=schema)


class ToolCallRequest(BaseModel):
    """Model for tool call requests received by the proxy."""
    arguments: Dict[str, Any] = Field(default_factory=dict)
    tool_call_id: Optional[str] = None


class ToolCallResult(BaseModel):
    """Model for the outcome of a tools/call request."""
    tool: str
    tool_call_id: Optional[str] = None
    content: List[Dict[str, Any]] = Field(default_factory=list)
    is_error: bool = False


class MemoryUsage(BaseModel):
    """Memory figures reported by a health endpoint."""
    used: float
    total: float
    unit: str = "MB"


class HealthStatus(BaseModel):
    """Body of an n8n-mcp /health response."""
    model_config = ConfigDict(extra="allow")

    status: str
    version: Optional[str] = None
    uptime: Optional[float] = None
    memory: Optional[MemoryUsage] = None
    mode: Optional[str] = None
    timestamp: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.status.lower() in ("ok", "healthy")


class StoredCredentials(BaseModel):
    """Request body for storing a tenant's n8n credentials."""
    n8n_api_url: str
    n8n_api_key: str


class CheckResult(BaseModel):
    """Outcome of one deployment verification check."""
    name: str
    passed: bool
    detail: str = ""
    duration_ms: float = 0.0


class VerificationReport(BaseModel):
    """Outcome of a full deployment verification run."""
    target: str
    checks: List[CheckResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return bool(self.checks) and all(check.passed for check in self.checks)
