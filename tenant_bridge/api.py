"""
API endpoints for the n8n-mcp-tenant-bridge application.
A multi-tenant proxy that stores each tenant's n8n credentials and forwards
MCP requests to an n8n-mcp server with that tenant's headers.
"""

import os
import time
import uuid
import logging
import resource
import sys
import threading
from typing import Dict, Any, Callable, Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from . import __version__
from .client import MCPHttpClient
from .config import Settings, load_settings, load_tenant_configs, resolve_static_tenant
from .context import InstanceContext, generate_session_id
from .errors import (
    AuthenticationError,
    BridgeError,
    CredentialDecryptionError,
    CredentialNotFoundError,
    InstanceContextError,
    JsonRpcError,
    MCPConnectionError,
    MCPHTTPError,
    ToolExecutionError,
)
from .models import MemoryUsage, StoredCredentials, ToolCallRequest, ToolCallResult
from .vault import CredentialVault, generate_key

# Set up logging
logger = logging.getLogger('tenant_bridge.api')

ClientFactory = Callable[[Settings, Optional[InstanceContext]], MCPHttpClient]

# Expired or unknown Mcp-Session-Id (400/404) or a token rotated upstream (401)
RECONNECT_STATUSES = (400, 401, 404)


def default_client_factory(settings: Settings, context: Optional[InstanceContext]) -> MCPHttpClient:
    return MCPHttpClient(
        settings.mcp_server_url,
        settings.mcp_auth_token,
        context=context,
        timeout=settings.request_timeout,
    )


class TenantClientPool:
    """Keeps one initialized MCP client per tenant."""

    def __init__(self, settings: Settings, factory: ClientFactory):
        self.settings = settings
        self.factory = factory
        self._clients: Dict[str, MCPHttpClient] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str, context: InstanceContext) -> MCPHttpClient:
        with self._lock:
            client = self._clients.get(tenant_id)
        if client is not None:
            return client

        context = context.model_copy(update={
            "instance_id": context.instance_id or tenant_id,
            "session_id": context.session_id or generate_session_id(tenant_id),
        })
        client = self.factory(self.settings, context)
        client.initialize()
        logger.info(f"Created MCP client for tenant {tenant_id} (session {context.session_id})")
        with self._lock:
            cached = self._clients.setdefault(tenant_id, client)
        if cached is not client:
            # Another request connected this tenant first
            client.close()
        return cached

    def call(self, tenant_id: str, context: InstanceContext, operation: Callable[[MCPHttpClient], Any]) -> Any:
        """
        Run an operation with the tenant's client. When the upstream no longer
        accepts the client's session, reconnect once and retry.
        """
        client = self.get(tenant_id, context)
        try:
            return operation(client)
        except MCPHTTPError as e:
            if e.status_code not in RECONNECT_STATUSES:
                raise
            logger.warning(f"Upstream rejected the session of tenant {tenant_id} (HTTP {e.status_code}), reconnecting")
            self.evict(tenant_id, client)
        return operation(self.get(tenant_id, context))

    def evict(self, tenant_id: str, client: Optional[MCPHttpClient] = None) -> bool:
        """Close and forget a tenant's client; with a client given, only if it is still the cached one."""
        with self._lock:
            cached = self._clients.get(tenant_id)
            if cached is None or (client is not None and cached is not client):
                return False
            del self._clients[tenant_id]
        cached.close()
        logger.info(f"Closed MCP client for tenant {tenant_id}")
        return True

    def close_all(self):
        logger.info("Cleaning up tenant MCP clients")
        with self._lock:
            tenant_ids = list(self._clients)
        for tenant_id in tenant_ids:
            self.evict(tenant_id)

    def __len__(self):
        with self._lock:
            return len(self._clients)


def memory_usage() -> MemoryUsage:
    """
    Peak resident memory of this process and total physical memory, in MB.
    Unix only: relies on the resource module and sysconf. ru_maxrss is in
    bytes on macOS and in kilobytes on Linux.
    """
    max_rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    used_bytes = max_rss if sys.platform == "darwin" else max_rss * 1024
    total_bytes = os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    return MemoryUsage(used=round(used_bytes / (1024 * 1024), 1), total=round(total_bytes / (1024 * 1024), 1))


def raise_for_bridge_error(e: BridgeError, what: str):
    """Convert a bridge error into the matching HTTPException."""
    if isinstance(e, InstanceContextError):
        raise HTTPException(status_code=422, detail={"message": e.message, "problems": e.problems})
    if isinstance(e, AuthenticationError):
        logger.error(f"Upstream MCP server rejected the proxy's token while {what}")
        raise HTTPException(status_code=502, detail="Upstream MCP server rejected the proxy's credentials")
    if isinstance(e, MCPConnectionError):
        logger.error(f"Upstream MCP server unavailable while {what}: {str(e)}")
        raise HTTPException(status_code=503, detail=str(e))
    if isinstance(e, CredentialDecryptionError):
        logger.error(f"Error {what}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
    logger.error(f"Error {what}: {str(e)}")
    raise HTTPException(status_code=502, detail=f"Error {what}: {str(e)}")


def create_app(
    settings: Optional[Settings] = None,
    vault: Optional[CredentialVault] = None,
    client_factory: Optional[ClientFactory] = None,
) -> FastAPI:
    """Build the proxy application."""
    settings = settings or load_settings()

    if vault is None:
        key = settings.credential_encryption_key
        if not key:
            logger.warning("CREDENTIAL_ENCRYPTION_KEY not set, using an ephemeral key; stored credentials will not survive a restart")
            key = generate_key()
        vault = CredentialVault(key, settings.credentials_file)

    app = FastAPI(
        title="n8n-mcp-tenant-bridge",
        description="A multi-tenant proxy that forwards MCP requests to an n8n-mcp server with per-tenant n8n credentials",
        version=__version__,
    )

    logger.info(f"Configuring CORS with allowed origins: {settings.origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    factory = client_factory or default_client_factory
    pool = TenantClientPool(settings, factory)
    static_tenants = load_tenant_configs(settings.tenants_file)
    started_at = time.monotonic()

    app.state.settings = settings
    app.state.vault = vault
    app.state.clients = pool

    # API Key authentication
    api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

    def verify_api_key(api_key: Optional[str] = Depends(api_key_header)):
        """Verify that the API key is valid."""
        if not settings.x_api_key:
            raise HTTPException(status_code=500, detail="Proxy API key not configured")
        if api_key != settings.x_api_key:
            raise HTTPException(status_code=401, detail="Invalid API Key")
        return api_key

    def resolve_context(tenant_id: str) -> InstanceContext:
        if tenant_id in vault:
            try:
                return vault.load(tenant_id)
            except CredentialNotFoundError:
                pass  # deleted concurrently; fall through to static tenants
        context = resolve_static_tenant(static_tenants, tenant_id)
        if context is None:
            raise HTTPException(status_code=404, detail=f"Tenant {tenant_id} not found")
        return context

    def upstream(tenant_id: str, what: str, operation: Callable[[MCPHttpClient], Any]) -> Any:
        """Run an operation with the tenant's client, converting bridge errors to HTTP errors."""
        try:
            return pool.call(tenant_id, resolve_context(tenant_id), operation)
        except BridgeError as e:
            raise_for_bridge_error(e, f"{what} for tenant {tenant_id}")

    @app.on_event("shutdown")
    def shutdown_clients():
        pool.close_all()

    @app.get("/health", summary="Check the health of the proxy and its upstream server")
    def health_check():
        """
        Check the health of the service.
        """
        upstream_health: Dict[str, Any]
        try:
            with factory(settings, None) as client:
                upstream_health = client.health().model_dump(exclude_none=True)
            status = "ok"
        except BridgeError as e:
            logger.warning(f"Upstream health check failed: {str(e)}")
            upstream_health = {"status": "unreachable", "error": str(e)}
            status = "degraded"

        return {
            "status": status,
            "version": __version__,
            "uptime": round(time.monotonic() - started_at, 1),
            "memory": memory_usage().model_dump(),
            "tenants": {"stored": len(vault.users()), "static": len(static_tenants["tenants"]), "connected": len(pool)},
            "upstream": upstream_health,
        }

    @app.get("/tenants", summary="List known tenants")
    def list_tenants(api_key: str = Depends(verify_api_key)):
        return {
            "stored": vault.users(),
            "static": sorted(static_tenants["tenants"]),
        }

    @app.put("/tenants/{tenant_id}/credentials", summary="Store a tenant's n8n credentials")
    def store_credentials(tenant_id: str, credentials: StoredCredentials, api_key: str = Depends(verify_api_key)):
        """
        Store (or replace) the n8n URL and API key used for a tenant.
        The key is encrypted at rest and never returned.
        """
        try:
            context = vault.store(tenant_id, credentials.n8n_api_url, credentials.n8n_api_key)
        except InstanceContextError as e:
            raise HTTPException(status_code=422, detail={"message": e.message, "problems": e.problems})
        pool.evict(tenant_id)
        return {"tenant_id": tenant_id, "n8n_api_url": context.n8n_api_url, "stored": True}

    @app.delete("/tenants/{tenant_id}/credentials", summary="Delete a tenant's n8n credentials")
    def delete_credentials(tenant_id: str, api_key: str = Depends(verify_api_key)):
        if not vault.delete(tenant_id):
            raise HTTPException(status_code=404, detail=f"No credentials stored for tenant {tenant_id}")
        pool.evict(tenant_id)
        return {"tenant_id": tenant_id, "deleted": True}

    @app.get("/tenants/{tenant_id}/tools", summary="List available tools for a tenant")
    def list_tenant_tools(tenant_id: str, api_key: str = Depends(verify_api_key)):
        """
        List the tools the n8n-mcp server offers for a tenant's n8n instance.
        """
        tools = upstream(tenant_id, "listing tools", lambda client: client.list_tools())
        return {
            "tenant_id": tenant_id,
            "tools": [tool.model_dump() for tool in tools],
        }

    @app.post("/tenants/{tenant_id}/tools/{tool_name}", summary="Call a tool for a tenant")
    def call_tenant_tool(
        tenant_id: str,
        tool_name: str,
        tool_call: ToolCallRequest,
        api_key: str = Depends(verify_api_key),
    ):
        """
        Call a tool on the n8n-mcp server using the tenant's n8n instance.
        Tool-level failures are reported in the result with is_error set.
        """
        call_id = tool_call.tool_call_id or str(uuid.uuid4())

        def call(client: MCPHttpClient) -> ToolCallResult:
            try:
                return client.call_tool(tool_name, tool_call.arguments, tool_call_id=call_id)
            except ToolExecutionError as e:
                logger.warning(f"Tool {tool_name} failed for tenant {tenant_id}: {str(e)}")
                return ToolCallResult(tool=tool_name, tool_call_id=call_id, content=e.content, is_error=True)

        result = upstream(tenant_id, f"calling tool {tool_name}", call)
        return {"tenant_id": tenant_id, **result.model_dump()}

    @app.post("/tenants/{tenant_id}/mcp", summary="Send a raw JSON-RPC request for a tenant")
    async def call_tenant_mcp(tenant_id: str, request: Request, api_key: str = Depends(verify_api_key)):
        """
        Forward a raw JSON-RPC request with the tenant's headers.
        JSON-RPC errors are returned in-band.
        """
        try:
            body = await request.json()
        except ValueError:
            return {"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}}

        if not isinstance(body, dict) or not isinstance(body.get("method"), str):
            return {"jsonrpc": "2.0", "id": None, "error": {"code": -32600, "message": "Invalid Request"}}

        method, params = body["method"], body.get("params")
        if params is not None and not isinstance(params, (dict, list)):
            return {"jsonrpc": "2.0", "id": body.get("id"), "error": {"code": -32602, "message": "Invalid params"}}

        if "id" not in body:
            await run_in_threadpool(upstream, tenant_id, f"forwarding {method}", lambda client: client.notify(method, params))
            return Response(status_code=202)

        def forward(client: MCPHttpClient) -> Dict[str, Any]:
            try:
                return {"jsonrpc": "2.0", "id": body["id"], "result": client.request(method, params)}
            except JsonRpcError as e:
                error = {"code": e.code, "message": e.message}
                if e.data is not None:
                    error["data"] = e.data
                return {"jsonrpc": "2.0", "id": body["id"], "error": error}

        return await run_in_threadpool(upstream, tenant_id, f"forwarding {method}", forward)

    return app
