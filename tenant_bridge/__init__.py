"""
n8n-mcp-tenant-bridge: client, credential vault and multi-tenant proxy for n8n-mcp servers.
"""

__version__ = "1.0.0"
