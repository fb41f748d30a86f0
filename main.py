"""
n8n-mcp-tenant-bridge: A multi-tenant proxy between web applications and n8n-mcp servers.

This is the main entry point for the application.
"""

import logging
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Set up logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger('tenant_bridge')

from tenant_bridge.api import create_app
from tenant_bridge.config import load_settings

settings = load_settings()

# Create FastAPI app
app = create_app(settings)


@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting n8n-mcp-tenant-bridge service, upstream {settings.mcp_server_url}")
    if not settings.mcp_auth_token:
        logger.warning("MCP_AUTH_TOKEN not set, upstream requests will be rejected")


# Main entry point
if __name__ == "__main__":
    import uvicorn

    # Start the server
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.env.lower() == "development"
    )
