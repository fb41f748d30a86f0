"""
Configuration for the n8n-mcp-tenant-bridge application.
Loads settings from environment variables and static tenants from a JSON file.
"""

import os
import json
import logging
from typing import Dict, Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from .context import InstanceContext, validate_instance_context
from .errors import InstanceContextError

# Set up logging
logger = logging.getLogger('tenant_bridge.config')

DEFAULT_TENANTS_FILE = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "tenants.json"
)


class Settings(BaseModel):
    """Runtime settings for the proxy service and CLI."""
    mcp_server_url: str = "http://localhost:3000"
    mcp_auth_token: str = ""
    x_api_key: str = ""
    credential_encryption_key: str = ""
    credentials_file: Optional[str] = None
    tenants_file: str = DEFAULT_TENANTS_FILE
    allowed_origins: str = "http://localhost:3000,http://localhost:8000,http://localhost:8080"
    request_timeout: float = 30.0
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    env: str = "production"

    @property
    def origins(self):
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


def load_settings() -> Settings:
    """Load settings from the environment, reading a .env file first if present."""
    load_dotenv()
    values = {
        "mcp_server_url": os.getenv("MCP_SERVER_URL"),
        "mcp_auth_token": os.getenv("MCP_AUTH_TOKEN"),
        "x_api_key": os.getenv("X_API_KEY"),
        "credential_encryption_key": os.getenv("CREDENTIAL_ENCRYPTION_KEY"),
        "credentials_file": os.getenv("CREDENTIALS_FILE"),
        "tenants_file": os.getenv("TENANTS_FILE"),
        "allowed_origins": os.getenv("ALLOWED_ORIGINS"),
        "request_timeout": os.getenv("REQUEST_TIMEOUT"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
        "env": os.getenv("ENV"),
    }
    return Settings(**{key: value for key, value in values.items() if value is not None})


def resolve_env_reference(key: str, value: Any) -> Any:
    """Resolve a "${VAR}" value from the environment. Other values are returned unchanged."""
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_var_name = value[2:-1]
        env_var_value = os.getenv(env_var_name)
        if env_var_value:
            return env_var_value
        logger.warning(f"Environment variable {env_var_name} not found for {key}")
        return None
    return value


def load_tenant_configs(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load static tenant configurations from the JSON file.
    Returns a dictionary with tenant configurations or an empty one if not found.
    """
    config_path = path or DEFAULT_TENANTS_FILE
    if not os.path.exists(config_path):
        logger.warning(f"Tenant configuration file not found at {config_path}")
        return {"tenants": {}}

    try:
        with open(config_path, "r") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading tenant configurations: {str(e)}")
        return {"tenants": {}}

    if not isinstance(raw, dict) or not isinstance(raw.get("tenants", {}), dict):
        logger.error(f"Tenant configuration file {config_path} must hold an object with a \"tenants\" object")
        return {"tenants": {}}

    tenants = {}
    for tenant_id, config in (raw.get("tenants") or {}).items():
        if not isinstance(config, dict):
            logger.error(f"Skipping tenant {tenant_id}: its configuration is not an object")
            continue
        tenants[tenant_id] = {
            key: resolve_env_reference(f"{tenant_id}.{key}", value)
            for key, value in config.items()
        }
    return {"tenants": tenants}


def resolve_static_tenant(configs: Dict[str, Any], tenant_id: str) -> Optional[InstanceContext]:
    """Build the instance context of a statically configured tenant, if it is configured and valid."""
    config = configs.get("tenants", {}).get(tenant_id)
    if not config:
        return None
    try:
        return validate_instance_context({
            "n8n_api_url": config.get("n8nApiUrl"),
            "n8n_api_key": config.get("n8nApiKey"),
            "instance_id": config.get("instanceId", tenant_id),
            "metadata": config.get("metadata"),
        })
    except InstanceContextError as e:
        logger.error(f"Static tenant {tenant_id} is misconfigured: {', '.join(e.problems)}")
        return None
