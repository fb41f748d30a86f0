"""
Instance context handling for the n8n-mcp-tenant-bridge application.
Validates per-tenant n8n credentials and turns them into request headers.
"""

import re
import time
import uuid
from typing import Dict, Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from .errors import InstanceContextError

ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")

PLACEHOLDER_KEYS = {"your-api-key", "your_api_key", "your-n8n-api-key", "your_n8n_api_key", "changeme", "xxx"}


class InstanceContext(BaseModel):
    """Per-request bundle of an n8n instance's URL and API key."""
    n8n_api_url: str
    n8n_api_key: str
    instance_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def _check_url(url: str) -> Optional[str]:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return "n8n_api_url must use http or https"
    if not parsed.netloc or not parsed.hostname:
        return "n8n_api_url must include a host"
    return None


def _check_key(key: str) -> Optional[str]:
    if not key:
        return "n8n_api_key must not be empty"
    if any(ch.isspace() for ch in key):
        return "n8n_api_key must not contain whitespace"
    lowered = key.lower()
    if lowered in PLACEHOLDER_KEYS or (lowered.startswith("<") and lowered.endswith(">")):
        return "n8n_api_key looks like a placeholder"
    return None


def validate_instance_context(data) -> InstanceContext:
    """
    Validate an instance context given as a mapping or an InstanceContext.
    Raises InstanceContextError listing every problem found.
    """
    if isinstance(data, InstanceContext):
        data = data.model_dump()
    data = dict(data or {})

    problems = []
    url = (data.get("n8n_api_url") or "").strip()
    key = data.get("n8n_api_key") or ""

    if not url:
        problems.append("n8n_api_url is required")
    else:
        problem = _check_url(url)
        if problem:
            problems.append(problem)

    problem = _check_key(key)
    if problem:
        problems.append(problem)

    for field in ("instance_id", "session_id"):
        value = data.get(field)
        if value is not None and not ID_PATTERN.match(value):
            problems.append(f"{field} must be 1-128 characters of letters, digits, '.', '_', ':' or '-'")

    if problems:
        raise InstanceContextError("Invalid instance context", problems=problems)

    return InstanceContext(
        n8n_api_url=url.rstrip("/"),
        n8n_api_key=key,
        instance_id=data.get("instance_id"),
        session_id=data.get("session_id"),
        metadata=data.get("metadata") or {},
    )


def build_tenant_headers(
    auth_token: str,
    context: Optional[InstanceContext] = None,
    mcp_session_id: Optional[str] = None,
) -> Dict[str, str]:
    """Build the HTTP headers for a request to an n8n-mcp server."""
    headers = {
        "Authorization": f"Bearer {auth_token}",
        "Content-Type": "application/json",
        "Accept": "application/json, text/event-stream",
    }
    if context is not None:
        headers["X-N8n-Url"] = context.n8n_api_url
        headers["X-N8n-Key"] = context.n8n_api_key
        if context.instance_id:
            headers["X-Instance-Id"] = context.instance_id
        if context.session_id:
            headers["X-Session-Id"] = context.session_id
    if mcp_session_id:
        headers["Mcp-Session-Id"] = mcp_session_id
    return headers


def generate_session_id(instance_id: str) -> str:
    """Generate a unique session id scoped to an instance."""
    session_id = f"{instance_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
    # Keep the result inside the id length limit for long instance ids
    if len(session_id) > 128:
        session_id = session_id[-128:].lstrip("._:-")
    return session_id


def mask_secret(value: Optional[str]) -> str:
    """Mask a secret for logging, keeping only its first four characters."""
    if not value:
        return ""
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****"
