"""
Shared fixtures for the n8n-mcp-tenant-bridge tests.
"""

import json
from unittest.mock import MagicMock

import pytest
import requests

from tenant_bridge.context import InstanceContext
from tenant_bridge.vault import generate_key


def make_response(status_code=200, body=None, text=None, headers=None):
    """Build a requests.Response with a JSON or raw text body."""
    response = requests.Response()
    response.status_code = status_code
    response.headers.update(headers or {})
    if body is not None:
        response._content = json.dumps(body).encode()
        response.headers.setdefault("Content-Type", "application/json")
    else:
        response._content = (text or "").encode()
    response.encoding = "utf-8"
    return response


def rpc_result(request_id, result):
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


@pytest.fixture
def http_session():
    """A mocked requests.Session; set post/get side effects per test."""
    return MagicMock(spec=requests.Session)


@pytest.fixture
def tenant_context():
    return InstanceContext(
        n8n_api_url="https://acme.app.n8n.cloud",
        n8n_api_key="n8n_api_1234567890abcdef",
        instance_id="acme",
        session_id="acme-session-1",
    )


@pytest.fixture
def vault_key():
    return generate_key()


@pytest.fixture(name="make_response")
def make_response_fixture():
    return make_response


@pytest.fixture(name="rpc_result")
def rpc_result_fixture():
    return rpc_result
