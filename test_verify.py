"""
Tests for deployment verification.
"""

import pytest
import requests

from tenant_bridge.verify import verify_deployment

HEALTH = {"status": "ok", "version": "2.10.0", "uptime": 42, "memory": {"used": 40, "total": 128, "unit": "MB"}}
INIT = {"protocolVersion": "2025-03-26", "serverInfo": {"name": "n8n-documentation-mcp", "version": "2.10.0"}}


def names(report):
    return [(check.name, check.passed) for check in report.checks]


@pytest.fixture
def healthy_server(http_session, make_response, rpc_result):
    """Responses of a correctly deployed server, in request order."""
    http_session.get.return_value = make_response(body=HEALTH)
    http_session.post.side_effect = [
        make_response(401, body={"error": "Unauthorized"}),
        make_response(body=rpc_result(1, INIT), headers={"Mcp-Session-Id": "srv-1"}),
        make_response(202, text=""),
        make_response(body=rpc_result(2, {"tools": [{"name": "n8n_health_check"}, {"name": "n8n_list_workflows"}]})),
    ]
    return http_session


def test_all_checks_pass(healthy_server):
    report = verify_deployment("https://mcp.example.com", "token", session=healthy_server)

    assert report.passed
    assert names(report) == [
        ("health_endpoint", True),
        ("auth_required", True),
        ("auth_accepted", True),
        ("tools_listed", True),
    ]
    assert "2 tools" in report.checks[3].detail
    unauthenticated = healthy_server.post.call_args_list[0]
    assert "Authorization" not in unauthenticated.kwargs["headers"]


def test_tenant_headers_check(healthy_server, tenant_context, make_response, rpc_result):
    healthy_server.post.side_effect = list(healthy_server.post.side_effect) + [
        make_response(body=rpc_result(1, {"content": [{"type": "text", "text": "{\"status\": \"ok\"}"}]})),
    ]

    report = verify_deployment("https://mcp.example.com", "token", context=tenant_context, session=healthy_server)

    assert report.passed
    assert report.checks[-1].name == "tenant_headers"
    tenant_call = healthy_server.post.call_args_list[-1]
    assert tenant_call.kwargs["headers"]["X-N8n-Url"] == "https://acme.app.n8n.cloud"
    assert tenant_call.kwargs["headers"]["Mcp-Session-Id"] == "srv-1"
    assert tenant_call.kwargs["json"]["params"]["name"] == "n8n_health_check"


def test_tool_error_still_accepts_headers(healthy_server, tenant_context, make_response, rpc_result):
    healthy_server.post.side_effect = list(healthy_server.post.side_effect) + [
        make_response(body=rpc_result(1, {"content": [{"type": "text", "text": "n8n unreachable"}], "isError": True})),
    ]
    report = verify_deployment("https://mcp.example.com", "token", context=tenant_context, session=healthy_server)
    assert report.passed
    assert "n8n unreachable" in report.checks[-1].detail


def test_rejected_instance_context_fails(healthy_server, tenant_context, make_response):
    healthy_server.post.side_effect = list(healthy_server.post.side_effect) + [
        make_response(body={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "Invalid instance context"}}),
    ]
    report = verify_deployment("https://mcp.example.com", "token", context=tenant_context, session=healthy_server)
    assert not report.passed
    assert names(report)[-1] == ("tenant_headers", False)


def test_open_endpoint_fails_auth_required(http_session, make_response, rpc_result):
    http_session.get.return_value = make_response(body=HEALTH)
    http_session.post.side_effect = [
        make_response(body=rpc_result(0, {"tools": []})),
        make_response(body=rpc_result(1, INIT)),
        make_response(202, text=""),
        make_response(body=rpc_result(2, {"tools": [{"name": "n8n_health_check"}]})),
    ]
    report = verify_deployment("https://mcp.example.com", "token", session=http_session)
    assert not report.passed
    assert names(report)[1] == ("auth_required", False)
    assert "got 200" in report.checks[1].detail


def test_bad_token_skips_dependent_checks(http_session, tenant_context, make_response):
    http_session.get.return_value = make_response(body=HEALTH)
    http_session.post.side_effect = [
        make_response(401, text="Unauthorized"),
        make_response(401, text="Unauthorized"),
    ]
    report = verify_deployment("https://mcp.example.com", "wrong", context=tenant_context, session=http_session)
    assert names(report) == [
        ("health_endpoint", True),
        ("auth_required", True),
        ("auth_accepted", False),
        ("tools_listed", False),
        ("tenant_headers", False),
    ]
    assert report.checks[3].detail.startswith("skipped")


def test_unreachable_server(http_session):
    http_session.get.side_effect = requests.ConnectionError("refused")
    http_session.post.side_effect = requests.ConnectionError("refused")
    report = verify_deployment("https://mcp.example.com", "token", session=http_session)
    assert not report.passed
    assert all(not check.passed for check in report.checks)


def test_unhealthy_status(healthy_server, make_response):
    healthy_server.get.return_value = make_response(body={"status": "error"})
    report = verify_deployment("https://mcp.example.com", "token", session=healthy_server)
    assert names(report)[0] == ("health_endpoint", False)


def test_health_body_with_unexpected_shape(healthy_server, make_response):
    healthy_server.get.return_value = make_response(body={"status": "ok", "memory": "12MB"})
    report = verify_deployment("https://mcp.example.com", "token", session=healthy_server)
    assert names(report)[0] == ("health_endpoint", False)
    assert "Invalid health response" in report.checks[0].detail
    assert ("tools_listed", True) in names(report)
