"""
Deployment verification for n8n-mcp servers.

Runs the post-deployment checklist against a live server: the health
endpoint answers, unauthenticated requests are rejected, the bearer token is
accepted, tools are advertised, and (when tenant credentials are supplied)
the multi-tenant headers are honored.
"""

import logging
import time
from typing import Callable, Optional

import requests

from .client import MCPHttpClient
from .context import InstanceContext
from .errors import BridgeError, InstanceContextError, ToolExecutionError
from .models import CheckResult, VerificationReport

# Set up logging
logger = logging.getLogger('tenant_bridge.verify')

DEFAULT_CHECK_TOOL = "n8n_health_check"


class CheckFailed(Exception):
    """Raised inside a check to record a failure with a readable detail."""
    pass


def _run_check(report: VerificationReport, name: str, check: Callable[[], str]) -> bool:
    started = time.monotonic()
    try:
        detail = check()
        passed = True
    except CheckFailed as e:
        detail = str(e)
        passed = False
    except (BridgeError, requests.RequestException) as e:
        detail = f"{type(e).__name__}: {str(e)}"
        passed = False
    duration_ms = round((time.monotonic() - started) * 1000, 1)
    report.checks.append(CheckResult(name=name, passed=passed, detail=detail, duration_ms=duration_ms))
    if passed:
        logger.info(f"Check {name} passed: {detail}")
    else:
        logger.warning(f"Check {name} failed: {detail}")
    return passed


def _skip(report: VerificationReport, name: str, reason: str):
    report.checks.append(CheckResult(name=name, passed=False, detail=f"skipped: {reason}"))
    logger.warning(f"Check {name} skipped: {reason}")


def verify_deployment(
    server_url: str,
    auth_token: str,
    context: Optional[InstanceContext] = None,
    check_tool: str = DEFAULT_CHECK_TOOL,
    timeout: float = 10.0,
    session: Optional[requests.Session] = None,
) -> VerificationReport:
    """Verify a deployed n8n-mcp server and return a report of every check."""
    client = MCPHttpClient(server_url, auth_token, timeout=timeout, session=session)
    report = VerificationReport(target=client.server_url)

    def check_health():
        health = client.health()
        if not health.is_healthy:
            raise CheckFailed(f"server reports status {health.status}")
        detail = f"status {health.status}"
        if health.version:
            detail += f", version {health.version}"
        if health.uptime is not None:
            detail += f", uptime {health.uptime:.0f}s"
        return detail

    def check_auth_required():
        response = client.http.post(
            client.endpoint,
            json={"jsonrpc": "2.0", "method": "tools/list", "id": 0},
            headers={"Content-Type": "application/json", "Accept": "application/json, text/event-stream"},
            timeout=timeout,
        )
        if response.status_code != 401:
            raise CheckFailed(f"expected 401 without a token, got {response.status_code}")
        return "unauthenticated request rejected with 401"

    def check_auth_accepted():
        result = client.initialize()
        server_info = result.get("serverInfo", {})
        return f"initialized {server_info.get('name', 'server')} {server_info.get('version', '')}".strip()

    def check_tools_listed():
        tools = client.list_tools()
        if not tools:
            raise CheckFailed("server advertised no tools")
        return f"{len(tools)} tools available"

    def check_tenant_headers():
        tenant_client = client.with_context(context)
        tenant_client.mcp_session_id = client.mcp_session_id
        try:
            tenant_client.call_tool(check_tool, {})
        except InstanceContextError as e:
            problems = f" ({', '.join(e.problems)})" if e.problems else ""
            raise CheckFailed(f"server rejected the instance context: {e.message}{problems}")
        except ToolExecutionError as e:
            return f"headers accepted; {check_tool} reported an error: {str(e)}"
        return f"headers accepted; {check_tool} succeeded"

    try:
        _run_check(report, "health_endpoint", check_health)
        _run_check(report, "auth_required", check_auth_required)
        if _run_check(report, "auth_accepted", check_auth_accepted):
            _run_check(report, "tools_listed", check_tools_listed)
            if context is not None:
                _run_check(report, "tenant_headers", check_tenant_headers)
        else:
            _skip(report, "tools_listed", "authentication failed")
            if context is not None:
                _skip(report, "tenant_headers", "authentication failed")
    finally:
        if session is None:
            client.close()

    logger.info(
        f"Verification of {report.target}: "
        f"{sum(1 for c in report.checks if c.passed)}/{len(report.checks)} checks passed"
    )
    return report
