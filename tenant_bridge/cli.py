"""
Command line interface for n8n-mcp-tenant-bridge.
"""

import asyncio
import json
import logging
from typing import Optional

import typer

from .client import MCPHttpClient
from .config import load_settings
from .context import validate_instance_context
from .errors import BridgeError, InstanceContextError
from .session import list_tenant_tools
from .vault import generate_key
from .verify import DEFAULT_CHECK_TOOL, verify_deployment

app = typer.Typer(help="n8n-mcp-tenant-bridge - client, proxy and deployment checks for n8n-mcp servers")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def _context_from_options(n8n_url: Optional[str], n8n_key: Optional[str], instance_id: Optional[str]):
    if not n8n_url and not n8n_key:
        return None
    try:
        return validate_instance_context({
            "n8n_api_url": n8n_url,
            "n8n_api_key": n8n_key,
            "instance_id": instance_id,
        })
    except InstanceContextError as e:
        typer.secho(f"Invalid instance context: {', '.join(e.problems)}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)


def _fail(e: BridgeError):
    typer.secho(f"{type(e).__name__}: {str(e)}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (default from PORT)"),
):
    """Run the multi-tenant proxy service."""
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "main:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.env.lower() == "development",
    )


@app.command()
def verify(
    url: str = typer.Argument(..., help="Base URL of the deployed n8n-mcp server"),
    token: str = typer.Option(..., "--token", "-t", envvar="MCP_AUTH_TOKEN", help="Bearer token of the server"),
    n8n_url: Optional[str] = typer.Option(None, "--n8n-url", help="n8n instance URL for the multi-tenant check"),
    n8n_key: Optional[str] = typer.Option(None, "--n8n-key", help="n8n API key for the multi-tenant check"),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", help="Instance id sent with the multi-tenant check"),
    check_tool: str = typer.Option(DEFAULT_CHECK_TOOL, "--check-tool", help="Tool called for the multi-tenant check"),
    timeout: float = typer.Option(10.0, "--timeout", help="Per-request timeout in seconds"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
):
    """Verify a deployed n8n-mcp server. Exits 1 when any check fails."""
    context = _context_from_options(n8n_url, n8n_key, instance_id)
    report = verify_deployment(url, token, context=context, check_tool=check_tool, timeout=timeout)

    if as_json:
        typer.echo(json.dumps(report.model_dump(), indent=2))
    else:
        typer.echo(f"Verifying {report.target}")
        for check in report.checks:
            mark = typer.style("PASS", fg=typer.colors.GREEN) if check.passed else typer.style("FAIL", fg=typer.colors.RED)
            typer.echo(f"  [{mark}] {check.name:<16} {check.detail} ({check.duration_ms:.0f} ms)")
        typer.echo("RESULT: PASS" if report.passed else "RESULT: FAIL")

    if not report.passed:
        raise typer.Exit(code=1)


@app.command()
def health(url: str = typer.Argument(..., help="Base URL of the n8n-mcp server")):
    """Show the /health body of a server."""
    with MCPHttpClient(url, "") as client:
        try:
            status = client.health()
        except BridgeError as e:
            _fail(e)
    typer.echo(json.dumps(status.model_dump(exclude_none=True), indent=2))
    if not status.is_healthy:
        raise typer.Exit(code=1)


@app.command()
def tools(
    url: str = typer.Argument(..., help="Base URL of the n8n-mcp server"),
    token: str = typer.Option(..., "--token", "-t", envvar="MCP_AUTH_TOKEN", help="Bearer token of the server"),
    n8n_url: Optional[str] = typer.Option(None, "--n8n-url", help="n8n instance URL"),
    n8n_key: Optional[str] = typer.Option(None, "--n8n-key", help="n8n API key"),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", help="Instance id header"),
    sdk: bool = typer.Option(False, "--sdk", help="Use the MCP SDK streamable HTTP transport"),
):
    """List the tools a server offers."""
    context = _context_from_options(n8n_url, n8n_key, instance_id)
    try:
        if sdk:
            found = asyncio.run(list_tenant_tools(url, token, context))
        else:
            with MCPHttpClient(url, token, context=context) as client:
                client.initialize()
                found = client.list_tools()
    except BridgeError as e:
        _fail(e)
    for tool in found:
        typer.echo(f"{tool.name}\t{tool.description.splitlines()[0] if tool.description else ''}")


@app.command()
def call(
    url: str = typer.Argument(..., help="Base URL of the n8n-mcp server"),
    tool_name: str = typer.Argument(..., help="Name of the tool to call"),
    args: str = typer.Option("{}", "--args", "-a", help="Tool arguments as a JSON object"),
    token: str = typer.Option(..., "--token", "-t", envvar="MCP_AUTH_TOKEN", help="Bearer token of the server"),
    n8n_url: Optional[str] = typer.Option(None, "--n8n-url", help="n8n instance URL"),
    n8n_key: Optional[str] = typer.Option(None, "--n8n-key", help="n8n API key"),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", help="Instance id header"),
):
    """Call a tool and print its content."""
    try:
        arguments = json.loads(args)
    except ValueError as e:
        typer.secho(f"--args is not valid JSON: {str(e)}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    if not isinstance(arguments, dict):
        typer.secho("--args must be a JSON object", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    context = _context_from_options(n8n_url, n8n_key, instance_id)
    with MCPHttpClient(url, token, context=context) as client:
        try:
            client.initialize()
            result = client.call_tool(tool_name, arguments)
        except BridgeError as e:
            _fail(e)
    typer.echo(json.dumps(result.content, indent=2))


@app.command("generate-key")
def generate_key_command():
    """Print a new CREDENTIAL_ENCRYPTION_KEY value."""
    typer.echo(generate_key())


if __name__ == "__main__":
    app()
