# coordination_gateway/cli.py
"""
Command-Line Interface (CLI)

Typer application for running the gateway servers and calling tools on a
running gateway.
"""

import json
from typing import Optional

import typer

from . import __version__
from .logging_setup import configure_logging
from .settings import settings

app = typer.Typer(
    name="coordination-gateway",
    help="MCP gateway for multi-agent coordination.",
    add_completion=False,
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ...)"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also write logs to this file"),
):
    configure_logging(log_level, log_file)


@app.command(name="serve", help="Start the MCP (JSON-RPC) server.")
def serve(
    host: str = typer.Option(settings.MCP_SERVER_HOST, "--host", "-h", help="Host address to bind the server to"),
    port: int = typer.Option(settings.MCP_SERVER_PORT, "--port", "-p", help="Port number to listen on"),
):
    """
    Examples:
        coordination-gateway serve
        coordination-gateway serve --host 0.0.0.0 --port 9000
    """
    from .mcp.server import start_mcp_server

    typer.echo("🚀 Starting MCP Server...")
    typer.echo(f"   Host: {host}")
    typer.echo(f"   Port: {port}")
    typer.echo("-" * 50)
    try:
        start_mcp_server(host=host, port=port)
    except KeyboardInterrupt:
        typer.echo("\n🛑 MCP Server stopped by user (Ctrl+C)")
        raise typer.Exit(code=0)


@app.command(name="api", help="Start the HTTP API server.")
def api(
    host: str = typer.Option(settings.MCP_SERVER_HOST, "--host", "-h", help="Host address to bind to"),
    port: int = typer.Option(settings.API_PORT, "--port", "-p", help="Port number to listen on"),
):
    import uvicorn

    typer.echo(f"🌐 Starting API server at http://{host}:{port}")
    uvicorn.run("coordination_gateway.api_server:app", host=host, port=port, log_level=settings.LOG_LEVEL.lower())


@app.command(name="tools", help="List the available coordination tools.")
def list_tools(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show parameter schemas")):
    from .tools import ALL_TOOLS
    from .tools.registry import registry

    typer.echo(f"🧰 {len(ALL_TOOLS)} tools available:")
    for area in registry.areas():
        typer.echo(f"\n[{area}]")
        for tool in registry.get_tools(area):
            typer.echo(f"   • {tool.name}: {tool.description}")
            if verbose:
                typer.echo(json.dumps(tool.get_parameters_schema(), indent=2))


@app.command(name="call", help="Call a tool on a running MCP server.")
def call(
    tool_name: str = typer.Argument(..., help="Tool name, e.g. conversation_status"),
    arguments: str = typer.Argument("{}", help="Tool arguments as a JSON object"),
    url: Optional[str] = typer.Option(None, "--url", help="MCP server URL (defaults to settings)"),
):
    from .mcp.client import call_tool

    try:
        params = json.loads(arguments)
    except json.JSONDecodeError as e:
        typer.echo(f"❌ Arguments are not valid JSON: {e}")
        raise typer.Exit(code=2)
    if not isinstance(params, dict):
        typer.echo("❌ Arguments must be a JSON object")
        raise typer.Exit(code=2)

    result = call_tool(tool_name, params, url)
    typer.echo(json.dumps(result, indent=2, default=str))
    if not result.get("success", False):
        raise typer.Exit(code=1)


@app.command(name="version", help="Show the gateway version.")
def version():
    typer.echo(f"Coordination Gateway v{__version__}")


def main():
    """Entry point for the ``coordination-gateway`` console script."""
    app()


if __name__ == "__main__":
    main()
