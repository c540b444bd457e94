"""Command line entry point.

Usage:
    mcp-manager serve           # Start the API server
    mcp-manager init-db         # Create database tables
    mcp-manager --help
"""

from typing import Optional

import typer

from mcp_manager.config import get_settings

app = typer.Typer(
    name="mcp-manager",
    help="MCP Manager service CLI",
    no_args_is_help=True,
)


@app.command()
def serve(
    host: str = typer.Option(
        "0.0.0.0",
        "--host",
        help="Host to bind to",
    ),
    port: Optional[int] = typer.Option(
        None,
        "--port",
        "-p",
        help="Port to bind to (default: API_MCP_MANAGER_PORT or 3101)",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        "-r",
        help="Enable auto-reload (dev mode)",
    ),
) -> None:
    """Start the MCP Manager API server."""
    import uvicorn

    settings = get_settings()
    bind_port = port or settings.port

    typer.echo(f"Starting MCP Manager on http://{host}:{bind_port}")
    uvicorn.run(
        "mcp_manager.main:app",
        host=host,
        port=bind_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command(name="init-db")
def init_db() -> None:
    """Create all database tables."""
    from mcp_manager.database import initialize_database

    initialize_database()
    typer.secho("Database tables initialized", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
