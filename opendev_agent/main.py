"""Command-line entry point for OpenDev Agent."""

import typer

from opendev_agent.config import Config, set_config
from opendev_agent.logging import configure_logging

app = typer.Typer(help="OpenDev Agent - approval-gated coding agent executions")


@app.command()
def serve(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    host: str = typer.Option("", "--host", help="Override bind host"),
    port: int = typer.Option(0, "--port", help="Override bind port"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run the HTTP API with SSE execution streams."""
    cfg = Config.load(config or None)
    if host:
        cfg.web.host = host
    if port:
        cfg.web.port = port
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)

    from opendev_agent.web_server import run_web_server

    run_web_server(cfg)


@app.command()
def version() -> None:
    """Show version information."""
    from opendev_agent import __version__

    print(f"OpenDev Agent v{__version__}")


if __name__ == "__main__":
    app()
