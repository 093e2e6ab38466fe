"""CLI entry point for ptybroker."""

from __future__ import annotations

import json
import logging

import typer
import uvicorn

from ptybroker.config import BrokerConfig

app = typer.Typer(
    name="ptybroker",
    help="Persistent shell sessions you can detach from and reattach to over a websocket.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@app.command()
def serve(
    host: str | None = typer.Option(
        None, "--host", "-H", help="Bind address (default: from env/config)."
    ),
    port: int | None = typer.Option(
        None, "--port", "-p", help="Listen port (default: from env/config)."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run the broker: websocket terminal endpoint plus health check."""
    from ptybroker.api.websocket import create_app

    setup_logging(verbose)

    config = BrokerConfig.load(config_file)
    if host:
        config.host = host
    if port:
        config.port = port

    typer.echo("ptybroker v0.1.0")
    typer.echo(f"Shell: {' '.join(config.command)} (cwd {config.cwd})")
    typer.echo(f"Max sessions: {config.max_sessions}")
    typer.echo(f"Scrollback: {config.scrollback_buffer_size} chars")
    typer.echo(f"WebSocket: ws://{config.host}:{config.port}{config.ws_path}")
    typer.echo("---")

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        ws_ping_interval=config.ping_interval,
        ws_ping_timeout=config.ping_timeout,
        log_config=None,
    )


@app.command("config")
def show_config(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Print the effective configuration as JSON."""
    config = BrokerConfig.load(config_file)
    typer.echo(json.dumps(config.model_dump(), indent=2))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
