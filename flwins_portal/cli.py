"""Command line interface for the FLWINS portal."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from .config import AppConfig, ConfigurationError, describe_config, load_config
from .storage import IntakeStore, StoreError

app = typer.Typer(help="Run and administer the FLWINS workforce portal.")


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Interface to bind (defaults to HOST or 0.0.0.0)."),
    port: Optional[int] = typer.Option(None, "--port", help="Port to listen on (defaults to PORT or 3000)."),
    debug: bool = typer.Option(False, "--debug", help="Enable the Flask debugger and reloader."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides FLWINS_CONFIG)."
    ),
) -> None:
    """Start the web server."""

    from .web import create_app, prepare_database

    config = _load_configuration(config_path)
    web_app = create_app(config)
    prepare_database(web_app)
    web_app.run(
        host=host or config.server.host,
        port=port or config.server.port,
        debug=debug or config.server.is_development,
    )


@app.command("init-db")
def init_db(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides FLWINS_CONFIG)."
    ),
) -> None:
    """Create the intake table and indexes if they are missing."""

    config = _load_configuration(config_path)
    store = IntakeStore(config.database)
    try:
        store.ensure_schema()
    except (ConfigurationError, StoreError) as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    finally:
        store.discard()
    typer.echo("Intake table is ready.")


@app.command("show-config")
def show_config(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides FLWINS_CONFIG)."
    ),
) -> None:
    """Print the effective configuration without secrets."""

    config = _load_configuration(config_path)
    typer.echo(json.dumps(describe_config(config), indent=2))


def run():
    app()


if __name__ == "__main__":
    run()
