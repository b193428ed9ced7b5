#!/usr/bin/env python3
"""goosegate CLI - Command-line interface for the automation gateway.

Usage:
    goosegate serve --port 3003
    goosegate publish [--all]
    goosegate check
    goosegate config
"""

import json
import logging
import subprocess
import sys
from typing import Optional

import click

from . import __version__
from .core.config import GatewayConfig
from .core.errors import GooseGateError
from .core.publish import BranchPublisher


def configure_logging(verbose: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(name)s] %(message)s"))
    root = logging.getLogger("goosegate")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False


def _load_config(require_valid: bool = True) -> GatewayConfig:
    try:
        config = GatewayConfig.from_env()
    except ValueError as e:
        raise click.ClickException(str(e))
    if require_valid:
        errors = config.validate()
        if errors:
            raise click.ClickException("Invalid configuration:\n- " + "\n- ".join(errors))
    return config


@click.group()
@click.version_option(version=__version__, prog_name="goosegate")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool):
    """goosegate - Run goose tasks over HTTP and preview every branch.

    Configuration is read from the environment (AUTH_TOKEN, GOOSE_SCOPE_DIR or
    PROJECT_NAME, GOOSE_BINARY, PORT, LOG_MAX_BYTES, ...).

    \b
    Quick start:
        export AUTH_TOKEN=secret PROJECT_NAME=demo
        goosegate serve
    """
    configure_logging(verbose)


@main.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Interface to bind.")
@click.option("--port", "-p", type=int, default=None, help="Port to serve on. Defaults to $PORT or 3003.")
def serve(host: str, port: Optional[int]):
    """Start the HTTP gateway, publish the current branch and watch git."""
    from .viewer.server import serve as run_server

    config = _load_config()
    sys.exit(run_server(config, host=host, port=port))


@main.command()
@click.option("--all", "all_branches", is_flag=True, help="Publish every local branch.")
def publish(all_branches: bool):
    """Publish the scope directory into the preview root."""
    config = _load_config(require_valid=False)
    publisher = BranchPublisher(config.preview_root, base_url=f"http://localhost:{config.port}")

    if all_branches:
        publications = publisher.publish_all_branches(config.scope_dir)
        if not publications:
            raise click.ClickException("No branches were published.")
    else:
        try:
            publications = [publisher.publish_current_branch(config.scope_dir)]
        except (GooseGateError, OSError) as e:
            raise click.ClickException(f"Publish failed: {e}")

    for publication in publications:
        click.echo(f"{publication.branch}: {publication.target_dir}")
        click.echo(f"  {publication.url}")


@main.command()
def check():
    """Verify the goose binary is installed and configured."""
    config = _load_config(require_valid=False)
    click.echo(f"goose binary: {config.goose_binary}")
    try:
        result = subprocess.run(
            [config.goose_binary, "info"],
            capture_output=True,
            text=True,
            timeout=60,
        )
    except FileNotFoundError:
        raise click.ClickException(
            "goose CLI not found. Install it from https://github.com/block/goose/releases "
            "or set GOOSE_BINARY to the absolute path of the goose executable."
        )
    except subprocess.TimeoutExpired:
        raise click.ClickException("goose info timed out")

    if result.returncode != 0:
        raise click.ClickException(f"goose info failed: {(result.stderr or result.stdout).strip()}")
    click.echo(result.stdout.strip())
    click.echo(click.style("goose is ready", fg="green"))


@main.command("config")
def show_config():
    """Print the non-sensitive configuration and any validation errors."""
    config = _load_config(require_valid=False)
    data = config.to_public_dict()
    data["errors"] = config.validate()
    click.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    main()
