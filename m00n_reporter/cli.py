"""
Command-line interface for the M00n reporter.

Commands:
- check: Resolve the configuration and ping the server
- config: Print the resolved configuration
- run: Execute a test command with reporter settings exported
"""

import asyncio
import logging
import os
import subprocess
import sys
from typing import Optional

import click

from m00n_reporter.config import ReporterConfig
from m00n_reporter.transport import HttpTransport

logger = logging.getLogger("m00n_reporter")


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="[%(levelname)s] %(name)s: %(message)s",
    )


def mask(secret: Optional[str]) -> str:
    if not secret:
        return "(not set)"
    if len(secret) <= 4:
        return "****"
    return "****" + secret[-4:]


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def cli(verbose: bool):
    """M00n dashboard reporter CLI."""
    setup_logging(verbose)


@cli.command()
def config():
    """Print the resolved configuration (API key masked)."""
    settings = ReporterConfig.load()
    click.echo(f"enabled:     {settings.enabled}")
    click.echo(f"server_url:  {settings.server_url or '(not set)'}")
    click.echo(f"api_key:     {mask(settings.api_key)}")
    click.echo(f"launch:      {settings.launch}")
    click.echo(f"tags:        {', '.join(settings.tags)}")
    click.echo(f"project:     {settings.project}")
    click.echo(f"timeout:     {settings.timeout_ms} ms")
    click.echo(f"max_retries: {settings.max_retries}")
    click.echo(f"debug:       {settings.debug}")
    for key, value in sorted(settings.attributes.items()):
        click.echo(f"attribute.{key}: {value}")


@cli.command()
def check():
    """
    Check that reporting is configured and the server is reachable.

    Example:
        M00N_SERVER_URL=http://localhost:4000 M00N_API_KEY=... m00n-reporter check
    """
    settings = ReporterConfig.load()
    if not settings.enabled:
        click.echo("✗ Reporting is disabled: set M00N_SERVER_URL and M00N_API_KEY", err=True)
        sys.exit(1)
    if not settings.has_valid_url():
        click.echo(f"✗ Invalid server URL: {settings.server_url}", err=True)
        sys.exit(1)

    healthy = asyncio.run(_health_check(settings))
    if healthy:
        click.echo(f"✓ {settings.server_url} is reachable")
    else:
        click.echo(f"✗ {settings.server_url} is not reachable", err=True)
        sys.exit(1)


async def _health_check(settings: ReporterConfig) -> bool:
    transport = HttpTransport(settings)
    try:
        return await transport.health_check()
    finally:
        await transport.aclose()


@cli.command(context_settings={"ignore_unknown_options": True})
@click.option("--server-url", help="M00n server URL")
@click.option("--api-key", help="M00n project API key")
@click.option("--launch", help="Launch name of the run")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
def run(server_url: Optional[str], api_key: Optional[str], launch: Optional[str], command: tuple):
    """
    Run a test command with reporting enabled.

    The pytest plugin auto-loads via the entry point and reads the settings
    from the environment.

    Example:
        m00n-reporter run --launch "Nightly" pytest tests/ -v
    """
    env = dict(os.environ)
    for name, value in (
        ("M00N_SERVER_URL", server_url),
        ("M00N_API_KEY", api_key),
        ("M00N_LAUNCH", launch),
    ):
        if value:
            env[name] = value

    logger.info(f"Running command: {' '.join(command)}")
    try:
        exit_code = subprocess.call(list(command), env=env)
    except FileNotFoundError:
        click.echo(f"✗ Command not found: {command[0]}", err=True)
        sys.exit(127)
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
