"""Stack controller CLI.

Usage:
    stack-controller run                        # Run the controller
    stack-controller reconcile NAMESPACE NAME   # One reconcile pass for a Stack
    stack-controller validate stack.yaml        # Check a Stack manifest offline
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .config import CONTROLLER_NAME, CONTROLLER_VERSION, Config, ConfigurationError
from .main import main as run_controller
from .main import reconcile_once, setup_logging
from .manifest import ManifestLoadError, load_manifest
from .models import InlineGitRepo, select_source


def load_config() -> Config:
    """Load the controller config, turning errors into CLI errors."""
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version=CONTROLLER_VERSION, prog_name=CONTROLLER_NAME)
def cli() -> None:
    """Stack controller.

    Reconciles pulumi.com/v1 Stack resources by running the Pulumi
    automation engine against their program source.

    \b
    Quick Start:
        stack-controller validate stack.yaml
        stack-controller run
    """
    pass


@cli.command()
def run() -> None:
    """Watch Stacks and reconcile them until interrupted.

    Configuration is read from the environment (MAX_CONCURRENT_RECONCILES,
    WATCH_NAMESPACE, LOG_LEVEL, ...).
    """
    sys.exit(run_controller())


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.option(
    "--post-events/--no-post-events",
    default=True,
    help="Post Kubernetes events for the Stack, or only log them.",
)
def reconcile(namespace: str, name: str, post_events: bool) -> None:
    """Run a single reconcile pass for the Stack NAMESPACE/NAME."""
    config = load_config()
    setup_logging(config.log_level)

    result = asyncio.run(reconcile_once(config, namespace, name, post_events=post_events))

    if result.error is not None:
        click.secho(f"✗ {result.key}: {result.error}", fg="red", err=True)
        sys.exit(1)

    click.secho(f"✓ Reconciled {result.key} in {result.duration_seconds:.1f}s", fg="green")
    if result.requeue_after is not None:
        click.echo(f"  Next pass due in {result.requeue_after:.0f}s")


@cli.command()
@click.argument("manifest", type=click.Path(path_type=Path))
def validate(manifest: Path) -> None:
    """Validate a Stack manifest without contacting a cluster."""
    try:
        stack = load_manifest(manifest)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    source = select_source(stack.spec)
    click.secho(f"✓ {stack.key} is valid", fg="green")
    click.echo(f"  Stack:  {stack.spec.stack}")
    match source:
        case InlineGitRepo():
            ref = source.branch or source.commit
            click.echo(f"  Source: git {source.project_repo} ({ref})")
        case _:
            click.echo(f"  Source: {source.kind} {source.name} ({source.api_version})")


if __name__ == "__main__":
    cli()
