"""ContentCloud operator CLI.

Usage:
    contentcloud run                      # Run the operator against the current cluster
    contentcloud validate cr.yaml         # Validate a ContentCloud file
    contentcloud render cr.yaml           # Print the desired resources of one pass
"""

from __future__ import annotations

from pathlib import Path

import click
import yaml

from .cluster import DetachedCluster
from .config import Config, ConfigurationError
from .errors import OperatorError
from .milestones import Milestone
from .models import ContentCloud
from .spec_loader import SpecLoadError, load_custom_resource
from .targetstate import TargetState

VERSION = "0.1.0"

MILESTONE_CHOICES = [m.value for m in Milestone]


def _load(path: Path) -> ContentCloud:
    try:
        return load_custom_resource(path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version=VERSION, prog_name="contentcloud")
def cli() -> None:
    """ContentCloud operator.

    \b
    Quick Start:
        contentcloud validate cr.yaml   # Check a custom resource
        contentcloud render cr.yaml     # Preview the generated resources
        contentcloud run                # Start the operator
    """
    pass


@cli.command()
def run() -> None:
    """Run the operator (configuration from environment variables)."""
    from .main import run as run_operator

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    run_operator(config)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(file: Path) -> None:
    """Validate a ContentCloud custom resource file."""
    cr = _load(file)
    click.secho(
        f"✓ {cr.kind} {cr.namespace}/{cr.name}: {len(cr.spec.components)} component(s)",
        fg="green",
    )


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--milestone",
    "-m",
    type=click.Choice(MILESTONE_CHOICES),
    help="Render as if the rollout had reached this milestone",
)
@click.option(
    "--insecure-password",
    envvar="INSECURE_DATABASE_PASSWORD",
    help="Fixed password for generated secrets instead of random ones",
)
def render(file: Path, milestone: str | None, insecure_password: str | None) -> None:
    """Print the resources one pass would apply to an empty namespace."""
    cr = _load(file)
    if milestone:
        cr.status.milestone = Milestone(milestone)

    try:
        config = Config(insecure_database_password=insecure_password or None)
        target = TargetState(cr, DetachedCluster(), config)
        resources = target.build_resources()
    except OperatorError as e:
        raise click.ClickException(str(e)) from e

    click.echo(yaml.safe_dump_all(resources, sort_keys=False), nl=False)
    click.echo(f"# milestone: {target.milestone.value}", err=True)
    if target.tracker.pending:
        click.echo(f"# pending: {', '.join(target.tracker.pending)}", err=True)
