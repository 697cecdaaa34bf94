"""Azure Access Controller CLI (azac).

Usage:
    azac reconcile --dry-run            # Show what would change
    azac reconcile --apply              # Apply the definitions
    azac validate ./config              # Validate definitions offline
    azac remove-package-reference App.csproj Newtonsoft.Json
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .main import EXIT_SUCCESS, reconcile, setup_logging
from .project_file import (
    ProjectFileError,
    load_project_file,
    remove_package_reference,
    save_project_file,
)
from .spec_loader import SpecLoadError, load_service_connections

DEFAULT_CONFIG_DIR = "/config"


@click.group()
@click.version_option(version="0.1.0", prog_name="azac")
def cli() -> None:
    """Azure Access Controller CLI (azac).

    Manages Azure DevOps service connections and the Azure access of their
    service principals from YAML definitions.
    """
    pass


@cli.command("reconcile")
@click.option(
    "--dry-run/--apply",
    "dry_run",
    default=None,
    help="Report changes without applying them (default: DRY_RUN env var)",
)
@click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory with *.yml definitions (default: CONFIG_DIR env var)",
)
def reconcile_command(dry_run: bool | None, config_dir: Path | None) -> None:
    """Reconcile service connections, role assignments and API permissions."""
    setup_logging()

    overrides: dict[str, object] = {}
    if dry_run is not None:
        overrides["dry_run"] = dry_run
    if config_dir is not None:
        overrides["config_dir"] = config_dir

    try:
        config = Config.from_env(**overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    exit_code = asyncio.run(reconcile(config))
    if exit_code != EXIT_SUCCESS:
        raise SystemExit(exit_code)


@cli.command("validate")
@click.argument(
    "config_dir",
    required=False,
    type=click.Path(file_okay=False, path_type=Path),
)
def validate_command(config_dir: Path | None) -> None:
    """Validate service connection definitions without calling Azure."""
    directory = config_dir or Path(os.environ.get("CONFIG_DIR", DEFAULT_CONFIG_DIR))

    try:
        specs = load_service_connections(directory)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    if not specs:
        click.echo(f"No service connections defined in {directory}")
        return

    for spec in specs.values():
        click.echo(
            f"{spec.name}: {spec.creation_mode} creation, "
            f"subscription {spec.subscription_id}, {spec.grant_count} grant(s)"
        )
    click.secho(f"✓ {len(specs)} service connection(s) valid", fg="green")


@cli.command("remove-package-reference")
@click.argument("project_file", type=click.Path(dir_okay=False, path_type=Path))
@click.argument("package")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the result here instead of updating PROJECT_FILE",
)
def remove_package_reference_command(
    project_file: Path, package: str, output: Path | None
) -> None:
    """Remove PACKAGE from the PackageReference items of PROJECT_FILE."""
    try:
        document = load_project_file(project_file)
        removed = remove_package_reference(document, package)
        if removed == 0:
            click.echo(f"{package} is not referenced in {project_file}")
            return
        save_project_file(document, output or project_file)
    except ProjectFileError as e:
        raise click.ClickException(str(e)) from e

    click.secho(f"✓ Removed {removed} reference(s) to {package}", fg="green")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
