"""MySQL operator CLI (mysqlop).

Usage:
    mysqlop reconcile db/cluster1                 # One invocation against the API server
    mysqlop reconcile db/cluster1 --manifests ./  # Desired state from manifest files
    mysqlop validate cluster1.yaml                # Offline default + validate
    mysqlop defaults cluster1.yaml                # Print the defaulted manifest
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import click

from .config import DEFAULT_OPERATOR_VERSION
from .defaults import check_and_set_defaults
from .main import EXIT_VALIDATION_FAILURE, main
from .models import MySQLCluster, SpecValidationError
from .spec_loader import ManifestLoadError, dump_manifest, load_manifest

# Namespace assumed for offline manifests that do not set one
DEFAULT_NAMESPACE = "default"


def load_cluster(path: Path) -> MySQLCluster:
    """Load and decode a manifest file.

    Raises:
        click.ClickException: If the file cannot be read.
        SpecValidationError: If the manifest does not decode.
    """
    try:
        manifest: dict[str, Any] = load_manifest(path)
    except (FileNotFoundError, ManifestLoadError) as e:
        raise click.ClickException(str(e)) from e

    metadata = manifest.setdefault("metadata", {})
    if isinstance(metadata, dict):
        metadata.setdefault("namespace", DEFAULT_NAMESPACE)
    return MySQLCluster.from_manifest(manifest)


def _report_errors(errors: list[str]) -> None:
    for error in errors:
        click.secho(f"  ✗ {error}", fg="red", err=True)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=DEFAULT_OPERATOR_VERSION, prog_name="mysqlop")
def cli() -> None:
    """MySQL operator CLI (mysqlop).

    Reconciles PerconaServerForMySQL clusters one invocation at a time and
    checks cluster manifests offline.
    """
    pass


@cli.command()
@click.argument("identity")
@click.option(
    "--manifests",
    "manifests_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Read desired state from <DIR>/<namespace>/<name>.yaml instead of the API server.",
)
def reconcile(identity: str, manifests_dir: Path | None) -> None:
    """Reconcile one cluster, IDENTITY is NAMESPACE/NAME.

    Exit codes: 0 converged or absent, 1 failure, 2 invalid spec, 3 cancelled.
    """
    sys.exit(asyncio.run(main(identity, manifests_dir)))


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--operator-version",
    default=DEFAULT_OPERATOR_VERSION,
    show_default=True,
    help="Version pinned into spec.crVersion when unset.",
)
@click.pass_context
def validate(ctx: click.Context, manifest: Path, operator_version: str) -> None:
    """Default and validate a cluster manifest without touching the cluster."""
    try:
        cluster = load_cluster(manifest)
        check_and_set_defaults(cluster, operator_version)
    except SpecValidationError as e:
        click.secho(f"{manifest}: invalid ({len(e.errors)} errors)", fg="red", err=True)
        _report_errors(e.errors)
        ctx.exit(EXIT_VALIDATION_FAILURE)

    click.secho(f"✓ {manifest}: {cluster.metadata.name} is valid", fg="green")


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--operator-version",
    default=DEFAULT_OPERATOR_VERSION,
    show_default=True,
    help="Version pinned into spec.crVersion when unset.",
)
@click.pass_context
def defaults(ctx: click.Context, manifest: Path, operator_version: str) -> None:
    """Print the manifest with every default applied."""
    try:
        cluster = load_cluster(manifest)
        check_and_set_defaults(cluster, operator_version)
    except SpecValidationError as e:
        _report_errors(e.errors)
        ctx.exit(EXIT_VALIDATION_FAILURE)

    rendered = cluster.to_manifest()
    rendered.pop("status", None)
    click.echo(dump_manifest(rendered), nl=False)


if __name__ == "__main__":
    cli()
