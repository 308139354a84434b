"""VirtualDatabase operator CLI (vdbctl).

Offline inspection of manifests plus a local launcher for the operator.

Usage:
    vdbctl validate vdb.yaml     # Validate a manifest
    vdbctl digest vdb.yaml       # Print the spec digest of a manifest
    vdbctl plan vdb.yaml         # Show what the next pass would do
    vdbctl phases                # List phases and the action owning each
    vdbctl run --namespace dev   # Run the operator against the current kubeconfig
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import click

from .actions import ActionRegistry
from .digest import compute_spec_digest
from .manifest_loader import ManifestLoadError, load_manifest
from .models import Phase, VirtualDatabase, env_conflicts, spec_errors

PROG_NAME = "vdbctl"


def _load(path: str) -> VirtualDatabase:
    try:
        return load_manifest(Path(path))
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e


def _phase_label(phase: Phase) -> str:
    return phase.value or "<initial>"


@click.group()
@click.version_option(version="0.1.0", prog_name=PROG_NAME)
def cli() -> None:
    """VirtualDatabase operator CLI (vdbctl).

    \b
    Quick Start:
        vdbctl validate vdb.yaml
        vdbctl plan vdb.yaml
        vdbctl run --namespace dev
    """
    pass


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
def validate(manifest: str) -> None:
    """Validate a VirtualDatabase manifest."""
    vdb = _load(manifest)
    problems = spec_errors(vdb.spec) + env_conflicts(vdb.spec)
    if problems:
        raise click.ClickException("\n".join(problems))
    click.secho(f"✓ {vdb.metadata.name} is valid", fg="green")


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--operator-version",
    envvar="OPERATOR_VERSION",
    default="dev",
    show_default=True,
    help="Version marker folded into the digest",
)
def digest(manifest: str, operator_version: str) -> None:
    """Print the spec digest of a manifest."""
    vdb = _load(manifest)
    click.echo(compute_spec_digest(vdb.spec, operator_version))


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option("--operator-version", envvar="OPERATOR_VERSION", default="dev")
def plan(manifest: str, operator_version: str) -> None:
    """Show what the next reconcile pass would do for a manifest's status."""
    vdb = _load(manifest)
    status = vdb.status
    click.echo(f"Resource: {vdb.key}")
    click.echo(f"  Phase:   {_phase_label(status.phase)}")
    click.echo(f"  Version: {status.version or '-'}")

    if vdb.being_deleted:
        click.echo("  Next:    mark Deleting")
        return

    current = compute_spec_digest(vdb.spec, operator_version)
    if status.digest and status.digest != current:
        click.echo("  Next:    redeploy (build inputs changed)")
        return

    if status.phase.parked:
        click.echo("  Next:    none (waiting for a spec change)")
        if status.failure:
            click.echo(f"  Failure: {status.failure}")
        return

    registry = ActionRegistry()
    matches = registry.matching(vdb)
    if not matches:
        click.echo("  Next:    none")
    elif len(matches) > 1:
        raise click.ClickException(
            f"Phase claimed by several actions: {', '.join(a.name.value for a in matches)}"
        )
    else:
        click.echo(f"  Next:    {matches[0].name.value}")


@cli.command()
def phases() -> None:
    """List every phase and the action that handles it."""
    registry = ActionRegistry()
    for phase in Phase:
        placeholder = VirtualDatabase.model_validate(
            {"metadata": {"name": "placeholder"}, "status": {"phase": phase.value}}
        )
        owner = registry.resolve(placeholder)
        click.echo(f"{_phase_label(phase):<30} {owner.name.value if owner else '-'}")


@cli.command()
@click.option("--namespace", "-n", envvar="WATCH_NAMESPACE", default="", help="Namespace to watch")
@click.option("--interval", type=int, default=None, help="Reconcile interval in seconds")
@click.option("--workers", type=int, default=None, help="Number of workers")
@click.option(
    "--in-cluster/--kubeconfig", default=False, help="Credential source (default: kubeconfig)"
)
def run(namespace: str, interval: int | None, workers: int | None, in_cluster: bool) -> None:
    """Run the operator locally.

    \b
    Examples:
        vdbctl run --namespace dev
        vdbctl run --interval 10 --workers 2
    """
    from .main import main as operator_main

    os.environ["WATCH_NAMESPACE"] = namespace
    os.environ["KUBECONFIG_IN_CLUSTER"] = "true" if in_cluster else "false"
    if interval is not None:
        os.environ["RECONCILE_INTERVAL"] = str(interval)
    if workers is not None:
        os.environ["WORKERS"] = str(workers)

    click.echo(f"Running operator (namespace: {namespace or 'all'})...")
    raise SystemExit(asyncio.run(operator_main()))


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
