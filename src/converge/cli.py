"""converge command line interface.

Usage:
    converge plan cluster.yaml                   # Show what would change
    converge apply cluster.yaml --yes            # Converge the live cloud
    converge render cluster.yaml --format terraform --out ./out
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .config import MAX_MAX_CONCURRENCY, MIN_MAX_CONCURRENCY
from .main import RunMode, run_engine, setup_logging


def common_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every run command."""
    func = click.option("--verbose", "-v", is_flag=True, help="Debug logging")(func)
    func = click.option("--json-logs", is_flag=True, help="Log as JSON lines")(func)
    func = click.option(
        "--lifecycle-override",
        "lifecycle_overrides",
        multiple=True,
        metavar="KIND=LIFECYCLE",
        help="Override the lifecycle of every task of a kind (repeatable)",
    )(func)
    func = click.option(
        "--max-concurrency",
        type=click.IntRange(MIN_MAX_CONCURRENCY, MAX_MAX_CONCURRENCY),
        default=None,
        help="Tasks run in parallel (default: MAX_CONCURRENCY or 4)",
    )(func)
    func = click.argument(
        "manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path)
    )(func)
    return func


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
def cli() -> None:
    """Reconcile cluster infrastructure from a task manifest.

    \b
    Quick Start:
        converge plan cluster.yaml
        converge apply cluster.yaml --yes
    """
    pass


@cli.command()
@common_options
def plan(
    manifest: Path,
    max_concurrency: int | None,
    lifecycle_overrides: tuple[str, ...],
    json_logs: bool,
    verbose: bool,
) -> None:
    """Show the changes a run would make, without making them."""
    setup_logging(json_output=json_logs, verbose=verbose)
    code = run_engine(
        RunMode.PLAN,
        manifest,
        max_concurrency=max_concurrency,
        lifecycle_overrides=lifecycle_overrides,
        out=click.get_text_stream("stdout"),
    )
    sys.exit(code)


@cli.command()
@common_options
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def apply(
    manifest: Path,
    max_concurrency: int | None,
    lifecycle_overrides: tuple[str, ...],
    json_logs: bool,
    verbose: bool,
    yes: bool,
) -> None:
    """Converge the live cloud to the manifest."""
    setup_logging(json_output=json_logs, verbose=verbose)
    if not yes:
        click.confirm(f"Apply {manifest} to the live cloud?", abort=True)

    code = run_engine(
        RunMode.APPLY,
        manifest,
        max_concurrency=max_concurrency,
        lifecycle_overrides=lifecycle_overrides,
        out=click.get_text_stream("stdout"),
    )
    if code == 0:
        click.secho("✓ Cluster infrastructure converged", fg="green")
    sys.exit(code)


@cli.command()
@common_options
@click.option(
    "--format",
    "output",
    type=click.Choice([RunMode.TERRAFORM.value, RunMode.CLOUDFORMATION.value]),
    required=True,
    help="Document type to generate",
)
@click.option(
    "--out",
    "out_dir",
    type=click.Path(file_okay=False, path_type=Path),
    required=True,
    help="Directory the document is written to",
)
@click.option(
    "--cf-format",
    type=click.Choice(["json", "yaml"]),
    default="json",
    show_default=True,
    help="CloudFormation serialization",
)
def render(
    manifest: Path,
    max_concurrency: int | None,
    lifecycle_overrides: tuple[str, ...],
    json_logs: bool,
    verbose: bool,
    output: str,
    out_dir: Path,
    cf_format: str,
) -> None:
    """Write the manifest as a Terraform or CloudFormation document."""
    setup_logging(json_output=json_logs, verbose=verbose)
    code = run_engine(
        RunMode(output),
        manifest,
        out_dir=out_dir,
        output_format=cf_format,
        max_concurrency=max_concurrency,
        lifecycle_overrides=lifecycle_overrides,
    )
    if code == 0:
        click.secho(f"✓ Wrote {output} document to {out_dir}", fg="green")
    sys.exit(code)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
