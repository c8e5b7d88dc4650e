"""
Entry point for cardspatial.

This module provides the command-line interface for running the analysis
and deconvolution pipeline and for checking optional dependencies.
"""

import json
import logging
import os
import sys
import warnings
from typing import Optional, Tuple

import click
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.table import Table

# Suppress warnings to speed up startup
warnings.filterwarnings("ignore", category=FutureWarning)

os.environ.setdefault("TQDM_DISABLE", "1")

import scanpy as sc  # noqa: E402

sc.settings.verbosity = 0  # Suppress scanpy output

from .models.data import (  # noqa: E402
    PipelineConfig,
    load_config,
)
from .pipeline import run_pipeline  # noqa: E402
from .utils.dependency_manager import get_dependency_report  # noqa: E402
from .utils.exceptions import CardSpatialError  # noqa: E402

console = Console(stderr=True)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _configure_logging(log_level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


@click.group()
@click.version_option(package_name="cardspatial")
def cli():
    """cardspatial - spatial transcriptomics analysis with CARD deconvolution"""
    pass


@cli.command()
@click.option("--spatial", "spatial_path", help="Visium directory, 10x .h5 or .h5ad")
@click.option("--reference", "reference_path", help="Single-cell reference .h5ad")
@click.option(
    "--reference-metadata",
    "reference_metadata_path",
    help="CSV with cell barcodes in the first column",
)
@click.option("--cell-type-column", help="Reference metadata column with cell types")
@click.option("--sample-column", help="Reference metadata column with sample labels")
@click.option(
    "--engine",
    type=click.Choice(["card", "nnls"]),
    help="Deconvolution engine (default: card)",
)
@click.option("--min-gene-count", type=int, help="Minimum total count per gene")
@click.option("--min-spot-count", type=int, help="Minimum total count per spot")
@click.option(
    "--ct-select",
    multiple=True,
    help="Cell type to include (repeat for several; default: all)",
)
@click.option(
    "--coordinate-origin",
    type=click.Choice(["top-left", "bottom-left"]),
    help="Origin of the spatial coordinates in the input",
)
@click.option("--output-dir", help="Directory for tables, figures and summary.json")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON pipeline configuration; command-line options override it",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS),
    default="INFO",
    help="Logging level",
)
def run(
    spatial_path: Optional[str],
    reference_path: Optional[str],
    reference_metadata_path: Optional[str],
    cell_type_column: Optional[str],
    sample_column: Optional[str],
    engine: Optional[str],
    min_gene_count: Optional[int],
    min_spot_count: Optional[int],
    ct_select: Tuple[str, ...],
    coordinate_origin: Optional[str],
    output_dir: Optional[str],
    config_path: Optional[str],
    log_level: str,
):
    """Run preprocessing, marker genes, spatial genes and deconvolution."""
    _configure_logging(log_level)

    deconv_overrides = {
        "cell_type_key": cell_type_column,
        "sample_key": sample_column,
        "method": engine,
        "min_gene_count": min_gene_count,
        "min_spot_count": min_spot_count,
        "ct_select": list(ct_select) or None,
        "coordinate_origin": coordinate_origin,
    }
    deconv_overrides = {k: v for k, v in deconv_overrides.items() if v is not None}
    top_overrides = {
        "spatial_path": spatial_path,
        "reference_path": reference_path,
        "reference_metadata_path": reference_metadata_path,
        "output_dir": output_dir,
    }
    top_overrides = {k: v for k, v in top_overrides.items() if v is not None}

    try:
        if config_path:
            data = load_config(config_path).model_dump(exclude_unset=True)
        else:
            data = {}
        data.update(top_overrides)
        data["deconvolution"] = {**data.get("deconvolution", {}), **deconv_overrides}
        config = PipelineConfig.model_validate(data)
    except ValidationError as e:
        raise click.UsageError(f"Invalid configuration:\n{e}") from e

    try:
        summary = run_pipeline(config)
    except CardSpatialError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    deconv = summary["deconvolution"]
    click.echo(
        f"Deconvolved {deconv['n_spots']} spots into {deconv['n_cell_types']} "
        f"cell types with {deconv['method']}"
    )
    for name, path in summary["outputs"].items():
        click.echo(f"  {name}: {path}")


@cli.command()
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
def deps(output_format: str):
    """Check dependency status"""
    report = get_dependency_report()

    if output_format == "json":
        click.echo(json.dumps(report, indent=2))
        return

    out = Console()
    out.print(f"Python version: {report['python_version']}")
    for section, title in [
        ("critical_dependencies", "Critical Dependencies"),
        ("optional_dependencies", "Optional Dependencies (CARD engine)"),
    ]:
        table = Table(title=title, box=box.ROUNDED)
        table.add_column("Package")
        table.add_column("Status")
        table.add_column("Version / Error")
        for name, info in report[section].items():
            status = "[green]ok[/green]" if info["available"] else "[red]missing[/red]"
            table.add_row(name, status, str(info["version_or_error"]))
        out.print(table)

    table = Table(title="R Packages", box=box.ROUNDED)
    table.add_column("Package")
    table.add_column("Status")
    table.add_column("Install")
    for name, info in report["r_packages"].items():
        status = "[green]ok[/green]" if info["available"] else "[red]missing[/red]"
        table.add_row(name, status, info["install_command"])
    out.print(table)

    if report["missing_critical"]:
        console.print(
            f"[bold red]Missing {len(report['missing_critical'])} critical "
            f"dependencies: {', '.join(report['missing_critical'])}[/bold red]"
        )
        sys.exit(1)


def main():
    """Main entry point for the cardspatial CLI"""
    cli()


if __name__ == "__main__":
    main()
