#!/usr/bin/env python3
"""
Command line interface for factorial-de.

Commands:
    design     Preview the design matrix a sample sheet produces
    run        Filter, fit and test one group comparison
    intersect  Features significant in two result tables
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from factorial_de.config.settings import get_settings
from factorial_de.core import DesignMode, Factor, FactorialDEError
from factorial_de.services.analysis import (
    DesignMatrixService,
    DifferentialExpressionService,
    FactorEncodingService,
    ResultFilterService,
    StatisticsBackend,
)
from factorial_de.services.data_management import CountTableService
from factorial_de.utils.logger import route_to_root
from factorial_de.version import __version__

app = typer.Typer(
    name="factorial-de",
    help="Design matrices, contrasts and LRT-based differential expression "
    "for factorial RNA-Seq experiments.",
    add_completion=False,
)
console = Console()
error_console = Console(stderr=True)


def setup_logging(level: str) -> None:
    """Route all log records through a RichHandler on the root logger."""
    rich_handler = RichHandler(
        console=error_console,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%X]"))
    logging.basicConfig(
        level=level, format="%(message)s", datefmt="[%X]", handlers=[rich_handler]
    )
    route_to_root(level)


def version_callback(value: bool):
    if value:
        console.print(f"factorial-de version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    settings = get_settings()
    if settings.config_error:
        error_console.print(f"[red]Configuration error:[/red] {escape(settings.config_error)}")
        raise typer.Exit(code=2)
    setup_logging("DEBUG" if verbose else settings.LOG_LEVEL)


def _parse_pairs(values: Optional[List[str]], option: str) -> Dict[str, str]:
    pairs = {}
    for value in values or []:
        if "=" not in value:
            raise typer.BadParameter(f"expected NAME=VALUE, got '{value}'", param_hint=option)
        key, _, val = value.partition("=")
        pairs[key.strip()] = val.strip()
    return pairs


def _load_factors(
    sample_sheet: Path,
    factor_names: List[str],
    level_orders: Dict[str, str],
    sample_order: Optional[List[str]] = None,
) -> List[Factor]:
    """Factors from a CSV sample sheet with a ``sample`` column."""
    sheet = pd.read_csv(sample_sheet, dtype=str)
    if "sample" not in sheet.columns:
        raise typer.BadParameter("sample sheet needs a 'sample' column", param_hint="SAMPLE_SHEET")
    sheet = sheet.set_index("sample")

    if sample_order is not None:
        missing = sorted(set(sample_order) - set(sheet.index))
        if missing:
            raise typer.BadParameter(
                f"samples missing from sample sheet: {missing}", param_hint="SAMPLE_SHEET"
            )
        sheet = sheet.loc[sample_order]

    names = factor_names or list(sheet.columns)
    unknown = [name for name in names if name not in sheet.columns]
    if unknown:
        raise typer.BadParameter(f"factors not in sample sheet: {unknown}", param_hint="--factor")

    encoder = FactorEncodingService()
    return [
        encoder.factor_from_labels(
            name,
            list(sheet.index),
            sheet[name].tolist(),
            levels=level_orders[name].split(",") if name in level_orders else None,
        )
        for name in names
    ]


def _in_workspace(path: Optional[Path], workspace: Path) -> Optional[Path]:
    """Resolve a relative output path against the configured workspace."""
    if path is None or path.is_absolute():
        return path
    return workspace / path


def _results_table(results: pd.DataFrame, title: str, limit: int = 20) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAVY)
    table.add_column("feature", style="bold")
    for col in ("logFC", "logCPM", "LR", "PValue", "FDR"):
        if col in results.columns:
            table.add_column(col, justify="right")
    for feature_id, row in results.head(limit).iterrows():
        cells = [str(feature_id)]
        for col in ("logFC", "logCPM", "LR", "PValue", "FDR"):
            if col in results.columns:
                value = row[col]
                cells.append(f"{value:.3g}" if col in ("PValue", "FDR") else f"{value:.3f}")
        table.add_row(*cells)
    return table


@app.command()
def design(
    sample_sheet: Path = typer.Argument(..., exists=True, help="CSV with a 'sample' column"),
    factor: Optional[List[str]] = typer.Option(
        None, "--factor", "-f", help="Factor column (repeatable, default: all)"
    ),
    levels: Optional[List[str]] = typer.Option(
        None, "--levels", help="Level order, e.g. treatment=Control,Treated"
    ),
    mode: DesignMode = typer.Option(
        DesignMode.NO_INTERCEPT_COMBINED_GROUP, "--mode", help="Design parametrisation"
    ),
    rows: int = typer.Option(12, "--rows", help="Rows to show"),
):
    """Preview the design matrix for a sample sheet."""
    try:
        factors = _load_factors(sample_sheet, factor or [], _parse_pairs(levels, "--levels"))
        service = DesignMatrixService()
        design_matrix = service.build_design_matrix(factors, mode)
        validation = service.validate_experimental_design(factors)
    except FactorialDEError as e:
        error_console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(code=1)

    console.print(
        Panel(escape(service.preview_design_matrix(design_matrix, max_rows=rows)), title="Design")
    )
    for warning in validation["warnings"]:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")


@app.command()
def run(
    counts: Path = typer.Argument(..., exists=True, help="Tab-separated count table"),
    sample_sheet: Path = typer.Argument(..., exists=True, help="CSV with a 'sample' column"),
    compare: str = typer.Option(..., "--compare", "-c", help="Factor whose levels are compared"),
    level: str = typer.Option(..., "--level", help="Tested level"),
    versus: str = typer.Option(..., "--vs", help="Baseline level"),
    within: Optional[List[str]] = typer.Option(
        None, "--within", "-w", help="Other factors held fixed, e.g. location=Beach"
    ),
    factor: Optional[List[str]] = typer.Option(
        None, "--factor", "-f", help="Factor column (repeatable, default: all)"
    ),
    levels: Optional[List[str]] = typer.Option(
        None, "--levels", help="Level order, e.g. treatment=Control,Treated"
    ),
    mode: DesignMode = typer.Option(
        DesignMode.NO_INTERCEPT_COMBINED_GROUP, "--mode", help="Design parametrisation"
    ),
    threshold: Optional[float] = typer.Option(None, "--threshold", "-t", help="FDR threshold"),
    method: Optional[str] = typer.Option(None, "--method", help="P-value adjustment method"),
    min_cpm: Optional[float] = typer.Option(None, "--min-cpm", help="CPM filter threshold"),
    min_samples: Optional[int] = typer.Option(
        None, "--min-samples", help="Samples that must pass the CPM threshold"
    ),
    descriptor_columns: Optional[int] = typer.Option(
        None, "--descriptor-columns", help="Leading feature-descriptor columns"
    ),
    snapshot: Optional[Path] = typer.Option(
        None, "--snapshot", help="Write the filtered counts to this .h5ad file"
    ),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Result TSV"),
):
    """Filter counts, fit the model and test one group comparison."""
    settings = get_settings()
    threshold = threshold if threshold is not None else settings.FDR_THRESHOLD
    method = method or settings.ADJUST_METHOD
    snapshot = _in_workspace(snapshot, settings.WORKSPACE)
    output = _in_workspace(output, settings.WORKSPACE)

    count_service = CountTableService()
    service = DifferentialExpressionService(
        backend=StatisticsBackend(n_cpus=settings.N_CPUS),
        count_service=count_service,
    )
    try:
        adata = count_service.load_count_table(
            counts,
            n_descriptor_columns=(
                descriptor_columns
                if descriptor_columns is not None
                else settings.DESCRIPTOR_COLUMNS
            ),
        )
        factors = _load_factors(
            sample_sheet,
            factor or [],
            _parse_pairs(levels, "--levels"),
            sample_order=list(adata.obs_names),
        )
        filtered, design_matrix, prep_stats = service.prepare(
            adata,
            factors,
            mode,
            min_cpm=min_cpm if min_cpm is not None else settings.MIN_CPM,
            min_samples=(
                min_samples if min_samples is not None else settings.MIN_SAMPLES
            ),
        )
        contrast = service.resolve_contrast(
            design_matrix, compare, level, versus, _parse_pairs(within, "--within")
        )
        if snapshot is not None:
            count_service.save_snapshot(filtered, snapshot)
            filtered = count_service.load_snapshot(snapshot)

        fitted = service.fit(filtered, design_matrix)
        ranked, de_stats = service.test_contrast(
            fitted, contrast, threshold=threshold, method=method
        )
    except FactorialDEError as e:
        error_console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(code=1)

    console.print(
        f"[bold]{escape(contrast.describe())}[/bold]\n"
        f"{prep_stats['n_features_after']}/{prep_stats['n_features_before']} features "
        f"after CPM filter; {de_stats['n_significant']} at FDR <= {threshold} "
        f"({de_stats['n_up']} up, {de_stats['n_down']} down)"
    )
    console.print(_results_table(ranked, title=contrast.name))

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        ranked.to_csv(output, sep="\t")
        console.print(f"Results written to {output}")


@app.command()
def intersect(
    first: Path = typer.Argument(..., exists=True, help="Result TSV"),
    second: Path = typer.Argument(..., exists=True, help="Result TSV"),
    threshold: Optional[float] = typer.Option(None, "--threshold", "-t", help="FDR threshold"),
):
    """Features significant in both result tables, in the order of the first."""
    threshold = threshold if threshold is not None else get_settings().FDR_THRESHOLD
    service = ResultFilterService()
    try:
        a = service.filter_results(pd.read_csv(first, sep="\t", index_col=0), threshold)
        b = service.filter_results(pd.read_csv(second, sep="\t", index_col=0), threshold)
        shared = service.intersect_results(a, b)
    except FactorialDEError as e:
        error_console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(code=1)

    console.print(
        f"{len(a)} and {len(b)} significant features; {len(shared)} shared "
        f"at FDR <= {threshold}"
    )
    console.print(_results_table(shared, title="Shared features", limit=len(shared)))


if __name__ == "__main__":
    app()
