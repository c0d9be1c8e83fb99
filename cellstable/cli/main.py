"""Command-line interface for CellStable.

Provides commands to train a model bundle on a reference count matrix,
project new datasets with it, and inspect the effective configuration.
"""

import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

import click

from .. import __version__


def _log_level(ctx: click.Context) -> str:
    if ctx.obj.get("debug"):
        return "DEBUG"
    if ctx.obj.get("verbose"):
        return "INFO"
    return "WARNING"


def _load_settings(config: Optional[str]):
    from cellstable.pipeline import PipelineSettings

    return PipelineSettings.from_yaml(Path(config)) if config else PipelineSettings()


def _parse_dataset(entry: str) -> Tuple[str, Path]:
    """'name=path' or 'path' (name taken from the file stem)."""
    if "=" in entry:
        name, _, path = entry.partition("=")
        if not name:
            raise click.BadParameter(f"empty dataset name in '{entry}'")
        return name, Path(path)
    path = Path(entry)
    return path.name.split(".")[0], path


@click.group()
@click.version_option(version=__version__, prog_name="cellstable")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """CellStable: stable subpopulations and reusable classifiers for
    single-cell expression data.

    Examples:

        # Train on a reference matrix (genes x cells CSV)
        cellstable train --counts ref.csv --out model/

        # Project two new batches with the trained bundle
        cellstable predict --bundle model/bundle.json -d a=a.csv -d b=b.csv --out joint/

        # Show the effective configuration
        cellstable show-config --config run.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--counts", "-i", "counts_path", required=True, type=click.Path(exists=True),
              help="Raw count matrix (genes x cells, CSV/TSV)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Run configuration file (YAML)")
@click.option("--labels", type=click.Path(exists=True),
              help="Reference labels (cell id, label) to train on instead of stable clusters")
@click.option("--retest/--no-retest", default=None,
              help="Run the per-class held-out retest")
@click.option("--log-dir", type=click.Path(), help="Directory for the run log")
@click.pass_context
def train(
    ctx: click.Context,
    counts_path: str,
    output_path: str,
    config: Optional[str],
    labels: Optional[str],
    retest: Optional[bool],
    log_dir: Optional[str],
) -> None:
    """Discover stable clusters and train a reusable model bundle."""
    from cellstable.errors import CellStableError
    from cellstable.io import (
        log_json_records,
        log_yaml,
        read_expression_matrix,
        read_labels,
        save_bundle,
        write_table,
    )
    from cellstable.pipeline import AnalysisPipeline, PipelineLogger

    settings = _load_settings(config)
    logger = PipelineLogger(
        log_dir=log_dir or settings.run.log_dir,
        log_level=_log_level(ctx),
    ).setup()

    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)
    log_yaml(out_dir / "run_config.yaml", settings.to_dict())

    try:
        counts = read_expression_matrix(counts_path)
        reference = read_labels(labels) if labels else None
        run = AnalysisPipeline(settings, logger=logger).train(
            counts, labels=reference, retest=retest
        )
    except CellStableError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        logger.close()

    bundle_path = save_bundle(run.bundle, out_dir / "bundle.json")
    write_table(run.stability.assignment, out_dir / "stable_clusters.csv")
    write_table(run.stability.summary, out_dir / "cluster_summary.csv")
    write_table(run.variance.gene_stats, out_dir / "gene_stats.csv")
    write_table(run.prediction.embedding, out_dir / "training_ld.csv")
    write_table(run.prediction.calls, out_dir / "training_calls.csv")
    log_json_records(out_dir / "merge_log.jsonl", (r.to_dict() for r in run.stability.merge_log))

    summary = run.summary()
    click.echo(
        f"Training complete: {summary['n_preliminary_clusters']} preliminary -> "
        f"{summary['n_stable_clusters']} stable clusters, "
        f"training accuracy {summary['training_accuracy']:.1%}"
    )
    if summary["unreliable_classes"]:
        click.echo(f"Unreliable classes: {', '.join(summary['unreliable_classes'])}")
    click.echo(f"Model bundle saved to: {bundle_path}")


@cli.command()
@click.option("--bundle", "-b", "bundle_path", required=True, type=click.Path(exists=True),
              help="Model bundle written by 'train'")
@click.option("--dataset", "-d", "datasets", required=True, multiple=True,
              help="New count matrix as NAME=PATH (repeat per batch)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Run configuration file (YAML)")
@click.option("--threshold", type=float, default=None,
              help="Posterior required for a call (default from config)")
@click.option("--log-dir", type=click.Path(), help="Directory for the run log")
@click.pass_context
def predict(
    ctx: click.Context,
    bundle_path: str,
    datasets: Tuple[str, ...],
    output_path: str,
    config: Optional[str],
    threshold: Optional[float],
    log_dir: Optional[str],
) -> None:
    """Project new datasets into LD space and correct batch offsets."""
    from cellstable.errors import CellStableError
    from cellstable.io import load_bundle, read_expression_matrix, write_table
    from cellstable.pipeline import AnalysisPipeline, PipelineLogger

    settings = _load_settings(config)
    parsed: Dict[str, Path] = {}
    for entry in datasets:
        name, path = _parse_dataset(entry)
        if name in parsed:
            raise click.BadParameter(f"dataset name '{name}' given twice", param_hint="--dataset")
        if not path.exists():
            raise click.BadParameter(f"file not found: {path}", param_hint="--dataset")
        parsed[name] = path

    logger = PipelineLogger(
        log_dir=log_dir or settings.run.log_dir,
        log_level=_log_level(ctx),
    ).setup()
    try:
        bundle = load_bundle(bundle_path)
        counts = {name: read_expression_matrix(path) for name, path in parsed.items()}
        run = AnalysisPipeline(settings, logger=logger).integrate(
            counts, bundle, threshold=threshold
        )
    except CellStableError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        logger.close()

    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)
    write_table(run.embedding, out_dir / "joint_ld.csv")
    write_table(run.calls, out_dir / "calls.csv")
    write_table(run.batches, out_dir / "batches.csv")
    for name, prediction in run.predictions.items():
        write_table(prediction.posteriors, out_dir / f"posteriors_{name}.csv")
    shifts = run.correction.shift_table()
    if not shifts.empty:
        write_table(shifts, out_dir / "batch_shifts.csv")

    n_unassigned = int((run.calls == settings.classification.prediction.unassigned_label).sum())
    click.echo(
        f"Projected {len(run.calls)} cells from {len(parsed)} datasets "
        f"({n_unassigned} unassigned); corrected "
        f"{len(run.correction.corrected_clusters)} clusters"
    )
    click.echo(f"Output saved to: {out_dir}")


@cli.command("show-config")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Run configuration file (YAML)")
def show_config(config: Optional[str]) -> None:
    """Print the effective configuration as YAML."""
    try:
        settings = _load_settings(config)
    except (TypeError, ValueError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)
    click.echo(settings.to_yaml(), nl=False)


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
