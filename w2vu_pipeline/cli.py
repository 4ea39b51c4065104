from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import typer
from rich.console import Console
from rich.table import Table

from w2vu_pipeline.common.logging_config import configure_logging
from w2vu_pipeline.errors import PipelineError
from w2vu_pipeline.patching import yaml_config
from w2vu_pipeline.pipeline.checkpointing import CheckpointStore, StepStatus
from w2vu_pipeline.pipeline.config import PipelineConfig
from w2vu_pipeline.pipeline.progress_ui import progress_ui
from w2vu_pipeline.pipeline.runner import PipelineRunner, stage_status
from w2vu_pipeline.selection.log_mining import select_best_from_file


app = typer.Typer(add_completion=False, help="Resumable wav2vec-U pipeline driver.")
console = Console()

_STATUS_STYLE = {
    StepStatus.COMPLETED: "[green]completed[/green]",
    StepStatus.IN_PROGRESS: "[yellow]in progress[/yellow]",
    StepStatus.ABSENT: "[dim]not started[/dim]",
}

ConfigOption = typer.Option("pipeline_config.toml", "--config", "-c", help="Path to pipeline_config.toml")


def _run_stage(config: str, stage: str, verbose: bool) -> None:
    config_path = Path(config).expanduser()
    level = logging.DEBUG if verbose else logging.INFO
    try:
        with progress_ui(console) as ui:
            runner = PipelineRunner.from_config_path(config_path, ui=ui, log_level=level)
            runner.run(stage)
    except PipelineError as exc:
        console.print(f"[red]ERROR:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]Stage '{stage}' completed successfully![/green]")


def _load_store(config: str) -> CheckpointStore:
    try:
        paths = PipelineConfig.load(Path(config).expanduser()).resolve()
    except PipelineError as exc:
        console.print(f"[red]ERROR:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    return CheckpointStore(paths.checkpoint_file)


@app.command()
def init_config(
    path: str = typer.Argument(
        "pipeline_config.toml",
        help="Where to write the pipeline configuration TOML",
    ),
) -> None:
    """Write an example pipeline_config.toml."""
    template = Path(__file__).resolve().parent / "pipeline_config.example.toml"
    if not template.exists():
        raise RuntimeError(f"Missing template file: {template}")

    out = Path(path).expanduser()
    if out.exists():
        raise typer.BadParameter(f"Refusing to overwrite existing file: {out}")

    out.write_text(template.read_text())
    typer.echo(f"Wrote {out} (edit it, then run: w2vu-pipeline setup --config {out})")


@app.command()
def setup(config: str = ConfigOption, verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """Check the toolchain and download the pre-trained models."""
    _run_stage(config, "setup", verbose)


@app.command()
def train(config: str = ConfigOption, verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """Manifests, silence removal, audio/text preparation and GAN training."""
    _run_stage(config, "train", verbose)


@app.command()
def evaluate(config: str = ConfigOption, verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """GAN transcription, HMM self-training and decoding."""
    _run_stage(config, "evaluate", verbose)


@app.command()
def status(config: str = ConfigOption) -> None:
    """Show the recorded status of every step."""
    store = _load_store(config)
    table = Table(title=f"Checkpoint: {store.path}")
    table.add_column("Stage")
    table.add_column("Step")
    table.add_column("Status")
    for stage, step_name, step_status in stage_status(store):
        table.add_row(stage, step_name, _STATUS_STYLE[step_status])
    console.print(table)


@app.command()
def compact(config: str = ConfigOption) -> None:
    """Rewrite the checkpoint file with one line per step."""
    store = _load_store(config)
    dropped = store.compact()
    typer.echo(f"Compacted {store.path}: dropped {dropped} line(s)")


@app.command()
def best_result(log_file: str = typer.Argument(..., help="Run log to scan for scored trials")) -> None:
    """Print the lowest-WER result path found in a run log."""
    best = select_best_from_file(Path(log_file).expanduser())
    if best is None:
        typer.echo("No scored trial found.")
        return
    typer.echo(best)


@app.command()
def yaml_set(
    config_file: str = typer.Argument(..., help="YAML document to patch"),
    assignments: List[str] = typer.Argument(..., help="dotted.path=value pairs"),
) -> None:
    """Set one or more dotted paths in a YAML config in a single rewrite."""
    configure_logging(logging.INFO)
    try:
        yaml_config.set_values(Path(config_file).expanduser(), yaml_config.parse_assignments(assignments))
    except PipelineError as exc:
        console.print(f"[red]ERROR:[/red] {exc}")
        raise typer.Exit(code=1) from exc


@app.command()
def yaml_delete(
    config_file: str = typer.Argument(..., help="YAML document to patch"),
    dotted_path: str = typer.Argument(..., help="Field to delete, e.g. optimizer.groups.generator.optimizer.amsgrad"),
) -> None:
    """Delete a field (and its subtree) from a YAML config."""
    configure_logging(logging.INFO)
    try:
        yaml_config.delete_field(Path(config_file).expanduser(), dotted_path)
    except PipelineError as exc:
        console.print(f"[red]ERROR:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def main() -> None:
    app()


if __name__ == "__main__":
    main()
