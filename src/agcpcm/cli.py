"""Command line interface for the agcpcm package."""
from __future__ import annotations

import importlib
import json
import logging
import queue
from pathlib import Path
from typing import Callable, List, Optional

import typer

from .pcm.config import RunConfig, build_run_parameters, load_config
from .pcm.errors import ExtractionError
from .pcm.runner import (
    ErrorEvent,
    ExtractionWorker,
    FinishedEvent,
    LogEvent,
    ProgressEvent,
    drain_events,
    prescan_bundle,
    summarize,
)
from .pcm.sources import SourceBundle
from .plotting import plot_csv

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, context_settings={"help_option_names": ["-h", "--help"]})


def load_source_factory(spec: str) -> Callable[[RunConfig], SourceBundle]:
    """Resolve ``package.module:factory`` to a callable."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter("Source must look like 'package.module:factory'", param_hint="--source")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise typer.BadParameter(f"Cannot import '{module_name}': {exc}", param_hint="--source") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise typer.BadParameter(f"'{spec}' is not a callable", param_hint="--source")
    return factory


def open_bundle(spec: str, cfg: RunConfig) -> SourceBundle:
    bundle = load_source_factory(spec)(cfg)
    if not isinstance(bundle, SourceBundle):
        bundle = SourceBundle(*bundle)
    return bundle


def _prepare(
    config_path: Optional[Path],
    overrides: Optional[List[str]],
    out: Optional[Path] = None,
):
    try:
        cfg = load_config(config_path, overrides or None)
        if out is not None:
            cfg.output_csv = out
        params = build_run_parameters(cfg)
    except (OSError, ValueError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    return cfg, params


@app.command()
def extract(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Run configuration JSON."),
    source: str = typer.Option(..., "--source", "-s", help="Packet source factory, 'package.module:factory'."),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set sample_rate=10 --set window.extract_all_time=true",
    ),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Output CSV path."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Extract averaged receiver levels from the PCM channel into a CSV."""

    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    cfg, params = _prepare(config_path, override, out)
    bundle = open_bundle(source, cfg)

    events: "queue.Queue" = queue.Queue(maxsize=max(cfg.host.queue_maxsize, 1))
    worker = ExtractionWorker(bundle, params, events)
    worker.start()
    finished: Optional[FinishedEvent] = None
    for event in drain_events(events):
        if isinstance(event, LogEvent):
            typer.echo(event.message)
        elif isinstance(event, ProgressEvent):
            logger.debug("progress %d%%", event.percent)
        elif isinstance(event, ErrorEvent):
            typer.echo(f"Error: {event.message}", err=True)
        elif isinstance(event, FinishedEvent):
            finished = event
    worker.join(timeout=5)

    if finished is None or not finished.success or finished.result is None:
        raise typer.Exit(code=1)
    logger.debug("run summary: %s", json.dumps(summarize(finished.result)))
    typer.echo(f"Wrote {finished.result.rows_written} rows to {finished.result.output_csv}")


@app.command()
def prescan(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Run configuration JSON."),
    source: str = typer.Option(..., "--source", "-s", help="Packet source factory, 'package.module:factory'."),
    override: Optional[List[str]] = typer.Option(None, "--set", help="Override config keys."),
) -> None:
    """Report whether the PCM channel is randomized (RNRZ-L)."""

    cfg, params = _prepare(config_path, override)
    bundle = open_bundle(source, cfg)
    try:
        result = prescan_bundle(bundle, params)
    except ExtractionError as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc
    if not result.sync_found:
        typer.echo("Frame sync not found in the first PCM packet.")
        raise typer.Exit(code=1)
    typer.echo("Randomized (RNRZ-L)" if result.randomized else "Not randomized")


@app.command()
def plot(
    input_path: Path = typer.Option(..., "--in", help="CSV written by 'extract'.", exists=True, readable=True),
    out: Optional[Path] = typer.Option(None, "--out", help="PNG path (defaults next to the CSV)."),
) -> None:
    """Plot every parameter column of an extraction CSV."""

    try:
        written = plot_csv(input_path, out)
    except (RuntimeError, ValueError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"Plot written to {written}")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
