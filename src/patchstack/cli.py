"""CLI commands for applying and rebuilding a patch stack."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable

import typer

from .config import DEFAULT_CONFIG_NAME, write_default_config
from .errors import ConfigError, PatchError
from .pipeline import Pipeline, PipelineReport
from .tools.vcs import GitError

APP_HELP = "Maintain a fork as layered, replayable file and feature patches."

app = typer.Typer(help=APP_HELP)

CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the patchstack configuration file.",
)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Log engine progress and telemetry events.")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _load_pipeline(config: str, verbose: bool) -> Pipeline:
    _configure_logging(verbose)
    try:
        return Pipeline.from_config_file(Path(config))
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _run(config: str, verbose: bool, operation: Callable[[Pipeline], PipelineReport]) -> None:
    """Run one pipeline operation, print its summary and map failures to exit code 1."""
    pipeline = _load_pipeline(config, verbose)
    try:
        report = operation(pipeline)
    except (PatchError, GitError) as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error
    typer.echo(report.summary())
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def init(
    config: str = CONFIG_OPTION,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_default_config(config_path)
    typer.echo(f"Wrote default configuration to {config_path}")


@app.command("setup-baseline")
def setup_baseline(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Materialise the sources and resources baselines from the configured inputs."""
    _run(config, verbose, lambda pipeline: pipeline.setup_baseline())


@app.command("merge-ats")
def merge_ats(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Collect access transformers from every patch layer and write the merged file."""

    def operation(pipeline: Pipeline) -> PipelineReport:
        report = PipelineReport()
        report.add("access-transforms", pipeline.merge_ats())
        return report

    _run(config, verbose, operation)


@app.command("apply-file-patches")
def apply_file_patches(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Reset the working trees to the baselines and apply the file patches strictly."""
    _run(config, verbose, lambda pipeline: pipeline.apply_file_patches())


@app.command("apply-file-patches-fuzzy")
def apply_file_patches_fuzzy(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Apply the file patches, locating drifted hunks by fuzzy matching."""
    _run(config, verbose, lambda pipeline: pipeline.apply_file_patches(fuzzy=True))


@app.command("apply-feature-patches")
def apply_feature_patches(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Replay the feature commits on top of the file-patched sources."""
    _run(config, verbose, lambda pipeline: pipeline.apply_feature_patches())


@app.command("apply-patches")
def apply_patches(
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
    fuzzy: bool = typer.Option(False, "--fuzzy", help="Use fuzzy matching for the file patches."),
) -> None:
    """Apply the file patches, then the feature patches."""
    _run(config, verbose, lambda pipeline: pipeline.apply_patches(fuzzy=fuzzy))


@app.command("rebuild-file-patches")
def rebuild_file_patches(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Regenerate the file patches from the working trees."""
    _run(config, verbose, lambda pipeline: pipeline.rebuild_file_patches())


@app.command("rebuild-feature-patches")
def rebuild_feature_patches(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Regenerate one feature patch per commit above the file-patch commit."""
    _run(config, verbose, lambda pipeline: pipeline.rebuild_feature_patches())


@app.command("rebuild-patches")
def rebuild_patches(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Regenerate the file patches, then the feature patches."""
    _run(config, verbose, lambda pipeline: pipeline.rebuild_patches())


@app.command("fixup-file-patches")
def fixup_file_patches(config: str = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION) -> None:
    """Fold uncommitted working tree edits into the file patches."""
    _run(config, verbose, lambda pipeline: pipeline.fixup_file_patches())


@app.command()
def status(
    config: str = CONFIG_OPTION,
    as_json: bool = typer.Option(False, "--json", help="Print the status as JSON."),
) -> None:
    """Validate configuration and report the state of each layer."""
    pipeline = _load_pipeline(config, False)
    try:
        info = pipeline.status()
    except (PatchError, GitError) as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error

    if as_json:
        typer.echo(json.dumps(info, indent=2, sort_keys=True))
        return
    typer.echo(f"Loaded configuration from {config}")
    typer.echo(f"Project root: {info['root']}")
    for name in ("sources", "resources"):
        layer = info[name]
        typer.echo(
            f"{name}: {layer['patches']} patch(es), {layer['malformed']} malformed | "
            f"baseline {'ready' if layer['baseline'] else 'missing'} | "
            f"tree {'present' if layer['target'] else 'missing'}"
        )
    features = info["features"]
    line = f"features: {features['patches']} patch(es)"
    if "commits" in features:
        line += f", {features['commits']} commit(s) recorded"
    if features.get("dirty"):
        line += ", uncommitted changes"
    typer.echo(line)
    if "error" in features:
        typer.echo(f"  ! {features['error']}")


if __name__ == "__main__":
    app()
