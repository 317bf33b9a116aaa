"""CLI interface: inspect, validate, convert and serve subcommands."""

import asyncio
import logging
import os
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from cherrikka.backup.detection import BackupFormatError
from cherrikka.merge import PRECEDENCE_MODES
from cherrikka.models import ConvertOptions, ProgressEvent
from cherrikka.service import ConversionService

# stdout carries JSON results only; everything human-facing goes to stderr.
console = Console(stderr=True)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _read(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise click.ClickException(f"cannot read {path}: {e}") from e


def _run(coro):
    try:
        return asyncio.run(coro)
    except BackupFormatError as e:
        raise click.ClickException(str(e)) from e


_input_option = click.option(
    "--input",
    "-i",
    "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Backup archive (.zip) to read.",
)
_verbose_option = click.option(
    "--verbose", "-v", is_flag=True, default=False, help="Log debug detail to stderr."
)


@click.group()
@click.version_option(package_name="cherrikka")
def cli():
    """Convert chat backups between Cherry Studio and RikkaHub."""


@cli.command()
@_input_option
@_verbose_option
def inspect(input_path: Path, verbose: bool):
    """Detect the format of a backup and summarize what it holds."""
    _configure_logging(verbose)
    result = _run(ConversionService().inspect(_read(input_path)))
    click.echo(result.model_dump_json(indent=2))


@cli.command()
@_input_option
@_verbose_option
def validate(input_path: Path, verbose: bool):
    """Check a backup for structural problems. Exits 1 when it is invalid."""
    _configure_logging(verbose)
    result = _run(ConversionService().validate(_read(input_path)))
    click.echo(result.model_dump_json(indent=2))
    if not result.valid:
        raise SystemExit(1)


@cli.command()
@click.option(
    "--input",
    "-i",
    "input_paths",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    multiple=True,
    help="Source archive; repeat to merge several backups.",
)
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Output archive path.")
@click.option(
    "--from",
    "from_format",
    type=click.Choice(["auto", "cherry", "rikka"]),
    default="auto",
    show_default=True,
    help="Source format.",
)
@click.option("--to", "to_format", required=True, help="Target format: cherry or rikka.")
@click.option(
    "--template",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Target-format archive whose settings seed the output.",
)
@click.option("--redact-secrets", is_flag=True, default=False, help="Mask API keys, tokens and passwords.")
@click.option(
    "--config-precedence",
    type=click.Choice(PRECEDENCE_MODES),
    default="latest",
    show_default=True,
    help="Which input's settings win when merging.",
)
@click.option(
    "--config-source-index",
    type=int,
    default=0,
    help="1-based input index, used with --config-precedence=source.",
)
@_verbose_option
def convert(
    input_paths: tuple[Path, ...],
    output: Path | None,
    from_format: str,
    to_format: str,
    template: Path | None,
    redact_secrets: bool,
    config_precedence: str,
    config_source_index: int,
    verbose: bool,
):
    """Convert one or more backups into a single target-format backup.

    The manifest written into the output's sidecar is printed to stdout.
    """
    _configure_logging(verbose)
    if not input_paths or output is None:
        raise click.ClickException("input and output are required")

    options = ConvertOptions(
        inputs=[(path.name, _read(path)) for path in input_paths],
        from_format=from_format,
        to_format=to_format,
        redact_secrets=redact_secrets,
        template=_read(template) if template else None,
        config_precedence=config_precedence,
        config_source_index=config_source_index,
    )

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Converting...", total=100)

        def on_progress(event: ProgressEvent) -> None:
            progress.update(task, completed=event.progress, description=f"{event.stage}: {event.message}")

        result = _run(ConversionService(progress=on_progress).convert(options))

    try:
        output.write_bytes(result.archive)
    except OSError as e:
        raise click.ClickException(f"cannot write {output}: {e}") from e

    console.print(f"[bold green]Wrote[/bold green] {output}")
    if result.manifest.warnings:
        console.print(f"[yellow]{len(result.manifest.warnings)} warning(s)[/yellow]")
    click.echo(result.manifest.model_dump_json(by_alias=True, exclude_none=True, indent=2))


@cli.command()
@click.option("--host", default=lambda: os.environ.get("CHERRIKKA_HOST", "127.0.0.1"), show_default="127.0.0.1")
@click.option("--port", type=int, default=lambda: int(os.environ.get("CHERRIKKA_PORT", "7788")), show_default="7788")
def serve(host: str, port: int):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("cherrikka.main:app", host=host, port=port)


if __name__ == "__main__":
    cli()
