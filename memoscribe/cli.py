"""Command line interface for memoscribe."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, NoReturn, Optional

import typer

from . import config as config_mod
from .catalog import Catalog, CatalogError, LoadResult, StoreUnavailable, loader_for
from .config import ConfigError
from .export import ExportError, export_catalog
from .jobs import BulkReport, JobManager, TranscriptionJob
from .models import CatalogEntry
from .on_device import PartialResult

app = typer.Typer(add_completion=False, help="Catalog and transcribe Apple Voice Memos recordings.")

STORE_OPTION = typer.Option(None, "--store", help="Path to CloudRecordings.db (defaults to the Voice Memos library).")
DIRECTORY_OPTION = typer.Option(
    None,
    "--directory",
    help="Catalog audio files in this directory instead of reading the Voice Memos store.",
)


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _load_settings() -> config_mod.Config:
    try:
        return config_mod.load_config()
    except ConfigError as exc:
        _fail(str(exc))


def _load_catalog(cfg: config_mod.Config, store: Optional[Path], directory: Optional[Path]) -> Catalog:
    catalog = Catalog()
    try:
        result: LoadResult = catalog.refresh(loader_for(cfg, store, directory))
    except (StoreUnavailable, CatalogError) as exc:
        _fail(str(exc))
    if result.skipped:
        typer.secho(f"Skipped {result.skipped} unreadable recording(s).", fg=typer.colors.YELLOW, err=True)
    return catalog


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _print_entry(entry: CatalogEntry) -> None:
    typer.secho(f"Title: {entry.title}", fg=typer.colors.BLUE)
    typer.echo(f"Recorded: {entry.recorded_at.astimezone():%Y-%m-%d %H:%M}")
    typer.echo(f"Duration: {_format_duration(entry.duration_seconds)}")
    typer.echo(f"File: {entry.file_location}")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable debug logging."),
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    if version:
        typer.echo("memoscribe v0.1.0")
        raise typer.Exit()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("list")
def list_command(
    store: Optional[Path] = STORE_OPTION,
    directory: Optional[Path] = DIRECTORY_OPTION,
) -> None:
    """List recordings, newest first."""

    cfg = _load_settings()
    catalog = _load_catalog(cfg, store, directory)
    if not len(catalog):
        typer.echo("No recordings found.")
        return
    header = f"{'ID':<6}  {'Title':<40}  {'Recorded':<16}  {'Length':>8}"
    typer.echo(header)
    typer.echo("-" * len(header))
    for entry in catalog:
        recorded = entry.recorded_at.astimezone().strftime("%Y-%m-%d %H:%M")
        title = entry.title if len(entry.title) <= 40 else entry.title[:39] + "…"
        typer.echo(f"{entry.id:<6}  {title:<40}  {recorded:<16}  {_format_duration(entry.duration_seconds):>8}")


@app.command()
def show(
    recording_id: int = typer.Argument(..., help="Identifier of the recording to display."),
    store: Optional[Path] = STORE_OPTION,
    directory: Optional[Path] = DIRECTORY_OPTION,
) -> None:
    """Show the metadata of one recording."""

    cfg = _load_settings()
    catalog = _load_catalog(cfg, store, directory)
    try:
        entry = catalog.get(recording_id)
    except CatalogError as exc:
        _fail(str(exc))
    _print_entry(entry)


@app.command()
def transcribe(
    recording_ids: Optional[List[int]] = typer.Argument(None, help="Identifiers of the recordings to transcribe."),
    all_recordings: bool = typer.Option(False, "--all", help="Transcribe every recording in the catalog."),
    provider: Optional[str] = typer.Option(None, "--provider", help="Transcription provider (remote, on_device)."),
    export_dir: Optional[Path] = typer.Option(None, "--export-dir", help="Write transcriptions to this directory."),
    store: Optional[Path] = STORE_OPTION,
    directory: Optional[Path] = DIRECTORY_OPTION,
) -> None:
    """Transcribe recordings and optionally export the results."""

    cfg = _load_settings()
    catalog = _load_catalog(cfg, store, directory)
    if all_recordings:
        ids = [entry.id for entry in catalog]
    else:
        ids = list(recording_ids or [])
    if not ids:
        _fail("Nothing to transcribe. Pass recording ids or --all.")
    for recording_id in ids:
        try:
            catalog.get(recording_id)
        except CatalogError as exc:
            _fail(str(exc))

    def _on_progress(job: TranscriptionJob, partial: PartialResult) -> None:
        typer.secho(f"[{job.entry_id}] {partial.progress:4.0%}", fg=typer.colors.CYAN, err=True)

    async def _run() -> BulkReport:
        manager = JobManager(catalog, cfg)
        return await manager.run_bulk(ids, provider=provider, on_progress=_on_progress)

    try:
        report = asyncio.run(_run())
    except ConfigError as exc:
        _fail(str(exc))

    for recording_id in ids:
        entry = catalog.get(recording_id)
        if recording_id in report.failed:
            typer.secho(
                f"\n{entry.title}: transcription failed ({report.failed[recording_id].describe()})",
                fg=typer.colors.RED,
                err=True,
            )
        elif recording_id in report.succeeded:
            typer.secho(f"\n{entry.title}", fg=typer.colors.BLUE)
            typer.echo(entry.transcription or "")

    destination = export_dir or (Path(cfg.export_dir) if cfg.export_dir else None)
    if destination is not None:
        try:
            exported = export_catalog([catalog.get(i) for i in report.succeeded], destination)
        except ExportError as exc:
            _fail(str(exc))
        typer.secho(f"\nExported {len(exported.written)} transcription(s) to {destination}.", fg=typer.colors.GREEN)

    if report.failed:
        raise typer.Exit(code=1)


@app.command()
def config(
    provider: Optional[str] = typer.Option(None, help="Default provider (remote, on_device)."),
    openai_api_key: Optional[str] = typer.Option(None, help="API key for the remote provider."),
    openai_model: Optional[str] = typer.Option(None, help="Model id sent to the remote endpoint."),
    api_url: Optional[str] = typer.Option(None, help="Remote transcription endpoint URL."),
    whisper_model: Optional[str] = typer.Option(None, help="Whisper model name for on-device transcription."),
    store_path: Optional[str] = typer.Option(None, help="Location of CloudRecordings.db."),
    recordings_dir: Optional[str] = typer.Option(None, help="Directory holding the recordings."),
    export_dir: Optional[str] = typer.Option(None, help="Default directory for exported transcriptions."),
    verify_ssl: Optional[bool] = typer.Option(
        None,
        "--verify-ssl/--no-verify-ssl",
        help="Toggle TLS certificate verification for the remote provider.",
    ),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "provider": provider,
            "openai_api_key": openai_api_key,
            "openai_model": openai_model,
            "api_url": api_url,
            "whisper_model": whisper_model,
            "store_path": store_path,
            "recordings_dir": recordings_dir,
            "export_dir": export_dir,
            "verify_ssl": verify_ssl,
        }.items()
        if value is not None
    }

    if show or not updates:
        cfg = _load_settings()
        payload = asdict(cfg)
        if payload.get("openai_api_key"):
            payload["openai_api_key"] = "********"
        typer.echo(json.dumps(payload, indent=2, default=str))
        return

    if provider is not None and provider not in {"remote", "on_device"}:
        _fail(f"Unknown provider {provider!r}; expected remote or on_device.")

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        _fail(str(exc))
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


if __name__ == "__main__":  # pragma: no cover
    app()
