"""
CLI interface for the Dify Usage Exporter.

Operator commands for quarantined batches, the watermark and one-off runs.
"""

import asyncio
import json
import sys
from datetime import date
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from dify_usage_exporter.bootstrap import Components, build_components
from dify_usage_exporter.config import Settings, get_settings
from dify_usage_exporter.errors import ExporterError
from dify_usage_exporter.logging_config import configure_logging
from dify_usage_exporter.schemas.spool import SpoolFile
from dify_usage_exporter.sender.spool import SpoolManager
from dify_usage_exporter.watermark import WatermarkStore

app = typer.Typer(help="Dify usage exporter operations.", no_args_is_help=True)
watermark_app = typer.Typer(help="Show or reset the fetch watermark.", no_args_is_help=True)
app.add_typer(watermark_app, name="watermark")

console = Console()
err_console = Console(stderr=True)

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1


def _load_settings() -> Settings:
    try:
        settings = get_settings()
    except ValidationError as e:
        err_console.print(f"[red]Invalid configuration:[/] {escape(str(e))}")
        raise typer.Exit(EXIT_CODE_FAIL)
    configure_logging(settings, stream=sys.stderr)
    return settings


def _spool_manager(settings: Settings) -> SpoolManager:
    return SpoolManager(spool_dir=settings.spool_dir, failed_dir=settings.failed_dir)


def _first_attempt(spool_file: SpoolFile) -> str:
    return spool_file.first_attempt[:19].replace("T", " ")


def _total_records(files: list[SpoolFile]) -> int:
    return sum(len(f.records) for f in files)


@app.command("list")
def list_failed(
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List batches in the failed directory."""
    settings = _load_settings()
    files = asyncio.run(_spool_manager(settings).list_failed_files())

    if as_json:
        typer.echo(
            json.dumps(
                {
                    "files": [
                        {
                            "filename": f.filename,
                            "recordCount": len(f.records),
                            "firstAttempt": f.first_attempt,
                            "retryCount": f.retry_count,
                            "lastError": f.last_error or "Unknown error",
                        }
                        for f in files
                    ],
                    "totalFiles": len(files),
                    "totalRecords": _total_records(files),
                },
                indent=2,
            )
        )
        return

    if not files:
        console.print("No failed files")
        return

    table = Table(title=f"Failed files in {settings.failed_dir}")
    table.add_column("Filename")
    table.add_column("Records", justify="right")
    table.add_column("First Attempt")
    table.add_column("Retries", justify="right")
    table.add_column("Last Error", overflow="fold")
    for f in files:
        table.add_row(
            f.filename or "",
            str(len(f.records)),
            _first_attempt(f),
            str(f.retry_count),
            f.last_error or "Unknown error",
        )
    console.print(table)
    console.print(f"Total: {len(files)} files, {_total_records(files)} records")


@app.command()
def resend(
    file: Optional[str] = typer.Option(None, "--file", "-f", help="Resend one failed file"),
    resend_all: bool = typer.Option(False, "--all", "-a", help="Resend every failed file"),
):
    """
    Resend quarantined batches to the partner API.

    Without options the failed files are listed. A delivered file is deleted;
    a file that fails again stays in the failed directory.
    """
    settings = _load_settings()

    if file is None and not resend_all:
        files = asyncio.run(_spool_manager(settings).list_failed_files())
        if not files:
            console.print("No failed files")
            return
        console.print(f"Failed files in {settings.failed_dir}:\n")
        for i, f in enumerate(files, start=1):
            console.print(
                f"  {i}. {f.filename} ({len(f.records)} records, "
                f"first attempt: {_first_attempt(f)})",
                soft_wrap=True,
            )
        console.print(f"\nTotal: {len(files)} files, {_total_records(files)} records")
        console.print("\nUse --file NAME or --all to resend.")
        return

    components = build_components(settings)
    if file is not None:
        ok = asyncio.run(_resend_one(components, file))
        raise typer.Exit(EXIT_CODE_OK if ok else EXIT_CODE_FAIL)

    asyncio.run(_resend_all(components))


async def _resend_one(components: Components, filename: str) -> bool:
    try:
        spool_file = await components.spool_manager.get_failed_file(filename)
        if spool_file is None:
            err_console.print(f"[red]Error:[/] File not found: {filename}")
            return False

        console.print(f"Resending {filename}...", soft_wrap=True)
        if not await _resend_file(components, spool_file):
            return False
        console.print(f"[green]✓[/] Successfully resent {len(spool_file.records)} records")
        console.print(f"File deleted: {filename}", soft_wrap=True)
        return True
    finally:
        await components.close()


async def _resend_all(components: Components) -> None:
    try:
        files = await components.spool_manager.list_failed_files()
        if not files:
            console.print("No failed files")
            return

        console.print("Resending all failed files...")
        succeeded: list[SpoolFile] = []
        failed: list[SpoolFile] = []
        for spool_file in files:
            if await _resend_file(components, spool_file):
                succeeded.append(spool_file)
                console.print(
                    f"  [green]ok[/] {spool_file.filename}: {len(spool_file.records)} records sent"
                )
            else:
                failed.append(spool_file)

        console.print("\nSummary:")
        console.print(
            f"  Successful: {len(succeeded)} files ({_total_records(succeeded)} records)"
        )
        console.print(f"  Failed: {len(failed)} files ({_total_records(failed)} records)")
    finally:
        await components.close()


async def _resend_file(components: Components, spool_file: SpoolFile) -> bool:
    filename = spool_file.filename or ""
    try:
        await components.sender.resend_failed_file(spool_file.records)
    except ExporterError as e:
        err_console.print(f"  [red]error[/] {filename}: Failed ({escape(str(e))})")
        return False
    await components.spool_manager.delete_failed_file(filename)
    return True


@app.command("run-once")
def run_once():
    """Run a single export (resend spool, fetch, transform, send) and exit."""
    settings = _load_settings()
    components = build_components(settings)

    try:
        result = asyncio.run(_run_pipeline(components))
    except ExporterError as e:
        err_console.print(f"[red]Export failed:[/] {escape(str(e))}")
        raise typer.Exit(EXIT_CODE_FAIL)

    table = Table(title=f"Export {result.execution_id}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in result.metrics.items():
        if key != "execution_id":
            table.add_row(key, str(value))
    console.print(table)


async def _run_pipeline(components: Components):
    try:
        return await components.pipeline.run()
    finally:
        await components.close()


@watermark_app.command("show")
def watermark_show():
    """Show the current watermark."""
    settings = _load_settings()
    watermark = WatermarkStore(settings.watermark_file_path).load()
    if watermark is None:
        console.print("Watermark not set")
        return
    console.print("Current watermark:")
    console.print(f"  last_fetched_date: {watermark.last_fetched_date.isoformat()}")
    console.print(f"  last_updated_at:   {watermark.last_updated_at.isoformat()}")


@watermark_app.command("reset")
def watermark_reset(
    new_date: str = typer.Option(..., "--date", "-d", help="Date to reset to (YYYY-MM-DD)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Reset the watermark; data after the date is fetched again on the next run."""
    settings = _load_settings()
    try:
        parsed = date.fromisoformat(new_date)
    except ValueError:
        err_console.print("[red]Error:[/] Invalid date format. Use YYYY-MM-DD.")
        raise typer.Exit(EXIT_CODE_FAIL)

    store = WatermarkStore(settings.watermark_file_path)
    current = store.load()
    console.print(f"Current: {current.last_fetched_date.isoformat() if current else 'Not set'}")
    console.print(f"New:     {parsed.isoformat()}")

    if not yes and not typer.confirm("Are you sure?"):
        console.print("Reset cancelled")
        return

    store.save(parsed)
    console.print(f"Watermark reset to {parsed.isoformat()}")


if __name__ == "__main__":
    app()
