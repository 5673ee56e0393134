"""
CLI Interface
=============
Command-line interface for the question extractor.

Usage:
    python -m qextract extract <pdf_path> [options]
    python -m qextract info <pdf_path>
    python -m qextract delete <group_id> [options]
    python -m qextract serve [options]
"""

from __future__ import annotations

import json
import os
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from . import __version__
from .cropper import ImageCropper
from .engine import ExtractionEngine, ExtractorConfig
from .exceptions import ExtractorError
from .storage import StorageLayout

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="qextract")
def cli():
    """Exam question extractor: PDF pages in, cropped questions out."""
    pass


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--label", "-l",
    default="",
    help="Document label (defaults to filename)",
)
@click.option(
    "--storage-root", "-s",
    default=None,
    help="Root directory for uploads, scratch files and question images",
)
@click.option(
    "--dpi",
    default=None,
    type=int,
    help="Rasterization density",
)
@click.option(
    "--questions-per-page", "-q",
    default=None,
    type=int,
    help="Strips per page when falling back to geometric detection",
)
@click.option(
    "--model", "-m",
    default=None,
    help="Gemini model used for boundary detection",
)
@click.option(
    "--remove-source",
    is_flag=True,
    default=False,
    help="Delete the PDF after a successful extraction",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option(
    "--log-file",
    default=None,
    help="Path to log file",
)
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout (for programmatic use)",
)
def extract(
    pdf_path: str,
    label: str,
    storage_root: str,
    dpi: int,
    questions_per_page: int,
    model: str,
    remove_source: bool,
    log_level: str,
    log_file: str,
    json_output: bool,
):
    """Extract cropped question images from a single PDF."""

    if json_output:
        # Suppress console output for JSON mode
        log_level = "ERROR"

    try:
        config = ExtractorConfig.from_env(
            storage_root=storage_root,
            dpi=dpi,
            questions_per_page=questions_per_page,
            gemini_model=model,
            remove_source_on_success=remove_source,
            log_level=log_level,
            log_file=log_file,
        )
        engine = ExtractionEngine(config)
    except ExtractorError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(2)

    if not json_output:
        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]Question Extractor v{__version__}[/]\n"
                f"[dim]Extracting: {os.path.basename(pdf_path)}[/]",
                border_style="cyan",
            )
        )
        console.print()

    try:
        if json_output:
            result = engine.extract(pdf_path, label)
            print(json.dumps(
                result.model_dump(mode="json"),
                indent=2,
                ensure_ascii=False,
            ))
            return

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Rasterizing PDF...", total=None)

            def on_page(page_number: int, question_count: int):
                progress.update(
                    task,
                    description=(
                        f"Page {page_number} done, "
                        f"{question_count} questions so far"
                    ),
                )

            result = engine.extract(pdf_path, label, progress_callback=on_page)

        _display_results(result)

    except ExtractorError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/] {e}")
        if log_level == "DEBUG":
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
def info(pdf_path: str):
    """Display PDF file information."""

    import fitz

    with fitz.open(pdf_path) as doc:
        table = Table(title="PDF Information", border_style="cyan")
        table.add_column("Property", style="bold")
        table.add_column("Value")

        table.add_row("File", os.path.basename(pdf_path))
        table.add_row("Pages", str(doc.page_count))
        table.add_row(
            "File Size",
            f"{os.path.getsize(pdf_path) / 1024 / 1024:.2f} MB",
        )

        metadata = doc.metadata or {}
        for key in ["title", "author", "subject", "creator", "producer"]:
            val = metadata.get(key, "")
            if val:
                table.add_row(key.title(), val)

        if doc.page_count:
            first = doc[0].rect
            table.add_row(
                "Page Size (pt)", f"{first.width:.0f} x {first.height:.0f}"
            )

    console.print()
    console.print(table)
    console.print()


@cli.command()
@click.argument("group_id")
@click.option(
    "--storage-root", "-s",
    default=None,
    help="Root directory holding the questions/ folder",
)
def delete(group_id: str, storage_root: str):
    """Delete every stored image of a document group."""
    config = ExtractorConfig.from_env(storage_root=storage_root)
    layout = StorageLayout.at(config.storage_root)
    cropper = ImageCropper(layout.questions_dir, url_prefix=config.url_prefix)

    try:
        removed = cropper.delete_group_images(group_id)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    if removed:
        console.print(f"[green]✓[/] Deleted images for group {group_id}")
    else:
        console.print(f"[yellow]Nothing to delete for group {group_id}[/]")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
def serve(host: str, port: int, debug: bool):
    """Start the HTTP intake server."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Question Extractor Service[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug)


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_results(result):
    """Display extraction results as rich tables."""
    console.print()

    table = Table(title="Extraction Summary", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("Label", result.label)
    table.add_row("Source PDF", result.source_pdf)
    table.add_row("Group ID", result.group_id)
    table.add_row("Pages", str(len(result.pages)))
    table.add_row("Questions", str(result.total_questions))
    table.add_row("Elapsed", f"{result.elapsed_seconds:.2f}s")
    console.print(table)
    console.print()

    _display_page_table(result.pages)

    console.print(
        f"[dim]Extractor v{result.extractor_version} | "
        f"Fallback pages: {len(result.fallback_pages)} | "
        f"Timestamp: {result.extracted_at}[/]"
    )
    console.print()


def _display_page_table(pages):
    """One row per page: detection path and crop counts."""
    table = Table(title="Pages", border_style="green")
    table.add_column("Page", justify="right", style="bold")
    table.add_column("Detection")
    table.add_column("Detected", justify="right")
    table.add_column("Cropped", justify="right")
    table.add_column("Status", justify="center")

    for page in pages:
        detection = (
            "[green]vision[/]" if page.source.value == "primary"
            else "[yellow]fallback[/]"
        )
        status = "[green]✓[/]" if page.boxes_skipped == 0 else "[red]✗[/]"
        table.add_row(
            str(page.page_number),
            detection,
            str(page.boxes_detected),
            str(page.boxes_cropped),
            status,
        )

    console.print(table)
    console.print()


# ─── Entry point (for python -m qextract.cli) ─────────────────────────────────


if __name__ == "__main__":
    cli()
