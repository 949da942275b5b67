"""Encounter Discovery Pipeline CLI."""

import asyncio
from pathlib import Path
from typing import Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from encdisc.config import Settings
from encdisc.errors import EncounterDiscoveryError
from encdisc.logging_config import configure_logging
from encdisc.models import RunResult
from encdisc.pipeline import HttpInferenceClient, JsonFilePageSource, plan_chunks
from encdisc.pipeline.orchestrator import EncounterDiscoveryRunner
from encdisc.storage import (
    EncounterRepository,
    ManifestRepository,
    ShellFileRepository,
    close_db,
    create_engine,
    create_session_factory,
    get_session,
    init_db,
)

app = typer.Typer(
    name="encdisc",
    help="Progressive encounter discovery for OCR'd medical documents",
    add_completion=False,
)
console = Console()


def _load_settings() -> Settings:
    settings = Settings()
    configure_logging(settings)
    return settings


def _print_result(result: RunResult) -> None:
    manifest = result.manifest
    if result.already_processed:
        console.print("[yellow]Already processed; returning stored manifest[/yellow]")

    table = Table(title=f"Encounters for {result.shell_file_id}")
    table.add_column("Type", style="cyan")
    table.add_column("Pages")
    table.add_column("Dates")
    table.add_column("Provider")
    table.add_column("Confidence", justify="right")
    table.add_column("Flags", style="yellow")
    for encounter in manifest.encounters:
        pages = ", ".join(f"{r.start}-{r.end}" for r in encounter.page_ranges)
        dates = " to ".join(d for d in (encounter.start_date, encounter.end_date) if d)
        flags = []
        if encounter.is_multi_segment:
            flags.append("multi-segment")
        if encounter.unclosed_chain:
            flags.append("unclosed")
        table.add_row(
            encounter.encounter_type,
            pages,
            dates,
            encounter.provider or "",
            f"{encounter.confidence:.2f}",
            ", ".join(flags),
        )
    console.print(table)
    console.print(
        f"[dim]{manifest.total_pages} pages, {manifest.total_chunks} chunk(s), "
        f"model {manifest.ai_model}, cost ${manifest.ai_cost_usd:.4f}[/dim]"
    )
    if manifest.requires_manual_review:
        console.print("[bold yellow]Manual review required:[/bold yellow]")
        for reason in manifest.review_reasons:
            console.print(f"  - {reason}")


async def _process_files(
    settings: Settings,
    documents: list[tuple[Path, Optional[UUID], Optional[UUID]]],
    workers: int,
    force: bool,
) -> list[tuple[Path, Optional[RunResult], Optional[str]]]:
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    semaphore = asyncio.Semaphore(workers)

    try:
        async with HttpInferenceClient(settings) as client:
            runner = EncounterDiscoveryRunner(settings, session_factory, client)

            async def process_one(path, shell_file_id, patient_id):
                async with semaphore:
                    try:
                        document = await JsonFilePageSource(path).load(shell_file_id, patient_id)
                        return path, await runner.run(document, force=force), None
                    except EncounterDiscoveryError as exc:
                        return path, None, str(exc)

            return await asyncio.gather(*(process_one(*item) for item in documents))
    finally:
        await close_db(engine)


@app.command()
def process(
    ocr_json: Path = typer.Argument(..., help="Path to OCR JSON for one shell file"),
    shell_file_id: Optional[UUID] = typer.Option(None, help="Shell file id (defaults to the id in the JSON)"),
    patient_id: Optional[UUID] = typer.Option(None, help="Patient id (defaults to the id in the JSON)"),
    force: bool = typer.Option(False, help="Reprocess even if a manifest exists"),
) -> None:
    """Discover encounters in a single document."""
    settings = _load_settings()
    console.print(f"[bold blue]Processing:[/bold blue] {ocr_json}")

    [(_, result, error)] = asyncio.run(
        _process_files(settings, [(ocr_json, shell_file_id, patient_id)], workers=1, force=force)
    )
    if error:
        console.print(f"[bold red]Failed:[/bold red] {error}")
        raise typer.Exit(code=1)
    _print_result(result)


@app.command()
def batch(
    directory: Path = typer.Argument(..., help="Directory containing OCR JSON files"),
    workers: Optional[int] = typer.Option(None, help="Documents processed concurrently"),
    force: bool = typer.Option(False, help="Reprocess documents that already have a manifest"),
) -> None:
    """Batch process every OCR JSON file in a directory."""
    settings = _load_settings()
    files = sorted(directory.glob("*.json"))
    if not files:
        console.print(f"[yellow]No OCR JSON files in {directory}[/yellow]")
        raise typer.Exit(code=1)

    workers = workers or settings.max_concurrent_documents
    console.print(f"[bold blue]Batch processing:[/bold blue] {len(files)} file(s)")
    console.print(f"[dim]Workers: {workers}[/dim]")

    results = asyncio.run(
        _process_files(settings, [(path, None, None) for path in files], workers=workers, force=force)
    )

    table = Table(title="Batch results")
    table.add_column("File")
    table.add_column("Encounters", justify="right")
    table.add_column("Review")
    table.add_column("Error", style="red")
    failures = 0
    for path, result, error in results:
        if error:
            failures += 1
            table.add_row(path.name, "-", "-", error)
            continue
        manifest = result.manifest
        review = "yes" if manifest.requires_manual_review else ""
        suffix = " (cached)" if result.already_processed else ""
        table.add_row(path.name, f"{manifest.total_encounters_found}{suffix}", review, "")
    console.print(table)

    if failures:
        console.print(f"[bold red]{failures} document(s) failed[/bold red]")
        raise typer.Exit(code=1)


async def _load_status(settings: Settings, shell_file_id: UUID):
    engine = create_engine(settings)
    try:
        async with get_session(create_session_factory(engine)) as session:
            shell_file = await ShellFileRepository(session).get_by_id(shell_file_id)
            manifest = await ManifestRepository(session).load_manifest(shell_file_id)
            metrics = await ManifestRepository(session).load_metrics(shell_file_id)
            encounter_count = await EncounterRepository(session).count_by_shell_file(shell_file_id)
            return shell_file, manifest, metrics, encounter_count
    finally:
        await close_db(engine)


@app.command()
def status(
    shell_file_id: UUID = typer.Argument(..., help="Shell file id"),
) -> None:
    """Show processing status for a shell file."""
    settings = _load_settings()
    shell_file, manifest, metrics, encounter_count = asyncio.run(_load_status(settings, shell_file_id))

    if shell_file is None:
        console.print(f"[yellow]Unknown shell file {shell_file_id}[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"[bold blue]Shell file {shell_file_id}[/bold blue]")
    console.print(f"Status: {shell_file.status.value}")
    if shell_file.error_message:
        console.print(f"[red]Error: {shell_file.error_message}[/red]")
    if manifest is None:
        console.print("[dim]No manifest yet[/dim]")
        return

    console.print(f"Encounters: {encounter_count}")
    if metrics is not None:
        console.print(
            f"Real-world: {metrics.real_world_count}, planned: {metrics.planned_count}, "
            f"pseudo: {metrics.pseudo_count}, avg confidence: {metrics.average_confidence:.2f}"
        )
    if manifest.requires_manual_review:
        console.print("[bold yellow]Manual review required:[/bold yellow]")
        for reason in manifest.review_reasons:
            console.print(f"  - {reason}")


async def _init_db(settings: Settings) -> None:
    engine = create_engine(settings)
    try:
        await init_db(engine)
    finally:
        await close_db(engine)


@app.command("init-db")
def init_db_command() -> None:
    """Create database tables (development; use Alembic in production)."""
    settings = _load_settings()
    asyncio.run(_init_db(settings))
    console.print("[green]Database tables created[/green]")


@app.command()
def plan(
    pages: int = typer.Argument(..., help="Total pages in the document"),
    chunk_size: Optional[int] = typer.Option(None, help="Pages per chunk"),
) -> None:
    """Show the chunk plan for a document without processing it."""
    settings = Settings()
    try:
        chunks = plan_chunks(pages, chunk_size or settings.chunk_size)
    except EncounterDiscoveryError as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=1)

    table = Table(title=f"{pages} pages in {len(chunks)} chunk(s)")
    table.add_column("Chunk", justify="right")
    table.add_column("Pages")
    table.add_column("Position")
    for chunk in chunks:
        if chunk.is_single:
            position = "single"
        elif chunk.is_first:
            position = "first"
        elif chunk.is_last:
            position = "last"
        else:
            position = "middle"
        table.add_row(str(chunk.chunk_number), f"{chunk.start_page}-{chunk.end_page}", position)
    console.print(table)


if __name__ == "__main__":
    app()
