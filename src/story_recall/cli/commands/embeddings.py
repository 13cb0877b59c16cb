"""Embedding status, refresh and search commands."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from story_recall import db
from story_recall.cli.app import app, search_app
from story_recall.config import ConfigManager, StoryRecallConfig
from story_recall.repository.embedding_provider_factory import create_embedding_provider
from story_recall.repository.entity_repository import EntityRepository
from story_recall.repository.semantic_errors import StoryRecallError
from story_recall.schemas.embedding import DocumentRefreshReport
from story_recall.schemas.search import SearchResult
from story_recall.services.retrieval_service import RetrievalService
from story_recall.sync.sync_orchestrator import SyncOrchestrator

console = Console()


@asynccontextmanager
async def retrieval_service(app_config: StoryRecallConfig) -> AsyncIterator[RetrievalService]:
    """Open the database and build a service; connections are closed on exit."""
    try:
        _, session_maker = await db.get_or_create_db(
            db_path=app_config.database_path,
        )
        orchestrator = SyncOrchestrator(
            session_maker,
            create_embedding_provider(app_config),
            max_workers=app_config.sync_max_workers,
            provider_timeout=app_config.embedding_timeout,
            retry_delays=app_config.sync_retry_delays,
            document_deadline=app_config.sync_document_deadline,
        )
        try:
            yield RetrievalService.from_config(session_maker, orchestrator, app_config)
        finally:
            await orchestrator.shutdown()
    finally:
        await db.shutdown_db()


def _print_report(report: DocumentRefreshReport) -> None:
    table = Table(title=f"Embedding refresh: {report.novel_id}")
    table.add_column("Kind", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("Stale", justify="right")
    table.add_column("Updated", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Not processed", justify="right", style="yellow")
    for label, counts in (("cards", report.cards), ("summaries", report.summaries)):
        table.add_row(
            label,
            str(counts.total),
            str(counts.stale),
            str(counts.updated),
            str(counts.failed),
            str(counts.not_processed),
        )
    console.print(table)
    if report.deadline_exceeded:
        console.print("[yellow]Deadline reached before all entities were processed.[/yellow]")


def _print_results(title: str, results: List[SearchResult]) -> None:
    if not results:
        console.print(f"[yellow]No matches for {title}[/yellow]")
        return

    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Match", style="magenta")
    table.add_column("Item", style="cyan")
    table.add_column("Preview")
    for result in results:
        if result.kind.value == "card":
            label = f"{result.name} ({result.category})"
            preview = result.description or ""
        else:
            label = f"Ch. {result.chapter_number} {result.chapter_title or ''}".strip()
            preview = result.summary or ""
        pin = " *" if result.is_pinned else ""
        table.add_row(
            str(result.rank), f"{result.score:.3f}", result.match_type.value, label + pin, preview
        )
    console.print(table)


@app.command()
def status(novel_id: str = typer.Argument(..., help="Novel id")) -> None:
    """Show how many cards and summaries have a fresh embedding."""
    app_config = ConfigManager().config

    async def _status():
        async with retrieval_service(app_config) as service:
            return await service.embedding_status(novel_id)

    try:
        result = asyncio.run(_status())
    except StoryRecallError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Embedding status: {novel_id}")
    table.add_column("Kind", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("With embedding", justify="right", style="green")
    table.add_column("Stale", justify="right", style="yellow")
    table.add_column("Coverage", justify="right")
    for label, kind_status in (("cards", result.cards), ("summaries", result.summaries)):
        table.add_row(
            label,
            str(kind_status.total),
            str(kind_status.with_embedding),
            str(kind_status.stale),
            f"{kind_status.percentage}%",
        )
    console.print(table)


@app.command()
def refresh(
    novel: Optional[str] = typer.Option(
        None, "--novel", "-n", help="Refresh one novel (default: all novels)"
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Drop stored embeddings first and regenerate everything"
    ),
    deadline: Optional[float] = typer.Option(
        None, "--deadline", help="Seconds allowed per novel before remaining work is cut off"
    ),
) -> None:
    """Bring embeddings up to date for one or all novels.

    Examples:
        story-recall refresh                  # every novel, stale entities only
        story-recall refresh -n NOVEL_ID      # one novel
        story-recall refresh -n NOVEL_ID -f   # drop and rebuild one novel
    """
    app_config = ConfigManager().config

    async def _refresh() -> list[DocumentRefreshReport]:
        async with retrieval_service(app_config) as service:
            if novel:
                novel_ids = [novel]
            else:
                novel_ids = await EntityRepository(service.session_maker).list_novel_ids()
            reports = []
            for novel_id in novel_ids:
                console.print(f"  Refreshing [cyan]{novel_id}[/cyan]...")
                if force:
                    report = await service.reindex_document(novel_id, deadline=deadline)
                else:
                    report = await service.refresh_document(novel_id, deadline=deadline)
                reports.append(report)
            return reports

    try:
        reports = asyncio.run(_refresh())
    except StoryRecallError as e:
        logger.error(f"Embedding refresh failed: {e}")
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if not reports:
        console.print("[yellow]No novels found.[/yellow]")
        return
    for report in reports:
        _print_report(report)


@search_app.command("cards")
def search_cards(
    novel_id: str = typer.Argument(..., help="Novel id"),
    query: str = typer.Argument(..., help="Text to search for"),
    top_k: Optional[int] = typer.Option(None, "--top-k", "-k", min=1, help="Maximum results"),
    threshold: Optional[float] = typer.Option(
        None, "--threshold", "-t", min=0.0, max=1.0, help="Minimum score"
    ),
    category: Optional[List[str]] = typer.Option(
        None, "--category", "-c", help="Restrict to a card category (repeatable)"
    ),
) -> None:
    """Search the setting cards of a novel."""
    app_config = ConfigManager().config

    async def _search():
        async with retrieval_service(app_config) as service:
            return await service.search_cards(
                novel_id, query, top_k=top_k, threshold=threshold, categories=category or None
            )

    try:
        results = asyncio.run(_search())
    except StoryRecallError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    _print_results(f"Cards matching '{query}'", results)


@search_app.command("summaries")
def search_summaries(
    novel_id: str = typer.Argument(..., help="Novel id"),
    query: str = typer.Argument(..., help="Text to search for"),
    top_k: Optional[int] = typer.Option(None, "--top-k", "-k", min=1, help="Maximum results"),
    threshold: Optional[float] = typer.Option(
        None, "--threshold", "-t", min=0.0, max=1.0, help="Minimum score"
    ),
    before_chapter: Optional[int] = typer.Option(
        None, "--before-chapter", "-b", help="Only chapters numbered below this"
    ),
) -> None:
    """Search the chapter summaries of a novel."""
    app_config = ConfigManager().config

    async def _search():
        async with retrieval_service(app_config) as service:
            return await service.search_summaries(
                novel_id,
                query,
                top_k=top_k,
                threshold=threshold,
                before_chapter_number=before_chapter,
            )

    try:
        results = asyncio.run(_search())
    except StoryRecallError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    _print_results(f"Summaries matching '{query}'", results)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
) -> None:  # pragma: no cover
    """Run the HTTP API with uvicorn."""
    import uvicorn

    console.print(f"Serving story-recall API on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run("story_recall.api.app:app", host=host, port=port, log_config=None)
