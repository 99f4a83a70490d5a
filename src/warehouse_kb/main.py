import asyncio
from pathlib import Path
from typing import Annotated

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from typer import Argument, Exit, Option, Typer

from .answers.workflow import AnswerEndEvent, AnswerFragmentEvent, AnswerInputEvent
from .config import Settings
from .errors import WarehouseKBError
from .indexing import IngestionPipeline, document_from_file
from .logging_utils import setup_logging
from .models import SearchRequest
from .search.filters import FilterParseError, parse_filter_string, supported_filter_syntax
from .services import build_services

app = Typer(help="Search and question answering over warehouse documents.")

DbPathOption = Annotated[
    str | None,
    Option("--db-path", help="DuckDB file. Defaults to WAREHOUSE_KB_DB_PATH or ~/.warehouse_kb."),
]


async def run_search(
    query: str,
    *,
    filters: str | None = None,
    limit: int = 10,
    threshold: float | None = None,
    with_answer: bool = False,
    db_path: str | None = None,
) -> None:
    console = Console()
    services = build_services(Settings.from_env(db_path=db_path))
    try:
        request = SearchRequest(
            query=query,
            filters=parse_filter_string(filters),
            limit=limit,
            threshold=threshold,
            include_answer=with_answer,
        )
        with console.status(status="Searching..."):
            response = await services.orchestrator.search(request)

        table = Table(title=f"{response.total_count} results ({response.execution_time_ms} ms)")
        table.add_column("#", justify="right")
        table.add_column("Score", justify="right")
        table.add_column("Document")
        table.add_column("Excerpt")
        for position, result in enumerate(response.results, start=1):
            excerpt = result.highlights[0] if result.highlights else result.content[:160]
            table.add_row(str(position), f"{result.score:.3f}", result.document_title, excerpt)
        console.print(table)

        if response.answer is not None:
            console.print(
                Panel(
                    Markdown(response.answer.text),
                    title_align="left",
                    title=f"Answer (confidence {response.answer.confidence:.2f})",
                    border_style="bold green",
                )
            )
        elif with_answer:
            console.print(f"[yellow]No answer: {response.answer_status}[/]")
        if response.suggestions:
            console.print("[bold]Related:[/] " + ", ".join(response.suggestions))
    finally:
        await services.aclose()


async def run_ask(
    question: str,
    *,
    answer_type: str = "qa",
    language: str = "en",
    db_path: str | None = None,
) -> None:
    console = Console()
    services = build_services(Settings.from_env(db_path=db_path))
    try:
        handler = services.answer_workflow().run(
            start_event=AnswerInputEvent(
                query=question, answer_type=answer_type, language=language
            )
        )
        with console.status(status="Looking for relevant documents...") as status:
            async for event in handler.stream_events():
                if isinstance(event, AnswerFragmentEvent):
                    status.stop()
                    console.print(event.content, end="")
            result = await handler
        console.print()

        if not isinstance(result, AnswerEndEvent) or result.status == "failed":
            error = getattr(result, "error", None) or "unknown error"
            console.print(f"[bold red]Answer failed:[/] {error}")
            raise Exit(code=1)
        if result.status == "no_context":
            console.print("[yellow]No relevant documents found for this question.[/]")
            return
        sources = "\n".join(
            f"- {source['title']} ({source['score']:.2f})" for source in result.sources
        )
        console.print(
            Panel(
                Markdown(f"Confidence: {result.confidence:.2f}\n\n{sources}"),
                title_align="left",
                title="Sources",
                border_style="bold cyan",
            )
        )
    finally:
        await services.aclose()


async def run_ingest(
    paths: list[Path],
    *,
    category: str | None = None,
    document_type: str | None = None,
    language: str = "en",
    db_path: str | None = None,
) -> None:
    console = Console()
    services = build_services(Settings.from_env(db_path=db_path))
    pipeline = IngestionPipeline(services.store, embeddings=services.embeddings)
    try:
        for path in paths:
            document, text = document_from_file(
                path, category=category, document_type=document_type, language=language
            )
            result = await pipeline.ingest(document, text)
            console.print(
                f"[green]{path}[/]: {result.chunks_written} chunks, "
                f"{result.embeddings_written} embeddings"
                + (f", [red]{len(result.failed_chunk_ids)} failed[/]" if result.failed_chunk_ids else "")
            )
    finally:
        await services.aclose()


async def run_trending(*, days: int = 7, limit: int = 10, db_path: str | None = None) -> None:
    console = Console()
    services = build_services(Settings.from_env(db_path=db_path))
    try:
        ranked = await services.analytics.trending(days=days, limit=limit)
        if not ranked:
            console.print(f"No searches in the last {days} days.")
            return
        table = Table(title=f"Trending queries (last {days} days)")
        table.add_column("Query")
        table.add_column("Count", justify="right")
        table.add_column("Score", justify="right")
        for item in ranked:
            table.add_row(item.query, str(item.count), f"{item.score:.2f}")
        console.print(table)
    finally:
        await services.aclose()


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except (WarehouseKBError, FilterParseError) as exc:
        Console(stderr=True).print(f"[bold red]Error:[/] {exc}")
        raise Exit(code=1) from exc


@app.callback()
def main() -> None:
    setup_logging()


@app.command()
def search(
    query: Annotated[str, Argument(help="Free-text search query.")],
    filters: Annotated[
        str | None,
        Option("--filters", "-f", help=supported_filter_syntax()),
    ] = None,
    limit: Annotated[int, Option("--limit", "-n", min=1, max=100)] = 10,
    threshold: Annotated[float | None, Option("--threshold", min=0.0, max=1.0)] = None,
    with_answer: Annotated[bool, Option("--answer", help="Also synthesize an answer.")] = False,
    db_path: DbPathOption = None,
) -> None:
    """Semantic search over the knowledge base."""
    _run(
        run_search(
            query,
            filters=filters,
            limit=limit,
            threshold=threshold,
            with_answer=with_answer,
            db_path=db_path,
        )
    )


@app.command()
def ask(
    question: Annotated[str, Argument(help="Question to answer from the documents.")],
    answer_type: Annotated[str, Option("--type", "-t", help="qa, summary, explanation, troubleshooting or safety.")] = "qa",
    language: Annotated[str, Option("--language", "-l")] = "en",
    db_path: DbPathOption = None,
) -> None:
    """Stream a grounded answer."""
    _run(run_ask(question, answer_type=answer_type, language=language, db_path=db_path))


@app.command()
def ingest(
    paths: Annotated[list[Path], Argument(exists=True, dir_okay=False, help=".txt or .md files.")],
    category: Annotated[str | None, Option("--category")] = None,
    document_type: Annotated[str | None, Option("--type")] = None,
    language: Annotated[str, Option("--language", "-l")] = "en",
    db_path: DbPathOption = None,
) -> None:
    """Chunk, store and embed plain-text documents."""
    try:
        _run(
            run_ingest(
                paths,
                category=category,
                document_type=document_type,
                language=language,
                db_path=db_path,
            )
        )
    except ValueError as exc:
        Console(stderr=True).print(f"[bold red]Error:[/] {exc}")
        raise Exit(code=1) from exc


@app.command()
def trending(
    days: Annotated[int, Option("--days", min=1)] = 7,
    limit: Annotated[int, Option("--limit", "-n", min=1)] = 10,
    db_path: DbPathOption = None,
) -> None:
    """Show trending queries."""
    _run(run_trending(days=days, limit=limit, db_path=db_path))


@app.command()
def serve(
    host: Annotated[str, Option("--host")] = "127.0.0.1",
    port: Annotated[int, Option("--port")] = 8000,
) -> None:
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("warehouse_kb.server:app", host=host, port=port)
