"""Command-line interface for storyrag."""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import RagConfig
from .errors import StoryRagError
from .models.chunks import SourceType
from .retrieval.service import KnowledgeBase, create_knowledge_base

console = Console()

app = typer.Typer(
    name="storyrag",
    help="Hybrid retrieval over narrative knowledge bases.",
    add_completion=False,
)

_DB_OPTION = typer.Option(None, "--db", "-d", help="SQLite database path (default: $STORYRAG_DB_PATH)")
_ENV_OPTION = typer.Option(None, "--env-file", help="Path to a .env file")
_PROJECT_OPTION = typer.Option("default", "--project", "-p", help="Project id")


def _load_config(db_path: str | None, env_file: Path | None) -> RagConfig:
    config = RagConfig.from_env(env_file)
    if db_path:
        config.db_path = db_path
    return config


def _run(config: RagConfig, action):
    """Open a knowledge base, run ``action(kb)`` and close it."""

    async def runner():
        async with create_knowledge_base(config) as kb:
            return await action(kb)

    try:
        return asyncio.run(runner())
    except StoryRagError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(code=130)


@app.command()
def index(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text file to index"),
    project: str = _PROJECT_OPTION,
    source_id: str | None = typer.Option(None, "--source-id", "-s", help="Source id (default: file name)"),
    source_type: SourceType = typer.Option(SourceType.NARRATIVE_BLOCK, "--type", "-t", help="Source type"),
    title: str | None = typer.Option(None, "--title", help="Display title"),
    chapter: int | None = typer.Option(None, "--chapter", help="Chapter order, used to sort context"),
    block: int | None = typer.Option(None, "--block", help="Block order within the chapter"),
    db_path: str | None = _DB_OPTION,
    env_file: Path | None = _ENV_OPTION,
):
    """Index (or re-index) a text file as one source."""
    content = path.read_text(encoding="utf-8")
    metadata = {}
    if chapter is not None:
        metadata["chapter_order"] = chapter
    if block is not None:
        metadata["block_order"] = block

    async def action(kb: KnowledgeBase):
        parent_id = await kb.index(
            project, source_id or path.stem, source_type, content, metadata=metadata, title=title
        )
        return parent_id, await kb.stats(project)

    parent_id, counts = _run(_load_config(db_path, env_file), action)
    if parent_id is None:
        console.print("[yellow]File is empty; source removed from the index[/yellow]")
        return
    console.print(
        f"[green]Indexed[/green] {source_id or path.stem} -> parent {parent_id} "
        f"({counts['children']} child chunks in project {project})"
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    project: str = _PROJECT_OPTION,
    limit: int = typer.Option(10, "--limit", "-n", min=1, max=100, help="Number of results"),
    source_type: SourceType | None = typer.Option(None, "--type", "-t", help="Filter by source type"),
    db_path: str | None = _DB_OPTION,
    env_file: Path | None = _ENV_OPTION,
):
    """Run a hybrid search and show the ranked results."""

    async def action(kb: KnowledgeBase):
        return await kb.search(project, query, source_type=source_type, limit=limit)

    results = _run(_load_config(db_path, env_file), action)
    if not results:
        console.print("[dim]No results[/dim]")
        return

    table = Table(title=f"Results for {query!r}")
    table.add_column("#", justify="right")
    table.add_column("Source")
    table.add_column("Type")
    table.add_column("Vector", justify="right")
    table.add_column("Full-text", justify="right")
    table.add_column("RRF", justify="right")
    table.add_column("Rerank", justify="right")
    table.add_column("Match")

    def fmt(score: float | None) -> str:
        return "-" if score is None else f"{score:.3f}"

    for rank, result in enumerate(results, start=1):
        match = (result.matched_content or result.content).replace("\n", " ")
        table.add_row(
            str(rank),
            result.title or result.source_id,
            result.source_type.value,
            fmt(result.vector_score),
            fmt(result.full_text_score),
            fmt(result.rrf_score),
            fmt(result.rerank_score),
            match[:80] + ("..." if len(match) > 80 else ""),
        )
    console.print(table)


@app.command()
def context(
    query: str = typer.Argument(..., help="Search query"),
    project: str = _PROJECT_OPTION,
    limit: int = typer.Option(10, "--limit", "-n", min=1, max=100, help="Number of results"),
    db_path: str | None = _DB_OPTION,
    env_file: Path | None = _ENV_OPTION,
):
    """Print the formatted LLM context for a query."""

    async def action(kb: KnowledgeBase):
        return await kb.build_context(project, query, limit=limit)

    text = _run(_load_config(db_path, env_file), action)
    console.print(Panel(text or "[dim]No context[/dim]", title="Context", border_style="blue"))


@app.command()
def delete(
    source_id: str | None = typer.Argument(None, help="Source id to remove"),
    project: str | None = typer.Option(None, "--project", "-p", help="Remove a whole project instead"),
    db_path: str | None = _DB_OPTION,
    env_file: Path | None = _ENV_OPTION,
):
    """Remove a source (or, with --project, a whole project) from the index."""
    if not source_id and not project:
        console.print("[red]Give a source id or --project[/red]")
        raise typer.Exit(code=2)

    async def action(kb: KnowledgeBase):
        if source_id:
            return await kb.delete(source_id)
        return await kb.delete_project(project)

    deleted = _run(_load_config(db_path, env_file), action)
    console.print(f"Deleted {deleted} chunks")


@app.command()
def stats(
    project: str = _PROJECT_OPTION,
    db_path: str | None = _DB_OPTION,
    env_file: Path | None = _ENV_OPTION,
):
    """Show chunk counts for a project."""

    async def action(kb: KnowledgeBase):
        return await kb.stats(project)

    data = _run(_load_config(db_path, env_file), action)
    table = Table(title=f"Project {project}")
    table.add_column("Source type")
    table.add_column("Parents", justify="right")
    table.add_column("Children", justify="right")
    for name, counts in sorted(data["by_source_type"].items()):
        table.add_row(name, str(counts["parents"]), str(counts["children"]))
    table.add_row("[bold]total[/bold]", str(data["parents"]), str(data["children"]))
    console.print(table)


@app.command()
def health(
    db_path: str | None = _DB_OPTION,
    env_file: Path | None = _ENV_OPTION,
):
    """Show dependency health: circuit breakers, reranker and full-text language."""

    async def action(kb: KnowledgeBase):
        return {"health": kb.health(), "caches": kb.cache_stats()}

    data = _run(_load_config(db_path, env_file), action)
    status = data["health"]["status"]
    style = "green" if status == "ok" else "yellow"
    console.print(
        Panel(
            json.dumps(data, indent=2, ensure_ascii=False, default=str),
            title=f"[{style}]{status}[/{style}]",
            border_style=style,
        )
    )


if __name__ == "__main__":
    app()
