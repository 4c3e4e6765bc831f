import asyncio

import click
from rich.console import Console
from rich.table import Table

from chatrecall.config import Config, get_config
from chatrecall.constants import DEFAULT_SEARCH_LIMIT
from chatrecall.errors import RecallError
from chatrecall.logging import configure_logging, uvicorn_log_config

console = Console()


def _require_config(ctx) -> Config:
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        raise SystemExit(1)
    return ctx.obj["config"]


async def _with_runtime(config: Config, fn):
    from chatrecall.server.runtime import Runtime

    runtime = Runtime(config=config)
    await runtime.connect()
    try:
        return await fn(runtime)
    finally:
        await runtime.close()


def _run(config: Config, fn):
    try:
        return asyncio.run(_with_runtime(config, fn))
    except RecallError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)


@click.group(invoke_without_command=True)
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level for console output",
)
@click.pass_context
def main(ctx, log_level: str):
    """chatrecall - search and relate your AI conversation history"""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = get_config()
    except ValueError as e:
        # Only fail if we're running a command that needs config
        ctx.obj["config_error"] = str(e)
    config = ctx.obj.get("config")
    configure_logging(log_level, json_output=config.log_json if config else False)

    if ctx.invoked_subcommand is None:
        console.print("[bold]chatrecall[/bold] - search and relate your AI conversation history\n")
        console.print("Run [cyan]chatrecall serve[/cyan] to start the server.")
        console.print("\nUse [cyan]chatrecall --help[/cyan] for all commands.")


@main.command()
@click.pass_context
def status(ctx):
    """Show database and index status."""
    config = _require_config(ctx)
    info = _run(config, lambda runtime: runtime.get_status())

    console.print("[bold]chatrecall status[/bold]")
    console.print()
    console.print(f"Database: [cyan]{config.conversations_db_path}[/cyan]")
    console.print(f"Embedding model: {info['embedding_model']}")
    console.print(f"Conversations: {info['conversations']}")
    for state, count in sorted(info["embedding_status"].items()):
        console.print(f"  {state}: {count}")
    console.print(f"Relationships: {info['relationships']}")


@main.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8000, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.pass_context
def serve(ctx, host: str, port: int, reload: bool):
    """Start the chatrecall API server."""
    config = _require_config(ctx)

    import uvicorn

    console.print(f"[bold]chatrecall server[/bold] starting on http://{host}:{port}")
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    console.print()

    uvicorn.run(
        "chatrecall.server.app:app",
        host=host,
        port=port,
        reload=reload,
        log_config=uvicorn_log_config(config.log_json),
    )


@main.command()
@click.argument("query")
@click.option("--project", default=None, help="Only conversations from this project")
@click.option("--platform", default=None, help="Only conversations from this platform")
@click.option("--limit", default=DEFAULT_SEARCH_LIMIT, show_default=True, help="Maximum results")
@click.pass_context
def search(ctx, query: str, project: str | None, platform: str | None, limit: int):
    """Hybrid keyword + semantic search over conversations."""
    from chatrecall.search.types import SearchFilters

    config = _require_config(ctx)
    filters = SearchFilters(project=project, platform=platform)
    response = _run(config, lambda runtime: runtime.index.search(query, filters, limit))

    if response.partial:
        missing = ", ".join(f"{source} ({reason})" for source, reason in response.degraded.items())
        console.print(f"[yellow]Partial results[/yellow], unavailable: {missing}")
    if not response.results:
        console.print("No matching conversations.")
        return

    table = Table("#", "conversation", "score", "sources", "started")
    for i, r in enumerate(response.results, start=1):
        table.add_row(
            str(i),
            r.record_id,
            f"{r.fused_score:.4f}",
            "+".join(sorted(r.contributing_sources)),
            r.started_at.date().isoformat() if r.started_at else "-",
        )
    console.print(table)


@main.command()
@click.argument("conversation_id")
@click.option("--min-similarity", type=float, default=None, help="Neighbor similarity floor")
@click.option("--max-neighbors", type=int, default=None, help="Neighbors to classify")
@click.pass_context
def relate(ctx, conversation_id: str, min_similarity: float | None, max_neighbors: int | None):
    """Build relationship edges for one conversation."""
    config = _require_config(ctx)
    edges = _run(
        config,
        lambda runtime: runtime.graph.build_relationships(conversation_id, min_similarity, max_neighbors),
    )

    if not edges:
        console.print("No neighbors above the similarity floor.")
        return

    table = Table("target", "type", "similarity")
    for edge in edges:
        table.add_row(edge.target_id, str(edge.relationship_type), f"{edge.similarity_score:.3f}")
    console.print(table)


@main.command()
@click.option("--limit", type=int, default=None, help="Conversations to process (default from config)")
@click.option("--min-similarity", type=float, default=None, help="Neighbor similarity floor")
@click.pass_context
def batch(ctx, limit: int | None, min_similarity: float | None):
    """Build relationships for embedded conversations without edges."""
    config = _require_config(ctx)

    with console.status("Building relationships..."):
        summary = _run(
            config,
            lambda runtime: runtime.graph.batch_build(limit or config.batch_limit, min_similarity),
        )

    console.print(
        f"[green]✓[/green] success={summary.success} failed={summary.failed} "
        f"skipped={summary.skipped} edges={summary.edges_created}"
    )
    if summary.failed:
        raise SystemExit(1)


@main.command()
@click.option("--limit", type=int, default=None, help="Conversations to embed (default from config)")
@click.pass_context
def embed(ctx, limit: int | None):
    """Embed conversations that are pending or whose embedding failed."""
    config = _require_config(ctx)

    with console.status("Embedding conversations..."):
        summary = _run(config, lambda runtime: runtime.index.embed_pending(limit or config.batch_limit))

    console.print(f"[green]✓[/green] embedded={summary.embedded} failed={summary.failed}")
    if summary.failed:
        raise SystemExit(1)


@main.command()
@click.pass_context
def mcp(ctx):
    """Run the MCP server over stdio."""
    _require_config(ctx)

    from chatrecall.mcp_server import run_stdio

    asyncio.run(run_stdio())


if __name__ == "__main__":
    main()
