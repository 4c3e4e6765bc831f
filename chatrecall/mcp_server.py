"""
chatrecall MCP Server

Exposes conversation search and relationship lookup as MCP tools so an
assistant (Claude Desktop, Claude Code, Cursor, ...) can pull relevant past
conversations into context.

    # stdio
    chatrecall mcp
"""

import sys

from mcp.server import Server
from mcp.types import TextContent, Tool

from chatrecall.constants import DEFAULT_SEARCH_LIMIT, MAX_SEARCH_LIMIT, RELATED_LOOKUP_MIN_SIMILARITY
from chatrecall.errors import RecallError
from chatrecall.logging import get_logger
from chatrecall.search.types import SearchFilters
from chatrecall.server.runtime import Runtime
from chatrecall.utils import truncate

_logger = get_logger(__name__)

PREVIEW_CHARS = 300

TOOLS = [
    Tool(
        name="search_conversations",
        description=(
            "Search AI conversation history with combined keyword and semantic matching. "
            "Returns the most relevant past conversations."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to look for, e.g. 'mcp server configuration'"},
                "project": {"type": "string", "description": "Only conversations from this project"},
                "platform": {"type": "string", "description": "Only conversations from this platform"},
                "limit": {"type": "integer", "minimum": 1, "maximum": MAX_SEARCH_LIMIT, "default": DEFAULT_SEARCH_LIMIT},
            },
            "required": ["query"],
        },
    ),
    Tool(
        name="find_related_conversations",
        description="List conversations linked to a given conversation and how they relate.",
        inputSchema={
            "type": "object",
            "properties": {
                "conversation_id": {"type": "string"},
                "min_similarity": {
                    "type": "number",
                    "minimum": 0,
                    "maximum": 1,
                    "default": RELATED_LOOKUP_MIN_SIMILARITY,
                },
            },
            "required": ["conversation_id"],
        },
    ),
]


async def search_conversations(runtime: Runtime, arguments: dict) -> str:
    filters = SearchFilters(project=arguments.get("project"), platform=arguments.get("platform"))
    limit = min(int(arguments.get("limit") or DEFAULT_SEARCH_LIMIT), MAX_SEARCH_LIMIT)
    response = await runtime.index.search(arguments.get("query", ""), filters, limit)

    if not response.results:
        return "No matching conversations found."

    conversations = {}
    for r in response.results:
        conversations[r.record_id] = await runtime.conversations.get(r.record_id)

    lines = []
    if response.partial:
        missing = ", ".join(f"{source} ({reason})" for source, reason in response.degraded.items())
        lines.append(f"Note: partial results, unavailable: {missing}\n")

    for i, r in enumerate(response.results, start=1):
        conv = conversations.get(r.record_id)
        sources = "+".join(sorted(r.contributing_sources))
        if conv is None:
            lines.append(f"{i}. {r.record_id} [{sources}] score={r.fused_score:.4f}")
            continue
        header = conv.title or truncate(conv.primary_user_text or conv.content, 80)
        lines.append(
            f"{i}. {header} ({conv.id})\n"
            f"   project={conv.project or '-'} platform={conv.platform} "
            f"started={conv.started_at.date().isoformat()} [{sources}] score={r.fused_score:.4f}\n"
            f"   {truncate((conv.primary_user_text or conv.content).replace(chr(10), ' '), PREVIEW_CHARS)}"
        )
    return "\n".join(lines)


async def find_related_conversations(runtime: Runtime, arguments: dict) -> str:
    conversation_id = arguments["conversation_id"]
    min_similarity = float(arguments.get("min_similarity", RELATED_LOOKUP_MIN_SIMILARITY))
    related = await runtime.relationships.related(conversation_id, min_similarity)
    if not related:
        return f"No related conversations recorded for {conversation_id}."
    return "\n".join(
        f"- {r.id} {r.relationship_type} similarity={r.similarity_score:.3f} project={r.project or '-'}"
        for r in related
    )


HANDLERS = {
    "search_conversations": search_conversations,
    "find_related_conversations": find_related_conversations,
}


async def create_server() -> tuple[Server, Runtime]:
    """Create and configure the MCP server backed by a chatrecall Runtime."""
    runtime = Runtime()
    await runtime.connect()

    server = Server("chatrecall")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        handler = HANDLERS.get(name)
        if handler is None:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]
        try:
            text = await handler(runtime, arguments)
        except RecallError as e:
            text = f"Error: {e}"
        except Exception as e:
            _logger.exception("MCP tool execution failed: %s", name)
            text = f"Error executing {name}: {e}"
        return [TextContent(type="text", text=text)]

    return server, runtime


async def run_stdio() -> None:
    """Run the MCP server over stdio transport."""
    from mcp.server.stdio import stdio_server

    server, runtime = await create_server()
    print("chatrecall MCP server starting (stdio)", file=sys.stderr)

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await runtime.close()
