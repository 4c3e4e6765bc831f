import re

import pytest

from chatrecall.constants import DEFAULT_SEARCH_LIMIT
from chatrecall.mcp_server import HANDLERS, TOOLS, find_related_conversations, search_conversations
from chatrecall.server.runtime import Runtime
from tests.conftest import days_ago


def test_every_tool_has_a_handler():
    assert {tool.name for tool in TOOLS} == set(HANDLERS)


def test_search_limit_default_matches_handler():
    schema = next(tool.inputSchema for tool in TOOLS if tool.name == "search_conversations")
    assert schema["properties"]["limit"]["default"] == DEFAULT_SEARCH_LIMIT


@pytest.mark.asyncio
async def test_search_without_limit_uses_default(test_runtime: Runtime):
    for i in range(DEFAULT_SEARCH_LIMIT + 5):
        await test_runtime.conversations.upsert(
            conversation_id=f"extra-{i}", content=f"MCP server note {i}", started_at=days_ago(i)
        )

    text = await search_conversations(test_runtime, {"query": "MCP server"})
    numbered = [line for line in text.splitlines() if re.match(r"\d+\. ", line)]
    assert len(numbered) == DEFAULT_SEARCH_LIMIT


@pytest.mark.asyncio
async def test_search_conversations(test_runtime: Runtime):
    text = await search_conversations(test_runtime, {"query": "MCP server", "project": "proj", "limit": 5})

    assert "(early)" in text
    assert "(late)" in text
    assert "other" not in text
    assert "project=proj" in text


@pytest.mark.asyncio
async def test_search_no_results(test_runtime: Runtime):
    text = await search_conversations(test_runtime, {"query": "kubernetes", "platform": "chatgpt"})
    assert text == "No matching conversations found."


@pytest.mark.asyncio
async def test_find_related_conversations(test_runtime: Runtime):
    assert "No related conversations" in await find_related_conversations(test_runtime, {"conversation_id": "late"})

    await test_runtime.graph.build_relationships("late")
    text = await find_related_conversations(test_runtime, {"conversation_id": "late"})

    assert text.startswith("- early builds_on")
    assert "project=proj" in text
