"""
MCP stdio server for moments: experiential journal tools for AI agents.

Exposes the journal's dispatch table as MCP tools so a local agent can
record experiences and recall them by filter or meaning.

Usage:
    moments mcp                     # stdio server (via CLI)

All journal calls are serialized through a single asyncio.Lock; the
journal file expects one writer at a time.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Annotated, Any, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .api import Journal
from .tools import dispatch

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "moments",
    instructions=(
        "An experiential journal. Record moments in the first person with "
        "phenomenological qualities (embodied, focus, mood, purpose, space, "
        "time, presence), then recall them by who, when, or meaning."
    ),
)

_journal: Optional[Journal] = None
_lock = asyncio.Lock()


def _get_journal() -> Journal:
    """Lazy-init the Journal (respects MOMENTS_STORE_PATH env).

    Must be called inside ``async with _lock``.
    """
    global _journal
    if _journal is None:
        store_path = os.environ.get("MOMENTS_STORE_PATH")
        _journal = Journal(Path(store_path) if store_path else None)
    return _journal


def _dispatch(operation: str, arguments: dict[str, Any]) -> dict[str, Any]:
    return dispatch(_get_journal(), operation, arguments)


async def _run(operation: str, arguments: dict[str, Any]) -> str:
    # Blocking file and network I/O runs in a worker thread
    async with _lock:
        payload = await asyncio.to_thread(_dispatch, operation, arguments)
    return json.dumps(payload, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)
_WRITE = ToolAnnotations(destructiveHint=False, idempotentHint=False)
_IDEMPOTENT = ToolAnnotations(idempotentHint=True, destructiveHint=False)
_DESTRUCTIVE = ToolAnnotations(destructiveHint=True, idempotentHint=False)

_QUALITIES_HELP = (
    'Quality signature: tag -> description in the experiencer\'s voice, or false. '
    'Tags: embodied[.thinking|.sensing], focus[.narrow|.broad], mood[.open|.closed], '
    'purpose[.goal|.wander], space[.here|.there], time[.past|.future], '
    'presence[.individual|.collective]. Example: {"mood.closed": "tight in my chest"}'
)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description="Record an experience. Returns the new record.",
    annotations=_WRITE,
)
async def remember(
    content: Annotated[str, Field(description="What was experienced, in first person.")],
    who: Annotated[Optional[str | list[str]], Field(
        description='Experiencer name or names (default "self").',
    )] = None,
    qualities: Annotated[Optional[dict[str, str | bool]], Field(description=_QUALITIES_HELP)] = None,
    reflects: Annotated[Optional[list[str]], Field(
        description="Ids of earlier records this one reflects on.",
    )] = None,
    processing: Annotated[Optional[str], Field(
        description="When it was written: during, right-after, long-after, crafted.",
    )] = None,
    perspective: Annotated[Optional[str], Field(description='Point of view (default "I").')] = None,
    occurred: Annotated[Optional[str], Field(
        description="When it happened, if not now (ISO date or datetime).",
    )] = None,
    context: Annotated[Optional[str], Field(description="Situational context.")] = None,
) -> str:
    """Record an experience."""
    return await _run("create", {
        "content": content, "who": who, "qualities": qualities, "reflects": reflects,
        "processing": processing, "perspective": perspective,
        "occurred": occurred, "context": context,
    })


@mcp.tool(
    description=(
        "Search experiences by keyword, meaning, and structured filters. "
        "Falls back to filter-only results when semantic search is unavailable; "
        "debug explains why."
    ),
    annotations=_READ_ONLY,
)
async def recall(
    query: Annotated[Optional[str], Field(description="Keyword query.")] = None,
    semantic_query: Annotated[Optional[str], Field(description="Text to match by meaning.")] = None,
    filters: Annotated[Optional[dict[str, Any]], Field(
        description=(
            "Structured filters: who, time_range, system_time_range "
            '(date, "P7D", or {"start", "end"}), perspective, processing, '
            'qualities (tags, or an expression such as {"mood": {"present": false}} '
            "with $and/$or/$not), reflects (record id)."
        ),
    )] = None,
    sort_by: Annotated[str, Field(description='"relevance", "created" or "occurred".')] = "relevance",
    group_by: Annotated[Optional[str], Field(
        description='Group results by "day", "week", "month" or "experiencer".',
    )] = None,
    limit: Annotated[int, Field(description="Maximum results.")] = 10,
    offset: Annotated[int, Field(description="Results to skip.")] = 0,
    id: Annotated[Optional[str], Field(description="Fetch one record by id instead.")] = None,
) -> str:
    """Search experiences."""
    if id:
        return await _run("get", {"id": id})
    return await _run("search", {
        "query": query, "semantic_query": semantic_query, "filters": filters,
        "sort_by": sort_by, "limit": limit, "offset": offset, "group_by": group_by,
    })


@mcp.tool(
    description="Change fields of an existing experience. Unchanged fields are kept.",
    annotations=_IDEMPOTENT,
)
async def reconsider(
    id: Annotated[str, Field(description="Record id.")],
    content: Annotated[Optional[str], Field(description="New content.")] = None,
    who: Annotated[Optional[str | list[str]], Field(description="New experiencer(s).")] = None,
    qualities: Annotated[Optional[dict[str, str | bool]], Field(description=_QUALITIES_HELP)] = None,
    reflects: Annotated[Optional[list[str]], Field(description="New reflects list.")] = None,
    processing: Annotated[Optional[str], Field(description="New processing level.")] = None,
    perspective: Annotated[Optional[str], Field(description="New perspective.")] = None,
    context: Annotated[Optional[str], Field(description="New context.")] = None,
) -> str:
    """Update an experience."""
    changes = {
        "content": content, "who": who, "qualities": qualities, "reflects": reflects,
        "processing": processing, "perspective": perspective, "context": context,
    }
    return await _run("update", {"id": id, **{k: v for k, v in changes.items() if v is not None}})


@mcp.tool(
    description="Permanently delete an experience and its embedding.",
    annotations=_DESTRUCTIVE,
)
async def release(
    id: Annotated[str, Field(description="Record id to delete.")],
) -> str:
    """Delete an experience."""
    return await _run("delete", {"id": id})


@mcp.tool(
    description="Re-embed experiences (all, or only those missing a vector).",
    annotations=_IDEMPOTENT,
)
async def reembed(
    only_missing: Annotated[bool, Field(description="Skip records that already have a vector.")] = True,
) -> str:
    """Re-embed experiences."""
    return await _run("reembed", {"only_missing": only_missing})


@mcp.tool(
    description="Journal status: record counts, embedding provider, vector store.",
    annotations=_READ_ONLY,
)
async def status() -> str:
    """Journal status."""
    return await _run("status", {})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Run the MCP stdio server."""
    import signal
    # The stdio reader shields its blocking readline from cancellation, so
    # the first Ctrl+C would otherwise hang; exit immediately instead.
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
