"""
CLI interface for the experiential journal.

Usage:
    moments add "anxious about tomorrow" --who Ava -q mood=tight -q time.future="the interview"
    moments search --semantic "worry" --who Ava
    moments get mom_1a2b3c4d5e6f
"""

import atexit
import json
import os
import signal
import threading
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from . import __version__
from .api import Journal
from .config import get_default_store_path, load_or_create_config
from .errors import JournalError, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .qualities import present_qualities
from .search import parse_time_bound
from .types import Record, smart_truncate

# Set MOMENTS_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MOMENTS_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        print(f"moments {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


app = typer.Typer(
    name="moments",
    help="Experiential journal with quality tags and semantic recall.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="MOMENTS_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Experiential journal with quality tags and semantic recall."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

WhoOption = Annotated[
    Optional[list[str]],
    typer.Option("--who", "-w", help="Experiencer name (repeatable)"),
]

QualityOption = Annotated[
    Optional[list[str]],
    typer.Option("--quality", "-q", help="Quality as tag=description or tag=false (repeatable)"),
]

LimitOption = Annotated[
    int,
    typer.Option("--limit", "-n", help="Maximum results"),
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_journal() -> Journal:
    """Open the journal, handling errors gracefully."""
    try:
        journal = Journal(_store_override)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(journal.close)
    return journal


def _fail(e: Exception) -> None:
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(1)


def _parse_qualities(items: Optional[list[str]]) -> Optional[dict[str, Any]]:
    """Parse tag=description list to a quality signature."""
    if not items:
        return None
    parsed: dict[str, Any] = {}
    for item in items:
        if "=" not in item:
            typer.echo(f"Error: Invalid quality '{item}'. Use tag=description", err=True)
            raise typer.Exit(1)
        tag, value = item.split("=", 1)
        parsed[tag.strip()] = False if value.strip().lower() == "false" else value
    return parsed


def _who_value(who: Optional[list[str]]) -> Optional[str | list[str]]:
    if not who:
        return None
    return who[0] if len(who) == 1 else who


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _format_record(record: Record) -> str:
    lines = [
        f"id:          {record.id}",
        f"created:     {record.created}",
        f"who:         {', '.join(record.who_list)}",
        f"processing:  {record.processing}",
        f"perspective: {record.perspective}",
    ]
    if record.occurred:
        lines.append(f"occurred:    {record.occurred}")
    if record.context:
        lines.append(f"context:     {record.context}")
    for tag in present_qualities(record.qualities):
        lines.append(f"  {tag}: {record.qualities[tag]}")
    if record.reflects:
        lines.append(f"reflects:    {', '.join(record.reflects)}")
    lines.append("")
    lines.append(record.content)
    return "\n".join(lines)


def _summary_line(record: Record, score: Optional[float] = None, snippet: Optional[str] = None) -> str:
    score_part = f"[{score:.3f}] " if score is not None else ""
    text = snippet if snippet is not None else smart_truncate(record.content, 80)
    return f"{record.id}  {record.created[:10]}  {score_part}{', '.join(record.who_list)}: {text}"


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    content: Annotated[str, typer.Argument(help="What was experienced")],
    who: WhoOption = None,
    quality: QualityOption = None,
    reflects: Annotated[Optional[list[str]], typer.Option(
        "--reflects", "-r", help="Id of a record this one reflects on (repeatable)",
    )] = None,
    processing: Annotated[Optional[str], typer.Option(
        "--processing", "-p", help="during | right-after | long-after | crafted",
    )] = None,
    perspective: Annotated[Optional[str], typer.Option(help="Point of view (default I)")] = None,
    occurred: Annotated[Optional[str], typer.Option(help="When it happened (ISO date)")] = None,
    context: Annotated[Optional[str], typer.Option(help="Situational context")] = None,
):
    """
    Record an experience.

    \b
    Examples:
        moments add "the room went quiet" -q mood.closed="held my breath"
        moments add "looking back, it was fine" -r mom_1a2b3c4d5e6f -p long-after
    """
    journal = _get_journal()
    try:
        record_id = journal.create(
            content,
            who=_who_value(who),
            qualities=_parse_qualities(quality),
            reflects=reflects,
            processing=processing,
            perspective=perspective,
            occurred=occurred,
            context=context,
        )
    except JournalError as e:
        _fail(e)
    if _json_output:
        _echo_json(journal.get(record_id).to_dict())
    else:
        typer.echo(record_id)


@app.command()
def get(
    id: Annotated[str, typer.Argument(help="Record id")],
):
    """Show one record."""
    journal = _get_journal()
    try:
        record = journal.get(id)
    except JournalError as e:
        _fail(e)
    if _json_output:
        _echo_json(record.to_dict())
    else:
        typer.echo(_format_record(record))


@app.command()
def update(
    id: Annotated[str, typer.Argument(help="Record id")],
    content: Annotated[Optional[str], typer.Option("--content", "-c", help="New content")] = None,
    who: WhoOption = None,
    quality: QualityOption = None,
    processing: Annotated[Optional[str], typer.Option("--processing", "-p")] = None,
    perspective: Annotated[Optional[str], typer.Option()] = None,
    context: Annotated[Optional[str], typer.Option()] = None,
):
    """Change fields of a record. Qualities given replace the whole signature."""
    changes: dict[str, Any] = {
        "content": content,
        "who": _who_value(who),
        "qualities": _parse_qualities(quality),
        "processing": processing,
        "perspective": perspective,
        "context": context,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        typer.echo("Error: Nothing to update", err=True)
        raise typer.Exit(1)
    journal = _get_journal()
    try:
        record = journal.update(id, **changes)
    except JournalError as e:
        _fail(e)
    if _json_output:
        _echo_json(record.to_dict())
    else:
        typer.echo(f"Updated {record.id}")


@app.command()
def delete(
    id: Annotated[str, typer.Argument(help="Record id")],
):
    """Delete a record and its embedding."""
    journal = _get_journal()
    try:
        journal.delete(id)
    except JournalError as e:
        _fail(e)
    typer.echo(f"Released {id}")


@app.command("list")
def list_records(
    who: WhoOption = None,
    since: Annotated[Optional[str], typer.Option(help="Created on or after (ISO date or duration like P7D)")] = None,
    until: Annotated[Optional[str], typer.Option(help="Created on or before (ISO date)")] = None,
    limit: LimitOption = 20,
):
    """List records, oldest first."""
    journal = _get_journal()
    try:
        created_from = parse_time_bound(since) if since else None
        created_to = parse_time_bound(until, end=True) if until else None
        records = []
        for record in journal.list(who=who, created_from=created_from, created_to=created_to):
            records.append(record)
            if len(records) >= limit:
                break
    except JournalError as e:
        _fail(e)
    if _json_output:
        _echo_json([r.to_dict() for r in records])
        return
    for record in records:
        typer.echo(_summary_line(record))


@app.command()
def search(
    query: Annotated[Optional[str], typer.Argument(help="Keyword query")] = None,
    semantic: Annotated[Optional[str], typer.Option(
        "--semantic", "-S", help="Rank by meaning against this text",
    )] = None,
    who: WhoOption = None,
    since: Annotated[Optional[str], typer.Option(
        help="Occurred since (ISO date, or duration like P7D)",
    )] = None,
    until: Annotated[Optional[str], typer.Option(help="Occurred until (ISO date)")] = None,
    quality: Annotated[Optional[list[str]], typer.Option(
        "--quality", "-q", help="Require a quality tag (repeatable)",
    )] = None,
    without: Annotated[Optional[list[str]], typer.Option(
        "--without", "-x", help="Exclude records with this quality tag (repeatable)",
    )] = None,
    processing: Annotated[Optional[str], typer.Option("--processing", "-p")] = None,
    sort: Annotated[str, typer.Option("--sort", help="relevance, created or occurred")] = "relevance",
    group: Annotated[Optional[str], typer.Option(
        "--group", "-g", help="Group by day, week, month or experiencer",
    )] = None,
    limit: LimitOption = 10,
    offset: Annotated[int, typer.Option(help="Results to skip")] = 0,
    debug: Annotated[bool, typer.Option("--debug", help="Show search diagnostics")] = False,
):
    """
    Search records by keyword, meaning, and filters.

    \b
    Examples:
        moments search "interview"
        moments search --semantic "feeling stuck" --who Ava --since P30D
        moments search -q mood.closed --sort created
        moments search -x mood --group week
    """
    filters: dict[str, Any] = {}
    if who:
        filters["who"] = who
    if since or until:
        filters["time_range"] = {"start": since, "end": until}
    if without:
        # Required tags and excluded tags must all hold
        terms = [{tag: {"present": True}} for tag in quality or []]
        terms += [{tag: {"present": False}} for tag in without]
        filters["qualities"] = {"$and": terms}
    elif quality:
        filters["qualities"] = quality
    if processing:
        filters["processing"] = processing

    journal = _get_journal()
    try:
        response = journal.search(
            query=query,
            semantic_query=semantic,
            filters=filters,
            sort_by=sort,
            limit=limit,
            offset=offset,
            group_by=group,
        )
    except JournalError as e:
        _fail(e)

    if _json_output:
        _echo_json(response.to_dict())
        return
    if not response.results:
        typer.echo("No results found.")
    if response.groups is not None:
        for bucket in response.groups:
            typer.echo(f"{bucket.label} ({bucket.count})")
            for result in bucket.results:
                typer.echo("  " + _summary_line(result.record, result.relevance, result.snippet))
    else:
        for result in response.results:
            typer.echo(_summary_line(result.record, result.relevance, result.snippet))
    if debug or (semantic and not response.debug.get("semantic_ranked")):
        reason = response.debug.get("degraded")
        if reason:
            typer.echo(f"(semantic ranking skipped: {reason})", err=True)
    if debug:
        typer.echo(json.dumps(response.debug, indent=2), err=True)


@app.command()
def reembed(
    only_missing: Annotated[bool, typer.Option(
        "--missing", help="Only records without an embedding",
    )] = False,
    delay: Annotated[Optional[float], typer.Option(
        help="Seconds between provider calls (default from config)",
    )] = None,
):
    """Re-embed records with the configured provider.

    Ctrl+C stops after the current record; a second Ctrl+C aborts.
    """
    journal = _get_journal()
    cancel = threading.Event()

    def progress(done: int, total: int, id: str) -> None:
        if not _json_output:
            typer.echo(f"\r{done}/{total} {id}", nl=False, err=True)

    def interrupt(signum, frame) -> None:
        if cancel.is_set():
            # Second Ctrl+C aborts immediately
            raise KeyboardInterrupt
        cancel.set()

    # Signal handlers can only be installed from the main thread
    in_main = threading.current_thread() is threading.main_thread()
    previous = signal.signal(signal.SIGINT, interrupt) if in_main else None
    try:
        result = journal.reembed(delay=delay, cancel=cancel, only_missing=only_missing, on_progress=progress)
    finally:
        if in_main:
            signal.signal(signal.SIGINT, previous if previous is not None else signal.default_int_handler)
    if not _json_output:
        typer.echo("", err=True)
        if result.cancelled:
            typer.echo(f"Cancelled: {result.skipped} records not processed", err=True)
    if _json_output:
        _echo_json(result.to_dict())
        return
    if result.note:
        typer.echo(f"Skipped: {result.note}")
    typer.echo(
        f"{result.succeeded} embedded, {len(result.failed)} failed, "
        f"{result.skipped} skipped in {result.elapsed:.1f}s"
    )
    for failure in result.failed:
        typer.echo(f"  {failure.id}: {failure.error}: {failure.message}", err=True)
    if result.failed:
        raise typer.Exit(1)


@app.command()
def status():
    """Show store counts, embedding provider and vector store."""
    journal = _get_journal()
    info = journal.status()
    if _json_output:
        _echo_json(info)
        return
    for key, value in info.items():
        typer.echo(f"{key + ':':<24}{value}")


@app.command()
def config():
    """Show the effective configuration (API keys masked)."""
    path = _store_override or get_default_store_path()
    cfg = load_or_create_config(path)
    data = {
        "path": str(cfg.path),
        "config_file": str(cfg.config_path),
        "embedding": {
            "provider": cfg.embedding.provider.value if cfg.embedding.provider else None,
            "model": cfg.embedding.model,
            "dimensions": cfg.embedding.dimensions,
            "api_key": "***" if cfg.embedding.api_key else None,
        },
        "vector_store": {
            "kind": cfg.vector_store.kind.value,
            "path": str(cfg.vectors_path),
            "url": cfg.vector_store.url,
            "collection": cfg.vector_store.collection,
        },
        "batch_delay": cfg.batch_delay,
    }
    _echo_json(data)


@app.command()
def mcp():
    """Start MCP stdio server for AI agent integration."""
    if _store_override is not None:
        os.environ["MOMENTS_STORE_PATH"] = str(_store_override)
    from .mcp import main as mcp_main
    mcp_main()


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, context="moments CLI", store_path=_store_override)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
