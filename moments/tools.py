"""
Operation dispatch table.

Maps operation names to handlers over a ``Journal``. Every call returns a
structured payload, never raises for a caller mistake:

    {"ok": True, "result": ...}
    {"ok": False, "error": {"type": "NotFoundError", "message": "..."}}

The MCP server and any other transport sit on top of ``dispatch``.
"""

import logging
from typing import Any, Callable, Mapping, Optional

from .api import Journal
from .errors import JournalError, ValidationError

logger = logging.getLogger(__name__)

Handler = Callable[[Journal, dict[str, Any]], Any]


def _args(
    arguments: Optional[Mapping[str, Any]],
    allowed: tuple[str, ...],
    required: tuple[str, ...] = (),
) -> dict[str, Any]:
    """Check argument names, dropping explicit nulls."""
    arguments = dict(arguments or {})
    unknown = set(arguments) - set(allowed)
    if unknown:
        raise ValidationError(f"Unknown arguments: {', '.join(sorted(unknown))}")
    missing = [name for name in required if arguments.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required arguments: {', '.join(missing)}")
    return {k: v for k, v in arguments.items() if v is not None}


_RECORD_FIELDS = (
    "content", "who", "qualities", "reflects", "processing",
    "perspective", "occurred", "context",
)


def _create(journal: Journal, arguments: dict[str, Any]) -> dict[str, Any]:
    args = _args(arguments, _RECORD_FIELDS, required=("content",))
    content = args.pop("content")
    record_id = journal.create(content, **args)
    return {"id": record_id, "record": journal.get(record_id).to_dict()}


def _get(journal: Journal, arguments: dict[str, Any]) -> dict[str, Any]:
    args = _args(arguments, ("id",), required=("id",))
    return journal.get(args["id"]).to_dict()


def _update(journal: Journal, arguments: dict[str, Any]) -> dict[str, Any]:
    # Explicit nulls are kept here: they reset a field to its default
    arguments = dict(arguments or {})
    _args(arguments, ("id", *_RECORD_FIELDS), required=("id",))
    record_id = arguments.pop("id")
    if not arguments:
        raise ValidationError("Nothing to update")
    return journal.update(record_id, **arguments).to_dict()


def _delete(journal: Journal, arguments: dict[str, Any]) -> dict[str, Any]:
    args = _args(arguments, ("id",), required=("id",))
    journal.delete(args["id"])
    return {"id": args["id"], "released": True}


def _list(journal: Journal, arguments: dict[str, Any]) -> list[dict[str, Any]]:
    args = _args(arguments, ("who", "created_from", "created_to", "limit"))
    limit = args.pop("limit", None)
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 0):
        raise ValidationError("limit must be a non-negative integer")
    records = []
    for record in journal.list(**args):
        if limit is not None and len(records) >= limit:
            break
        records.append(record.to_dict())
    return records


def _search(journal: Journal, arguments: dict[str, Any]) -> dict[str, Any]:
    args = _args(arguments, (
        "query", "semantic_query", "filters", "sort_by", "limit", "offset", "min_similarity",
        "group_by",
    ))
    return journal.search(**args).to_dict()


def _reembed(journal: Journal, arguments: dict[str, Any]) -> dict[str, Any]:
    args = _args(arguments, ("ids", "delay", "only_missing"))
    return journal.reembed(**args).to_dict()


def _status(journal: Journal, arguments: dict[str, Any]) -> dict[str, Any]:
    _args(arguments, ())
    return journal.status()


OPERATIONS: dict[str, Handler] = {
    "create": _create,
    "get": _get,
    "update": _update,
    "delete": _delete,
    "list": _list,
    "search": _search,
    "reembed": _reembed,
    "status": _status,
}


def error_payload(exc: Exception) -> dict[str, Any]:
    error: dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    ids = getattr(exc, "ids", None)
    if ids:
        error["ids"] = ids
    return {"ok": False, "error": error}


def dispatch(journal: Journal, name: str, arguments: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
    """Run one operation and wrap the outcome in a payload."""
    handler = OPERATIONS.get(name)
    if handler is None:
        return error_payload(ValidationError(
            f"Unknown operation '{name}'. Available: {', '.join(OPERATIONS)}"
        ))
    try:
        return {"ok": True, "result": handler(journal, dict(arguments or {}))}
    except JournalError as e:
        logger.info("%s failed: %s: %s", name, type(e).__name__, e)
        return error_payload(e)
