"""
Quality taxonomy for experiential records.

Seven base dimensions, each with exactly two named sub-qualities, give a
closed set of 21 dotted tags. A quality signature maps tags to either
``False`` (absent) or a manifestation string in the experiencer's voice:

    {"mood": "tight in the chest", "time.future": "tomorrow's meeting"}

Validation here is pure: no I/O, no state.
"""

from typing import Any, Callable, Iterable, Mapping, Optional

from .errors import InvalidQualityError

# Base dimension -> its two sub-qualities, in display order
QUALITY_DIMENSIONS: dict[str, tuple[str, str]] = {
    "embodied": ("thinking", "sensing"),
    "focus": ("narrow", "broad"),
    "mood": ("open", "closed"),
    "purpose": ("goal", "wander"),
    "space": ("here", "there"),
    "time": ("past", "future"),
    "presence": ("individual", "collective"),
}

KNOWN_QUALITIES: tuple[str, ...] = tuple(
    tag
    for base, subs in QUALITY_DIMENSIONS.items()
    for tag in (base, *(f"{base}.{sub}" for sub in subs))
)

_KNOWN_SET = frozenset(KNOWN_QUALITIES)
_ORDER = {tag: i for i, tag in enumerate(KNOWN_QUALITIES)}


def _check_path(tag: Any) -> str:
    """Check the dot-path grammar of a tag. Returns the base dimension."""
    if not isinstance(tag, str) or not tag:
        raise InvalidQualityError(tag, "quality tag must be a non-empty string")
    parts = tag.split(".")
    if len(parts) > 2:
        raise InvalidQualityError(tag, f"malformed quality '{tag}': more than one dot")
    if any(not p for p in parts):
        raise InvalidQualityError(tag, f"malformed quality '{tag}': empty segment")
    return parts[0]


def is_known_quality(tag: str) -> bool:
    """True if ``tag`` is one of the 21 taxonomy tags."""
    return isinstance(tag, str) and tag in _KNOWN_SET


def validate_tag(tag: str) -> str:
    """Return ``tag`` unchanged if valid, else raise InvalidQualityError."""
    _check_path(tag)
    if tag not in _KNOWN_SET:
        raise InvalidQualityError(tag, f"unknown quality '{tag}'")
    return tag


def validate_signature(signature: Mapping[str, Any] | None) -> dict[str, str | bool]:
    """
    Validate a quality signature and return a normalized copy.

    Keys are taxonomy tags; values are ``False`` or a non-empty string
    (surrounding whitespace is stripped). A dimension may carry at most one
    of its two sub-qualities.

    Raises:
        InvalidQualityError: naming the first offending tag
    """
    if signature is None:
        return {}
    if not isinstance(signature, Mapping):
        raise InvalidQualityError(None, "qualities must be a mapping of tag to value")

    normalized: dict[str, str | bool] = {}
    subs_seen: dict[str, str] = {}
    for tag, value in signature.items():
        validate_tag(tag)
        if value is False:
            normalized[tag] = False
            continue
        if not isinstance(value, str) or not value.strip():
            raise InvalidQualityError(
                tag, f"quality '{tag}' must be false or a non-empty description"
            )
        normalized[tag] = value.strip()
        if "." in tag:
            base = tag.split(".", 1)[0]
            if base in subs_seen:
                raise InvalidQualityError(
                    tag,
                    f"quality '{tag}' conflicts with '{subs_seen[base]}': "
                    f"a dimension carries at most one sub-quality",
                )
            subs_seen[base] = tag

    return dict(sorted(normalized.items(), key=lambda kv: _ORDER[kv[0]]))


def present_qualities(signature: Mapping[str, Any] | None) -> list[str]:
    """Tags whose value is not False, in taxonomy order."""
    if not signature:
        return []
    return sorted(
        (tag for tag, value in signature.items() if value is not False and tag in _KNOWN_SET),
        key=_ORDER.__getitem__,
    )


def matches_qualities(signature: Mapping[str, Any] | None, tags: Iterable[str]) -> bool:
    """
    True if the signature has every requested tag present.

    A base tag like ``mood`` is satisfied by ``mood`` itself or either of its
    sub-qualities; a sub tag must match exactly.
    """
    present = set(present_qualities(signature))
    for tag in tags:
        validate_tag(tag)
        if "." in tag:
            if tag not in present:
                return False
        elif not any(p == tag or p.startswith(tag + ".") for p in present):
            return False
    return True


# ---------------------------------------------------------------------------
# Quality filter expressions
# ---------------------------------------------------------------------------

QualityPredicate = Callable[[Optional[Mapping[str, Any]]], bool]

_BOOLEAN_OPERATORS = ("$and", "$or", "$not")


def _has_tag(present: set[str], tag: str) -> bool:
    if "." in tag:
        return tag in present
    return any(p == tag or p.startswith(tag + ".") for p in present)


def _compile_term(tag: str, value: Any) -> QualityPredicate:
    validate_tag(tag)
    if isinstance(value, Mapping):
        if set(value) != {"present"} or not isinstance(value["present"], bool):
            raise InvalidQualityError(tag, f"filter for '{tag}' must be {{\"present\": true|false}}")
        wanted = value["present"]
        return lambda sig: _has_tag(set(present_qualities(sig)), tag) is wanted

    # Sub-quality values of a base dimension; any of them matches
    if "." in tag:
        raise InvalidQualityError(tag, f"'{tag}' is already a sub-quality; use {{\"present\": ...}}")
    values = [value] if isinstance(value, str) else value
    if not isinstance(values, (list, tuple)) or not values:
        raise InvalidQualityError(tag, f"invalid filter value for '{tag}': {value!r}")
    tags = [validate_tag(f"{tag}.{sub}") if isinstance(sub, str) else validate_tag(sub) for sub in values]
    return lambda sig: any(t in set(present_qualities(sig)) for t in tags)


def compile_quality_filter(expr: Any) -> QualityPredicate:
    """
    Validate a quality filter and return a predicate over signatures.

    Accepted forms::

        "mood"                                  # tag present
        ["mood", "time.future"]                 # every tag present
        {"mood": {"present": False}}            # tag absent
        {"mood": "open"}                        # mood.open present
        {"focus": ["narrow", "broad"]}          # either sub present
        {"$and": [...]} {"$or": [...]} {"$not": {...}}

    Several keys in one mapping must all match.

    Raises:
        InvalidQualityError: unknown tag or malformed expression
    """
    if isinstance(expr, str):
        expr = [expr]
    if isinstance(expr, (list, tuple)):
        tags = [validate_tag(t) for t in expr]
        return lambda sig: matches_qualities(sig, tags)
    if not isinstance(expr, Mapping) or not expr:
        raise InvalidQualityError(None, "quality filter must be a tag, a list of tags or a non-empty mapping")

    terms: list[QualityPredicate] = []
    for key, value in expr.items():
        if key in ("$and", "$or"):
            if not isinstance(value, (list, tuple)) or not value:
                raise InvalidQualityError(None, f"{key} must be a non-empty list of filters")
            parts = [compile_quality_filter(v) for v in value]
            if key == "$and":
                terms.append(lambda sig, parts=parts: all(p(sig) for p in parts))
            else:
                terms.append(lambda sig, parts=parts: any(p(sig) for p in parts))
        elif key == "$not":
            inner = compile_quality_filter(value)
            terms.append(lambda sig, inner=inner: not inner(sig))
        elif isinstance(key, str) and key.startswith("$"):
            raise InvalidQualityError(key, f"unknown operator '{key}'. Valid: {', '.join(_BOOLEAN_OPERATORS)}")
        else:
            terms.append(_compile_term(key, value))

    if len(terms) == 1:
        return terms[0]
    return lambda sig: all(t(sig) for t in terms)
