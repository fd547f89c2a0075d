"""Best-effort repair of model-emitted tool names and arguments."""

import json
import logging
import re
from enum import StrEnum
from typing import Any

import Levenshtein

logger = logging.getLogger(__name__)

EMPTY_ARGUMENT_SPELLINGS = {"", "{}", "null", "none", "undefined", "{", "}", "[]"}

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SINGLE_QUOTED_KEY = re.compile(r"'([^'\\]+)'\s*:")
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_WORD = re.compile(r"[^a-z0-9]+")


class ArgumentStatus(StrEnum):
    OK = "ok"
    REPAIRED = "repaired"
    FALLBACK_EMPTY = "fallback_empty"


def fix_json(text: str | None) -> str:
    """Close whatever a truncated JSON document left open.

    Unterminated strings get a closing quote (a dangling backslash is
    completed first), and open objects and arrays get the minimal closers in
    reverse nesting order. A closer that skips an open container first closes
    the inner ones; a closer with no matching opener is dropped.
    """
    if text is None or not text.strip():
        return "{}"
    in_string = False
    escaped = False
    closers: list[str] = []
    out: list[str] = []
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            closers.append("}")
        elif char == "[":
            closers.append("]")
        elif char in "}]":
            if char not in closers:
                continue
            while closers[-1] != char:
                out.append(closers.pop())
            closers.pop()
        out.append(char)

    if in_string:
        if escaped:
            out.append("\\")
        out.append('"')
    out.extend(reversed(closers))
    return "".join(out)


def repair_json_string(text: str) -> str:
    """Light syntactic cleanup: single-quoted keys and trailing commas."""
    repaired = text.strip()
    repaired = _SINGLE_QUOTED_KEY.sub(r'"\1":', repaired)
    repaired = _TRAILING_COMMA.sub(r"\1", repaired)
    return repaired


def quote_bare_keys(text: str) -> str:
    return _BARE_KEY.sub(r'\1"\2"\3', text)


def _try_loads(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


def parse_tool_arguments(raw: Any) -> tuple[Any, ArgumentStatus]:
    """Turn raw model arguments into a parsed value.

    Returns the parsed value (a dict when possible, otherwise a bare value
    for single-field coercion) and how it was obtained. Never raises.
    """
    if raw is None:
        return {}, ArgumentStatus.OK
    if isinstance(raw, dict):
        return raw, ArgumentStatus.OK
    if not isinstance(raw, str):
        return raw, ArgumentStatus.OK

    stripped = raw.strip()
    if stripped.lower() in EMPTY_ARGUMENT_SPELLINGS:
        return {}, ArgumentStatus.OK

    ok, value = _try_loads(stripped)
    if ok:
        return value, ArgumentStatus.OK

    cleaned = repair_json_string(stripped)
    candidates = [
        cleaned,
        fix_json(cleaned),
        repair_json_string(fix_json(cleaned)),
        fix_json(quote_bare_keys(cleaned)),
    ]
    for candidate in candidates:
        ok, value = _try_loads(candidate)
        if ok:
            logger.debug("repaired tool arguments", extra={"raw": stripped[:200]})
            return value, ArgumentStatus.REPAIRED

    if not stripped.startswith(("{", "[", '"')):
        # a bare scalar such as `hello` or `42` is coerced downstream
        return stripped, ArgumentStatus.REPAIRED
    logger.warning("unparseable tool arguments; using empty set", extra={"raw": stripped[:200]})
    return {}, ArgumentStatus.FALLBACK_EMPTY


def to_snake_case(name: str) -> str:
    spaced = _CAMEL_BOUNDARY.sub("_", name.strip())
    return _NON_WORD.sub("_", spaced.lower()).strip("_")


def repair_tool_name(name: str, known: list[str]) -> str | None:
    """Map near-miss spellings (case, camelCase, dashes) onto a known name."""
    if name in known:
        return name
    lowered = name.lower()
    for candidate in known:
        if candidate.lower() == lowered:
            return candidate
    snake = to_snake_case(name)
    for candidate in known:
        if to_snake_case(candidate) == snake:
            return candidate
    return None


def normalized_distance(left: str, right: str) -> float:
    longest = max(len(left), len(right))
    if longest == 0:
        return 0.0
    return Levenshtein.distance(left, right) / longest


def suggest_tool_name(name: str, known: list[str], max_ratio: float = 0.4) -> str | None:
    """Closest known name by normalized Levenshtein distance, if close enough."""
    best: str | None = None
    best_score = 1.0
    for candidate in known:
        score = normalized_distance(name.lower(), candidate.lower())
        if score < best_score:
            best, best_score = candidate, score
    if best is not None and best_score <= max_ratio:
        return best
    return None
