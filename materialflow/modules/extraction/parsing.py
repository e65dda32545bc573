"""MaterialFlow response parsing — tolerant JSON repair for model output.

Model responses arrive wrapped in markdown fences, prefixed with prose, or
cut off mid-value when the output token budget runs out. ``repair_json``
turns such text into parseable JSON:

  1. Strip code fences, stray backticks and blank lines.
  2. Drop any prose before the first ``{`` / ``[``.
  3. Walk the text with a string-aware bracket stack. An unterminated
     trailing string, a dangling ``,`` / ``"key":`` / bare key, or a
     half-written literal is cut back to the nearest comma (dropping the
     partial member) or opening brace/bracket of its container.
  4. Append exactly the missing closers, innermost first.

Valid JSON passes through unchanged and ``repair_json`` is idempotent.
"""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from materialflow.core.exceptions import ResponseParseError

logger = structlog.get_logger()

RETRYABLE_MARKERS = ("json", "truncated", "unterminated", "timeout", "rate limit")

# Keys never checked against sourceText
_EVIDENCE_KEYS = {"sourceText", "location", "pageNumber", "extractionMethod"}

_BARE_TOKEN = re.compile(
    r"^(?:-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?|true|false|null)$"
)
_CLOSERS = {"{": "}", "[": "]"}
# A markdown fence on a line of its own; never matches inside a JSON string
_FENCE_LINE = re.compile(r"^[ \t]*```(?:json|JSON)?[ \t]*$", re.MULTILINE)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def strip_code_fences(raw_text: str) -> str:
    """Strip markdown code fences (```json ... ```) from LLM response."""
    text = raw_text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        text = text[first_newline + 1:] if first_newline != -1 else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def is_retryable_error(error: BaseException | str) -> bool:
    """True when an error message looks transient (bad JSON, timeout, rate limit)."""
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


def _clean(text: str) -> str:
    text = _FENCE_LINE.sub("", text)
    text = text.strip().strip("`")
    lines = [line for line in text.splitlines() if line.strip()]
    text = "\n".join(lines).strip()

    if text and text[0] not in "{[\"":
        starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
        if starts:
            text = text[min(starts):]
    return text


class _Container:
    __slots__ = ("opener", "start", "last_comma")

    def __init__(self, opener: str, start: int) -> None:
        self.opener = opener
        self.start = start
        self.last_comma = -1


def _scan(text: str) -> tuple[list[_Container], bool, bool]:
    """Return (open containers, ends inside a string, ends on a pending escape)."""
    stack: list[_Container] = []
    in_string = False
    escape = False

    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(_Container(ch, i))
        elif ch in "}]":
            if stack and _CLOSERS[stack[-1].opener] == ch:
                stack.pop()
        elif ch == "," and stack:
            stack[-1].last_comma = i

    return stack, in_string, escape


def _top_level_colon(segment: str) -> int:
    """Index of the first ``:`` outside strings and nested containers, or -1."""
    depth = 0
    in_string = False
    escape = False
    for i, ch in enumerate(segment):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
        elif ch == ":" and depth == 0:
            return i
    return -1


def _is_complete_value(value: str) -> bool:
    value = value.strip()
    if not value:
        return False
    # Strings and nested containers are already closed when we get here
    if value[0] in "\"{[":
        return True
    return bool(_BARE_TOKEN.match(value))


def _cut_back(text: str, stack: list[_Container]) -> str:
    """Drop the partial tail of the innermost open container."""
    inner = stack[-1]
    if inner.last_comma != -1:
        return text[:inner.last_comma]
    if len(stack) > 1:
        # Nothing complete inside: drop the container itself
        return text[:inner.start]
    return text[:inner.start + 1]


def _needs_cut(text: str, stack: list[_Container]) -> bool:
    inner = stack[-1]
    boundary = inner.last_comma if inner.last_comma != -1 else inner.start
    segment = text[boundary + 1:].strip()

    if inner.opener == "[":
        return bool(segment) and not _is_complete_value(segment)

    if not segment:
        # Empty nested object left behind by truncation
        return len(stack) > 1
    colon = _top_level_colon(segment)
    if colon == -1:
        return True
    return not _is_complete_value(segment[colon + 1:])


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


def repair_json(text: str) -> str:
    """Repair truncated or fenced model output into valid JSON text.

    Raises:
        ResponseParseError: nothing is left after cleaning.
    """
    stripped = (text or "").strip()
    try:
        json.loads(stripped)
    except json.JSONDecodeError:
        pass
    else:
        return stripped

    text = _clean(text or "")
    if not text:
        raise ResponseParseError("Empty response: no JSON content to repair")

    while True:
        text = text.rstrip()
        stack, in_string, escape = _scan(text)

        if in_string:
            if stack:
                text = _cut_back(text, stack)
            else:
                text = (text[:-1] if escape else text) + '"'
            continue

        if not stack:
            break

        if text.endswith(","):
            text = text[:-1]
            continue

        if _needs_cut(text, stack):
            text = _cut_back(text, stack)
            continue

        text += "".join(_CLOSERS[c.opener] for c in reversed(stack))

    return text


# ---------------------------------------------------------------------------
# Extraction responses
# ---------------------------------------------------------------------------


def _decode(text: str) -> Any:
    repaired = repair_json(text)
    try:
        value, _ = json.JSONDecoder().raw_decode(repaired)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Invalid JSON after repair: {e.msg}") from e
    return value


def check_source_text(item: dict[str, Any], schema: dict[str, Any] | None) -> list[str]:
    """Return the fields whose values do not occur in the item's sourceText.

    Nothing is checked without a sourceText or without schema properties.
    """
    source_text = item.get("sourceText")
    if not isinstance(source_text, str) or not source_text or not (schema or {}).get("properties"):
        return []

    source = source_text.lower().strip()
    if len(source) < 3:
        return ["sourceText too short"]
    numeric_source = re.sub(r"[,.\s]", "", source)

    missing: list[str] = []
    for field, value in item.items():
        if field in _EVIDENCE_KEYS or value is None or value == "":
            continue
        if isinstance(value, (dict, list, bool)):
            continue

        value_str = str(value).strip().lower()
        if len(value_str) < 2:
            continue
        if value_str in source:
            continue
        if re.sub(r"[,.\s]", "", value_str) not in numeric_source:
            missing.append(field)
    return missing


def parse_extraction_response(
    response: str,
    page_number: int,
    schema: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """Parse a batch response into records tagged with ``page_number``.

    Accepts a top-level array, ``{"materials": [...]}`` or ``{"items": [...]}``.
    Any other shape yields an empty list. Items missing a ``required`` field
    of ``schema`` are dropped.

    Raises:
        ResponseParseError: the text is not JSON even after repair.
    """
    if not response or not response.strip():
        logger.warning("Empty extraction response", page=page_number)
        return []

    parsed = _decode(response)

    if isinstance(parsed, list):
        items = parsed
    elif isinstance(parsed, dict) and isinstance(parsed.get("materials"), list):
        items = parsed["materials"]
    elif isinstance(parsed, dict) and isinstance(parsed.get("items"), list):
        items = parsed["items"]
    else:
        logger.warning(
            "Unexpected extraction response shape",
            page=page_number,
            type=type(parsed).__name__,
        )
        return []

    required = (schema or {}).get("required") or []
    results: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict) or not item:
            continue
        if any(field not in item for field in required):
            logger.warning("Item missing required fields", page=page_number, required=required)
            continue

        record = {**item, "pageNumber": page_number, "extractionMethod": "dynamic-schema"}
        missing = check_source_text(item, schema)
        if missing:
            record["sourceTextIncomplete"] = True
            record["missingFieldsInSourceText"] = missing
        results.append(record)

    logger.info("Parsed extraction response", page=page_number, items=len(results))
    return results


def parse_json_array(response: str) -> list[Any]:
    """Strict parse for agent output: fences stripped, then a JSON array.

    Raises:
        ResponseParseError: not JSON, or JSON that is not an array.
    """
    text = strip_code_fences(response or "")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Agent returned invalid JSON: {e.msg}") from e
    if not isinstance(parsed, list):
        raise ResponseParseError(
            f"Agent must return an array, got {type(parsed).__name__}"
        )
    return parsed
