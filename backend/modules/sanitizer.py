from __future__ import annotations

import json
import re
from typing import Any

from modules.errors import MalformedResponse
from modules.validator import validate_outline

THINK_SPAN_RE = re.compile(r"<think>[\s\S]*?</think>")
_FENCE_RE = re.compile(r"```(?:json|typescript|ts)?[ \t]*\n?")
_STRING_LITERAL_RE = re.compile(r'"(?:[^"\\]|\\.)*"', re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_SINGLE_QUOTED_KEY_RE = re.compile(r"([{,]\s*)'([^'\"]*)'(\s*:)")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})

OUTLINE_KEYS = ("overview", "sections", "finalThoughts")


def strip_think_spans(text: str) -> str:
    return THINK_SPAN_RE.sub("", text or "")


def _strip_markup(text: str) -> str:
    # Removing one span can expose another, so repeat until nothing changes.
    while True:
        stripped = _FENCE_RE.sub("", strip_think_spans(text))
        if stripped == text:
            return stripped
        text = stripped


def sanitize(raw: str) -> str:
    cleaned = _strip_markup(raw or "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    return cleaned


def _map_outside_strings(text: str, fix) -> str:
    # Only touch text between JSON string literals so values are never rewritten.
    parts: list[str] = []
    pos = 0
    for match in _STRING_LITERAL_RE.finditer(text):
        parts.append(fix(text[pos : match.start()]))
        parts.append(match.group(0))
        pos = match.end()
    parts.append(fix(text[pos:]))
    return "".join(parts)


def _fix_keys_and_commas(segment: str) -> str:
    segment = _TRAILING_COMMA_RE.sub(r"\1", segment)
    return _BARE_KEY_RE.sub(r'\1"\2":', segment)


def repair_common_issues(text: str) -> str:
    fixed = _map_outside_strings(text or "", lambda s: s.translate(_SMART_QUOTES))
    fixed = _map_outside_strings(fixed, lambda s: _SINGLE_QUOTED_KEY_RE.sub(r'\1"\2"\3', s))
    fixed = _map_outside_strings(fixed, _fix_keys_and_commas)
    return re.sub(r",\s*$", "", fixed)


def looks_like_outline(value: Any) -> bool:
    return isinstance(value, dict) and any(key in value for key in OUTLINE_KEYS)


def _malformed_from(error: json.JSONDecodeError) -> MalformedResponse:
    message = str(error)
    if "Unterminated string" in message:
        return MalformedResponse(
            "JSON parsing failed: found an unterminated string. "
            "The model may have generated incomplete JSON.",
            kind="unterminated_string",
        )
    return MalformedResponse(
        f"JSON parsing failed: invalid JSON structure ({message}). "
        "The model may have generated malformed JSON.",
        kind="structural",
    )


def parse_structured(raw: str, validate: bool = True) -> Any:
    """Parse a model response into JSON.

    Runs :func:`sanitize`, then one repair pass if the first parse fails.
    Outline-shaped payloads are checked with :func:`validate_outline` when
    ``validate`` is true; :class:`PlaceholderContent` is propagated as is.
    """
    cleaned = sanitize(raw)
    if len(cleaned) < 10:
        raise MalformedResponse(
            "Response appears to be empty or too short to contain valid JSON.",
            kind="empty",
        )
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as first_error:
        try:
            parsed = json.loads(repair_common_issues(cleaned))
        except json.JSONDecodeError:
            raise _malformed_from(first_error) from first_error

    if validate and looks_like_outline(parsed):
        validate_outline(parsed)
    return parsed
