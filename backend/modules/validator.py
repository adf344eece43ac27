from __future__ import annotations

from typing import Any

from modules.errors import PlaceholderContent

PLACEHOLDER_TERMS = (
    "string",
    "your title here",
    "title here",
    "section title",
    "description here",
    "add description",
    "insert",
    "example",
    "placeholder",
    "template",
    "sample",
    "todo",
    "tbd",
    "fill in",
)

VALID_DURATIONS = ("3 minutes", "2-3 minutes", "12-15 minutes", "10-15 minutes")

DURATION_KEYS = {"duration", "totalDuration"}

MIN_LENGTHS = {"id": 3, "title": 8}
GENERIC_MIN_LENGTH = 5
POINT_MIN_LENGTH = 8


def is_whitelisted_duration(value: str) -> bool:
    lowered = value.lower()
    return any(duration in lowered for duration in VALID_DURATIONS)


def has_placeholder(value: str) -> bool:
    lowered = value.lower()
    return any(term in lowered for term in PLACEHOLDER_TERMS)


def _check_string(location: str, key: str, value: str) -> None:
    if key in DURATION_KEYS and is_whitelisted_duration(value):
        return
    min_len = MIN_LENGTHS.get(key, GENERIC_MIN_LENGTH)
    if has_placeholder(value) or len(value.strip()) < min_len:
        raise PlaceholderContent(
            f"{location} contains placeholder or insufficient content: {value!r}",
            location=location,
            value=value,
        )


def _check_points(location: str, points: list[Any]) -> None:
    for idx, point in enumerate(points):
        if not isinstance(point, str):
            continue
        if has_placeholder(point) or len(point.strip()) < POINT_MIN_LENGTH:
            raise PlaceholderContent(
                f"{location}[{idx}] contains placeholder content: {point!r}",
                location=f"{location}[{idx}]",
                value=point,
            )


def _check_block(location: str, block: dict[str, Any]) -> None:
    for key, value in block.items():
        if isinstance(value, str):
            _check_string(f"{location}.{key}", key, value)
        elif key in ("keyPoints", "keyTakeaways") and isinstance(value, list):
            _check_points(f"{location}.{key}", value)


def validate_outline(outline: Any) -> bool:
    """Reject outlines that still carry template text.

    Accepts the camelCase wire dict or a ``PodcastOutline``. Stops at the
    first offending field.
    """
    if hasattr(outline, "model_dump"):
        outline = outline.model_dump(by_alias=True, exclude_none=True)
    if not isinstance(outline, dict):
        return True

    overview = outline.get("overview")
    if isinstance(overview, dict):
        _check_block("overview", overview)

    sections = outline.get("sections")
    if isinstance(sections, list):
        for idx, section in enumerate(sections):
            if isinstance(section, dict):
                _check_block(f"sections[{idx}]", section)

    final_thoughts = outline.get("finalThoughts")
    if isinstance(final_thoughts, dict):
        _check_block("finalThoughts", final_thoughts)

    return True
