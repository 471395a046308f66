"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Value normalization shared by the entity importers.

Export rows are loosely typed: numbers arrive as strings, booleans as 0/1 or
"yes", dates in several layouts. The helpers here coerce them into the shapes
the destination schema stores, and never raise on bad input; they return None
(or a documented fallback) instead.
"""

import json
import logging
import math
import re
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as date_parser

logger = logging.getLogger("tmimport.normalization")

MAX_INT_32 = 2_147_483_647
MIN_INT_32 = -2_147_483_648

# Tried in order when a duration does not fit a 32-bit integer
ESTIMATE_SCALE_CANDIDATES = (
    (1_000_000, "microseconds"),
    (1_000_000_000, "nanoseconds"),
    (1_000, "milliseconds"),
)

SYSTEM_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
TRUE_STRINGS = frozenset({"1", "true", "yes", "y", "on"})
MULTI_SELECT_SEPARATORS = re.compile(r"[;,|]")

WarningCallback = Callable[[str, dict[str, Any]], None]


def to_number(value: Any) -> float | int | None:
    """Finite number from an int, float or numeric string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() and "." not in text and "e" not in text.lower() else number
    return None


def to_int(value: Any) -> int | None:
    """Truncating integer conversion."""
    number = to_number(value)
    if number is None:
        return None
    return int(number)


def to_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        return text in TRUE_STRINGS
    if value is None:
        return default
    return bool(value)


def to_str(value: Any) -> str | None:
    """Trimmed, non-empty string, or None."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
    elif isinstance(value, int | float) and not isinstance(value, bool):
        text = str(value)
    else:
        return None
    return text or None


def to_date(value: Any) -> datetime | None:
    """
    Parse a timestamp as the export writes it.

    Accepts ISO strings with or without ``T`` and ``Z``, "YYYY-MM-DD HH:MM:SS"
    and epoch milliseconds. Naive results are taken to be UTC.

    Args:
        value: Raw date value

    Returns:
        Timezone-aware datetime, or None when the value cannot be parsed
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, int | float):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = date_parser.isoparse(text.replace(" ", "T", 1))
        except ValueError:
            try:
                parsed = date_parser.parse(text)
            except (ValueError, OverflowError):
                return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso_date(value: Any) -> str | None:
    parsed = to_date(value)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_estimate(value: Any) -> tuple[int | None, str | None]:
    """
    Fit a duration into a 32-bit integer.

    The rounded value is returned as-is when it fits. Otherwise the value is
    assumed to be in a finer unit and divided by 1e6, 1e9 and 1e3 in that
    order; if none of these fit, it is clamped to the int32 boundary.

    Returns:
        Tuple of (value, adjustment) where adjustment is None, "microseconds",
        "nanoseconds", "milliseconds" or "clamped"
    """
    number = to_number(value)
    if number is None:
        return None, None

    rounded = _round_half_up(number)
    if abs(rounded) <= MAX_INT_32:
        return rounded, None

    for factor, adjustment in ESTIMATE_SCALE_CANDIDATES:
        scaled = _round_half_up(number / factor)
        if abs(scaled) <= MAX_INT_32:
            return scaled, adjustment

    return (MAX_INT_32 if number > 0 else MIN_INT_32), "clamped"


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def microseconds_to_seconds(value: Any) -> int | None:
    """Session durations are exported in microseconds."""
    number = to_number(value)
    if number is None:
        return None
    return _round_half_up(number / 1_000_000)


def generate_system_name(value: str, fallback: str = "status") -> str:
    """Lowercase identifier usable as a system name."""
    normalized = re.sub(r"\s+", "_", value.lower())
    normalized = re.sub(r"[^a-z0-9_]", "", normalized)
    normalized = re.sub(r"^[^a-z]+", "", normalized)
    return normalized or fallback


def normalize_color_hex(value: str | None) -> str | None:
    if not value:
        return None
    text = value.strip()
    if not text:
        return None
    text = text.upper()
    return text if text.startswith("#") else f"#{text}"


# ----------------------------------------------------------------------
# Rich text
# ----------------------------------------------------------------------


def is_rich_text_doc(value: Any) -> bool:
    if not isinstance(value, dict) or value.get("type") != "doc":
        return False
    return "content" not in value or isinstance(value["content"], list)


def _text_paragraph(text: str) -> dict[str, Any]:
    return {"type": "paragraph", "content": [{"type": "text", "text": text}]}


def _is_empty_doc(doc: Mapping[str, Any]) -> bool:
    content = doc.get("content") or []
    if not content:
        return True
    if len(content) == 1:
        first = content[0] if isinstance(content[0], dict) else {}
        children = first.get("content") or []
        if not children:
            return not str(first.get("text") or "").strip()
        if len(children) == 1 and isinstance(children[0], dict):
            text = children[0].get("text")
            if isinstance(text, str) and not text.strip():
                return True
    return False


def to_rich_text_doc(value: Any) -> dict[str, Any] | None:
    """
    Convert free text into a paragraph document.

    Existing documents (as objects or JSON strings) pass through. Markup is not
    interpreted; the text becomes a single paragraph. Empty or whitespace-only
    content yields None.
    """
    if value is None:
        return None

    doc: dict[str, Any] | None = None
    if is_rich_text_doc(value):
        doc = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.startswith("{"):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if is_rich_text_doc(parsed):
                doc = parsed
        if doc is None:
            doc = {"type": "doc", "content": [_text_paragraph(text)]}
    else:
        text = str(value).strip()
        if not text:
            return None
        doc = {"type": "doc", "content": [_text_paragraph(text)]}

    return None if _is_empty_doc(doc) else doc


def link_paragraph(name: str | None, url: str, note: str | None = None) -> dict[str, Any]:
    """A paragraph holding one link, optionally followed by a note."""
    label = to_str(name) or url
    content: list[dict[str, Any]] = [
        {"type": "text", "text": label, "marks": [{"type": "link", "attrs": {"href": url}}]}
    ]
    note_text = to_str(note)
    if note_text:
        content.append({"type": "text", "text": f" ({note_text})"})
    return {"type": "paragraph", "content": content}


def append_to_doc(doc: Any, nodes: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Return a copy of ``doc`` (or a new document) with ``nodes`` appended."""
    base = doc if is_rich_text_doc(doc) else to_rich_text_doc(doc)
    content = list(base.get("content") or []) if base else []
    content.extend(nodes)
    return {"type": "doc", "content": content}


# ----------------------------------------------------------------------
# Custom field values
# ----------------------------------------------------------------------


def _warn(on_warning: WarningCallback | None, message: str, details: dict[str, Any]) -> None:
    logger.warning(f"{message}: {details}")
    if on_warning is not None:
        on_warning(message, details)


def normalize_dropdown_value(
    value: Any,
    options: Mapping[int, str],
    field_name: str | None = None,
    on_warning: WarningCallback | None = None,
) -> int | None:
    """
    Resolve a dropdown value to a destination option id.

    Matches by numeric id first, then by case-insensitive option name.

    Args:
        value: Raw value from the export
        options: Destination option id to option name
        field_name: Field name used in warnings
        on_warning: Called with (message, details) for unresolved values

    Returns:
        Option id, or None when the value is empty or unresolved
    """
    if value is None or value == "":
        return None

    if isinstance(value, int | float) and not isinstance(value, bool):
        if int(value) in options:
            return int(value)
        value = str(value)

    if not isinstance(value, str):
        value = str(value)

    text = value.strip()
    if not text:
        return None

    numeric = to_int(text)
    if numeric is not None and numeric in options:
        return numeric

    by_name = {name.lower(): option_id for option_id, name in options.items()}
    option_id = by_name.get(text.lower())
    if option_id is not None:
        return option_id

    _warn(
        on_warning,
        "Unrecognized dropdown option",
        {"field": field_name, "value": text, "availableOptions": sorted(by_name)},
    )
    return None


def split_multi_value(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return parsed
        return [part.strip() for part in MULTI_SELECT_SEPARATORS.split(text) if part.strip()]
    return [value]


def normalize_multi_select(
    value: Any,
    options: Mapping[int, str],
    field_name: str | None = None,
    on_warning: WarningCallback | None = None,
) -> list[int] | None:
    """Resolve a multi-select value to a deduplicated list of option ids."""
    if value is None or value == "":
        return None

    resolved: list[int] = []
    for entry in split_multi_value(value):
        if entry is None or entry == "":
            continue
        option_id = normalize_dropdown_value(entry, options, field_name, on_warning)
        if option_id is not None and option_id not in resolved:
            resolved.append(option_id)
    return resolved or None


def normalize_case_field_value(
    field_type: str,
    value: Any,
    options: Mapping[int, str] | None = None,
    field_name: str | None = None,
    on_warning: WarningCallback | None = None,
) -> Any:
    """
    Convert a raw custom field value for a destination field type.

    Steps fields are imported separately and always yield None here.
    """
    if value is None:
        return None

    kind = field_type.strip().lower()
    options = options or {}

    if "text long" in kind or "text (long)" in kind:
        doc = to_rich_text_doc(value)
        return json.dumps(doc) if doc is not None else None
    if "text string" in kind or kind in ("string", "link"):
        return str(value)
    if kind == "integer":
        return to_int(value)
    if kind == "number":
        return to_number(value)
    if kind == "checkbox":
        return to_bool(value)
    if kind == "dropdown":
        return normalize_dropdown_value(value, options, field_name, on_warning)
    if re.sub(r"\s+", "-", kind) == "multi-select":
        return normalize_multi_select(value, options, field_name, on_warning)
    if kind == "date":
        return to_iso_date(value)
    if kind == "steps":
        return None
    return value


# ----------------------------------------------------------------------
# Automation
# ----------------------------------------------------------------------


def _looks_generated(segment: str) -> bool:
    if re.fullmatch(r"[0-9a-fA-F-]{8,}", segment):
        return True
    if re.fullmatch(r"\d{6,}", segment):
        return True
    if ":" in segment or segment.startswith("@"):
        return True
    return (
        segment == segment.lower()
        and any(ch.isdigit() for ch in segment)
        and re.fullmatch(r"[a-z0-9_-]{6,}", segment) is not None
    )


def normalize_automation_class_name(folder: str | None) -> str | None:
    """
    Dotted class path with generated-looking segments removed.

    The first segment (the platform root, e.g. ``ios``) is always kept.
    """
    if not folder:
        return None
    segments = [segment.strip() for segment in folder.split(".") if segment.strip()]
    if not segments:
        return None
    kept = [segment for index, segment in enumerate(segments) if index == 0 or not _looks_generated(segment)]
    if not kept:
        return segments[-1]
    return ".".join(kept)
