"""Typed view of enum-style custom field values.

Pipedrive returns the same custom field as a number, a numeric string, a
free-text label, or a ``{"value": ..., "label": ...}`` wrapper depending on
API version and field type. ``parse_raw`` turns any of those into one of
three variants; consumers then decode with a single total function.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Number:
    value: int


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Labeled:
    value: "Number | Text | None"
    label: str | None


RawFieldValue = Number | Text | Labeled


def _scalar(raw: Any) -> Number | Text | None:
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, int):
        return Number(raw)
    if isinstance(raw, float):
        return Number(int(raw)) if raw.is_integer() else None
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        return Number(int(text)) if text.isdigit() else Text(text)
    return None


def parse_raw(raw: Any) -> RawFieldValue | None:
    """Classify a raw field value. Returns None for empty or unusable input."""
    if isinstance(raw, Mapping):
        value = _scalar(raw.get("value", raw.get("id")))
        label = raw.get("label", raw.get("name"))
        label = label.strip() if isinstance(label, str) and label.strip() else None
        if value is None and label is None:
            return None
        return Labeled(value=value, label=label)
    return _scalar(raw)


def decode_id(raw: RawFieldValue | None, names: Mapping[str, int]) -> int | None:
    """Decode to an identifier using ``names`` (casefolded label -> id).

    Numbers pass through; text and labels are looked up by name. For a
    labeled value, a known id in the value part wins, then the label, then
    whatever the value part decoded to.
    """
    match raw:
        case Number(value=value):
            return value
        case Text(value=value):
            return names.get(value.casefold())
        case Labeled(value=value, label=label):
            decoded = decode_id(value, names) if value is not None else None
            if decoded is not None and decoded in names.values():
                return decoded
            by_label = names.get(label.casefold()) if label else None
            return by_label if by_label is not None else decoded
    return None
