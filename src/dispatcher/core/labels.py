"""Crew tags embedded in activity subjects.

A tagged subject reads ``"Extraction — Crew: Hector"``. The separator may be
an em dash, en dash, or hyphen when written by hand.
"""

from __future__ import annotations

import re

CREW_TAG_RE = re.compile(r"\s*[—–-]\s*crew:\s*[^—–]*?(?=\s*[—–]|\s*$)", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")


def normalize_crew(name: str) -> str:
    return _WS_RE.sub(" ", name).strip()


def crew_tag(name: str) -> str:
    return f" — Crew: {normalize_crew(name)}"


def has_crew_tag(subject: str) -> bool:
    return CREW_TAG_RE.search(subject or "") is not None


def strip_crew_tag(subject: str) -> str:
    return CREW_TAG_RE.sub("", subject or "").strip()


def embed_crew_tag(subject: str, name: str) -> str:
    """Replace the first existing tag in place, or append one."""
    subject = subject or ""
    tag = crew_tag(name)
    match = CREW_TAG_RE.search(subject)
    if match is None:
        return subject.rstrip() + tag
    head = subject[: match.start()]
    tail = CREW_TAG_RE.sub("", subject[match.end():])
    return (head + tag + tail).strip()


def normalize_subject(subject: str) -> str:
    """Tag-stripped, casefolded, whitespace-collapsed form for comparisons."""
    return _WS_RE.sub(" ", strip_crew_tag(subject)).strip().casefold()
