"""Fold model-produced context deltas into the persistent fact list.

Facts come from an untrusted generative process, so merging is append-only,
order-preserving and deduplicated by exact string equality after trimming.
A fact is never rewritten or dropped here; corrections arrive as new facts.
"""
from __future__ import annotations

import re
from typing import List, Sequence

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def extract_items(raw: str) -> List[str]:
    """Split a raw delta into trimmed, non-empty lines (in order)."""
    if not raw:
        return []
    return [piece.strip() for piece in _LINE_BREAK.split(raw) if piece.strip()]


def merge(existing: Sequence[str], candidates: Sequence[str]) -> Sequence[str]:
    """Append unseen candidates to ``existing``.

    Returns ``existing`` itself (same object) when no candidate survives, so
    callers can tell a no-op apart from a real change with ``is``. Otherwise
    returns a new tuple.
    """
    seen = {item.strip() for item in existing}
    added: List[str] = []
    for candidate in candidates:
        item = candidate.strip()
        if not item or item in seen:
            continue
        seen.add(item)
        added.append(item)

    if not added:
        return existing
    return tuple(existing) + tuple(added)


def append_story(story: str, passage: str) -> str:
    """Append a narrative passage, separated from prior text by a blank line.

    Surrounding blank lines and trailing whitespace are dropped; the
    passage's own indentation is kept.
    """
    if not (passage or "").strip():
        return story
    passage = passage.strip("\r\n").rstrip()
    return f"{story}\n\n{passage}" if story else passage
