"""Filename prefix conventions for importance ratings and memo categories.

Two conventions are recognised at the start of a memo's name:

* ``R<1-5><KEY> `` - an importance rating followed by a two letter category key,
  e.g. ``R3LN My Day.mp3``. Keys are looked up in the configured category map.
* Legacy runs of a single letter ``A`` to ``D``, e.g. ``AAA Something.m4a``,
  mapping to importance 5 to 2 with no category.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

__all__ = [
    "LEGACY_CATEGORY_PATTERN",
    "MemoCategory",
    "VoiceMemoCategorization",
    "build_category_pattern",
    "categorize_voice_memo",
    "strip_category_prefix",
]

LEGACY_CATEGORY_PATTERN = re.compile(r"^([ABCD]{1,6})\s")

_LEGACY_IMPORTANCE = (
    (re.compile(r"^A{2,8}\s"), 5),
    (re.compile(r"^B{2,8}\s"), 4),
    (re.compile(r"^C{2,8}\s"), 3),
    (re.compile(r"^D{2,8}\s"), 2),
)


@dataclass(frozen=True, slots=True)
class MemoCategory:
    key: str
    label: str
    display: str


@dataclass(frozen=True, slots=True)
class VoiceMemoCategorization:
    importance: int
    category: MemoCategory | None = None


def build_category_pattern(category_map: Mapping[str, str]) -> re.Pattern[str] | None:
    """Return the ``R<1-5><KEY>`` prefix pattern for the configured keys.

    ``None`` when the map is empty, since no prefix can then be valid.
    """
    if not category_map:
        return None
    keys = "|".join(f"({re.escape(key)})" for key in category_map)
    return re.compile(rf"^(R[1-5]({keys}))\s")


def strip_category_prefix(name: str, category_map: Mapping[str, str]) -> str:
    """Remove the rating prefix first, then any legacy prefix."""
    pattern = build_category_pattern(category_map)
    if pattern is not None:
        name = pattern.sub("", name, count=1)
    return LEGACY_CATEGORY_PATTERN.sub("", name, count=1)


def categorize_voice_memo(name: str, category_map: Mapping[str, str]) -> VoiceMemoCategorization:
    """Extract importance and category from a memo name (without extension)."""
    pattern = build_category_pattern(category_map)
    match = pattern.match(name) if pattern is not None else None

    if match is None:
        if LEGACY_CATEGORY_PATTERN.match(name):
            return _categorize_legacy(name)
        return VoiceMemoCategorization(importance=1)

    importance = int(name[1])
    key = name[2:4]
    display = category_map[key]
    label = re.sub(r"\s", "-", display.lower())
    return VoiceMemoCategorization(
        importance=importance,
        category=MemoCategory(key=key, label=label, display=display),
    )


def _categorize_legacy(name: str) -> VoiceMemoCategorization:
    # A single letter ("A Thought") is a valid prefix but carries no rating.
    for pattern, importance in _LEGACY_IMPORTANCE:
        if pattern.match(name):
            return VoiceMemoCategorization(importance=importance)
    return VoiceMemoCategorization(importance=1)
