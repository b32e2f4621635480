"""Pick note tags from a transcript by word frequency."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable

__all__ = ["WordRank", "extract_tags"]

_NON_ALPHA_RE = re.compile(r"[^a-z]")


class WordRank:
    """Running frequency count of plain alphabetic words."""

    def __init__(self) -> None:
        self.ranking: Counter[str] = Counter()

    def update(self, text: str) -> Counter[str]:
        # Words carrying punctuation or digits are ignored rather than cleaned.
        words = (word for word in text.lower().split(" ") if word and not _NON_ALPHA_RE.search(word))
        self.ranking.update(words)
        return self.ranking

    def to_sorted(self) -> list[tuple[str, int]]:
        """Words by descending count; ties keep first-seen order."""
        return sorted(self.ranking.items(), key=lambda item: -item[1])


def extract_tags(text: str, tags: Iterable[str], limit: int = 10) -> list[str]:
    """Return up to ``limit`` configured tags found in ``text``, most frequent first."""
    wanted = {tag.lower() for tag in tags}
    if not wanted or limit <= 0:
        return []

    ranker = WordRank()
    ranker.update(text)
    matches = [word for word, _ in ranker.to_sorted() if word in wanted]
    return [f"#{word}" for word in matches[:limit]]
