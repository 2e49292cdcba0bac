from __future__ import annotations

from typing import Optional, Sequence

POSITIVE_TERMS: Sequence[str] = (
    "win", "surge", "rally", "gain", "positive", "bull", "record", "secure", "approve", "partnership",
)
NEGATIVE_TERMS: Sequence[str] = (
    "hack", "breach", "lawsuit", "fine", "down", "drop", "negative", "bear", "investigate",
    "halt", "outage", "delay", "ban",
)


def sentiment_score(text: Optional[str]) -> int:
    """Lexicon hits: +1 per positive term present, -1 per negative term present."""
    lowered = (text or "").lower()
    score = 0
    for term in POSITIVE_TERMS:
        if term in lowered:
            score += 1
    for term in NEGATIVE_TERMS:
        if term in lowered:
            score -= 1
    return score
