from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, FrozenSet, Iterable, List, Optional, Tuple

from app.core.logging import get_logger
from app.models.mention import Mention

if TYPE_CHECKING:
    from services.mention_store import MentionStore

logger = get_logger()

DUPLICATE_WINDOW_HOURS = 48
DUPLICATE_THRESHOLD = 0.60
MIN_TOKEN_LENGTH = 4

STOP_WORDS: FrozenSet[str] = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "as", "is", "was", "are", "were", "been", "be", "has",
    "have", "had", "will", "would", "could", "should", "may", "might", "must", "can",
})

_NON_WORD_RE = re.compile(r"[^\w\s]")


@dataclass(frozen=True)
class NearDuplicateConfig:
    stop_words: FrozenSet[str] = STOP_WORDS
    window_hours: int = DUPLICATE_WINDOW_HOURS
    threshold: float = DUPLICATE_THRESHOLD
    min_token_length: int = MIN_TOKEN_LENGTH


DEFAULT_CONFIG = NearDuplicateConfig()


def normalize_content(text: Optional[str], config: NearDuplicateConfig = DEFAULT_CONFIG) -> List[str]:
    cleaned = _NON_WORD_RE.sub(" ", (text or "").lower())
    return [
        token
        for token in cleaned.split()
        if len(token) >= config.min_token_length and token not in config.stop_words
    ]


def similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard index over the distinct tokens of `a` and `b`."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


class NearDuplicateDetector:
    """
    Compares a candidate against every Mention of the same origin stored in
    the trailing window. Linear in the window size per candidate.
    """

    def __init__(
        self,
        store: "MentionStore",
        config: NearDuplicateConfig = DEFAULT_CONFIG,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock

    def _tokens(self, title: str, summary: Optional[str]) -> List[str]:
        return normalize_content(f"{title} {summary or ''}", self.config)

    async def find_match(
        self,
        title: str,
        summary: str,
        origin: str,
    ) -> Optional[Tuple[Mention, float]]:
        candidate = self._tokens(title, summary)
        since = int(self.clock()) - self.config.window_hours * 3600
        recent = await self.store.range_by_score(since, None)
        for mention in recent:
            if mention.origin != origin:
                continue
            score = similarity(candidate, self._tokens(mention.title, mention.summary))
            if score >= self.config.threshold:
                return mention, score
        return None

    async def is_duplicate(self, title: str, summary: str, origin: str) -> bool:
        try:
            match = await self.find_match(title, summary, origin)
        except Exception as exc:
            # lookup failures must not drop legitimate articles
            logger.warning("mention_duplicate_check_failed", origin=origin, error=str(exc))
            return False
        if match is None:
            return False
        existing, score = match
        logger.info(
            "mention_duplicate_story",
            origin=origin,
            title=title,
            similar_to=existing.title,
            similarity=round(score, 2),
        )
        return True
