from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_ID_PREFIX = "m_"


class RawItem(BaseModel):
    """
    One feed entry as handed over by the feed reader, before any link
    resolution or filtering. Never persisted.
    """

    title: str = ""
    link: str = ""
    entry_id: str = ""
    # Platform short id (YouTube feeds carry yt:videoId)
    video_id: str = ""
    summary: str = ""
    media_description: str = ""
    published_at: Optional[datetime] = None
    raw_metadata: Dict[str, Any] = Field(default_factory=dict)


class Mention(BaseModel):
    """
    Persisted story observation. Serialized as a flat record; producers may
    attach origin-specific metadata (bill milestones, provider, reach, ...),
    which is kept as extra fields.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    canon: str
    section: str
    title: str
    link: str
    source: str
    summary: str = ""
    origin: str
    published_ts: int
    published: str
    sentiment: Optional[int] = None

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Mention":
        return cls.model_validate(record)


def mention_id_from_canonical(canon: str, prefix: str = DEFAULT_ID_PREFIX) -> str:
    """
    Stable 32-bit rolling hash (h * 31 + unit) over the UTF-16 code units of
    the canonical URL, rendered as lowercase hex behind `prefix`.
    """
    data = canon.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    return f"{prefix}{h:x}"


def epoch_to_iso(ts: int) -> str:
    return (
        datetime.fromtimestamp(ts, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def build_mention(
    *,
    canon: str,
    section: str,
    title: str,
    link: str,
    source: str,
    summary: str,
    origin: str,
    published_ts: int,
    id_prefix: str = DEFAULT_ID_PREFIX,
    sentiment: Optional[int] = None,
    **metadata: Any,
) -> Mention:
    """Single construction path shared by the RSS orchestrator and direct producers."""
    return Mention(
        id=mention_id_from_canonical(canon, id_prefix),
        canon=canon,
        section=section,
        title=title or "(untitled)",
        link=link,
        source=source,
        summary=summary or "",
        origin=origin,
        published_ts=int(published_ts),
        published=epoch_to_iso(int(published_ts)),
        sentiment=sentiment,
        **metadata,
    )
