"""
Legislative tracker: one bill, re-derived on every poll.

The bill is a single logical entity, so each poll replaces the stored
snapshot by id instead of going through insert-if-new (which would keep the
first snapshot forever).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from dateutil import parser as date_parser

from app.config import require_congress_api_key, settings
from app.core.logging import get_logger
from app.models.mention import Mention, build_mention
from services.mention_store import MentionStore, retention_cutoff
from services.url_canonicalizer import canonicalize

logger = get_logger()

CONGRESS_API_BASE = "https://api.congress.gov/v3"
CONGRESS_ID_PREFIX = "congress_"
CONGRESS_ORIGIN = "congress"
CONGRESS_SECTION = "Congress.gov"
DEFAULT_TIMEOUT_S = 15.0

# API bill type -> congress.gov page segment
BILL_TYPE_PATHS = {
    "hr": "house-bill",
    "s": "senate-bill",
    "hres": "house-resolution",
    "sres": "senate-resolution",
    "hjres": "house-joint-resolution",
    "sjres": "senate-joint-resolution",
    "hconres": "house-concurrent-resolution",
    "sconres": "senate-concurrent-resolution",
}

MILESTONE_LABELS = (
    ("conference_committee", "Conference Committee"),
    ("conference_report_filed", "Conference Report Filed"),
    ("house_vote_completed", "House Vote"),
    ("senate_vote_completed", "Senate Vote"),
    ("sent_to_president", "Sent to President"),
    ("signed_into_law", "SIGNED INTO LAW"),
)


class CongressTrackerError(Exception):
    """Bill details could not be fetched; the poll is abandoned."""


@dataclass(frozen=True)
class TrackedBill:
    congress: str
    bill_type: str
    number: str

    @property
    def label(self) -> str:
        return f"{self.bill_type.upper()} {self.number}"

    @property
    def public_url(self) -> str:
        segment = BILL_TYPE_PATHS.get(self.bill_type.lower(), self.bill_type.lower())
        return f"https://www.congress.gov/bill/{self.congress}th-congress/{segment}/{self.number}"

    @classmethod
    def from_settings(cls) -> "TrackedBill":
        return cls(
            congress=settings.CONGRESS_BILL_CONGRESS,
            bill_type=settings.CONGRESS_BILL_TYPE.lower(),
            number=settings.CONGRESS_BILL_NUMBER,
        )


def detect_milestones(actions: Optional[List[Dict[str, Any]]]) -> Dict[str, bool]:
    milestones = {
        "conference_committee": False,
        "conference_report_filed": False,
        "house_vote_scheduled": False,
        "house_vote_completed": False,
        "senate_vote_scheduled": False,
        "senate_vote_completed": False,
        "sent_to_president": False,
        "signed_into_law": False,
    }
    if not isinstance(actions, list):
        return milestones

    for action in actions:
        text = str((action or {}).get("text") or "").lower()

        if "conference committee" in text or "conferees appointed" in text:
            milestones["conference_committee"] = True
        if "conference report filed" in text or "conference report submitted" in text:
            milestones["conference_report_filed"] = True
        if "house" in text and ("scheduled" in text or "rule provides" in text):
            milestones["house_vote_scheduled"] = True
        if "house" in text and ("passed" in text or "agreed to" in text or "on passage" in text):
            milestones["house_vote_completed"] = True
        if "senate" in text and "scheduled" in text:
            milestones["senate_vote_scheduled"] = True
        if "senate" in text and ("passed" in text or "agreed to" in text):
            milestones["senate_vote_completed"] = True
        if "presented to president" in text or "sent to president" in text:
            milestones["sent_to_president"] = True
        if "signed by president" in text or "became public law" in text:
            milestones["signed_into_law"] = True

    return milestones


def _to_epoch(value: Optional[str], now: float) -> int:
    if value:
        try:
            parsed = date_parser.parse(value)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp())
        except (ValueError, OverflowError):
            pass
    return int(now)


def build_bill_mention(
    tracked: TrackedBill,
    bill: Dict[str, Any],
    amendments: List[Dict[str, Any]],
    *,
    now: Optional[float] = None,
) -> Mention:
    current = now if now is not None else time.time()
    actions_block = bill.get("actions")
    actions = actions_block.get("actions") if isinstance(actions_block, dict) else None
    milestones = detect_milestones(actions)

    latest = bill.get("latestAction") or {}
    latest_action = latest.get("text") or "No recent action"
    action_date = latest.get("actionDate") or datetime.fromtimestamp(current, tz=timezone.utc).isoformat()
    ts = _to_epoch(action_date, current)

    reached = [f"✓ {label}" for key, label in MILESTONE_LABELS if milestones[key]]
    milestone_text = " | ".join(reached) if reached else "No milestones reached yet"
    bill_title = bill.get("title") or ""
    summary = (
        f"{bill_title}\n\n"
        f"Latest Action ({action_date}): {latest_action}\n\n"
        f"Milestones: {milestone_text}\n\n"
        f"Amendments: {len(amendments)}"
    )

    link = tracked.public_url
    return build_mention(
        canon=canonicalize(link),
        section=CONGRESS_SECTION,
        title=f"{tracked.label}: {bill_title}",
        link=link,
        source=CONGRESS_SECTION,
        summary=summary,
        origin=CONGRESS_ORIGIN,
        published_ts=ts,
        id_prefix=CONGRESS_ID_PREFIX,
        matched=["congress", f"{tracked.bill_type}{tracked.number}"],
        bill_number=tracked.label,
        congress_number=tracked.congress,
        milestones=milestones,
        amendments_count=len(amendments),
        latest_action=latest_action,
        latest_action_date=action_date,
    )


class CongressClient:
    def __init__(
        self,
        api_key: str,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=CONGRESS_API_BASE,
            timeout=timeout_s,
            headers={"X-Api-Key": api_key, "Accept": "application/json"},
            params={"format": "json"},
            transport=transport,
        )

    async def __aenter__(self) -> "CongressClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self._client.aclose()

    async def fetch_bill(self, tracked: TrackedBill) -> Optional[Dict[str, Any]]:
        path = f"/bill/{tracked.congress}/{tracked.bill_type}/{tracked.number}"
        try:
            response = await self._client.get(path)
            response.raise_for_status()
            return response.json().get("bill")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("congress_bill_fetch_failed", bill=tracked.label, error=str(exc))
            return None

    async def fetch_amendments(self, tracked: TrackedBill) -> List[Dict[str, Any]]:
        path = f"/bill/{tracked.congress}/{tracked.bill_type}/{tracked.number}/amendments"
        try:
            response = await self._client.get(path)
            response.raise_for_status()
            return response.json().get("amendments") or []
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("congress_amendments_fetch_failed", bill=tracked.label, error=str(exc))
            return []


async def track_bill(
    store: MentionStore,
    client: CongressClient,
    tracked: Optional[TrackedBill] = None,
    *,
    clock: Callable[[], float] = time.time,
) -> Dict[str, Any]:
    tracked = tracked or TrackedBill.from_settings()
    bill = await client.fetch_bill(tracked)
    if not bill:
        raise CongressTrackerError(f"failed to fetch bill details for {tracked.label}")
    amendments = await client.fetch_amendments(tracked)

    now = clock()
    mention = build_bill_mention(tracked, bill, amendments, now=now)
    result = await store.upsert(mention)
    await store.trim_older_than(retention_cutoff(now))

    extra = mention.model_extra or {}
    logger.info(
        "congress_bill_updated",
        bill=tracked.label,
        replaced=result.replaced,
        amendments_count=len(amendments),
    )
    return {
        "ok": True,
        "bill": tracked.label,
        "congress": tracked.congress,
        "milestones": extra.get("milestones"),
        "amendments_count": len(amendments),
        "latest_action": extra.get("latest_action"),
        "latest_action_date": extra.get("latest_action_date"),
        "replaced": result.replaced,
    }


async def run_congress_tracker(store: MentionStore) -> Dict[str, Any]:
    api_key = require_congress_api_key()
    async with CongressClient(api_key) as client:
        return await track_bill(store, client)
