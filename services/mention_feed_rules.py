from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Pattern, Sequence, Tuple

from app.core.logging import get_logger
from services.domain_classifiers import BlocklistPredicate, InternationalPredicate

logger = get_logger()


class OriginKind(str, Enum):
    AIRLINE = "airline"
    ACCEPT_ALL = "accept_all"
    BRAND = "brand"
    MARKETPLACE = "marketplace"
    DEFAULT = "default"


PRESS_RELEASE_MARKERS: Tuple[str, ...] = (
    "prnewswire", "pr newswire", "business wire", "businesswire",
    "pr web", "prweb", "globenewswire", "globe newswire",
    "accesswire", "press release", "news release",
)


@dataclass(frozen=True)
class UniversalRules:
    earnings_snapshot: Pattern[str] = re.compile(r"Earnings Snapshot")
    opinion_lead_ins: Tuple[str, ...] = (
        "opinion:", "op-ed:", "commentary:", "editorial:", "column:",
        "guest column", "my view:", "viewpoint:", "perspective:",
        "letter to", "letters:", "i believe", "in my opinion",
        "we need to", "it's time to", "why we should", "why we must",
    )
    opinion_url_segments: Tuple[str, ...] = (
        "/opinion/", "/commentary/", "/op-ed/", "/editorial/", "/columns/",
    )
    shopping: Tuple[str, ...] = (
        "on sale for", "buy now and save", "limited time offer",
        "shop the collection", "shop now", "save up to",
        "discount code", "promo code", "coupon code",
        "free shipping", "best deals", "price drop",
    )
    price_in_title: Pattern[str] = re.compile(r"\$\d+(\.\d{2})?")
    stock_keywords: Tuple[str, ...] = (
        "stock price", "share price", "stock rises", "stock falls", "stock drops",
        "shares rise", "shares fall", "shares drop", "stock jumps", "stock climbs",
        "trading at", "trades at", "market cap", "stock market", "wall street",
        "stock analyst", "price target", "earnings per share", "eps", "stock ticker",
        "nasdaq", "nyse", "dow jones", "stock rallies", "stock plunges",
        "investors", "shareholders", "stock performance", "quarterly earnings",
        "stock rating", "buy rating", "sell rating", "hold rating",
        "pre-market", "after-hours trading", "stock watch", "market watch",
    )
    stock_title_phrases: Tuple[str, ...] = (
        "stock up", "stock down", "shares up", "shares down",
        "gains on", "drops on", "stock cheap", "stock expensive",
        "stock performs", "stock move", "stock climbs", "stock falls",
        "stock outlook", "stock forecast", "stock analysis", "stock valuation",
    )


@dataclass(frozen=True)
class AirlineRules:
    incident: Tuple[str, ...] = (
        "incident", "crash", "emergency", "accident", "diverted", "grounded",
        "delayed", "cancellation", "mechanical issue", "safety concern",
        "investigation", "turbulence", "forced landing", "engine failure",
        "medical emergency", "unruly passenger",
    )
    route: Tuple[str, ...] = (
        "new route", "adds service", "launches flight", "new destination",
        "expands service", "adds flight", "inaugural flight", "direct flight to",
        "nonstop service", "new nonstop", "will fly to", "service to",
        "announces route", "route from", "route to", "flights to",
        "flights from", "adding flights", "new flights", "begins service",
        "starts service", "route expansion", "flight schedule", "new service to",
        "increases flights", "increases service", "adds daily flight",
        "cuts service", "ends operations at", "exits market", "suspends flights",
    )
    airport_security: Tuple[str, ...] = (
        "tsa investigating", "tsa finds", "tsa discovered", "tsa checkpoint",
        "security checkpoint", "airport security", "screeners found",
        "went through security", "hazardous item", "weapon found", "security breach",
    )
    generic_industry: Tuple[str, ...] = (
        "airlines will not have to", "airlines must", "airlines face",
        "airline industry", "aviation industry", "carriers including",
        "among airlines", "airlines like delta", "delta and other airlines",
        "major airlines", "u.s. airlines", "domestic carriers",
    )
    generic_regulator: Tuple[str, ...] = (
        "faa ends", "faa lifts", "faa issues", "faa requires",
        "flight restriction order", "airspace restriction", "faa rule",
    )


@dataclass(frozen=True)
class BrandRules:
    geographic_false_positives: Tuple[str, ...] = (
        "albemarle county", "albemarle, nc", "albemarle north carolina",
        "city of albemarle", "charlottesville", "albemarle sound",
        "albemarle road", "albemarle st", "albemarle street", "albemarle ave",
        "zoning", "rezoning", "land use", "parcel", "planning board",
    )
    # Any single hit proves the article is about the company; " alb " is the
    # ticker with surrounding spaces.
    identity_terms: Tuple[str, ...] = (
        "corporation", "corp.", "company", "albemarle corp", " alb ",
        "lithium", "chemical", "kings mountain",
    )
    # Every term of one group must appear (HQ reference).
    identity_groups: Tuple[Tuple[str, ...], ...] = (("charlotte", "based"),)


@dataclass(frozen=True)
class MarketplaceRules:
    ticket_guide: Tuple[str, ...] = (
        "how to get tickets", "how to buy", "where to buy tickets",
        "ticket guide", "buying guide", "purchase tickets",
        "get your tickets", "buy tickets", "tickets available",
        "on sale now", "tickets on sale", "cheapest tickets",
        "best way to get", "how to find tickets",
    )
    event_recap: Tuple[str, ...] = (
        # sports
        "game preview", "game recap", "match preview", "match recap",
        "starting lineup", "injury report", "game day", "matchup",
        "vs.", "vs ", " v ", " @ ",
        "score", "final score", "box score", "play-by-play",
        "postgame", "pregame", "halftime", "overtime",
        "wins", "loses", "defeats", "beats", "victory", "defeated",
        "touchdown", "home run", "goal", "basket", "points scored",
        "playoff", "championship game", "world series", "super bowl",
        "nba game", "nfl game", "mlb game", "nhl game", "mls game",
        "sports event", "sporting event", "game tonight", "game tomorrow",
        "season opener", "season finale", "game highlights", "game results",
        "team wins", "team loses", "game score", "final result",
        # concerts
        "concert review", "concert recap", "setlist",
        "performs at", "performed at", "performance at",
        "takes the stage", "opening act", "headliner",
        "tour stops", "tour date", "concert venue",
        "live performance", "live show", "sold out show",
        "encore", "acoustic set", "concert tonight", "concert tomorrow",
        "show tonight", "show tomorrow", "music event",
        # generic coverage
        "event recap", "event review", "event highlights",
        "what happened at", "photos from", "watch highlights",
        "event coverage", "event results", "event tonight",
    )
    # The bare brand name is not on this list: every article mentions it.
    business_override: Tuple[str, ...] = (
        "stubhub fees", "stubhub pricing", "service charge", "platform",
        "marketplace", "resale", "secondary market",
        "ticket platform", "ticket marketplace", "dynamic pricing",
        "all-in pricing", "transparency", "price guarantee",
        "ticket protection", "fanprotect", "customer service",
        "refund policy", "ticket delivery", "mobile tickets",
        "stubhub ceo", "stubhub lawsuit", "stubhub settlement",
        "stubhub acquisition", "stubhub merger", "stubhub revenue",
        "stubhub investigation", "stubhub probe", "watchdog", "antitrust",
    )


DEFAULT_ORIGIN_KINDS: Mapping[str, OriginKind] = MappingProxyType({
    "delta_air_lines": OriginKind.AIRLINE,
    "guardant_health": OriginKind.ACCEPT_ALL,
    "albemarle": OriginKind.BRAND,
    "stubhub": OriginKind.MARKETPLACE,
})


@dataclass(frozen=True)
class FilterRules:
    """Immutable rule tables, built once per process and injected into the chain."""

    press_release_markers: Tuple[str, ...] = PRESS_RELEASE_MARKERS
    universal: UniversalRules = field(default_factory=UniversalRules)
    airline: AirlineRules = field(default_factory=AirlineRules)
    brand: BrandRules = field(default_factory=BrandRules)
    marketplace: MarketplaceRules = field(default_factory=MarketplaceRules)
    origin_kinds: Mapping[str, OriginKind] = field(default_factory=lambda: DEFAULT_ORIGIN_KINDS)

    def kind_for(self, origin: Optional[str]) -> OriginKind:
        return self.origin_kinds.get(_normalize_origin(origin), OriginKind.DEFAULT)


DEFAULT_RULES = FilterRules()


def _normalize_origin(value: Optional[str]) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def _contains_any(text: str, needles: Sequence[str]) -> bool:
    return any(needle in text for needle in needles)


def is_press_release(
    title: str,
    summary: str,
    source: str,
    markers: Sequence[str] = PRESS_RELEASE_MARKERS,
) -> bool:
    text = f"{title} {summary} {source}".lower()
    return _contains_any(text, markers)


def universal_rejection(
    rules: UniversalRules,
    title: str,
    summary: str,
    link: Optional[str],
) -> Optional[str]:
    text = f"{title} {summary}".lower()
    title_lower = title.lower()

    if rules.earnings_snapshot.search(title):
        return "earnings_snapshot"

    if _contains_any(title_lower, rules.opinion_lead_ins):
        return "opinion"
    if link and _contains_any(link.lower(), rules.opinion_url_segments):
        return "opinion"

    if _contains_any(text, rules.shopping) or rules.price_in_title.search(title_lower):
        return "shopping"

    if _contains_any(text, rules.stock_keywords) or _contains_any(title_lower, rules.stock_title_phrases):
        return "stock_market"

    return None


def airline_rejection(rules: AirlineRules, text: str) -> Optional[str]:
    if _contains_any(text, rules.incident):
        return "airline_incident"
    if _contains_any(text, rules.route):
        return "airline_route"
    if _contains_any(text, rules.airport_security):
        return "airport_security"
    if _contains_any(text, rules.generic_industry):
        return "airline_industry"
    if _contains_any(text, rules.generic_regulator):
        return "airline_regulator"
    return None


def brand_rejection(rules: BrandRules, text: str) -> Optional[str]:
    if _contains_any(text, rules.geographic_false_positives):
        return "brand_geographic"
    if _contains_any(text, rules.identity_terms):
        return None
    if any(all(term in text for term in group) for group in rules.identity_groups):
        return None
    return "brand_not_corporate"


def marketplace_rejection(rules: MarketplaceRules, text: str) -> Optional[str]:
    if _contains_any(text, rules.ticket_guide):
        return "ticket_guide"
    if _contains_any(text, rules.event_recap) and not _contains_any(text, rules.business_override):
        return "event_recap"
    return None


def origin_rejection(
    kind: OriginKind,
    title: str,
    summary: str,
    source: str,
    link: Optional[str],
    rules: FilterRules = DEFAULT_RULES,
) -> Optional[str]:
    """
    Decision table for one origin kind. Universal rules run first; then exactly
    one per-origin branch. Returns a short reason on rejection, None to accept.
    """
    reason = universal_rejection(rules.universal, title, summary, link)
    if reason:
        return reason

    text = f"{title} {summary}".lower()
    if kind == OriginKind.AIRLINE:
        return airline_rejection(rules.airline, text)
    if kind == OriginKind.ACCEPT_ALL:
        return None
    if kind == OriginKind.BRAND:
        return brand_rejection(rules.brand, text)
    if kind == OriginKind.MARKETPLACE:
        return marketplace_rejection(rules.marketplace, text)
    return None


def should_filter(
    origin: str,
    title: str,
    summary: str,
    source: str,
    link: Optional[str],
    rules: FilterRules = DEFAULT_RULES,
) -> bool:
    """Pure helper: True when the origin-specific table rejects the item."""
    return origin_rejection(rules.kind_for(origin), title, summary, source, link, rules) is not None


class ContentFilterChain:
    """
    Ordered accept/reject stages. The first stage that rejects wins:
    press release, blocked domain, international, origin table.
    """

    def __init__(
        self,
        rules: FilterRules = DEFAULT_RULES,
        *,
        blocklist: Optional[BlocklistPredicate] = None,
        international: Optional[InternationalPredicate] = None,
    ) -> None:
        self.rules = rules
        self.blocklist = blocklist
        self.international = international

    def _predicate(self, name: str, func, *args) -> bool:
        try:
            return bool(func(*args))
        except Exception as exc:
            # external classifiers fail open
            logger.warning("mention_filter_predicate_failed", predicate=name, error=str(exc))
            return False

    def rejection_reason(
        self,
        kind: OriginKind,
        title: str,
        summary: str,
        source: str,
        link: str,
    ) -> Optional[str]:
        if is_press_release(title, summary, source, self.rules.press_release_markers):
            return "press_release"
        if self.blocklist is not None and self._predicate(
            "blocklist", self.blocklist.is_blocked, link
        ):
            return "blocked_domain"
        if self.international is not None and self._predicate(
            "international", self.international.is_international, title, summary, link, source
        ):
            return "international"
        return origin_rejection(kind, title, summary, source, link, self.rules)
