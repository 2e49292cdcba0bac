from __future__ import annotations

from typing import Iterable, Protocol

from app.config import settings
from services.url_canonicalizer import host_of, normalize_host


class BlocklistPredicate(Protocol):
    def is_blocked(self, url: str) -> bool: ...


class InternationalPredicate(Protocol):
    def is_international(self, title: str, summary: str, url: str, source: str) -> bool: ...


class DomainBlocklist:
    """Blocks a host and all of its subdomains."""

    def __init__(self, domains: Iterable[str] = ()) -> None:
        self.domains = frozenset(normalize_host(d.strip()) for d in domains if d and d.strip())

    def is_blocked(self, url: str) -> bool:
        host = normalize_host(host_of(url))
        if not host:
            return False
        return any(host == d or host.endswith("." + d) for d in self.domains)


class MarkerInternationalClassifier:
    """
    Flags an article as international when its text or URL carries one of the
    configured markers (e.g. "/world/", "uk.", "london"). With no markers it
    never fires.
    """

    def __init__(self, markers: Iterable[str] = ()) -> None:
        self.markers = tuple(m.lower() for m in markers if m)

    def is_international(self, title: str, summary: str, url: str, source: str) -> bool:
        if not self.markers:
            return False
        text = f"{title} {summary} {url} {source}".lower()
        return any(marker in text for marker in self.markers)


def default_blocklist() -> DomainBlocklist:
    return DomainBlocklist(settings.blocked_domains)


def default_international_classifier() -> MarkerInternationalClassifier:
    return MarkerInternationalClassifier(settings.international_markers)
