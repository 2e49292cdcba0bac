"""
Link normalization for mention dedup.

`canonicalize` produces the comparison key stored in the exact-URL index;
the remaining helpers turn a raw feed entry into the link and display source
that end up on a Mention.
"""

from __future__ import annotations

import re
from typing import Optional, Sequence, Tuple
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit, urlunsplit

from app.models.mention import RawItem

TRACKING_PARAM_PREFIXES: Tuple[str, ...] = ("utm_",)
TRACKING_PARAMS = frozenset({"mc_cid", "mc_eid", "ref", "fbclid", "gclid", "igshid"})

# (host suffix, path, destination query params in priority order)
REDIRECT_WRAPPERS: Tuple[Tuple[str, str, Sequence[str]], ...] = (
    ("google.com", "/url", ("q", "url")),
)

YOUTUBE_HOST_MARKERS = ("youtube.com", "youtu.be")
YOUTUBE_ID_PREFIX = "yt:video:"
_YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_HAS_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_HOST_PREFIX_RE = re.compile(r"^(www\.|amp\.)")


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PARAM_PREFIXES)


def _lower_host(netloc: str) -> str:
    userinfo, sep, hostport = netloc.rpartition("@")
    return f"{userinfo}{sep}{hostport.lower()}"


def canonicalize(link: Optional[str]) -> str:
    """
    Stable comparison key for a link: lowercase scheme/host, no fragment,
    no tracking params, no empty query, no trailing slash. Anything that does
    not parse as an absolute URL comes back trimmed but otherwise untouched.
    """
    raw = (link or "").strip()
    try:
        parts = urlsplit(raw)
        if not parts.scheme or not parts.netloc:
            return raw
        query_pairs = [
            (key, value)
            for key, value in parse_qsl(parts.query, keep_blank_values=True)
            if not _is_tracking_param(key)
        ]
        rebuilt = urlunsplit(
            (
                parts.scheme.lower(),
                _lower_host(parts.netloc),
                parts.path or "/",
                urlencode(query_pairs),
                "",
            )
        )
    except ValueError:
        return raw
    # rstrip keeps "a//" and "a/" on the same key
    return rebuilt.rstrip("/")


def host_of(link: Optional[str]) -> str:
    try:
        return (urlsplit((link or "").strip()).hostname or "").lower()
    except ValueError:
        return ""


def normalize_host(host: Optional[str]) -> str:
    return _HOST_PREFIX_RE.sub("", (host or "").lower())


def unwrap_redirector(link: str) -> str:
    """Return the destination of a known redirect shim, or `link` unchanged."""
    try:
        parts = urlsplit(link)
    except ValueError:
        return link
    host = (parts.hostname or "").lower()
    for host_suffix, path, params in REDIRECT_WRAPPERS:
        if host.endswith(host_suffix) and parts.path == path:
            query = parse_qs(parts.query)
            for param in params:
                values = query.get(param)
                if values and values[0]:
                    return values[0]
            return link
    return link


def build_youtube_watch_url(value: str) -> str:
    value = (value or "").strip()
    if _HAS_SCHEME_RE.match(value):
        return value
    if _YOUTUBE_ID_RE.match(value):
        return f"https://www.youtube.com/watch?v={value}"
    return value


def _youtube_id(item: RawItem) -> str:
    if item.video_id:
        return item.video_id.strip()
    if item.entry_id.startswith(YOUTUBE_ID_PREFIX):
        return item.entry_id[len(YOUTUBE_ID_PREFIX):].strip()
    return ""


def resolve_item_link(item: RawItem) -> str:
    """
    Explicit link first, entry id as fallback; unwrap redirect shims, then
    turn bare YouTube ids into watch URLs.
    """
    raw = item.link.strip() or item.entry_id.strip()
    raw = unwrap_redirector(raw)

    video_id = _youtube_id(item)
    if not _HAS_SCHEME_RE.match(raw) and video_id:
        raw = build_youtube_watch_url(video_id)
    else:
        host = host_of(raw)
        if any(marker in host for marker in YOUTUBE_HOST_MARKERS):
            raw = build_youtube_watch_url(raw)
    return (raw or "").strip()


def display_source(link: str, fallback: Optional[str] = None) -> str:
    host = normalize_host(host_of(link))
    return host or (fallback or "")
