from __future__ import annotations

import pytest

from app.models.mention import RawItem, mention_id_from_canonical
from services.url_canonicalizer import (
    canonicalize,
    display_source,
    resolve_item_link,
    unwrap_redirector,
)


@pytest.mark.parametrize(
    "link",
    [
        "https://Example.com/a?utm_source=x#frag",
        "https://example.com/",
        "https://example.com//",
        "HTTPS://News.Example.com/path/?b=2&a=1&fbclid=zzz",
        "https://example.com/search?q=hello world&ref=home",
        "https://example.com/a?flag",
        "not a url at all  ",
        "",
        "http://[broken",
    ],
)
def test_canonicalize_is_idempotent(link):
    once = canonicalize(link)
    assert canonicalize(once) == once


def test_tracking_params_fragment_and_host_case_collapse():
    assert canonicalize("https://Example.com/a?utm_source=x#frag") == canonicalize("https://example.com/a")
    assert canonicalize("https://example.com/a") == "https://example.com/a"


def test_canonicalize_strips_every_tracking_param_but_keeps_real_ones():
    link = (
        "https://example.com/story?id=42&utm_medium=email&utm_campaign=c"
        "&mc_cid=1&mc_eid=2&ref=rss&fbclid=f&gclid=g&igshid=i"
    )
    assert canonicalize(link) == "https://example.com/story?id=42"


def test_canonicalize_removes_trailing_slash_and_empty_query():
    assert canonicalize("https://example.com/story/?") == "https://example.com/story"
    assert canonicalize("https://example.com") == "https://example.com"


def test_canonicalize_fails_open_on_garbage():
    assert canonicalize("  just a headline ") == "just a headline"
    assert canonicalize("http://[broken") == "http://[broken"
    assert canonicalize(None) == ""


def test_unwrap_google_redirect():
    wrapped = "https://www.google.com/url?rct=j&sa=t&url=https://news.example.com/a%3Fx%3D1&ct=ga"
    assert unwrap_redirector(wrapped) == "https://news.example.com/a?x=1"

    wrapped_q = "https://google.com/url?q=https://other.example.org/b"
    assert unwrap_redirector(wrapped_q) == "https://other.example.org/b"


def test_unwrap_leaves_other_links_alone():
    assert unwrap_redirector("https://www.google.com/search?q=delta") == "https://www.google.com/search?q=delta"
    assert unwrap_redirector("https://example.com/url?q=https://x.y") == "https://example.com/url?q=https://x.y"


def test_resolve_item_link_prefers_link_over_id():
    item = RawItem(link="https://example.com/a", entry_id="https://example.com/b")
    assert resolve_item_link(item) == "https://example.com/a"

    fallback = RawItem(entry_id="https://example.com/b")
    assert resolve_item_link(fallback) == "https://example.com/b"


def test_resolve_item_link_builds_youtube_watch_url_from_id():
    item = RawItem(entry_id="yt:video:dQw4w9WgXcQ")
    assert resolve_item_link(item) == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

    explicit = RawItem(video_id="dQw4w9WgXcQ")
    assert resolve_item_link(explicit) == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def test_resolve_item_link_keeps_full_youtube_urls():
    item = RawItem(link="https://www.youtube.com/watch?v=dQw4w9WgXcQ", video_id="dQw4w9WgXcQ")
    assert resolve_item_link(item) == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def test_resolve_item_link_unwraps_alert_links():
    item = RawItem(link="https://www.google.com/url?url=https://www.example.com/story")
    assert resolve_item_link(item) == "https://www.example.com/story"


def test_display_source_strips_www_and_amp():
    assert display_source("https://www.Example.com/a", "Feed") == "example.com"
    assert display_source("https://amp.news.example.com/a", "Feed") == "news.example.com"
    assert display_source("not-a-link", "Feed Title") == "Feed Title"
    assert display_source("", None) == ""


def test_mention_id_is_stable_rolling_hash():
    assert mention_id_from_canonical("a") == "m_61"
    assert mention_id_from_canonical("ab") == "m_c21"
    assert mention_id_from_canonical("ab", "law360_") == "law360_c21"
    first = mention_id_from_canonical("https://example.com/a")
    assert first == mention_id_from_canonical("https://example.com/a")
    assert first != mention_id_from_canonical("https://example.com/b")
