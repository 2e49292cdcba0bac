"""
Feed source registry loader.

Parses configs/mention_sources.yml into FeedSource objects, resolving each
origin's feed URL from the environment and its filter kind once, at load time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from app.config import settings
from app.core.logging import get_logger
from app.models.mention import DEFAULT_ID_PREFIX
from services.mention_feed_rules import DEFAULT_RULES, OriginKind

logger = get_logger()

THIS_FILE = Path(__file__).resolve()
APP_DIR = THIS_FILE.parent.parent  # app
REPO_ROOT = APP_DIR.parent
MENTION_SOURCES_YML = REPO_ROOT / "configs" / "mention_sources.yml"


@dataclass(frozen=True)
class FeedSource:
    """One monitored feed and the rules that apply to its items."""

    url: str
    origin: str
    section: str
    kind: OriginKind = OriginKind.DEFAULT
    filtered: bool = True
    id_prefix: str = DEFAULT_ID_PREFIX
    # Fixed display source; otherwise derived from each item's link host.
    source_label: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


def section_from_origin(origin: str) -> str:
    """delta_air_lines -> Delta Air Lines"""
    words = origin.replace("_", " ").split(" ")
    return " ".join(word[:1].upper() + word[1:] for word in words)


def load_mention_sources_config(path: Optional[Path] = None) -> Dict[str, object]:
    """
    Load raw YAML config.

    Returns empty dict if file is missing or invalid to keep workers running.
    """
    cfg_path = Path(path) if path else MENTION_SOURCES_YML
    try:
        text = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.error("mention_sources_config_not_found", path=str(cfg_path))
        return {}
    except OSError as exc:
        logger.error("mention_sources_config_read_error", path=str(cfg_path), error=str(exc))
        return {}

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        logger.error("mention_sources_config_parse_error", path=str(cfg_path), error=str(exc))
        return {}

    if not isinstance(data, dict):
        logger.error(
            "mention_sources_config_invalid_root",
            path=str(cfg_path),
            root_type=type(data).__name__,
        )
        return {}

    return data


@lru_cache(maxsize=8)
def _cached_config(path_str: str) -> Dict[str, object]:
    return load_mention_sources_config(Path(path_str))


def clear_mention_sources_cache() -> None:
    """Reset LRU cache (useful for tests)."""
    _cached_config.cache_clear()


def _parse_kind(value: object, origin: str) -> OriginKind:
    if isinstance(value, str) and value.strip():
        try:
            return OriginKind(value.strip().lower())
        except ValueError:
            logger.warning("mention_source_invalid_kind", origin=origin, kind=value)
    return DEFAULT_RULES.kind_for(origin)


def _parse_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return default


def _build_source(
    raw: Dict[str, Any],
    url: str,
    defaults: Dict[str, Any],
) -> Optional[FeedSource]:
    origin = str(raw.get("origin") or "").strip().lower()
    if not origin:
        logger.warning("mention_source_missing_origin", raw=raw)
        return None
    if not url.startswith(("http://", "https://")):
        logger.warning("mention_source_invalid_url", origin=origin, url=url)
        return None

    section = str(raw.get("section") or "").strip() or section_from_origin(origin)
    metadata = raw.get("metadata")
    source_label = raw.get("source_label")
    return FeedSource(
        url=url,
        origin=origin,
        section=section,
        kind=_parse_kind(raw.get("kind"), origin),
        filtered=_parse_bool(raw.get("filtered"), _parse_bool(defaults.get("filtered"), True)),
        id_prefix=str(raw.get("id_prefix") or defaults.get("id_prefix") or DEFAULT_ID_PREFIX),
        source_label=str(source_label).strip() if source_label else None,
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
    )


def get_feed_sources(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    legacy_urls: Optional[List[str]] = None,
) -> List[FeedSource]:
    """
    Every configured source whose feed URL is set. Origins without a URL are
    skipped silently; that is how a deployment turns an origin off.
    """
    environ = os.environ if env is None else env
    cfg_path = Path(path) if path else MENTION_SOURCES_YML
    cfg = _cached_config(str(cfg_path.resolve()))
    defaults = cfg.get("defaults") or {}
    defaults_dict = defaults if isinstance(defaults, dict) else {}
    raw_sources = cfg.get("sources") or []
    if not isinstance(raw_sources, list):
        logger.error(
            "mention_sources_invalid_sources_type",
            actual_type=type(raw_sources).__name__,
            path=str(cfg_path),
        )
        raw_sources = []

    result: List[FeedSource] = []
    for idx, raw in enumerate(raw_sources):
        if not isinstance(raw, dict):
            logger.warning("mention_source_invalid_entry_type", index=idx, value_type=type(raw).__name__)
            continue
        feed_env = str(raw.get("feed_env") or "").strip()
        url = (environ.get(feed_env) or "").strip() if feed_env else str(raw.get("url") or "").strip()
        if not url:
            continue
        parsed = _build_source(raw, url, defaults_dict)
        if parsed:
            result.append(parsed)

    legacy = cfg.get("legacy") or {}
    legacy_dict = legacy if isinstance(legacy, dict) else {}
    urls = settings.legacy_feed_urls if legacy_urls is None else legacy_urls
    for url in urls:
        raw_legacy = {"origin": "google_alerts", "section": "Google Alerts", **legacy_dict}
        parsed = _build_source(raw_legacy, url, defaults_dict)
        if parsed:
            result.append(parsed)

    logger.info("mention_sources_loaded", path=str(cfg_path), total=len(result))
    return result
