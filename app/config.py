# app/config.py
from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env lives at the project root, next to configs/
ENV_FILE = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(ENV_FILE, override=False)


def _split_list(raw: Optional[str]) -> List[str]:
    """Split a comma/semicolon separated env value into trimmed, non-empty parts."""
    if not raw:
        return []
    parts = raw.replace(";", ",").split(",")
    return [part.strip() for part in parts if part.strip()]


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"

    # ---- Store ----
    DATABASE_URL: Optional[str] = None
    MENTION_STORE_BACKEND: str = "postgres"
    DB_POOL_MIN_SIZE: int = 1
    DB_POOL_MAX_SIZE: int = 4
    DB_QUERY_TIMEOUT_S: float = 30.0
    DB_STATEMENT_TIMEOUT_MS: int = 30000
    DB_LOCK_TIMEOUT_MS: int = 5000

    # ---- Feed reader ----
    MENTION_FEED_TIMEOUT_S: float = 10.0
    MENTION_FEED_DEADLINE_S: float = 30.0
    MENTION_INGEST_MAX_CONCURRENCY: int = 4

    # Legacy Google Alerts list; every URL lands in the google_alerts origin.
    RSS_FEEDS: Optional[str] = None

    # ---- Enrichment ----
    ENABLE_SENTIMENT: bool = False

    # ---- Classifiers ----
    BLOCKED_DOMAINS: Optional[str] = None
    INTERNATIONAL_MARKERS: Optional[str] = None

    # ---- Legislative tracker ----
    CONGRESS_API_KEY: Optional[str] = None
    CONGRESS_BILL_CONGRESS: str = "119"
    CONGRESS_BILL_TYPE: str = "hr"
    CONGRESS_BILL_NUMBER: str = "3838"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def legacy_feed_urls(self) -> List[str]:
        return _split_list(self.RSS_FEEDS)

    @property
    def blocked_domains(self) -> List[str]:
        return [d.lower() for d in _split_list(self.BLOCKED_DOMAINS)]

    @property
    def international_markers(self) -> List[str]:
        return [m.lower() for m in _split_list(self.INTERNATIONAL_MARKERS)]


settings = Settings()


def require_database_url() -> str:
    """
    Runtime check with a clear message when the Postgres store is selected without a DSN.
    """
    if not settings.DATABASE_URL:
        raise RuntimeError(
            "DATABASE_URL is missing. Set it in .env "
            f"(looked in: {ENV_FILE}) or choose MENTION_STORE_BACKEND=memory."
        )
    return settings.DATABASE_URL


def require_congress_api_key() -> str:
    if not settings.CONGRESS_API_KEY:
        raise RuntimeError(
            "CONGRESS_API_KEY is missing. Set it in .env "
            f"(looked in: {ENV_FILE})."
        )
    return settings.CONGRESS_API_KEY
