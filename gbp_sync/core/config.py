"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    database_url: str
    places_api_key: str = ""
    server_port: int = 9000
    max_pages: int = 20
    max_workers: int = 8
    sync_timeout_seconds: float = 60.0
    http_timeout_seconds: float = 15.0
    performance_lookback_months: int = 6
    oauth_redirect_uri: str = ""


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    places_api_key = os.getenv("GOOGLE_PLACES_API_KEY", "")
    server_port = int(os.getenv("SYNC_SERVER_PORT", "9000"))
    max_pages = int(os.getenv("SYNC_MAX_PAGES", "20"))
    max_workers = int(os.getenv("SYNC_MAX_WORKERS", "8"))
    sync_timeout_seconds = float(os.getenv("SYNC_TIMEOUT_SECONDS", "60"))
    http_timeout_seconds = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))
    performance_lookback_months = int(os.getenv("PERFORMANCE_LOOKBACK_MONTHS", "6"))
    oauth_redirect_uri = os.getenv("OAUTH_REDIRECT_URI", "")

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not places_api_key:
        logger.warning("GOOGLE_PLACES_API_KEY is not configured; the Places rating fallback is disabled.")
    if not oauth_redirect_uri:
        logger.warning("OAUTH_REDIRECT_URI is not configured; the authorization callback cannot exchange codes.")
    if max_pages < 1:
        logger.warning("SYNC_MAX_PAGES=%d is below 1; using 1.", max_pages)
        max_pages = 1

    return Settings(
        database_url=database_url,
        places_api_key=places_api_key,
        server_port=server_port,
        max_pages=max_pages,
        max_workers=max_workers,
        sync_timeout_seconds=sync_timeout_seconds,
        http_timeout_seconds=http_timeout_seconds,
        performance_lookback_months=performance_lookback_months,
        oauth_redirect_uri=oauth_redirect_uri,
    )
