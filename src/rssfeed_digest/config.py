"""Environment-driven configuration for RSS Feed Digest."""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "rssfeed_digest.db"
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


@dataclass
class PipelineConfig:
    """Tunable defaults for the ingestion-to-delivery pipeline."""

    db_path: str = DEFAULT_DB_PATH
    fetch_timeout: float = 15.0
    max_redirects: int = 10
    fetch_retries: int = 2
    retry_backoff: float = 1.0
    recency_hours: int = 24
    max_items_per_feed: int = 10
    article_char_limit: int = 2000
    model: str = DEFAULT_MODEL
    max_tokens: int = 2000
    llm_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build a config from environment variables, keeping defaults for bad values."""
        defaults = cls()
        return cls(
            db_path=os.environ.get("RSS_DB_PATH", defaults.db_path),
            fetch_timeout=_env_number("FEED_FETCH_TIMEOUT", defaults.fetch_timeout, float),
            max_redirects=_env_number("FEED_MAX_REDIRECTS", defaults.max_redirects, int),
            fetch_retries=_env_number(
                "FEED_FETCH_RETRIES", defaults.fetch_retries, int, allow_zero=True
            ),
            retry_backoff=_env_number(
                "FEED_RETRY_BACKOFF", defaults.retry_backoff, float, allow_zero=True
            ),
            recency_hours=_env_number("DIGEST_RECENCY_HOURS", defaults.recency_hours, int),
            max_items_per_feed=_env_number(
                "DIGEST_MAX_ITEMS_PER_FEED", defaults.max_items_per_feed, int
            ),
            article_char_limit=_env_number(
                "ARTICLE_CHAR_LIMIT", defaults.article_char_limit, int
            ),
            model=os.environ.get("DIGEST_MODEL", defaults.model),
            max_tokens=_env_number("DIGEST_MAX_TOKENS", defaults.max_tokens, int),
            llm_timeout=_env_number("DIGEST_LLM_TIMEOUT", defaults.llm_timeout, float),
        )


def _env_number(name: str, default, cast, allow_zero: bool = False):
    """Read a positive number from the environment, falling back to default."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if value < 0 or (value == 0 and not allow_zero):
        logger.warning("Ignoring out-of-range %s=%r, using %s", name, raw, default)
        return default
    return value
