"""RSS/Atom feed fetching and parsing using requests and feedparser."""

import asyncio
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable
from urllib.parse import urlparse

import feedparser
import requests

from rssfeed_digest.config import PipelineConfig
from rssfeed_digest.models import Feed, FeedStatus, LogLevel, LogType, utcnow
from rssfeed_digest.repository import Storage, record_activity

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; RSSFeedDigest/1.0)"

# Path suffixes tried with a substitute when the primary URL keeps failing
ALTERNATE_SUFFIXES = {"/feed": "/rss"}

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class FeedItem:
    """A single normalized entry from a feed."""

    title: str | None
    link: str | None = None
    published_at: datetime | None = None
    content: str | None = None
    snippet: str | None = None
    author: str | None = None
    categories: list[str] = field(default_factory=list)


@dataclass
class ParsedFeed:
    """Result of parsing an RSS/Atom feed."""

    title: str
    description: str | None
    items: list[FeedItem]
    warnings: list[str] = field(default_factory=list)


@dataclass
class FeedCheckResult:
    """Outcome of polling one configured feed."""

    feed_id: str
    success: bool
    items: list[FeedItem] = field(default_factory=list)
    error: str | None = None


class FeedParseError(Exception):
    """Raised when a feed cannot be fetched or parsed."""


def fetch_and_parse(url: str, timeout: float = 15.0, max_redirects: int = 10) -> ParsedFeed:
    """Fetch and parse an RSS or Atom feed from a URL.

    Args:
        url: The feed URL to fetch and parse.
        timeout: Seconds to wait for the server before giving up.
        max_redirects: Maximum number of HTTP redirects to follow.

    Returns:
        ParsedFeed with feed metadata and items, newest first.

    Raises:
        FeedParseError: If the URL is invalid, unreachable, or not a valid feed.
    """
    _validate_url(url)

    try:
        with requests.Session() as session:
            session.max_redirects = max_redirects
            response = session.get(
                url, timeout=timeout, headers={"User-Agent": USER_AGENT}
            )
    except requests.TooManyRedirects:
        raise FeedParseError(f"Too many redirects (limit {max_redirects})")
    except requests.Timeout:
        raise FeedParseError(f"Timed out after {timeout:g}s")
    except requests.RequestException as e:
        raise FeedParseError(f"Could not reach URL: {e}") from e

    if response.status_code in (401, 403):
        raise FeedParseError(
            "Feed requires authentication. Ensure the URL is publicly accessible."
        )

    if response.status_code >= 400:
        raise FeedParseError(f"Could not reach URL: HTTP {response.status_code}")

    parsed = feedparser.parse(response.content)

    if not parsed.feed.get("title") and not parsed.entries:
        raise FeedParseError("URL does not point to a valid RSS or Atom feed")

    warnings: list[str] = []
    if parsed.bozo:
        warnings.append(f"Feed has formatting issues: {parsed.bozo_exception}")

    return ParsedFeed(
        title=parsed.feed.get("title") or "Unknown Feed",
        description=parsed.feed.get("description") or parsed.feed.get("subtitle"),
        items=_extract_items(parsed.entries, warnings),
        warnings=warnings,
    )


def alternate_url(url: str) -> str | None:
    """Return the fallback URL for a known feed path suffix, if any."""
    for suffix, replacement in ALTERNATE_SUFFIXES.items():
        if url.endswith(suffix):
            return url[: -len(suffix)] + replacement
    return None


class FeedFetcher:
    """Polls feeds with retries and keeps their health fields current."""

    def __init__(
        self,
        storage: Storage,
        retries: int = 2,
        backoff_seconds: float = 1.0,
        timeout: float = 15.0,
        max_redirects: int = 10,
        parser: Callable[..., ParsedFeed] = fetch_and_parse,
    ):
        self.storage = storage
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._parser = parser

    @classmethod
    def from_config(cls, storage: Storage, config: PipelineConfig) -> "FeedFetcher":
        return cls(
            storage,
            retries=config.fetch_retries,
            backoff_seconds=config.retry_backoff,
            timeout=config.fetch_timeout,
            max_redirects=config.max_redirects,
        )

    async def _attempt(self, url: str) -> ParsedFeed:
        return await asyncio.to_thread(
            self._parser, url, self.timeout, self.max_redirects
        )

    async def parse_feed(self, url: str) -> ParsedFeed:
        """Parse a feed, retrying with linear backoff and trying an alternate URL.

        Raises:
            FeedParseError: With the last primary-URL cause once every attempt failed.
        """
        last_error: FeedParseError | None = None
        total = self.retries + 1
        for attempt in range(1, total + 1):
            try:
                return await self._attempt(url)
            except FeedParseError as e:
                last_error = e
                logger.warning(
                    "Error parsing feed %s (attempt %d/%d): %s", url, attempt, total, e
                )
                if attempt < total:
                    await asyncio.sleep(self.backoff_seconds * attempt)

        alt_url = alternate_url(url)
        if alt_url:
            try:
                return await self._attempt(alt_url)
            except FeedParseError as e:
                logger.warning("Alternative URL %s also failed: %s", alt_url, e)

        if last_error is None:
            raise FeedParseError("Failed to parse RSS feed")
        raise last_error

    async def check_feed(self, feed_id: str) -> FeedCheckResult:
        """Poll one feed and record its health. Never raises on fetch failure."""
        feed = self.storage.get_feed_by_id(feed_id)
        if feed is None:
            record_activity(
                self.storage,
                LogType.ERROR,
                "Error checking feed: Feed not found",
                LogLevel.ERROR,
                feed_id=feed_id,
            )
            return FeedCheckResult(feed_id=feed_id, success=False, error="Feed not found")

        try:
            parsed = await self.parse_feed(feed.url)
        except Exception as e:
            error = str(e) or "Failed to parse RSS feed"
            self.storage.update_feed(
                feed_id,
                status=FeedStatus.ERROR,
                last_error=error,
                last_checked=utcnow(),
            )
            record_activity(
                self.storage,
                LogType.ERROR,
                f"Failed to check feed: {feed.name}",
                LogLevel.ERROR,
                feed_id=feed_id,
                url=feed.url,
                error=error,
            )
            return FeedCheckResult(feed_id=feed_id, success=False, error=error)

        self.storage.update_feed(
            feed_id,
            status=FeedStatus.ACTIVE,
            last_error=None,
            last_checked=utcnow(),
        )
        record_activity(
            self.storage,
            LogType.FEED_CHECK,
            f"Successfully checked feed: {feed.name} ({len(parsed.items)} items)",
            feed_id=feed_id,
            url=feed.url,
            item_count=len(parsed.items),
        )
        return FeedCheckResult(feed_id=feed_id, success=True, items=parsed.items)

    async def check_all_feeds(self) -> tuple[list[Feed], int, list[str]]:
        """Check every active feed one at a time.

        Returns:
            Tuple of (refreshed feeds, total item count, per-feed error strings).
        """
        total_items = 0
        errors: list[str] = []
        for feed in self.storage.get_all_feeds():
            if not feed.is_active:
                continue
            result = await self.check_feed(feed.id)
            if result.success:
                total_items += len(result.items)
            else:
                errors.append(f"{feed.name}: {result.error}")
        return self.storage.get_all_feeds(), total_items, errors

    async def validate_feed_url(self, url: str) -> dict:
        """Check that a URL serves a parseable feed without touching storage."""
        try:
            parsed = await self.parse_feed(url)
        except FeedParseError as e:
            return {"valid": False, "error": str(e) or "Invalid RSS feed URL or unreachable"}
        return {"valid": True, "title": parsed.title}


def _validate_url(url: str) -> None:
    """Validate that the URL has a valid format."""
    try:
        result = urlparse(url)
        if not result.scheme or not result.netloc:
            raise FeedParseError("Invalid URL format")
        if result.scheme not in ("http", "https"):
            raise FeedParseError("Invalid URL format: only http and https are supported")
    except ValueError:
        raise FeedParseError("Invalid URL format")


def _extract_items(entries: list, warnings: list[str]) -> list[FeedItem]:
    """Extract normalized items from feedparser entries, newest first."""
    items = []
    for entry in entries:
        try:
            summary = entry.get("summary") or entry.get("description")
            content_blocks = entry.get("content") or []
            full_content = content_blocks[0].get("value") if content_blocks else None
            items.append(
                FeedItem(
                    title=(entry.get("title") or "").strip() or None,
                    link=entry.get("link"),
                    published_at=_parse_date(entry),
                    content=full_content or summary,
                    snippet=_to_snippet(summary or full_content),
                    author=entry.get("author"),
                    categories=[
                        t.get("term") for t in entry.get("tags") or [] if t.get("term")
                    ],
                )
            )
        except Exception as e:
            warnings.append(f"Skipping malformed entry: {e}")
            continue

    items.sort(key=lambda x: x.published_at or _EPOCH, reverse=True)
    return items


def _to_snippet(text: str | None) -> str | None:
    """Strip markup from an entry summary."""
    if not text:
        return None
    plain = _WS_RE.sub(" ", html.unescape(_TAG_RE.sub(" ", text))).strip()
    return plain or None


def _parse_date(entry: dict) -> datetime | None:
    """Parse publication date from a feedparser entry (feedparser reports UTC)."""
    for field_name in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(field_name)
        if time_struct:
            try:
                return datetime(*time_struct[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                continue
    return None
