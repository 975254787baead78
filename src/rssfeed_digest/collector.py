"""Collect recent articles across all eligible feeds."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from rssfeed_digest.config import PipelineConfig
from rssfeed_digest.feed_parser import FeedFetcher, FeedItem
from rssfeed_digest.models import Article, utcnow
from rssfeed_digest.repository import Storage

logger = logging.getLogger(__name__)


class CollectionError(Exception):
    """Raised when a collection pass yields nothing to summarize."""


class NoEligibleFeedsError(CollectionError):
    def __init__(self) -> None:
        super().__init__("No active feeds available for summarization")


class NoArticlesError(CollectionError):
    def __init__(self) -> None:
        super().__init__("No articles found in any feeds")


@dataclass
class CollectResult:
    articles: list[Article] = field(default_factory=list)
    processed_feed_ids: list[str] = field(default_factory=list)


class ArticleCollector:
    """Drives the fetcher over eligible feeds and flattens their recent items."""

    def __init__(
        self,
        storage: Storage,
        fetcher: FeedFetcher,
        recency_hours: int = 24,
        max_items_per_feed: int = 10,
    ):
        self.storage = storage
        self.fetcher = fetcher
        self.recency_hours = recency_hours
        self.max_items_per_feed = max_items_per_feed

    @classmethod
    def from_config(
        cls, storage: Storage, fetcher: FeedFetcher, config: PipelineConfig
    ) -> "ArticleCollector":
        return cls(
            storage,
            fetcher,
            recency_hours=config.recency_hours,
            max_items_per_feed=config.max_items_per_feed,
        )

    async def collect(self) -> CollectResult:
        """Poll eligible feeds one at a time and gather usable recent articles.

        Returns:
            CollectResult with articles in feed order and the ids of feeds
            that contributed at least one article.

        Raises:
            NoEligibleFeedsError: If no feed is both active and included.
            NoArticlesError: If no eligible feed produced a usable article.
        """
        feeds = [f for f in self.storage.get_all_feeds() if f.is_eligible]
        if not feeds:
            raise NoEligibleFeedsError()

        cutoff = utcnow() - timedelta(hours=self.recency_hours)
        result = CollectResult()

        for feed in feeds:
            check = await self.fetcher.check_feed(feed.id)
            if not check.success:
                continue

            articles = [
                _to_article(item, feed.name)
                for item in select_recent(check.items, cutoff, self.max_items_per_feed)
                if _is_usable(item)
            ]
            if not articles:
                logger.info("Feed '%s': no recent articles", feed.name)
                continue

            result.articles.extend(articles)
            result.processed_feed_ids.append(feed.id)
            logger.info("Feed '%s': %d recent articles", feed.name, len(articles))

        if not result.articles:
            raise NoArticlesError()
        return result


def select_recent(items: list[FeedItem], cutoff: datetime, limit: int) -> list[FeedItem]:
    """Keep items newer than cutoff (undated items count as recent), newest first."""
    recent = [
        item for item in items
        if item.published_at is None or item.published_at > cutoff
    ]
    # Dated items first, newest to oldest; undated items keep feed order after them
    recent.sort(
        key=lambda item: (item.published_at is not None, item.published_at or cutoff),
        reverse=True,
    )
    return recent[:limit]


def _is_usable(item: FeedItem) -> bool:
    return bool(item.title and (item.content or item.snippet))


def _to_article(item: FeedItem, source: str) -> Article:
    return Article(
        title=item.title or "",
        content=item.content or item.snippet or "",
        source=source,
        link=item.link,
        published_at=item.published_at,
    )
