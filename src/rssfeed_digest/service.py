"""Operations exposed to an API layer or the command line.

Every operation returns a JSON-serialisable dict so callers can hand the
result straight to a response body.
"""

from rssfeed_digest.collector import ArticleCollector
from rssfeed_digest.config import PipelineConfig
from rssfeed_digest.database import Database
from rssfeed_digest.delivery import DeliveryService, SmtpTransport
from rssfeed_digest.feed_parser import FeedFetcher, FeedParseError
from rssfeed_digest.generator import DigestGenerator, GenerationResult
from rssfeed_digest.llm import AnthropicTextGenerator, TextGenerator
from rssfeed_digest.models import ActivityLogEntry, Digest, Feed
from rssfeed_digest.scheduler import RunResult, Scheduler


class DigestService:
    """Wires the pipeline components together around one database."""

    def __init__(
        self,
        db: Database,
        config: PipelineConfig | None = None,
        text_generator: TextGenerator | None = None,
        transport_factory=SmtpTransport,
    ):
        config = config or PipelineConfig()
        self.db = db
        self.fetcher = FeedFetcher.from_config(db, config)
        self.collector = ArticleCollector.from_config(db, self.fetcher, config)
        self.generator = DigestGenerator(
            db,
            text_generator or AnthropicTextGenerator.from_config(config),
            collector=self.collector,
            article_char_limit=config.article_char_limit,
        )
        self.delivery = DeliveryService(db, transport_factory=transport_factory)
        self.scheduler = Scheduler(db, self.generator, self.delivery)

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.delivery.close()

    # --- Scheduler ---

    async def trigger_run(self) -> dict:
        """Run the whole pipeline now unless a run is already in progress."""
        return _run_to_dict(await self.scheduler.run_now())

    async def update_schedule(
        self, enabled: bool | None = None, frequency_hours: int | None = None
    ) -> dict:
        try:
            await self.scheduler.update_schedule(enabled, frequency_hours)
        except ValueError as e:
            return {"status": "error", "message": str(e)}
        return self.get_schedule_status()

    def get_schedule_status(self) -> dict:
        return self.scheduler.get_status()

    # --- Feeds ---

    async def check_feed(self, feed_id: str) -> dict:
        result = await self.fetcher.check_feed(feed_id)
        return {
            "success": result.success,
            "feed_id": result.feed_id,
            "item_count": len(result.items),
            **({"error": result.error} if result.error else {}),
        }

    async def check_all_feeds(self) -> dict:
        feeds, total_items, errors = await self.fetcher.check_all_feeds()
        return {
            "feeds": [_feed_to_dict(f) for f in feeds],
            "total_items": total_items,
            "errors": errors,
        }

    async def validate_feed_url(self, url: str) -> dict:
        return await self.fetcher.validate_feed_url(url)

    async def add_feed(
        self,
        url: str,
        name: str = "",
        include_in_digest: bool = True,
        check_frequency_hours: int = 4,
    ) -> dict:
        """Register a feed after confirming the URL serves a feed."""
        if self.db.get_feed_by_url(url):
            return {"status": "error", "message": "A feed with this URL already exists"}

        try:
            parsed = await self.fetcher.parse_feed(url)
        except FeedParseError as e:
            return {"status": "error", "message": str(e)}

        try:
            feed = self.db.add_feed(
                Feed(
                    name=name or parsed.title,
                    url=url,
                    include_in_digest=include_in_digest,
                    check_frequency_hours=check_frequency_hours,
                )
            )
        except ValueError as e:
            return {"status": "error", "message": str(e)}

        result = {"status": "added", "feed": _feed_to_dict(feed)}
        if parsed.warnings:
            result["warnings"] = parsed.warnings
        return result

    def list_feeds(self) -> dict:
        feeds = self.db.get_all_feeds()
        return {"feeds": [_feed_to_dict(f) for f in feeds], "total": len(feeds)}

    def remove_feed(self, feed_id: str) -> dict:
        feed = self.db.get_feed_by_id(feed_id)
        if feed is None or not self.db.delete_feed(feed_id):
            return {"status": "error", "message": "Feed not found"}
        return {"status": "removed", "feed": _feed_to_dict(feed)}

    # --- Recipients ---

    def list_recipients(self) -> dict:
        recipients = self.db.list_recipients()
        return {"recipients": recipients, "total": len(recipients)}

    def add_recipient(self, email: str) -> dict:
        """Add an address to the mail configuration."""
        email = email.strip()
        if "@" not in email:
            return {"status": "error", "message": f"Invalid email address: {email}"}
        try:
            recipients = self.db.add_recipient(email)
        except ValueError as e:
            return {"status": "error", "message": str(e)}
        return {"status": "added", "recipients": recipients}

    def remove_recipient(self, email: str) -> dict:
        if email not in self.db.list_recipients():
            return {"status": "error", "message": f"Not a recipient: {email}"}
        return {"status": "removed", "recipients": self.db.remove_recipient(email)}

    # --- Digests ---

    async def generate_digest(self) -> dict:
        return _generation_to_dict(await self.generator.create_digest())

    async def retry_digest(self, digest_id: str) -> dict:
        result = _generation_to_dict(await self.generator.retry_digest(digest_id))
        if result["success"]:
            result["retried_from"] = digest_id
        return result

    async def send_digest_email(self, digest_id: str) -> dict:
        result = await self.delivery.deliver(digest_id)
        return {"success": result.success, **({"error": result.error} if result.error else {})}

    async def send_test_email(self) -> dict:
        result = await self.delivery.send_test_email()
        return {"success": result.success, **({"error": result.error} if result.error else {})}

    def recent_digests(self, limit: int = 10) -> dict:
        digests = self.db.get_recent_digests(limit)
        return {"digests": [_digest_to_dict(d) for d in digests], "total": len(digests)}

    def recent_logs(self, limit: int = 50) -> dict:
        entries = self.db.get_activity_logs(limit)
        return {"logs": [_log_to_dict(e) for e in entries], "total": len(entries)}


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _feed_to_dict(feed: Feed) -> dict:
    return {
        "id": feed.id,
        "name": feed.name,
        "url": feed.url,
        "is_active": feed.is_active,
        "include_in_digest": feed.include_in_digest,
        "status": feed.status.value,
        "last_checked": _iso(feed.last_checked),
        **({"last_error": feed.last_error} if feed.last_error else {}),
    }


def _digest_to_dict(digest: Digest) -> dict:
    return {
        "id": digest.id,
        "title": digest.title,
        "excerpt": digest.excerpt,
        "article_count": digest.article_count,
        "source_count": digest.source_count,
        "email_sent": digest.email_sent,
        "email_error": digest.email_error,
        "generated_at": _iso(digest.generated_at),
    }


def _log_to_dict(entry: ActivityLogEntry) -> dict:
    return {
        "type": entry.type.value,
        "level": entry.level.value,
        "message": entry.message,
        "details": entry.details,
        "created_at": _iso(entry.created_at),
    }


def _generation_to_dict(result: GenerationResult) -> dict:
    out: dict = {"success": result.success}
    if result.digest is not None:
        out["summary_id"] = result.digest.id
        out["title"] = result.digest.title
    if result.error:
        out["error"] = result.error
    return out


def _run_to_dict(result: RunResult) -> dict:
    out: dict = {"success": result.success}
    if result.digest_id:
        out["summary_id"] = result.digest_id
        out["email_sent"] = result.email_sent
    if result.error:
        out["error"] = result.error
    return out
