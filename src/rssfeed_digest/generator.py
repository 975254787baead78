"""Digest generation with an LLM and a deterministic fallback."""

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Sequence

from rssfeed_digest.collector import ArticleCollector
from rssfeed_digest.llm import TextGenerator
from rssfeed_digest.models import Article, Digest, LogLevel, LogType
from rssfeed_digest.repository import Storage, record_activity

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert news analyst and writer. Create concise, informative "
    "summaries that highlight the most important information from multiple sources."
)

PROMPT_TEMPLATE = """Please analyze the following RSS feed articles and create a comprehensive summary. Return your response as a single JSON object with exactly these string fields:

{{
  "title": "A compelling title for this news summary",
  "excerpt": "A brief 2-3 sentence overview of the key themes",
  "body": "A detailed summary in Markdown organized by topic, highlighting the most important news and trends. Include source attribution and maintain objectivity."
}}

Articles to summarize:
{articles}

Focus on identifying key themes, important developments, and providing a balanced overview that would be valuable to someone wanting to stay informed."""

PLACEHOLDER_RE = re.compile(r"could not be generated", re.IGNORECASE)
_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$")
_MIN_DATETIME = datetime.min.replace(tzinfo=timezone.utc)

FALLBACK_TOP_STORIES = 5


@dataclass(frozen=True)
class DigestContent:
    title: str
    excerpt: str
    body: str


# --- Parsed completion: Ok | Malformed | EmptyBody ---


@dataclass(frozen=True)
class Ok:
    """A JSON object with a usable body. Title and excerpt may be empty."""

    title: str
    excerpt: str
    body: str


@dataclass(frozen=True)
class Malformed:
    """The text is not a JSON object."""

    reason: str


@dataclass(frozen=True)
class EmptyBody:
    """A JSON object whose body is missing, blank, or a placeholder."""


ParsedCompletion = Ok | Malformed | EmptyBody


def extract_text(content: Any) -> str:
    """Pull the text payload out of a chat model's message content.

    Content is either a plain string or a list of blocks, where each block
    is a string or a dict carrying a ``text`` key.
    """
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
        return "".join(parts).strip()
    return ""


def parse_completion(text: str) -> ParsedCompletion:
    """Parse completion text into a tagged result."""
    candidate = text.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as e:
        return Malformed(f"invalid JSON: {e}")
    if not isinstance(payload, dict):
        return Malformed(f"expected a JSON object, got {type(payload).__name__}")

    body = _string_field(payload, "body")
    if not body or PLACEHOLDER_RE.search(body):
        return EmptyBody()
    return Ok(
        title=_string_field(payload, "title"),
        excerpt=_string_field(payload, "excerpt"),
        body=body,
    )


def _string_field(payload: dict, name: str) -> str:
    value = payload.get(name)
    return value.strip() if isinstance(value, str) else ""


# --- Validation chain ---


@dataclass(frozen=True)
class CompletionOutcome:
    """What came back from one text-generation call."""

    content: Any = None
    error: Exception | None = None


class FallbackReason(str, Enum):
    CALL_FAILED = "call_failed"
    NO_PAYLOAD = "no_payload"
    NOT_JSON_OBJECT = "not_json_object"
    UNUSABLE_BODY = "unusable_body"


def call_succeeded(outcome: CompletionOutcome) -> bool:
    return outcome.error is None


def has_text_payload(outcome: CompletionOutcome) -> bool:
    return bool(extract_text(outcome.content))


def is_json_object(outcome: CompletionOutcome) -> bool:
    return not isinstance(parse_completion(extract_text(outcome.content)), Malformed)


def has_usable_body(outcome: CompletionOutcome) -> bool:
    return isinstance(parse_completion(extract_text(outcome.content)), Ok)


VALIDATION_CHAIN: tuple[tuple[FallbackReason, Callable[[CompletionOutcome], bool]], ...] = (
    (FallbackReason.CALL_FAILED, call_succeeded),
    (FallbackReason.NO_PAYLOAD, has_text_payload),
    (FallbackReason.NOT_JSON_OBJECT, is_json_object),
    (FallbackReason.UNUSABLE_BODY, has_usable_body),
)


def first_failure(outcome: CompletionOutcome) -> FallbackReason | None:
    """Run the validators in order and return the first one that fails."""
    for reason, check in VALIDATION_CHAIN:
        if not check(outcome):
            return reason
    return None


# --- Prompt and fallback construction ---


def build_prompt(articles: Sequence[Article], char_limit: int = 2000) -> str:
    """Build the summarization prompt with each article body truncated to char_limit."""
    blocks = []
    for article in articles:
        text = article.content or ""
        ellipsis = "..." if len(text) > char_limit else ""
        blocks.append(
            f"**{article.title}** ({article.source})\n{text[:char_limit]}{ellipsis}"
        )
    return PROMPT_TEMPLATE.format(articles="\n\n".join(blocks))


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def build_fallback_digest(
    articles: Sequence[Article], today: date | None = None
) -> DigestContent:
    """Build a digest from article metadata alone, without any external call."""
    today = today or date.today()
    article_count = len(articles)
    sources = list(dict.fromkeys(a.source for a in articles if a.source))

    most_recent = sorted(
        articles,
        key=lambda a: a.published_at or _MIN_DATETIME,
        reverse=True,
    )[:FALLBACK_TOP_STORIES]
    top_titles = (
        "\n".join(f"• {a.title}" for a in most_recent)
        or "No articles were available to summarize."
    )

    if sources:
        source_label = f"across {_plural(len(sources), 'source')}."
        source_list = ", ".join(sources)
    else:
        source_label = "from your configured RSS feeds."
        source_list = "your configured RSS feeds"

    body = "\n".join(
        [
            "# Latest News Summary",
            "",
            f"**Sources:** {source_list}",
            "",
            "**Top Stories:**",
            top_titles,
            "",
            f"This summary was generated from {_plural(article_count, 'article')}. "
            "AI summarization was unavailable.",
        ]
    )
    return DigestContent(
        title=f"News Summary - {today.isoformat()}",
        excerpt=f"Latest news from {_plural(article_count, 'article')} {source_label}",
        body=body,
    )


@dataclass
class GenerationResult:
    success: bool
    digest: Digest | None = None
    error: str | None = None

    @property
    def digest_id(self) -> str | None:
        return self.digest.id if self.digest else None


class DigestGenerator:
    """Turns collected articles into a stored digest."""

    def __init__(
        self,
        storage: Storage,
        text_generator: TextGenerator,
        collector: ArticleCollector | None = None,
        article_char_limit: int = 2000,
    ):
        self.storage = storage
        self.text_generator = text_generator
        self.collector = collector
        self.article_char_limit = article_char_limit

    async def summarize(
        self, articles: Sequence[Article]
    ) -> tuple[DigestContent, FallbackReason | None]:
        """Ask the model for a digest, falling back when its answer is unusable.

        Returns:
            Tuple of (digest content, reason the fallback was used or None).
        """
        fallback = build_fallback_digest(articles)
        prompt = build_prompt(articles, self.article_char_limit)

        try:
            outcome = CompletionOutcome(
                content=await self.text_generator.complete(SYSTEM_PROMPT, prompt)
            )
        except Exception as e:
            outcome = CompletionOutcome(error=e)

        reason = first_failure(outcome)
        if reason is not None:
            logger.warning(
                "AI summary unusable (%s)%s; using fallback summary",
                reason.value,
                f": {outcome.error}" if outcome.error else "",
            )
            return fallback, reason

        match parse_completion(extract_text(outcome.content)):
            case Ok(title=title, excerpt=excerpt, body=body):
                return (
                    DigestContent(
                        title=title or fallback.title,
                        excerpt=excerpt or fallback.excerpt,
                        body=body,
                    ),
                    None,
                )
            case Malformed() | EmptyBody():
                return fallback, FallbackReason.UNUSABLE_BODY

    async def generate(self, articles: Sequence[Article], feed_ids: Sequence[str]) -> Digest:
        """Summarize articles and store the resulting digest.

        Args:
            articles: Non-empty list of collected articles.
            feed_ids: Ids of the feeds the articles came from.

        Returns:
            The stored Digest, not yet emailed.
        """
        content, fallback_reason = await self.summarize(articles)
        if fallback_reason is not None:
            record_activity(
                self.storage,
                LogType.SUMMARY_GENERATION,
                "AI summarization unavailable, using fallback summary",
                reason=fallback_reason.value,
            )

        unique_feed_ids = list(dict.fromkeys(feed_ids))
        digest = self.storage.create_digest(
            Digest(
                title=content.title,
                body=content.body,
                excerpt=content.excerpt,
                article_count=len(articles),
                source_count=len(unique_feed_ids),
                email_sent=False,
                email_error=None,
                feed_ids=unique_feed_ids,
            )
        )
        record_activity(
            self.storage,
            LogType.SUMMARY_GENERATION,
            f"Summary generated successfully: {digest.title}",
            summary_id=digest.id,
            article_count=digest.article_count,
            source_count=digest.source_count,
            used_fallback=fallback_reason is not None,
        )
        return digest

    async def create_digest(self) -> GenerationResult:
        """Collect articles and generate a digest, reporting any failure."""
        if self.collector is None:
            raise RuntimeError("DigestGenerator needs a collector to create digests")

        record_activity(
            self.storage, LogType.SUMMARY_GENERATION, "Starting summary generation"
        )
        try:
            collected = await self.collector.collect()
            digest = await self.generate(
                collected.articles, collected.processed_feed_ids
            )
        except Exception as e:
            error = str(e) or e.__class__.__name__
            record_activity(
                self.storage,
                LogType.ERROR,
                f"Summary generation failed: {error}",
                LogLevel.ERROR,
                error=error,
            )
            return GenerationResult(success=False, error=error)
        return GenerationResult(success=True, digest=digest)

    async def retry_digest(self, digest_id: str) -> GenerationResult:
        """Generate a fresh digest in place of an existing one.

        The original digest is left untouched; the new digest gets its own id.
        """
        if self.storage.get_digest(digest_id) is None:
            record_activity(
                self.storage,
                LogType.ERROR,
                "Summary retry failed: Summary not found",
                LogLevel.ERROR,
                summary_id=digest_id,
            )
            return GenerationResult(success=False, error="Summary not found")
        logger.info("Regenerating digest in place of %s", digest_id)
        return await self.create_digest()
