"""Tests for feed fetching, parsing and feed health tracking."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import requests

from conftest import (
    SAMPLE_ATOM_XML,
    SAMPLE_NOT_A_FEED_XML,
    SAMPLE_RSS_XML,
    make_items,
    make_parsed,
)
from rssfeed_digest import feed_parser
from rssfeed_digest.feed_parser import (
    FeedFetcher,
    FeedParseError,
    alternate_url,
    fetch_and_parse,
)
from rssfeed_digest.models import FeedStatus, LogLevel, LogType


def _patch_session(response=None, error=None):
    patcher = patch("rssfeed_digest.feed_parser.requests.Session")
    session_cls = patcher.start()
    session = session_cls.return_value.__enter__.return_value
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = response
    return patcher, session


class TestFetchAndParse:
    def test_parses_rss(self, mock_response):
        patcher, session = _patch_session(mock_response(SAMPLE_RSS_XML))
        try:
            feed = fetch_and_parse("https://example.com/rss", timeout=5, max_redirects=3)
        finally:
            patcher.stop()

        assert feed.title == "Example World News"
        assert feed.description == "Headlines from around the world"
        assert [i.title for i in feed.items] == [
            "Markets rally after rate cut",
            "Storm closes coastal roads",
        ]
        first = feed.items[0]
        assert first.link == "https://news.example.com/markets-rally"
        assert first.published_at == datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc)
        assert first.snippet == "Stocks climbed across Europe"
        assert first.categories == ["Business"]

        _, kwargs = session.get.call_args
        assert kwargs["timeout"] == 5
        assert "User-Agent" in kwargs["headers"]

    def test_parses_atom(self, mock_response):
        patcher, _ = _patch_session(mock_response(SAMPLE_ATOM_XML))
        try:
            feed = fetch_and_parse("https://example.com/atom")
        finally:
            patcher.stop()

        assert feed.title == "Example Tech Log"
        assert len(feed.items) == 1
        assert feed.items[0].content == "The new release ships faster builds"
        assert feed.items[0].published_at == datetime(
            2026, 2, 13, 10, 0, tzinfo=timezone.utc
        )

    def test_items_sorted_newest_first(self, mock_response):
        reversed_xml = SAMPLE_RSS_XML.replace(
            "Fri, 13 Feb 2026 09:00:00 GMT", "Fri, 13 Feb 2026 11:00:00 GMT"
        )
        patcher, _ = _patch_session(mock_response(reversed_xml))
        try:
            feed = fetch_and_parse("https://example.com/rss")
        finally:
            patcher.stop()

        assert [i.title for i in feed.items] == [
            "Storm closes coastal roads",
            "Markets rally after rate cut",
        ]

    def test_not_a_feed(self, mock_response):
        patcher, _ = _patch_session(mock_response(SAMPLE_NOT_A_FEED_XML))
        try:
            with pytest.raises(FeedParseError, match="not point to a valid RSS"):
                fetch_and_parse("https://example.com/page")
        finally:
            patcher.stop()

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_required(self, mock_response, status):
        patcher, _ = _patch_session(mock_response("", status_code=status))
        try:
            with pytest.raises(FeedParseError, match="requires authentication"):
                fetch_and_parse("https://example.com/private")
        finally:
            patcher.stop()

    def test_http_error(self, mock_response):
        patcher, _ = _patch_session(mock_response("", status_code=404))
        try:
            with pytest.raises(FeedParseError, match="HTTP 404"):
                fetch_and_parse("https://example.com/missing")
        finally:
            patcher.stop()

    def test_timeout(self):
        patcher, _ = _patch_session(error=requests.Timeout("slow"))
        try:
            with pytest.raises(FeedParseError, match="Timed out after 15s"):
                fetch_and_parse("https://example.com/rss")
        finally:
            patcher.stop()

    def test_too_many_redirects(self):
        patcher, _ = _patch_session(error=requests.TooManyRedirects("loop"))
        try:
            with pytest.raises(FeedParseError, match="Too many redirects"):
                fetch_and_parse("https://example.com/rss", max_redirects=10)
        finally:
            patcher.stop()

    @pytest.mark.parametrize("url", ["not-a-url", "ftp://example.com/feed", ""])
    def test_invalid_url(self, url):
        with pytest.raises(FeedParseError, match="Invalid URL format"):
            fetch_and_parse(url)


def test_alternate_url():
    assert alternate_url("https://blog.example.com/feed") == "https://blog.example.com/rss"
    assert alternate_url("https://blog.example.com/rss") is None
    assert alternate_url("https://blog.example.com/feed.xml") is None


class ScriptedParser:
    """Parser stand-in that plays back a script of results per URL."""

    def __init__(self, script: dict):
        self.script = {url: list(outcomes) for url, outcomes in script.items()}
        self.calls: list[str] = []

    def __call__(self, url, timeout, max_redirects):
        self.calls.append(url)
        outcomes = self.script.get(url) or [FeedParseError(f"no script for {url}")]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestFeedFetcher:
    URL = "https://news.example.com/rss"

    def test_retries_then_succeeds(self, db, add_feed, now):
        feed = add_feed(url=self.URL)
        parser = ScriptedParser(
            {
                self.URL: [
                    FeedParseError("boom 1"),
                    FeedParseError("boom 2"),
                    make_parsed(make_items(3, now)),
                ]
            }
        )
        fetcher = FeedFetcher(db, retries=2, backoff_seconds=0, parser=parser)

        result = asyncio.run(fetcher.check_feed(feed.id))

        assert result.success
        assert len(result.items) == 3
        assert parser.calls == [self.URL] * 3
        stored = db.get_feed_by_id(feed.id)
        assert stored.status == FeedStatus.ACTIVE
        assert stored.last_error is None
        assert stored.last_checked is not None

    def test_failure_marks_feed_error(self, db, add_feed):
        feed = add_feed(url=self.URL)
        parser = ScriptedParser({self.URL: [FeedParseError("Could not reach URL: HTTP 500")]})
        fetcher = FeedFetcher(db, retries=2, backoff_seconds=0, parser=parser)

        result = asyncio.run(fetcher.check_feed(feed.id))

        assert not result.success
        assert result.error == "Could not reach URL: HTTP 500"
        assert len(parser.calls) == 3
        stored = db.get_feed_by_id(feed.id)
        assert stored.status == FeedStatus.ERROR
        assert stored.last_error == "Could not reach URL: HTTP 500"

    def test_empty_error_message_replaced(self, db, add_feed):
        feed = add_feed(url=self.URL)
        fetcher = FeedFetcher(
            db, retries=0, backoff_seconds=0, parser=ScriptedParser({self.URL: [FeedParseError()]})
        )

        asyncio.run(fetcher.check_feed(feed.id))

        assert db.get_feed_by_id(feed.id).last_error == "Failed to parse RSS feed"

    def test_recovery_clears_last_error(self, db, add_feed, now):
        feed = add_feed(url=self.URL)
        parser = ScriptedParser({self.URL: [FeedParseError("down")]})
        fetcher = FeedFetcher(db, retries=0, backoff_seconds=0, parser=parser)
        asyncio.run(fetcher.check_feed(feed.id))
        assert db.get_feed_by_id(feed.id).status == FeedStatus.ERROR

        parser.script[self.URL] = [make_parsed(make_items(1, now))]
        asyncio.run(fetcher.check_feed(feed.id))

        stored = db.get_feed_by_id(feed.id)
        assert stored.status == FeedStatus.ACTIVE
        assert stored.last_error is None

    def test_alternate_url_used_after_retries(self, db, add_feed, now):
        url = "https://blog.example.com/feed"
        feed = add_feed(url=url)
        parser = ScriptedParser(
            {
                url: [FeedParseError("not found")],
                "https://blog.example.com/rss": [make_parsed(make_items(2, now))],
            }
        )
        fetcher = FeedFetcher(db, retries=2, backoff_seconds=0, parser=parser)

        result = asyncio.run(fetcher.check_feed(feed.id))

        assert result.success
        assert parser.calls == [url, url, url, "https://blog.example.com/rss"]

    def test_alternate_failure_reports_primary_error(self, db, add_feed):
        url = "https://blog.example.com/feed"
        feed = add_feed(url=url)
        parser = ScriptedParser(
            {
                url: [
                    FeedParseError("primary 1"),
                    FeedParseError("primary 2"),
                    FeedParseError("primary 3"),
                ],
                "https://blog.example.com/rss": [FeedParseError("alternate")],
            }
        )
        fetcher = FeedFetcher(db, retries=2, backoff_seconds=0, parser=parser)

        result = asyncio.run(fetcher.check_feed(feed.id))

        assert result.error == "primary 3"

    def test_each_check_writes_one_log_entry(self, db, add_feed, now):
        good = add_feed(url=self.URL)
        bad = add_feed(url="https://broken.example.com/rss")
        parser = ScriptedParser(
            {
                self.URL: [make_parsed(make_items(4, now))],
                "https://broken.example.com/rss": [FeedParseError("down")],
            }
        )
        fetcher = FeedFetcher(db, retries=0, backoff_seconds=0, parser=parser)

        asyncio.run(fetcher.check_feed(good.id))
        asyncio.run(fetcher.check_feed(bad.id))

        logs = db.get_activity_logs()
        assert len(logs) == 2
        failure, success = logs
        assert success.type == LogType.FEED_CHECK
        assert success.level == LogLevel.INFO
        assert success.details["item_count"] == 4
        assert failure.type == LogType.ERROR
        assert failure.level == LogLevel.ERROR
        assert failure.details["error"] == "down"

    def test_unknown_feed(self, db):
        fetcher = FeedFetcher(db, backoff_seconds=0, parser=ScriptedParser({}))

        result = asyncio.run(fetcher.check_feed("missing"))

        assert not result.success
        assert result.error == "Feed not found"
        assert db.get_activity_logs()[0].level == LogLevel.ERROR

    def test_check_all_feeds_skips_inactive(self, db, add_feed, now):
        active = add_feed(url=self.URL)
        add_feed(url="https://paused.example.com/rss", is_active=False)
        broken = add_feed(name="Broken", url="https://broken.example.com/rss")
        parser = ScriptedParser(
            {
                self.URL: [make_parsed(make_items(5, now))],
                "https://broken.example.com/rss": [FeedParseError("down")],
            }
        )
        fetcher = FeedFetcher(db, retries=0, backoff_seconds=0, parser=parser)

        feeds, total_items, errors = asyncio.run(fetcher.check_all_feeds())

        assert total_items == 5
        assert errors == ["Broken: down"]
        assert "https://paused.example.com/rss" not in parser.calls
        statuses = {f.id: f.status for f in feeds}
        assert statuses[active.id] == FeedStatus.ACTIVE
        assert statuses[broken.id] == FeedStatus.ERROR

    def test_validate_feed_url(self, db, now):
        parser = ScriptedParser(
            {
                self.URL: [make_parsed(make_items(1, now), title="Example News")],
                "https://nope.example.com": [FeedParseError("URL does not point to a valid RSS or Atom feed")],
            }
        )
        fetcher = FeedFetcher(db, retries=0, backoff_seconds=0, parser=parser)

        assert asyncio.run(fetcher.validate_feed_url(self.URL)) == {
            "valid": True,
            "title": "Example News",
        }
        invalid = asyncio.run(fetcher.validate_feed_url("https://nope.example.com"))
        assert invalid["valid"] is False
        assert "valid RSS" in invalid["error"]
        assert db.get_activity_logs() == []


def test_default_backoff_is_linear(db, monkeypatch):
    delays: list[float] = []

    async def record_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(feed_parser.asyncio, "sleep", record_sleep)
    url = "https://news.example.com/rss"
    parser = ScriptedParser({url: [FeedParseError("down")]})
    fetcher = FeedFetcher(db, parser=parser)

    with pytest.raises(FeedParseError, match="down"):
        asyncio.run(fetcher.parse_feed(url))

    assert parser.calls == [url] * 3
    assert delays == [1.0, 2.0]


def test_no_attempts_still_raises_parse_error(db):
    parser = ScriptedParser({})
    fetcher = FeedFetcher(db, retries=-1, backoff_seconds=0, parser=parser)

    with pytest.raises(FeedParseError, match="Failed to parse RSS feed"):
        asyncio.run(fetcher.parse_feed("https://news.example.com/rss"))

    assert parser.calls == []
