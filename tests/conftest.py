"""Shared test fixtures for RSS Feed Digest tests."""

import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from rssfeed_digest.database import Database
from rssfeed_digest.feed_parser import FeedItem, ParsedFeed
from rssfeed_digest.models import Feed, MailSettings, SmtpSecurity


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example World News</title>
    <link>https://news.example.com</link>
    <description>Headlines from around the world</description>
    <item>
      <title>Markets rally after rate cut</title>
      <link>https://news.example.com/markets-rally</link>
      <guid isPermaLink="false">markets-rally</guid>
      <description>Stocks &lt;b&gt;climbed&lt;/b&gt; across Europe</description>
      <author>desk@news.example.com</author>
      <category>Business</category>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Storm closes coastal roads</title>
      <link>https://news.example.com/storm-roads</link>
      <guid isPermaLink="false">storm-roads</guid>
      <description>Several routes remain shut overnight</description>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Example Tech Log</title>
  <link href="https://tech.example.com"/>
  <subtitle>Release notes and engineering news</subtitle>
  <entry>
    <title>Compiler 2.0 released</title>
    <link href="https://tech.example.com/compiler-2"/>
    <id>tag:tech.example.com,2026:compiler-2</id>
    <summary>The new release ships faster builds</summary>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_NOT_A_FEED_XML = """<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"></head>
  <body><p>Welcome to our homepage</p></body>
</html>"""


@pytest.fixture
def tmp_db_path():
    """Provide a temporary SQLite database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def db(tmp_db_path):
    """A connected database on a temporary file."""
    database = Database(tmp_db_path)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def add_feed(db):
    """Register a feed with sensible defaults."""
    counter = {"n": 0}

    def _add(name=None, url=None, **kwargs) -> Feed:
        counter["n"] += 1
        n = counter["n"]
        return db.add_feed(
            Feed(
                name=name or f"Feed {n}",
                url=url or f"https://feed{n}.example.com/rss",
                **kwargs,
            )
        )

    return _add


@pytest.fixture
def mail_settings(db):
    """Store an active mail configuration with two recipients."""
    settings = MailSettings(
        smtp_server="smtp.example.com",
        smtp_port=587,
        smtp_security=SmtpSecurity.TLS,
        from_email="digest@example.com",
        username="digest@example.com",
        password="secret",
        recipients=["alpha@example.com", "beta@example.com"],
        subject_template="RSS Summary - {date}",
    )
    return db.save_mail_settings(settings)


def make_items(count: int, start: datetime, step=timedelta(minutes=30), prefix="Story"):
    """Feed items with descending publish times starting at ``start``."""
    return [
        FeedItem(
            title=f"{prefix} {i}",
            link=f"https://example.com/{prefix.lower()}-{i}",
            published_at=start - step * i,
            content=f"Body of {prefix.lower()} {i}",
            snippet=f"Body of {prefix.lower()} {i}",
        )
        for i in range(count)
    ]


def make_parsed(items, title="Test Feed") -> ParsedFeed:
    return ParsedFeed(title=title, description=None, items=items)


class FakeTextGenerator:
    """Text-generation stub returning a fixed content or raising."""

    def __init__(self, content=None, error: Exception | None = None):
        self.content = content
        self.error = error
        self.prompts: list[str] = []

    async def complete(self, system, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.content


class FakeTransport:
    """In-memory SMTP transport recording every message it is asked to send."""

    instances: list["FakeTransport"] = []

    def __init__(self, settings, connect_error=None, send_error=None):
        self.settings = settings
        self.connect_error = connect_error
        self.send_error = send_error
        self.connected = False
        self.sent = []
        self.close_threads: list[int] = []
        FakeTransport.instances.append(self)

    def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def is_alive(self):
        return self.connected

    def send(self, message):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    def close(self):
        self.close_threads.append(threading.get_ident())
        self.connected = False


@pytest.fixture
def fake_transport():
    """Factory for FakeTransport, with access to every instance created."""
    FakeTransport.instances = []
    return FakeTransport


@pytest.fixture
def mock_response():
    """Create a mock requests response."""

    def _make(content: str, status_code: int = 200):
        response = MagicMock()
        response.status_code = status_code
        response.content = content.encode("utf-8")
        return response

    return _make
