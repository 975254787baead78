"""Data models for RSS Feed Digest."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class FeedStatus(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    ERROR = "error"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LogType(str, Enum):
    FEED_CHECK = "feed_check"
    SUMMARY_GENERATION = "summary_generation"
    EMAIL_SENT = "email_sent"
    SCHEDULER = "scheduler"
    ERROR = "error"


class SmtpSecurity(str, Enum):
    TLS = "TLS"
    SSL = "SSL"
    NONE = "None"


@dataclass
class Feed:
    """Represents a configured RSS/Atom source."""

    name: str
    url: str
    is_active: bool = True
    include_in_digest: bool = True
    check_frequency_hours: int = 4
    last_checked: datetime | None = None
    last_error: str | None = None
    status: FeedStatus = FeedStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    id: str | None = None

    @property
    def is_eligible(self) -> bool:
        """Whether the feed contributes to digests."""
        return self.is_active and self.include_in_digest


@dataclass
class Article:
    """A recent feed item selected for a digest. Never persisted."""

    title: str
    content: str
    source: str
    link: str | None = None
    published_at: datetime | None = None


@dataclass
class Digest:
    """A generated summary of a batch of articles."""

    title: str
    body: str
    excerpt: str
    article_count: int = 0
    source_count: int = 0
    email_sent: bool = False
    email_error: str | None = None
    generated_at: datetime = field(default_factory=utcnow)
    feed_ids: list[str] = field(default_factory=list)
    id: str | None = None


@dataclass
class MailSettings:
    """Outbound SMTP configuration. Singleton."""

    smtp_server: str
    from_email: str
    username: str
    password: str
    smtp_port: int = 587
    smtp_security: SmtpSecurity = SmtpSecurity.TLS
    recipients: list[str] = field(default_factory=list)
    subject_template: str = "RSS Summary - {date}"
    is_active: bool = True


@dataclass
class ScheduleState:
    """Scheduler settings and run timestamps. Singleton."""

    enabled: bool = True
    frequency_hours: int = 4
    next_run: datetime | None = None
    last_run: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ActivityLogEntry:
    """Append-only audit trail entry."""

    type: LogType
    message: str
    level: LogLevel = LogLevel.INFO
    details: dict | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: str | None = None
