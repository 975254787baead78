"""SQLite storage for RSS Feed Digest."""

import json
import sqlite3
import uuid
from dataclasses import fields as dataclass_fields
from datetime import datetime
from enum import Enum

from rssfeed_digest.models import (
    ActivityLogEntry,
    Digest,
    Feed,
    FeedStatus,
    LogLevel,
    LogType,
    MailSettings,
    ScheduleState,
    SmtpSecurity,
    utcnow,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    url TEXT UNIQUE NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    include_in_digest INTEGER NOT NULL DEFAULT 1,
    check_frequency_hours INTEGER NOT NULL DEFAULT 4,
    last_checked TEXT,
    last_error TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS digests (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    excerpt TEXT NOT NULL,
    article_count INTEGER NOT NULL DEFAULT 0,
    source_count INTEGER NOT NULL DEFAULT 0,
    email_sent INTEGER NOT NULL DEFAULT 0,
    email_error TEXT,
    generated_at TEXT NOT NULL,
    feed_ids TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_digests_generated_at ON digests(generated_at);

CREATE TABLE IF NOT EXISTS mail_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    smtp_server TEXT NOT NULL,
    smtp_port INTEGER NOT NULL DEFAULT 587,
    smtp_security TEXT NOT NULL DEFAULT 'TLS',
    from_email TEXT NOT NULL,
    username TEXT NOT NULL,
    password TEXT NOT NULL,
    recipients TEXT NOT NULL DEFAULT '[]',
    subject_template TEXT NOT NULL DEFAULT 'RSS Summary - {date}',
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS schedule_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    enabled INTEGER NOT NULL DEFAULT 1,
    frequency_hours INTEGER NOT NULL DEFAULT 4,
    next_run TEXT,
    last_run TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activity_logs (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    message TEXT NOT NULL,
    details TEXT,
    level TEXT NOT NULL DEFAULT 'info',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activity_logs_created_at ON activity_logs(created_at);
"""

FEED_COLUMNS = {f.name for f in dataclass_fields(Feed)} - {"id"}
DIGEST_COLUMNS = {f.name for f in dataclass_fields(Digest)} - {"id"}
SCHEDULE_COLUMNS = {f.name for f in dataclass_fields(ScheduleState)}


class Database:
    """SQLite database manager for feeds, digests, settings and logs."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # --- Feed operations ---

    def add_feed(self, feed: Feed) -> Feed:
        """Insert a new feed and return it with its assigned id.

        Raises:
            ValueError: If a feed with the same URL is already registered.
        """
        if self.get_feed_by_url(feed.url):
            raise ValueError("A feed with this URL already exists")
        feed.id = uuid.uuid4().hex
        self.conn.execute(
            """INSERT INTO feeds (id, name, url, is_active, include_in_digest,
               check_frequency_hours, last_checked, last_error, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                feed.id,
                feed.name,
                feed.url,
                int(feed.is_active),
                int(feed.include_in_digest),
                feed.check_frequency_hours,
                _to_db(feed.last_checked),
                feed.last_error,
                _to_db(feed.status),
                _to_db(feed.created_at),
            ),
        )
        self.conn.commit()
        return feed

    def get_feed_by_url(self, url: str) -> Feed | None:
        """Look up a feed by its URL."""
        row = self.conn.execute(
            "SELECT * FROM feeds WHERE url = ?", (url,)
        ).fetchone()
        return _row_to_feed(row) if row else None

    def get_feed_by_id(self, feed_id: str) -> Feed | None:
        """Look up a feed by its id."""
        row = self.conn.execute(
            "SELECT * FROM feeds WHERE id = ?", (feed_id,)
        ).fetchone()
        return _row_to_feed(row) if row else None

    def get_all_feeds(self) -> list[Feed]:
        """Return all feeds, oldest registration first."""
        rows = self.conn.execute(
            "SELECT * FROM feeds ORDER BY created_at, rowid"
        ).fetchall()
        return [_row_to_feed(r) for r in rows]

    def update_feed(self, feed_id: str, **fields) -> Feed | None:
        """Apply a partial update to a feed. Returns the updated feed."""
        self._update("feeds", FEED_COLUMNS, "id = ?", (feed_id,), fields)
        return self.get_feed_by_id(feed_id)

    def delete_feed(self, feed_id: str) -> bool:
        """Delete a feed. Returns True if deleted."""
        cursor = self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # --- Digest operations ---

    def create_digest(self, digest: Digest) -> Digest:
        """Insert a digest and return it with its assigned id."""
        digest.id = uuid.uuid4().hex
        self.conn.execute(
            """INSERT INTO digests (id, title, body, excerpt, article_count,
               source_count, email_sent, email_error, generated_at, feed_ids)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                digest.id,
                digest.title,
                digest.body,
                digest.excerpt,
                digest.article_count,
                digest.source_count,
                int(digest.email_sent),
                digest.email_error,
                _to_db(digest.generated_at),
                _to_db(digest.feed_ids),
            ),
        )
        self.conn.commit()
        return digest

    def get_digest(self, digest_id: str) -> Digest | None:
        row = self.conn.execute(
            "SELECT * FROM digests WHERE id = ?", (digest_id,)
        ).fetchone()
        return _row_to_digest(row) if row else None

    def update_digest(self, digest_id: str, **fields) -> Digest | None:
        """Apply a partial update to a digest. Returns the updated digest."""
        self._update("digests", DIGEST_COLUMNS, "id = ?", (digest_id,), fields)
        return self.get_digest(digest_id)

    def get_recent_digests(self, limit: int = 10) -> list[Digest]:
        """Return the most recently generated digests, newest first."""
        rows = self.conn.execute(
            "SELECT * FROM digests ORDER BY generated_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [_row_to_digest(r) for r in rows]

    # --- Mail settings ---

    def get_mail_settings(self) -> MailSettings | None:
        row = self.conn.execute(
            "SELECT * FROM mail_settings WHERE id = 1"
        ).fetchone()
        return _row_to_mail_settings(row) if row else None

    def save_mail_settings(self, settings: MailSettings) -> MailSettings:
        """Create or replace the singleton mail configuration."""
        self.conn.execute(
            """INSERT OR REPLACE INTO mail_settings (id, smtp_server, smtp_port,
               smtp_security, from_email, username, password, recipients,
               subject_template, is_active)
               VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                settings.smtp_server,
                settings.smtp_port,
                _to_db(settings.smtp_security),
                settings.from_email,
                settings.username,
                settings.password,
                _to_db(settings.recipients),
                settings.subject_template,
                int(settings.is_active),
            ),
        )
        self.conn.commit()
        return settings

    def list_recipients(self) -> list[str]:
        settings = self.get_mail_settings()
        return list(settings.recipients) if settings else []

    def add_recipient(self, email: str) -> list[str]:
        """Add a recipient to the mail configuration (idempotent).

        Raises:
            ValueError: If no mail configuration exists yet.
        """
        settings = self.get_mail_settings()
        if settings is None:
            raise ValueError("Email settings not configured")
        if email not in settings.recipients:
            settings.recipients.append(email)
            self.save_mail_settings(settings)
        return settings.recipients

    def remove_recipient(self, email: str) -> list[str]:
        settings = self.get_mail_settings()
        if settings is None:
            return []
        if email in settings.recipients:
            settings.recipients.remove(email)
            self.save_mail_settings(settings)
        return settings.recipients

    # --- Schedule state ---

    def get_schedule_state(self) -> ScheduleState:
        """Return the schedule singleton, creating the default row on first use."""
        row = self.conn.execute(
            "SELECT * FROM schedule_state WHERE id = 1"
        ).fetchone()
        if row is None:
            state = ScheduleState()
            self.conn.execute(
                """INSERT INTO schedule_state (id, enabled, frequency_hours,
                   next_run, last_run, updated_at) VALUES (1, ?, ?, ?, ?, ?)""",
                (
                    int(state.enabled),
                    state.frequency_hours,
                    None,
                    None,
                    _to_db(state.updated_at),
                ),
            )
            self.conn.commit()
            return state
        return _row_to_schedule_state(row)

    def update_schedule_state(self, **fields) -> ScheduleState:
        """Apply a partial update to the schedule singleton."""
        self.get_schedule_state()
        fields.setdefault("updated_at", utcnow())
        self._update("schedule_state", SCHEDULE_COLUMNS, "id = 1", (), fields)
        return self.get_schedule_state()

    # --- Activity log ---

    def create_activity_log(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        """Append an entry to the activity log."""
        entry.id = uuid.uuid4().hex
        self.conn.execute(
            """INSERT INTO activity_logs (id, type, message, details, level, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                entry.id,
                _to_db(entry.type),
                entry.message,
                json.dumps(entry.details, default=str) if entry.details is not None else None,
                _to_db(entry.level),
                _to_db(entry.created_at),
            ),
        )
        self.conn.commit()
        return entry

    def get_activity_logs(self, limit: int = 50) -> list[ActivityLogEntry]:
        """Return the most recent activity log entries, newest first."""
        rows = self.conn.execute(
            "SELECT * FROM activity_logs ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [_row_to_log(r) for r in rows]

    def _update(
        self,
        table: str,
        allowed: set[str],
        where: str,
        where_params: tuple,
        fields: dict,
    ) -> None:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown {table} columns: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_to_db(value) for value in fields.values()]
        self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE {where}",
            (*params, *where_params),
        )
        self.conn.commit()


# --- Helper functions ---


def _to_db(value):
    """Convert a model value to its stored representation."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_feed(row: sqlite3.Row) -> Feed:
    return Feed(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        is_active=bool(row["is_active"]),
        include_in_digest=bool(row["include_in_digest"]),
        check_frequency_hours=row["check_frequency_hours"],
        last_checked=_str_to_dt(row["last_checked"]),
        last_error=row["last_error"],
        status=FeedStatus(row["status"]),
        created_at=_str_to_dt(row["created_at"]) or utcnow(),
    )


def _row_to_digest(row: sqlite3.Row) -> Digest:
    return Digest(
        id=row["id"],
        title=row["title"],
        body=row["body"],
        excerpt=row["excerpt"],
        article_count=row["article_count"],
        source_count=row["source_count"],
        email_sent=bool(row["email_sent"]),
        email_error=row["email_error"],
        generated_at=_str_to_dt(row["generated_at"]) or utcnow(),
        feed_ids=json.loads(row["feed_ids"] or "[]"),
    )


def _row_to_mail_settings(row: sqlite3.Row) -> MailSettings:
    return MailSettings(
        smtp_server=row["smtp_server"],
        smtp_port=row["smtp_port"],
        smtp_security=SmtpSecurity(row["smtp_security"]),
        from_email=row["from_email"],
        username=row["username"],
        password=row["password"],
        recipients=json.loads(row["recipients"] or "[]"),
        subject_template=row["subject_template"],
        is_active=bool(row["is_active"]),
    )


def _row_to_schedule_state(row: sqlite3.Row) -> ScheduleState:
    return ScheduleState(
        enabled=bool(row["enabled"]),
        frequency_hours=row["frequency_hours"],
        next_run=_str_to_dt(row["next_run"]),
        last_run=_str_to_dt(row["last_run"]),
        updated_at=_str_to_dt(row["updated_at"]) or utcnow(),
    )


def _row_to_log(row: sqlite3.Row) -> ActivityLogEntry:
    return ActivityLogEntry(
        id=row["id"],
        type=LogType(row["type"]),
        message=row["message"],
        details=json.loads(row["details"]) if row["details"] else None,
        level=LogLevel(row["level"]),
        created_at=_str_to_dt(row["created_at"]) or utcnow(),
    )
