"""Tests for the SQLite storage layer."""

from datetime import datetime, timedelta, timezone

import pytest

from rssfeed_digest.database import Database
from rssfeed_digest.models import (
    ActivityLogEntry,
    Digest,
    Feed,
    FeedStatus,
    LogLevel,
    LogType,
)


def test_requires_connect(tmp_db_path):
    with pytest.raises(RuntimeError, match="not connected"):
        Database(tmp_db_path).get_all_feeds()


def test_duplicate_feed_url_rejected(db):
    db.add_feed(Feed(name="A", url="https://a.example.com/rss"))
    with pytest.raises(ValueError, match="already exists"):
        db.add_feed(Feed(name="B", url="https://a.example.com/rss"))


def test_feeds_listed_in_registration_order(db, add_feed):
    first = add_feed()
    second = add_feed()
    assert [f.id for f in db.get_all_feeds()] == [first.id, second.id]


def test_update_feed_partial(db, add_feed):
    feed = add_feed()
    checked = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)

    updated = db.update_feed(
        feed.id, status=FeedStatus.ERROR, last_error="down", last_checked=checked
    )

    assert updated.status == FeedStatus.ERROR
    assert updated.last_error == "down"
    assert updated.last_checked == checked
    assert updated.name == feed.name


def test_update_feed_unknown_column(db, add_feed):
    feed = add_feed()
    with pytest.raises(ValueError, match="Unknown feeds columns: colour"):
        db.update_feed(feed.id, colour="red")


def test_delete_feed(db, add_feed):
    feed = add_feed()
    assert db.delete_feed(feed.id)
    assert not db.delete_feed(feed.id)
    assert db.get_feed_by_id(feed.id) is None


def test_recent_digests_newest_first(db, now):
    older = db.create_digest(
        Digest(title="Older", body="b", excerpt="e", generated_at=now - timedelta(hours=4))
    )
    newer = db.create_digest(Digest(title="Newer", body="b", excerpt="e", generated_at=now))

    assert [d.id for d in db.get_recent_digests()] == [newer.id, older.id]
    assert [d.id for d in db.get_recent_digests(limit=1)] == [newer.id]


def test_update_digest_delivery_fields(db):
    digest = db.create_digest(Digest(title="T", body="b", excerpt="e", feed_ids=["f1"]))

    updated = db.update_digest(digest.id, email_sent=False, email_error="SMTP down")

    assert updated.email_sent is False
    assert updated.email_error == "SMTP down"
    assert updated.feed_ids == ["f1"]


def test_schedule_state_defaults(db):
    state = db.get_schedule_state()

    assert state.enabled is True
    assert state.frequency_hours == 4
    assert state.next_run is None
    assert state.last_run is None


def test_update_schedule_state(db, now):
    state = db.update_schedule_state(frequency_hours=6, next_run=now)

    assert state.frequency_hours == 6
    assert state.next_run == now

    state = db.update_schedule_state(next_run=None)
    assert state.next_run is None


def test_mail_settings_round_trip(db, mail_settings):
    stored = db.get_mail_settings()
    assert stored == mail_settings


def test_recipient_management(db, mail_settings):
    assert db.add_recipient("gamma@example.com")[-1] == "gamma@example.com"
    db.add_recipient("gamma@example.com")
    assert db.list_recipients().count("gamma@example.com") == 1

    assert "alpha@example.com" not in db.remove_recipient("alpha@example.com")
    assert db.list_recipients() == ["beta@example.com", "gamma@example.com"]


def test_add_recipient_without_settings(db):
    with pytest.raises(ValueError, match="not configured"):
        db.add_recipient("alpha@example.com")
    assert db.list_recipients() == []


def test_activity_log_details(db):
    db.create_activity_log(
        ActivityLogEntry(
            type=LogType.EMAIL_SENT,
            message="sent",
            details={"recipients": ["a@example.com"], "at": datetime(2026, 1, 1)},
        )
    )
    db.create_activity_log(
        ActivityLogEntry(type=LogType.ERROR, message="failed", level=LogLevel.ERROR)
    )

    latest, earlier = db.get_activity_logs()

    assert latest.message == "failed"
    assert latest.details is None
    assert earlier.details == {"recipients": ["a@example.com"], "at": "2026-01-01 00:00:00"}
