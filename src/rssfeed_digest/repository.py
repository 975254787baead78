"""Storage interfaces consumed by the digest pipeline.

The pipeline only talks to persistence through these protocols, so any
backend that provides the methods can be plugged in. ``Database`` in
``rssfeed_digest.database`` is the bundled SQLite implementation.
"""

import logging
from typing import Protocol

from rssfeed_digest.models import (
    ActivityLogEntry,
    Digest,
    Feed,
    LogLevel,
    LogType,
    MailSettings,
    ScheduleState,
)

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class FeedRepository(Protocol):
    def get_all_feeds(self) -> list[Feed]: ...

    def get_feed_by_id(self, feed_id: str) -> Feed | None: ...

    def update_feed(self, feed_id: str, **fields) -> Feed | None: ...


class DigestRepository(Protocol):
    def create_digest(self, digest: Digest) -> Digest: ...

    def get_digest(self, digest_id: str) -> Digest | None: ...

    def update_digest(self, digest_id: str, **fields) -> Digest | None: ...

    def get_recent_digests(self, limit: int = 10) -> list[Digest]: ...


class MailSettingsRepository(Protocol):
    def get_mail_settings(self) -> MailSettings | None: ...


class ScheduleRepository(Protocol):
    def get_schedule_state(self) -> ScheduleState: ...

    def update_schedule_state(self, **fields) -> ScheduleState: ...


class ActivityLogRepository(Protocol):
    def create_activity_log(self, entry: ActivityLogEntry) -> ActivityLogEntry: ...


class Storage(
    FeedRepository,
    DigestRepository,
    MailSettingsRepository,
    ScheduleRepository,
    ActivityLogRepository,
    Protocol,
):
    """Everything the pipeline needs from persistence."""


def record_activity(
    storage: ActivityLogRepository,
    log_type: LogType,
    message: str,
    level: LogLevel = LogLevel.INFO,
    **details,
) -> ActivityLogEntry:
    """Append one activity log entry, mirroring it to the process log."""
    logger.log(_LOG_LEVELS[level], "%s", message)
    return storage.create_activity_log(
        ActivityLogEntry(
            type=log_type,
            message=message,
            level=level,
            details=details or None,
        )
    )
