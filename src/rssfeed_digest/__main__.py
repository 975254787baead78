"""Entry point for RSS Feed Digest: python -m rssfeed_digest"""

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
from typing import Sequence

from rssfeed_digest.config import PipelineConfig
from rssfeed_digest.database import Database
from rssfeed_digest.models import MailSettings, SmtpSecurity
from rssfeed_digest.service import DigestService

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("anthropic").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)

logger = logging.getLogger("rssfeed_digest")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rssfeed-digest",
        description="Poll RSS feeds, summarize them with AI and email the digest.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("serve", help="Run the scheduler until interrupted")
    commands.add_parser("run-now", help="Run collect, generate and deliver once")
    commands.add_parser("status", help="Show the schedule status")

    schedule = commands.add_parser("schedule", help="Change the schedule")
    toggle = schedule.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enabled", action="store_true", default=None)
    toggle.add_argument("--disable", dest="enabled", action="store_false")
    schedule.add_argument("--hours", type=int, help="Run every N hours (1,2,4,6,8,12,24)")

    add_feed = commands.add_parser("add-feed", help="Register a feed")
    add_feed.add_argument("url")
    add_feed.add_argument("--name", default="")
    add_feed.add_argument(
        "--exclude", action="store_true", help="Poll the feed but leave it out of digests"
    )

    commands.add_parser("feeds", help="List registered feeds")

    remove_feed = commands.add_parser("remove-feed", help="Unregister a feed")
    remove_feed.add_argument("feed_id")

    check = commands.add_parser("check-feeds", help="Poll one feed or every active feed")
    check.add_argument("--feed-id")

    validate = commands.add_parser("validate-feed", help="Check that a URL serves a feed")
    validate.add_argument("url")

    commands.add_parser("generate", help="Generate a digest without emailing it")

    retry = commands.add_parser("retry", help="Generate a fresh digest in place of one")
    retry.add_argument("digest_id")

    send = commands.add_parser("send", help="Email a stored digest")
    send.add_argument("digest_id")

    commands.add_parser("test-email", help="Send a test email")

    digests = commands.add_parser("digests", help="List recent digests")
    digests.add_argument("--limit", type=int, default=10)

    logs = commands.add_parser("logs", help="Show the activity log")
    logs.add_argument("--limit", type=int, default=50)

    mail = commands.add_parser("mail-settings", help="Configure outbound email")
    mail.add_argument("--server", required=True)
    mail.add_argument("--port", type=int, default=587)
    mail.add_argument(
        "--security", choices=[s.value for s in SmtpSecurity], default=SmtpSecurity.TLS.value
    )
    mail.add_argument("--from", dest="from_email", required=True)
    mail.add_argument("--username", required=True)
    mail.add_argument(
        "--password",
        default=os.environ.get("SMTP_PASSWORD", ""),
        help="Defaults to $SMTP_PASSWORD",
    )
    mail.add_argument("--recipient", dest="recipients", action="append", default=[])
    mail.add_argument("--subject", default="RSS Summary - {date}")

    recipients = commands.add_parser("recipients", help="Manage digest recipients")
    recipients.add_argument("action", choices=["list", "add", "remove"])
    recipients.add_argument("email", nargs="?")

    return parser


async def serve(service: DigestService) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Windows event loops do not support signal handlers
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await service.start()
    logger.info("Scheduler started: %s", json.dumps(service.get_schedule_status()))
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await service.stop()


async def dispatch(service: DigestService, args: argparse.Namespace) -> dict | None:
    """Run one CLI command and return its result."""
    match args.command:
        case "serve":
            await serve(service)
            return None
        case "run-now":
            return await service.trigger_run()
        case "status":
            return service.get_schedule_status()
        case "schedule":
            return await service.update_schedule(args.enabled, args.hours)
        case "add-feed":
            return await service.add_feed(
                args.url, name=args.name, include_in_digest=not args.exclude
            )
        case "feeds":
            return service.list_feeds()
        case "remove-feed":
            return service.remove_feed(args.feed_id)
        case "recipients":
            if args.action == "list":
                return service.list_recipients()
            if not args.email:
                return {"status": "error", "message": f"recipients {args.action} needs an email"}
            if args.action == "add":
                return service.add_recipient(args.email)
            return service.remove_recipient(args.email)
        case "check-feeds":
            if args.feed_id:
                return await service.check_feed(args.feed_id)
            return await service.check_all_feeds()
        case "validate-feed":
            return await service.validate_feed_url(args.url)
        case "generate":
            return await service.generate_digest()
        case "retry":
            return await service.retry_digest(args.digest_id)
        case "send":
            return await service.send_digest_email(args.digest_id)
        case "test-email":
            return await service.send_test_email()
        case "digests":
            return service.recent_digests(args.limit)
        case "logs":
            return service.recent_logs(args.limit)
        case "mail-settings":
            settings = service.db.save_mail_settings(
                MailSettings(
                    smtp_server=args.server,
                    smtp_port=args.port,
                    smtp_security=SmtpSecurity(args.security),
                    from_email=args.from_email,
                    username=args.username,
                    password=args.password,
                    recipients=args.recipients,
                    subject_template=args.subject,
                )
            )
            return {"status": "saved", "recipients": settings.recipients}
    raise ValueError(f"Unknown command: {args.command}")


async def main(argv: Sequence[str] | None = None) -> None:
    """Initialize storage and run the requested command."""
    args = build_parser().parse_args(argv)
    config = PipelineConfig.from_env()

    db = Database(config.db_path)
    db.connect()
    try:
        service = DigestService(db, config)
        result = await dispatch(service, args)
        if result is not None:
            print(json.dumps(result, indent=2, default=str))
    finally:
        db.close()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
