"""SMTP delivery of digests."""

import asyncio
import contextlib
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate
from typing import Callable

from rssfeed_digest.models import (
    Digest,
    LogLevel,
    LogType,
    MailSettings,
    SmtpSecurity,
    utcnow,
)
from rssfeed_digest.rendering import render_html, render_subject, render_text
from rssfeed_digest.repository import Storage, record_activity

logger = logging.getLogger(__name__)

TEST_SUBJECT = "Test Email - RSS Feed Digest"
SMTP_TIMEOUT = 30.0

MAIL_NOT_CONFIGURED = "Email settings not configured"
DIGEST_NOT_FOUND = "Summary not found"


class DeliveryError(Exception):
    """Raised when a digest cannot be handed to the mail server."""


class MailNotConfiguredError(DeliveryError):
    def __init__(self) -> None:
        super().__init__(MAIL_NOT_CONFIGURED)


class DigestNotFoundError(DeliveryError):
    def __init__(self) -> None:
        super().__init__(DIGEST_NOT_FOUND)


@dataclass
class DeliveryResult:
    success: bool
    error: str | None = None


class SmtpTransport:
    """A verified SMTP connection. All methods block; call them off the event loop."""

    def __init__(self, settings: MailSettings, timeout: float = SMTP_TIMEOUT):
        self.settings = settings
        self.timeout = timeout
        self._smtp: smtplib.SMTP | None = None

    def connect(self) -> None:
        """Open the connection, negotiate security, log in and verify with NOOP."""
        settings = self.settings
        context = ssl.create_default_context()
        if settings.smtp_security == SmtpSecurity.SSL:
            smtp = smtplib.SMTP_SSL(
                settings.smtp_server, settings.smtp_port, timeout=self.timeout, context=context
            )
        else:
            smtp = smtplib.SMTP(settings.smtp_server, settings.smtp_port, timeout=self.timeout)
        try:
            smtp.ehlo()
            if settings.smtp_security == SmtpSecurity.TLS:
                smtp.starttls(context=context)
                smtp.ehlo()
            if settings.username:
                smtp.login(settings.username, settings.password)
            self._smtp = smtp
            if not self.is_alive():
                raise smtplib.SMTPException("SMTP server did not answer NOOP")
        except Exception:
            self._smtp = None
            with contextlib.suppress(smtplib.SMTPException, OSError):
                smtp.close()
            raise

    def is_alive(self) -> bool:
        """Round-trip a NOOP to check the connection is still usable."""
        if self._smtp is None:
            return False
        try:
            code, _ = self._smtp.noop()
        except (smtplib.SMTPException, OSError):
            return False
        return code == 250

    def send(self, message: MIMEMultipart) -> None:
        if self._smtp is None:
            raise DeliveryError("SMTP connection is not open")
        self._smtp.send_message(message)

    def close(self) -> None:
        if self._smtp is None:
            return
        with contextlib.suppress(smtplib.SMTPException, OSError):
            self._smtp.quit()
        self._smtp = None


def build_message(
    settings: MailSettings, subject: str, html_body: str, text_body: str
) -> MIMEMultipart:
    """Build one multipart message addressed to every recipient."""
    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = settings.from_email
    message["To"] = ", ".join(settings.recipients)
    message["Date"] = formatdate(localtime=True)
    message.attach(MIMEText(text_body, "plain", "utf-8"))
    message.attach(MIMEText(html_body, "html", "utf-8"))
    return message


class DeliveryService:
    """Sends digests by email and records the outcome on the digest."""

    def __init__(
        self,
        storage: Storage,
        transport_factory: Callable[[MailSettings], SmtpTransport] = SmtpTransport,
    ):
        self.storage = storage
        self._transport_factory = transport_factory
        self._transport: SmtpTransport | None = None
        # Serializes connection setup and sends over the shared SMTP session
        self._lock = asyncio.Lock()

    def _active_settings(self) -> MailSettings:
        settings = self.storage.get_mail_settings()
        if settings is None or not settings.is_active:
            raise MailNotConfiguredError()
        if not settings.recipients:
            raise DeliveryError("No recipients configured")
        return settings

    async def _ensure_transport(self, settings: MailSettings) -> SmtpTransport:
        """Reuse the open connection, or initialize and verify a new one.

        Callers hold ``_lock``.

        Raises:
            DeliveryError: If the new connection cannot be established.
        """
        transport = self._transport
        if transport is not None and transport.settings == settings:
            if await asyncio.to_thread(transport.is_alive):
                return transport
            logger.info("SMTP connection went stale, reconnecting")
        await self._drop_transport()

        transport = self._transport_factory(settings)
        try:
            await asyncio.to_thread(transport.connect)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"Failed to initialize email service: {e}") from e
        self._transport = transport
        logger.info(
            "SMTP connection ready: %s@%s:%s",
            settings.username,
            settings.smtp_server,
            settings.smtp_port,
        )
        return transport

    async def _dispatch(self, settings: MailSettings, subject: str, digest: Digest) -> None:
        message = build_message(settings, subject, render_html(digest), render_text(digest))
        async with self._lock:
            transport = await self._ensure_transport(settings)
            try:
                await asyncio.to_thread(transport.send, message)
            except Exception:
                await self._drop_transport()
                raise

    async def deliver(self, digest_id: str) -> DeliveryResult:
        """Email a stored digest to all configured recipients.

        Sets ``email_sent``/``email_error`` on the digest and writes one
        activity log entry. Never raises for delivery failures.
        """
        digest = self.storage.get_digest(digest_id)
        if digest is None:
            error = DIGEST_NOT_FOUND
            record_activity(
                self.storage,
                LogType.ERROR,
                f"Email sending failed: {error}",
                LogLevel.ERROR,
                summary_id=digest_id,
                error=error,
            )
            return DeliveryResult(success=False, error=error)

        try:
            settings = self._active_settings()
            subject = render_subject(settings.subject_template)
            await self._dispatch(settings, subject, digest)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            self.storage.update_digest(digest_id, email_sent=False, email_error=error)
            record_activity(
                self.storage,
                LogType.ERROR,
                f"Email sending failed: {error}",
                LogLevel.ERROR,
                summary_id=digest_id,
                error=error,
            )
            return DeliveryResult(success=False, error=error)

        self.storage.update_digest(digest_id, email_sent=True, email_error=None)
        record_activity(
            self.storage,
            LogType.EMAIL_SENT,
            f"Email sent successfully for summary: {digest.title}",
            summary_id=digest_id,
            recipients=settings.recipients,
            subject=subject,
        )
        return DeliveryResult(success=True)

    async def send_test_email(self) -> DeliveryResult:
        """Send a synthetic digest to check the mail configuration."""
        try:
            settings = self._active_settings()
            await self._dispatch(settings, TEST_SUBJECT, build_test_digest(settings))
        except Exception as e:
            error = str(e) or e.__class__.__name__
            record_activity(
                self.storage,
                LogType.ERROR,
                f"Test email failed: {error}",
                LogLevel.ERROR,
                error=error,
            )
            return DeliveryResult(success=False, error=error)

        record_activity(
            self.storage,
            LogType.EMAIL_SENT,
            "Test email sent successfully",
            recipients=settings.recipients,
            subject=TEST_SUBJECT,
        )
        return DeliveryResult(success=True)

    async def close(self) -> None:
        """Drop the cached SMTP connection."""
        async with self._lock:
            await self._drop_transport()

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await asyncio.to_thread(transport.close)


def build_test_digest(settings: MailSettings) -> Digest:
    """A fixed digest describing the SMTP configuration. Never stored."""
    now = utcnow()
    body = "\n".join(
        [
            "# Test Email",
            "",
            "This is a test email from your RSS Feed Digest.",
            "",
            "**Configuration Details:**",
            f"SMTP Server: {settings.smtp_server}:{settings.smtp_port}",
            f"Security: {settings.smtp_security.value}",
            f"From: {settings.from_email}",
            "",
            "If you received this email, your configuration is working correctly!",
            "",
            f"*Sent at {now:%Y-%m-%d %H:%M} UTC*",
        ]
    )
    return Digest(
        title=TEST_SUBJECT,
        body=body,
        excerpt="This is a test email to verify your email configuration.",
        generated_at=now,
    )
