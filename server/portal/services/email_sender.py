from __future__ import annotations

import logging
import re
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime, formataddr, make_msgid
from typing import Iterable, Sequence, Tuple

from portal.core.config import settings

logger = logging.getLogger(__name__)

LINE_BREAKS = re.compile(r"\s*[\r\n]+\s*")
# SMTP replies that mean "slow down and try again later".
THROTTLE_CODES = {421, 450, 451, 452}


class EmailRateLimitedError(Exception):
    """The relay throttled the send; the message should be retried later."""

    def __init__(self, smtp_code: int, message: str) -> None:
        super().__init__(message)
        self.smtp_code = smtp_code


def single_line(value: str | None) -> str:
    """Collapse line breaks so the value is usable as a header."""

    return LINE_BREAKS.sub(" ", value or "").strip()


def _clean_recipients(recipients: Iterable[str]) -> list[str]:
    cleaned: list[str] = []
    for address in recipients:
        if not address:
            continue
        normalized = address.strip()
        if not normalized or "@" not in normalized:
            continue
        cleaned.append(normalized)
    return list(dict.fromkeys(cleaned))


class EmailSender:
    def __init__(self) -> None:
        self.from_address = settings.EMAIL_FROM_ADDRESS
        self.from_name = settings.EMAIL_FROM_NAME
        self.reply_to = settings.EMAIL_REPLY_TO

    def is_configured(self) -> bool:
        return bool(
            self.from_address
            and settings.EMAIL_SMTP_HOST
            and settings.EMAIL_SMTP_USERNAME
            and settings.EMAIL_SMTP_PASSWORD
        )

    def send(
        self,
        *,
        subject: str,
        html_body: str,
        text_body: str,
        to: Sequence[str],
        reply_to: str | None = None,
    ) -> Tuple[bool, list[str]]:
        """Deliver one message; raises ``EmailRateLimitedError`` when throttled."""

        subject = single_line(subject)
        recipients = _clean_recipients(to)
        if not recipients:
            logger.warning("email_send_skipped_no_recipients", extra={"subject": subject})
            return False, []
        if not self.is_configured():
            logger.warning("email_send_skipped_unconfigured", extra={"subject": subject, "to": recipients})
            return False, []

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((single_line(self.from_name), self.from_address))
        message["To"] = ", ".join(recipients)
        if reply_to or self.reply_to:
            message["Reply-To"] = single_line(reply_to or self.reply_to)
        message["Date"] = format_datetime(datetime.now(timezone.utc))
        if "@" in self.from_address:
            message["Message-ID"] = make_msgid(domain=self.from_address.split("@", 1)[1])
        message.set_content(text_body or " ")
        message.add_alternative(html_body, subtype="html")

        try:
            if settings.EMAIL_SMTP_USE_SSL:
                with smtplib.SMTP_SSL(
                    settings.EMAIL_SMTP_HOST,
                    settings.EMAIL_SMTP_PORT,
                    timeout=settings.EMAIL_TIMEOUT_SECONDS,
                ) as smtp:
                    smtp.ehlo()
                    smtp.login(settings.EMAIL_SMTP_USERNAME, settings.EMAIL_SMTP_PASSWORD)
                    smtp.send_message(message, from_addr=self.from_address, to_addrs=recipients)
            else:
                with smtplib.SMTP(
                    settings.EMAIL_SMTP_HOST,
                    settings.EMAIL_SMTP_PORT,
                    timeout=settings.EMAIL_TIMEOUT_SECONDS,
                ) as smtp:
                    smtp.ehlo()
                    if settings.EMAIL_SMTP_USE_TLS:
                        smtp.starttls()
                        smtp.ehlo()
                    smtp.login(settings.EMAIL_SMTP_USERNAME, settings.EMAIL_SMTP_PASSWORD)
                    smtp.send_message(message, from_addr=self.from_address, to_addrs=recipients)
            logger.info("email_sent", extra={"subject": subject, "to": recipients})
            return True, []
        except smtplib.SMTPRecipientsRefused as exc:
            refused = getattr(exc, "recipients", {}) or {}
            logger.warning("email_recipients_refused", extra={"subject": subject, "refused": refused})
            return len(recipients) > len(refused), list(refused.keys())
        except smtplib.SMTPResponseException as exc:
            if exc.smtp_code in THROTTLE_CODES:
                logger.warning("email_send_throttled", extra={"subject": subject, "smtp_code": exc.smtp_code})
                detail = exc.smtp_error.decode("utf-8", "replace") if isinstance(exc.smtp_error, bytes) else str(exc.smtp_error)
                raise EmailRateLimitedError(exc.smtp_code, detail) from exc
            logger.exception("email_send_failed", extra={"subject": subject, "to": recipients})
            return False, []
        except (smtplib.SMTPException, OSError):
            logger.exception("email_send_failed", extra={"subject": subject, "to": recipients})
            return False, []


def get_email_sender() -> EmailSender:
    return EmailSender()
