from __future__ import annotations

import smtplib
import ssl
import threading
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.text import MIMEText
from typing import List, Optional, Protocol

from stepauth.logging import get_logger, redact_email
from stepauth.service.errors import DeliveryError
from stepauth.storage.models import utc_now

logger = get_logger(__name__)


class Notifier(Protocol):
    """Delivers a plaintext one-time code out-of-band.

    ``send`` returns once the transport acknowledged the message and raises
    ``DeliveryError`` otherwise. Implementations block; async callers run them
    in a worker thread.
    """

    def send(self, destination: str, code: str, ttl_minutes: int) -> None:
        ...


def _render_body(code: str, ttl_minutes: int) -> str:
    unit = "minute" if ttl_minutes == 1 else "minutes"
    return (
        f"Your verification code is {code}. It expires in {ttl_minutes} {unit}. "
        "If you did not request this code you can ignore this message."
    )


class EmailNotifier:
    """Sends codes as plain-text email over SMTP (STARTTLS or implicit TLS)."""

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "stepauth",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout
        if not self.from_email:
            raise ValueError("EmailNotifier needs EMAIL_FROM_ADDRESS or SMTP_USER")

    def _open(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
            server.starttls(context=context)
            return server
        return smtplib.SMTP_SSL(
            self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
        )

    def send(self, destination: str, code: str, ttl_minutes: int) -> None:
        msg = MIMEText(_render_body(code, ttl_minutes), "plain")
        msg["Subject"] = "Your verification code"
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = destination

        to = redact_email(destination)
        try:
            with self._open(ssl.create_default_context()) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, destination, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed", to=to, host=self.smtp_host, error=str(exc)
            )
            raise DeliveryError("smtp authentication failed", retryable=False) from exc
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused) as exc:
            logger.error(
                "email_address_refused",
                to=to,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError("email address refused", retryable=False) from exc
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # Connection drops, timeouts and 4xx replies are worth another try
            logger.warning(
                "email_send_failed",
                to=to,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError("email delivery failed") from exc
        logger.info("email_sent", to=to)


@dataclass(frozen=True)
class SentCode:
    destination: str
    code: str
    ttl_minutes: int
    sent_at: datetime = field(default_factory=utc_now)


class MemoryNotifier:
    """Keeps delivered codes in an in-process outbox for dev and test runs."""

    def __init__(self, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self.outbox: List[SentCode] = []

    def send(self, destination: str, code: str, ttl_minutes: int) -> None:
        with self._lock:
            self.outbox.append(SentCode(destination, code, ttl_minutes))
            # Drop the oldest entries beyond the cap
            del self.outbox[: -self.max_entries]
        logger.info("otp_delivered_to_outbox", to=redact_email(destination))

    def last_code_for(self, destination: str) -> Optional[str]:
        with self._lock:
            for sent in reversed(self.outbox):
                if sent.destination == destination:
                    return sent.code
        return None

    def clear(self) -> None:
        with self._lock:
            self.outbox.clear()
