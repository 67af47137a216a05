"""Outbound mail transports for verification and password-reset codes."""

from __future__ import annotations

import logging
import smtplib
import ssl
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from .config import Settings
from .context import mask_email

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    def send(self, to_email: str, subject: str, body: str) -> None: ...

    def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class SentMail:
    to_email: str
    subject: str
    body: str
    code: str | None = None


class InMemoryMailer:
    """Records messages instead of delivering them; used in development and tests."""

    def __init__(self) -> None:
        self._sent: list[SentMail] = []
        self._lock = threading.Lock()

    def send(self, to_email: str, subject: str, body: str) -> None:
        code = body.rsplit(":", 1)[-1].strip() if ":" in body else None
        with self._lock:
            self._sent.append(SentMail(to_email=to_email, subject=subject, body=body, code=code or None))
        logger.info("mail recorded for %s subject=%r", mask_email(to_email), subject)

    @property
    def sent(self) -> list[SentMail]:
        with self._lock:
            return list(self._sent)

    def last_code(self, to_email: str) -> str | None:
        """Return the code carried by the most recent message sent to ``to_email``."""
        with self._lock:
            for message in reversed(self._sent):
                if message.to_email.lower() == to_email.lower():
                    return message.code
        return None

    def close(self) -> None:
        pass


class SmtpMailer:
    """Delivers plain-text mail over SMTP on a background executor.

    ``send`` returns as soon as the message is queued; delivery failures are
    logged and never reach the caller.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        from_email: str,
        executor: Executor | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._from_email = from_email
        self._timeout = timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="smtp")

    def send(self, to_email: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self._from_email
        message["To"] = to_email
        message["Subject"] = subject
        message.set_content(body)
        self._executor.submit(self._deliver, message, to_email)

    def _deliver(self, message: EmailMessage, to_email: str) -> None:
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                if self._use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self._username and self._password:
                    server.login(self._username, self._password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("smtp delivery to %s failed: %s", mask_email(to_email), exc)
            return
        logger.info("smtp delivery to %s succeeded", mask_email(to_email))

    def close(self) -> None:
        """Wait for queued deliveries, then stop the worker threads."""
        if isinstance(self._executor, ThreadPoolExecutor):
            self._executor.shutdown(wait=True)


def build_mailer(settings: Settings) -> Mailer:
    """Instantiate the configured mail transport, defaulting to the in-memory one."""
    if settings.mailer_backend == "smtp":
        if not settings.smtp_host:
            raise ValueError("MAILER_BACKEND=smtp requires SMTP_HOST")
        logger.info("mailer configured for smtp at %s:%s", settings.smtp_host, settings.smtp_port)
        return SmtpMailer(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user or None,
            password=settings.smtp_password or None,
            use_tls=settings.smtp_use_tls,
            from_email=settings.mail_from,
        )
    logger.info("mailer using in-memory backend")
    return InMemoryMailer()
