from __future__ import annotations

import logging
import os
import re
import smtplib
import socket
import uuid
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional, Protocol

from .delivery import (
    DeliveryResult,
    PermanentDeliveryError,
    TransientDeliveryError,
    mask_codes_in_text,
    send_with_retry,
)
from .env import env_bool, env_int
from .env_loader import ensure_loaded as _ensure_env_loaded
from .phone_utils import mask_email, normalize_email

logger = logging.getLogger("wallet_shared.email")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_TAG_RE = re.compile(r"<[^>]*>")


class EmailBackend(Protocol):
    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> DeliveryResult:  # pragma: no cover
        ...


def strip_html(html: str) -> str:
    return re.sub(r"\s+", " ", _TAG_RE.sub("", html or "")).strip()


def _check_recipient(to: str) -> str:
    addr = normalize_email(to)
    if not _EMAIL_RE.match(addr):
        raise PermanentDeliveryError("Invalid email address", reason="invalid_recipient", provider="email")
    return addr


@dataclass
class LogEmailBackend:
    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> DeliveryResult:
        addr = _check_recipient(to)
        body = text or strip_html(html)
        logger.debug("Email log backend send to=%s subject=%s body=%s", mask_email(addr), subject, mask_codes_in_text(body))
        return DeliveryResult(message_id=f"<log-{uuid.uuid4().hex}@localhost>")


@dataclass
class SmtpEmailBackend:
    host: str
    port: int = 587
    username: str = ""
    password: str = ""
    from_email: str = ""
    use_tls: bool = True
    use_ssl: bool = False
    timeout: float = 10.0

    def _connect(self) -> smtplib.SMTP:
        if self.use_ssl:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        return smtplib.SMTP(self.host, self.port, timeout=self.timeout)

    def _send_once(self, msg: EmailMessage) -> None:
        try:
            with self._connect() as server:
                if self.use_tls and not self.use_ssl:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            raise PermanentDeliveryError("SMTP authentication failed", reason="auth", provider="smtp") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentDeliveryError("Invalid email address", reason="invalid_recipient", provider="smtp") from exc
        except smtplib.SMTPResponseException as exc:
            raise _classify_smtp_code(exc.smtp_code, exc.smtp_error) from exc
        except (smtplib.SMTPException, socket.timeout, OSError) as exc:
            raise TransientDeliveryError(f"SMTP delivery failed: {exc}", reason="network", provider="smtp") from exc

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> DeliveryResult:
        if not (self.host and self.from_email):
            raise PermanentDeliveryError("SMTP backend not fully configured", reason="misconfigured", provider="smtp")
        addr = _check_recipient(to)
        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = addr
        msg["Subject"] = subject
        message_id = make_msgid()
        msg["Message-ID"] = message_id
        msg.set_content(text or strip_html(html))
        msg.add_alternative(html, subtype="html")
        send_with_retry(lambda: self._send_once(msg), backend_name="smtp")
        logger.info("Email sent to=%s message_id=%s", mask_email(addr), message_id)
        return DeliveryResult(message_id=message_id)


def _classify_smtp_code(code: int, error) -> Exception:
    detail = error.decode(errors="ignore") if isinstance(error, bytes) else str(error)
    if code == 550:
        return PermanentDeliveryError("Invalid email address", reason="invalid_recipient", provider="smtp")
    if code == 535:
        return PermanentDeliveryError("SMTP authentication failed", reason="auth", provider="smtp")
    if code in (421, 450, 451, 452, 554):
        return TransientDeliveryError(f"Email service temporarily unavailable ({code})", provider="smtp")
    if 400 <= code < 500:
        return TransientDeliveryError(f"SMTP Error {code}: {detail}", provider="smtp")
    return PermanentDeliveryError(f"SMTP Error {code}: {detail}", reason="rejected", provider="smtp")


def resolve_backend(provider: Optional[str] = None) -> EmailBackend:
    """Build the email backend named by OTP_EMAIL_PROVIDER (log|smtp)."""
    _ensure_env_loaded()
    provider = (provider or os.getenv("OTP_EMAIL_PROVIDER", "log") or "log").lower()
    if provider == "smtp":
        return SmtpEmailBackend(
            host=os.getenv("SMTP_HOST", ""),
            port=env_int("SMTP_PORT", default=587),
            username=os.getenv("SMTP_USER", ""),
            password=os.getenv("SMTP_PASS", ""),
            from_email=os.getenv("SMTP_FROM", ""),
            use_tls=env_bool("SMTP_STARTTLS", default=True),
            use_ssl=env_bool("SMTP_SECURE", default=False),
        )
    if provider != "log":
        logger.warning("Unknown OTP_EMAIL_PROVIDER %r, falling back to log backend", provider)
    return LogEmailBackend()
