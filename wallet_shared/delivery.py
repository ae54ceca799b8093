from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger("wallet_shared.delivery")

T = TypeVar("T")


@dataclass(frozen=True)
class DeliveryResult:
    message_id: str
    # Set when the provider generated (or echoed) the code it delivered.
    code: Optional[str] = None


class DeliveryError(Exception):
    """Outbound SMS/email delivery failed."""

    retryable = False

    def __init__(self, message: str, *, reason: str = "provider_error", provider: str = ""):
        super().__init__(message)
        self.reason = reason
        self.provider = provider


class PermanentDeliveryError(DeliveryError):
    """Retrying will not help: bad recipient, bad credentials, no balance."""


class TransientDeliveryError(DeliveryError):
    """Network failure, timeout or provider throttling; safe to retry."""

    retryable = True


def send_with_retry(
    fn: Callable[[], T],
    *,
    backend_name: str,
    max_attempts: int = 3,
    delay: float = 0.5,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Call fn, retrying with exponential backoff on transient failures only."""
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except TransientDeliveryError as exc:
            if attempt == max_attempts:
                raise
            logger.warning("%s delivery attempt %s/%s failed: %s", backend_name, attempt, max_attempts, exc)
            (sleep or time.sleep)(delay)
            delay *= 2
    raise AssertionError("unreachable")  # pragma: no cover


def mask_code(code: str) -> str:
    if not code:
        return ""
    digits = re.sub(r"\D", "", code)
    if len(digits) <= 2:
        return "*" * len(digits)
    return "*" * (len(digits) - 2) + digits[-2:]


def mask_codes_in_text(text: str) -> str:
    if not text:
        return ""
    return re.sub(r"(\d{4,})", lambda m: mask_code(m.group(0)), text)
