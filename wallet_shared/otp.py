import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

logger = logging.getLogger("wallet_shared.otp")


OTP_DIGITS = 6
OTP_TTL_SECS = 5 * 60
OTP_MAX_ATTEMPTS = 3
_LOCK_STRIPES = 16


class OTPInputError(ValueError):
    """Malformed recipient or code passed to the store."""


def generate_otp_code(digits: int = OTP_DIGITS) -> str:
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


@dataclass
class OTPEntry:
    code: str
    expires_at: float
    created_at: float
    attempts: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class VerificationResult:
    status: str  # approved | expired | failed
    reason: str  # approved | not_found | expired | attempts_exhausted | invalid_code
    message: str
    attempts_remaining: Optional[int] = None

    @property
    def approved(self) -> bool:
        return self.status == "approved"


APPROVED = "approved"
EXPIRED = "expired"
FAILED = "failed"


@dataclass
class OTPStore:
    """In-process store of one-time codes for a single delivery channel.

    One live entry per recipient; issuing again overwrites the previous code.
    Expiry is enforced lazily on verify and eagerly by cleanup_expired().
    Check-and-mutate sequences run under a per-recipient lock stripe so that
    concurrent requests for the same recipient never interleave.
    """

    channel: str
    ttl_secs: int = OTP_TTL_SECS
    max_attempts: int = OTP_MAX_ATTEMPTS
    digits: int = OTP_DIGITS
    clock: Callable[[], float] = time.time
    _entries: Dict[str, OTPEntry] = field(default_factory=dict, init=False, repr=False)
    _locks: list = field(default_factory=lambda: [threading.Lock() for _ in range(_LOCK_STRIPES)], init=False, repr=False)

    def _lock_for(self, recipient: str) -> threading.Lock:
        return self._locks[hash(recipient) % len(self._locks)]

    def _check_recipient(self, recipient: str) -> str:
        key = (recipient or "").strip()
        if not key:
            raise OTPInputError("recipient is required")
        return key

    def _check_code(self, code: str) -> str:
        value = (code or "").strip()
        if not value.isdigit() or len(value) != self.digits:
            raise OTPInputError(f"code must be {self.digits} digits")
        return value

    def issue(self, recipient: str, code: Optional[str] = None) -> str:
        """Store a fresh code for recipient and return it.

        When the delivery provider generated the code itself, pass it in and
        the store records that code instead of generating one.
        """
        key = self._check_recipient(recipient)
        value = self._check_code(code) if code is not None else generate_otp_code(self.digits)
        now = self.clock()
        with self._lock_for(key):
            self._entries[key] = OTPEntry(code=value, expires_at=now + self.ttl_secs, created_at=now)
        logger.debug("otp issued channel=%s ttl=%ss", self.channel, self.ttl_secs)
        return value

    def verify(self, recipient: str, submitted_code: str) -> VerificationResult:
        key = self._check_recipient(recipient)
        submitted = (submitted_code or "").strip()
        if not submitted.isdigit():
            raise OTPInputError("code must be numeric")
        now = self.clock()
        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is None:
                return VerificationResult(EXPIRED, "not_found", "No verification code found or expired")
            if entry.is_expired(now):
                del self._entries[key]
                return VerificationResult(EXPIRED, "expired", "Verification code has expired")
            if entry.attempts >= self.max_attempts:
                del self._entries[key]
                return VerificationResult(FAILED, "attempts_exhausted", "Too many failed attempts", 0)
            if secrets.compare_digest(entry.code, submitted):
                del self._entries[key]
                return VerificationResult(APPROVED, "approved", "Verification successful")
            entry.attempts += 1
            remaining = max(self.max_attempts - entry.attempts, 0)
        return VerificationResult(FAILED, "invalid_code", "Invalid verification code", remaining)

    def discard(self, recipient: str) -> bool:
        key = (recipient or "").strip()
        with self._lock_for(key):
            return self._entries.pop(key, None) is not None

    def cleanup_expired(self) -> int:
        now = self.clock()
        removed = 0
        for key in list(self._entries.keys()):
            with self._lock_for(key):
                entry = self._entries.get(key)
                if entry is not None and entry.is_expired(now):
                    del self._entries[key]
                    removed += 1
        if removed:
            logger.info("Cleaned up %s expired %s OTP codes", removed, self.channel)
        return removed

    def active_count(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        now = self.clock()
        entries = list(self._entries.values())
        return {
            "channel": self.channel,
            "active": len(entries),
            "expired": sum(1 for e in entries if e.is_expired(now)),
            "high_attempts": sum(1 for e in entries if e.attempts >= 2),
        }
