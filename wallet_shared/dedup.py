import logging
import math
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator

logger = logging.getLogger("wallet_shared.dedup")


DEFAULT_TTL_SECS = 30


class DuplicateRequestError(Exception):
    def __init__(self, key: str, retry_after: int):
        super().__init__("Duplicate request detected. Please wait.")
        self.key = key
        self.retry_after = retry_after


@dataclass
class _Entry:
    registered_at: float
    expires_at: float
    retries: int = 0


@dataclass(frozen=True)
class Admission:
    admitted: bool
    retry_after: int = 0


class DedupGate:
    """Rejects a request while another one with the same fingerprint is in flight.

    Entries are released when the request finishes; the TTL only bounds
    requests that never signal completion.
    """

    def __init__(self, default_ttl: int = DEFAULT_TTL_SECS, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self.clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def begin(self, key: str, ttl: int | None = None) -> Admission:
        ttl = self.default_ttl if ttl is None else ttl
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now <= entry.expires_at:
                entry.retries += 1
                retry_after = max(0, math.ceil(entry.expires_at - now))
                return Admission(admitted=False, retry_after=retry_after)
            self._entries[key] = _Entry(registered_at=now, expires_at=now + ttl)
        return Admission(admitted=True)

    def release(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    @contextmanager
    def hold(self, key: str, ttl: int | None = None) -> Iterator[None]:
        admission = self.begin(key, ttl)
        if not admission.admitted:
            logger.info("duplicate request rejected key=%s retry_after=%s", _redact(key), admission.retry_after)
            raise DuplicateRequestError(key, admission.retry_after)
        try:
            yield
        finally:
            self.release(key)

    def cleanup_expired(self) -> int:
        now = self.clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if now > e.expires_at]
            for k in stale:
                del self._entries[k]
        if stale:
            logger.info("Removed %s stale dedup entries", len(stale))
        return len(stale)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def _redact(key: str) -> str:
    # keys may embed a submitted code as the last segment
    parts = key.split(":")
    if len(parts) > 2:
        parts[-1] = "*" * len(parts[-1])
    return ":".join(parts)
