import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the DB columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Cooldown:
    """Minimum interval between two code requests for one account and channel.

    The last-sent timestamp lives on the account row, so this object only
    holds the policy.
    """

    seconds: int = 60
    now: Callable[[], datetime] = utcnow

    def _elapsed(self, last_sent_at: datetime) -> float:
        return (self.now() - last_sent_at).total_seconds()

    def can_send(self, last_sent_at: Optional[datetime]) -> bool:
        if last_sent_at is None:
            return True
        return self._elapsed(last_sent_at) >= self.seconds

    def remaining(self, last_sent_at: Optional[datetime]) -> int:
        if last_sent_at is None:
            return 0
        return max(0, math.ceil(self.seconds - self._elapsed(last_sent_at)))
