import asyncio
import logging
from typing import Callable, List

from . import metrics
from .verification import VerificationComponents

logger = logging.getLogger("accounts.sweeps")


async def run_periodic(name: str, interval: float, fn: Callable[[], object]) -> None:
    """Call fn every interval seconds until cancelled; failures are logged, never raised."""
    while True:
        await asyncio.sleep(interval)
        try:
            fn()
        except Exception:
            logger.exception("%s sweep failed", name)


def sweep_otp(components: VerificationComponents) -> int:
    removed = 0
    for store in (components.sms_otp, components.email_otp):
        count = store.cleanup_expired()
        removed += count
        metrics.OTP_SWEPT.labels(store.channel).inc(count)
        metrics.OTP_ACTIVE.labels(store.channel).set(store.active_count())
    return removed


def sweep_dedup(components: VerificationComponents) -> int:
    return components.dedup.cleanup_expired()


def start_sweeps(components: VerificationComponents, otp_interval: float, dedup_interval: float) -> List[asyncio.Task]:
    return [
        asyncio.create_task(run_periodic("otp", otp_interval, lambda: sweep_otp(components))),
        asyncio.create_task(run_periodic("dedup", dedup_interval, lambda: sweep_dedup(components))),
    ]


async def stop_sweeps(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
