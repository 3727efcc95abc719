"""
Retry policy: exponential backoff with jitter, and how a report result
changes an item.

Shared by every store backend so the lifecycle rules live in one place.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from chatoutbox.types import (
    MAX_ATTEMPTS,
    MAX_ERROR_CHARS,
    ItemStatus,
    OutboxItem,
    ReportResult,
)

logger = logging.getLogger(__name__)

# Exponent stops growing after this many attempts; the cap takes over anyway.
MAX_EXPONENT = 10


@dataclass
class RetryPolicy:
    """
    delay = min(cap, base * 2 ** min(attempts, MAX_EXPONENT)) * uniform(0.5, 1.0)

    A retry_after hint from the transport is a floor: the item is never
    retried before the transport said it may be.
    """

    base_seconds: float = 1.0
    cap_seconds: float = 300.0
    max_attempts: int = MAX_ATTEMPTS
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be positive")
        if self.cap_seconds < self.base_seconds:
            raise ValueError("cap_seconds must be >= base_seconds")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def backoff(self, attempts: int, retry_after: Optional[float] = None) -> timedelta:
        """Delay before the next attempt. Always strictly positive."""
        exponent = min(max(attempts, 0), MAX_EXPONENT)
        delay = min(self.cap_seconds, self.base_seconds * (2**exponent))
        delay *= self.rng.uniform(0.5, 1.0)
        if retry_after is not None and retry_after > 0:
            delay = max(delay, float(retry_after))
        return timedelta(seconds=delay)

    def apply(
        self, item: OutboxItem, result: ReportResult, worker_id: str, now: datetime
    ) -> bool:
        """
        Apply one delivery result to item in place. Returns True if the item changed.

        A result from a worker that no longer owns a live lease still records
        what happened, but leaves the current owner's lease alone.
        """
        if item.status in (ItemStatus.DELIVERED, ItemStatus.FAILED):
            return False

        lease_held_by_other = (
            item.status == ItemStatus.LEASED
            and item.lease_owner is not None
            and item.lease_owner != worker_id
            and item.lease_expires_at is not None
            and item.lease_expires_at > now
        )

        if result.ok:
            item.status = ItemStatus.DELIVERED
            item.delivered_at = now
            if result.telegram_message_id is not None:
                item.telegram_message_id = result.telegram_message_id
            if not lease_held_by_other:
                item.clear_lease()
            return True

        item.attempts += 1
        item.last_error = (result.error or "delivery failed")[:MAX_ERROR_CHARS]
        if lease_held_by_other:
            logger.debug(
                "outbox: late failure report for %s from %s (lease held by %s)",
                item.id,
                worker_id,
                item.lease_owner,
            )
            return True

        item.clear_lease()
        if item.attempts >= self.max_attempts:
            item.status = ItemStatus.FAILED
            logger.warning(
                "outbox: item %s for principal %s failed permanently after %d attempts: %s",
                item.id,
                item.principal_id,
                item.attempts,
                item.last_error,
            )
            return True

        item.status = ItemStatus.PENDING
        item.next_attempt_at = now + self.backoff(item.attempts, result.retry_after)
        logger.debug(
            "outbox: item %s retry %d scheduled at %s",
            item.id,
            item.attempts,
            item.next_attempt_at.isoformat(),
        )
        return True
