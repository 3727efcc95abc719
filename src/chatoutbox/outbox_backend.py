"""
Outbox store protocol.

Producers call enqueue(); workers call pull() and report(). Every backend
(JSON file, PostgreSQL) implements the same contract, so the worker and the
HTTP layer do not care where items live.
"""

from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from chatoutbox.types import (
    Control,
    DeliveryMode,
    Destination,
    ItemStatus,
    OutboxItem,
    PrincipalId,
    ReportResult,
)


class PullReportStore(Protocol):
    """The worker-facing half of a store. OutboxClient implements only this."""

    async def pull(
        self,
        principal_id: PrincipalId,
        limit: int,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> List[OutboxItem]:
        """
        Lease up to limit due items of this principal, oldest first.
        Leased items are not returned to anyone else until reported or expired.
        """

    async def report(
        self,
        principal_id: PrincipalId,
        worker_id: str,
        results: Sequence[ReportResult],
        now: Optional[datetime] = None,
    ) -> None:
        """Record delivery outcomes for items previously pulled by worker_id."""


class OutboxStore(PullReportStore, Protocol):
    """Protocol for outbox persistence."""

    async def enqueue(
        self,
        principal_id: PrincipalId,
        destination: Destination,
        text: str,
        *,
        mode: DeliveryMode = DeliveryMode.SEND,
        progress_key: Optional[str] = None,
        control: Optional[Control] = None,
        reply_markup: Optional[dict] = None,
        silent: bool = False,
        parse_mode: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OutboxItem:
        """Persist a new pending item and return it (with its assigned id)."""

    async def prune_delivered(self, keep: int = 1000) -> int:
        """Drop the oldest delivered items beyond keep. Returns how many were dropped."""

    async def get(self, item_id: str) -> Optional[OutboxItem]:
        """Return a copy of the item, or None."""

    async def list_items(self, status: Optional[ItemStatus] = None) -> List[OutboxItem]:
        """Return copies of all items (optionally of one status) in enqueue order."""


def build_item(
    principal_id: PrincipalId,
    destination: Destination,
    text: str,
    *,
    mode: DeliveryMode | str = DeliveryMode.SEND,
    progress_key: Optional[str] = None,
    control: Optional[Control] = None,
    reply_markup: Optional[dict] = None,
    silent: bool = False,
    parse_mode: Optional[str] = None,
    now: datetime,
) -> OutboxItem:
    """Validate an enqueue request and build the pending item for it."""
    mode = DeliveryMode(mode)
    progress_key = (progress_key or "").strip() or None
    if mode == DeliveryMode.REPLACE and not progress_key:
        raise ValueError("progress_key is required for replace mode")
    if not str(destination).strip():
        raise ValueError("destination is required")
    return OutboxItem(
        principal_id=str(principal_id),
        destination=str(destination),
        text=text or "",
        parse_mode=parse_mode,
        silent=silent,
        mode=mode,
        progress_key=progress_key,
        control=control,
        reply_markup=reply_markup,
        created_at=now,
        status=ItemStatus.PENDING,
        attempts=0,
    )
