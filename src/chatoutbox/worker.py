"""
Delivery worker: polls the outbox and delivers leased items to the chat.

Each tick, for every configured principal in turn:
  pull (lease a batch) -> deliver items one by one -> report once.

Items of one principal are delivered strictly in lease order; principals
are handled sequentially too, so the chat API only ever sees one call at a
time from this worker. Crash recovery is entirely the store's lease expiry.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from chatoutbox.errors import (
    MessageNotEditableError,
    MessageNotModifiedError,
    TransportError,
)
from chatoutbox.indicator import ThinkingIndicator
from chatoutbox.outbox_backend import PullReportStore
from chatoutbox.progress import ProgressCache
from chatoutbox.transport import ChatTransport
from chatoutbox.types import (
    DeliveryMode,
    OutboxItem,
    PrincipalId,
    ReportResult,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

POLL_INTERVAL_SECONDS = 1.0
PULL_LIMIT = 10
TRANSPORT_TIMEOUT_SECONDS = 20.0


# pylint: disable=too-many-instance-attributes
class DeliveryWorker:
    """
    Polling delivery worker.

    - worker_id is fixed for the lifetime of the instance and identifies its leases.
    - progress_cache maps (destination, progress_key) to the message showing it.
    - tick() never overlaps itself: a tick fired while another runs is skipped.
    """

    def __init__(
        self,
        store: PullReportStore,
        transport: ChatTransport,
        principals: Sequence[PrincipalId],
        *,
        indicator: Optional[ThinkingIndicator] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        pull_limit: int = PULL_LIMIT,
        transport_timeout: float = TRANSPORT_TIMEOUT_SECONDS,
        progress_cache: Optional[ProgressCache] = None,
        worker_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.transport = transport
        self.principals = [str(p) for p in principals]
        self.indicator = indicator
        self.poll_interval = poll_interval
        self.pull_limit = max(1, pull_limit)
        self.transport_timeout = transport_timeout
        self.progress_cache = progress_cache if progress_cache is not None else ProgressCache()
        self.worker_id = worker_id or uuid.uuid4().hex
        self._clock = clock
        self._tick_running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> "DeliveryWorker":
        """Start the polling loop in the background. Use stop() to shut down."""
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._poll_loop())
            logger.info(
                "delivery worker %s started (principals=%s, interval=%.1fs)",
                self.worker_id,
                ",".join(self.principals),
                self.poll_interval,
            )
        return self

    async def run_forever(self) -> None:
        """Run the polling loop until cancelled. Call after start()."""
        if self._loop_task is None:
            raise RuntimeError("Worker not started; call start() first")
        await self._loop_task

    async def stop(self) -> None:
        """Stop polling, let the current tick finish, and stop any indicators."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._tick_task is not None:
            await asyncio.gather(self._tick_task, return_exceptions=True)
            self._tick_task = None
        if self.indicator is not None:
            await self.indicator.stop_all()
        logger.info("delivery worker %s stopped", self.worker_id)

    async def __aenter__(self) -> "DeliveryWorker":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def _poll_loop(self) -> None:
        # Fire immediately on startup, then on every interval.
        while True:
            if self._tick_task is None or self._tick_task.done():
                self._tick_task = asyncio.create_task(self.tick())
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def tick(self) -> bool:
        """Run one polling pass over all principals. Returns False if skipped."""
        if self._tick_running:
            logger.debug("delivery worker %s: tick still running, skipped", self.worker_id)
            return False
        self._tick_running = True
        try:
            for principal_id in self.principals:
                try:
                    await self.process_principal(principal_id)
                except Exception:  # pylint: disable=broad-exception-caught
                    logger.exception(
                        "delivery worker %s: principal %s failed", self.worker_id, principal_id
                    )
            evicted = self.progress_cache.evict_idle()
            if evicted:
                logger.debug("delivery worker: evicted %d idle progress slots", evicted)
        finally:
            self._tick_running = False
        return True

    async def process_principal(self, principal_id: PrincipalId) -> List[ReportResult]:
        """Pull one batch for principal_id, deliver it in order, report it once."""
        items = await self.store.pull(
            principal_id, self.pull_limit, self.worker_id, self._clock()
        )
        if not items:
            return []
        results = [await self.deliver(item) for item in items]
        results = _supersede_failed_updates(items, results)
        await self.store.report(principal_id, self.worker_id, results, self._clock())
        failed = sum(1 for r in results if not r.ok)
        logger.debug(
            "delivery worker %s: principal %s delivered=%d failed=%d",
            self.worker_id,
            principal_id,
            len(results) - failed,
            failed,
        )
        return results

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _bounded(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self.transport_timeout)

    async def deliver(self, item: OutboxItem) -> ReportResult:
        """Deliver one item. Never raises: every failure becomes ok=False."""
        try:
            if item.control is not None:
                if self.indicator is not None:
                    await self._bounded(self.indicator.handle(item.destination, item.control))
                return ReportResult(id=item.id, ok=True)

            if item.mode == DeliveryMode.REPLACE and item.progress_key:
                message_id = await self._deliver_replace(item)
            else:
                message_id = await self._send(item)
            return ReportResult(id=item.id, ok=True, telegram_message_id=message_id)
        except TransportError as e:
            logger.warning(
                "delivery of %s to %s failed: %s", item.id, item.destination, e.description
            )
            return ReportResult(
                id=item.id, ok=False, error=e.description, retry_after=e.retry_after
            )
        except asyncio.TimeoutError:
            logger.warning("delivery of %s to %s timed out", item.id, item.destination)
            return ReportResult(
                id=item.id,
                ok=False,
                error=f"timeout after {self.transport_timeout:g}s",
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.exception("delivery of %s raised", item.id)
            return ReportResult(id=item.id, ok=False, error=str(e) or e.__class__.__name__)

    async def _send(self, item: OutboxItem) -> int:
        return await self._bounded(
            self.transport.send(
                item.destination,
                item.text,
                parse_mode=item.parse_mode,
                silent=item.silent,
                reply_markup=item.reply_markup,
            )
        )

    async def _deliver_replace(self, item: OutboxItem) -> int:
        """Apply a replace item to its progress slot; returns the message id showing it."""
        cache = self.progress_cache
        entry = cache.get(item.destination, item.progress_key)
        if entry is None:
            message_id = await self._send(item)
            cache.bind(
                item.destination,
                item.progress_key,
                message_id,
                item.text,
                item.reply_markup,
                applied_at=item.created_at,
            )
            return message_id

        if entry.is_newer_than(item.created_at):
            # A retried update must not roll the message back.
            logger.debug(
                "progress %s: update %s superseded by a newer one", item.progress_key, item.id
            )
            return entry.message_id

        if entry.same_content(item.text, item.reply_markup):
            entry.mark_applied(item.created_at)
            return entry.message_id

        try:
            await self._bounded(
                self.transport.edit(
                    item.destination,
                    entry.message_id,
                    item.text,
                    parse_mode=item.parse_mode,
                    reply_markup=item.reply_markup,
                )
            )
        except MessageNotModifiedError:
            pass
        except MessageNotEditableError as e:
            logger.info(
                "progress %s: message %s not editable (%s), sending a new one",
                item.progress_key,
                entry.message_id,
                e.description,
            )
            message_id = await self._send(item)
            cache.bind(
                item.destination,
                item.progress_key,
                message_id,
                item.text,
                item.reply_markup,
                applied_at=item.created_at,
            )
            return message_id

        cache.touch(entry, item.text, item.reply_markup, applied_at=item.created_at)
        return entry.message_id


def _supersede_failed_updates(
    items: Sequence[OutboxItem], results: List[ReportResult]
) -> List[ReportResult]:
    """
    Report a failed replace update as delivered when a later update of the
    same slot in this batch was delivered, so it is never retried over it.
    """
    shown: Dict[Tuple[str, str], Optional[int]] = {}
    out = list(results)
    for index in range(len(items) - 1, -1, -1):
        item, result = items[index], out[index]
        if item.mode != DeliveryMode.REPLACE or not item.progress_key or item.control:
            continue
        slot = (item.destination, item.progress_key)
        if result.ok:
            shown.setdefault(slot, result.telegram_message_id)
        elif slot in shown:
            logger.debug(
                "progress %s: failed update %s superseded (%s)",
                item.progress_key,
                item.id,
                result.error,
            )
            out[index] = ReportResult(id=item.id, ok=True, telegram_message_id=shown[slot])
    return out
