"""
JSON file outbox store.

The whole queue lives in one human-readable JSON document:

  { "items": [ {...OutboxItem...}, ... ] }

Every mutation is a load -> modify -> save under one asyncio.Lock. Saves go
to a temporary file in the same directory and are moved into place with
os.replace, so a crash mid-write leaves the previous record intact.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TypeVar

from chatoutbox.errors import StoreError
from chatoutbox.outbox_backend import build_item
from chatoutbox.retry import RetryPolicy
from chatoutbox.types import (
    LEASE_TTL,
    Control,
    DeliveryMode,
    Destination,
    ItemStatus,
    OutboxItem,
    PrincipalId,
    ReportResult,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _read_items(path: Path) -> List[OutboxItem]:
    """
    Load the record. A missing file loads as an empty queue; a corrupt one is
    moved aside to <name>.corrupt-<timestamp> first, so the next save cannot
    overwrite what is left of it.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError as e:
        raise StoreError(f"cannot read outbox record {path}: {e}") from e
    try:
        data = json.loads(raw)
        return [OutboxItem.model_validate(entry) for entry in data.get("items", [])]
    except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
        backup = path.with_name(f"{path.name}.corrupt-{utcnow():%Y%m%dT%H%M%S%f}")
        try:
            os.replace(path, backup)
        except OSError as move_error:
            raise StoreError(
                f"outbox record {path} is corrupt and cannot be moved aside: {move_error}"
            ) from e
        logger.warning(
            "outbox record %s is corrupt (%s), moved to %s, starting empty", path, e, backup
        )
        return []


def _write_items(path: Path, items: List[OutboxItem]) -> None:
    """Write the record atomically (temp file + rename)."""
    body = json.dumps(
        {"items": [item.model_dump() for item in items]},
        ensure_ascii=False,
        indent=2,
    )
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
    except OSError as e:
        raise StoreError(f"cannot write outbox record {path}: {e}") from e


class JsonFileOutboxStore:
    """
    Outbox store backed by a single JSON file.

    Safe for concurrent use from one event loop. Several processes may share
    the file only through the HTTP server, which owns the single instance.
    """

    def __init__(
        self,
        path: str | os.PathLike,
        *,
        lease_ttl: timedelta = LEASE_TTL,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.path = Path(path)
        self.lease_ttl = lease_ttl
        self.retry_policy = retry_policy or RetryPolicy()
        self._lock = asyncio.Lock()

    async def _load(self) -> List[OutboxItem]:
        return await asyncio.to_thread(_read_items, self.path)

    async def _save(self, items: List[OutboxItem]) -> None:
        await asyncio.to_thread(_write_items, self.path, items)

    async def _mutate(self, fn: Callable[[List[OutboxItem]], tuple[T, bool]]) -> T:
        """Run fn(items) under the lock; persist if it reports a change."""
        async with self._lock:
            items = await self._load()
            result, changed = fn(items)
            if changed:
                await self._save(items)
            return result

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
        item = build_item(
            principal_id,
            destination,
            text,
            mode=mode,
            progress_key=progress_key,
            control=control,
            reply_markup=reply_markup,
            silent=silent,
            parse_mode=parse_mode,
            now=as_utc(now),
        )

        def append(items: List[OutboxItem]):
            items.append(item)
            return item.copy(), True

        stored = await self._mutate(append)
        logger.debug(
            "outbox: enqueued %s for %s -> %s (%s)",
            stored.id,
            stored.principal_id,
            stored.destination,
            stored.mode,
        )
        return stored

    async def pull(
        self,
        principal_id: PrincipalId,
        limit: int,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> List[OutboxItem]:
        if limit <= 0:
            return []
        now = as_utc(now)
        principal_id = str(principal_id)

        def lease_due(items: List[OutboxItem]):
            due: List[OutboxItem] = []
            for item in items:
                if item.principal_id != principal_id or not item.is_due(now):
                    continue
                item.lease(worker_id, now, self.lease_ttl)
                due.append(item.copy())
                if len(due) >= limit:
                    break
            return due, bool(due)

        leased = await self._mutate(lease_due)
        if leased:
            logger.debug(
                "outbox: leased %d items of %s to %s", len(leased), principal_id, worker_id
            )
        return leased

    async def report(
        self,
        principal_id: PrincipalId,
        worker_id: str,
        results: Sequence[ReportResult],
        now: Optional[datetime] = None,
    ) -> None:
        if not results:
            return
        now = as_utc(now)
        principal_id = str(principal_id)

        def apply_results(items: List[OutboxItem]):
            by_id = {item.id: item for item in items}
            changed = False
            for result in results:
                item = by_id.get(result.id)
                if item is None or item.principal_id != principal_id:
                    logger.debug("outbox: report for unknown item %s ignored", result.id)
                    continue
                changed |= self.retry_policy.apply(item, result, worker_id, now)
            return None, changed

        await self._mutate(apply_results)

    async def prune_delivered(self, keep: int = 1000) -> int:
        keep = max(0, keep)

        def prune(items: List[OutboxItem]):
            delivered = [i for i in items if i.status == ItemStatus.DELIVERED]
            if len(delivered) <= keep:
                return 0, False
            delivered.sort(key=lambda i: i.delivered_at or i.created_at)
            drop = {i.id for i in delivered[: len(delivered) - keep]}
            items[:] = [i for i in items if i.id not in drop]
            return len(drop), True

        dropped = await self._mutate(prune)
        if dropped:
            logger.info("outbox: pruned %d delivered items", dropped)
        return dropped

    async def get(self, item_id: str) -> Optional[OutboxItem]:
        async with self._lock:
            items = await self._load()
        for item in items:
            if item.id == item_id:
                return item
        return None

    async def list_items(self, status: Optional[ItemStatus] = None) -> List[OutboxItem]:
        async with self._lock:
            items = await self._load()
        if status is None:
            return items
        return [item for item in items if item.status == status]
