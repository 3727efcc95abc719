"""Tests for chatoutbox.store (JsonFileOutboxStore leasing, reporting, persistence)."""

import asyncio
import json
import random
from datetime import datetime, timedelta, timezone

import pytest

from chatoutbox.errors import StoreError
from chatoutbox.retry import RetryPolicy
from chatoutbox.store import JsonFileOutboxStore
from chatoutbox.types import (
    LEASE_TTL,
    Control,
    DeliveryMode,
    ItemStatus,
    ReportResult,
)

# pylint: disable=redefined-outer-name

T0 = datetime(2026, 2, 5, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def outbox_path(tmp_path):
    return tmp_path / "data" / "telegram.outbox.json"


@pytest.fixture
def store(outbox_path):
    return JsonFileOutboxStore(
        outbox_path, retry_policy=RetryPolicy(max_attempts=3, rng=random.Random(7))
    )


def read_record(path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def stored_item(path, item_id: str) -> dict:
    return next(i for i in read_record(path)["items"] if i["id"] == item_id)


# ---------------------------------------------------------------------------
# enqueue / pull
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pull_leases_in_order_and_hides_leased_items(store, outbox_path):
    """Items come back in enqueue order; a second pull inside the lease gets nothing."""
    await store.enqueue("1", "10", "hello", now=T0)
    await store.enqueue("1", "10", "world", now=T0)

    first = await store.pull("1", 10, "w1", T0)
    assert [i.text for i in first] == ["hello", "world"]
    assert all(i.status == ItemStatus.LEASED and i.lease_owner == "w1" for i in first)

    second = await store.pull("1", 10, "w1", T0 + timedelta(seconds=1))
    assert second == []

    record = read_record(outbox_path)
    assert len(record["items"]) == 2
    assert record["items"][0]["lease_owner"] == "w1"
    assert record["items"][0]["status"] == "leased"


@pytest.mark.asyncio
async def test_enqueue_returns_stored_representation(store, outbox_path):
    """enqueue assigns an id and persists a pending item with zero attempts."""
    item = await store.enqueue(
        "1",
        "10",
        "progress",
        mode=DeliveryMode.REPLACE,
        progress_key="bash:1",
        reply_markup={"inline_keyboard": [[{"text": "Stop", "callback_data": "stop"}]]},
        silent=True,
        parse_mode="HTML",
        now=T0,
    )
    assert item.id
    assert item.status == ItemStatus.PENDING
    assert item.attempts == 0

    stored = stored_item(outbox_path, item.id)
    assert stored["mode"] == "replace"
    assert stored["progress_key"] == "bash:1"
    assert stored["silent"] is True
    assert stored["reply_markup"]["inline_keyboard"][0][0]["text"] == "Stop"


@pytest.mark.asyncio
async def test_enqueue_rejects_replace_without_progress_key(store):
    with pytest.raises(ValueError):
        await store.enqueue("1", "10", "x", mode=DeliveryMode.REPLACE)
    with pytest.raises(ValueError):
        await store.enqueue("1", "10", "x", mode="broadcast")


@pytest.mark.asyncio
async def test_pull_respects_limit_and_principal(store):
    """Only the calling principal's items are leased, at most limit of them."""
    for i in range(3):
        await store.enqueue("1", "10", f"a{i}", now=T0)
    await store.enqueue("2", "20", "b0", now=T0)

    got = await store.pull("1", 2, "w1", T0)
    assert [i.text for i in got] == ["a0", "a1"]

    rest = await store.pull("1", 10, "w1", T0)
    assert [i.text for i in rest] == ["a2"]

    other = await store.pull("2", 10, "w1", T0)
    assert [i.text for i in other] == ["b0"]


@pytest.mark.asyncio
async def test_lease_is_exclusive_until_expiry(store):
    """Another worker cannot take a live lease, but can after it expires."""
    item = await store.enqueue("1", "10", "slow", now=T0)
    assert [i.id for i in await store.pull("1", 10, "w1", T0)] == [item.id]

    assert await store.pull("1", 10, "w2", T0 + LEASE_TTL - timedelta(seconds=1)) == []

    after = await store.pull("1", 10, "w2", T0 + LEASE_TTL)
    assert [i.id for i in after] == [item.id]
    assert after[0].lease_owner == "w2"


@pytest.mark.asyncio
async def test_pull_with_nonpositive_limit_is_empty(store):
    await store.enqueue("1", "10", "x", now=T0)
    assert await store.pull("1", 0, "w1", T0) == []


# ---------------------------------------------------------------------------
# report
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_report_success_marks_delivered(store, outbox_path):
    item = await store.enqueue("2", "20", "ok", now=T0)
    await store.pull("2", 1, "w2", T0)

    await store.report(
        "2", "w2", [ReportResult(id=item.id, ok=True, telegram_message_id=123)], T0
    )

    stored = stored_item(outbox_path, item.id)
    assert stored["status"] == "delivered"
    assert stored["telegram_message_id"] == 123
    assert stored["lease_owner"] is None
    assert stored["lease_expires_at"] is None


@pytest.mark.asyncio
async def test_report_failure_schedules_retry(store, outbox_path):
    item = await store.enqueue("3", "30", "fail", now=T0)
    await store.pull("3", 1, "w3", T0)

    await store.report("3", "w3", [ReportResult(id=item.id, ok=False, error="net")], T0)

    stored = stored_item(outbox_path, item.id)
    assert stored["status"] == "pending"
    assert stored["attempts"] == 1
    assert stored["last_error"] == "net"
    assert datetime.fromisoformat(stored["next_attempt_at"]) > T0

    # Not due again until next_attempt_at passes.
    assert await store.pull("3", 1, "w3", T0) == []
    later = datetime.fromisoformat(stored["next_attempt_at"])
    assert [i.id for i in await store.pull("3", 1, "w3", later)] == [item.id]


@pytest.mark.asyncio
async def test_report_failure_honours_retry_after(store, outbox_path):
    item = await store.enqueue("3", "30", "busy", now=T0)
    await store.pull("3", 1, "w3", T0)

    await store.report(
        "3",
        "w3",
        [ReportResult(id=item.id, ok=False, error="Too Many Requests", retry_after=42)],
        T0,
    )

    stored = stored_item(outbox_path, item.id)
    assert datetime.fromisoformat(stored["next_attempt_at"]) >= T0 + timedelta(seconds=42)


@pytest.mark.asyncio
async def test_item_fails_permanently_at_attempt_ceiling(store, outbox_path):
    """After max_attempts failures the item is failed and never pulled again."""
    item = await store.enqueue("4", "40", "doomed", now=T0)
    now = T0
    for _ in range(3):
        pulled = await store.pull("4", 1, "w4", now)
        assert [i.id for i in pulled] == [item.id]
        await store.report("4", "w4", [ReportResult(id=item.id, ok=False, error="x")], now)
        now += timedelta(hours=1)

    stored = stored_item(outbox_path, item.id)
    assert stored["status"] == "failed"
    assert stored["attempts"] == 3
    assert await store.pull("4", 1, "w4", now + timedelta(days=1)) == []


@pytest.mark.asyncio
async def test_late_report_does_not_touch_new_owners_lease(store, outbox_path):
    """A report from a worker whose lease expired records the outcome only."""
    item = await store.enqueue("5", "50", "late", now=T0)
    await store.pull("5", 1, "w-old", T0)
    t1 = T0 + LEASE_TTL + timedelta(seconds=1)
    await store.pull("5", 1, "w-new", t1)

    await store.report(
        "5", "w-old", [ReportResult(id=item.id, ok=False, error="timeout")], t1
    )

    stored = stored_item(outbox_path, item.id)
    assert stored["attempts"] == 1
    assert stored["last_error"] == "timeout"
    assert stored["status"] == "leased"
    assert stored["lease_owner"] == "w-new"

    await store.report(
        "5", "w-new", [ReportResult(id=item.id, ok=True, telegram_message_id=9)], t1
    )
    stored = stored_item(outbox_path, item.id)
    assert stored["status"] == "delivered"
    assert stored["lease_owner"] is None


@pytest.mark.asyncio
async def test_report_ignores_unknown_and_foreign_items(store, outbox_path):
    item = await store.enqueue("6", "60", "mine", now=T0)
    await store.pull("6", 1, "w6", T0)

    await store.report("7", "w6", [ReportResult(id=item.id, ok=True)], T0)
    await store.report("6", "w6", [ReportResult(id="missing", ok=True)], T0)

    assert stored_item(outbox_path, item.id)["status"] == "leased"


@pytest.mark.asyncio
async def test_report_on_delivered_item_is_noop(store, outbox_path):
    item = await store.enqueue("6", "60", "once", now=T0)
    await store.pull("6", 1, "w6", T0)
    await store.report("6", "w6", [ReportResult(id=item.id, ok=True)], T0)
    await store.report("6", "w6", [ReportResult(id=item.id, ok=False, error="x")], T0)

    stored = stored_item(outbox_path, item.id)
    assert stored["status"] == "delivered"
    assert stored["attempts"] == 0


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_record_is_empty_queue(store, outbox_path):
    assert not outbox_path.exists()
    assert await store.list_items() == []
    assert await store.pull("1", 10, "w1", T0) == []


@pytest.mark.asyncio
async def test_corrupt_record_starts_empty(store, outbox_path):
    outbox_path.parent.mkdir(parents=True)
    outbox_path.write_text("{not json", encoding="utf-8")

    assert await store.list_items() == []
    item = await store.enqueue("1", "10", "fresh", now=T0)
    assert [i["id"] for i in read_record(outbox_path)["items"]] == [item.id]

    # The unreadable record is kept next to the new one for recovery.
    backups = list(outbox_path.parent.glob(f"{outbox_path.name}.corrupt-*"))
    assert len(backups) == 1
    assert backups[0].read_text(encoding="utf-8") == "{not json"


@pytest.mark.asyncio
async def test_naive_now_is_taken_as_utc(store):
    """Callers may pass naive UTC datetimes after aware ones were stored."""
    naive_t0 = T0.replace(tzinfo=None)
    first = await store.enqueue("1", "10", "a", now=T0)
    second = await store.enqueue("1", "10", "b", now=naive_t0)

    pulled = await store.pull("1", 10, "w1", naive_t0)
    assert [i.id for i in pulled] == [first.id, second.id]
    assert pulled[1].created_at == T0

    await store.report(
        "1", "w1", [ReportResult(id=first.id, ok=False, error="net")], naive_t0
    )
    assert await store.pull("1", 10, "w2", naive_t0 + timedelta(milliseconds=500)) == []
    again = await store.pull("1", 10, "w2", naive_t0 + timedelta(hours=1))
    assert [i.id for i in again] == [first.id, second.id]


@pytest.mark.asyncio
async def test_writes_leave_no_temp_files(store, outbox_path):
    for i in range(5):
        await store.enqueue("1", "10", f"m{i}", now=T0)
    assert [p.name for p in outbox_path.parent.iterdir()] == [outbox_path.name]


@pytest.mark.asyncio
async def test_state_survives_a_new_store_instance(store, outbox_path):
    """A restarted process sees the same leases and items."""
    item = await store.enqueue(
        "1", "10", "", control=Control(kind="thinking", action="start"), now=T0
    )
    await store.pull("1", 1, "w1", T0)

    reopened = JsonFileOutboxStore(outbox_path)
    again = await reopened.get(item.id)
    assert again is not None
    assert again.status == ItemStatus.LEASED
    assert again.control == Control(kind="thinking", action="start")
    assert await reopened.pull("1", 1, "w2", T0) == []


@pytest.mark.asyncio
async def test_concurrent_enqueues_are_all_persisted(store):
    """Serialized read-modify-write: no enqueue is lost under concurrency."""
    await asyncio.gather(*(store.enqueue("1", "10", f"m{i}", now=T0) for i in range(20)))
    assert len(await store.list_items()) == 20


@pytest.mark.asyncio
async def test_unwritable_record_raises_store_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    store = JsonFileOutboxStore(blocker / "outbox.json")
    with pytest.raises(StoreError):
        await store.enqueue("1", "10", "x", now=T0)


# ---------------------------------------------------------------------------
# Pruning / listing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_prune_delivered_keeps_newest_and_never_pending(store):
    items = [await store.enqueue("1", "10", f"m{i}", now=T0) for i in range(4)]
    await store.pull("1", 3, "w1", T0)
    await store.report(
        "1",
        "w1",
        [ReportResult(id=items[0].id, ok=True)],
        T0,
    )
    await store.report(
        "1",
        "w1",
        [ReportResult(id=items[1].id, ok=True), ReportResult(id=items[2].id, ok=True)],
        T0 + timedelta(minutes=1),
    )

    dropped = await store.prune_delivered(keep=2)
    assert dropped == 1

    remaining = {i.id for i in await store.list_items()}
    assert items[0].id not in remaining
    assert {items[1].id, items[2].id, items[3].id} <= remaining
    assert [i.id for i in await store.list_items(ItemStatus.PENDING)] == [items[3].id]
