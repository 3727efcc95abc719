"""Tests for chatoutbox.service and chatoutbox.split (producer helpers)."""

import pytest

from chatoutbox.service import OutboxService
from chatoutbox.split import split_text
from chatoutbox.store import JsonFileOutboxStore
from chatoutbox.types import Control, DeliveryMode

# pylint: disable=redefined-outer-name


@pytest.fixture
def store(tmp_path):
    return JsonFileOutboxStore(tmp_path / "outbox.json")


# ---------------------------------------------------------------------------
# split_text
# ---------------------------------------------------------------------------


def test_short_text_is_one_chunk():
    assert split_text("hello", 10) == ["hello"]
    assert split_text("", 10) == [""]


def test_split_prefers_line_boundaries():
    text = "aaaa\nbbbb\ncccc"
    assert split_text(text, 9) == ["aaaa\nbbbb", "cccc"]


def test_split_hard_slices_long_lines():
    chunks = split_text("x" * 25, 10)
    assert chunks == ["x" * 10, "x" * 10, "x" * 5]
    assert all(len(c) <= 10 for c in split_text("ab\n" + "y" * 23 + "\ncd", 10))


def test_split_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        split_text("x", 0)


# ---------------------------------------------------------------------------
# OutboxService
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_enqueue_text_notifies_once_with_markup_on_last_chunk(store):
    service = OutboxService(store, chunk_chars=10)
    keyboard = {"inline_keyboard": [[{"text": "ok", "callback_data": "ok"}]]}

    items = await service.enqueue_text("1", "100", "line one\nline two\nend", reply_markup=keyboard)

    assert [i.text for i in items] == ["line one", "line two", "end"]
    assert [i.silent for i in items] == [True, True, False]
    assert [i.reply_markup for i in items] == [None, None, keyboard]
    assert all(i.mode == DeliveryMode.SEND for i in items)
    pulled = await store.pull("1", 10, "w1")
    assert [i.id for i in pulled] == [i.id for i in items]


@pytest.mark.asyncio
async def test_enqueue_progress_keeps_the_tail(store):
    service = OutboxService(store, chunk_chars=10)

    item = await service.enqueue_progress("1", "100", "bash:1", "0123456789abcdef")

    assert item.mode == DeliveryMode.REPLACE
    assert item.progress_key == "bash:1"
    assert item.silent is True
    assert item.text == "…" + "789abcdef"
    assert len(item.text) == 10


@pytest.mark.asyncio
async def test_enqueue_thinking(store):
    service = OutboxService(store)

    item = await service.enqueue_thinking("1", "100", "start")

    assert item.control == Control(kind="thinking", action="start")
    with pytest.raises(ValueError):
        await service.enqueue_thinking("1", "100", "pause")


@pytest.mark.asyncio
async def test_enqueue_markdown_renders_html_per_chunk(store):
    service = OutboxService(store, chunk_chars=30)
    markdown = "Use `a<b` here\n```py\nx = 1\ny = 2\nz = 3\n```\ndone & dusted"

    items = await service.enqueue_markdown("1", "100", markdown)

    assert all(i.parse_mode == "HTML" for i in items)
    assert items[0].text.startswith("Use <code>a&lt;b</code> here")
    assert items[-1].text.endswith("done &amp; dusted")
    assert [i.silent for i in items] == [True] * (len(items) - 1) + [False]
    # Each chunk carries complete code blocks only.
    for item in items:
        assert item.text.count("<pre>") == item.text.count("</pre>")
    assert "```" not in "".join(i.text for i in items)
