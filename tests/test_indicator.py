"""Tests for chatoutbox.indicator (ThinkingIndicator)."""

import asyncio

import pytest

from chatoutbox.errors import TransportError
from chatoutbox.indicator import ThinkingIndicator
from chatoutbox.types import Control


class FakeTransport:
    def __init__(self, delete_error=None):
        self.calls: list[tuple] = []
        self.delete_error = delete_error
        self._next_id = 500

    async def send(self, destination, text, *, parse_mode=None, silent=False, reply_markup=None):
        self._next_id += 1
        self.calls.append(("send", destination, text, silent))
        return self._next_id

    async def edit(self, destination, message_id, text, *, parse_mode=None, reply_markup=None):
        self.calls.append(("edit", destination, message_id, text))

    async def delete(self, destination, message_id):
        self.calls.append(("delete", destination, message_id))
        if self.delete_error is not None:
            raise self.delete_error


@pytest.mark.asyncio
async def test_start_animates_and_stop_deletes():
    transport = FakeTransport()
    indicator = ThinkingIndicator(transport, interval=0.01)

    await indicator.handle("100", Control(kind="thinking", action="start"))
    assert transport.calls[0] == ("send", "100", "Thinking.", True)
    assert indicator.is_running("100")

    await asyncio.sleep(0.05)
    await indicator.handle("100", Control(kind="thinking", action="stop"))

    edits = [c for c in transport.calls if c[0] == "edit"]
    assert edits and edits[0] == ("edit", "100", 501, "Thinking..")
    assert transport.calls[-1] == ("delete", "100", 501)
    assert not indicator.is_running("100")


@pytest.mark.asyncio
async def test_restart_replaces_running_indicator():
    transport = FakeTransport()
    indicator = ThinkingIndicator(transport, interval=10)

    await indicator.start("100")
    await indicator.start("100")

    assert [c[0] for c in transport.calls] == ["send", "delete", "send"]
    await indicator.stop_all()
    assert transport.calls[-1] == ("delete", "100", 502)


@pytest.mark.asyncio
async def test_delete_failure_is_tolerated():
    transport = FakeTransport(delete_error=TransportError("Bad Request: message can't be deleted"))
    indicator = ThinkingIndicator(transport, interval=10)

    await indicator.start("100")
    await indicator.stop("100")

    assert not indicator.is_running("100")


@pytest.mark.asyncio
async def test_unknown_controls_are_ignored():
    transport = FakeTransport()
    indicator = ThinkingIndicator(transport)

    await indicator.handle("100", Control(kind="typing", action="start"))
    await indicator.handle("100", Control(kind="thinking", action="pause"))
    await indicator.stop("100")

    assert transport.calls == []
