"""
"Thinking..." indicator: one chat message with animated dots, shown while
long-running work is in progress and deleted when it ends.

Driven by control items (kind="thinking", action="start"/"stop") so it
stays ordered with the regular messages of the same principal.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict

from chatoutbox.errors import TransportError
from chatoutbox.transport import ChatTransport
from chatoutbox.types import Control, Destination

logger = logging.getLogger(__name__)

DOT_FRAMES = (".", "..", "...")

# One edit per second keeps the animation alive without rate-limit pressure.
EDIT_INTERVAL_SECONDS = 1.0

DEFAULT_LABEL = "Thinking"


@dataclass
class _Running:
    message_id: int
    task: asyncio.Task


class ThinkingIndicator:
    """Per-chat indicator messages. At most one runs per destination."""

    def __init__(
        self,
        transport: ChatTransport,
        *,
        label: str = DEFAULT_LABEL,
        interval: float = EDIT_INTERVAL_SECONDS,
    ) -> None:
        self._transport = transport
        self._label = label
        self._interval = interval
        self._running: Dict[Destination, _Running] = {}

    def _text(self, frame: int) -> str:
        return f"{self._label}{DOT_FRAMES[frame % len(DOT_FRAMES)]}"

    def is_running(self, destination: Destination) -> bool:
        return destination in self._running

    async def handle(self, destination: Destination, control: Control) -> None:
        """Execute a control item. Unknown kinds or actions are ignored."""
        if control.kind != "thinking":
            logger.warning("indicator: unknown control kind %r ignored", control.kind)
            return
        if control.action == "start":
            await self.start(destination)
        elif control.action == "stop":
            await self.stop(destination)
        else:
            logger.warning("indicator: unknown action %r ignored", control.action)

    async def start(self, destination: Destination) -> None:
        """Show the indicator, replacing one already running in this chat."""
        await self.stop(destination)
        message_id = await self._transport.send(destination, self._text(0), silent=True)
        task = asyncio.create_task(self._animate(destination, message_id))
        self._running[destination] = _Running(message_id=message_id, task=task)

    async def stop(self, destination: Destination) -> None:
        """Stop the animation and delete the message (best-effort)."""
        running = self._running.pop(destination, None)
        if running is None:
            return
        running.task.cancel()
        try:
            await running.task
        except asyncio.CancelledError:
            pass
        try:
            await self._transport.delete(destination, running.message_id)
        except TransportError as e:
            # Missing permissions in groups, or the user already deleted it.
            logger.debug("indicator: delete in %s failed: %s", destination, e)

    async def stop_all(self) -> None:
        for destination in list(self._running):
            await self.stop(destination)

    async def _animate(self, destination: Destination, message_id: int) -> None:
        frame = 0
        while True:
            await asyncio.sleep(self._interval)
            frame += 1
            try:
                await self._transport.edit(destination, message_id, self._text(frame))
            except TransportError as e:
                logger.debug("indicator: edit in %s failed: %s", destination, e)
