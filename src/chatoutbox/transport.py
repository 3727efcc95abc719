"""
Chat transport protocol: what the delivery worker needs from a chat API.

Implementations raise chatoutbox.errors.TransportError (or a subclass) on
failure; the worker classifies those into report results.
"""

from typing import Optional, Protocol

from chatoutbox.types import Destination


class ChatTransport(Protocol):
    """Protocol for a chat API (e.g. TelegramTransport)."""

    async def send(
        self,
        destination: Destination,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        silent: bool = False,
        reply_markup: Optional[dict] = None,
    ) -> int:
        """Send a new message and return its message id."""

    async def edit(
        self,
        destination: Destination,
        message_id: int,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[dict] = None,
    ) -> None:
        """Replace the text (and inline keyboard) of an existing message."""

    async def delete(self, destination: Destination, message_id: int) -> None:
        """Delete a message."""
