"""
Producer-side helpers on top of an OutboxStore.

Usage:
    service = OutboxService(store)
    await service.enqueue_thinking("admin-1", "12345", "start")
    await service.enqueue_progress("admin-1", "12345", "bash:42", "$ make\\n...")
    await service.enqueue_markdown("admin-1", "12345", assistant_answer)
"""

import logging
from typing import List, Optional, Sequence, Tuple

from chatoutbox.markdown import close_open_fences, render_html_from_markdown
from chatoutbox.outbox_backend import OutboxStore
from chatoutbox.split import SAFE_CHUNK_CHARS, TELEGRAM_MAX_TEXT_CHARS, split_text
from chatoutbox.types import (
    Control,
    DeliveryMode,
    Destination,
    OutboxItem,
    PrincipalId,
)

logger = logging.getLogger(__name__)


class OutboxService:
    """Enqueue helpers for the common message shapes."""

    def __init__(self, store: OutboxStore, *, chunk_chars: int = SAFE_CHUNK_CHARS) -> None:
        self.store = store
        self.chunk_chars = chunk_chars

    async def _enqueue_chunks(
        self,
        principal_id: PrincipalId,
        destination: Destination,
        chunks: Sequence[Tuple[str, Optional[str]]],
        *,
        silent: bool,
        reply_markup: Optional[dict],
    ) -> List[OutboxItem]:
        # Only the last chunk notifies (unless silent) and carries reply_markup.
        items: List[OutboxItem] = []
        for index, (chunk, parse_mode) in enumerate(chunks):
            is_last = index == len(chunks) - 1
            items.append(
                await self.store.enqueue(
                    principal_id,
                    destination,
                    chunk,
                    mode=DeliveryMode.SEND,
                    parse_mode=parse_mode,
                    silent=silent or not is_last,
                    reply_markup=reply_markup if is_last else None,
                )
            )
        if len(items) > 1:
            logger.debug("outbox: split text for %s into %d chunks", destination, len(items))
        return items

    async def enqueue_text(
        self,
        principal_id: PrincipalId,
        destination: Destination,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        silent: bool = False,
        reply_markup: Optional[dict] = None,
    ) -> List[OutboxItem]:
        """
        Enqueue text as one or more send items.

        text goes out as given; with parse_mode="HTML" it must already be
        valid Telegram HTML (see enqueue_markdown).
        """
        chunks = [(chunk, parse_mode) for chunk in split_text(text, self.chunk_chars)]
        return await self._enqueue_chunks(
            principal_id, destination, chunks, silent=silent, reply_markup=reply_markup
        )

    async def enqueue_markdown(
        self,
        principal_id: PrincipalId,
        destination: Destination,
        markdown: str,
        *,
        silent: bool = False,
        reply_markup: Optional[dict] = None,
    ) -> List[OutboxItem]:
        """
        Enqueue markdown rendered as Telegram HTML, split like enqueue_text.

        Code fences cut by a chunk boundary are closed and reopened. A chunk
        that grows past Telegram's limit when rendered goes out as plain text.
        """
        chunks: List[Tuple[str, Optional[str]]] = []
        for chunk in close_open_fences(split_text(markdown, self.chunk_chars)):
            rendered = render_html_from_markdown(chunk)
            if len(rendered) <= TELEGRAM_MAX_TEXT_CHARS:
                chunks.append((rendered, "HTML"))
            else:
                logger.warning(
                    "outbox: rendered chunk for %s too long (%d chars), sending plain text",
                    destination,
                    len(rendered),
                )
                chunks.append((chunk, None))
        return await self._enqueue_chunks(
            principal_id, destination, chunks, silent=silent, reply_markup=reply_markup
        )

    async def enqueue_progress(
        self,
        principal_id: PrincipalId,
        destination: Destination,
        progress_key: str,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        silent: bool = True,
        reply_markup: Optional[dict] = None,
    ) -> OutboxItem:
        """Enqueue an update of the progress slot progress_key (edited in place)."""
        if len(text) > self.chunk_chars:
            # Progress is a live view; keep the tail, which is the newest output.
            text = "…" + text[-(self.chunk_chars - 1) :]
        return await self.store.enqueue(
            principal_id,
            destination,
            text,
            mode=DeliveryMode.REPLACE,
            progress_key=progress_key,
            parse_mode=parse_mode,
            silent=silent,
            reply_markup=reply_markup,
        )

    async def enqueue_thinking(
        self, principal_id: PrincipalId, destination: Destination, action: str
    ) -> OutboxItem:
        """Enqueue a thinking-indicator control item ("start" or "stop")."""
        if action not in ("start", "stop"):
            raise ValueError(f"unknown thinking action: {action!r}")
        return await self.store.enqueue(
            principal_id,
            destination,
            "",
            silent=True,
            control=Control(kind="thinking", action=action),
        )
