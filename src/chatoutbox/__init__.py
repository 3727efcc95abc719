"""
chatoutbox - A leased, persisted outbox for chat message delivery
"""

__version__ = "0.1.0"

from chatoutbox.client import OutboxClient
from chatoutbox.errors import (
    MessageNotEditableError,
    MessageNotModifiedError,
    RateLimitedError,
    StoreError,
    TransportError,
)
from chatoutbox.markdown import render_html_from_markdown
from chatoutbox.service import OutboxService
from chatoutbox.store import JsonFileOutboxStore
from chatoutbox.telegram import TelegramTransport
from chatoutbox.types import (
    Control,
    DeliveryMode,
    ItemStatus,
    OutboxItem,
    ReportResult,
)
from chatoutbox.worker import DeliveryWorker

__all__ = [
    "Control",
    "DeliveryMode",
    "DeliveryWorker",
    "ItemStatus",
    "JsonFileOutboxStore",
    "MessageNotEditableError",
    "MessageNotModifiedError",
    "OutboxClient",
    "OutboxItem",
    "OutboxService",
    "RateLimitedError",
    "ReportResult",
    "StoreError",
    "TelegramTransport",
    "TransportError",
    "__version__",
    "render_html_from_markdown",
]
