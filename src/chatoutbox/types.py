"""
Types for the chat outbox.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Optional
import json
import uuid

# ─── Item lifecycle ─────────────────────────────────────────────────────────
#
#            pull                 report(ok)
#  pending ───────► leased ─────────────────► delivered
#     ▲               │
#     │  report(fail) │  attempts < MAX_ATTEMPTS
#     └───────────────┤
#                     │  attempts >= MAX_ATTEMPTS
#                     └─────────────────────► failed
#
# A leased item whose lease_expires_at has passed is treated as pending by the
# next pull; nothing rewrites it in between.

# How long a pulled item stays invisible to other workers.
LEASE_TTL = timedelta(seconds=30)

# After this many failed attempts the item is marked failed and never retried.
MAX_ATTEMPTS = 20

# Stored error text is truncated to this many characters.
MAX_ERROR_CHARS = 500

PrincipalId = str
Destination = str


class DeliveryMode(StrEnum):
    """
    How the worker puts an item on the chat:
    - SEND: always a new message.
    - REPLACE: edit the message bound to progress_key, sending one if none exists.
    """

    SEND = "send"
    REPLACE = "replace"


class ItemStatus(StrEnum):
    PENDING = "pending"
    LEASED = "leased"
    DELIVERED = "delivered"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime] = None) -> datetime:
    """Return value as an aware UTC datetime. None means now; naive values are taken as UTC."""
    if value is None:
        return utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_item_id() -> str:
    """Return a new outbox item id."""
    return uuid.uuid4().hex


def _dump_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _load_dt(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp. Unparseable values load as None so the item stays visible."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return as_utc(parsed)


@dataclass(frozen=True)
class Control:
    """
    Out-of-band instruction executed by the worker instead of a chat call.
    kind is caller-defined ("thinking" today); action is "start" or "stop".
    """

    kind: str
    action: str

    def model_dump(self) -> dict:
        return {"kind": self.kind, "action": self.action}

    @classmethod
    def model_validate(cls, data: Any) -> Optional["Control"]:
        if not isinstance(data, dict) or not data.get("kind"):
            return None
        return cls(kind=str(data["kind"]), action=str(data.get("action") or ""))


@dataclass
class OutboxItem:
    """One queued outbound message and its delivery bookkeeping."""

    principal_id: PrincipalId
    destination: Destination
    text: str = ""
    id: str = field(default_factory=new_item_id)
    parse_mode: Optional[str] = None  # "HTML" or None for plain text
    silent: bool = False
    mode: DeliveryMode = DeliveryMode.SEND
    progress_key: Optional[str] = None  # required when mode is REPLACE
    control: Optional[Control] = None
    reply_markup: Optional[dict] = None  # opaque to the store
    created_at: datetime = field(default_factory=utcnow)

    status: ItemStatus = ItemStatus.PENDING
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    telegram_message_id: Optional[int] = None
    delivered_at: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        """True if a pull at `now` may lease this item."""
        if self.status == ItemStatus.LEASED:
            if self.lease_expires_at is not None and self.lease_expires_at > now:
                return False
        elif self.status != ItemStatus.PENDING:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def lease(self, worker_id: str, now: datetime, ttl: timedelta = LEASE_TTL) -> None:
        self.status = ItemStatus.LEASED
        self.lease_owner = worker_id
        self.lease_expires_at = now + ttl

    def clear_lease(self) -> None:
        self.lease_owner = None
        self.lease_expires_at = None

    def copy(self) -> "OutboxItem":
        return replace(self)

    def model_dump(self) -> dict:
        """Dump the item as the JSON-compatible record stored on disk."""
        return {
            "id": self.id,
            "principal_id": self.principal_id,
            "destination": self.destination,
            "text": self.text,
            "parse_mode": self.parse_mode,
            "silent": self.silent,
            "mode": self.mode.value,
            "progress_key": self.progress_key,
            "control": self.control.model_dump() if self.control else None,
            "reply_markup": self.reply_markup,
            "created_at": _dump_dt(self.created_at),
            "status": self.status.value,
            "attempts": self.attempts,
            "next_attempt_at": _dump_dt(self.next_attempt_at),
            "last_error": self.last_error,
            "lease_owner": self.lease_owner,
            "lease_expires_at": _dump_dt(self.lease_expires_at),
            "telegram_message_id": self.telegram_message_id,
            "delivered_at": _dump_dt(self.delivered_at),
        }

    def pull_view(self) -> dict:
        """The subset a worker needs to deliver the item (HTTP pull response)."""
        return {
            "id": self.id,
            "principal_id": self.principal_id,
            "destination": self.destination,
            "text": self.text,
            "parse_mode": self.parse_mode,
            "silent": self.silent,
            "mode": self.mode.value,
            "progress_key": self.progress_key,
            "control": self.control.model_dump() if self.control else None,
            "reply_markup": self.reply_markup,
            "created_at": _dump_dt(self.created_at),
        }

    def serialize(self) -> str:
        return json.dumps(self.model_dump(), ensure_ascii=False)

    @classmethod
    def model_validate(cls, data: dict) -> "OutboxItem":
        """Build an item from a stored record or a pull response."""
        message_id = data.get("telegram_message_id")
        return cls(
            id=str(data.get("id") or new_item_id()),
            principal_id=str(data["principal_id"]),
            destination=str(data["destination"]),
            text=data.get("text") or "",
            parse_mode=data.get("parse_mode") or None,
            silent=bool(data.get("silent", False)),
            mode=DeliveryMode(data.get("mode") or DeliveryMode.SEND.value),
            progress_key=data.get("progress_key") or None,
            control=Control.model_validate(data.get("control")),
            reply_markup=data.get("reply_markup") or None,
            created_at=_load_dt(data.get("created_at")) or utcnow(),
            status=ItemStatus(data.get("status") or ItemStatus.PENDING.value),
            attempts=int(data.get("attempts") or 0),
            next_attempt_at=_load_dt(data.get("next_attempt_at")),
            last_error=data.get("last_error"),
            lease_owner=data.get("lease_owner"),
            lease_expires_at=_load_dt(data.get("lease_expires_at")),
            telegram_message_id=int(message_id) if message_id is not None else None,
            delivered_at=_load_dt(data.get("delivered_at")),
        )

    @classmethod
    def deserialize(cls, data: str) -> "OutboxItem":
        return cls.model_validate(json.loads(data))


@dataclass
class ReportResult:
    """Delivery outcome for one leased item, sent by the worker to the store."""

    id: str
    ok: bool
    telegram_message_id: Optional[int] = None
    error: Optional[str] = None
    retry_after: Optional[float] = None  # seconds requested by the transport

    def model_dump(self) -> dict:
        result: dict = {"id": self.id, "ok": self.ok}
        if self.telegram_message_id is not None:
            result["telegram_message_id"] = self.telegram_message_id
        if self.error is not None:
            result["error"] = self.error
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        return result

    @classmethod
    def model_validate(cls, data: dict) -> "ReportResult":
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("report result requires an id")
        message_id = data.get("telegram_message_id")
        retry_after = data.get("retry_after")
        return cls(
            id=str(data["id"]),
            ok=bool(data.get("ok", False)),
            telegram_message_id=int(message_id) if message_id is not None else None,
            error=data.get("error"),
            retry_after=float(retry_after) if retry_after is not None else None,
        )
