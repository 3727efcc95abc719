"""
Errors raised by chat transports and stores.

Delivery failures never cross the pull/report boundary as exceptions; the
worker turns them into ReportResult(ok=False). Only StoreError is meant to
propagate to callers.
"""

from typing import Optional


class StoreError(Exception):
    """The outbox record could not be read or written."""


class TransportError(Exception):
    """
    A chat API call failed.

    retry_after is set when the API asked the caller to wait before retrying.
    """

    def __init__(
        self,
        description: str,
        *,
        error_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(description)
        self.description = description
        self.error_code = error_code
        self.retry_after = retry_after


class RateLimitedError(TransportError):
    """Too many requests; retry_after holds the cooldown in seconds."""


class MessageNotModifiedError(TransportError):
    """Edit carried exactly the content the message already has."""


class MessageNotEditableError(TransportError):
    """The message to edit is gone or can no longer be edited."""


# Substrings of Bot API error descriptions, lowercased.
_NOT_MODIFIED = ("message is not modified",)
_NOT_EDITABLE = (
    "message can't be edited",
    "message to edit not found",
    "message_id_invalid",
    "message can't be deleted",
)


def classify_error(
    description: str,
    error_code: Optional[int] = None,
    retry_after: Optional[float] = None,
) -> TransportError:
    """Map an API error description to the matching TransportError subclass."""
    text = (description or "").lower()
    if (retry_after is not None and retry_after > 0) or error_code == 429:
        return RateLimitedError(
            description, error_code=error_code, retry_after=retry_after
        )
    if any(marker in text for marker in _NOT_MODIFIED):
        return MessageNotModifiedError(description, error_code=error_code)
    if any(marker in text for marker in _NOT_EDITABLE):
        return MessageNotEditableError(description, error_code=error_code)
    return TransportError(description, error_code=error_code)
