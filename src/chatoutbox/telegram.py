"""
Telegram Bot API transport.

Every call is a POST with a JSON body; the API answers
{"ok": true, "result": ...} or {"ok": false, "description": ..., "error_code": ...,
"parameters": {"retry_after": N}}. Failures are raised as classified
TransportErrors so the worker can tell rate limits, "not modified" and
"cannot edit" apart from real failures.
"""

import logging
from typing import Any, Optional

import httpx

from chatoutbox.errors import TransportError, classify_error
from chatoutbox.types import Destination

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"

# Error descriptions are cut to this length before they reach the store.
MAX_DESCRIPTION_CHARS = 200


def _api_url(base: str, token: str, method: str) -> str:
    return f"{base}/bot{token}/{method}"


def _chat_id(destination: Destination) -> int | str:
    """Numeric chat ids go over the wire as numbers, @channel names as strings."""
    try:
        return int(destination)
    except (TypeError, ValueError):
        return destination


class TelegramTransport:
    """
    ChatTransport on top of the Telegram Bot API.

    Usage:
        async with TelegramTransport(token) as tg:
            message_id = await tg.send("12345", "hello")
    """

    def __init__(
        self,
        token: str,
        *,
        timeout: float = 20.0,
        api_base: str = API_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _call(self, method: str, payload: dict) -> Any:
        url = _api_url(self._api_base, self._token, method)
        try:
            r = await self._get_client().post(url, json=payload)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method}: timeout ({e.__class__.__name__})") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method}: {str(e)[:MAX_DESCRIPTION_CHARS]}") from e

        try:
            data = r.json()
        except ValueError as e:
            raise TransportError(
                f"{method}: http_{r.status_code} (non-JSON response)",
                error_code=r.status_code,
            ) from e

        if not data.get("ok"):
            description = str(data.get("description") or f"http_{r.status_code}")
            parameters = data.get("parameters") or {}
            retry_after = parameters.get("retry_after")
            try:
                retry_after = float(retry_after) if retry_after is not None else None
            except (TypeError, ValueError):
                retry_after = None
            raise classify_error(
                description[:MAX_DESCRIPTION_CHARS],
                error_code=data.get("error_code"),
                retry_after=retry_after,
            )
        return data.get("result")

    async def send(
        self,
        destination: Destination,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        silent: bool = False,
        reply_markup: Optional[dict] = None,
    ) -> int:
        payload: dict = {"chat_id": _chat_id(destination), "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if silent:
            payload["disable_notification"] = True
        if reply_markup:
            payload["reply_markup"] = reply_markup
        result = await self._call("sendMessage", payload)
        return int(result["message_id"])

    async def edit(
        self,
        destination: Destination,
        message_id: int,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[dict] = None,
    ) -> None:
        payload: dict = {
            "chat_id": _chat_id(destination),
            "message_id": message_id,
            "text": text,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup
        await self._call("editMessageText", payload)

    async def delete(self, destination: Destination, message_id: int) -> None:
        await self._call(
            "deleteMessage",
            {"chat_id": _chat_id(destination), "message_id": message_id},
        )

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "TelegramTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
