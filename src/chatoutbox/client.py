"""
Outbox client: the worker's view of a remote outbox server.

Implements pull() and report() over HTTP, so a DeliveryWorker can run in a
different process (or host) than the store.

Usage:
    client = OutboxClient("http://backend:8080")
    worker = DeliveryWorker(client, transport, principals=["1"])
    ...
    await client.close()
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

import httpx

from chatoutbox.server import ADMIN_HEADER, WORKER_HEADER
from chatoutbox.types import OutboxItem, PrincipalId, ReportResult

logger = logging.getLogger(__name__)


class OutboxClient:
    """
    HTTP client for the outbox server.

    now is accepted for interface compatibility but ignored: the server's
    clock decides leases and retry times.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._owns_client = client is None

    @staticmethod
    def _headers(principal_id: PrincipalId, worker_id: str) -> dict:
        return {ADMIN_HEADER: str(principal_id), WORKER_HEADER: worker_id}

    async def pull(
        self,
        principal_id: PrincipalId,
        limit: int,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> List[OutboxItem]:
        """Lease due items. A non-2xx answer is logged and treated as empty."""
        r = await self._client.get(
            "/outbox/pull",
            params={"limit": limit},
            headers=self._headers(principal_id, worker_id),
        )
        if r.status_code >= 400:
            logger.warning(
                "outbox pull failed for %s: http_%d %s",
                principal_id,
                r.status_code,
                r.text[:200],
            )
            return []
        items = r.json().get("items") or []
        return [
            OutboxItem.model_validate({"principal_id": str(principal_id), **raw})
            for raw in items
        ]

    async def report(
        self,
        principal_id: PrincipalId,
        worker_id: str,
        results: Sequence[ReportResult],
        now: Optional[datetime] = None,
    ) -> None:
        """Send delivery outcomes. A non-2xx answer is logged; leases then expire."""
        if not results:
            return
        r = await self._client.post(
            "/outbox/report",
            json={"results": [result.model_dump() for result in results]},
            headers=self._headers(principal_id, worker_id),
        )
        if r.status_code >= 400:
            logger.error(
                "outbox report failed for %s (worker %s): http_%d %s",
                principal_id,
                worker_id,
                r.status_code,
                r.text[:200],
            )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "OutboxClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
