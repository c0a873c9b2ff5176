"""
HTTP delivery client for the usage ingestion API.

One POST per call, classified into a DeliveryOutcome. Retrying is the
caller's job.
"""

from __future__ import annotations

from time import perf_counter
from typing import Optional

import httpx
from loguru import logger

from ..models import Batch, DeliveryOutcome, OutcomeKind

BULK_EVENTS_PATH = "/v1/events/bulk"
_DETAIL_LIMIT = 512


def classify_status(status_code: int) -> OutcomeKind:
    if 200 <= status_code < 300:
        return OutcomeKind.SUCCESS
    if status_code >= 500:
        return OutcomeKind.SERVER_ERROR
    return OutcomeKind.CLIENT_ERROR


class IngestClient:
    """Async client for ``POST <api_host>/v1/events/bulk``.

    Example:
        client = IngestClient("https://api.example.com", "key", timeout=10.0)
        outcome = await client.send(batch)
        if outcome.retryable:
            ...
        await client.aclose()

    Pass ``client`` to reuse an existing httpx.AsyncClient (tests inject one
    built on httpx.MockTransport); it is not closed by aclose().
    """

    def __init__(
        self,
        api_host: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = api_host.rstrip("/") + BULK_EVENTS_PATH
        self._headers = {"x-api-key": api_key, "content-type": "application/json"}
        self._timeout = httpx.Timeout(timeout)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout)

    @staticmethod
    def payload(batch: Batch) -> list:
        """JSON array of events in batch order."""
        return batch.to_wire()

    async def send(self, batch: Batch) -> DeliveryOutcome:
        started = perf_counter()
        try:
            resp = await self._client.post(
                self.url,
                json=self.payload(batch),
                headers=self._headers,
                timeout=self._timeout,
            )
        except httpx.RequestError as exc:
            elapsed = perf_counter() - started
            logger.debug(
                f"POST failed: batch={batch.id} error={type(exc).__name__}: {exc} "
                f"elapsed={elapsed:.3f}s"
            )
            return DeliveryOutcome(
                OutcomeKind.TRANSPORT_ERROR,
                detail=f"{type(exc).__name__}: {exc}"[:_DETAIL_LIMIT],
                elapsed=elapsed,
            )

        elapsed = perf_counter() - started
        kind = classify_status(resp.status_code)
        detail = "" if kind is OutcomeKind.SUCCESS else resp.text[:_DETAIL_LIMIT]
        logger.debug(
            f"POST {self.url} batch={batch.id} events={len(batch)} "
            f"status={resp.status_code} elapsed={elapsed:.3f}s"
        )
        return DeliveryOutcome(kind, status_code=resp.status_code, detail=detail, elapsed=elapsed)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
