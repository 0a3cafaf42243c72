"""
Webhook status sink.
Posts scheduler status snapshots to an admin dashboard endpoint.
"""

import json
from typing import Any, Dict, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class WebhookStatusSink:
    def __init__(
        self,
        url: str,
        event: str = "ingestionStatus",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.event = event
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def publish(self, snapshot: Dict[str, Any]) -> None:
        """
        POST the snapshot as {"event": ..., "data": snapshot}.

        Raises:
            httpx.HTTPError: on transport errors or non-2xx responses
        """
        # Round-trip through json so datetimes and enums serialize
        payload = {"event": self.event, "data": json.loads(json.dumps(snapshot, default=str))}
        response = await self._client.post(self.url, json=payload)
        response.raise_for_status()
        logger.debug("Status published", url=self.url, status_code=response.status_code)

    async def aclose(self) -> None:
        await self._client.aclose()
