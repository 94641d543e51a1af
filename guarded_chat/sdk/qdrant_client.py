"""
Qdrant similarity search over the REST API.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..core.retrieval import RetrievalResult

logger = logging.getLogger(__name__)


class QdrantSearch:
    """Nearest-neighbour search against a Qdrant collection."""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"api-key": api_key} if api_key else {}
        self.url = url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def search(
        self, collection: str, vector: List[float], limit: int
    ) -> List[RetrievalResult]:
        """Return the ``limit`` nearest points in ``collection``, best first.

        Raises:
            httpx.HTTPError: On transport failures or non-2xx responses
        """
        payload: Dict[str, Any] = {
            "vector": vector,
            "limit": limit,
            "with_payload": True,
        }
        resp = await self.client.post(f"/collections/{collection}/points/search", json=payload)
        if resp.status_code != 200:
            logger.warning(
                "Qdrant search on %s failed with %d: %s",
                collection, resp.status_code, resp.text[:500],
            )
        resp.raise_for_status()

        points = resp.json().get("result", [])
        return [
            RetrievalResult(
                score=float(point.get("score", 0.0)),
                payload=point.get("payload") or {},
                id=point.get("id"),
            )
            for point in points
        ]

    async def aclose(self) -> None:
        await self.client.aclose()
