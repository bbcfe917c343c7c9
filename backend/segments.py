"""
Segment Resolver — Collaborator contract mapping an audience segment to customers.

Segment rules live in the CRM; the pipeline only needs the resolved list of
customer ids at campaign launch. Two implementations:

- RESTSegmentResolver: calls the CRM segment endpoint (httpx + tenacity retry)
- StaticSegmentResolver: fixed mapping from settings (development, tests)
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import SegmentConfig
from core.errors import NotFoundError

logger = structlog.get_logger()


class SegmentResolver(abc.ABC):
    """Abstract base for all segment resolvers."""

    @abc.abstractmethod
    async def resolve(self, segment_id: str) -> list[str]:
        """Return the customer ids in a segment. Raises NotFoundError for unknown ids."""
        ...

    async def close(self):
        pass


class RESTSegmentResolver(SegmentResolver):
    """
    Calls ``GET {base_url}{endpoint}`` with ``{segment_id}`` substituted.

    Accepts either a bare list of ids, a list of customer objects, or an
    envelope ``{"data": [...]}`` / ``{"customer_ids": [...]}``.
    """

    def __init__(self, config: SegmentConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, path: str) -> Any:
        client = await self._get_client()
        response = await client.get(path)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def resolve(self, segment_id: str) -> list[str]:
        path = self.config.endpoint.replace("{segment_id}", segment_id)
        result = await self._request(path)
        if result is None:
            raise NotFoundError(f"Segment not found: {segment_id}", {"segment_id": segment_id})

        if isinstance(result, dict):
            result = result.get("customer_ids", result.get("data", []))
        ids = [str(r["id"]) if isinstance(r, dict) else str(r) for r in result]
        logger.info("segment_resolved", segment_id=segment_id, customers=len(ids))
        return ids

    async def close(self):
        if self.client:
            await self.client.aclose()


class StaticSegmentResolver(SegmentResolver):
    """Resolves segments from an in-process mapping."""

    def __init__(self, segments: dict[str, list[str]] = None):
        self._segments = {k: list(v) for k, v in (segments or {}).items()}

    def register(self, segment_id: str, customer_ids: list[str]):
        self._segments[segment_id] = list(customer_ids)

    async def resolve(self, segment_id: str) -> list[str]:
        if segment_id not in self._segments:
            raise NotFoundError(f"Segment not found: {segment_id}", {"segment_id": segment_id})
        return list(self._segments[segment_id])


def create_segment_resolver(config: SegmentConfig = None) -> SegmentResolver:
    """Factory function to create the configured segment resolver."""
    config = config or SegmentConfig()
    if config.type == "rest" and config.base_url:
        return RESTSegmentResolver(config)
    if config.type == "rest":
        logger.warning("using_static_segments", reason="segments.base_url is empty")
    return StaticSegmentResolver(config.static)
