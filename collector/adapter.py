# collector/adapter.py
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from .config import USER_AGENT
from .errors import ExtractionError, FetchError
from .selectors import NO_MATCH, resolve, resolve_items, resolve_node
from .utils import SlidingWindowLimiter, utcnow

logger = logging.getLogger("collector.adapter")

URL_FIELDS = ("url", "image_url")


@dataclass
class RawPayload:
    source: str
    url: str
    body: str
    fetched_at: datetime
    status_code: int = 200
    format: str = "html"


@dataclass
class PartialRecord:
    """Field values for one listing item, before canonicalization."""

    source: str
    position: int
    fetched_at: datetime
    values: Dict[str, Any] = field(default_factory=dict)
    matched: Dict[str, int] = field(default_factory=dict)
    missing_required: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class SourceAdapter:
    """
    Fetches one bestseller listing and maps it onto field values.

    All source-specific knowledge lives in the SourceAdapterConfig: the
    endpoint, request headers, and the ordered pattern lists for the list
    container, the repeated items and every field. Swapping a broken pattern
    is a config change, never a code change.
    """

    def __init__(self, config, client, limiter=None):
        self.config = config
        self.source_id = config.source_id
        self.client = client
        self.limiter = limiter or SlidingWindowLimiter(
            config.fetch.rate_limit_per_minute
        )
        self.fallback_hits = {}

    @property
    def timeout(self):
        return self.config.fetch.timeout_ms / 1000.0

    async def fetch(self):
        """
        Fetch the raw listing payload for this source (single attempt).

        Waits on the source's rate limiter, then performs a GET against the
        configured endpoint with the configured headers. The request is bounded
        by the source's timeout; expiry cancels only this fetch.

        Returns:
            RawPayload: response body and fetch metadata

        Raises:
            FetchError: kind "timeout", "http_status" (non-2xx) or
                "connection" (DNS, refused, reset, protocol errors)

        Note:
            Retries are the Orchestrator's concern; this method never retries.
        """
        await self.limiter.acquire()
        fetch = self.config.fetch
        headers = {"User-Agent": USER_AGENT, **fetch.headers}
        try:
            resp = await asyncio.wait_for(
                self.client.get(fetch.endpoint, headers=headers, timeout=self.timeout),
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise FetchError(
                FetchError.TIMEOUT,
                f"Timed out after {self.timeout:.1f}s fetching {fetch.endpoint}",
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise FetchError(
                FetchError.HTTP_STATUS,
                f"HTTP {status} from {fetch.endpoint}",
                status_code=status,
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(
                FetchError.CONNECTION, f"{type(e).__name__} fetching {fetch.endpoint}: {e}"
            ) from e

        return RawPayload(
            source=self.source_id,
            url=str(resp.url),
            body=resp.text,
            fetched_at=utcnow(),
            status_code=resp.status_code,
            format=self.config.format,
        )

    def parse(self, payload):
        if self.config.format == "json":
            try:
                return json.loads(payload.body)
            except ValueError as e:
                raise ExtractionError(
                    f"{self.source_id}: payload is not valid JSON ({e})"
                ) from e
        return BeautifulSoup(payload.body, "lxml")

    def extract(self, payload):
        """
        Map a fetched payload onto PartialRecords using the ordered patterns.

        Args:
            payload (RawPayload): payload returned by fetch()

        Returns:
            list[PartialRecord]: one per listing item, in page order. An empty
            list when the container exists but holds no items.

        Raises:
            ExtractionError: container_not_found when no container pattern
                matches, which points at layout drift rather than an empty list

        Note:
            A required field with no matching pattern is recorded in
            missing_required and the record is dropped later by the normalizer.
            Optional fields fall back to None with a warning.
        """
        document = self.parse(payload)
        container = resolve_node(document, self.config.container)
        if container is NO_MATCH:
            raise ExtractionError(
                f"{self.source_id}: no container pattern matched "
                f"({len(self.config.container)} tried)"
            )
        self._count_fallback("container", container.index)

        items = resolve_items(container.value, self.config.item)
        if not items.value:
            logger.info(f"{self.source_id}: container found but holds no items")
            return []
        self._count_fallback("item", items.index)

        required = set(self.config.required)
        records = []
        for position, item in enumerate(items.value, start=1):
            rec = PartialRecord(
                source=self.source_id, position=position, fetched_at=payload.fetched_at
            )
            for name, patterns in self.config.field_selectors.items():
                m = resolve(item, patterns)
                if m is NO_MATCH:
                    rec.values[name] = None
                    if name in required:
                        rec.missing_required.append(name)
                    else:
                        rec.warnings.append(f"{name}: no pattern matched")
                    continue
                value = m.value
                if name in URL_FIELDS and isinstance(value, str) and value:
                    value = urljoin(payload.url, value)
                rec.values[name] = value
                rec.matched[name] = m.index
                self._count_fallback(name, m.index)
            records.append(rec)

        if self.fallback_hits:
            logger.warning(
                f"{self.source_id}: fallback patterns in use {self.fallback_hits}"
            )
        logger.info(f"{self.source_id}: extracted {len(records)} items")
        return records

    def _count_fallback(self, name, index):
        if index > 0:
            self.fallback_hits[name] = self.fallback_hits.get(name, 0) + 1

    def __repr__(self):
        return f"{self.__class__.__name__}(source='{self.source_id}')"
