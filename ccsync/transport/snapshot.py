"""
SnapshotLoader - authoritative list fetches over HTTP.

Each domain bootstraps (and re-bootstraps after a reconnect) from a REST list
endpoint. The body is a JSON object carrying the rows under a domain key, for
example ``{"success": true, "calls": [...]}``.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import structlog
from prometheus_client import Counter, Histogram

from ccsync.config import SnapshotConfig
from ccsync.errors import AuthError, NetworkError

from .connection import Credentials

logger = structlog.get_logger(__name__)

_SNAPSHOT_LATENCY_SECONDS = Histogram(
    "ccsync_snapshot_fetch_seconds",
    "Snapshot fetch latency",
    labelnames=("domain",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
_SNAPSHOT_FAILURES_TOTAL = Counter(
    "ccsync_snapshot_failures_total",
    "Snapshot fetch failures",
    labelnames=("domain", "reason"),
)


class SnapshotLoader:
    def __init__(
        self,
        base_url: str,
        credentials: Credentials,
        config: Optional[SnapshotConfig] = None,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._credentials = credentials
        self.config = config or SnapshotConfig()
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    async def fetch(
        self,
        endpoint: str,
        domain_key: str,
        *,
        domain: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch the current rows for one domain.

        A body without ``domain_key`` yields an empty list.

        Raises:
            AuthError: 401/403, or no credential to send.
            NetworkError: transport failure, other non-2xx status, or a body
                that is not a JSON object with a list under ``domain_key``.
        """
        label = domain or domain_key
        if not self._credentials.present:
            _SNAPSHOT_FAILURES_TOTAL.labels(label, "auth").inc()
            raise AuthError("Authentication token not found")

        await self._ensure_session()
        assert self._session is not None

        url = self.base_url + "/" + endpoint.lstrip("/")
        headers = {
            "Authorization": f"Bearer {self._credentials.token}",
            "Accept": "application/json",
        }
        started_at = time.perf_counter()
        try:
            async with self._session.get(
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000.0),
            ) as response:
                body = await response.text()
                status = response.status
        except aiohttp.ClientError as exc:
            _SNAPSHOT_FAILURES_TOTAL.labels(label, "network").inc()
            logger.warning("Snapshot fetch failed", domain=label, url=url, error=str(exc))
            raise NetworkError(f"Snapshot fetch from {url} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            _SNAPSHOT_FAILURES_TOTAL.labels(label, "timeout").inc()
            logger.warning("Snapshot fetch timed out", domain=label, url=url)
            raise NetworkError(f"Snapshot fetch from {url} timed out") from exc

        if status in (401, 403):
            _SNAPSHOT_FAILURES_TOTAL.labels(label, "auth").inc()
            logger.error("Snapshot fetch unauthorized", domain=label, url=url, status=status)
            raise AuthError(f"Snapshot fetch from {url} rejected: HTTP {status}")
        if status >= 400:
            _SNAPSHOT_FAILURES_TOTAL.labels(label, "http").inc()
            logger.error(
                "Snapshot fetch failed",
                domain=label,
                url=url,
                status=status,
                body_preview=body[:128],
            )
            raise NetworkError(f"Snapshot fetch from {url} failed: HTTP {status}", status=status)

        try:
            data = json.loads(body) if body else {}
        except ValueError as exc:
            _SNAPSHOT_FAILURES_TOTAL.labels(label, "decode").inc()
            raise NetworkError(f"Snapshot from {url} is not valid JSON", status=status) from exc
        if not isinstance(data, dict):
            _SNAPSHOT_FAILURES_TOTAL.labels(label, "decode").inc()
            raise NetworkError(f"Snapshot from {url} is not a JSON object", status=status)

        rows = data.get(domain_key)
        if rows is None:
            rows = []
        if not isinstance(rows, list):
            _SNAPSHOT_FAILURES_TOTAL.labels(label, "decode").inc()
            raise NetworkError(f"Snapshot key '{domain_key}' from {url} is not a list", status=status)

        elapsed = time.perf_counter() - started_at
        _SNAPSHOT_LATENCY_SECONDS.labels(label).observe(elapsed)
        logger.debug(
            "Snapshot fetched",
            domain=label,
            url=url,
            rows=len(rows),
            latency_ms=round(elapsed * 1000.0, 2),
        )
        return [row for row in rows if isinstance(row, dict)]

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()
