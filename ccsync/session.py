"""
SyncSession - scoped ownership of the push channel, the snapshot loader and
every enabled domain.

    async with SyncSession(config) as session:
        session.domain("queue").summary()

Setup failure at any point releases whatever was acquired before the error
propagates.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from ccsync.config import AppConfig
from ccsync.domains.adapters import DomainAdapter, build_adapters
from ccsync.domains.sync import DomainSync
from ccsync.transport.connection import ConnectionHandle, ConnectionManager, Credentials
from ccsync.transport.snapshot import SnapshotLoader

logger = structlog.get_logger(__name__)


class SyncSession:
    def __init__(
        self,
        config: AppConfig,
        credentials: Optional[Credentials] = None,
        *,
        connection: Optional[ConnectionManager] = None,
        loader: Optional[SnapshotLoader] = None,
        adapters: Optional[Dict[str, DomainAdapter]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.credentials = credentials or Credentials(config.server.token)
        self.connection = connection or ConnectionManager(config.server.ws_url, config.connection)
        self.loader = loader or SnapshotLoader(config.server.base_url, self.credentials, config.snapshot)
        self._adapters = adapters if adapters is not None else build_adapters(config)
        self._clock = clock
        self.domains: Dict[str, DomainSync] = {}
        self._started = False
        self._closed = False

    @property
    def started(self) -> bool:
        return self._started

    def domain(self, name: str) -> DomainSync:
        try:
            return self.domains[name]
        except KeyError:
            raise KeyError(f"Domain '{name}' is not enabled in this session") from None

    async def start(self) -> "SyncSession":
        if self._started:
            return self
        try:
            await self.connection.connect(self.credentials)
            self.connection.add_reconnect_listener(self._on_reconnected)
            for name, adapter in self._adapters.items():
                domain = DomainSync(adapter, self.connection, self.loader, clock=self._clock)
                self.domains[name] = domain
                await domain.start()
        except (Exception, asyncio.CancelledError):
            logger.error("Session setup failed; releasing resources", exc_info=True)
            await self.close()
            raise
        self._started = True
        logger.info("Sync session started", domains=sorted(self.domains))
        return self

    def _on_reconnected(self, handle: ConnectionHandle) -> None:
        logger.info(
            "Re-synchronizing domains after reconnect",
            connection_id=handle.connection_id if handle else None,
            domains=len(self.domains),
        )
        for domain in self.domains.values():
            domain.on_reconnected(handle)

    async def publish(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.connection.publish(event_name, payload)

    def reset(self) -> None:
        """Empty every domain table and history (logout / operator reset)."""
        for domain in self.domains.values():
            domain.engine.clear()

    def summaries(self) -> Dict[str, Dict[str, Any]]:
        return {name: domain.summary() for name, domain in self.domains.items()}

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.connection.remove_reconnect_listener(self._on_reconnected)
        for name, domain in list(self.domains.items()):
            try:
                await domain.dispose()
            except Exception:
                logger.error("Failed to dispose domain", domain=name, exc_info=True)
        try:
            await self.connection.close()
        except Exception:
            logger.error("Failed to close push channel", exc_info=True)
        try:
            await self.loader.close()
        except Exception:
            logger.error("Failed to close snapshot loader", exc_info=True)
        self._started = False
        logger.info("Sync session closed")

    async def __aenter__(self) -> "SyncSession":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
