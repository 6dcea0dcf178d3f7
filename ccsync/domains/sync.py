"""
DomainSync - one live domain instance.

Wires an adapter's engine to the push channel and the snapshot loader:

    subscribe -> begin_bootstrap -> fetch -> apply_snapshot -> replay buffer

The same cycle runs again on every ``reconnected`` notification. Disposal
unsubscribes, cancels the in-flight fetch and the tick, then clears the table;
events delivered afterwards are ignored.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from ccsync.core.aggregates import AggregateSnapshot
from ccsync.core.models import Entity, TableView, utcnow

from .adapters import DomainAdapter

logger = structlog.get_logger(__name__)


class DomainSync:
    def __init__(
        self,
        adapter: DomainAdapter,
        connection,
        loader,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.adapter = adapter
        self._connection = connection
        self._loader = loader
        self._clock = clock or utcnow
        self.engine = adapter.build_engine(self._clock)
        self._subscriptions: List[str] = []
        self._fetches: Set[asyncio.Future] = set()
        self._refresh_tasks: Set[asyncio.Task] = set()
        self._tick_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._disposed = False

    @property
    def name(self) -> str:
        return self.adapter.name

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def subscription_ids(self) -> List[str]:
        return list(self._subscriptions)

    # ------------------------------------------------------------ lifecycle

    async def start(self) -> int:
        """Subscribe, load the first snapshot, and start the tick (if any)."""
        if self._disposed:
            raise RuntimeError(f"Domain '{self.name}' has been disposed")
        self.subscribe()
        live = await self.refresh()
        self._start_tick()
        logger.info("Domain started", domain=self.name, live=live)
        return live

    def subscribe(self) -> None:
        """(Re)bind every adapter event on the current connection."""
        for subscription_id in self._subscriptions:
            self._connection.unsubscribe(subscription_id)
        self._subscriptions = [
            self._connection.subscribe(event_name, self._make_handler(event_name))
            for event_name in self.adapter.event_names
        ]

    async def refresh(self) -> int:
        """
        Re-fetch the authoritative snapshot and reconcile.

        Events arriving during the fetch are buffered and replayed afterwards.
        On failure the previous table is kept, the buffer replayed onto it,
        and the error re-raised.
        """
        if self._disposed:
            return 0
        self._generation += 1
        generation = self._generation

        self.engine.begin_bootstrap()
        fetch = asyncio.ensure_future(
            self._loader.fetch(self.adapter.endpoint, self.adapter.snapshot_key, domain=self.name)
        )
        self._fetches.add(fetch)
        try:
            rows = await fetch
        except asyncio.CancelledError:
            if generation == self._generation and not self._disposed:
                self.engine.abort_bootstrap()
            raise
        except Exception as exc:
            if generation != self._generation or self._disposed:
                # A newer refresh owns the bootstrap and reports its own outcome.
                logger.info(
                    "Superseded snapshot refresh failed",
                    domain=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return len(self.engine.live())
            self.engine.abort_bootstrap()
            logger.warning(
                "Snapshot refresh failed; keeping previous table",
                domain=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        finally:
            self._fetches.discard(fetch)

        if self._disposed:
            return 0
        if generation != self._generation:
            # A newer refresh started meanwhile and owns the bootstrap.
            logger.debug("Discarding superseded snapshot", domain=self.name)
            return len(self.engine.live())
        return self.engine.apply_snapshot(self.adapter.entities_from_rows(rows, self._clock()))

    def on_reconnected(self, handle: Any = None) -> None:
        """
        Reconnect hook. Re-subscribes and starts buffering synchronously so
        nothing from the new socket is lost, then schedules the re-fetch.
        """
        if self._disposed:
            return
        self.subscribe()
        self.engine.begin_bootstrap()
        task = asyncio.create_task(self._refresh_after_reconnect())
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh_after_reconnect(self) -> None:
        try:
            await self.refresh()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Re-fetch after reconnect failed",
                domain=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for subscription_id in self._subscriptions:
            self._connection.unsubscribe(subscription_id)
        released = len(self._subscriptions)
        self._subscriptions = []

        tasks = list(self._refresh_tasks) + list(self._fetches) + [self._tick_task]
        for task in tasks:
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("Domain task ended with error during dispose", domain=self.name, exc_info=True)
        self._refresh_tasks.clear()
        self._fetches.clear()
        self._tick_task = None

        self.engine.clear()
        logger.info("Domain disposed", domain=self.name, released_subscriptions=released)

    # --------------------------------------------------------------- events

    def _make_handler(self, event_name: str) -> Callable[[Any], None]:
        def _handler(payload: Any) -> None:
            self.handle_event(event_name, payload)

        return _handler

    def handle_event(self, event_name: str, payload: Any) -> Optional[Entity]:
        if self._disposed:
            logger.debug("Ignoring event for disposed domain", domain=self.name, event_name=event_name)
            return None
        event = self.adapter.translate(event_name, payload)
        if event is None:
            return None
        return self.engine.apply_event(event)

    # ----------------------------------------------------------------- tick

    def _start_tick(self) -> None:
        if self._disposed or self.adapter.tick is None or self._tick_task is not None:
            return
        self._tick_task = asyncio.create_task(self._tick_loop())

    async def _tick_loop(self) -> None:
        while not self._disposed:
            await asyncio.sleep(self.adapter.tick_interval)
            try:
                self.tick_once()
            except Exception:
                logger.error("Domain tick failed", domain=self.name, exc_info=True)

    def tick_once(self) -> int:
        if self.adapter.tick is None:
            return 0
        return self.engine.recompute(self.adapter.tick)

    # ---------------------------------------------------------------- reads

    def view(self) -> TableView:
        return self.engine.view()

    def aggregates(self) -> AggregateSnapshot:
        return self.adapter.aggregates(self.view())

    def summary(self) -> Dict[str, Any]:
        return self.adapter.summarize(self.view())
