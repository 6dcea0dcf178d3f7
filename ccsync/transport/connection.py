"""
ConnectionManager - one authenticated push channel per session.

Frames are JSON text messages over a websocket:

    -> {"type": "auth", "token": "..."}
    <- {"type": "auth_response", "status": "ok" | "error", "message": "..."}
    <- {"type": "event", "event": "call:initiated", "data": {...}}
    -> {"type": "emit", "id": 7, "event": "...", "data": {...}}
    <- {"type": "ack", "id": 7, "data": {...}}

Handler bindings belong to one physical connection. When the socket drops they
are released, and after a successful reconnect listeners receive a
``reconnected`` notification so they can subscribe again and re-fetch state;
events sent while disconnected are never replayed by the server.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog
import websockets
from prometheus_client import Counter, Gauge
from websockets.exceptions import ConnectionClosed, WebSocketException

from ccsync.config import ConnectionConfig
from ccsync.core.models import ConnectionState, utcnow
from ccsync.errors import (
    AckTimeoutError,
    AuthError,
    NetworkError,
    NotConnectedError,
    PublishRejectedError,
)

logger = structlog.get_logger(__name__)

_CONNECTION_STATE = Gauge(
    "ccsync_connection_state",
    "Push channel state (1 for the current state, 0 otherwise)",
    labelnames=("state",),
)
_RECONNECT_ATTEMPTS_TOTAL = Counter(
    "ccsync_reconnect_attempts_total",
    "Push channel reconnect attempts",
)
_PUBLISH_TOTAL = Counter(
    "ccsync_publish_total",
    "Published events by outcome",
    labelnames=("outcome",),
)

Handler = Callable[[Any], None]
StateListener = Callable[[ConnectionState], None]
ReconnectListener = Callable[["ConnectionHandle"], None]
Connector = Callable[[str, float], Awaitable[Any]]


@dataclass(frozen=True)
class Credentials:
    token: str = field(repr=False)

    @property
    def present(self) -> bool:
        return bool((self.token or "").strip())


@dataclass(frozen=True)
class ConnectionHandle:
    url: str
    connection_id: str
    connected_at: datetime


async def _websocket_connector(url: str, timeout: float):
    return await websockets.connect(url, open_timeout=timeout, max_size=None)


class ConnectionManager:
    """Owns the push channel: auth, handler table, acks, and reconnection."""

    def __init__(
        self,
        url: str,
        config: Optional[ConnectionConfig] = None,
        *,
        connector: Optional[Connector] = None,
    ):
        self.url = url
        self.config = config or ConnectionConfig()
        self._connector: Connector = connector or _websocket_connector
        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._credentials: Optional[Credentials] = None
        self._handle: Optional[ConnectionHandle] = None
        self._handlers: Dict[str, Tuple[str, Handler]] = {}
        self._subscriptions: Dict[str, str] = {}  # subscription_id -> event name
        self._pending_acks: Dict[int, asyncio.Future] = {}
        self._next_ack_id = 1
        self._send_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._state_listeners: List[StateListener] = []
        self._reconnect_listeners: List[ReconnectListener] = []
        _CONNECTION_STATE.labels(self._state.value).set(1)

    # ----------------------------------------------------------- properties

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._ws is not None

    @property
    def handle(self) -> Optional[ConnectionHandle]:
        return self._handle

    def subscribed_events(self) -> List[str]:
        return sorted(self._handlers.keys())

    # ------------------------------------------------------------ listeners

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        self._reconnect_listeners.append(listener)

    def remove_reconnect_listener(self, listener: ReconnectListener) -> None:
        if listener in self._reconnect_listeners:
            self._reconnect_listeners.remove(listener)

    # ------------------------------------------------------------ lifecycle

    async def connect(self, credentials: Optional[Credentials]) -> ConnectionHandle:
        """
        Open and authenticate the channel.

        Raises:
            AuthError: credential missing or rejected by the server.
            NetworkError: socket could not be opened or the handshake broke.
        """
        if credentials is None or not credentials.present:
            self._set_state(ConnectionState.ERRORED)
            raise AuthError("Authentication token not found")
        if self.is_connected and self._handle is not None:
            return self._handle

        self._closing = False
        self._credentials = credentials
        self._set_state(ConnectionState.CONNECTING)
        try:
            handle = await self._open(credentials)
        except AuthError:
            self._set_state(ConnectionState.ERRORED)
            raise
        except NetworkError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise

        self._set_state(ConnectionState.CONNECTED)
        self._start_reader()
        return handle

    async def close(self) -> None:
        """Release every subscription and close the channel."""
        self._closing = True
        current = asyncio.current_task()
        for task in (self._reconnect_task, self._reader_task):
            if task is None or task.done() or task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("Push channel task ended with error during close", exc_info=True)
        self._reconnect_task = None
        self._reader_task = None

        self._fail_pending_acks("connection closed")
        released = len(self._handlers)
        self._handlers.clear()
        self._subscriptions.clear()

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("Error closing push channel socket", exc_info=True)
        self._handle = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Push channel closed", url=self.url, released_subscriptions=released)

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -------------------------------------------------------- subscriptions

    def subscribe(self, event_name: str, handler: Handler) -> str:
        """Bind ``handler`` to ``event_name``; an existing binding is replaced."""
        previous = self._handlers.get(event_name)
        if previous is not None:
            self._subscriptions.pop(previous[0], None)
            logger.debug("Replacing event handler", event_name=event_name)
        subscription_id = f"sub_{uuid4().hex[:12]}"
        self._handlers[event_name] = (subscription_id, handler)
        self._subscriptions[subscription_id] = event_name
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        event_name = self._subscriptions.pop(subscription_id, None)
        if event_name is None:
            return False
        entry = self._handlers.get(event_name)
        if entry is not None and entry[0] == subscription_id:
            del self._handlers[event_name]
        return True

    # -------------------------------------------------------------- publish

    async def publish(
        self,
        event_name: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Emit an event and wait for the server acknowledgment.

        Raises:
            NotConnectedError: channel not connected, or it dropped before the ack.
            AckTimeoutError: no ack within the timeout.
            PublishRejectedError: ack carried an ``error`` field.
        """
        ws = self._ws
        if not self.is_connected or ws is None:
            _PUBLISH_TOTAL.labels("not_connected").inc()
            raise NotConnectedError(f"Cannot publish '{event_name}': push channel not connected")

        ack_id = self._next_ack_id
        self._next_ack_id += 1
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_acks[ack_id] = fut

        frame = {"type": "emit", "id": ack_id, "event": event_name, "data": payload or {}}
        timeout = (timeout_ms if timeout_ms is not None else self.config.ack_timeout_ms) / 1000.0
        try:
            try:
                async with self._send_lock:
                    await ws.send(json.dumps(frame, default=str))
            except (ConnectionClosed, OSError) as exc:
                _PUBLISH_TOTAL.labels("not_connected").inc()
                raise NotConnectedError(f"Push channel dropped while publishing '{event_name}'") from exc

            try:
                data = await asyncio.wait_for(fut, timeout=timeout)
            except asyncio.TimeoutError as exc:
                _PUBLISH_TOTAL.labels("timeout").inc()
                raise AckTimeoutError(f"No acknowledgment for '{event_name}' within {timeout:.1f}s") from exc
        finally:
            self._pending_acks.pop(ack_id, None)

        if isinstance(data, dict) and data.get("error"):
            _PUBLISH_TOTAL.labels("rejected").inc()
            raise PublishRejectedError(str(data["error"]))
        _PUBLISH_TOTAL.labels("ok").inc()
        return data if isinstance(data, dict) else {"value": data}

    # ------------------------------------------------------------- internals

    async def _open(self, credentials: Credentials) -> ConnectionHandle:
        timeout = self.config.connect_timeout_ms / 1000.0
        try:
            ws = await asyncio.wait_for(self._connector(self.url, timeout), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"Timed out connecting to {self.url}") from exc
        except (OSError, WebSocketException) as exc:
            raise NetworkError(f"Failed to connect to {self.url}: {exc}") from exc

        try:
            await ws.send(json.dumps({"type": "auth", "token": credentials.token}))
            raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
            if isinstance(raw, (bytes, bytearray)):
                raise ValueError("binary auth response")
            response = json.loads(raw)
        except (asyncio.TimeoutError, ConnectionClosed, OSError, ValueError) as exc:
            await self._close_quietly(ws)
            raise NetworkError(f"Auth handshake with {self.url} failed: {exc}") from exc

        if (
            not isinstance(response, dict)
            or response.get("type") != "auth_response"
            or response.get("status") != "ok"
        ):
            await self._close_quietly(ws)
            message = response.get("message") if isinstance(response, dict) else None
            logger.warning("Push channel auth rejected", url=self.url, reason=message)
            raise AuthError(message or "authentication rejected")

        self._ws = ws
        self._handle = ConnectionHandle(
            url=self.url,
            connection_id=f"conn_{uuid4().hex[:12]}",
            connected_at=utcnow(),
        )
        logger.info("Push channel authenticated", url=self.url, connection_id=self._handle.connection_id)
        return self._handle

    async def _close_quietly(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception:
            logger.debug("Error closing rejected push socket", exc_info=True)

    def _start_reader(self) -> None:
        self._reader_task = asyncio.create_task(self._read_loop(self._ws))

    async def _read_loop(self, ws: Any) -> None:
        reason = "closed"
        try:
            while True:
                raw = await ws.recv()
                try:
                    self._dispatch_frame(raw)
                except Exception:
                    logger.error("Failed to dispatch push frame", frame=str(raw)[:200], exc_info=True)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            reason = f"connection closed: {exc}"
        except OSError as exc:
            reason = f"network error: {exc}"
        except Exception as exc:
            logger.error("Push channel reader failed", url=self.url, exc_info=True)
            reason = f"reader error: {exc}"

        if self._closing or ws is not self._ws:
            return
        self._on_connection_lost(reason)

    def _dispatch_frame(self, raw: Any) -> None:
        if isinstance(raw, (bytes, bytearray)):
            logger.warning("Ignoring binary push frame", size=len(raw))
            return
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON push frame", frame=str(raw)[:200])
            return
        if not isinstance(frame, dict):
            logger.warning("Ignoring push frame that is not an object")
            return

        frame_type = frame.get("type")
        if frame_type == "event":
            event_name = frame.get("event")
            entry = self._handlers.get(event_name) if isinstance(event_name, str) else None
            if entry is None:
                logger.debug("No handler for push event", event_name=event_name)
                return
            try:
                entry[1](frame.get("data"))
            except Exception:
                logger.error("Push event handler failed", event_name=event_name, exc_info=True)
        elif frame_type == "ack":
            ack_id = frame.get("id")
            if not isinstance(ack_id, int) or isinstance(ack_id, bool):
                logger.warning("Ignoring ack with invalid id", ack_id=str(ack_id)[:50])
                return
            fut = self._pending_acks.get(ack_id)
            if fut is not None and not fut.done():
                fut.set_result(frame.get("data") or {})
        else:
            logger.debug("Ignoring unknown push frame", frame_type=frame_type)

    def _on_connection_lost(self, reason: str) -> None:
        logger.warning("Push channel lost", url=self.url, reason=reason)
        self._ws = None
        self._handle = None
        self._fail_pending_acks(reason)
        self._handlers.clear()
        self._subscriptions.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        if self.config.reconnect and self.config.reconnect_attempts > 0 and not self._closing:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        attempts = self.config.reconnect_attempts
        for attempt in range(1, attempts + 1):
            delay = self.config.backoff_seconds(attempt)
            _RECONNECT_ATTEMPTS_TOTAL.inc()
            logger.info(
                "Reconnecting push channel",
                url=self.url,
                attempt=attempt,
                max_attempts=attempts,
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)
            if self._closing:
                return

            self._set_state(ConnectionState.CONNECTING)
            try:
                handle = await self._open(self._credentials)
            except AuthError as exc:
                self._set_state(ConnectionState.ERRORED)
                logger.error("Reconnect rejected by server; re-authentication required", error=str(exc))
                return
            except NetworkError as exc:
                self._set_state(ConnectionState.DISCONNECTED)
                logger.warning("Reconnect attempt failed", attempt=attempt, error=str(exc))
                continue

            self._set_state(ConnectionState.CONNECTED)
            # Listeners re-subscribe before the first frame of the new socket is read.
            self._notify_reconnected(handle)
            self._start_reader()
            logger.info("Push channel reconnected", url=self.url, attempt=attempt)
            return

        self._set_state(ConnectionState.ERRORED)
        logger.error("Push channel reconnect attempts exhausted", url=self.url, attempts=attempts)

    def _notify_reconnected(self, handle: ConnectionHandle) -> None:
        for listener in list(self._reconnect_listeners):
            try:
                listener(handle)
            except Exception:
                logger.error("Reconnect listener failed", exc_info=True)

    def _fail_pending_acks(self, reason: str) -> None:
        pending, self._pending_acks = self._pending_acks, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(NotConnectedError(f"Push channel unavailable: {reason}"))

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        for candidate in ConnectionState:
            _CONNECTION_STATE.labels(candidate.value).set(1 if candidate is state else 0)
        logger.info("Push channel state changed", previous=previous.value, state=state.value)
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.error("Connection state listener failed", exc_info=True)
