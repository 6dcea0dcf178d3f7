"""Shared fakes: an in-memory websocket, a scripted connector, a snapshot
loader with gates, a handler-table connection, and a controllable clock."""

import asyncio
import copy
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest
from websockets.exceptions import ConnectionClosedError


class FakeWebSocket:
    def __init__(
        self,
        *,
        auth_status: str = "ok",
        auth_message: Optional[str] = None,
        auto_ack: Optional[Callable[[dict], Any]] = None,
    ):
        self.sent: List[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.auth_status = auth_status
        self.auth_message = auth_message
        self.auto_ack = auto_ack

    async def send(self, message):
        if self.closed:
            raise ConnectionClosedError(None, None)
        frame = json.loads(message)
        self.sent.append(frame)
        if frame.get("type") == "auth":
            self.incoming.put_nowait(
                json.dumps(
                    {
                        "type": "auth_response",
                        "status": self.auth_status,
                        "message": self.auth_message,
                    }
                )
            )
        elif frame.get("type") == "emit" and self.auto_ack is not None:
            data = self.auto_ack(frame)
            if data is not None:
                self.ack(frame["id"], data)

    async def recv(self):
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self):
        self.closed = True

    def push(self, event: str, data: Any) -> None:
        self.incoming.put_nowait(json.dumps({"type": "event", "event": event, "data": data}))

    def push_raw(self, raw: Any) -> None:
        self.incoming.put_nowait(raw)

    def ack(self, ack_id: int, data: Any) -> None:
        self.incoming.put_nowait(json.dumps({"type": "ack", "id": ack_id, "data": data}))

    def drop(self) -> None:
        self.incoming.put_nowait(ConnectionClosedError(None, None))

    def emitted(self) -> List[dict]:
        return [f for f in self.sent if f.get("type") == "emit"]


class FakeConnector:
    """Hands out scripted sockets (or raises scripted errors) in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.urls: List[str] = []

    async def __call__(self, url: str, timeout: float):
        self.urls.append(url)
        if not self.results:
            raise OSError("connection refused")
        item = self.results.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeLoader:
    """Snapshot loader keyed by endpoint; ``hold`` blocks a fetch until released."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses: Dict[str, Any] = dict(responses or {})
        self.calls: List[str] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.closed = False

    def hold(self, endpoint: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[endpoint] = gate
        return gate

    async def fetch(self, endpoint: str, domain_key: str, *, domain: Optional[str] = None):
        self.calls.append(endpoint)
        gate = self.gates.get(endpoint)
        if gate is not None:
            await gate.wait()
        result = self.responses.get(endpoint, [])
        if isinstance(result, BaseException):
            raise result
        return copy.deepcopy(result)

    async def close(self):
        self.closed = True


class FakeConnection:
    """Just the handler table of a connection manager."""

    def __init__(self):
        self.handlers: Dict[str, tuple] = {}
        self._events: Dict[str, str] = {}
        self._counter = 0

    def subscribe(self, event_name, handler):
        self._counter += 1
        subscription_id = f"sub-{self._counter}"
        previous = self.handlers.get(event_name)
        if previous is not None:
            self._events.pop(previous[0], None)
        self.handlers[event_name] = (subscription_id, handler)
        self._events[subscription_id] = event_name
        return subscription_id

    def unsubscribe(self, subscription_id):
        event_name = self._events.pop(subscription_id, None)
        if event_name is None:
            return False
        entry = self.handlers.get(event_name)
        if entry is not None and entry[0] == subscription_id:
            del self.handlers[event_name]
        return True

    def emit(self, event_name, data):
        entry = self.handlers.get(event_name)
        if entry is not None:
            entry[1](data)

    def drop_all(self):
        self.handlers.clear()
        self._events.clear()


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 30, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_connection():
    return FakeConnection()


@pytest.fixture
def fake_loader():
    return FakeLoader()
