"""Shared fixtures: in-memory transports and storage so tests never need Redis."""
import asyncio
import itertools
import json

import pytest

from relay.engine import RelayEngine, RelayPolicy
from relay.presence import PresenceState
from relay.registry import ConnectionRegistry


class FakeTransport:
    """Stands in for a Starlette WebSocket: records every frame sent to it."""

    def __init__(self, name: str = "", fail: bool = False, delay: float = 0.0):
        self.name = name
        self.fail = fail
        self.delay = delay
        self.sent = []
        self.closed = False
        self.close_code = None

    async def send_text(self, text: str):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail or self.closed:
            raise RuntimeError(f"transport {self.name} is closed")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000):
        self.closed = True
        self.close_code = code

    def frames(self, frame_type=None):
        return [f for f in self.sent if frame_type is None or f["type"] == frame_type]

    def clear(self):
        self.sent.clear()


class FakeStorage:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []

    def append_message(self, room, user, text, ts, cid=None):
        if self.fail:
            raise ConnectionError("storage unavailable")
        record = {"room": room, "user": user, "text": text, "ts": ts}
        if cid:
            record["cid"] = cid
        self.messages.append(record)
        return True

    def recent_messages(self, room, limit=200):
        if self.fail:
            raise ConnectionError("storage unavailable")
        rows = [m for m in self.messages if m["room"] == room]
        return rows[-limit:]


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def presence():
    return PresenceState()


@pytest.fixture
def clock():
    counter = itertools.count(1_700_000_000_000)
    return lambda: next(counter)


@pytest.fixture
def engine(registry, presence, storage, clock):
    return RelayEngine(registry=registry, presence=presence, storage=storage, room="test", clock=clock)


@pytest.fixture
def make_engine(registry, presence, storage, clock):
    """Build an engine sharing the default fixtures but with a custom policy."""
    def factory(**policy_overrides):
        return RelayEngine(
            registry=registry,
            presence=presence,
            storage=storage,
            room="test",
            policy=RelayPolicy(**policy_overrides),
            clock=clock,
        )
    return factory


@pytest.fixture
def connect_peer():
    """Connect a FakeTransport to an engine and drop its handshake frames."""
    async def connect(engine, name="", **transport_kwargs):
        transport = FakeTransport(name, **transport_kwargs)
        connection_id = await engine.connect(transport)
        transport.clear()
        return connection_id, transport
    return connect
