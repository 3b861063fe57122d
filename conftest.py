import asyncio, json

import pytest

from huddle.broadcast import BroadcastRelay
from huddle.registry import ConnectionRegistry
from huddle.sessions import CallSessionTracker


class FakeSocket:
    """Stands in for a websocket: records what the registry writes to it."""

    def __init__(self, fail=False, delay=0.0):
        self.fail = fail
        self.delay = delay
        self.sent = []
        self.closed = None

    async def send(self, frame):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError('socket closed')
        self.sent.append(json.loads(frame))

    async def close(self, code, reason):
        self.closed = (code, reason)

    def of(self, event_type):
        return [f for f in self.sent if f['type'] == event_type]


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def relay(registry):
    return BroadcastRelay(registry)


@pytest.fixture
def tracker(registry):
    return CallSessionTracker(registry)


@pytest.fixture
def join(registry):
    """join(**socket_kwargs) -> (connection_id, FakeSocket)"""
    def _join(**kwargs):
        sock = FakeSocket(**kwargs)
        return registry.register(sock.send, sock.close), sock
    return _join
