import asyncio

import fakeredis
import pytest

from backend import RedisConnectionRegistry
from errors import RecipientGone, TransientDeliveryFault
from membership import MembershipManager
from schemas.events import Connection
from transport import PushTransport


class RecordingTransport(PushTransport):
    """Push transport double that records sends and fails on request."""

    def __init__(self, gone=(), transient=(), slow=(), delay=1.0, broken=()):
        self.gone = set(gone)
        self.transient = set(transient)
        self.slow = set(slow)
        self.broken = set(broken)
        self.delay = delay
        self.sent = []

    async def send(self, connection_id, payload):
        self.sent.append((connection_id, payload))
        if connection_id in self.slow:
            await asyncio.sleep(self.delay)
        if connection_id in self.gone:
            raise RecipientGone(connection_id)
        if connection_id in self.transient:
            raise TransientDeliveryFault(connection_id, "throttled")
        if connection_id in self.broken:
            raise KeyError(connection_id)

    @property
    def recipients(self):
        return sorted(connection_id for connection_id, _ in self.sent)


def lookup(registry, connection_id):
    """Read a registry entry straight from Redis, or None when it is absent."""
    data = registry.redis_client.hgetall(f"conn:{connection_id}")
    return Connection.from_redis(data) if data else None


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def registry(redis_client):
    return RedisConnectionRegistry(redis_client)


@pytest.fixture
def membership(registry):
    return MembershipManager(registry, default_room_id="lobby", default_ttl=3600)
