import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from backend import RedisConnectionRegistry
from broadcaster import FanoutBroadcaster
from errors import RegistryUnavailable
from schemas.events import Connection, SendRequest

from conftest import RecordingTransport, lookup


def _broadcaster(registry, transport, **kwargs):
    kwargs.setdefault("default_room_id", "lobby")
    return FanoutBroadcaster(registry, transport, **kwargs)


def _join(membership, room_id, *connection_ids):
    for connection_id in connection_ids:
        membership.register_connection(connection_id, room_id)


@pytest.mark.asyncio
async def test_gone_member_is_pruned_and_others_delivered(membership, registry):
    _join(membership, "lobby", "A", "B", "C")
    transport = RecordingTransport(gone={"B"})

    report = await _broadcaster(registry, transport).broadcast(
        SendRequest(action="message", text="hi", user_id="u1")
    )

    assert transport.recipients == ["A", "B", "C"]
    payloads = {payload for _, payload in transport.sent}
    assert len(payloads) == 1
    assert json.loads(payloads.pop()) == {"type": "message", "roomId": "lobby", "userId": "u1", "text": "hi"}
    assert sorted(report.delivered) == ["A", "C"]
    assert report.gone == ["B"]
    assert sorted(c.connection_id for c in registry.query_by_room("lobby")) == ["A", "C"]


@pytest.mark.asyncio
async def test_transient_failure_keeps_member_registered(membership, registry):
    _join(membership, "games", "m1", "m2", "m3")
    transport = RecordingTransport(transient={"m2"})

    report = await _broadcaster(registry, transport).broadcast(SendRequest(room_id="games", text="x", user_id="u"))

    assert sorted(report.delivered) == ["m1", "m3"]
    assert report.transient == ["m2"]
    assert report.gone == []
    assert lookup(registry, "m2") is not None
    assert len(registry.query_by_room("games")) == 3


@pytest.mark.asyncio
async def test_missing_room_behaves_like_default_room(membership, registry):
    _join(membership, "lobby", "A", "B")
    implicit = RecordingTransport()
    explicit = RecordingTransport()

    await _broadcaster(registry, implicit).broadcast(SendRequest(text="hi", user_id="u1"))
    await _broadcaster(registry, explicit).broadcast(SendRequest(room_id="lobby", text="hi", user_id="u1"))

    assert sorted(implicit.sent) == sorted(explicit.sent)


@pytest.mark.asyncio
async def test_empty_room_delivers_nothing(registry):
    transport = RecordingTransport()

    report = await _broadcaster(registry, transport).broadcast(SendRequest(room_id="nobody-here"))

    assert transport.sent == []
    assert report.attempted == 0


@pytest.mark.asyncio
async def test_delivery_timeout_is_transient_not_gone(membership, registry):
    _join(membership, "lobby", "fast", "slow")
    transport = RecordingTransport(slow={"slow"}, delay=1.0)

    report = await _broadcaster(registry, transport, delivery_timeout=0.05).broadcast(SendRequest(text="t"))

    assert report.delivered == ["fast"]
    assert report.transient == ["slow"]
    assert lookup(registry, "slow") is not None


@pytest.mark.asyncio
async def test_deadline_abandons_pending_deliveries(membership, registry):
    _join(membership, "lobby", "fast", "hung")
    transport = RecordingTransport(slow={"hung"}, delay=5.0)
    broadcaster = _broadcaster(registry, transport, delivery_timeout=10.0)

    report = await broadcaster.broadcast(SendRequest(text="t"), deadline=0.1)

    assert report.delivered == ["fast"]
    assert report.abandoned == ["hung"]
    assert lookup(registry, "hung") is not None


@pytest.mark.asyncio
async def test_concurrency_budget_of_one_still_reaches_everyone(membership, registry):
    _join(membership, "lobby", "A", "B", "C", "D")
    transport = RecordingTransport(gone={"D"})

    report = await _broadcaster(registry, transport, max_concurrency=1).broadcast(SendRequest(text="t"))

    assert sorted(report.delivered) == ["A", "B", "C"]
    assert report.gone == ["D"]


@pytest.mark.asyncio
async def test_unexpected_transport_error_is_contained(membership, registry):
    _join(membership, "lobby", "A", "B")
    transport = RecordingTransport(broken={"A"})

    report = await _broadcaster(registry, transport).broadcast(SendRequest(text="t"))

    assert report.transient == ["A"]
    assert report.delivered == ["B"]
    assert lookup(registry, "A") is not None


@pytest.mark.asyncio
async def test_membership_failure_fails_broadcast_without_delivering():
    registry = MagicMock(spec=RedisConnectionRegistry)
    registry.query_by_room.side_effect = RegistryUnavailable("down")
    transport = RecordingTransport()

    with pytest.raises(RegistryUnavailable):
        await _broadcaster(registry, transport).broadcast(SendRequest(text="t"))
    assert transport.sent == []


@pytest.mark.asyncio
async def test_prune_failure_is_swallowed():
    expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
    registry = MagicMock(spec=RedisConnectionRegistry)
    registry.query_by_room.return_value = [
        Connection(connection_id="A", room_id="lobby", expires_at=expires_at),
        Connection(connection_id="B", room_id="lobby", expires_at=expires_at),
    ]
    registry.delete.side_effect = RegistryUnavailable("down")
    transport = RecordingTransport(gone={"B"})

    report = await _broadcaster(registry, transport).broadcast(SendRequest(text="t"))

    registry.delete.assert_called_once_with("B")
    assert report.gone == ["B"]
    assert report.delivered == ["A"]
