from __future__ import annotations

import asyncio
import logging

import pytest
import websockets.exceptions

from sigrelay.registry import BroadcastResult
from sigrelay.registry import ConnectionRegistry
from testing.connections import FakeConnection


@pytest.mark.asyncio()
async def test_add_and_remove(caplog) -> None:
    caplog.set_level(logging.INFO)
    registry = ConnectionRegistry()
    connection = FakeConnection()

    assert await registry.add(connection)
    assert await registry.count() == 1
    assert any('Total: 1' in record.message for record in caplog.records)

    await registry.remove(connection)
    assert await registry.count() == 0
    assert any('Total: 0' in record.message for record in caplog.records)


@pytest.mark.asyncio()
async def test_add_same_connection_twice() -> None:
    registry = ConnectionRegistry()
    connection = FakeConnection()
    assert await registry.add(connection)
    assert await registry.add(connection)
    assert await registry.count() == 1


@pytest.mark.asyncio()
async def test_remove_missing_connection(caplog) -> None:
    caplog.set_level(logging.WARNING)
    registry = ConnectionRegistry()
    await registry.add(FakeConnection('a'))

    await registry.remove(FakeConnection('b'))

    assert await registry.count() == 1
    assert any(
        'is not registered' in record.message
        and record.levelname == 'WARNING'
        for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_connections_snapshot() -> None:
    registry = ConnectionRegistry()
    connections = [FakeConnection(str(i)) for i in range(3)]
    for connection in connections:
        await registry.add(connection)

    snapshot = await registry.connections()
    assert set(snapshot) == set(connections)
    snapshot.clear()
    assert await registry.count() == 3


@pytest.mark.asyncio()
async def test_max_connections() -> None:
    registry = ConnectionRegistry(max_connections=2)
    first, second, third = (FakeConnection(str(i)) for i in range(3))

    assert await registry.add(first)
    assert await registry.add(second)
    assert not await registry.add(third)
    assert await registry.count() == 2

    # Re-adding an existing member is not over the limit
    assert await registry.add(first)

    await registry.remove(first)
    assert await registry.add(third)


@pytest.mark.parametrize('count', (1, 2, 5))
@pytest.mark.asyncio()
async def test_broadcast_fan_out(count: int) -> None:
    registry = ConnectionRegistry()
    connections = [FakeConnection(str(i)) for i in range(count)]
    for connection in connections:
        await registry.add(connection)

    sender = connections[0]
    result = await registry.broadcast_except_sender(sender, 'hello')

    assert result == BroadcastResult(delivered=count - 1, failed=0)
    assert sender.sent == []
    for connection in connections[1:]:
        assert connection.sent == ['hello']


@pytest.mark.asyncio()
async def test_broadcast_is_verbatim() -> None:
    registry = ConnectionRegistry()
    sender, receiver = FakeConnection('sender'), FakeConnection('receiver')
    await registry.add(sender)
    await registry.add(receiver)

    text = '{"type":"offer",  "sdp":"x"}'
    binary = b'\x00\xff'
    await registry.broadcast_except_sender(sender, text)
    await registry.broadcast_except_sender(sender, binary)

    assert receiver.sent == [text, binary]
    assert receiver.sent[0] is text


@pytest.mark.asyncio()
async def test_broadcast_from_unregistered_sender() -> None:
    registry = ConnectionRegistry()
    receiver = FakeConnection()
    await registry.add(receiver)

    result = await registry.broadcast_except_sender(FakeConnection(), 'x')
    assert result == BroadcastResult(delivered=1, failed=0)


@pytest.mark.parametrize(
    'error',
    (
        websockets.exceptions.ConnectionClosedError(None, None),
        ConnectionResetError('reset'),
    ),
)
@pytest.mark.asyncio()
async def test_broadcast_partial_failure(caplog, error: Exception) -> None:
    caplog.set_level(logging.WARNING)
    registry = ConnectionRegistry()
    sender = FakeConnection('sender')
    healthy = [FakeConnection(f'healthy-{i}') for i in range(3)]
    broken = FakeConnection('broken', error=error)
    for connection in (sender, *healthy, broken):
        await registry.add(connection)

    result = await registry.broadcast_except_sender(sender, 'payload')

    assert result == BroadcastResult(delivered=3, failed=1)
    for connection in healthy:
        assert connection.sent == ['payload']
    assert broken.sent == []
    assert any('1 failed' in record.message for record in caplog.records)


@pytest.mark.asyncio()
async def test_broadcast_send_timeout() -> None:
    registry = ConnectionRegistry(send_timeout=0.05)
    sender = FakeConnection('sender')
    stalled = FakeConnection('stalled', delay=10)
    healthy = FakeConnection('healthy')
    for connection in (sender, stalled, healthy):
        await registry.add(connection)

    result = await asyncio.wait_for(
        registry.broadcast_except_sender(sender, 'payload'),
        timeout=2,
    )

    assert result == BroadcastResult(delivered=1, failed=1)
    assert healthy.sent == ['payload']
    assert stalled.sent == []


@pytest.mark.asyncio()
async def test_membership_waits_for_broadcast() -> None:
    registry = ConnectionRegistry()
    sender = FakeConnection('sender')
    slow = FakeConnection('slow', delay=0.1)
    await registry.add(sender)
    await registry.add(slow)

    broadcast = asyncio.create_task(
        registry.broadcast_except_sender(sender, 'payload'),
    )
    await asyncio.sleep(0.01)
    late = FakeConnection('late')
    await registry.add(late)

    # The late connection joined after the broadcast released the lock
    assert broadcast.done()
    assert (await broadcast).delivered == 1
    assert late.sent == []
