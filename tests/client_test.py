from __future__ import annotations

import asyncio
import json
import logging
import threading
from unittest import mock

import pytest
from websockets.protocol import State

from sigrelay.client import CandidatePolicy
from sigrelay.client import SignalingClient
from sigrelay.exceptions import RelayNotConnectedError
from sigrelay.messages import Answer
from sigrelay.messages import IceCandidate
from sigrelay.messages import Offer
from sigrelay.messages import WireEncoding
from testing.connections import FakeEngine
from testing.relay_server import RelayServerInfo
from testing.utils import open_port
from testing.utils import wait_until

_CANDIDATE = 'candidate:1 1 UDP 2122260223 192.168.1.2 54321 typ host'
_FLAT_CANDIDATE = {
    'candidate': _CANDIDATE,
    'sdpMid': '0',
    'sdpMLineIndex': 0,
}
_NESTED_CANDIDATE = {
    'type': 'IceCandidate',
    'data': {
        'candidate': _CANDIDATE,
        'sdp_mid': '0',
        'sdp_mline_index': 0,
    },
}


class _Messages:
    """Relay connection stand-in yielding scripted messages."""

    def __init__(self, *messages: str) -> None:
        self.messages = list(messages)

    def __aiter__(self) -> _Messages:
        return self

    async def __anext__(self) -> str:
        if not self.messages:
            raise StopAsyncIteration
        return self.messages.pop(0)


@pytest.mark.asyncio()
async def test_invalid_address() -> None:
    with pytest.raises(ValueError, match='ws://'):
        SignalingClient('http://localhost:8080', FakeEngine())


@pytest.mark.asyncio()
async def test_registers_engine_callback() -> None:
    engine = FakeEngine()
    client = SignalingClient('ws://localhost:8080', engine)
    assert engine.signal_callback is client.engine_callback
    assert client.address == 'ws://localhost:8080'


@pytest.mark.asyncio()
async def test_nested_offer_handed_to_engine_flat() -> None:
    engine = FakeEngine()
    client = SignalingClient('ws://localhost:8080', engine)

    primitive = client.handle_relay_payload(
        '{"type": "Offer", "data": {"sdp": "v=0"}}',
    )

    assert primitive == Offer('v=0')
    assert len(engine.remote_descriptions) == 1
    assert json.loads(engine.remote_descriptions[0]) == {
        'type': 'offer',
        'sdp': 'v=0',
    }
    assert engine.candidates == []


@pytest.mark.asyncio()
async def test_flat_answer_handed_to_engine() -> None:
    engine = FakeEngine()
    client = SignalingClient('ws://localhost:8080', engine)

    assert client.handle_relay_payload(
        b'{"type": "answer", "sdp": "v=0"}',
    ) == Answer('v=0')
    assert json.loads(engine.remote_descriptions[0]) == {
        'type': 'answer',
        'sdp': 'v=0',
    }


@pytest.mark.parametrize('message', (_FLAT_CANDIDATE, _NESTED_CANDIDATE))
@pytest.mark.asyncio()
async def test_candidate_forwarded(message: dict[str, object]) -> None:
    engine = FakeEngine()
    client = SignalingClient('ws://localhost:8080', engine)

    primitive = client.handle_relay_payload(json.dumps(message))

    assert isinstance(primitive, IceCandidate)
    assert [json.loads(c) for c in engine.candidates] == [_FLAT_CANDIDATE]
    assert client.pending_candidates == ()


@pytest.mark.asyncio()
async def test_candidates_buffered_until_description() -> None:
    engine = FakeEngine()
    client = SignalingClient(
        'ws://localhost:8080',
        engine,
        candidate_policy=CandidatePolicy.buffer,
    )

    client.handle_relay_payload(json.dumps(_NESTED_CANDIDATE))
    client.handle_relay_payload(json.dumps(_FLAT_CANDIDATE))
    assert engine.candidates == []
    assert len(client.pending_candidates) == 2

    client.handle_relay_payload('{"type": "offer", "sdp": "v=0"}')
    assert len(engine.remote_descriptions) == 1
    assert [json.loads(c) for c in engine.candidates] == [
        _FLAT_CANDIDATE,
        _FLAT_CANDIDATE,
    ]
    assert client.pending_candidates == ()

    # Candidates after the description are not held
    client.handle_relay_payload(json.dumps(_FLAT_CANDIDATE))
    assert len(engine.candidates) == 3


@pytest.mark.parametrize(
    'payload',
    ('not json', '{"foo": "bar"}', '{"type": "Offer"}', b'\xff'),
)
@pytest.mark.asyncio()
async def test_undecodable_relay_message_dropped(
    caplog,
    payload: str | bytes,
) -> None:
    caplog.set_level(logging.ERROR)
    engine = FakeEngine()
    client = SignalingClient('ws://localhost:8080', engine)

    assert client.handle_relay_payload(payload) is None
    assert engine.remote_descriptions == []
    assert engine.candidates == []
    assert any('Dropping relay message' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_translate_outbound() -> None:
    client = SignalingClient('ws://localhost:8080', FakeEngine())
    nested = client.translate_outbound('{"type": "answer", "sdp": "v=0"}')
    assert json.loads(nested) == {'type': 'Answer', 'data': {'sdp': 'v=0'}}

    flat_client = SignalingClient(
        'ws://localhost:8080',
        FakeEngine(),
        remote_encoding=WireEncoding.flat,
    )
    flat = flat_client.translate_outbound(json.dumps(_NESTED_CANDIDATE))
    assert json.loads(flat) == _FLAT_CANDIDATE


@pytest.mark.asyncio()
async def test_untranslatable_outbound_forwarded_unchanged(caplog) -> None:
    caplog.set_level(logging.ERROR)
    client = SignalingClient('ws://localhost:8080', FakeEngine())

    assert client.translate_outbound('{"foo":"bar"}') == '{"foo":"bar"}'
    assert any('unchanged' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_verbose_logs_messages_at_info(caplog) -> None:
    caplog.set_level(logging.INFO, logger='sigrelay.client')
    engine = FakeEngine()
    SignalingClient('ws://localhost:8080', engine, verbose=True)

    engine.emit('{"type": "answer", "sdp": "v=0"}')

    assert any(
        'Engine produced message' in r.message and r.levelname == 'INFO'
        for r in caplog.records
    )


@pytest.mark.asyncio()
async def test_quiet_logs_messages_at_debug(caplog) -> None:
    caplog.set_level(logging.INFO, logger='sigrelay.client')
    engine = FakeEngine()
    SignalingClient('ws://localhost:8080', engine)

    engine.emit('{"type": "answer", "sdp": "v=0"}')

    assert not any(
        'Engine produced message' in r.message for r in caplog.records
    )


@pytest.mark.asyncio()
async def test_exchange_through_relay(relay_server: RelayServerInfo) -> None:
    sender_engine, receiver_engine = FakeEngine(), FakeEngine()
    sender = SignalingClient(relay_server.address, sender_engine)
    receiver = SignalingClient(relay_server.address, receiver_engine)
    registry = relay_server.relay_server.registry

    async with sender, receiver:
        task = asyncio.create_task(receiver.run())
        await wait_until(lambda: len(registry._connections) == 2)

        # Engines may emit from threads other than the event loop
        thread = threading.Thread(
            target=sender_engine.emit,
            args=('{"type": "answer", "sdp": "v=0"}',),
        )
        thread.start()
        thread.join()
        sender_engine.emit(json.dumps(_FLAT_CANDIDATE))

        await wait_until(lambda: len(receiver_engine.candidates) == 1)
        assert [json.loads(d) for d in receiver_engine.remote_descriptions] == [
            {'type': 'answer', 'sdp': 'v=0'},
        ]
        assert json.loads(receiver_engine.candidates[0]) == _FLAT_CANDIDATE

    await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio()
async def test_connect_returns_open_connection(
    relay_server: RelayServerInfo,
) -> None:
    async with SignalingClient(relay_server.address, FakeEngine()) as client:
        websocket = await client.connect()
        assert websocket.state is State.OPEN
        assert await client.connect() is websocket


@pytest.mark.asyncio()
async def test_connect_after_close(relay_server: RelayServerInfo) -> None:
    client = SignalingClient(relay_server.address, FakeEngine())
    await client.connect()
    await client.close()

    with pytest.raises(RelayNotConnectedError):
        await client.connect()


@pytest.mark.asyncio()
async def test_connect_retries_with_backoff(caplog) -> None:
    caplog.set_level(logging.WARNING)
    address = f'ws://localhost:{open_port()}'
    client = SignalingClient(address, FakeEngine(), timeout=0.1)
    client._initial_backoff_seconds = 0.01

    task = asyncio.create_task(client.connect())
    await wait_until(
        lambda: sum('Retrying' in r.message for r in caplog.records) >= 2,
    )
    await client.close()

    with pytest.raises(RelayNotConnectedError):
        await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio()
async def test_run_without_reconnect(relay_server: RelayServerInfo) -> None:
    client = SignalingClient(
        relay_server.address,
        FakeEngine(),
        reconnect=False,
    )
    await client.connect()
    task = asyncio.create_task(client.run())

    registry = relay_server.relay_server.registry
    await wait_until(lambda: len(registry._connections) == 1)
    for connection in await registry.connections():
        await connection.close()  # type: ignore[attr-defined]

    await asyncio.wait_for(task, timeout=1)
    assert not task.cancelled()
    await client.close()


@pytest.mark.asyncio()
async def test_run_hands_messages_to_engine() -> None:
    engine = FakeEngine()
    client = SignalingClient('ws://localhost:8080', engine, reconnect=False)

    messages = _Messages('{"type": "offer", "sdp": "v=0"}', 'bad')
    with mock.patch.object(client, 'connect', return_value=messages):
        await client.run()

    assert len(engine.remote_descriptions) == 1


@pytest.mark.asyncio()
async def test_deeply_nested_relay_message_dropped(caplog) -> None:
    caplog.set_level(logging.ERROR)
    engine = FakeEngine()
    client = SignalingClient('ws://localhost:8080', engine, reconnect=False)
    deep = '{"type": "Offer", "data": ' + '[' * 30000 + ']' * 30000 + '}'

    assert client.handle_relay_payload('[' * 60000) is None

    with mock.patch.object(
        client,
        'connect',
        return_value=_Messages(deep, '{"type": "offer", "sdp": "v=0"}'),
    ):
        await client.run()

    assert [json.loads(d) for d in engine.remote_descriptions] == [
        {'type': 'offer', 'sdp': 'v=0'},
    ]
    assert any('Dropping relay message' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_buffered_candidates_are_capped(caplog) -> None:
    caplog.set_level(logging.WARNING)
    engine = FakeEngine()
    client = SignalingClient(
        'ws://localhost:8080',
        engine,
        candidate_policy=CandidatePolicy.buffer,
        max_pending_candidates=2,
    )

    for _ in range(3):
        client.handle_relay_payload(json.dumps(_FLAT_CANDIDATE))

    assert len(client.pending_candidates) == 2
    assert any('Dropping remote ICE' in r.message for r in caplog.records)

    client.handle_relay_payload('{"type": "answer", "sdp": "v=0"}')
    assert len(engine.candidates) == 2


@pytest.mark.asyncio()
async def test_reconnect_starts_new_negotiation() -> None:
    engine = FakeEngine()
    client = SignalingClient(
        'ws://localhost:8080',
        engine,
        candidate_policy=CandidatePolicy.buffer,
    )
    candidate = json.dumps(_FLAT_CANDIDATE)

    with mock.patch.object(
        client,
        'connect',
        side_effect=[
            _Messages('{"type": "offer", "sdp": "v=0"}', candidate),
            _Messages(candidate),
            RelayNotConnectedError('closed'),
        ],
    ):
        await client.run()

    # The second connection held its candidate until a new description
    assert len(engine.remote_descriptions) == 1
    assert len(engine.candidates) == 1
    assert len(client.pending_candidates) == 1
