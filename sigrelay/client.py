"""Signaling client bridging a relay server and a negotiation engine."""
from __future__ import annotations

import asyncio
import enum
import logging
import ssl
import sys
from types import TracebackType

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as websockets_connect
from websockets.protocol import State

from sigrelay.adapter import decode
from sigrelay.adapter import encode
from sigrelay.engine import Engine
from sigrelay.engine import SignalCallback
from sigrelay.exceptions import RelayNotConnectedError
from sigrelay.exceptions import SchemaError
from sigrelay.messages import IceCandidate
from sigrelay.messages import SESSION_DESCRIPTIONS
from sigrelay.messages import SignalingPrimitive
from sigrelay.messages import WireEncoding
from sigrelay.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


class CandidatePolicy(enum.Enum):
    """Handling of remote ICE candidates received before a description."""

    forward = 'forward'
    """Hand candidates to the engine as soon as they arrive."""
    buffer = 'buffer'
    """Hold candidates until a remote description is handed to the engine."""


class SignalingClient:
    """Client bridging a relay server and a local negotiation engine.

    Messages received from the relay may be in either encoding. They are
    decoded and handed to the engine in the flat encoding: offers and
    answers to
    [`set_remote_description()`][sigrelay.engine.Engine.set_remote_description]
    and ICE candidates to
    [`add_ice_candidate()`][sigrelay.engine.Engine.add_ice_candidate].
    Messages that cannot be decoded are logged and dropped.

    Messages produced by the engine are re-encoded in `remote_encoding`
    before being sent to the relay. A message that cannot be decoded is
    sent unchanged so that no engine message is lost.

    Tip:
        This class can be used as an async context manager!
        ```python
        from sigrelay.client import SignalingClient
        from sigrelay.engine import AiortcEngine

        engine = AiortcEngine()
        async with SignalingClient('ws://localhost:8080', engine) as client:
            await client.run()
        ```

    Warning:
        The client must be created inside a running event loop. The engine
        may invoke the signal callback from any thread.

    Args:
        address: Address of the relay server. Should start with `ws://` or
            `wss://`.
        engine: Negotiation engine. The client registers itself as the
            engine's signal callback.
        remote_encoding: Encoding expected by the remote peer.
        candidate_policy: Handling of ICE candidates that arrive before a
            remote description.
        max_pending_candidates: Most remote candidates held under the
            `buffer` policy. Candidates arriving once the limit is reached
            are dropped.
        verbose: Log the contents of every signaling message at `INFO`
            level rather than only at `DEBUG` level.
        reconnect: Reconnect to the relay server when the connection is
            closed while running.
        ssl_context: Custom SSL context to pass to
            [`websockets.connect()`][websockets.asyncio.client.connect]. A
            TLS context is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on relay server connection.
        verify_certificate: Verify the relay server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        engine: Engine,
        *,
        remote_encoding: WireEncoding = WireEncoding.nested,
        candidate_policy: CandidatePolicy = CandidatePolicy.forward,
        max_pending_candidates: int = 64,
        verbose: bool = False,
        reconnect: bool = True,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Relay server address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        self._address = address
        self._engine = engine
        self._remote_encoding = remote_encoding
        self._candidate_policy = candidate_policy
        self._max_pending_candidates = max_pending_candidates
        self._verbose = verbose
        self._reconnect = reconnect
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
        self._ssl_context = ssl_context

        self._initial_backoff_seconds = 1.0

        self._loop = asyncio.get_running_loop()
        self._connect_lock = asyncio.Lock()
        self._websocket: ClientConnection | None = None
        self._outbound: asyncio.Queue[str] = asyncio.Queue()
        self._sender_task: asyncio.Task[None] | None = None
        self._closed = False

        self._description_delivered = False
        self._pending_candidates: list[IceCandidate] = []

        self._engine_callback = self._make_engine_callback(verbose)
        self._engine.set_signal_callback(self._engine_callback)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def address(self) -> str:
        """Address of the relay server."""
        return self._address

    @property
    def engine_callback(self) -> SignalCallback:
        """Callback registered with the engine for outgoing messages."""
        return self._engine_callback

    @property
    def pending_candidates(self) -> tuple[IceCandidate, ...]:
        """Remote candidates held until a remote description is set."""
        return tuple(self._pending_candidates)

    def _log_message(self, prefix: str, payload: str | bytes) -> None:
        if self._verbose:
            logger.info(f'{prefix}: {payload!r}')
        else:
            logger.debug(f'{prefix}: {payload!r}')

    def _make_engine_callback(self, verbose: bool) -> SignalCallback:
        def _callback(payload: str) -> None:
            if verbose:
                logger.info(f'Engine produced message: {payload!r}')
            else:
                logger.debug(f'Engine produced message: {payload!r}')
            message = self.translate_outbound(payload)
            self._loop.call_soon_threadsafe(self._outbound.put_nowait, message)

        return _callback

    def translate_outbound(self, payload: str) -> str:
        """Translate a flat engine message into the remote encoding.

        Args:
            payload: Message produced by the engine.

        Returns:
            The message in the remote encoding, or the unchanged payload if
            it cannot be decoded.
        """
        try:
            primitive = decode(payload)
        except SchemaError as e:
            logger.error(
                'Forwarding engine message unchanged because it could not be '
                f'translated: {e}',
            )
            return payload
        return encode(primitive, self._remote_encoding)

    def handle_relay_payload(
        self,
        payload: str | bytes,
    ) -> SignalingPrimitive | None:
        """Hand a message received from the relay to the engine.

        Args:
            payload: Raw message received from the relay server.

        Returns:
            The decoded primitive, or `None` if the message was dropped.
        """
        self._log_message('Received relay message', payload)
        try:
            primitive = decode(payload)
        except SchemaError as e:
            logger.error(f'Dropping relay message that cannot be decoded: {e}')
            return None

        flat = encode(primitive, WireEncoding.flat)
        if isinstance(primitive, SESSION_DESCRIPTIONS):
            logger.info(
                f'Handing remote {type(primitive).__name__.lower()} to '
                'the engine',
            )
            self._engine.set_remote_description(flat)
            self._description_delivered = True
            self._flush_pending_candidates()
        elif isinstance(primitive, IceCandidate):
            if (
                self._candidate_policy is CandidatePolicy.buffer
                and not self._description_delivered
            ):
                held = len(self._pending_candidates)
                if held >= self._max_pending_candidates:
                    logger.warning(
                        'Dropping remote ICE candidate because '
                        f'{self._max_pending_candidates} candidates are '
                        'already held waiting for a remote description',
                    )
                    return None
                logger.debug(
                    'Holding remote ICE candidate until a remote description '
                    'is set',
                )
                self._pending_candidates.append(primitive)
            else:
                self._engine.add_ice_candidate(flat)
        else:
            raise AssertionError('Unreachable.')

        return primitive

    def _flush_pending_candidates(self) -> None:
        if not self._pending_candidates:
            return
        logger.debug(
            f'Handing {len(self._pending_candidates)} held ICE candidates '
            'to the engine',
        )
        for candidate in self._pending_candidates:
            self._engine.add_ice_candidate(
                encode(candidate, WireEncoding.flat),
            )
        self._pending_candidates.clear()

    def _reset_negotiation(self) -> None:
        if self._pending_candidates:
            logger.warning(
                f'Discarding {len(self._pending_candidates)} held ICE '
                'candidates from the previous relay connection',
            )
        self._pending_candidates.clear()
        self._description_delivered = False

    async def connect(self) -> ClientConnection:
        """Connect to the relay server.

        Note:
            If an existing and open connection exists, that will be returned.
            Otherwise, a new connection will be attempted with
            exponential backoff (starting at 1 second and increasing to a max
            of 60 seconds) for connection failures.

        Returns:
            WebSocket connection to the relay server.

        Raises:
            RelayNotConnectedError: If the client has been closed.
        """
        async with self._connect_lock:
            if self._closed:
                raise RelayNotConnectedError('Signaling client is closed.')
            if (
                self._websocket is not None
                and self._websocket.state is State.OPEN
            ):
                return self._websocket

            backoff_seconds = self._initial_backoff_seconds
            while True:
                try:
                    self._websocket = await websockets_connect(
                        self._address,
                        open_timeout=self._timeout,
                        ssl=self._ssl_context,
                    )
                except (
                    # Exceptions that we should wait and retry again for
                    OSError,
                    asyncio.TimeoutError,
                    websockets.exceptions.InvalidHandshake,
                ) as e:
                    logger.warning(
                        f'Connection to relay server at {self._address} '
                        f'failed because of {e!r}. Retrying connection in '
                        f'{backoff_seconds} seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 60)
                    if self._closed:
                        raise RelayNotConnectedError(
                            'Signaling client closed while connecting.',
                        ) from e
                else:
                    break

            logger.info(f'Connected to relay server at {self._address}')
            if self._sender_task is None:
                self._sender_task = spawn_guarded_background_task(
                    self._send_outbound,
                    name='signaling-client-sender',
                )

        return self._websocket

    async def _send_outbound(self) -> None:
        while True:
            message = await self._outbound.get()
            while True:
                websocket = await self.connect()
                try:
                    await websocket.send(message)
                except websockets.exceptions.ConnectionClosed:
                    logger.warning(
                        'Connection to relay server closed while sending. '
                        'Retrying after reconnecting',
                    )
                else:
                    self._log_message('Sent message to relay', message)
                    break

    async def run(self) -> None:
        """Hand messages from the relay server to the engine until closed.

        If `reconnect` is set, the client reconnects when the relay server
        closes the connection, otherwise this returns. Each new relay
        connection starts a new negotiation: held ICE candidates are
        discarded and candidates are held again under the `buffer` policy
        until a remote description arrives.
        """
        while not self._closed:
            try:
                websocket = await self.connect()
            except RelayNotConnectedError:
                break
            # A new relay connection starts a new negotiation
            self._reset_negotiation()
            try:
                async for message in websocket:
                    self.handle_relay_payload(message)
            except websockets.exceptions.ConnectionClosedError as e:
                logger.warning(f'Connection to relay server lost: {e}')
            else:
                logger.info('Relay server closed the connection')

            if not self._reconnect:
                break

    async def close(self) -> None:
        """Close the connection to the relay server.

        Messages from the engine which have not been sent yet are dropped.
        """
        self._closed = True
        if self._sender_task is not None:
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass
            self._sender_task = None

        if self._websocket is not None:
            await self._websocket.close()
        logger.info(f'Closed connection to relay server at {self._address}')
