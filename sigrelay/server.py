"""Relay server implementation for exchanging WebRTC signaling messages.

The relay server (or signaling server) is a lightweight server accessible by
both peers that forwards session descriptions and ICE candidates between them
until the peers establish a direct WebRTC connection. The relay does not
interpret the messages it forwards: every message received from one client
is sent, unmodified, to every other connected client.
"""
from __future__ import annotations

import logging

import websockets.exceptions
from websockets.asyncio.server import ServerConnection

from sigrelay.classifier import check_relay_payload
from sigrelay.classifier import MAX_MESSAGE_BYTES
from sigrelay.classifier import payload_size
from sigrelay.exceptions import PayloadPolicyError
from sigrelay.registry import BroadcastResult
from sigrelay.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class RelayServer:
    """WebRTC signaling relay server.

    Each connection moves through three states. When the connection opens
    it is added to the
    [`ConnectionRegistry`][sigrelay.registry.ConnectionRegistry], each
    message it sends is relayed to every other connection, and when it
    closes it is removed from the registry exactly once. The relay keeps no
    session state so reconnecting is left to the peers.

    With two connected peers, relaying to every other connection is direct
    delivery. With more peers every message reaches all of them; set
    `max_connections=2` to refuse additional peers instead.

    The relay server is built on websockets and designed to be
    served using [`serve()`][sigrelay.run.serve].

    Args:
        max_message_bytes: Maximum size of relayed messages in bytes.
            Empty and oversized messages are dropped and the sender stays
            connected.
        send_timeout: Seconds to wait on a send to a single client.
        max_connections: Optional cap on the number of open connections.
            Connections over the cap are closed with code 1013.
    """

    def __init__(
        self,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
        *,
        send_timeout: float | None = 5.0,
        max_connections: int | None = None,
    ) -> None:
        self._max_message_bytes = max_message_bytes
        self._registry = ConnectionRegistry(
            send_timeout=send_timeout,
            max_connections=max_connections,
        )

    @property
    def registry(self) -> ConnectionRegistry:
        """Registry of open connections."""
        return self._registry

    async def relay(
        self,
        sender: ServerConnection,
        message: str | bytes,
    ) -> BroadcastResult | None:
        """Forward a message to every connection except the sender.

        Args:
            sender: Connection the message was received on.
            message: Raw message. Text and binary messages are forwarded
                as they were received.

        Returns:
            Result of the broadcast or `None` if the message was dropped.
        """
        try:
            check_relay_payload(message, self._max_message_bytes)
        except PayloadPolicyError as e:
            logger.warning(
                f'Dropping message from client at {sender.remote_address}. '
                f'{e.__class__.__name__}: {e}',
            )
            return None

        logger.debug(
            f'Received message of {payload_size(message)} bytes from '
            f'client at {sender.remote_address}',
        )
        return await self.registry.broadcast_except_sender(sender, message)

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        The handler returns once the connection is closed by the client or
        the server. A connection is closed with code 1013 if the registry is
        at its connection limit.

        Args:
            websocket: Newly opened websocket connection.
        """
        if not await self.registry.add(websocket):
            await websocket.close(
                code=1013,
                reason='Relay server connection limit reached.',
            )
            return

        try:
            while True:
                try:
                    message = await websocket.recv()
                except websockets.exceptions.ConnectionClosedOK:
                    logger.debug(
                        f'Client at {websocket.remote_address} closed the '
                        'connection',
                    )
                    break
                except websockets.exceptions.ConnectionClosedError as e:
                    logger.warning(
                        f'Connection with client at {websocket.remote_address}'
                        f' closed unexpectedly: {e}',
                    )
                    break

                await self.relay(websocket, message)
        finally:
            await self.registry.remove(websocket)
