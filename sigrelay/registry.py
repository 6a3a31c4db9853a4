"""Registry of peer connections open on a relay server."""
from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import NamedTuple
from typing import Protocol

import websockets.exceptions

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Duplex message channel with a peer.

    [`ServerConnection`][websockets.asyncio.server.ServerConnection]
    satisfies this protocol.
    """

    @property
    def remote_address(self) -> Any:
        """Address of the peer."""
        ...

    async def send(self, message: str | bytes) -> None:
        """Send a message to the peer."""
        ...


class BroadcastResult(NamedTuple):
    """Outcome of a broadcast.

    Attributes:
        delivered: Number of recipients the payload was sent to.
        failed: Number of recipients the send failed or timed out for.
    """

    delivered: int
    failed: int


class ConnectionRegistry:
    """Set of connections currently open on the relay server.

    Every operation holds a single lock over the whole membership set,
    including the fan-out of
    [`broadcast_except_sender()`][sigrelay.registry.ConnectionRegistry.broadcast_except_sender],
    so membership never changes during a broadcast. Sends in a broadcast
    run concurrently and each is bounded by `send_timeout` so a stalled
    peer delays the others by at most that long.

    Warning:
        This class is intended for internal use by the
        [`RelayServer`][sigrelay.server.RelayServer].

    Args:
        send_timeout: Seconds to wait on a send to a single recipient
            before counting it as failed. `None` waits indefinitely.
        max_connections: Optional cap on the number of members. Use `2`
            to restrict the relay to a single pair of peers.
    """

    def __init__(
        self,
        *,
        send_timeout: float | None = 5.0,
        max_connections: int | None = None,
    ) -> None:
        self._send_timeout = send_timeout
        self._max_connections = max_connections
        self._connections: set[Connection] = set()
        self._lock = asyncio.Lock()

    async def add(self, connection: Connection) -> bool:
        """Add a new connection.

        Returns:
            `False` if the registry is at `max_connections` and the
            connection was not added, otherwise `True`.
        """
        async with self._lock:
            if (
                self._max_connections is not None
                and connection not in self._connections
                and len(self._connections) >= self._max_connections
            ):
                logger.warning(
                    f'Rejecting connection from {connection.remote_address} '
                    f'because the limit of {self._max_connections} '
                    'connections is reached',
                )
                return False
            self._connections.add(connection)
            total = len(self._connections)
        logger.info(
            f'Client at {connection.remote_address} connected. '
            f'Total: {total}',
        )
        return True

    async def remove(self, connection: Connection) -> None:
        """Remove a connection.

        Removing a connection which is not in the registry is a no-op
        because close notifications can race with shutdown.
        """
        async with self._lock:
            if connection not in self._connections:
                logger.warning(
                    f'Client at {connection.remote_address} is not '
                    'registered so it cannot be removed',
                )
                return
            self._connections.discard(connection)
            total = len(self._connections)
        logger.info(
            f'Client at {connection.remote_address} disconnected. '
            f'Total: {total}',
        )

    async def count(self) -> int:
        """Number of open connections."""
        async with self._lock:
            return len(self._connections)

    async def connections(self) -> list[Connection]:
        """Snapshot of the open connections."""
        async with self._lock:
            return list(self._connections)

    async def _send(
        self,
        connection: Connection,
        payload: str | bytes,
    ) -> bool:
        try:
            await asyncio.wait_for(
                connection.send(payload),
                timeout=self._send_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f'Timed out after {self._send_timeout} seconds sending '
                f'message to client at {connection.remote_address}',
            )
            return False
        except websockets.exceptions.ConnectionClosed:
            logger.warning(
                'Connection closed while attempting to send message to '
                f'client at {connection.remote_address}',
            )
            return False
        except OSError as e:
            logger.warning(
                f'Failed to send message to client at '
                f'{connection.remote_address}: {e}',
            )
            return False
        else:
            return True

    async def broadcast_except_sender(
        self,
        sender: Connection,
        payload: str | bytes,
    ) -> BroadcastResult:
        """Send a payload to every connection except the sender.

        The payload is sent verbatim. A failed send to one recipient does
        not affect delivery to the others and is not raised.

        Args:
            sender: Connection the payload was received on.
            payload: Message to forward.

        Returns:
            Counts of successful and failed sends.
        """
        async with self._lock:
            recipients = [c for c in self._connections if c is not sender]
            results = await asyncio.gather(
                *(self._send(c, payload) for c in recipients),
            )

        delivered = sum(results)
        result = BroadcastResult(
            delivered=delivered,
            failed=len(results) - delivered,
        )
        if result.failed > 0:
            logger.warning(
                f'Forwarded message from {sender.remote_address} to '
                f'{result.delivered} of {len(recipients)} clients '
                f'({result.failed} failed)',
            )
        else:
            logger.debug(
                f'Forwarded message from {sender.remote_address} to '
                f'{result.delivered} clients',
            )
        return result
