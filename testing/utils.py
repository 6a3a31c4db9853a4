"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket
from typing import Callable


def open_port(host: str = 'localhost') -> int:
    """Return a port on the host that is currently free."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


async def wait_until(
    condition: Callable[[], bool],
    timeout: float = 2.0,
    interval: float = 0.01,
) -> None:
    """Poll a condition until it is true.

    Raises:
        TimeoutError: If the condition is not true within the timeout.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise TimeoutError('Condition not met within the timeout.')
        await asyncio.sleep(interval)
