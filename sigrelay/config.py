"""Relay server configuration file parsing."""
from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import Field

from sigrelay.classifier import MAX_MESSAGE_BYTES
from sigrelay.utils.config import dumps
from sigrelay.utils.config import load_file
from sigrelay.utils.config import write_file

DEFAULT_PORT = 8080


class RelayLoggingConfig(BaseModel):
    """Relay logging configuration.

    Attributes:
        log_dir: Optional logging directory. Logs are written to stdout and,
            if set, to a weekly rotated `server.log` in this directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        current_client_interval: Optional seconds between logging the
            number of currently connected clients.
        current_client_limit: Max threshold for enumerating the addresses
            of connected clients. If `None`, only the count is logged.
    """

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_client_interval: int | None = 60
    current_client_limit: int | None = 32


class RelayServingConfig(BaseModel):
    """Relay serving configuration.

    Attributes:
        host: Network interface the server binds to. `None` binds to all
            interfaces.
        port: Network port the server binds to.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        max_message_bytes: Largest message in bytes that will be relayed.
            Larger messages are dropped.
        max_frame_bytes: Largest websocket frame accepted before the
            connection is closed with code 1009. The server raises this to
            just above `max_message_bytes` if it is lower so oversized
            messages are dropped rather than closing the connection.
        send_timeout: Seconds to wait on a send to a single client.
        max_connections: Optional cap on the number of open connections.
            Connections over the cap are closed with code 1013.
        logging: Logging configuration.
    """

    host: str | None = None
    port: int = DEFAULT_PORT
    certfile: str | None = None
    keyfile: str | None = None
    max_message_bytes: int = Field(default=MAX_MESSAGE_BYTES, gt=0)
    max_frame_bytes: int = Field(default=2**20, gt=0)
    send_timeout: float | None = 5.0
    max_connections: int | None = Field(default=None, gt=0)
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)

    @property
    def address(self) -> str:
        """Websocket address clients connect to."""
        scheme = 'ws' if self.certfile is None else 'wss'
        host = 'localhost' if self.host is None else self.host
        return f'{scheme}://{host}:{self.port}'

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="relay.toml"
            host = "0.0.0.0"
            port = 8080
            max_message_bytes = 65536
            send_timeout = 5.0

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            websockets_level = "WARNING"
            current_client_interval = 60
            current_client_limit = 32
            ```

            ```python
            from sigrelay.config import RelayServingConfig

            config = RelayServingConfig.from_toml('relay.toml')
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        return load_file(cls, filepath)

    def to_toml(self) -> str:
        """Serialize the configuration to a TOML string."""
        return dumps(self)

    def write_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the configuration to a TOML file readable by `from_toml()`."""
        write_file(self, filepath)
