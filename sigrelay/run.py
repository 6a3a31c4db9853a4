"""CLI and serving functions for running a relay server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
from websockets.asyncio.server import serve as websockets_serve

from sigrelay.config import RelayServingConfig
from sigrelay.exceptions import RelayBindError
from sigrelay.server import RelayServer
from sigrelay.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: %(message)s'
)
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def periodic_client_logger(
    server: RelayServer,
    interval: float = 60,
    limit: float | None = 32,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs currently connected clients.

    Args:
        server: Relay server instance to log connected clients of.
        interval: Seconds between logging connected clients.
        limit: Only log the client addresses if the number of clients is
            less than this number.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            connections = await server.registry.connections()
            message = f'Connected clients: {len(connections)}'
            if limit is not None and 0 < len(connections) < limit:
                addresses = sorted(
                    str(connection.remote_address)
                    for connection in connections
                )
                message = '\n'.join([message, *addresses])
            logger.log(level, message)

    return spawn_guarded_background_task(
        _log,
        name='relay-server-client-logger',
    )


async def serve(config: RelayServingConfig) -> None:
    """Run the relay server.

    Initializes a [`RelayServer`][sigrelay.server.RelayServer] and starts
    a websocket server listening for new connections and incoming messages.
    The server runs until SIGINT or SIGTERM is received, after which all
    open connections are closed and the listening socket is released.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`RelayServingConfig.logging`][sigrelay.config.RelayServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.

    Raises:
        RelayBindError: If the server cannot bind to the configured host
            and port.
    """
    server = RelayServer(
        config.max_message_bytes,
        send_timeout=config.send_timeout,
        max_connections=config.max_connections,
    )

    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Relay serving configuration:\n{config_repr}')

    try:
        websocket_server = await websockets_serve(
            server.handler,
            config.host,
            config.port,
            # Oversized messages must reach the relay policy to be dropped
            # instead of closing the connection.
            max_size=max(
                config.max_frame_bytes,
                config.max_message_bytes + 1,
            ),
            ssl=ssl_context,
        )
    except OSError as e:
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)
        raise RelayBindError(
            f'Failed to bind relay server to {config.address}: {e}',
        ) from e

    client_logger_task: asyncio.Task[None] | None = None
    if config.logging.current_client_interval is not None:
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        client_logger_task = periodic_client_logger(
            server,
            config.logging.current_client_interval,
            config.logging.current_client_limit,
            level=level,
        )

    logger.info(f'Signaling server listening on {config.address}')
    logger.info('Use ctrl-C to stop')
    try:
        await stop
    finally:
        websocket_server.close()
        await websocket_server.wait_closed()

        if client_logger_task is not None:
            client_logger_task.cancel()
            try:
                await client_logger_task
            except asyncio.CancelledError:
                pass

        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Relay server shutdown')


def configure_logging(config: RelayServingConfig) -> None:
    """Configure the root and websockets loggers for serving."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'server.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        level=config.logging.default_level,
        handlers=handlers,
        force=True,
    )

    logging.getLogger('websockets').setLevel(config.logging.websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    default=False,
    help='Log at DEBUG level (overrides --log-level).',
)
@click.option(
    '--dump-config',
    metavar='FILE',
    type=click.Path(dir_okay=False, allow_dash=True),
    help='Write the resolved configuration to FILE (- for stdout) and exit.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    log_dir: str | None,
    log_level: str | None,
    verbose: bool,
    dump_config: str | None,
) -> None:
    """Run a signaling relay server instance.

    Peers connect to the relay server to exchange WebRTC session
    descriptions and ICE candidates. If no configuration file is provided,
    a default configuration will be created from
    [`RelayServingConfig()`][sigrelay.config.RelayServingConfig].
    The remaining CLI options will override the options provided in the
    configuration object.

    Use `--dump-config` to write the resolved configuration, including
    all defaults, as a starting point for a configuration file.
    """
    config = (
        RelayServingConfig()
        if config_path is None
        else RelayServingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level.upper())
    if verbose:
        config.logging.default_level = logging.DEBUG

    if dump_config == '-':
        click.echo(config.to_toml(), nl=False)
        return
    elif dump_config is not None:
        config.write_toml(dump_config)
        return

    configure_logging(config)

    try:
        asyncio.run(serve(config))
    except RelayBindError as e:
        logger.critical(str(e))
        sys.exit(1)
