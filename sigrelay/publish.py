"""CLI for publishing a test video stream through a relay server."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click
from aiortc import RTCConfiguration

from sigrelay.client import CandidatePolicy
from sigrelay.client import SignalingClient
from sigrelay.engine import AiortcEngine
from sigrelay.engine import Engine
from sigrelay.frames import gradient_frame
from sigrelay.frames import rgb_to_yuv420p
from sigrelay.messages import WireEncoding
from sigrelay.run import LOG_DATEFMT
from sigrelay.run import LOG_FORMAT
from sigrelay.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


async def produce_frames(
    engine: Engine,
    width: int,
    height: int,
    fps: float,
) -> None:
    """Send gradient frames to the engine at a fixed rate until cancelled."""
    interval = 1 / fps
    frame_index = 0
    while True:
        rgb = gradient_frame(width, height, frame_index)
        engine.send_frame(width, height, rgb_to_yuv420p(rgb, width, height))
        frame_index += 1
        await asyncio.sleep(interval)


def _log_input(data: bytes) -> None:
    logger.info(f'Received input event ({len(data)} bytes)')


async def publish(
    relay: str,
    width: int,
    height: int,
    fps: float,
    *,
    remote_encoding: WireEncoding = WireEncoding.nested,
    candidate_policy: CandidatePolicy = CandidatePolicy.forward,
    verbose: bool = False,
    configuration: RTCConfiguration | None = None,
    stop: asyncio.Future[None] | None = None,
) -> None:
    """Publish a test video stream to the peer connected to a relay.

    Runs until `stop` is done or, if no `stop` future is given, until SIGINT
    or SIGTERM is received.

    Args:
        relay: Address of the relay server.
        width: Frame width in pixels.
        height: Frame height in pixels.
        fps: Frames per second.
        remote_encoding: Encoding expected by the remote peer.
        candidate_policy: Handling of early remote ICE candidates.
        verbose: Log the contents of every signaling message.
        configuration: Optional aiortc peer connection configuration.
        stop: Optional future which ends publishing when done.
    """
    loop = asyncio.get_running_loop()
    handle_signals = stop is None
    if stop is None:
        stop = loop.create_future()
        loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
        loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    engine = AiortcEngine(
        input_callback=_log_input,
        configuration=configuration,
    )
    client = SignalingClient(
        relay,
        engine,
        remote_encoding=remote_encoding,
        candidate_policy=candidate_policy,
        verbose=verbose,
    )
    await client.connect()

    run_task = spawn_guarded_background_task(
        client.run,
        name='signaling-client-run',
    )
    frame_task = spawn_guarded_background_task(
        produce_frames,
        engine,
        width,
        height,
        fps,
        name='frame-producer',
    )

    logger.info(f'Publishing {width}x{height} at {fps} fps via {relay}')
    logger.info('Use ctrl-C to stop')
    try:
        await stop
    finally:
        frame_task.cancel()
        try:
            await frame_task
        except asyncio.CancelledError:
            pass
        await client.close()
        await run_task
        await engine.close()

        if handle_signals:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)


@click.command()
@click.option(
    '--relay',
    default='ws://localhost:8080',
    show_default=True,
    metavar='ADDR',
    help='Relay server address.',
)
@click.option(
    '--size',
    nargs=2,
    type=int,
    default=(640, 480),
    show_default=True,
    metavar='WIDTH HEIGHT',
    help='Frame size in pixels.',
)
@click.option(
    '--fps',
    type=click.FloatRange(min=0, min_open=True),
    default=30,
    show_default=True,
    help='Frames per second.',
)
@click.option(
    '--remote-encoding',
    type=click.Choice([e.value for e in WireEncoding]),
    default=WireEncoding.nested.value,
    show_default=True,
    help='Signaling message encoding used by the remote peer.',
)
@click.option(
    '--candidates',
    type=click.Choice([p.value for p in CandidatePolicy]),
    default=CandidatePolicy.forward.value,
    show_default=True,
    help='Handling of ICE candidates received before a description.',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    default=False,
    help='Log every signaling message.',
)
def cli(
    relay: str,
    size: tuple[int, int],
    fps: float,
    remote_encoding: str,
    candidates: str,
    verbose: bool,
) -> None:
    """Publish a test pattern video stream to a WebRTC peer.

    Signaling messages are exchanged with the peer through the relay
    server and translated between the engine and peer encodings.
    """
    width, height = size
    if width <= 0 or height <= 0 or width % 2 or height % 2:
        raise click.BadParameter(
            'width and height must be positive and even',
            param_hint='--size',
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    asyncio.run(
        publish(
            relay,
            width,
            height,
            fps,
            remote_encoding=WireEncoding(remote_encoding),
            candidate_policy=CandidatePolicy(candidates),
            verbose=verbose,
        ),
    )
