"""CLI for viewing a video stream published through a relay server.

The viewer is the offering peer. It asks for a single video stream,
opens the `input` data channel, and logs the frames it receives.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Callable

import av
import click
from aiortc import MediaStreamTrack
from aiortc import RTCConfiguration
from aiortc import RTCSessionDescription
from aiortc.mediastreams import MediaStreamError

from sigrelay.client import SignalingClient
from sigrelay.engine import INPUT_CHANNEL_LABEL
from sigrelay.engine import PeerConnectionEngine
from sigrelay.messages import WireEncoding
from sigrelay.run import LOG_DATEFMT
from sigrelay.run import LOG_FORMAT
from sigrelay.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

FrameCallback = Callable[[av.VideoFrame], None]
"""Callback invoked with each video frame received from the peer."""


class ViewerEngine(PeerConnectionEngine):
    """Negotiation engine which offers to receive a video track.

    Call [`offer()`][sigrelay.view.ViewerEngine.offer] to start
    negotiation. Remote answers are applied and remote offers are ignored.

    Args:
        frame_callback: Optional callback invoked with each received frame.
        configuration: Optional aiortc peer connection configuration
            (e.g., ICE servers).
    """

    def __init__(
        self,
        *,
        frame_callback: FrameCallback | None = None,
        configuration: RTCConfiguration | None = None,
    ) -> None:
        super().__init__(configuration=configuration)
        self._frame_callback = frame_callback
        self._frames_received = 0

        self._pc.addTransceiver('video', direction='recvonly')
        self._channel = self._pc.createDataChannel(INPUT_CHANNEL_LABEL)
        self._pc.on('track', self._on_track)

    @property
    def frames_received(self) -> int:
        """Number of video frames received from the peer."""
        return self._frames_received

    @property
    def input_ready(self) -> bool:
        """The `input` data channel is open."""
        return self._channel.readyState == 'open'

    def offer(self) -> None:
        """Create an offer and pass it to the signal callback."""
        self._spawn(self._offer())

    async def _offer(self) -> None:
        logger.info('Creating offer')
        try:
            await self._pc.setLocalDescription(await self._pc.createOffer())
        except Exception as e:
            logger.error(
                f'Failed to create offer: {e.__class__.__name__}: {e}',
            )
            return
        self._emit_local_description()

    async def _negotiate(self, description: RTCSessionDescription) -> None:
        if description.type == 'offer':
            logger.warning('Ignoring remote offer because the viewer offers')
            return
        logger.info(f'Setting remote description: {description.type}')
        await self._pc.setRemoteDescription(description)

    def send_frame(self, width: int, height: int, yuv: bytes) -> None:
        """Drop the frame because the viewer only receives video."""
        logger.warning(f'Viewer dropped a {width}x{height} outgoing frame')

    def send_input(self, data: bytes | str) -> None:
        """Send an input event to the peer on the `input` data channel."""
        self._loop.call_soon_threadsafe(self._send_input, data)

    def _send_input(self, data: bytes | str) -> None:
        if not self.input_ready:
            logger.warning(
                'Dropping input event because the input channel is '
                f'{self._channel.readyState}',
            )
            return
        self._channel.send(data)

    def _on_track(self, track: MediaStreamTrack) -> None:
        logger.info(f'Receiving {track.kind} track')
        if track.kind != 'video':
            return
        task = self._loop.create_task(self._consume(track))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _consume(self, track: MediaStreamTrack) -> None:
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.info(
                    f'Video track ended after {self._frames_received} frames',
                )
                return

            self._frames_received += 1
            if self._frames_received == 1:
                logger.info(
                    f'Received first frame ({frame.width}x{frame.height})',
                )
            else:
                logger.debug(f'Received frame {self._frames_received}')
            if self._frame_callback is not None:
                self._frame_callback(frame)


async def view(
    relay: str,
    *,
    frames: int | None = None,
    remote_encoding: WireEncoding = WireEncoding.nested,
    verbose: bool = False,
    configuration: RTCConfiguration | None = None,
    stop: asyncio.Future[None] | None = None,
) -> int:
    """View the video stream published by the peer connected to a relay.

    Sends an offer through the relay once connected and runs until `frames`
    frames are received, `stop` is done or, if no `stop` future is given,
    SIGINT or SIGTERM is received.

    Args:
        relay: Address of the relay server.
        frames: Optional number of frames to receive before stopping.
        remote_encoding: Encoding expected by the remote peer.
        verbose: Log the contents of every signaling message.
        configuration: Optional aiortc peer connection configuration.
        stop: Optional future which ends viewing when done.

    Returns:
        Number of frames received.
    """
    loop = asyncio.get_running_loop()
    handle_signals = stop is None
    if stop is None:
        stop = loop.create_future()
        loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
        loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    def _on_frame(frame: av.VideoFrame) -> None:
        if (
            frames is not None
            and viewer.frames_received >= frames
            and not stop.done()
        ):
            stop.set_result(None)

    viewer = ViewerEngine(frame_callback=_on_frame, configuration=configuration)
    client = SignalingClient(
        relay,
        viewer,
        remote_encoding=remote_encoding,
        verbose=verbose,
    )
    await client.connect()

    run_task = spawn_guarded_background_task(
        client.run,
        name='signaling-client-run',
    )
    viewer.offer()

    logger.info(f'Viewing stream via {relay}')
    logger.info('Use ctrl-C to stop')
    try:
        await stop
    finally:
        await client.close()
        await run_task
        await viewer.close()

        if handle_signals:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)

    logger.info(f'Received {viewer.frames_received} frames')
    return viewer.frames_received


@click.command()
@click.option(
    '--relay',
    default='ws://localhost:8080',
    show_default=True,
    metavar='ADDR',
    help='Relay server address.',
)
@click.option(
    '--frames',
    type=click.IntRange(min=1),
    default=None,
    help='Stop after receiving this many frames.',
)
@click.option(
    '--remote-encoding',
    type=click.Choice([e.value for e in WireEncoding]),
    default=WireEncoding.nested.value,
    show_default=True,
    help='Signaling message encoding used by the remote peer.',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    default=False,
    help='Log every signaling message and received frame.',
)
def cli(
    relay: str,
    frames: int | None,
    remote_encoding: str,
    verbose: bool,
) -> None:
    """View a video stream from a WebRTC peer.

    The viewer offers to receive video from the peer connected to the
    relay server and logs the frames it receives.
    """
    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    asyncio.run(
        view(
            relay,
            frames=frames,
            remote_encoding=WireEncoding(remote_encoding),
            verbose=verbose,
        ),
    )
