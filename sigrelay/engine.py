"""Negotiation engine interface and aiortc implementation.

The [`SignalingClient`][sigrelay.client.SignalingClient] only talks to the
negotiation engine through the narrow
[`Engine`][sigrelay.engine.Engine] protocol. The engine consumes and
produces signaling messages in the flat encoding.
"""
from __future__ import annotations

import asyncio
import json
import logging
import warnings
from typing import Any
from typing import Callable
from typing import Coroutine
from typing import Protocol
from typing import runtime_checkable

import av
import numpy
from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceCandidate
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc import VideoStreamTrack
from aiortc.sdp import candidate_from_sdp
from cryptography.utils import CryptographyDeprecationWarning

warnings.simplefilter('ignore', CryptographyDeprecationWarning)

logger = logging.getLogger(__name__)

SignalCallback = Callable[[str], None]
"""Callback invoked with a flat encoded signaling message."""
InputCallback = Callable[[bytes], None]
"""Callback invoked with raw input event data received from the peer."""

INPUT_CHANNEL_LABEL = 'input'


@runtime_checkable
class Engine(Protocol):
    """Negotiation engine protocol.

    All methods return immediately. Work triggered by a signaling message
    completes in the background and failures are logged rather than raised
    to the caller.
    """

    def set_signal_callback(self, callback: SignalCallback | None) -> None:
        """Set the callback invoked with locally produced signaling messages.

        The callback receives flat encoded answers, offers, and ICE
        candidates and may be invoked from any thread.
        """
        ...

    def set_remote_description(self, payload: str) -> None:
        """Apply a flat encoded remote offer or answer."""
        ...

    def add_ice_candidate(self, payload: str) -> None:
        """Add a flat encoded remote ICE candidate."""
        ...

    def send_frame(self, width: int, height: int, yuv: bytes) -> None:
        """Queue a YUV420p frame on the outgoing video track."""
        ...

    def diagnostics(self) -> dict[str, Any]:
        """Get a JSON compatible snapshot of the connection state."""
        ...

    async def close(self) -> None:
        """Close the peer connection."""
        ...


def yuv420p_size(width: int, height: int) -> int:
    """Size in bytes of a YUV420p frame."""
    return width * height * 3 // 2


def candidate_from_flat(payload: str) -> RTCIceCandidate | None:
    """Parse a flat encoded ICE candidate message.

    Returns:
        The candidate or `None` if the message is an end of candidates
        marker (an empty candidate string).

    Raises:
        ValueError: If the message is not a valid ICE candidate.
    """
    try:
        data = json.loads(payload)
        line = data['candidate']
        if line == '':
            return None
        candidate = candidate_from_sdp(line.split(':', 1)[-1])
        candidate.sdpMid = data['sdpMid']
        candidate.sdpMLineIndex = data['sdpMLineIndex']
    except (
        KeyError,
        TypeError,
        ValueError,
        IndexError,
        # candidate_from_sdp() asserts on truncated candidate lines
        AssertionError,
    ) as e:
        raise ValueError(f'Invalid ICE candidate {payload!r}: {e!r}') from e
    return candidate


class FrameTrack(VideoStreamTrack):
    """Video track fed with YUV420p frames by the caller.

    Only the most recent frame is kept. If no new frame arrives before the
    next frame is due, the last frame is repeated.
    """

    def __init__(self) -> None:
        super().__init__()
        self._latest: asyncio.Queue[av.VideoFrame] = asyncio.Queue(maxsize=1)
        self._last_frame: av.VideoFrame | None = None

    def push(self, frame: av.VideoFrame) -> None:
        """Replace the pending frame. Must be called on the event loop."""
        if self._latest.full():
            self._latest.get_nowait()
        self._latest.put_nowait(frame)

    async def recv(self) -> av.VideoFrame:
        pts, time_base = await self.next_timestamp()
        if self._last_frame is None:
            frame = await self._latest.get()
        else:
            try:
                frame = self._latest.get_nowait()
            except asyncio.QueueEmpty:
                frame = self._last_frame
        self._last_frame = frame

        frame.pts = pts
        frame.time_base = time_base
        return frame


class PeerConnectionEngine:
    """Base for negotiation engines backed by an aiortc peer connection.

    Signaling messages are applied to the peer connection in background
    tasks on the event loop the engine was created in. Subclasses decide
    how a parsed remote session description is negotiated.

    Warning:
        The engine must be created inside a running event loop. Methods
        other than
        [`close()`][sigrelay.engine.PeerConnectionEngine.close] may be
        called from any thread.

    Args:
        configuration: Optional aiortc peer connection configuration
            (e.g., ICE servers).
    """

    def __init__(
        self,
        *,
        configuration: RTCConfiguration | None = None,
    ) -> None:
        self._loop = asyncio.get_running_loop()
        self._signal_callback: SignalCallback | None = None
        self._tasks: set[asyncio.Task[None]] = set()

        self._pc = RTCPeerConnection(configuration)
        self._pc.on('connectionstatechange', self._on_connection_state_change)

    @property
    def state(self) -> str:
        """Peer connection state (e.g., `'new'` or `'connected'`)."""
        return self._pc.connectionState

    def set_signal_callback(self, callback: SignalCallback | None) -> None:
        """Set the callback invoked with local signaling messages."""
        self._signal_callback = callback

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        def _create() -> None:
            task = self._loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        self._loop.call_soon_threadsafe(_create)

    def _emit(self, payload: dict[str, Any]) -> None:
        if self._signal_callback is None:
            logger.warning(
                'Engine produced a signaling message but no signal callback '
                'is set',
            )
            return
        self._signal_callback(json.dumps(payload))

    def _emit_local_description(self) -> None:
        local = self._pc.localDescription
        self._emit({'type': local.type, 'sdp': local.sdp})

    def set_remote_description(self, payload: str) -> None:
        """Apply a flat encoded remote offer or answer."""
        self._spawn(self._set_remote_description(payload))

    async def _set_remote_description(self, payload: str) -> None:
        try:
            data = json.loads(payload)
            description = RTCSessionDescription(
                sdp=data['sdp'],
                type=data['type'],
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f'Failed to parse session description: {e!r}')
            return

        if description.sdp == '':
            logger.debug(
                f'Ignoring {description.type} with an empty session '
                'description',
            )
            return

        try:
            await self._negotiate(description)
        except Exception as e:
            logger.error(
                f'Failed to negotiate {description.type}: '
                f'{e.__class__.__name__}: {e}',
            )

    async def _negotiate(self, description: RTCSessionDescription) -> None:
        raise NotImplementedError

    def add_ice_candidate(self, payload: str) -> None:
        """Add a flat encoded remote ICE candidate.

        An empty candidate string marks the end of the remote candidates
        and is ignored.
        """
        self._spawn(self._add_ice_candidate(payload))

    async def _add_ice_candidate(self, payload: str) -> None:
        try:
            candidate = candidate_from_flat(payload)
        except ValueError as e:
            logger.error(f'Failed to parse ICE candidate: {e}')
            return
        if candidate is None:
            logger.debug('Ignoring end of candidates marker')
            return

        try:
            await self._pc.addIceCandidate(candidate)
        except Exception as e:
            logger.error(
                f'Failed to add ICE candidate: {e.__class__.__name__}: {e}',
            )

    def diagnostics(self) -> dict[str, Any]:
        """Get a JSON compatible snapshot of the connection state.

        Returns:
            Dictionary with the connection, ICE, and signaling states and,
            once negotiation has started, the local ICE credentials.
        """
        diagnostics: dict[str, Any] = {
            'connection_state': self._pc.connectionState,
            'ice_connection_state': self._pc.iceConnectionState,
            'ice_gathering_state': self._pc.iceGatheringState,
            'signaling_state': self._pc.signalingState,
        }
        for transceiver in self._pc.getTransceivers():
            dtls_transport = transceiver.sender.transport
            if dtls_transport is None:
                continue
            gatherer = dtls_transport.transport.iceGatherer
            parameters = gatherer.getLocalParameters()
            diagnostics['local_ice_ufrag'] = parameters.usernameFragment
            diagnostics['local_ice_pwd'] = parameters.password
            break
        return diagnostics

    async def close(self) -> None:
        """Close the peer connection and cancel pending negotiation."""
        logger.info('Closing peer connection')
        for task in list(self._tasks):
            task.cancel()
        await self._pc.close()

    async def _on_connection_state_change(self) -> None:
        state = self._pc.connectionState
        if state == 'connected':
            logger.info('Peer connection connected')
        elif state == 'failed':
            logger.error('Peer connection failed')
        elif state == 'disconnected':
            logger.warning('Peer connection disconnected')
        elif state == 'closed':
            logger.info('Peer connection closed')


class AiortcEngine(PeerConnectionEngine):
    """Negotiation engine which sends a video track.

    The engine answers any remote offer it receives. The answer is passed
    to the signal callback in the flat encoding. aiortc gathers all local
    candidates before producing the answer so it carries them in its
    session description.

    Warning:
        The engine must be created inside a running event loop. Methods
        other than [`close()`][sigrelay.engine.AiortcEngine.close] may be
        called from any thread.

    Args:
        input_callback: Optional callback invoked with each message
            received on the `input` data channel opened by the peer.
        configuration: Optional aiortc peer connection configuration
            (e.g., ICE servers).
    """

    def __init__(
        self,
        *,
        input_callback: InputCallback | None = None,
        configuration: RTCConfiguration | None = None,
    ) -> None:
        super().__init__(configuration=configuration)
        self._input_callback = input_callback

        self._track = FrameTrack()
        self._pc.addTrack(self._track)
        self._pc.on('datachannel', self._on_datachannel)

    async def _negotiate(self, description: RTCSessionDescription) -> None:
        logger.info(f'Setting remote description: {description.type}')
        await self._pc.setRemoteDescription(description)
        if description.type != 'offer':
            return
        logger.info('Creating answer')
        await self._pc.setLocalDescription(await self._pc.createAnswer())
        self._emit_local_description()

    def send_frame(self, width: int, height: int, yuv: bytes) -> None:
        """Queue a YUV420p frame on the outgoing video track.

        Raises:
            ValueError: If the buffer size does not match the dimensions or
                the dimensions are not even.
        """
        if width <= 0 or height <= 0 or width % 2 or height % 2:
            raise ValueError(
                f'Frame dimensions must be positive and even, got '
                f'{width}x{height}.',
            )
        expected = yuv420p_size(width, height)
        if len(yuv) != expected:
            raise ValueError(
                f'Expected {expected} bytes for a {width}x{height} YUV420p '
                f'frame but got {len(yuv)}.',
            )
        array = numpy.frombuffer(yuv, dtype=numpy.uint8).reshape(
            height * 3 // 2,
            width,
        )
        frame = av.VideoFrame.from_ndarray(array, format='yuv420p')
        self._loop.call_soon_threadsafe(self._track.push, frame)

    async def close(self) -> None:
        """Close the peer connection and stop the outgoing video track."""
        self._track.stop()
        await super().close()

    def _on_datachannel(self, channel: RTCDataChannel) -> None:
        logger.info(f'New data channel: {channel.label}')
        if channel.label != INPUT_CHANNEL_LABEL:
            return

        def _on_message(message: bytes | str) -> None:
            if self._input_callback is None:
                return
            data = (
                message.encode('utf-8')
                if isinstance(message, str)
                else message
            )
            self._input_callback(data)

        channel.on('message', _on_message)
