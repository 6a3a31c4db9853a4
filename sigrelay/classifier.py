"""Relay forwarding policy and signaling message classification."""
from __future__ import annotations

from typing import Any

from sigrelay.exceptions import EmptyPayloadError
from sigrelay.exceptions import OversizedPayloadError
from sigrelay.exceptions import SchemaError
from sigrelay.messages import FLAT_CANDIDATE_FIELDS
from sigrelay.messages import FLAT_TYPE_TAGS
from sigrelay.messages import IceCandidate
from sigrelay.messages import NESTED_CANDIDATE_FIELDS
from sigrelay.messages import NESTED_TYPE_TAGS
from sigrelay.messages import SignalingPrimitive
from sigrelay.messages import WireEncoding

MAX_MESSAGE_BYTES = 65536
"""Largest payload in bytes the relay will forward."""


def payload_size(payload: str | bytes) -> int:
    """Size of a payload in bytes.

    Text payloads are measured by their UTF-8 encoding, which is what
    travels over the websocket.
    """
    if isinstance(payload, str):
        return len(payload.encode('utf-8'))
    return len(payload)


def check_relay_payload(
    payload: str | bytes,
    max_bytes: int = MAX_MESSAGE_BYTES,
) -> None:
    """Check that a payload may be forwarded by the relay.

    The relay is payload-agnostic so this only checks the size. The
    payload is never parsed.

    Args:
        payload: Raw message received from a peer.
        max_bytes: Maximum size in bytes (inclusive).

    Raises:
        EmptyPayloadError: If the payload is empty.
        OversizedPayloadError: If the payload exceeds `max_bytes`.
    """
    size = payload_size(payload)
    if size == 0:
        raise EmptyPayloadError('Payload is empty.')
    if size > max_bytes:
        raise OversizedPayloadError(
            f'Payload of {size} bytes exceeds the limit of {max_bytes} bytes.',
        )


def _has_any(data: dict[str, Any], *keys: str) -> bool:
    return any(key in data for key in keys)


def classify(data: Any) -> tuple[type[SignalingPrimitive], WireEncoding]:
    """Classify a parsed JSON message as a signaling primitive.

    A message with a `type` field is classified by its value: `offer` and
    `answer` are flat session descriptions while `Offer`, `Answer`, and
    `IceCandidate` are nested. A message without a `type` field is a flat
    ICE candidate if it has a `candidate` field, one of `sdpMid` or
    `sdp_mid`, and one of `sdpMLineIndex` or `sdp_mline_index`.

    Note:
        Classification only inspects the discriminating keys. Field values
        are validated when decoded by
        [`from_dict()`][sigrelay.adapter.from_dict].

    Args:
        data: Parsed JSON value.

    Returns:
        Tuple of the primitive type and the encoding of the message.

    Raises:
        SchemaError: If the message cannot be classified.
    """
    if not isinstance(data, dict):
        raise SchemaError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    if 'type' in data:
        tag = data['type']
        if not isinstance(tag, str):
            raise SchemaError(
                f'Message type must be a string, got {type(tag).__name__}.',
            )
        if tag in FLAT_TYPE_TAGS:
            return FLAT_TYPE_TAGS[tag], WireEncoding.flat
        if tag in NESTED_TYPE_TAGS:
            return NESTED_TYPE_TAGS[tag], WireEncoding.nested
        raise SchemaError(f'Message is of an unknown type: {tag!r}.')

    # Flat candidates may use either spelling of each field
    if all(
        _has_any(data, flat, nested)
        for flat, nested in zip(FLAT_CANDIDATE_FIELDS, NESTED_CANDIDATE_FIELDS)
    ):
        return IceCandidate, WireEncoding.flat

    raise SchemaError(
        'Message has no type field and is missing the fields of an ICE '
        f'candidate. Got keys: {sorted(data)}.',
    )
