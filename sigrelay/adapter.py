"""Translate signaling primitives between the flat and nested encodings.

The adapter is pure: decoding produces a
[`SignalingPrimitive`][sigrelay.messages.SignalingPrimitive] and encoding
produces a JSON string, with no other side effects. Any message that can be
decoded can be re-encoded in either encoding.

Example:
    ```python
    from sigrelay.adapter import translate
    from sigrelay.messages import WireEncoding

    message = '{"type": "answer", "sdp": "v=0..."}'
    nested = translate(message, WireEncoding.nested)
    assert nested == '{"type": "Answer", "data": {"sdp": "v=0..."}}'
    assert translate(nested, WireEncoding.flat) == message
    ```
"""
from __future__ import annotations

import json
from typing import Any

from sigrelay.classifier import classify
from sigrelay.exceptions import SchemaError
from sigrelay.messages import Answer
from sigrelay.messages import FLAT_CANDIDATE_FIELDS
from sigrelay.messages import IceCandidate
from sigrelay.messages import NESTED_CANDIDATE_FIELDS
from sigrelay.messages import Offer
from sigrelay.messages import SignalingPrimitive
from sigrelay.messages import WireEncoding


def _get_str(data: dict[str, Any], *keys: str) -> str:
    # Returns the value of the first present key in keys
    for key in keys:
        if key in data:
            value = data[key]
            if not isinstance(value, str):
                raise SchemaError(
                    f'Field {key} must be a string, got '
                    f'{type(value).__name__}.',
                )
            return value
    raise SchemaError(f'Message is missing required field {keys[0]}.')


def _get_index(data: dict[str, Any], *keys: str) -> int:
    for key in keys:
        if key in data:
            value = data[key]
            # bool is a subclass of int but true/false is not an index
            if isinstance(value, bool) or not isinstance(value, int):
                raise SchemaError(
                    f'Field {key} must be an integer, got '
                    f'{type(value).__name__}.',
                )
            if value < 0:
                raise SchemaError(
                    f'Field {key} must be non-negative, got {value}.',
                )
            return value
    raise SchemaError(f'Message is missing required field {keys[0]}.')


def _from_fields(
    kind: type[SignalingPrimitive],
    fields: dict[str, Any],
) -> SignalingPrimitive:
    if kind is Offer:
        return Offer(sdp=_get_str(fields, 'sdp'))
    elif kind is Answer:
        return Answer(sdp=_get_str(fields, 'sdp'))
    elif kind is IceCandidate:
        candidate, sdp_mid, sdp_mline_index = zip(
            FLAT_CANDIDATE_FIELDS,
            NESTED_CANDIDATE_FIELDS,
        )
        return IceCandidate(
            candidate=_get_str(fields, *candidate),
            sdp_mid=_get_str(fields, *sdp_mid),
            sdp_mline_index=_get_index(fields, *sdp_mline_index),
        )
    else:
        raise AssertionError('Unreachable.')


def from_dict(data: Any) -> SignalingPrimitive:
    """Decode a parsed JSON message in either encoding.

    Args:
        data: Parsed JSON value.

    Returns:
        Decoded primitive.

    Raises:
        SchemaError: If the message cannot be classified or is missing a
            required field or has a field of the wrong type.
    """
    kind, encoding = classify(data)

    if encoding is WireEncoding.nested:
        fields = data.get('data')
        if not isinstance(fields, dict):
            raise SchemaError(
                f'Nested {data["type"]} message must contain a data object.',
            )
    else:
        fields = data

    return _from_fields(kind, fields)


def to_dict(
    primitive: SignalingPrimitive,
    encoding: WireEncoding,
) -> dict[str, Any]:
    """Encode a primitive as a JSON compatible dictionary.

    Args:
        primitive: Primitive to encode.
        encoding: Target encoding.

    Returns:
        Dictionary in the target encoding.
    """
    if isinstance(primitive, (Offer, Answer)):
        tag = type(primitive).__name__
        if encoding is WireEncoding.flat:
            return {'type': tag.lower(), 'sdp': primitive.sdp}
        return {'type': tag, 'data': {'sdp': primitive.sdp}}
    elif isinstance(primitive, IceCandidate):
        values = (
            primitive.candidate,
            primitive.sdp_mid,
            primitive.sdp_mline_index,
        )
        if encoding is WireEncoding.flat:
            return dict(zip(FLAT_CANDIDATE_FIELDS, values))
        return {
            'type': 'IceCandidate',
            'data': dict(zip(NESTED_CANDIDATE_FIELDS, values)),
        }
    else:
        raise AssertionError(
            f'Unknown signaling primitive {type(primitive).__name__}.',
        )


def decode(message: str | bytes) -> SignalingPrimitive:
    """Decode a JSON message in either encoding.

    Args:
        message: JSON string or UTF-8 encoded bytes.

    Returns:
        Decoded primitive.

    Raises:
        SchemaError: If the message is not valid JSON or cannot be decoded
            into a primitive.
    """
    # JSONDecodeError and UnicodeDecodeError are ValueErrors. Deeply nested
    # arrays or objects exhaust the recursion limit of the parser.
    try:
        data = json.loads(message)
    except (ValueError, RecursionError) as e:
        raise SchemaError(f'Failed to load message as JSON: {e}') from e
    return from_dict(data)


def encode(primitive: SignalingPrimitive, encoding: WireEncoding) -> str:
    """Encode a primitive as a JSON string in the given encoding."""
    return json.dumps(to_dict(primitive, encoding))


def translate(message: str | bytes, encoding: WireEncoding) -> str:
    """Re-encode a JSON message in the given encoding.

    Raises:
        SchemaError: If the message cannot be decoded.
    """
    return encode(decode(message), encoding)
