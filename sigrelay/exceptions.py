"""Exception types raised by the relay, adapter, and signaling client."""
from __future__ import annotations


class SignalingError(Exception):
    """Base exception type for signaling message errors."""

    pass


class SchemaError(SignalingError):
    """Payload cannot be parsed or classified as a signaling primitive."""

    pass


class PayloadPolicyError(SignalingError):
    """Payload violates the relay forwarding policy."""

    pass


class EmptyPayloadError(PayloadPolicyError):
    """Payload contains zero bytes."""

    pass


class OversizedPayloadError(PayloadPolicyError):
    """Payload is larger than the maximum relayed message size."""

    pass


class SignalingClientError(Exception):
    """Base exception type for exceptions raised by signaling clients."""

    pass


class RelayNotConnectedError(SignalingClientError):
    """Exception raised if a client is not connected to a relay server."""

    pass


class RelayServerError(Exception):
    """Base exception type for exceptions raised by the relay server."""

    pass


class RelayBindError(RelayServerError):
    """Relay server cannot bind to the listening address."""

    pass
