"""Signaling primitives exchanged between peers during WebRTC negotiation.

Two peers exchange the same three primitives (an offer, an answer, and
ICE candidates) but serialize them differently:

* The **flat** encoding used by the negotiation engine places every field
  directly on the message.
  ```json
  {"type": "offer", "sdp": "v=0..."}
  {"candidate": "candidate:1 1 UDP ...", "sdpMid": "0", "sdpMLineIndex": 0}
  ```
* The **nested** encoding used by the remote peer carries a `type`
  discriminator and a `data` object holding snake case fields.
  ```json
  {"type": "Offer", "data": {"sdp": "v=0..."}}
  {"type": "IceCandidate", "data": {"candidate": "...", "sdp_mid": "0", "sdp_mline_index": 0}}
  ```

Fields outside of the primitives below (e.g., `usernameFragment`) are not
carried across a translation.
"""  # noqa: E501
from __future__ import annotations

import dataclasses
import enum


class WireEncoding(enum.Enum):
    """Serializations of a signaling primitive."""

    flat = 'flat'
    """Engine encoding with fields on the top-level object."""
    nested = 'nested'
    """Peer encoding with a `type` tag and nested `data` object."""


@dataclasses.dataclass(frozen=True)
class SignalingPrimitive:
    """Base signaling primitive."""

    pass


@dataclasses.dataclass(frozen=True)
class Offer(SignalingPrimitive):
    """Session description offer.

    Attributes:
        sdp: Session description protocol body. An empty body is tolerated
            and treated as a no-op by the engine.
    """

    sdp: str


@dataclasses.dataclass(frozen=True)
class Answer(SignalingPrimitive):
    """Session description answer.

    Attributes:
        sdp: Session description protocol body.
    """

    sdp: str


@dataclasses.dataclass(frozen=True)
class IceCandidate(SignalingPrimitive):
    """ICE connectivity candidate.

    Attributes:
        candidate: Candidate attribute line (e.g., `candidate:1 1 UDP ...`).
        sdp_mid: Media stream identification tag the candidate belongs to.
        sdp_mline_index: Index of the media description the candidate
            belongs to. Always non-negative.
    """

    candidate: str
    sdp_mid: str
    sdp_mline_index: int


SESSION_DESCRIPTIONS: tuple[type[Offer | Answer], ...] = (Offer, Answer)
"""Primitive types carrying a session description."""

FLAT_TYPE_TAGS: dict[str, type[SignalingPrimitive]] = {
    'offer': Offer,
    'answer': Answer,
}
"""Values of the flat `type` field. Flat candidates carry no `type`."""

NESTED_TYPE_TAGS: dict[str, type[SignalingPrimitive]] = {
    'Offer': Offer,
    'Answer': Answer,
    'IceCandidate': IceCandidate,
}
"""Values of the nested `type` field."""

FLAT_CANDIDATE_FIELDS = ('candidate', 'sdpMid', 'sdpMLineIndex')
"""Fields of a flat ICE candidate in `IceCandidate` attribute order."""
NESTED_CANDIDATE_FIELDS = ('candidate', 'sdp_mid', 'sdp_mline_index')
"""Fields of a nested ICE candidate `data` object in attribute order."""
