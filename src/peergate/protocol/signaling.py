"""Signaling message definitions.

Control messages are small JSON objects exchanged over the rendezvous
WebSocket, discriminated by their ``type`` field.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter


class Register(BaseModel):
    """Announce this peer's identity to the rendezvous server."""

    type: Literal["register"] = "register"
    id: str


class Offer(BaseModel):
    """Session description offer routed to ``target``."""

    type: Literal["offer"] = "offer"
    target: str
    sender: str
    sdp: str


class Answer(BaseModel):
    """Session description answer.

    ``target`` and ``sender`` are only needed for routing through the
    rendezvous server; the offering side ignores them.
    """

    type: Literal["answer"] = "answer"
    sdp: str
    target: str | None = None
    sender: str | None = None


class Candidate(BaseModel):
    """One remote ICE candidate, in browser ``RTCIceCandidateInit`` shape."""

    type: Literal["candidate"] = "candidate"
    candidate: dict[str, Any] | None = None
    target: str | None = None
    sender: str | None = None


SignalingMessage = Annotated[
    Register | Offer | Answer | Candidate,
    Field(discriminator="type"),
]

_adapter: TypeAdapter[Register | Offer | Answer | Candidate] = TypeAdapter(SignalingMessage)


def decode_signaling(data: str | bytes) -> Register | Offer | Answer | Candidate:
    """Parse one control frame.

    Raises:
        ValueError: If the frame is not JSON or not a known message type.
    """
    return _adapter.validate_json(data)


def encode_signaling(message: Register | Offer | Answer | Candidate) -> str:
    """Serialize a control message, omitting unset routing fields."""
    return message.model_dump_json(exclude_none=True)
