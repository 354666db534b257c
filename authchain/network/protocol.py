"""
Wire framing for the WebSocket transport.

This module defines:
- ProtocolFrame: magic + type + length framing around every payload
- HandshakeMessage / HandshakeAck: connection setup, exchanging node ids
  and the authority public key each side follows
"""

import struct
from enum import IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_serializer, field_validator

from ..core.serialization import b64decode, b64encode, canonical_json, json_loads

# Protocol constants
PROTOCOL_VERSION = 1
PROTOCOL_MAGIC = b"ACH\x01"  # Authority chain protocol v1
HEADER_SIZE = 9
MAX_FRAME_SIZE = 16 * 1024 * 1024  # 16MB max frame


class FrameType(IntEnum):
    """Types of protocol frames."""

    DATA = 0x01
    HANDSHAKE = 0x02
    HANDSHAKE_ACK = 0x03
    PING = 0x04
    PONG = 0x05
    CLOSE = 0x07


class ProtocolFrame(BaseModel):
    """
    A frame in the wire protocol.

    Frame structure:
    - 4 bytes: Magic number (ACH\\x01)
    - 1 byte: Frame type
    - 4 bytes: Payload length (big-endian)
    - N bytes: Payload (JSON for handshakes, MessagePack for data)
    """

    frame_type: FrameType
    payload: bytes = b""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def to_bytes(self) -> bytes:
        """Serialize frame to bytes."""
        return (
            PROTOCOL_MAGIC
            + struct.pack("!B", self.frame_type)
            + struct.pack("!I", len(self.payload))
            + self.payload
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> tuple["ProtocolFrame", int]:
        """
        Deserialize frame from bytes.

        Returns:
            Tuple of (frame, bytes_consumed)

        Raises:
            ValueError: On bad magic, unknown type or truncated input
        """
        if len(data) < HEADER_SIZE:
            raise ValueError("Incomplete frame header")

        if data[:4] != PROTOCOL_MAGIC:
            raise ValueError("Invalid protocol magic")

        frame_type = FrameType(data[4])
        payload_len = struct.unpack("!I", data[5:9])[0]

        if payload_len > MAX_FRAME_SIZE:
            raise ValueError(f"Frame too large: {payload_len} bytes")

        total_len = HEADER_SIZE + payload_len
        if len(data) < total_len:
            raise ValueError("Incomplete frame payload")

        return cls(frame_type=frame_type, payload=data[HEADER_SIZE:total_len]), total_len

    @classmethod
    def data(cls, payload: bytes) -> "ProtocolFrame":
        """Create a data frame."""
        return cls(frame_type=FrameType.DATA, payload=payload)

    @classmethod
    def ping(cls) -> "ProtocolFrame":
        return cls(frame_type=FrameType.PING)

    @classmethod
    def pong(cls) -> "ProtocolFrame":
        return cls(frame_type=FrameType.PONG)

    @classmethod
    def close(cls, reason: str = "") -> "ProtocolFrame":
        """Create a close frame."""
        return cls(frame_type=FrameType.CLOSE, payload=reason.encode())


class HandshakeMessage(BaseModel):
    """
    First frame on every connection.

    Both sides must follow the same authority; the key is compared before
    any sync message is exchanged.
    """

    version: int = PROTOCOL_VERSION
    node_id: str
    authority_key: bytes
    tip_height: int = -1

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_serializer('authority_key')
    def serialize_key(self, v: bytes, _info):
        return b64encode(v)

    @field_validator('authority_key', mode='before')
    @classmethod
    def validate_key(cls, v: Any) -> Any:
        if isinstance(v, str):
            return b64decode(v)
        return v

    def to_frame(self) -> ProtocolFrame:
        """Create handshake protocol frame."""
        return ProtocolFrame(frame_type=FrameType.HANDSHAKE, payload=canonical_json(self.model_dump()))

    @classmethod
    def from_frame(cls, frame: ProtocolFrame) -> "HandshakeMessage":
        """Parse from protocol frame."""
        if frame.frame_type != FrameType.HANDSHAKE:
            raise ValueError("Not a handshake frame")
        try:
            return cls.model_validate(json_loads(frame.payload))
        except ValidationError as e:
            raise ValueError(f"Malformed handshake: {e}") from e


class HandshakeAck(BaseModel):
    """Acknowledgment (or refusal) of a handshake."""

    accepted: bool
    node_id: str
    reason: Optional[str] = None  # Rejection reason if not accepted

    def to_frame(self) -> ProtocolFrame:
        """Create handshake ack protocol frame."""
        return ProtocolFrame(frame_type=FrameType.HANDSHAKE_ACK, payload=canonical_json(self.model_dump()))

    @classmethod
    def from_frame(cls, frame: ProtocolFrame) -> "HandshakeAck":
        """Parse from protocol frame."""
        if frame.frame_type != FrameType.HANDSHAKE_ACK:
            raise ValueError("Not a handshake ack frame")
        try:
            return cls.model_validate(json_loads(frame.payload))
        except ValidationError as e:
            raise ValueError(f"Malformed handshake ack: {e}") from e
