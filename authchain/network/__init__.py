"""
Synchronization protocol and transports.

This package provides:
- Wire messages: tip queries, block ranges, block and record announcements
- ChainSynchronizer: per-peer sync sessions over any transport
- LocalTransport: in-process message hub
- P2PNode: WebSocket transport with framed messages and handshake
"""

from .message import (
    BlockAnnounce,
    BlockRequest,
    BlockResponse,
    MessageType,
    RecordAnnounce,
    StagedRecordsQuery,
    StagedRecordsResponse,
    SyncMessage,
    TipQuery,
    TipResponse,
    decode_message,
    encode_message,
)

from .sync import (
    ChainSynchronizer,
    MessageSender,
    RecordSink,
    SessionState,
    SyncSession,
)

from .transport import LocalTransport

from .protocol import (
    FrameType,
    HandshakeAck,
    HandshakeMessage,
    ProtocolFrame,
    PROTOCOL_VERSION,
)

from .p2p import P2PConfig, P2PNode, Peer

__all__ = [
    # Messages
    "BlockAnnounce",
    "BlockRequest",
    "BlockResponse",
    "MessageType",
    "RecordAnnounce",
    "StagedRecordsQuery",
    "StagedRecordsResponse",
    "SyncMessage",
    "TipQuery",
    "TipResponse",
    "decode_message",
    "encode_message",
    # Sync
    "ChainSynchronizer",
    "MessageSender",
    "RecordSink",
    "SessionState",
    "SyncSession",
    # Transports
    "LocalTransport",
    "FrameType",
    "HandshakeAck",
    "HandshakeMessage",
    "ProtocolFrame",
    "PROTOCOL_VERSION",
    "P2PConfig",
    "P2PNode",
    "Peer",
]
