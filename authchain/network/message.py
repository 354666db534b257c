"""
Wire messages of the synchronization protocol.

Every message is a MessagePack map tagged with its type name:
- TipQuery: ask a peer for its tip
- TipResponse{height, hash}: a peer's tip (height -1 for an empty chain)
- BlockRequest{from_height, to_height}: inclusive range request
- BlockResponse{blocks}: blocks in ascending height order
- BlockAnnounce{block}: a newly appended block
- RecordAnnounce{record}: a record on its way to the authority
- StagedRecordsQuery: ask a peer for the records it holds for the authority
- StagedRecordsResponse{records}: a peer's staged records
"""

from enum import Enum, auto
from typing import Any, ClassVar, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.block import Block, Record
from ..core.serialization import pack, unpack
from ..exceptions import PeerProtocolError


class MessageType(Enum):
    """Types of sync protocol messages."""

    TIP_QUERY = auto()
    TIP_RESPONSE = auto()
    BLOCK_REQUEST = auto()
    BLOCK_RESPONSE = auto()
    BLOCK_ANNOUNCE = auto()
    RECORD_ANNOUNCE = auto()
    STAGED_RECORDS_QUERY = auto()
    STAGED_RECORDS_RESPONSE = auto()


class SyncMessage(BaseModel):
    """Base of all sync protocol messages."""

    message_type: ClassVar[MessageType]

    model_config = ConfigDict(frozen=True, extra="forbid")

    def to_bytes(self) -> bytes:
        return encode_message(self)


class TipQuery(SyncMessage):
    message_type: ClassVar[MessageType] = MessageType.TIP_QUERY


class TipResponse(SyncMessage):
    message_type: ClassVar[MessageType] = MessageType.TIP_RESPONSE

    height: int = Field(ge=-1)
    hash: str


class BlockRequest(SyncMessage):
    message_type: ClassVar[MessageType] = MessageType.BLOCK_REQUEST

    from_height: int = Field(ge=0)
    to_height: int = Field(ge=0)

    @model_validator(mode="after")
    def check_range(self) -> "BlockRequest":
        if self.to_height < self.from_height:
            raise ValueError(f"Empty range {self.from_height}..{self.to_height}")
        return self

    @property
    def count(self) -> int:
        return self.to_height - self.from_height + 1


class BlockResponse(SyncMessage):
    message_type: ClassVar[MessageType] = MessageType.BLOCK_RESPONSE

    blocks: list[Block] = Field(default_factory=list)


class BlockAnnounce(SyncMessage):
    message_type: ClassVar[MessageType] = MessageType.BLOCK_ANNOUNCE

    block: Block


class RecordAnnounce(SyncMessage):
    message_type: ClassVar[MessageType] = MessageType.RECORD_ANNOUNCE

    record: Record


class StagedRecordsQuery(SyncMessage):
    message_type: ClassVar[MessageType] = MessageType.STAGED_RECORDS_QUERY


class StagedRecordsResponse(SyncMessage):
    message_type: ClassVar[MessageType] = MessageType.STAGED_RECORDS_RESPONSE

    records: list[Record] = Field(default_factory=list)


Message = Union[
    TipQuery,
    TipResponse,
    BlockRequest,
    BlockResponse,
    BlockAnnounce,
    RecordAnnounce,
    StagedRecordsQuery,
    StagedRecordsResponse,
]

MESSAGE_CLASSES: dict[str, type[SyncMessage]] = {
    cls.message_type.name: cls
    for cls in (
        TipQuery,
        TipResponse,
        BlockRequest,
        BlockResponse,
        BlockAnnounce,
        RecordAnnounce,
        StagedRecordsQuery,
        StagedRecordsResponse,
    )
}


def encode_message(message: SyncMessage) -> bytes:
    """Serialize a message to tagged MessagePack bytes."""
    body: dict[str, Any] = message.model_dump(mode="json")
    body["type"] = message.message_type.name
    return pack(body)


def decode_message(data: bytes, peer_id: Optional[str] = None) -> SyncMessage:
    """
    Deserialize tagged MessagePack bytes.

    Args:
        data: Encoded message
        peer_id: Sender, attached to any error raised

    Raises:
        PeerProtocolError: If the bytes are not a well-formed message
    """
    try:
        body = unpack(data)
    except (ValueError, TypeError) as e:
        raise PeerProtocolError(f"Undecodable message: {e}", peer_id=peer_id) from e

    if not isinstance(body, dict):
        raise PeerProtocolError("Message is not a map", peer_id=peer_id)

    type_name = body.pop("type", None)
    cls = MESSAGE_CLASSES.get(type_name) if isinstance(type_name, str) else None
    if cls is None:
        raise PeerProtocolError(f"Unknown message type: {type_name!r}", peer_id=peer_id)

    try:
        return cls.model_validate(body)
    except (ValueError, TypeError) as e:
        raise PeerProtocolError(f"Malformed {type_name}: {e}", peer_id=peer_id) from e
