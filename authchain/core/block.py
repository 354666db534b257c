"""
Block and record model for the authority ledger.

This module provides:
- Record: opaque content plus its SHA-256 content hash
- Block: hash-linked, authority-signed batch of records
- ChainTip: the (height, hash, timestamp) a new block must extend
- Merkle roots and inclusion proofs over a block's records
"""

import hashlib
import time
from typing import Any, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .crypto import AuthorityIdentity, hash_data
from .serialization import b64decode, b64encode, canonical_json

# Previous-hash sentinel carried by every genesis block
GENESIS_PREVIOUS_HASH = "0" * 64

EMPTY_MERKLE_ROOT = hashlib.sha256(b"").hexdigest()


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


class Record(BaseModel):
    """
    An atomic piece of information submitted for inclusion in a block.

    The content is opaque to the ledger; domain rules are applied by an
    externally supplied hook.
    """

    content: bytes
    hash: str

    model_config = ConfigDict(frozen=True)

    @field_serializer('content')
    def serialize_content(self, v: bytes, _info):
        return b64encode(v)

    @field_validator('content', mode='before')
    @classmethod
    def validate_content(cls, v: Any) -> Any:
        if isinstance(v, str):
            return b64decode(v)
        return v

    @classmethod
    def create(cls, content: bytes) -> "Record":
        """Create a record and compute its content hash."""
        return cls(content=content, hash=hash_data(content))

    @classmethod
    def from_data(cls, data: Any) -> "Record":
        """Create a record from a JSON-compatible object."""
        return cls.create(canonical_json(data))

    def verify(self) -> bool:
        """Check the stored hash against the content."""
        return self.hash == hash_data(self.content)

    @property
    def size(self) -> int:
        return len(self.content)


class ChainTip(BaseModel):
    """The block a successor must extend.

    For an empty chain the anchor is height -1 with the genesis sentinel, so
    genesis is validated like any other height.
    """

    height: int
    hash: str
    timestamp: int = 0

    model_config = ConfigDict(frozen=True)

    @classmethod
    def anchor(cls) -> "ChainTip":
        """Tip of an empty chain."""
        return cls(height=-1, hash=GENESIS_PREVIOUS_HASH, timestamp=0)

    @classmethod
    def of(cls, block: Optional["Block"]) -> "ChainTip":
        if block is None:
            return cls.anchor()
        return cls(height=block.height, hash=block.hash, timestamp=block.timestamp)

    @property
    def next_height(self) -> int:
        return self.height + 1


class Block(BaseModel):
    """A single block in the authority's chain."""

    height: int = Field(ge=0)
    previous_hash: str
    timestamp: int = Field(ge=0)
    records: List[Record] = Field(default_factory=list)
    merkle_root: str = EMPTY_MERKLE_ROOT
    signature: bytes = b""
    hash: str = ""

    model_config = ConfigDict(frozen=True)

    @field_serializer('signature')
    def serialize_signature(self, v: bytes, _info):
        return b64encode(v)

    @field_validator('signature', mode='before')
    @classmethod
    def validate_signature(cls, v: Any) -> Any:
        if isinstance(v, str):
            return b64decode(v)
        return v

    @classmethod
    def build(
        cls,
        height: int,
        previous_hash: str,
        timestamp: int,
        records: Iterable[Record] = (),
    ) -> "Block":
        """
        Compose an unsigned block with its merkle root and hash filled in.

        Args:
            height: Position in the chain
            previous_hash: Hash of the predecessor (sentinel for genesis)
            timestamp: Creation time in milliseconds
            records: Ordered records to include

        Returns:
            Unsigned block
        """
        records = list(records)
        merkle_root = calculate_merkle_root([r.hash for r in records])
        unsigned = cls(
            height=height,
            previous_hash=previous_hash,
            timestamp=timestamp,
            records=records,
            merkle_root=merkle_root,
        )
        return unsigned.model_copy(update={"hash": unsigned.calculate_hash()})

    def signing_payload(self) -> bytes:
        """Canonical encoding of (height, previous_hash, timestamp, records)."""
        return canonical_json({
            "height": self.height,
            "previous_hash": self.previous_hash,
            "timestamp": self.timestamp,
            "merkle_root": self.merkle_root,
            "records": [
                {"hash": r.hash, "content": b64encode(r.content)}
                for r in self.records
            ],
        })

    def calculate_hash(self) -> str:
        """Calculate SHA-256 hash of the canonical encoding."""
        return hash_data(self.signing_payload())

    def calculate_merkle_root(self) -> str:
        return calculate_merkle_root([r.hash for r in self.records])

    def signed_by(self, identity: AuthorityIdentity) -> "Block":
        """Return a copy of this block signed by the authority."""
        return self.model_copy(update={"signature": identity.sign(self.signing_payload())})

    @property
    def is_genesis(self) -> bool:
        return self.height == 0

    @property
    def size(self) -> int:
        """Approximate encoded size in bytes."""
        return len(canonical_json(self.to_dict()))

    def record_hashes(self) -> list[str]:
        return [r.hash for r in self.records]

    def to_dict(self) -> dict[str, Any]:
        """Convert block to its wire/storage dictionary."""
        return self.model_dump()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Block":
        """Create a Block from its wire/storage dictionary."""
        return cls.model_validate(data)

    def __repr__(self) -> str:
        return (
            f"Block(height={self.height}, hash={self.hash[:12]}..., "
            f"records={len(self.records)}, ts={self.timestamp})"
        )


class MerkleProof(BaseModel):
    """Proof that a record is included in a block."""

    block_hash: str
    block_height: int
    record_hash: str
    merkle_root: str
    proof_path: List[Tuple[str, str]]

    def verify(self) -> bool:
        """Verify this proof against the stored root."""
        current = self.record_hash

        for sibling_hash, position in self.proof_path:
            if position == "left":
                combined = sibling_hash + current
            else:
                combined = current + sibling_hash
            current = hashlib.sha256(combined.encode()).hexdigest()

        return current == self.merkle_root


def calculate_merkle_root(leaf_hashes: list[str]) -> str:
    """
    Calculate the Merkle root over a list of hex leaf hashes.

    Args:
        leaf_hashes: Record hashes in block order

    Returns:
        Merkle root hash as hex string
    """
    if not leaf_hashes:
        return EMPTY_MERKLE_ROOT

    hashes = list(leaf_hashes)
    while len(hashes) > 1:
        if len(hashes) % 2 != 0:
            hashes.append(hashes[-1])  # Duplicate last hash if odd

        hashes = [
            hashlib.sha256((hashes[i] + hashes[i + 1]).encode()).hexdigest()
            for i in range(0, len(hashes), 2)
        ]

    return hashes[0]


def generate_merkle_path(leaf_hashes: list[str], target_index: int) -> list[tuple[str, str]]:
    """
    Generate the Merkle proof path for one leaf.

    Args:
        leaf_hashes: Record hashes in block order
        target_index: Index of the leaf to prove

    Returns:
        List of (sibling_hash, position) tuples
    """
    if not leaf_hashes or target_index >= len(leaf_hashes):
        return []

    hashes = list(leaf_hashes)
    proof_path = []
    idx = target_index

    while len(hashes) > 1:
        if len(hashes) % 2 != 0:
            hashes.append(hashes[-1])

        if idx % 2 == 0:
            proof_path.append((hashes[idx + 1], "right"))
        else:
            proof_path.append((hashes[idx - 1], "left"))

        hashes = [
            hashlib.sha256((hashes[i] + hashes[i + 1]).encode()).hexdigest()
            for i in range(0, len(hashes), 2)
        ]
        idx = idx // 2

    return proof_path


def build_merkle_proof(block: Block, record_hash: str) -> Optional[MerkleProof]:
    """Build an inclusion proof for a record of ``block``."""
    leaves = block.record_hashes()
    if record_hash not in leaves:
        return None

    return MerkleProof(
        block_hash=block.hash,
        block_height=block.height,
        record_hash=record_hash,
        merkle_root=block.merkle_root,
        proof_path=generate_merkle_path(leaves, leaves.index(record_hash)),
    )
