"""
Core ledger engine.

This package provides:
- Block, Record: hash-linked, authority-signed ledger units
- Chain: append-only chain over an index store
- AuthorityProducer: sequential block production for the authority
- validate / validate_chain: the pure chain validator
- Index stores: in-memory and LMDB
- Cryptographic primitives: Ed25519 signatures, SHA-256 hashing
"""

from .block import (
    Block,
    ChainTip,
    MerkleProof,
    Record,
    GENESIS_PREVIOUS_HASH,
    build_merkle_proof,
    calculate_merkle_root,
    generate_merkle_path,
    now_ms,
)

from .chain import Chain, RetryPolicy

from .crypto import (
    AuthorityIdentity,
    KeyPair,
    batch_verify_signatures,
    generate_signing_keypair,
    hash_data,
    sign_message,
    verify_signature,
)

from .producer import (
    AuthorityProducer,
    MAX_BATCH_RECORDS,
    MAX_BLOCK_BYTES,
    MAX_PENDING_RECORDS,
    MAX_RECORD_BYTES,
)

from .storage import (
    IndexStore,
    LMDBIndexStore,
    MemoryIndexStore,
    StoreConfig,
    TipMarker,
)

from .validation import (
    RecordValidator,
    ValidationResult,
    validate,
    validate_chain,
)

__all__ = [
    # Block
    "Block",
    "ChainTip",
    "MerkleProof",
    "Record",
    "GENESIS_PREVIOUS_HASH",
    "build_merkle_proof",
    "calculate_merkle_root",
    "generate_merkle_path",
    "now_ms",
    # Chain
    "Chain",
    "RetryPolicy",
    # Crypto
    "AuthorityIdentity",
    "KeyPair",
    "batch_verify_signatures",
    "generate_signing_keypair",
    "hash_data",
    "sign_message",
    "verify_signature",
    # Producer
    "AuthorityProducer",
    "MAX_BATCH_RECORDS",
    "MAX_BLOCK_BYTES",
    "MAX_PENDING_RECORDS",
    "MAX_RECORD_BYTES",
    # Storage
    "IndexStore",
    "LMDBIndexStore",
    "MemoryIndexStore",
    "StoreConfig",
    "TipMarker",
    # Validation
    "RecordValidator",
    "ValidationResult",
    "validate",
    "validate_chain",
]
