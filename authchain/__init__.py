"""
authchain - single-authority, tamper-evident ledger.

One authority produces and signs a hash-linked chain of blocks; any number
of untrusted followers replicate, verify and index it.

Quick Start:
    from authchain import AuthorityIdentity, AuthorityProducer, Chain, Record

    identity = AuthorityIdentity.generate()
    chain = Chain(identity.public_key)
    producer = AuthorityProducer(chain, identity)

    await producer.create_genesis()
    block = await producer.create_block([Record.create(b"hello")])
"""

from .config import LedgerConfig, configure_logging
from .core import (
    AuthorityIdentity,
    AuthorityProducer,
    Block,
    Chain,
    ChainTip,
    IndexStore,
    LMDBIndexStore,
    MemoryIndexStore,
    MerkleProof,
    Record,
    RetryPolicy,
    StoreConfig,
    ValidationResult,
    validate,
    validate_chain,
)
from .exceptions import (
    ChainCorruptionError,
    ChainHaltedError,
    DuplicateConflictError,
    ErrorKind,
    InvalidLinkageError,
    InvalidSignatureError,
    LedgerError,
    PeerProtocolError,
    PendingPoolFullError,
    RecordValidationError,
    StorageFailureError,
    TimestampRegressionError,
)
from .network import ChainSynchronizer, LocalTransport, P2PNode

__version__ = "1.0.0"

__all__ = [
    # Core
    "AuthorityIdentity",
    "AuthorityProducer",
    "Block",
    "Chain",
    "ChainTip",
    "IndexStore",
    "LMDBIndexStore",
    "MemoryIndexStore",
    "MerkleProof",
    "Record",
    "RetryPolicy",
    "StoreConfig",
    "ValidationResult",
    "validate",
    "validate_chain",
    # Network
    "ChainSynchronizer",
    "LocalTransport",
    "P2PNode",
    # Config
    "LedgerConfig",
    "configure_logging",
    # Exceptions
    "ErrorKind",
    "LedgerError",
    "InvalidLinkageError",
    "InvalidSignatureError",
    "TimestampRegressionError",
    "RecordValidationError",
    "DuplicateConflictError",
    "PeerProtocolError",
    "StorageFailureError",
    "ChainCorruptionError",
    "ChainHaltedError",
    "PendingPoolFullError",
]
