"""
Chain validator.

``validate`` is a pure function: given a block, the tip it claims to extend
and the authority's public key, it reports the first rule the block breaks.
It is used unchanged for self-produced blocks (before commit) and for blocks
received from peers (before a follower applies them).
"""

import logging
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict

from ..exceptions import ERRORS_BY_KIND, ErrorKind
from .block import Block, ChainTip, Record
from .crypto import batch_verify_signatures, verify_signature

logger = logging.getLogger(__name__)

# Domain hook: returns True when a record satisfies the domain rules
RecordValidator = Callable[[Record], bool]


class ValidationResult(BaseModel):
    """Outcome of validating one block (or a replay)."""

    kind: Optional[ErrorKind] = None
    message: str = ""
    height: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @property
    def ok(self) -> bool:
        return self.kind is None

    @property
    def is_valid(self) -> bool:
        return self.kind is None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def valid(cls, height: Optional[int] = None) -> "ValidationResult":
        return cls(height=height)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, height: Optional[int] = None) -> "ValidationResult":
        return cls(kind=kind, message=message, height=height)

    def raise_for_error(self) -> None:
        """Raise the exception matching this result's kind, if any."""
        if self.kind is None:
            return
        raise ERRORS_BY_KIND[self.kind](self.message, height=self.height)


def validate(
    block: Block,
    expected: ChainTip,
    authority_public_key: bytes,
    record_validator: Optional[RecordValidator] = None,
) -> ValidationResult:
    """
    Validate a block against the tip it must extend.

    Checks, in order, stopping at the first failure:
    1. height is the expected next height
    2. previous hash matches the tip hash
    3. stored hash and merkle root recompute, and the signature verifies
    4. timestamp does not regress
    5. every record hash matches its content and the domain hook accepts it

    Args:
        block: Candidate block
        expected: Current tip (``ChainTip.anchor()`` for genesis)
        authority_public_key: The chain authority's Ed25519 public key
        record_validator: Optional domain-validation hook

    Returns:
        ValidationResult; ``ok`` is True when every check passed
    """
    return _validate(block, expected, authority_public_key, record_validator)


def _validate(
    block: Block,
    expected: ChainTip,
    authority_public_key: bytes,
    record_validator: Optional[RecordValidator],
    signature_ok: Optional[bool] = None,
) -> ValidationResult:
    height = block.height

    if height != expected.next_height:
        return ValidationResult.fail(
            ErrorKind.INVALID_LINKAGE,
            f"Expected height {expected.next_height}, got {height}",
            height,
        )

    if block.previous_hash != expected.hash:
        return ValidationResult.fail(
            ErrorKind.INVALID_LINKAGE,
            f"Block {height} previous hash {block.previous_hash[:12]}... "
            f"does not match tip {expected.hash[:12]}...",
            height,
        )

    integrity = _check_integrity(block)
    if integrity is not None:
        return integrity

    if signature_ok is None:
        signature_ok = verify_signature(block.signing_payload(), block.signature, authority_public_key)
    if not signature_ok:
        return ValidationResult.fail(
            ErrorKind.INVALID_SIGNATURE,
            f"Block {height} signature does not verify under the authority key",
            height,
        )

    if block.timestamp < expected.timestamp:
        return ValidationResult.fail(
            ErrorKind.TIMESTAMP_REGRESSION,
            f"Block {height} timestamp {block.timestamp} precedes predecessor {expected.timestamp}",
            height,
        )

    return _check_records(block, record_validator)


def _check_integrity(block: Block) -> Optional[ValidationResult]:
    """Recompute merkle root and hash; a mismatch means corrupted content."""
    if block.merkle_root != block.calculate_merkle_root():
        return ValidationResult.fail(
            ErrorKind.INVALID_SIGNATURE,
            f"Block {block.height} merkle root mismatch",
            block.height,
        )
    if block.hash != block.calculate_hash():
        return ValidationResult.fail(
            ErrorKind.INVALID_SIGNATURE,
            f"Block {block.height} hash mismatch",
            block.height,
        )
    return None


def _check_records(block: Block, record_validator: Optional[RecordValidator]) -> ValidationResult:
    for record in block.records:
        if not record.verify():
            return ValidationResult.fail(
                ErrorKind.RECORD_VALIDATION_FAILURE,
                f"Record {record.hash[:12]}... content hash mismatch in block {block.height}",
                block.height,
            )
        if record_validator is not None and not record_validator(record):
            return ValidationResult.fail(
                ErrorKind.RECORD_VALIDATION_FAILURE,
                f"Record {record.hash[:12]}... rejected by domain rules in block {block.height}",
                block.height,
            )
    return ValidationResult.valid(block.height)


def validate_chain(
    blocks: Iterable[Block],
    authority_public_key: bytes,
    record_validator: Optional[RecordValidator] = None,
    start: Optional[ChainTip] = None,
) -> ValidationResult:
    """
    Replay ``validate`` over a contiguous run of blocks.

    Signatures are verified up front in a parallel batch; the remaining
    checks run sequentially so the reported failure is the lowest height
    that breaks a rule.

    Args:
        blocks: Blocks in ascending height order
        authority_public_key: The chain authority's public key
        record_validator: Optional domain-validation hook
        start: Tip the first block extends (genesis anchor by default)

    Returns:
        The first failure, or a valid result carrying the last height
    """
    blocks = list(blocks)
    expected = start or ChainTip.anchor()

    signatures = batch_verify_signatures(
        [(b.signing_payload(), b.signature, authority_public_key) for b in blocks]
    )

    for block, signature_ok in zip(blocks, signatures):
        result = _validate(block, expected, authority_public_key, record_validator, signature_ok)
        if not result.ok:
            logger.warning(f"Chain replay failed at height {block.height}: {result.message}")
            return result
        expected = ChainTip.of(block)

    return ValidationResult.valid(expected.height if blocks else None)
