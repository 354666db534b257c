"""
The authority's append-only chain.

This module provides:
- Chain: append-only sequence of validated blocks over an IndexStore
- The per-chain apply discipline (one asyncio lock, validate then append)
- Persistence retries with exponential backoff
- Checkpoints and the restart integrity check
- Record lookup and Merkle inclusion proofs

The chain never rewrites a filled height. A different block offered for a
filled height halts the chain until an operator intervenes.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterator, Optional

from pydantic import BaseModel, Field

from ..exceptions import (
    ChainCorruptionError,
    ChainHaltedError,
    DuplicateConflictError,
    InvalidLinkageError,
    InvalidSignatureError,
    LedgerError,
    StorageFailureError,
)
from .block import Block, ChainTip, MerkleProof, Record, build_merkle_proof
from .crypto import verify_signature
from .storage import IndexStore, MemoryIndexStore, TipMarker
from .validation import RecordValidator, ValidationResult, validate, validate_chain

logger = logging.getLogger(__name__)

# Called after every successful append, outside the apply lock
BlockListener = Callable[[Block], Awaitable[None]]

# Blocks verified per batch during the restart integrity check
VERIFY_BATCH_SIZE = 256


class RetryPolicy(BaseModel):
    """Exponential backoff for the persistence write path."""

    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = 0.05
    multiplier: float = 2.0
    max_delay: float = 2.0

    def delay(self, attempt: int) -> float:
        """Delay in seconds after the given failed attempt (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))


class Chain:
    """
    Ordered, append-only sequence of blocks for one authority.

    Mutated only through ``append`` and ``apply``; both serialize on a single
    lock so concurrent producers or sync sessions can never race on the tip.
    """

    def __init__(
        self,
        authority_public_key: bytes,
        store: Optional[IndexStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        checkpoint_interval: int = 1000,
    ) -> None:
        """
        Initialize the chain over a store.

        The tip is taken from the store's tip marker without verification;
        use ``Chain.open`` on restart to verify the stored chain first.

        Args:
            authority_public_key: Ed25519 public key of the chain authority
            store: Index store (in-memory by default)
            retry_policy: Backoff for failed persistence writes
            checkpoint_interval: Heights between checkpoint markers (0 disables)
        """
        self.authority_public_key = authority_public_key
        self.store = store if store is not None else MemoryIndexStore()
        self.retry_policy = retry_policy or RetryPolicy()
        self.checkpoint_interval = checkpoint_interval

        self._lock = asyncio.Lock()
        self._listeners: list[BlockListener] = []
        self._fault: Optional[LedgerError] = None

        tip_height = self.store.get_tip_height()
        self._tip: Optional[Block] = self.store.get(tip_height) if tip_height >= 0 else None

    @classmethod
    def open(
        cls,
        store: IndexStore,
        authority_public_key: bytes,
        retry_policy: Optional[RetryPolicy] = None,
        checkpoint_interval: int = 1000,
    ) -> "Chain":
        """
        Open a persisted chain, verifying it before use.

        Raises:
            ChainCorruptionError: If the stored blocks do not recompute to
                the stored tip marker
        """
        chain = cls(authority_public_key, store, retry_policy, checkpoint_interval)
        chain.verify_integrity()
        return chain

    # Read side

    @property
    def tip(self) -> Optional[Block]:
        """The highest block, or None for an empty chain."""
        return self._tip

    @property
    def tip_height(self) -> int:
        """Height of the tip, -1 when empty."""
        return self._tip.height if self._tip else -1

    @property
    def length(self) -> int:
        """Number of blocks; also the height the next block must have."""
        return self.tip_height + 1

    @property
    def halted(self) -> bool:
        return self._fault is not None

    @property
    def fault(self) -> Optional[LedgerError]:
        """The operator-visible fault that halted the chain, if any."""
        return self._fault

    def status(self) -> ChainTip:
        """Tip descriptor a successor block must extend."""
        return ChainTip.of(self._tip)

    def get(self, height: int) -> Optional[Block]:
        """Get block by height."""
        if height < 0 or height > self.tip_height:
            return None
        return self.store.get(height)

    def blocks(self, from_height: int = 0, to_height: Optional[int] = None) -> list[Block]:
        """
        Get an inclusive range of blocks, clipped to the tip.

        Args:
            from_height: First height
            to_height: Last height (tip by default)
        """
        return list(self.iter_blocks(from_height, to_height))

    def iter_blocks(self, from_height: int = 0, to_height: Optional[int] = None) -> Iterator[Block]:
        last = self.tip_height if to_height is None else min(to_height, self.tip_height)
        for height in range(max(from_height, 0), last + 1):
            block = self.store.get(height)
            if block is None:
                raise StorageFailureError(f"Block {height} missing below tip {self.tip_height}")
            yield block

    def find_record(self, record_hash: str) -> Optional[tuple[Record, Block]]:
        """Find a record and the block that includes it."""
        height = self.store.find_record(record_hash)
        if height is None:
            return None
        block = self.get(height)
        if block is None:
            return None
        for record in block.records:
            if record.hash == record_hash:
                return record, block
        return None

    def record_proof(self, record_hash: str) -> Optional[MerkleProof]:
        """Generate a Merkle inclusion proof for a record."""
        found = self.find_record(record_hash)
        if found is None:
            return None
        return build_merkle_proof(found[1], record_hash)

    def replay(self, record_validator: Optional[RecordValidator] = None) -> ValidationResult:
        """Replay validation over every block from genesis to the tip."""
        return validate_chain(self.iter_blocks(), self.authority_public_key, record_validator)

    # Listeners

    def subscribe(self, listener: BlockListener) -> None:
        """Register a coroutine called with every appended block."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: BlockListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Write side

    async def append(self, block: Block) -> bool:
        """
        Append a block that must extend the current tip.

        Returns:
            True if appended, False if an identical block already holds
            that height

        Raises:
            InvalidLinkageError: Height or previous hash does not extend the tip
            DuplicateConflictError: A different block already holds the height
            StorageFailureError: Persistence failed after all retries
            ChainHaltedError: The chain halted on an earlier fault
        """
        async with self._lock:
            self._ensure_running()
            if self._is_known(block):
                return False
            self._check_linkage(block)
            await self._commit(block)

        await self._notify(block)
        return True

    async def apply(self, block: Block, record_validator: Optional[RecordValidator] = None) -> bool:
        """
        Validate a block against the current tip and append it.

        This is the only path for blocks that did not originate from the
        caller's own checks: validation and append happen under the same
        lock, in ascending height order.

        Returns:
            True if appended, False for an idempotent duplicate

        Raises:
            LedgerError subclass matching the failed rule
        """
        async with self._lock:
            self._ensure_running()
            if self._is_known(block):
                return False
            validate(
                block, self.status(), self.authority_public_key, record_validator
            ).raise_for_error()
            await self._commit(block)

        await self._notify(block)
        return True

    def _ensure_running(self) -> None:
        if self._fault is not None:
            raise ChainHaltedError(
                f"Chain halted after {self._fault.code}: {self._fault.message}",
                cause=self._fault,
            )

    def _is_known(self, block: Block) -> bool:
        """
        Check a block against an already-filled height.

        Returns True for an identical block, False when the height is not
        filled yet. A different, authority-signed block at a filled height
        halts the chain.
        """
        if block.height >= self.length:
            return False

        existing = self.store.get(block.height)
        if existing is None:
            raise StorageFailureError(f"Block {block.height} missing below tip {self.tip_height}")
        recomputed = block.calculate_hash()
        if existing.hash == recomputed and block.hash == recomputed:
            logger.debug(f"Block {block.height} already applied, ignoring")
            return True

        authentic = block.hash == recomputed and verify_signature(
            block.signing_payload(), block.signature, self.authority_public_key
        )
        if not authentic:
            raise InvalidSignatureError(
                f"Unauthenticated block offered for filled height {block.height}",
                height=block.height,
            )

        conflict = DuplicateConflictError(
            f"Conflicting authority-signed blocks at height {block.height}: "
            f"stored {existing.hash[:12]}..., offered {block.hash[:12]}...",
            height=block.height,
            existing_hash=existing.hash,
            offered_hash=block.hash,
        )
        self._halt(conflict)
        raise conflict

    def _check_linkage(self, block: Block) -> None:
        if block.height != self.length:
            raise InvalidLinkageError(
                f"Block height {block.height} does not extend chain of length {self.length}",
                height=block.height,
            )
        expected_hash = self.status().hash
        if block.previous_hash != expected_hash:
            raise InvalidLinkageError(
                f"Block {block.height} previous hash {block.previous_hash[:12]}... "
                f"does not match tip {expected_hash[:12]}...",
                height=block.height,
            )

    async def _commit(self, block: Block) -> None:
        """Persist the block, then advance the in-memory tip."""
        await self._persist(block)
        self._tip = block
        self._write_checkpoint(block)
        logger.debug(f"Appended block #{block.height} ({len(block.records)} records)")

    async def _persist(self, block: Block) -> None:
        policy = self.retry_policy
        for attempt in range(1, policy.max_attempts + 1):
            try:
                self.store.put(block.height, block)
                return
            except StorageFailureError as e:
                if attempt == policy.max_attempts:
                    fatal = StorageFailureError(
                        f"Persisting block {block.height} failed after {attempt} attempts: {e.message}",
                        fatal=True,
                    )
                    self._halt(fatal)
                    raise fatal from e
                delay = policy.delay(attempt)
                logger.warning(
                    f"Persisting block {block.height} failed (attempt {attempt}/"
                    f"{policy.max_attempts}), retrying in {delay:.2f}s: {e.message}"
                )
                await asyncio.sleep(delay)

    def _write_checkpoint(self, block: Block) -> None:
        if not self.checkpoint_interval or block.height == 0:
            return
        if block.height % self.checkpoint_interval != 0:
            return
        try:
            self.store.set_checkpoint(TipMarker(height=block.height, hash=block.hash))
        except StorageFailureError as e:
            # The previous checkpoint stays valid; restart just verifies more blocks
            logger.warning(f"Failed to write checkpoint at {block.height}: {e.message}")

    def _halt(self, fault: LedgerError) -> None:
        self._fault = fault
        logger.critical(f"Chain halted, operator action required: {fault.message}")

    async def _notify(self, block: Block) -> None:
        for listener in list(self._listeners):
            try:
                await listener(block)
            except Exception:
                logger.exception(f"Block listener failed for block {block.height}")

    # Restart

    def verify_integrity(self) -> None:
        """
        Recompute the stored hash chain and compare it to the tip marker.

        Verification starts at the last checkpoint when one exists, otherwise
        at genesis. On success the in-memory tip is set from the verified
        blocks.

        Raises:
            ChainCorruptionError: On any mismatch
        """
        marker = self.store.get_tip_marker()
        if marker is None:
            if self.store.get(0) is not None:
                raise ChainCorruptionError("Blocks stored without a tip marker", height=0)
            self._tip = None
            return

        expected = ChainTip.anchor()
        start_height = 0
        checkpoint = self.store.get_checkpoint()
        if checkpoint is not None and 0 <= checkpoint.height <= marker.height:
            anchor_block = self.store.get(checkpoint.height)
            if anchor_block is None or anchor_block.calculate_hash() != checkpoint.hash:
                raise ChainCorruptionError(
                    f"Checkpoint block {checkpoint.height} does not match its marker",
                    height=checkpoint.height,
                )
            expected = ChainTip.of(anchor_block)
            start_height = checkpoint.height + 1

        logger.info(f"Verifying stored chain from height {start_height} to {marker.height}")

        tip_block: Optional[Block] = self.store.get(expected.height) if expected.height >= 0 else None
        for batch_start in range(start_height, marker.height + 1, VERIFY_BATCH_SIZE):
            batch_end = min(batch_start + VERIFY_BATCH_SIZE, marker.height + 1)
            batch = []
            for height in range(batch_start, batch_end):
                block = self.store.get(height)
                if block is None:
                    raise ChainCorruptionError(f"Block {height} missing below tip marker", height=height)
                batch.append(block)

            result = validate_chain(batch, self.authority_public_key, start=expected)
            if not result.ok:
                raise ChainCorruptionError(f"Stored chain invalid: {result.message}", height=result.height)
            tip_block = batch[-1]
            expected = ChainTip.of(tip_block)

        if tip_block is None or tip_block.hash != marker.hash:
            raise ChainCorruptionError(
                f"Recomputed tip does not match stored tip marker at height {marker.height}",
                height=marker.height,
            )
        if self.store.get(marker.height + 1) is not None:
            raise ChainCorruptionError(
                f"Block stored above tip marker {marker.height}",
                height=marker.height + 1,
            )

        self._tip = tip_block
        logger.info(f"Stored chain verified: height={marker.height} tip={marker.hash[:12]}...")

    def __len__(self) -> int:
        return self.length

    def __repr__(self) -> str:
        tip = self._tip.hash[:12] + "..." if self._tip else "none"
        return f"Chain(length={self.length}, tip={tip}, halted={self.halted})"
