"""
Authority block producer.

The producer is the only component that creates blocks. It owns the pending
record pool and a single production lock, so concurrent production requests
against one chain are serialized and never compete for a height.
"""

import asyncio
import logging
from collections import deque
from typing import Callable, Iterable, Optional

from ..exceptions import (
    InvalidLinkageError,
    LedgerError,
    PendingPoolFullError,
    RecordValidationError,
)
from .block import Block, Record, now_ms
from .chain import Chain
from .crypto import AuthorityIdentity
from .validation import RecordValidator

logger = logging.getLogger(__name__)

MAX_BLOCK_BYTES = 1_000_000  # 1MB of record content per block
MAX_PENDING_RECORDS = 10_000
MAX_RECORD_BYTES = MAX_BLOCK_BYTES // 10  # 100KB per record
MAX_BATCH_RECORDS = 500


class AuthorityProducer:
    """
    Composes, signs and commits blocks for the authority's chain.

    Usage:
        producer = AuthorityProducer(chain, identity)
        await producer.create_genesis()
        producer.submit(Record.create(b"payload"))
        block = await producer.create_block()
    """

    def __init__(
        self,
        chain: Chain,
        identity: AuthorityIdentity,
        record_validator: Optional[RecordValidator] = None,
        max_pending: int = MAX_PENDING_RECORDS,
        max_record_bytes: int = MAX_RECORD_BYTES,
        max_batch_records: int = MAX_BATCH_RECORDS,
        max_block_bytes: int = MAX_BLOCK_BYTES,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """
        Initialize the producer.

        Args:
            chain: The authority's chain
            identity: Signing identity; must hold the private key matching
                the chain's authority key
            record_validator: Domain-validation hook applied on admission
                and again during the self-check
            max_pending: Pending pool capacity
            max_record_bytes: Largest admissible record content
            max_batch_records: Most records per block
            max_block_bytes: Most record content bytes per block
            clock: Millisecond wall clock

        Raises:
            PermissionError: If the identity cannot sign
            ValueError: If the identity is not the chain's authority
        """
        if not identity.can_sign:
            raise PermissionError(f"Identity {identity.short_id} cannot sign blocks")
        if identity.public_key != chain.authority_public_key:
            raise ValueError(f"Identity {identity.short_id} is not the authority of this chain")
        if max_record_bytes > max_block_bytes:
            raise ValueError("max_record_bytes cannot exceed max_block_bytes")

        self.chain = chain
        self.identity = identity
        self.record_validator = record_validator
        self.max_pending = max_pending
        self.max_record_bytes = max_record_bytes
        self.max_batch_records = max_batch_records
        self.max_block_bytes = max_block_bytes
        self.clock = clock

        self._pending: deque[Record] = deque()
        self._pending_hashes: set[str] = set()
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.blocks_produced = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_records(self) -> list[Record]:
        return list(self._pending)

    def submit(self, record: Record) -> bool:
        """
        Admit a record into the pending pool.

        Returns:
            True if accepted, False if rejected
        """
        if len(self._pending) >= self.max_pending:
            logger.warning("Pending pool full, rejecting record")
            return False

        reason = self._admission_error(record)
        if reason is None and record.hash in self._pending_hashes:
            reason = "already pending"
        if reason is not None:
            logger.warning(f"Record {record.hash[:12]}... {reason}, rejecting")
            return False

        self._admit(record)
        return True

    def _admission_error(self, record: Record) -> Optional[str]:
        """Reason a record may not enter the pool, or None."""
        if record.size > self.max_record_bytes:
            return f"too large ({record.size} bytes)"
        if not record.verify():
            return "hash does not match content"
        if self.chain.store.find_record(record.hash) is not None:
            return "already in chain"
        if self.record_validator and not self.record_validator(record):
            return "failed validation"
        return None

    def _admit(self, record: Record) -> None:
        self._pending.append(record)
        self._pending_hashes.add(record.hash)

    def _admit_all(self, records: Iterable[Record]) -> None:
        """
        Admit every record or none of them.

        Records already pending are left where they are.

        Raises:
            RecordValidationError: If any record fails admission
            PendingPoolFullError: If the pool cannot hold all new records
        """
        fresh: dict[str, Record] = {}
        for record in records:
            reason = self._admission_error(record)
            if reason is not None:
                raise RecordValidationError(
                    f"Record {record.hash[:12]}... {reason}", record_hash=record.hash
                )
            if record.hash not in self._pending_hashes:
                fresh[record.hash] = record

        if len(self._pending) + len(fresh) > self.max_pending:
            raise PendingPoolFullError(
                f"Pending pool cannot take {len(fresh)} more records "
                f"({len(self._pending)}/{self.max_pending} used)",
                capacity=self.max_pending,
                offered=len(fresh),
            )

        for record in fresh.values():
            self._admit(record)

    async def create_genesis(self, records: Iterable[Record] = ()) -> Block:
        """
        Produce the genesis block of an empty chain.

        Raises:
            InvalidLinkageError: If the chain already has a genesis block
        """
        async with self._lock:
            if self.chain.length != 0:
                raise InvalidLinkageError("Chain already has a genesis block", height=0)
            block = self._compose(list(records))
            await self.chain.apply(block, self.record_validator)
            self.blocks_produced += 1

        logger.info(f"Created genesis block {block.hash[:12]}... with {len(block.records)} records")
        return block

    async def create_block(self, pending_records: Optional[Iterable[Record]] = None) -> Optional[Block]:
        """
        Produce the next block from pending records.

        Records passed in are admitted to the pool first, all or none. A
        call that waits for the production lock finds its records already
        taken if an earlier cycle had room for them.

        Returns:
            The committed block, or None if nothing was pending

        Raises:
            RecordValidationError: If a passed record fails admission
            PendingPoolFullError: If the pool has no room for the passed records
            StorageFailureError: If the block could not be persisted
            ChainHaltedError: If the chain halted on an earlier fault
        """
        if pending_records is not None:
            self._admit_all(pending_records)

        async with self._lock:
            batch = self._drain_batch()
            if not batch:
                return None

            block = self._compose(batch)
            try:
                await self.chain.apply(block, self.record_validator)
            except RecordValidationError as e:
                self._requeue_valid(batch)
                logger.warning(f"Self-check rejected block {block.height}: {e.message}")
                return None
            except LedgerError:
                self._requeue_front(batch)
                raise

            self.blocks_produced += 1

        logger.info(f"Created block #{block.height} with {len(batch)} records")
        return block

    def _compose(self, records: list[Record]) -> Block:
        """Build and sign a block extending the current tip."""
        tip = self.chain.status()
        timestamp = max(self.clock(), tip.timestamp + 1)
        block = Block.build(
            height=tip.next_height,
            previous_hash=tip.hash,
            timestamp=timestamp,
            records=records,
        )
        return block.signed_by(self.identity)

    def _drain_batch(self) -> list[Record]:
        batch: list[Record] = []
        batch_bytes = 0
        while self._pending and len(batch) < self.max_batch_records:
            record = self._pending[0]
            if batch and batch_bytes + record.size > self.max_block_bytes:
                break
            self._pending.popleft()
            self._pending_hashes.discard(record.hash)
            batch.append(record)
            batch_bytes += record.size
        return batch

    def _requeue_front(self, batch: list[Record]) -> None:
        for record in reversed(batch):
            if record.hash not in self._pending_hashes:
                self._pending.appendleft(record)
                self._pending_hashes.add(record.hash)

    def _requeue_valid(self, batch: list[Record]) -> None:
        keep = []
        for record in batch:
            if record.verify() and (self.record_validator is None or self.record_validator(record)):
                keep.append(record)
            else:
                logger.warning(f"Dropping record {record.hash[:12]}... rejected by self-check")
        self._requeue_front(keep)

    # Background production

    async def start(self, interval: float = 1.0) -> None:
        """Start producing a block every ``interval`` seconds when records are pending."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._production_loop(interval))
        logger.info(f"Producer started for {self.identity.short_id}, interval={interval}s")

    async def stop(self) -> None:
        """Stop the background loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Producer stopped")

    async def _production_loop(self, interval: float) -> None:
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.create_block()
            except LedgerError as e:
                logger.error(f"Block production failed: {e.message}")
                if self.chain.halted:
                    self._running = False

    def __repr__(self) -> str:
        return (
            f"AuthorityProducer(authority={self.identity.short_id}, "
            f"pending={len(self._pending)}, produced={self.blocks_produced})"
        )
