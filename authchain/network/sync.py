"""
Chain synchronization between followers and their peers.

This module provides:
- SyncSession: per-peer cursor and state machine
- ChainSynchronizer: the session table, request/response handling, serving
  blocks to peers, announcing local appends and relaying records towards
  the authority

Each session moves IDLE -> REQUESTING -> RECEIVING -> SYNCED, with ABORTED
terminal from any state. A synced session drops back to IDLE when its peer
advertises a longer chain, then requests the gap. A session never blocks
waiting on its peer: it records the outstanding request and resumes when
the response arrives.

Records travel the other way. A node with a record sink (the authority's
producer) hands announced records to it; any other node stages them and
relays each record once to its other peers.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from enum import Enum, auto
from typing import Any, Callable, Coroutine, Optional

from pydantic import BaseModel, ConfigDict

from ..core.block import Block, Record
from ..core.chain import Chain
from ..core.validation import RecordValidator
from ..exceptions import (
    ChainHaltedError,
    DuplicateConflictError,
    InvalidLinkageError,
    InvalidSignatureError,
    LedgerError,
    PeerProtocolError,
    RecordValidationError,
    StorageFailureError,
    TimestampRegressionError,
)
from .message import (
    BlockAnnounce,
    BlockRequest,
    BlockResponse,
    RecordAnnounce,
    StagedRecordsQuery,
    StagedRecordsResponse,
    SyncMessage,
    TipQuery,
    TipResponse,
    decode_message,
)

logger = logging.getLogger(__name__)

# Errors that mark a peer as misbehaving; only that peer's session ends
PEER_FAULTS = (
    InvalidSignatureError,
    TimestampRegressionError,
    RecordValidationError,
    PeerProtocolError,
)

# Type aliases
MessageSender = Callable[[str, SyncMessage], Coroutine[Any, Any, bool]]
EvictHandler = Callable[[str, LedgerError], Coroutine[Any, Any, None]]
FaultHandler = Callable[[str, LedgerError], Coroutine[Any, Any, None]]
RecordSink = Callable[[Record], bool]


class SessionState(Enum):
    """State of one peer's sync session."""

    IDLE = auto()
    REQUESTING = auto()
    RECEIVING = auto()
    SYNCED = auto()
    ABORTED = auto()


class SyncSession(BaseModel):
    """Sync state for one connected peer."""

    peer_id: str
    state: SessionState = SessionState.IDLE
    cursor: int = -1
    peer_tip: int = -1
    peer_tip_hash: Optional[str] = None
    request: Optional[BlockRequest] = None
    last_progress: float = 0.0
    linkage_retries: int = 0
    blocks_applied: int = 0
    error: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def is_active(self) -> bool:
        """Waiting on or processing a block range."""
        return self.state in (SessionState.REQUESTING, SessionState.RECEIVING)

    @property
    def is_synced(self) -> bool:
        return self.state == SessionState.SYNCED

    @property
    def short_id(self) -> str:
        return f"{self.peer_id[:16]}..." if len(self.peer_id) > 16 else self.peer_id


class ChainSynchronizer:
    """
    Manages chain synchronization with every connected peer.

    Sessions share nothing except the local chain, which they reach only
    through ``Chain.apply``. The synchronizer also serves its own chain to
    peers and announces every local append, so propagation is transitive.
    """

    MAX_BLOCKS_PER_RESPONSE = 100
    MAX_LINKAGE_RETRIES = 3
    STALL_TIMEOUT = 30.0  # Seconds without progress before eviction
    MAX_STAGED_RECORDS = 1000

    def __init__(
        self,
        chain: Chain,
        send: MessageSender,
        record_validator: Optional[RecordValidator] = None,
        max_blocks_per_response: int = MAX_BLOCKS_PER_RESPONSE,
        max_linkage_retries: int = MAX_LINKAGE_RETRIES,
        stall_timeout: float = STALL_TIMEOUT,
        on_evict: Optional[EvictHandler] = None,
        on_fault: Optional[FaultHandler] = None,
        clock: Callable[[], float] = time.monotonic,
        record_sink: Optional[RecordSink] = None,
        max_staged_records: int = MAX_STAGED_RECORDS,
    ) -> None:
        """
        Initialize the synchronizer.

        Args:
            chain: The local chain
            send: Coroutine delivering a message to a peer id
            record_validator: Domain-validation hook for received blocks
            max_blocks_per_response: Most blocks served per BlockResponse
            max_linkage_retries: Narrowed re-requests before giving up on a peer
            stall_timeout: Seconds an active session may go without progress
            on_evict: Called when a peer should be dropped by the transport
            on_fault: Called on an operator-visible fault
            clock: Monotonic clock in seconds
            record_sink: Takes announced records instead of staging them;
                returns False to refuse one
            max_staged_records: Most records held for relay
        """
        self.chain = chain
        self.send = send
        self.record_validator = record_validator
        self.max_blocks_per_response = max_blocks_per_response
        self.max_linkage_retries = max_linkage_retries
        self.stall_timeout = stall_timeout
        self.on_evict = on_evict
        self.on_fault = on_fault
        self.clock = clock
        self.record_sink = record_sink
        self.max_staged_records = max_staged_records

        self.sessions: dict[str, SyncSession] = {}
        self.faults: list[LedgerError] = []
        self.staged: OrderedDict[str, Record] = OrderedDict()
        self._seen_records: OrderedDict[str, None] = OrderedDict()

        self._running = False
        self._task: Optional[asyncio.Task] = None

        chain.subscribe(self._on_block_appended)

    @property
    def authority_public_key(self) -> bytes:
        return self.chain.authority_public_key

    def get_session(self, peer_id: str) -> Optional[SyncSession]:
        return self.sessions.get(peer_id)

    def is_synced(self, peer_id: str) -> bool:
        session = self.sessions.get(peer_id)
        return session is not None and session.is_synced

    # Session lifecycle

    async def connect(self, peer_id: str) -> SyncSession:
        """
        Open a session for a newly connected peer and query its tip.

        The cursor starts at the local tip, so a reconnect resumes where the
        previous session left off.
        """
        session = self.sessions.get(peer_id)
        if session is not None:
            return session

        session = SyncSession(
            peer_id=peer_id,
            cursor=self.chain.tip_height,
            last_progress=self.clock(),
        )
        self.sessions[peer_id] = session
        logger.debug(f"Opened sync session with {session.short_id} at cursor {session.cursor}")

        await self.send(peer_id, TipQuery())
        if self.record_sink is not None:
            await self.send(peer_id, StagedRecordsQuery())
        return session

    async def disconnect(self, peer_id: str) -> None:
        """Discard a peer's session. Applied blocks are kept."""
        session = self.sessions.pop(peer_id, None)
        if session is None:
            return
        session.state = SessionState.ABORTED
        session.request = None
        logger.info(f"Sync session with {session.short_id} closed at cursor {session.cursor}")

    async def refresh(self, peer_id: str) -> None:
        """Ask a peer for its tip again."""
        if peer_id in self.sessions:
            await self.send(peer_id, TipQuery())

    # Inbound messages

    async def handle_bytes(self, peer_id: str, data: bytes) -> None:
        """Decode and handle a raw message from a peer."""
        try:
            message = decode_message(data, peer_id)
        except PeerProtocolError as e:
            await self._evict(peer_id, e)
            return
        await self.handle_message(peer_id, message)

    async def handle_message(self, peer_id: str, message: SyncMessage) -> None:
        """
        Handle one message from a peer.

        Peer misbehavior ends only that peer's session, as does a local
        storage error. A duplicate conflict is recorded as a fault.
        """
        session = self.sessions.get(peer_id) or await self.connect(peer_id)

        try:
            if isinstance(message, TipQuery):
                await self._serve_tip(peer_id)
            elif isinstance(message, BlockRequest):
                await self._serve_blocks(peer_id, message)
            elif isinstance(message, TipResponse):
                await self._on_tip(session, message.height, message.hash)
            elif isinstance(message, BlockResponse):
                await self._on_blocks(session, message.blocks)
            elif isinstance(message, BlockAnnounce):
                await self._on_announce(session, message.block)
            elif isinstance(message, RecordAnnounce):
                await self._on_record(message.record, origin=peer_id)
            elif isinstance(message, StagedRecordsQuery):
                await self.send(peer_id, StagedRecordsResponse(records=list(self.staged.values())))
            elif isinstance(message, StagedRecordsResponse):
                await self._on_staged(peer_id, message.records)
            else:
                raise PeerProtocolError(
                    f"Unexpected message {type(message).__name__}", peer_id=peer_id
                )
        except PEER_FAULTS as e:
            await self._evict(peer_id, e)
        except DuplicateConflictError as e:
            await self._fault(peer_id, e)
        except StorageFailureError as e:
            if e.fatal:
                await self._fault(peer_id, e)
            else:
                logger.error(f"Storage error while syncing with {peer_id[:16]}...: {e.message}")
                self._abort(peer_id, e.message)
        except ChainHaltedError as e:
            self._abort(peer_id, e.message)

    # Serving peers

    async def _serve_tip(self, peer_id: str) -> None:
        tip = self.chain.status()
        await self.send(peer_id, TipResponse(height=tip.height, hash=tip.hash))

    async def _serve_blocks(self, peer_id: str, request: BlockRequest) -> None:
        last = min(
            request.to_height,
            request.from_height + self.max_blocks_per_response - 1,
            self.chain.tip_height,
        )
        blocks = self.chain.blocks(request.from_height, last) if last >= request.from_height else []
        await self.send(peer_id, BlockResponse(blocks=blocks))
        logger.debug(f"Sent {len(blocks)} blocks to {peer_id[:16]}...")

    # Following peers

    async def _on_tip(self, session: SyncSession, height: int, tip_hash: str) -> None:
        if height >= session.peer_tip:
            session.peer_tip = height
            session.peer_tip_hash = tip_hash
        await self._request_missing(session)

    async def _request_missing(self, session: SyncSession) -> None:
        """Issue the next range request, or settle as synced."""
        if session.state == SessionState.ABORTED:
            return

        local_tip = self.chain.tip_height
        session.cursor = max(session.cursor, min(local_tip, session.peer_tip))

        if session.peer_tip <= local_tip:
            session.state = SessionState.SYNCED
            session.request = None
            return

        if session.state == SessionState.SYNCED:
            session.state = SessionState.IDLE
            logger.debug(f"{session.short_id} advertised height {session.peer_tip}, no longer synced")

        if session.request is not None:
            return

        await self._send_request(session, session.cursor + 1, session.peer_tip)

    async def _send_request(self, session: SyncSession, from_height: int, to_height: int) -> None:
        session.request = BlockRequest(from_height=from_height, to_height=to_height)
        session.state = SessionState.REQUESTING
        session.last_progress = self.clock()
        logger.debug(f"Requesting blocks {from_height}..{to_height} from {session.short_id}")
        await self.send(session.peer_id, session.request)

    async def _on_blocks(self, session: SyncSession, blocks: list[Block]) -> None:
        request = session.request
        if request is None:
            raise PeerProtocolError("Unsolicited BlockResponse", peer_id=session.peer_id)
        if not blocks:
            raise PeerProtocolError(
                f"Empty response for advertised range {request.from_height}..{request.to_height}",
                peer_id=session.peer_id,
            )

        session.state = SessionState.RECEIVING
        session.last_progress = self.clock()

        for block in blocks:
            if not request.from_height <= block.height <= request.to_height:
                raise PeerProtocolError(
                    f"Block {block.height} outside requested range "
                    f"{request.from_height}..{request.to_height}",
                    peer_id=session.peer_id,
                )
            try:
                await self.chain.apply(block, self.record_validator)
            except InvalidLinkageError as e:
                await self._retry_after_linkage(session, e)
                return

            session.cursor = max(session.cursor, block.height)
            session.blocks_applied += 1
            session.linkage_retries = 0
            session.last_progress = self.clock()

        session.request = None
        if session.cursor >= session.peer_tip:
            logger.info(f"Synced with {session.short_id} at height {session.cursor}")
        await self._request_missing(session)

    async def _retry_after_linkage(self, session: SyncSession, error: InvalidLinkageError) -> None:
        """Discard the rest of a response and re-request from the local tip."""
        session.linkage_retries += 1
        if session.linkage_retries > self.max_linkage_retries:
            raise PeerProtocolError(
                f"Linkage still broken after {self.max_linkage_retries} retries: {error.message}",
                peer_id=session.peer_id,
            )

        logger.warning(
            f"Linkage failure from {session.short_id} ({error.message}), "
            f"re-requesting from {self.chain.length}"
        )
        session.request = None
        session.cursor = min(session.cursor, self.chain.tip_height)
        if self.chain.tip_height >= session.peer_tip:
            session.state = SessionState.SYNCED
            return
        await self._send_request(session, self.chain.length, session.peer_tip)

    async def _on_announce(self, session: SyncSession, block: Block) -> None:
        if block.height >= session.peer_tip:
            session.peer_tip = block.height
            session.peer_tip_hash = block.hash

        if block.height <= self.chain.length:
            try:
                applied = await self.chain.apply(block, self.record_validator)
            except InvalidLinkageError as e:
                logger.debug(f"Announced block {block.height} does not extend tip: {e.message}")
            else:
                session.cursor = max(session.cursor, block.height)
                session.last_progress = self.clock()
                if applied:
                    session.blocks_applied += 1

        await self._request_missing(session)

    # Records on their way to the authority

    async def announce_record(self, record: Record) -> bool:
        """
        Send a record towards the authority.

        Returns:
            True if the record was handed to the sink or staged for relay

        Raises:
            RecordValidationError: If the record's hash does not match its content
        """
        return await self._on_record(record)

    async def _on_record(self, record: Record, origin: Optional[str] = None) -> bool:
        if not record.verify():
            raise RecordValidationError(
                f"Record {record.hash[:12]}... hash does not match content",
                record_hash=record.hash,
            )
        if record.hash in self._seen_records or self.chain.find_record(record.hash) is not None:
            return False

        if self.record_sink is not None:
            if not self.record_sink(record):
                logger.debug(f"Record sink refused {record.hash[:12]}...")
                return False
            self._remember(record.hash)
            return True

        if self.record_validator and not self.record_validator(record):
            logger.debug(f"Not relaying record {record.hash[:12]}...: failed validation")
            return False

        self._remember(record.hash)
        self.staged[record.hash] = record
        while len(self.staged) > self.max_staged_records:
            self.staged.popitem(last=False)

        relay = RecordAnnounce(record=record)
        for session in list(self.sessions.values()):
            if session.peer_id != origin and session.state != SessionState.ABORTED:
                await self.send(session.peer_id, relay)
        return True

    async def _on_staged(self, peer_id: str, records: list[Record]) -> None:
        if len(records) > self.max_staged_records:
            raise PeerProtocolError(
                f"{len(records)} staged records exceed limit {self.max_staged_records}",
                peer_id=peer_id,
            )
        for record in records:
            await self._on_record(record, origin=peer_id)

    def _remember(self, record_hash: str) -> None:
        self._seen_records[record_hash] = None
        while len(self._seen_records) > 4 * self.max_staged_records:
            self._seen_records.popitem(last=False)

    # Propagation

    async def _on_block_appended(self, block: Block) -> None:
        """Announce a local append to every peer not known to have it."""
        for record in block.records:
            self.staged.pop(record.hash, None)

        announce = BlockAnnounce(block=block)
        for session in list(self.sessions.values()):
            if session.state == SessionState.ABORTED or session.peer_tip >= block.height:
                continue
            await self.send(session.peer_id, announce)

    # Failure handling

    def _abort(self, peer_id: str, reason: str) -> None:
        session = self.sessions.pop(peer_id, None)
        if session is not None:
            session.state = SessionState.ABORTED
            session.request = None
            session.error = reason

    async def _evict(self, peer_id: str, error: LedgerError) -> None:
        """End a misbehaving peer's session and ask the transport to drop it."""
        self._abort(peer_id, error.message)
        logger.warning(f"Evicting peer {peer_id[:16]}...: {error.code}: {error.message}")
        if self.on_evict:
            await self.on_evict(peer_id, error)

    async def _fault(self, peer_id: str, error: LedgerError) -> None:
        """Record an operator-visible fault raised while following a peer."""
        self._abort(peer_id, error.message)
        self.faults.append(error)
        logger.critical(f"Sync with {peer_id[:16]}... stopped on fault: {error.message}")
        if self.on_fault:
            await self.on_fault(peer_id, error)

    async def evict_stalled(self, now: Optional[float] = None) -> list[str]:
        """
        Evict active sessions that made no progress within the stall timeout.

        Returns:
            Evicted peer ids
        """
        now = self.clock() if now is None else now
        stalled = [
            s for s in self.sessions.values()
            if s.is_active and now - s.last_progress > self.stall_timeout
        ]
        for session in stalled:
            await self._evict(
                session.peer_id,
                PeerProtocolError(
                    f"No progress for {now - session.last_progress:.1f}s", peer_id=session.peer_id
                ),
            )
        return [s.peer_id for s in stalled]

    async def start(self) -> None:
        """Start the liveness loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._liveness_loop())

    async def stop(self) -> None:
        """Stop the liveness loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _liveness_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.stall_timeout / 2)
            await self.evict_stalled()

    def reset(self) -> None:
        """Drop all sessions and recorded faults."""
        self.sessions.clear()
        self.faults.clear()

    def __repr__(self) -> str:
        synced = sum(1 for s in self.sessions.values() if s.is_synced)
        return (
            f"ChainSynchronizer(sessions={len(self.sessions)}, synced={synced}, "
            f"tip={self.chain.tip_height})"
        )
