"""
Tests for chain synchronization between nodes.

Multi-node scenarios run over LocalTransport; single-session edge cases use
a synchronizer with a recording sender.
"""

import logging

import pytest

from authchain.core.block import Record
from authchain.core.chain import Chain
from authchain.core.producer import AuthorityProducer
from authchain.exceptions import (
    ChainHaltedError,
    DuplicateConflictError,
    InvalidSignatureError,
    PeerProtocolError,
)
from authchain.network.message import (
    BlockAnnounce,
    BlockRequest,
    BlockResponse,
    RecordAnnounce,
    StagedRecordsQuery,
    StagedRecordsResponse,
    TipQuery,
    TipResponse,
)
from authchain.network.sync import ChainSynchronizer, SessionState
from authchain.network.transport import LocalTransport


@pytest.fixture
def transport():
    return LocalTransport()


@pytest.fixture
def add_node(transport):
    """Register a synchronizer for a chain under a node id."""

    def _add(name, chain, **kwargs):
        sync = ChainSynchronizer(chain, transport.sender_for(name), **kwargs)
        transport.register(name, sync)
        return sync

    return _add


@pytest.fixture
def follower_chain(identity):
    return Chain(identity.public_key)


class Recorder:
    """Sender and eviction hook that record what a synchronizer does."""

    def __init__(self):
        self.sent = []
        self.evicted = []

    async def send(self, peer_id, message):
        self.sent.append((peer_id, message))
        return True

    async def evict(self, peer_id, error):
        self.evicted.append((peer_id, error))

    def last(self, kind):
        return [m for _, m in self.sent if isinstance(m, kind)][-1]

    def of_type(self, kind):
        return [m for _, m in self.sent if isinstance(m, kind)]


@pytest.fixture
def recorder():
    return Recorder()


def response_heights(transport, src, dst):
    return [
        b.height
        for m in transport.messages_between(src, dst)
        if isinstance(m, BlockResponse)
        for b in m.blocks
    ]


def requests(transport, src, dst):
    return [m for m in transport.messages_between(src, dst) if isinstance(m, BlockRequest)]


@pytest.mark.asyncio
class TestCatchUp:
    """Followers converge on the authority's chain."""

    async def test_follower_fetches_missing_block(self, chain, producer, follower_chain, transport, add_node):
        genesis = await producer.create_genesis()
        await producer.create_block([Record.create(b"R")])
        await follower_chain.apply(genesis)
        add_node("authority", chain)
        add_node("follower", follower_chain)

        await transport.connect("authority", "follower")
        await transport.run_until_idle()

        assert requests(transport, "follower", "authority") == [BlockRequest(from_height=1, to_height=1)]
        assert follower_chain.status() == chain.status()
        assert follower_chain.tip.records[0].content == b"R"

    async def test_empty_follower_syncs_everything(
        self, chain, producer, follower_chain, transport, add_node, build_chain
    ):
        await build_chain(producer, 7)
        add_node("authority", chain, max_blocks_per_response=3)
        follower = add_node("follower", follower_chain)

        await transport.connect("authority", "follower")
        await transport.run_until_idle()

        assert follower_chain.blocks() == chain.blocks()
        assert follower.is_synced("authority")
        assert follower.get_session("authority").blocks_applied == 8
        assert follower_chain.replay().ok

    async def test_resume_after_disconnect(
        self, chain, producer, follower_chain, transport, add_node, build_chain
    ):
        """A reconnect continues from the follower's tip without refetching."""
        blocks = await build_chain(producer, 5)
        await follower_chain.apply(blocks[0])
        add_node("authority", chain, max_blocks_per_response=3)
        follower = add_node("follower", follower_chain)

        await transport.connect("authority", "follower")
        await transport.run_until(lambda: follower_chain.tip_height >= 3)
        await transport.disconnect("authority", "follower")

        assert follower_chain.tip_height == 3
        assert follower.get_session("authority") is None

        await transport.connect("authority", "follower")
        assert follower.get_session("authority").cursor == 3
        await transport.run_until_idle()

        assert requests(transport, "follower", "authority") == [
            BlockRequest(from_height=1, to_height=5),
            BlockRequest(from_height=4, to_height=5),
        ]
        assert response_heights(transport, "authority", "follower") == [1, 2, 3, 4, 5]
        assert follower_chain.status() == chain.status()

    @pytest.mark.parametrize("interrupt_after", [1, 3, 5, 7, 9])
    async def test_interrupted_sync_converges(
        self, chain, producer, follower_chain, transport, add_node, build_chain, interrupt_after
    ):
        await build_chain(producer, 12)
        add_node("authority", chain, max_blocks_per_response=5)
        add_node("follower", follower_chain)

        await transport.connect("authority", "follower")
        await transport.run_until_idle(max_steps=interrupt_after)
        await transport.disconnect("authority", "follower")
        await transport.connect("authority", "follower")
        await transport.run_until_idle()

        assert follower_chain.blocks() == chain.blocks()
        assert len(set(response_heights(transport, "authority", "follower"))) == 13

    async def test_propagation_is_transitive(
        self, chain, producer, identity, transport, add_node, build_chain
    ):
        """Blocks reach a follower that is only linked to another follower."""
        await build_chain(producer, 3)
        first, second = Chain(identity.public_key), Chain(identity.public_key)
        add_node("authority", chain)
        add_node("first", first)
        add_node("second", second)

        await transport.connect("authority", "first")
        await transport.connect("first", "second")
        await transport.run_until_idle()

        assert second.status() == chain.status()

        await producer.create_block([Record.create(b"late")])
        await transport.run_until_idle()

        assert first.status() == chain.status()
        assert second.status() == chain.status()
        assert second.tip.records[0].content == b"late"

    async def test_peers_already_in_sync(self, chain, producer, follower_chain, transport, add_node):
        genesis = await producer.create_genesis()
        await follower_chain.apply(genesis)
        authority = add_node("authority", chain)
        follower = add_node("follower", follower_chain)

        await transport.connect("authority", "follower")
        await transport.run_until_idle()

        assert requests(transport, "follower", "authority") == []
        assert authority.is_synced("follower")
        assert follower.is_synced("authority")


@pytest.mark.asyncio
class TestMisbehavingPeers:
    """Faults end only the offending session."""

    async def test_foreign_signer_is_evicted(
        self, other_identity, follower_chain, transport, add_node, build_chain
    ):
        impostor_chain = Chain(other_identity.public_key)
        await build_chain(AuthorityProducer(impostor_chain, other_identity), 2)
        add_node("impostor", impostor_chain)
        follower = add_node("follower", follower_chain)

        await transport.connect("impostor", "follower")
        await transport.run_until_idle()

        assert follower_chain.length == 0
        assert not transport.is_linked("impostor", "follower")
        assert follower.get_session("impostor") is None
        assert not follower_chain.halted

    async def test_eviction_leaves_other_sessions(
        self, chain, producer, other_identity, follower_chain, transport, add_node, build_chain
    ):
        await build_chain(producer, 2)
        impostor_chain = Chain(other_identity.public_key)
        await build_chain(AuthorityProducer(impostor_chain, other_identity), 2)
        add_node("authority", chain)
        add_node("impostor", impostor_chain)
        add_node("follower", follower_chain)

        await transport.connect("impostor", "follower")
        await transport.connect("authority", "follower")
        await transport.run_until_idle()

        assert follower_chain.status() == chain.status()
        assert transport.is_linked("authority", "follower")
        assert not transport.is_linked("impostor", "follower")

    async def test_conflicting_announce_is_a_fault(
        self, chain, producer, make_block, follower_chain, transport, add_node
    ):
        """An authority-signed rival block halts the follower."""
        faults = []

        async def on_fault(peer_id, error):
            faults.append((peer_id, error))

        await producer.create_genesis([Record.create(b"one")])
        rival = make_block(records=[Record.create(b"two")])
        add_node("authority", chain)
        follower = add_node("follower", follower_chain, on_fault=on_fault)

        await transport.connect("authority", "follower")
        await transport.run_until_idle()
        transport.inject("authority", "follower", BlockAnnounce(block=rival).to_bytes())
        await transport.run_until_idle()

        assert follower_chain.halted
        assert follower_chain.tip == chain.tip
        assert [type(e) for e in follower.faults] == [DuplicateConflictError]
        assert faults[0][0] == "authority"
        assert follower.get_session("authority") is None

        with pytest.raises(ChainHaltedError):
            await follower_chain.apply(rival)

    async def test_malformed_bytes_evict(self, follower_chain, transport, add_node):
        add_node("authority", Chain(follower_chain.authority_public_key))
        add_node("follower", follower_chain)

        await transport.connect("authority", "follower")
        await transport.run_until_idle()
        transport.inject("authority", "follower", b"\xc1garbage")
        await transport.run_until_idle()

        assert not transport.is_linked("authority", "follower")


@pytest.mark.asyncio
class TestLiveness:
    """Stalled sessions are evicted."""

    async def test_stalled_request_is_evicted(
        self, chain, producer, follower_chain, transport, add_node, build_chain, clock
    ):
        await build_chain(producer, 2)
        add_node("authority", chain)
        follower = add_node("follower", follower_chain, clock=clock, stall_timeout=30)

        await transport.connect("authority", "follower")
        session = follower.get_session("authority")
        await transport.run_until(lambda: session.request is not None)

        assert session.state == SessionState.REQUESTING
        assert await follower.evict_stalled() == []

        clock.advance(31)

        assert await follower.evict_stalled() == ["authority"]
        assert session.state == SessionState.ABORTED
        assert not transport.is_linked("authority", "follower")

    async def test_synced_sessions_are_not_evicted(
        self, chain, producer, follower_chain, transport, add_node, clock
    ):
        await producer.create_genesis()
        add_node("authority", chain)
        follower = add_node("follower", follower_chain, clock=clock, stall_timeout=30)

        await transport.connect("authority", "follower")
        await transport.run_until_idle()
        clock.advance(3600)

        assert await follower.evict_stalled() == []
        assert follower.is_synced("authority")

    async def test_liveness_loop_start_stop(self, follower_chain, recorder):
        sync = ChainSynchronizer(follower_chain, recorder.send, stall_timeout=0.01)

        await sync.start()
        await sync.start()
        await sync.stop()

        assert sync._task is None


@pytest.mark.asyncio
class TestSession:
    """Single-session edge cases against a recording sender."""

    @pytest.fixture
    def build_authority(self, producer, build_chain):
        async def _build():
            return await build_chain(producer, 4)

        return _build

    @pytest.fixture
    def follower(self, follower_chain, recorder):
        return ChainSynchronizer(follower_chain, recorder.send, on_evict=recorder.evict)

    async def test_connect_queries_tip(self, follower, recorder):
        session = await follower.connect("peer")

        assert recorder.sent == [("peer", TipQuery())]
        assert session.cursor == -1
        assert session.state == SessionState.IDLE
        assert await follower.connect("peer") is session

    async def test_linkage_gap_narrows_request(self, follower, follower_chain, recorder, build_authority):
        authority_blocks = await build_authority()
        await follower_chain.apply(authority_blocks[0])
        await follower.connect("peer")
        tip = authority_blocks[-1]
        await follower.handle_message("peer", TipResponse(height=tip.height, hash=tip.hash))

        assert recorder.last(BlockRequest) == BlockRequest(from_height=1, to_height=4)

        await follower.handle_message("peer", BlockResponse(blocks=[authority_blocks[1], authority_blocks[3]]))

        assert follower_chain.tip_height == 1
        assert recorder.last(BlockRequest) == BlockRequest(from_height=2, to_height=4)
        assert follower.get_session("peer").linkage_retries == 1

    async def test_repeated_linkage_failures_evict(
        self, follower, follower_chain, recorder, build_authority
    ):
        authority_blocks = await build_authority()
        await follower_chain.apply(authority_blocks[0])
        await follower.connect("peer")
        tip = authority_blocks[-1]
        await follower.handle_message("peer", TipResponse(height=tip.height, hash=tip.hash))

        for _ in range(follower.max_linkage_retries + 1):
            await follower.handle_message("peer", BlockResponse(blocks=[authority_blocks[3]]))

        assert [p for p, _ in recorder.evicted] == ["peer"]
        assert isinstance(recorder.evicted[0][1], PeerProtocolError)
        assert follower.get_session("peer") is None
        assert follower_chain.tip_height == 0

    async def test_unsolicited_response_evicts(self, follower, recorder, build_authority):
        authority_blocks = await build_authority()
        await follower.connect("peer")

        await follower.handle_message("peer", BlockResponse(blocks=[authority_blocks[0]]))

        assert [p for p, _ in recorder.evicted] == ["peer"]

    async def test_empty_response_evicts(self, follower, recorder):
        await follower.connect("peer")
        await follower.handle_message("peer", TipResponse(height=3, hash="a" * 64))

        await follower.handle_message("peer", BlockResponse(blocks=[]))

        assert [p for p, _ in recorder.evicted] == ["peer"]

    async def test_out_of_range_block_evicts(self, follower, recorder, build_authority):
        authority_blocks = await build_authority()
        await follower.connect("peer")
        await follower.handle_message("peer", TipResponse(height=0, hash=authority_blocks[0].hash))

        await follower.handle_message("peer", BlockResponse(blocks=[authority_blocks[1]]))

        assert [p for p, _ in recorder.evicted] == ["peer"]

    async def test_bad_signature_evicts(self, follower, recorder, make_block, other_identity):
        await follower.connect("peer")
        forged = make_block(signer=other_identity)
        await follower.handle_message("peer", TipResponse(height=0, hash=forged.hash))

        await follower.handle_message("peer", BlockResponse(blocks=[forged]))

        assert isinstance(recorder.evicted[0][1], InvalidSignatureError)

    async def test_malformed_bytes_do_not_open_session(self, follower, recorder):
        await follower.handle_bytes("peer", b"\x92\x01")

        assert follower.get_session("peer") is None
        assert recorder.sent == []
        assert [p for p, _ in recorder.evicted] == ["peer"]

    async def test_serves_bounded_ranges(self, chain, recorder, build_authority):
        await build_authority()
        server = ChainSynchronizer(chain, recorder.send, max_blocks_per_response=2)

        await server.handle_message("peer", BlockRequest(from_height=1, to_height=4))
        assert [b.height for b in recorder.last(BlockResponse).blocks] == [1, 2]

        await server.handle_message("peer", BlockRequest(from_height=7, to_height=9))
        assert recorder.last(BlockResponse).blocks == []

    async def test_serves_tip(self, chain, recorder, build_authority):
        await build_authority()
        server = ChainSynchronizer(chain, recorder.send)

        await server.handle_message("peer", TipQuery())

        assert recorder.last(TipResponse) == TipResponse(height=4, hash=chain.tip.hash)

    async def test_announce_of_next_block_is_applied(
        self, follower, follower_chain, recorder, build_authority
    ):
        authority_blocks = await build_authority()
        for block in authority_blocks[:2]:
            await follower_chain.apply(block)
        await follower.connect("peer")
        await follower.handle_message("peer", TipResponse(height=1, hash=authority_blocks[1].hash))

        await follower.handle_message("peer", BlockAnnounce(block=authority_blocks[2]))

        assert follower_chain.tip_height == 2
        assert recorder.of_type(BlockRequest) == []

    async def test_announce_ahead_triggers_request(
        self, follower, follower_chain, recorder, build_authority
    ):
        authority_blocks = await build_authority()
        await follower_chain.apply(authority_blocks[0])
        await follower.connect("peer")
        await follower.handle_message("peer", TipResponse(height=0, hash=authority_blocks[0].hash))

        await follower.handle_message("peer", BlockAnnounce(block=authority_blocks[4]))

        assert follower_chain.tip_height == 0
        assert recorder.last(BlockRequest) == BlockRequest(from_height=1, to_height=4)

    async def test_local_append_is_announced(self, chain, producer, recorder):
        server = ChainSynchronizer(chain, recorder.send)
        await server.connect("peer")

        genesis = await producer.create_genesis()

        assert recorder.last(BlockAnnounce) == BlockAnnounce(block=genesis)

    async def test_disconnect_and_reset(self, follower, recorder):
        await follower.connect("a")
        await follower.connect("b")

        await follower.disconnect("a")
        assert follower.get_session("a") is None

        follower.reset()
        assert follower.sessions == {}
        assert "sessions=0" in repr(follower)

    async def test_synced_session_goes_idle_on_longer_chain(
        self, follower, follower_chain, recorder, build_authority, caplog
    ):
        authority_blocks = await build_authority()
        await follower_chain.apply(authority_blocks[0])
        session = await follower.connect("peer")
        await follower.handle_message("peer", TipResponse(height=0, hash=authority_blocks[0].hash))

        assert session.state == SessionState.SYNCED

        tip = authority_blocks[-1]
        with caplog.at_level(logging.DEBUG, logger="authchain.network.sync"):
            await follower.handle_message("peer", TipResponse(height=tip.height, hash=tip.hash))

        assert "no longer synced" in caplog.text
        assert session.state == SessionState.REQUESTING
        assert recorder.last(BlockRequest) == BlockRequest(from_height=1, to_height=4)

    async def test_storage_error_ends_only_that_session(self, chain, recorder, build_authority):
        """A block missing from the local store aborts the session without evicting the peer."""
        await build_authority()
        del chain.store._blocks[2]
        server = ChainSynchronizer(chain, recorder.send, on_evict=recorder.evict)

        await server.handle_message("peer", BlockRequest(from_height=0, to_height=4))

        assert server.get_session("peer") is None
        assert recorder.of_type(BlockResponse) == []
        assert recorder.evicted == []
        assert server.faults == []
        assert not chain.halted


@pytest.mark.asyncio
class TestRecordRelay:
    """Records reach the authority's producer through followers."""

    @pytest.fixture
    def client_chain(self, identity):
        return Chain(identity.public_key)

    async def test_record_reaches_authority_through_follower(
        self, chain, producer, follower_chain, client_chain, transport, add_node
    ):
        await producer.create_genesis()
        add_node("authority", chain, record_sink=producer.submit)
        follower = add_node("follower", follower_chain)
        client = add_node("client", client_chain)
        await transport.connect("authority", "follower")
        await transport.connect("follower", "client")
        await transport.run_until_idle()
        record = Record.create(b"from the edge")

        assert await client.announce_record(record)
        await transport.run_until_idle()

        assert producer.pending_records() == [record]
        assert list(follower.staged) == [record.hash]
        assert not any(isinstance(m, RecordAnnounce) for m in transport.messages_between("follower", "client"))
        assert not any(isinstance(m, RecordAnnounce) for m in transport.messages_between("authority", "follower"))

        block = await producer.create_block()
        await transport.run_until_idle()

        assert block.records == [record]
        assert client_chain.status() == chain.status()
        assert follower.staged == {}
        assert client.staged == {}

    async def test_authority_collects_staged_records_on_connect(
        self, chain, producer, follower_chain, client_chain, transport, add_node
    ):
        await producer.create_genesis()
        add_node("follower", follower_chain)
        client = add_node("client", client_chain)
        await transport.connect("follower", "client")
        record = Record.create(b"waiting")
        await client.announce_record(record)
        await transport.run_until_idle()

        add_node("authority", chain, record_sink=producer.submit)
        await transport.connect("authority", "follower")
        await transport.run_until_idle()

        assert StagedRecordsQuery() in transport.messages_between("authority", "follower")
        assert StagedRecordsResponse(records=[record]) in transport.messages_between("follower", "authority")
        assert producer.pending_records() == [record]

    async def test_forged_record_evicts_sender(self, follower_chain, client_chain, transport, add_node):
        add_node("follower", follower_chain)
        add_node("client", client_chain)
        await transport.connect("follower", "client")
        await transport.run_until_idle()
        forged = Record(content=b"x", hash="ab" * 32)

        transport.inject("client", "follower", RecordAnnounce(record=forged).to_bytes())
        await transport.run_until_idle()

        assert not transport.is_linked("client", "follower")

    async def test_each_record_relayed_once(self, follower_chain, recorder):
        relay = ChainSynchronizer(follower_chain, recorder.send)
        for peer in ("a", "b", "c"):
            await relay.connect(peer)
        record = Record.create(b"gossip")

        await relay.handle_message("a", RecordAnnounce(record=record))
        await relay.handle_message("b", RecordAnnounce(record=record))

        assert [p for p, m in recorder.sent if isinstance(m, RecordAnnounce)] == ["b", "c"]

    async def test_refused_record_is_not_relayed(self, follower_chain, recorder):
        sink = ChainSynchronizer(follower_chain, recorder.send, record_sink=lambda r: False)
        await sink.connect("a")

        assert not await sink.announce_record(Record.create(b"unwanted"))
        assert sink.staged == {}
        assert recorder.of_type(RecordAnnounce) == []

    async def test_staging_is_bounded(self, follower_chain, recorder):
        relay = ChainSynchronizer(follower_chain, recorder.send, max_staged_records=2)
        records = [Record.create(f"r{i}".encode()) for i in range(3)]

        for record in records:
            await relay.announce_record(record)

        assert list(relay.staged.values()) == records[1:]
