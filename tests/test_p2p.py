"""
Tests for the WebSocket node and its wire framing.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import websockets

from authchain.core.chain import Chain
from authchain.exceptions import PeerProtocolError
from authchain.network.message import TipQuery, TipResponse, decode_message
from authchain.network.p2p import P2PConfig, P2PNode, Peer
from authchain.network.protocol import (
    PROTOCOL_MAGIC,
    PROTOCOL_VERSION,
    FrameType,
    HandshakeAck,
    HandshakeMessage,
    ProtocolFrame,
)


@pytest.fixture
def node(chain):
    return P2PNode(chain, P2PConfig(host="localhost", port=8765), node_id="local-node")


@pytest.fixture
def peer():
    return Peer(id="remote-node", address="10.0.0.2", port=9000)


def their_handshake(identity, node_id="remote-node", **overrides):
    fields = dict(version=PROTOCOL_VERSION, node_id=node_id, authority_key=identity.public_key, tip_height=3)
    fields.update(overrides)
    return HandshakeMessage(**fields)


def sent_frames(ws):
    return [ProtocolFrame.from_bytes(c.args[0])[0] for c in ws.send.await_args_list]


class TestProtocolFrame:
    """Tests for frame encoding."""

    def test_frame_layout(self):
        frame = ProtocolFrame.data(b"payload")
        data = frame.to_bytes()

        assert data[:4] == PROTOCOL_MAGIC
        assert data[4] == FrameType.DATA
        assert int.from_bytes(data[5:9], "big") == 7

        decoded, consumed = ProtocolFrame.from_bytes(data + b"trailing")
        assert decoded == frame
        assert consumed == len(data)

    @pytest.mark.parametrize("data", [
        b"ACH",
        b"XXXX\x01\x00\x00\x00\x00",
        PROTOCOL_MAGIC + b"\x01\x00\x00\x00\x05abc",
        PROTOCOL_MAGIC + b"\x7f\x00\x00\x00\x00",
    ])
    def test_bad_frames(self, data):
        with pytest.raises(ValueError):
            ProtocolFrame.from_bytes(data)

    def test_handshake_frame(self, identity):
        handshake = their_handshake(identity)

        restored = HandshakeMessage.from_frame(handshake.to_frame())

        assert restored == handshake
        assert restored.authority_key == identity.public_key

    def test_handshake_ack_frame(self):
        ack = HandshakeAck(accepted=False, node_id="n", reason="nope")

        assert HandshakeAck.from_frame(ack.to_frame()) == ack

    def test_wrong_frame_type(self):
        with pytest.raises(ValueError):
            HandshakeMessage.from_frame(ProtocolFrame.ping())
        with pytest.raises(ValueError):
            HandshakeAck.from_frame(ProtocolFrame.data(b"{}"))

    def test_malformed_handshake(self):
        frame = ProtocolFrame(frame_type=FrameType.HANDSHAKE, payload=b'{"version": 1}')

        with pytest.raises(ValueError):
            HandshakeMessage.from_frame(frame)


class TestHandshakeChecks:
    """Tests for peer admission."""

    def test_accepts_same_authority(self, node, identity):
        assert node._check_handshake(their_handshake(identity)) is None

    def test_refuses_version(self, node, identity):
        assert "version" in node._check_handshake(their_handshake(identity, version=99))

    def test_refuses_other_authority(self, node, other_identity):
        assert "authority" in node._check_handshake(their_handshake(other_identity))

    def test_refuses_self(self, node, identity):
        assert node._check_handshake(their_handshake(identity, node_id="local-node")) == "connection to self"

    def test_refuses_duplicate(self, node, identity, peer):
        node._register(peer, AsyncMock())

        assert node._check_handshake(their_handshake(identity)) == "already connected"


@pytest.mark.asyncio
class TestP2PNode:
    """Tests for node lifecycle and peer handling with mocked sockets."""

    async def test_init(self, node, chain):
        assert node.is_running is False
        assert node.authority_key == chain.authority_public_key
        assert node.get_peer_count() == 0
        assert node.synchronizer.chain is chain

    async def test_random_node_ids(self, chain):
        assert P2PNode(chain).node_id != P2PNode(chain).node_id

    async def test_start_stop(self, node):
        with patch("websockets.serve", new_callable=AsyncMock) as mock_serve:
            mock_server = AsyncMock()
            mock_server.close = MagicMock()
            mock_serve.return_value = mock_server

            await node.start()
            assert node.is_running is True
            mock_serve.assert_called_once()

            # Start again (should be no-op)
            await node.start()
            assert mock_serve.call_count == 1

            await node.stop()
            assert node.is_running is False
            mock_server.close.assert_called_once()
            mock_server.wait_closed.assert_awaited_once()

    async def test_connect_to_peer_success(self, node, identity):
        with patch("websockets.connect", new_callable=AsyncMock) as mock_connect:
            mock_ws = AsyncMock()
            mock_connect.return_value = mock_ws
            mock_ws.recv.side_effect = [
                their_handshake(identity).to_frame().to_bytes(),
                HandshakeAck(accepted=True, node_id="remote-node").to_frame().to_bytes(),
            ]

            peer = await node.connect_to_peer("localhost", 8766)

            assert peer is not None
            assert peer.id == "remote-node"
            assert peer.outbound
            assert peer.tip_height == 3
            assert node.get_peer("remote-node") is peer

            # Peer socket yields no frames, so the session ends right away
            await asyncio.gather(*node._tasks)

        frames = sent_frames(mock_ws)
        assert [f.frame_type for f in frames] == [FrameType.HANDSHAKE, FrameType.HANDSHAKE_ACK, FrameType.DATA]
        assert decode_message(frames[2].payload) == TipQuery()
        assert node.get_peer_count() == 0
        assert node.synchronizer.get_session("remote-node") is None

    async def test_connect_refused_by_peer(self, node):
        with patch("websockets.connect", new_callable=AsyncMock) as mock_connect:
            mock_ws = AsyncMock()
            mock_connect.return_value = mock_ws
            mock_ws.recv.side_effect = [
                HandshakeAck(accepted=False, node_id="remote-node", reason="busy").to_frame().to_bytes(),
            ]

            assert await node.connect_to_peer("localhost", 8766) is None
            mock_ws.close.assert_awaited()

    async def test_connect_refuses_other_authority(self, node, other_identity):
        with patch("websockets.connect", new_callable=AsyncMock) as mock_connect:
            mock_ws = AsyncMock()
            mock_connect.return_value = mock_ws
            mock_ws.recv.side_effect = [their_handshake(other_identity).to_frame().to_bytes()]

            assert await node.connect_to_peer("localhost", 8766) is None

        ack = HandshakeAck.from_frame(sent_frames(mock_ws)[-1])
        assert not ack.accepted
        assert "authority" in ack.reason

    async def test_connect_handshake_timeout(self, node):
        with patch("websockets.connect", new_callable=AsyncMock) as mock_connect:
            mock_ws = AsyncMock()
            mock_connect.return_value = mock_ws
            mock_ws.recv.side_effect = asyncio.TimeoutError()

            assert await node.connect_to_peer("localhost", 8766) is None

    async def test_connect_unreachable(self, node):
        with patch("websockets.connect", new_callable=AsyncMock) as mock_connect:
            mock_connect.side_effect = OSError("connection refused")

            assert await node.connect_to_peer("localhost", 8766) is None

    async def test_handle_connection(self, node, identity):
        mock_ws = AsyncMock()
        mock_ws.remote_address = ("127.0.0.1", 12345)
        mock_ws.recv.side_effect = [
            their_handshake(identity).to_frame().to_bytes(),
            HandshakeAck(accepted=True, node_id="remote-node").to_frame().to_bytes(),
        ]

        await node._handle_connection(mock_ws)

        frames = sent_frames(mock_ws)
        assert [f.frame_type for f in frames] == [FrameType.HANDSHAKE, FrameType.HANDSHAKE_ACK, FrameType.DATA]
        ours = HandshakeMessage.from_frame(frames[0])
        assert ours.node_id == "local-node"
        assert ours.authority_key == identity.public_key

    async def test_handle_connection_refuses_other_authority(self, node, other_identity):
        mock_ws = AsyncMock()
        mock_ws.recv.side_effect = [their_handshake(other_identity).to_frame().to_bytes()]

        await node._handle_connection(mock_ws)

        ack = HandshakeAck.from_frame(sent_frames(mock_ws)[0])
        assert not ack.accepted
        mock_ws.close.assert_awaited()
        assert node.get_peer_count() == 0

    async def test_handle_connection_peer_limit(self, chain, peer):
        node = P2PNode(chain, P2PConfig(max_peers=1))
        node._register(peer, AsyncMock())
        mock_ws = AsyncMock()

        await node._handle_connection(mock_ws)

        mock_ws.close.assert_awaited_once()
        mock_ws.recv.assert_not_awaited()

    async def test_send_message(self, node, peer):
        assert await node.send_message("nobody", TipQuery()) is False

        mock_ws = AsyncMock()
        node._register(peer, mock_ws)

        assert await node.send_message(peer.id, TipQuery()) is True
        frame = sent_frames(mock_ws)[0]
        assert frame.frame_type == FrameType.DATA
        assert decode_message(frame.payload) == TipQuery()

    async def test_send_message_connection_closed(self, node, peer):
        mock_ws = AsyncMock()
        mock_ws.send.side_effect = websockets.ConnectionClosed(None, None)
        node._register(peer, mock_ws)

        assert await node.send_message(peer.id, TipQuery()) is False

    async def test_data_frame_reaches_synchronizer(self, node, peer, chain, producer):
        await producer.create_genesis()
        mock_ws = AsyncMock()
        node._register(peer, mock_ws)

        await node._process_frame(ProtocolFrame.data(TipQuery().to_bytes()), peer, mock_ws)

        replies = [decode_message(f.payload) for f in sent_frames(mock_ws)]
        assert replies[-1] == TipResponse(height=0, hash=chain.tip.hash)

    async def test_ping_gets_pong(self, node, peer):
        mock_ws = AsyncMock()

        await node._process_frame(ProtocolFrame.ping(), peer, mock_ws)

        assert sent_frames(mock_ws)[0].frame_type == FrameType.PONG

    async def test_close_frame_closes(self, node, peer):
        mock_ws = AsyncMock()

        await node._process_frame(ProtocolFrame.close("bye"), peer, mock_ws)

        mock_ws.close.assert_awaited_once()

    async def test_unexpected_frame_evicts(self, node, peer, identity):
        mock_ws = AsyncMock()
        node._register(peer, mock_ws)

        await node._process_frame(their_handshake(identity).to_frame(), peer, mock_ws)

        frame = sent_frames(mock_ws)[0]
        assert frame.frame_type == FrameType.CLOSE
        assert frame.payload == b"PEER_PROTOCOL_ERROR"
        mock_ws.close.assert_awaited_once()

    async def test_bad_frame_evicts(self, node, peer):
        mock_ws = AsyncMock()
        mock_ws.__aiter__.return_value = [b"junk"]
        node._register(peer, mock_ws)

        await node._handle_messages(mock_ws, peer)

        assert sent_frames(mock_ws)[0].frame_type == FrameType.CLOSE
        mock_ws.close.assert_awaited_once()

    async def test_evict_unknown_peer_is_noop(self, node):
        await node._evict_peer("nobody", PeerProtocolError("bad"))

    async def test_disconnect_clears_peer(self, node, peer):
        node._register(peer, AsyncMock())
        await node.synchronizer.connect(peer.id)

        await node._handle_disconnect(peer)

        assert node.get_peers() == []
        assert node.synchronizer.get_session(peer.id) is None


@pytest.mark.asyncio
class TestLiveSync:
    """Two nodes over real localhost sockets."""

    async def test_follower_syncs_over_websockets(self, chain, producer, identity, build_chain):
        await build_chain(producer, 4)
        follower_chain = Chain(identity.public_key)
        authority = P2PNode(chain, P2PConfig(host="127.0.0.1", port=0))
        follower = P2PNode(follower_chain, P2PConfig(host="127.0.0.1", port=0))

        await authority.start()
        await follower.start()
        try:
            peer = await follower.connect_to_peer("127.0.0.1", authority.config.port)
            assert peer is not None
            assert peer.id == authority.node_id

            for _ in range(500):
                if follower_chain.tip_height == chain.tip_height:
                    break
                await asyncio.sleep(0.01)

            assert follower_chain.status() == chain.status()
            assert follower_chain.replay().ok
        finally:
            await follower.stop()
            await authority.stop()
