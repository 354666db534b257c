"""
WebSocket transport for chain synchronization.

This module provides:
- P2PNode: accepts and opens WebSocket connections, runs the handshake and
  routes data frames into a ChainSynchronizer
- Peer: a connected, handshaken remote node

Peer discovery is out of scope; peers are dialed explicitly.
"""

import asyncio
import logging
import secrets
import time
from typing import Optional

import websockets
from pydantic import BaseModel, ConfigDict, Field
from websockets import ClientConnection, ServerConnection

from ..core.chain import Chain
from ..core.validation import RecordValidator
from ..exceptions import LedgerError, PeerProtocolError
from .message import SyncMessage, encode_message
from .protocol import (
    PROTOCOL_VERSION,
    FrameType,
    HandshakeAck,
    HandshakeMessage,
    ProtocolFrame,
)
from .sync import ChainSynchronizer, RecordSink

logger = logging.getLogger(__name__)

Connection = ClientConnection | ServerConnection


class P2PConfig(BaseModel):
    """Configuration for the WebSocket node."""

    host: str = "0.0.0.0"
    port: int = 8765
    max_peers: int = 50
    ping_interval: float = 30.0
    ping_timeout: float = 10.0
    handshake_timeout: float = 10.0


class Peer(BaseModel):
    """A connected peer that completed the handshake."""

    id: str
    address: str
    port: int
    tip_height: int = -1
    outbound: bool = False
    connected_at: float = Field(default_factory=time.time)
    last_seen: float = Field(default_factory=time.time)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def endpoint(self) -> str:
        return f"{self.address}:{self.port}"

    def update_seen(self) -> None:
        self.last_seen = time.time()

    def __str__(self) -> str:
        return f"{self.id[:16]}...@{self.endpoint}"


class P2PNode:
    """
    A node in the follower network.

    The node can:
    - Accept incoming connections (server mode)
    - Connect to other peers (client mode)
    - Refuse peers that follow a different authority
    - Carry sync messages between its synchronizer and its peers
    """

    def __init__(
        self,
        chain: Chain,
        config: Optional[P2PConfig] = None,
        node_id: Optional[str] = None,
        record_validator: Optional[RecordValidator] = None,
        max_blocks_per_response: int = ChainSynchronizer.MAX_BLOCKS_PER_RESPONSE,
        stall_timeout: float = ChainSynchronizer.STALL_TIMEOUT,
        record_sink: Optional[RecordSink] = None,
    ) -> None:
        """
        Initialize the node.

        Args:
            chain: The local chain to serve and extend
            config: Network configuration
            node_id: Stable node id (random by default)
            record_validator: Domain-validation hook for received blocks
            max_blocks_per_response: Most blocks served per response
            stall_timeout: Seconds before an unresponsive sync peer is dropped
            record_sink: Takes records announced by peers (the authority's
                producer); other nodes relay them
        """
        self.chain = chain
        self.config = config or P2PConfig()
        self.node_id = node_id or secrets.token_hex(16)

        self.synchronizer = ChainSynchronizer(
            chain,
            self.send_message,
            record_validator=record_validator,
            max_blocks_per_response=max_blocks_per_response,
            stall_timeout=stall_timeout,
            on_evict=self._evict_peer,
            record_sink=record_sink,
        )

        self._server: Optional[websockets.Server] = None
        self._connections: dict[str, Connection] = {}
        self._peers: dict[str, Peer] = {}

        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def authority_key(self) -> bytes:
        return self.chain.authority_public_key

    async def start(self) -> None:
        """Start the node (server mode)."""
        if self._running:
            return

        self._running = True

        self._server = await websockets.serve(
            self._handle_connection,
            self.config.host,
            self.config.port,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
        )

        # Update port if it was 0 (ephemeral)
        if self.config.port == 0 and self._server.sockets:
            self.config.port = list(self._server.sockets)[0].getsockname()[1]

        await self.synchronizer.start()

        logger.info(f"Node started on {self.config.host}:{self.config.port}")
        logger.info(f"Node ID: {self.node_id[:16]}...")

    async def stop(self) -> None:
        """Stop the node."""
        if not self._running:
            return

        self._running = False
        await self.synchronizer.stop()

        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

        for ws in list(self._connections.values()):
            await ws.close()
        self._connections.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("Node stopped")

    async def connect_to_peer(self, address: str, port: int) -> Optional[Peer]:
        """
        Connect to a remote peer and start syncing with it.

        Returns:
            Peer if connected, None otherwise
        """
        endpoint = f"{address}:{port}"

        try:
            ws = await websockets.connect(
                f"ws://{endpoint}",
                ping_interval=self.config.ping_interval,
                ping_timeout=self.config.ping_timeout,
            )
        except (OSError, websockets.WebSocketException, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to {endpoint}: {e}")
            return None

        try:
            peer = await self._perform_handshake(ws, address, port)
        except (ValueError, websockets.WebSocketException, asyncio.TimeoutError) as e:
            logger.error(f"Handshake with {endpoint} failed: {e}")
            peer = None

        if peer is None:
            await ws.close()
            return None

        self._register(peer, ws)
        task = asyncio.create_task(self._run_peer(ws, peer))
        self._tasks.append(task)

        logger.info(f"Connected to peer: {peer}")
        return peer

    async def _handle_connection(self, ws: ServerConnection) -> None:
        """Handle incoming WebSocket connection."""
        if len(self._connections) >= self.config.max_peers:
            logger.warning("Peer limit reached, refusing connection")
            await ws.close()
            return

        try:
            peer = await self._receive_handshake(ws)
        except (ValueError, websockets.WebSocketException) as e:
            logger.error(f"Handshake error: {e}")
            peer = None
        except asyncio.TimeoutError:
            logger.warning("Handshake timeout")
            peer = None

        if peer is None:
            await ws.close()
            return

        self._register(peer, ws)
        logger.info(f"Accepted connection from: {peer}")
        await self._run_peer(ws, peer)

    def _our_handshake(self) -> HandshakeMessage:
        return HandshakeMessage(
            version=PROTOCOL_VERSION,
            node_id=self.node_id,
            authority_key=self.authority_key,
            tip_height=self.chain.tip_height,
        )

    def _check_handshake(self, handshake: HandshakeMessage) -> Optional[str]:
        """Return a refusal reason, or None to accept."""
        if handshake.version != PROTOCOL_VERSION:
            return f"unsupported protocol version {handshake.version}"
        if handshake.authority_key != self.authority_key:
            return "peer follows a different authority"
        if handshake.node_id == self.node_id:
            return "connection to self"
        if handshake.node_id in self._connections:
            return "already connected"
        return None

    async def _recv_frame(self, ws: Connection) -> ProtocolFrame:
        data = await asyncio.wait_for(ws.recv(), timeout=self.config.handshake_timeout)
        if isinstance(data, str):
            data = data.encode()
        frame, _ = ProtocolFrame.from_bytes(data)
        return frame

    async def _perform_handshake(self, ws: ClientConnection, address: str, port: int) -> Optional[Peer]:
        """Perform outgoing handshake."""
        await ws.send(self._our_handshake().to_frame().to_bytes())

        frame = await self._recv_frame(ws)
        if frame.frame_type == FrameType.HANDSHAKE_ACK:
            ack = HandshakeAck.from_frame(frame)
            logger.warning(f"Peer {address}:{port} refused handshake: {ack.reason}")
            return None

        theirs = HandshakeMessage.from_frame(frame)
        reason = self._check_handshake(theirs)
        if reason:
            logger.warning(f"Refusing peer {address}:{port}: {reason}")
            await ws.send(HandshakeAck(accepted=False, node_id=self.node_id, reason=reason).to_frame().to_bytes())
            return None

        await ws.send(HandshakeAck(accepted=True, node_id=self.node_id).to_frame().to_bytes())

        ack = HandshakeAck.from_frame(await self._recv_frame(ws))
        if not ack.accepted:
            logger.warning(f"Peer {address}:{port} refused handshake: {ack.reason}")
            return None

        return Peer(
            id=theirs.node_id,
            address=address,
            port=port,
            tip_height=theirs.tip_height,
            outbound=True,
        )

    async def _receive_handshake(self, ws: ServerConnection) -> Optional[Peer]:
        """Receive incoming handshake."""
        theirs = HandshakeMessage.from_frame(await self._recv_frame(ws))

        reason = self._check_handshake(theirs)
        if reason:
            logger.warning(f"Refusing peer {theirs.node_id[:16]}...: {reason}")
            await ws.send(HandshakeAck(accepted=False, node_id=self.node_id, reason=reason).to_frame().to_bytes())
            return None

        await ws.send(self._our_handshake().to_frame().to_bytes())
        await ws.send(HandshakeAck(accepted=True, node_id=self.node_id).to_frame().to_bytes())

        ack = HandshakeAck.from_frame(await self._recv_frame(ws))
        if not ack.accepted:
            return None

        remote = ws.remote_address
        address = remote[0] if remote else "unknown"
        port = remote[1] if remote and len(remote) > 1 else 0

        return Peer(id=theirs.node_id, address=address, port=port, tip_height=theirs.tip_height)

    def _register(self, peer: Peer, ws: Connection) -> None:
        self._connections[peer.id] = ws
        self._peers[peer.id] = peer

    async def _run_peer(self, ws: Connection, peer: Peer) -> None:
        """Open the sync session and pump the peer's frames until it leaves."""
        try:
            await self.synchronizer.connect(peer.id)
            await self._handle_messages(ws, peer)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self._handle_disconnect(peer)

    async def _handle_messages(self, ws: Connection, peer: Peer) -> None:
        """Handle frames from a connected peer."""
        async for data in ws:
            if isinstance(data, str):
                data = data.encode()

            try:
                frame, _ = ProtocolFrame.from_bytes(data)
            except ValueError as e:
                await self._evict_peer(peer.id, PeerProtocolError(f"Bad frame: {e}", peer_id=peer.id))
                return

            await self._process_frame(frame, peer, ws)

    async def _process_frame(self, frame: ProtocolFrame, peer: Peer, ws: Connection) -> None:
        """Process a received protocol frame."""
        peer.update_seen()

        if frame.frame_type == FrameType.DATA:
            await self.synchronizer.handle_bytes(peer.id, frame.payload)

        elif frame.frame_type == FrameType.PING:
            await ws.send(ProtocolFrame.pong().to_bytes())

        elif frame.frame_type == FrameType.PONG:
            pass  # Just update last_seen

        elif frame.frame_type == FrameType.CLOSE:
            await ws.close()

        else:
            await self._evict_peer(
                peer.id,
                PeerProtocolError(f"Unexpected {frame.frame_type.name} frame", peer_id=peer.id),
            )

    async def _handle_disconnect(self, peer: Peer) -> None:
        """Handle peer disconnection."""
        self._connections.pop(peer.id, None)
        self._peers.pop(peer.id, None)
        await self.synchronizer.disconnect(peer.id)
        logger.info(f"Peer disconnected: {peer}")

    async def _evict_peer(self, peer_id: str, error: LedgerError) -> None:
        """Drop a peer the synchronizer flagged as misbehaving."""
        ws = self._connections.get(peer_id)
        if ws is None:
            return
        try:
            await ws.send(ProtocolFrame.close(error.code).to_bytes())
        except websockets.ConnectionClosed:
            pass
        await ws.close()

    async def send_message(self, peer_id: str, message: SyncMessage) -> bool:
        """
        Send a sync message to a specific peer.

        Returns:
            True if sent, False otherwise
        """
        ws = self._connections.get(peer_id)
        if ws is None:
            return False

        try:
            await ws.send(ProtocolFrame.data(encode_message(message)).to_bytes())
            return True
        except websockets.ConnectionClosed as e:
            logger.error(f"Failed to send to {peer_id[:16]}...: {e}")
            return False

    def get_peer(self, peer_id: str) -> Optional[Peer]:
        return self._peers.get(peer_id)

    def get_peers(self) -> list[Peer]:
        """Get all connected peers."""
        return list(self._peers.values())

    def get_peer_count(self) -> int:
        return len(self._connections)
