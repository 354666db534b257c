"""
In-process transport.

LocalTransport connects ChainSynchronizer instances living in one process.
Messages go through the real wire encoding and are delivered one at a time
by explicit stepping, so tests can interleave, drop or inspect traffic
between any two steps.
"""

import logging
from collections import deque
from typing import Callable, Optional

from ..exceptions import LedgerError
from .message import SyncMessage, encode_message
from .sync import ChainSynchronizer, MessageSender

logger = logging.getLogger(__name__)


def _link(a: str, b: str) -> frozenset[str]:
    return frozenset((a, b))


class LocalTransport:
    """
    Message hub for synchronizers in the same process.

    Usage:
        transport = LocalTransport()
        follower = ChainSynchronizer(chain, transport.sender_for("follower"))
        transport.register("follower", follower)
        await transport.connect("authority", "follower")
        await transport.run_until_idle()
    """

    MAX_STEPS = 100_000

    def __init__(self) -> None:
        self._nodes: dict[str, ChainSynchronizer] = {}
        self._links: set[frozenset[str]] = set()
        self._queue: deque[tuple[str, str, bytes, Optional[SyncMessage]]] = deque()
        self.history: list[tuple[str, str, SyncMessage]] = []
        self.delivered = 0
        self.dropped = 0

    def sender_for(self, node_id: str) -> MessageSender:
        """Build the send coroutine a node's synchronizer uses."""

        async def send(peer_id: str, message: SyncMessage) -> bool:
            return await self.send(node_id, peer_id, message)

        return send

    def register(self, node_id: str, synchronizer: ChainSynchronizer) -> None:
        """
        Attach a synchronizer under a node id.

        Evictions requested by the synchronizer take the link down.
        """
        self._nodes[node_id] = synchronizer
        if synchronizer.on_evict is None:

            async def evict(peer_id: str, error: LedgerError) -> None:
                await self.disconnect(node_id, peer_id)

            synchronizer.on_evict = evict

    def is_linked(self, a: str, b: str) -> bool:
        return _link(a, b) in self._links

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def connect(self, a: str, b: str) -> None:
        """Bring a link up and open sync sessions on both ends."""
        if self.is_linked(a, b):
            return
        self._links.add(_link(a, b))
        await self._nodes[a].connect(b)
        await self._nodes[b].connect(a)
        logger.debug(f"Link up: {a} <-> {b}")

    async def disconnect(self, a: str, b: str) -> None:
        """Take a link down, dropping its in-flight messages."""
        if not self.is_linked(a, b):
            return
        self._links.discard(_link(a, b))

        kept = deque(m for m in self._queue if {m[0], m[1]} != {a, b})
        self.dropped += len(self._queue) - len(kept)
        self._queue = kept

        await self._nodes[a].disconnect(b)
        await self._nodes[b].disconnect(a)
        logger.debug(f"Link down: {a} <-> {b}")

    async def send(self, src: str, dst: str, message: SyncMessage) -> bool:
        """Queue a message; False when the link is down."""
        if not self.is_linked(src, dst):
            return False
        self._queue.append((src, dst, encode_message(message), message))
        return True

    def inject(self, src: str, dst: str, data: bytes) -> None:
        """Queue raw bytes as if ``src`` had sent them."""
        self._queue.append((src, dst, data, None))

    async def step(self) -> bool:
        """
        Deliver the next queued message.

        Returns:
            False when the queue is empty
        """
        if not self._queue:
            return False

        src, dst, data, message = self._queue.popleft()
        if not self.is_linked(src, dst):
            self.dropped += 1
            return True

        if message is not None:
            self.history.append((src, dst, message))
        self.delivered += 1
        await self._nodes[dst].handle_bytes(src, data)
        return True

    async def run_until(self, predicate: Callable[[], bool], max_steps: Optional[int] = None) -> int:
        """
        Deliver messages until the predicate holds or the queue drains.

        Returns:
            Number of messages delivered
        """
        limit = max_steps or self.MAX_STEPS
        steps = 0
        while steps < limit and not predicate():
            if not await self.step():
                break
            steps += 1
        return steps

    async def run_until_idle(self, max_steps: Optional[int] = None) -> int:
        """Deliver messages until none are in flight."""
        return await self.run_until(lambda: False, max_steps)

    def messages_between(self, src: str, dst: str) -> list[SyncMessage]:
        """Delivered messages from ``src`` to ``dst``, oldest first."""
        return [m for s, d, m in self.history if s == src and d == dst]
