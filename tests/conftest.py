"""Shared fixtures for authchain tests."""

import pytest

from authchain.core.block import Block, ChainTip, Record
from authchain.core.chain import Chain
from authchain.core.crypto import AuthorityIdentity
from authchain.core.producer import AuthorityProducer


class FakeClock:
    """Settable clock for timestamp and liveness tests."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def identity():
    return AuthorityIdentity.generate()


@pytest.fixture
def other_identity():
    return AuthorityIdentity.generate(name="impostor")


@pytest.fixture
def chain(identity):
    return Chain(identity.public_key)


@pytest.fixture
def producer(chain, identity):
    return AuthorityProducer(chain, identity)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_block(identity):
    """Build a signed block extending a tip."""

    def _make(tip=None, records=(), timestamp=None, signer=None):
        tip = tip or ChainTip.anchor()
        block = Block.build(
            height=tip.next_height,
            previous_hash=tip.hash,
            timestamp=tip.timestamp + 1 if timestamp is None else timestamp,
            records=records,
        )
        return block.signed_by(signer or identity)

    return _make


@pytest.fixture
def build_chain():
    """Produce genesis plus ``count`` single-record blocks."""

    async def _build(producer: AuthorityProducer, count: int, prefix: str = "record") -> list[Block]:
        blocks = [await producer.create_genesis()]
        for i in range(count):
            block = await producer.create_block([Record.create(f"{prefix}-{i}".encode())])
            blocks.append(block)
        return blocks

    return _build
