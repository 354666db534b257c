"""
Index store backends for the ledger.

This module provides:
- IndexStore: the narrow persistence contract consumed by the chain
- MemoryIndexStore: dict-backed store for tests and ephemeral followers
- LMDBIndexStore: LMDB-backed store with one write transaction per block

Persisted layout:
- ``h:<height:8 bytes big-endian>`` -> block (canonical JSON)
- ``r:<record hash>`` -> height of the block holding the record
- ``m:tip`` -> tip marker ``{"height", "hash"}``
- ``m:checkpoint`` -> checkpoint marker ``{"height", "hash"}``
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import lmdb
from pydantic import BaseModel, ConfigDict, ValidationError

from ..exceptions import StorageFailureError
from .block import Block
from .serialization import canonical_json, json_loads

logger = logging.getLogger(__name__)


class StoreConfig(BaseModel):
    """Configuration for LMDB storage."""

    path: str
    map_size: int = 1024 * 1024 * 1024  # 1GB default
    max_dbs: int = 4
    sync: bool = True
    readonly: bool = False

    model_config = ConfigDict(arbitrary_types_allowed=True)


class TipMarker(BaseModel):
    """Height and hash of a persisted block, used to detect corruption."""

    height: int
    hash: str


class IndexStore(ABC):
    """
    Persistence contract consumed by the chain.

    ``put`` must write the block, its record index entries and the tip
    marker as one atomic unit.
    """

    @abstractmethod
    def put(self, height: int, block: Block) -> None:
        """Persist a block at a height and move the tip marker to it."""

    @abstractmethod
    def get(self, height: int) -> Optional[Block]:
        """Get the block at a height, or None."""

    @abstractmethod
    def get_tip_marker(self) -> Optional[TipMarker]:
        """Get the stored tip marker, or None for an empty store."""

    def get_tip_height(self) -> int:
        """Get the tip height, -1 when empty."""
        marker = self.get_tip_marker()
        return marker.height if marker else -1

    @abstractmethod
    def find_record(self, record_hash: str) -> Optional[int]:
        """Get the height of the block containing a record."""

    @abstractmethod
    def get_checkpoint(self) -> Optional[TipMarker]:
        """Get the last verified checkpoint marker."""

    @abstractmethod
    def set_checkpoint(self, marker: TipMarker) -> None:
        """Record a verified checkpoint marker."""

    def close(self) -> None:
        """Release resources."""


class MemoryIndexStore(IndexStore):
    """Dict-backed index store."""

    def __init__(self) -> None:
        self._blocks: dict[int, Block] = {}
        self._records: dict[str, int] = {}
        self._tip: Optional[TipMarker] = None
        self._checkpoint: Optional[TipMarker] = None

    def put(self, height: int, block: Block) -> None:
        self._blocks[height] = block
        for record in block.records:
            self._records.setdefault(record.hash, height)
        self._tip = TipMarker(height=height, hash=block.hash)

    def get(self, height: int) -> Optional[Block]:
        return self._blocks.get(height)

    def get_tip_marker(self) -> Optional[TipMarker]:
        return self._tip

    def find_record(self, record_hash: str) -> Optional[int]:
        return self._records.get(record_hash)

    def get_checkpoint(self) -> Optional[TipMarker]:
        return self._checkpoint

    def set_checkpoint(self, marker: TipMarker) -> None:
        self._checkpoint = marker

    def __len__(self) -> int:
        return len(self._blocks)


class LMDBIndexStore(IndexStore):
    """
    Index store on LMDB.

    Features:
    - Memory-mapped reads
    - One ACID write transaction per block (block + record index + tip)
    - Multi-reader, single-writer concurrency
    """

    HEIGHT_PREFIX = b"h:"
    RECORD_PREFIX = b"r:"
    TIP_KEY = b"m:tip"
    CHECKPOINT_KEY = b"m:checkpoint"

    def __init__(self, config: StoreConfig):
        """Open (and create if needed) the LMDB environment."""
        self.config = config
        path = Path(config.path)
        try:
            path.mkdir(parents=True, exist_ok=True)
            self._env = lmdb.open(
                str(path),
                map_size=config.map_size,
                max_dbs=config.max_dbs,
                sync=config.sync,
                readonly=config.readonly,
            )
        except (OSError, lmdb.Error) as e:
            raise StorageFailureError(f"Failed to open store at {path}: {e}") from e
        logger.debug(f"Opened LMDB store at {path}")

    @classmethod
    def _height_key(cls, height: int) -> bytes:
        return cls.HEIGHT_PREFIX + height.to_bytes(8, "big")

    @classmethod
    def _record_key(cls, record_hash: str) -> bytes:
        return cls.RECORD_PREFIX + record_hash.encode()

    def put(self, height: int, block: Block) -> None:
        data = canonical_json(block.to_dict())
        tip = canonical_json({"height": height, "hash": block.hash})
        try:
            with self._env.begin(write=True) as txn:
                txn.put(self._height_key(height), data)
                for record in block.records:
                    txn.put(
                        self._record_key(record.hash),
                        height.to_bytes(8, "big"),
                        overwrite=False,
                    )
                txn.put(self.TIP_KEY, tip)
        except lmdb.Error as e:
            raise StorageFailureError(f"Failed to write block {height}: {e}") from e

    def _read(self, key: bytes) -> Optional[bytes]:
        try:
            with self._env.begin(write=False) as txn:
                return txn.get(key)
        except lmdb.Error as e:
            raise StorageFailureError(f"Failed to read {key!r}: {e}") from e

    def get(self, height: int) -> Optional[Block]:
        data = self._read(self._height_key(height))
        if data is None:
            return None
        try:
            return Block.from_dict(json_loads(data))
        except (ValueError, ValidationError) as e:
            raise StorageFailureError(f"Stored block {height} is unreadable: {e}") from e

    def _read_marker(self, key: bytes) -> Optional[TipMarker]:
        data = self._read(key)
        if data is None:
            return None
        return TipMarker.model_validate(json_loads(data))

    def get_tip_marker(self) -> Optional[TipMarker]:
        return self._read_marker(self.TIP_KEY)

    def find_record(self, record_hash: str) -> Optional[int]:
        data = self._read(self._record_key(record_hash))
        return int.from_bytes(data, "big") if data is not None else None

    def get_checkpoint(self) -> Optional[TipMarker]:
        return self._read_marker(self.CHECKPOINT_KEY)

    def set_checkpoint(self, marker: TipMarker) -> None:
        try:
            with self._env.begin(write=True) as txn:
                txn.put(self.CHECKPOINT_KEY, canonical_json(marker.model_dump()))
        except lmdb.Error as e:
            raise StorageFailureError(f"Failed to write checkpoint: {e}") from e

    def close(self) -> None:
        if self._env is not None:
            self._env.close()
            self._env = None

    @property
    def stats(self) -> dict[str, Any]:
        """Get storage statistics."""
        stat = self._env.stat()
        info = self._env.info()
        return {
            "entries": stat["entries"],
            "depth": stat["depth"],
            "map_size": info["map_size"],
            "last_txnid": info["last_txnid"],
        }
