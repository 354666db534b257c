"""
authchain configuration.

Provides sensible defaults with override capability, plus the logging setup
shared by every authchain process.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .core.chain import Chain, RetryPolicy
from .core.crypto import AuthorityIdentity
from .core.producer import (
    MAX_BATCH_RECORDS,
    MAX_BLOCK_BYTES,
    MAX_PENDING_RECORDS,
    MAX_RECORD_BYTES,
    AuthorityProducer,
)
from .core.storage import LMDBIndexStore, StoreConfig
from .core.validation import RecordValidator
from .network.p2p import P2PConfig, P2PNode
from .network.sync import RecordSink

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure root logging for an authchain process.

    Args:
        level: Log level name
        log_file: Optional file to log to in addition to stderr
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )


class LedgerConfig(BaseModel):
    """
    Configuration for an authority or follower node.

    All paths default to the ~/.authchain/ directory.
    Environment variables override defaults (AUTHCHAIN_* prefix).
    """

    # Identity
    name: str = "authchain-node"

    # Storage paths
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".authchain")
    keys_file: str = "authority.json"
    store_dir: str = "chain"
    map_size: int = 1024 * 1024 * 1024  # 1GB

    # Network
    host: str = "0.0.0.0"
    listen_port: int = 8765
    max_peers: int = 50

    # Production
    max_pending: int = MAX_PENDING_RECORDS
    max_record_bytes: int = MAX_RECORD_BYTES
    max_batch_records: int = MAX_BATCH_RECORDS
    max_block_bytes: int = MAX_BLOCK_BYTES
    block_interval: float = 1.0

    # Chain
    checkpoint_interval: int = 1000
    retry_attempts: int = 5
    retry_base_delay: float = 0.05
    retry_max_delay: float = 2.0

    # Sync
    max_blocks_per_response: int = 100
    stall_timeout: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def model_post_init(self, __context):
        """Apply environment variable overrides."""
        self._apply_env_overrides()

    def _apply_env_overrides(self):
        """Override config from environment variables."""
        env_map = {
            "AUTHCHAIN_NAME": ("name", str),
            "AUTHCHAIN_DATA_DIR": ("data_dir", Path),
            "AUTHCHAIN_HOST": ("host", str),
            "AUTHCHAIN_LISTEN_PORT": ("listen_port", int),
            "AUTHCHAIN_MAX_PEERS": ("max_peers", int),
            "AUTHCHAIN_BLOCK_INTERVAL": ("block_interval", float),
            "AUTHCHAIN_CHECKPOINT_INTERVAL": ("checkpoint_interval", int),
            "AUTHCHAIN_MAX_BLOCKS_PER_RESPONSE": ("max_blocks_per_response", int),
            "AUTHCHAIN_STALL_TIMEOUT": ("stall_timeout", float),
            "AUTHCHAIN_LOG_LEVEL": ("log_level", str),
            "AUTHCHAIN_LOG_FILE": ("log_file", str),
        }

        for env_var, (attr, type_fn) in env_map.items():
            value = os.environ.get(env_var)
            if value is not None:
                setattr(self, attr, type_fn(value))

    def ensure_directories(self) -> None:
        """Create the data directory if needed."""
        self.data_dir = Path(self.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def keys_path(self) -> Path:
        """Full path to the authority key file."""
        return Path(self.data_dir) / self.keys_file

    @property
    def store_path(self) -> Path:
        """Full path to the LMDB store directory."""
        return Path(self.data_dir) / self.store_dir

    # Component settings

    def store_config(self) -> StoreConfig:
        return StoreConfig(path=str(self.store_path), map_size=self.map_size)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    def p2p_config(self) -> P2PConfig:
        return P2PConfig(host=self.host, port=self.listen_port, max_peers=self.max_peers)

    # Component builders

    def open_chain(self, authority_public_key: bytes) -> Chain:
        """Open (and verify) the persisted chain under ``store_path``."""
        self.ensure_directories()
        return Chain.open(
            LMDBIndexStore(self.store_config()),
            authority_public_key,
            retry_policy=self.retry_policy(),
            checkpoint_interval=self.checkpoint_interval,
        )

    def build_producer(
        self,
        chain: Chain,
        identity: AuthorityIdentity,
        record_validator: Optional[RecordValidator] = None,
    ) -> AuthorityProducer:
        return AuthorityProducer(
            chain,
            identity,
            record_validator=record_validator,
            max_pending=self.max_pending,
            max_record_bytes=self.max_record_bytes,
            max_batch_records=self.max_batch_records,
            max_block_bytes=self.max_block_bytes,
        )

    def build_node(
        self,
        chain: Chain,
        record_validator: Optional[RecordValidator] = None,
        record_sink: Optional[RecordSink] = None,
    ) -> P2PNode:
        return P2PNode(
            chain,
            self.p2p_config(),
            record_validator=record_validator,
            max_blocks_per_response=self.max_blocks_per_response,
            stall_timeout=self.stall_timeout,
            record_sink=record_sink,
        )

    # Authority key file

    def save_identity(self, identity: AuthorityIdentity) -> None:
        """Write the authority identity, private key included, to ``keys_path``."""
        self.ensure_directories()
        path = self.keys_path
        with open(path, "w") as f:
            json.dump(identity.to_dict(include_private=identity.can_sign), f, indent=2)
        os.chmod(path, 0o600)

    def load_identity(self) -> AuthorityIdentity:
        """Read the authority identity from ``keys_path``."""
        with open(self.keys_path) as f:
            return AuthorityIdentity.from_dict(json.load(f))

    # Persistence

    def to_dict(self) -> dict[str, Any]:
        """Export config to dictionary."""
        data = self.model_dump()
        data["data_dir"] = str(self.data_dir)
        return data

    def save(self, path: Optional[Path] = None):
        """Save config to file."""
        self.ensure_directories()
        path = path or (Path(self.data_dir) / "config.json")
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Path) -> "LedgerConfig":
        """Load config from file."""
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    @classmethod
    def development(cls) -> "LedgerConfig":
        """Create development config with relaxed settings."""
        return cls(
            name="dev-node",
            data_dir=Path.home() / ".authchain-dev",
            block_interval=0.5,
            checkpoint_interval=100,
            stall_timeout=10.0,
            log_level="DEBUG",
        )

    @classmethod
    def production(cls) -> "LedgerConfig":
        """Create production config with strict settings."""
        return cls(
            name="prod-node",
            map_size=16 * 1024 * 1024 * 1024,
            retry_attempts=8,
            log_level="WARNING",
        )
