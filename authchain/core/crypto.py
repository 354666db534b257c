"""
Cryptographic primitives for the ledger.

This module provides:
- SHA-256 hashing for block and record digests
- Ed25519 key pair generation, signing and verification
- Batch signature verification for chain replays
- AuthorityIdentity: the signing identity of a chain's single writer
"""

import base64
import concurrent.futures
import hashlib
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from pydantic import BaseModel, ConfigDict, field_serializer, field_validator


SIGNATURE_SIZE = 64
PUBLIC_KEY_SIZE = 32


def hash_data(data: bytes) -> str:
    """
    Calculate SHA-256 hash of data.

    Args:
        data: Data to hash

    Returns:
        Hex-encoded hash string
    """
    return hashlib.sha256(data).hexdigest()


def hash_string(text: str) -> str:
    """Calculate SHA-256 hash of a string."""
    return hash_data(text.encode())


class KeyPair(BaseModel):
    """Container for an Ed25519 key pair."""

    private_key: bytes
    public_key: bytes

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_serializer('private_key', 'public_key')
    def serialize_bytes(self, v: bytes, _info):
        """Serialize bytes to base64 string."""
        return base64.b64encode(v).decode()

    @field_validator('private_key', 'public_key', mode='before')
    @classmethod
    def validate_bytes(cls, v: Any) -> bytes:
        """Decode base64 string to bytes if needed."""
        if isinstance(v, str):
            return base64.b64decode(v)
        return v

    @property
    def public_key_hex(self) -> str:
        """Get public key as hex string."""
        return self.public_key.hex()


def generate_signing_keypair() -> KeyPair:
    """
    Generate an Ed25519 key pair for digital signatures.

    Returns:
        KeyPair with raw 32-byte private and public keys
    """
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()

    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )
    public_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )

    return KeyPair(private_key=private_bytes, public_key=public_bytes)


def public_key_from_private(private_key: bytes) -> bytes:
    """Derive the raw Ed25519 public key for a raw private key."""
    key = Ed25519PrivateKey.from_private_bytes(private_key)
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def sign_message(message: bytes, private_key: bytes) -> bytes:
    """
    Sign a message using Ed25519.

    Args:
        message: The message to sign
        private_key: Ed25519 private key bytes

    Returns:
        64-byte signature
    """
    key = Ed25519PrivateKey.from_private_bytes(private_key)
    return key.sign(message)


def verify_signature(message: bytes, signature: bytes, public_key: bytes) -> bool:
    """
    Verify an Ed25519 signature.

    Malformed keys and signatures verify as False rather than raising.

    Args:
        message: The original message
        signature: The signature to verify
        public_key: Ed25519 public key bytes

    Returns:
        True if signature is valid, False otherwise
    """
    if len(signature) != SIGNATURE_SIZE:
        return False
    try:
        key = _get_cached_public_key(public_key)
        key.verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False


def batch_verify_signatures(
    items: list[tuple[bytes, bytes, bytes]],
    parallel: bool = True,
    max_workers: int | None = None
) -> list[bool]:
    """
    Verify multiple signatures with optional parallelization.

    Args:
        items: List of (message, signature, public_key) tuples
        parallel: Whether to verify in parallel
        max_workers: Max parallel workers (default: executor default)

    Returns:
        List of verification results in input order
    """
    if not items:
        return []

    # Small batches are faster sequentially
    if len(items) <= 4 or not parallel:
        return [verify_signature(m, s, pk) for m, s, pk in items]

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(lambda item: verify_signature(*item), items))


# Verified public keys are reused across blocks of the same authority
_key_cache: dict[bytes, Ed25519PublicKey] = {}
_cache_max_size = 1000


def _get_cached_public_key(public_key: bytes) -> Ed25519PublicKey:
    """Get or create cached public key object."""
    if public_key not in _key_cache:
        if len(_key_cache) >= _cache_max_size:
            _key_cache.pop(next(iter(_key_cache)))
        _key_cache[public_key] = Ed25519PublicKey.from_public_bytes(public_key)
    return _key_cache[public_key]


def clear_key_cache() -> None:
    """Clear the public key cache."""
    _key_cache.clear()


class AuthorityIdentity(BaseModel):
    """
    The identity permitted to produce and sign blocks for a chain.

    The public key is shared with every peer. The private key only exists on
    the producing node; it is excluded from serialization unless explicitly
    requested and is never put on the wire.
    """

    name: str = "authority"
    public_key: bytes
    private_key: Optional[bytes] = None

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    @field_serializer('public_key', 'private_key')
    def serialize_bytes(self, v: Optional[bytes], _info):
        if v is None:
            return None
        return base64.b64encode(v).decode()

    @field_validator('public_key', 'private_key', mode='before')
    @classmethod
    def validate_bytes(cls, v: Any) -> Any:
        if isinstance(v, str):
            return base64.b64decode(v)
        return v

    @field_validator('public_key')
    @classmethod
    def validate_public_key(cls, v: bytes) -> bytes:
        if len(v) != PUBLIC_KEY_SIZE:
            raise ValueError(f"Ed25519 public key must be {PUBLIC_KEY_SIZE} bytes, got {len(v)}")
        return v

    @classmethod
    def generate(cls, name: str = "authority") -> "AuthorityIdentity":
        """Generate a new authority identity with a fresh signing key."""
        keys = generate_signing_keypair()
        return cls(name=name, public_key=keys.public_key, private_key=keys.private_key)

    @classmethod
    def from_private_key(cls, private_key: bytes, name: str = "authority") -> "AuthorityIdentity":
        """Rebuild an identity from its raw private key."""
        return cls(
            name=name,
            public_key=public_key_from_private(private_key),
            private_key=private_key,
        )

    @property
    def can_sign(self) -> bool:
        """Whether this identity holds the private signing key."""
        return self.private_key is not None

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    @property
    def short_id(self) -> str:
        hex_key = self.public_key_hex
        return f"{hex_key[:8]}...{hex_key[-8:]}"

    def public_only(self) -> "AuthorityIdentity":
        """Return the shareable form of this identity."""
        return AuthorityIdentity(name=self.name, public_key=self.public_key)

    def sign(self, message: bytes) -> bytes:
        """Sign a message with the authority's private key."""
        if self.private_key is None:
            raise PermissionError(f"Identity {self.short_id} has no private key")
        return sign_message(message, self.private_key)

    def verify(self, message: bytes, signature: bytes) -> bool:
        """Verify a signature under the authority's public key."""
        return verify_signature(message, signature, self.public_key)

    def to_dict(self, include_private: bool = False) -> dict[str, Any]:
        """Serialize; the private key is only included on request."""
        exclude = None if include_private else {"private_key"}
        return self.model_dump(exclude=exclude)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthorityIdentity":
        return cls.model_validate(data)

    def __repr__(self) -> str:
        role = "signer" if self.can_sign else "verifier"
        return f"AuthorityIdentity(name={self.name!r}, key={self.short_id}, {role})"
