"""
Serialization utilities.

This module provides:
- Canonical JSON using orjson (sorted keys, compact, byte-stable)
- MessagePack binary encoding for wire and storage payloads
- Base64 helpers for bytes fields inside JSON documents
"""

import base64
import logging
from typing import Any

import msgpack
import orjson

logger = logging.getLogger(__name__)


def canonical_json(obj: Any) -> bytes:
    """
    Encode an object as canonical JSON.

    Keys are sorted and no whitespace is emitted, so equal objects always
    produce identical bytes. This is the encoding that gets hashed and signed.

    Args:
        obj: JSON-compatible object

    Returns:
        UTF-8 JSON bytes
    """
    return orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)


def json_loads(data: bytes | str) -> Any:
    """
    Decode JSON bytes or text.

    Args:
        data: JSON bytes or string

    Returns:
        Parsed object
    """
    if isinstance(data, str):
        data = data.encode()
    return orjson.loads(data)


def pack(obj: Any) -> bytes:
    """Encode an object with MessagePack."""
    return msgpack.packb(obj, use_bin_type=True)


def unpack(data: bytes) -> Any:
    """Decode MessagePack bytes."""
    return msgpack.unpackb(data, raw=False)


def b64encode(data: bytes) -> str:
    """Encode bytes to a base64 string."""
    return base64.b64encode(data).decode()


def b64decode(data: str | bytes) -> bytes:
    """Decode a base64 string; raises ValueError on malformed input."""
    return base64.b64decode(data, validate=True)
