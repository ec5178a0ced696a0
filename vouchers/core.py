"""Core primitives for the voucher stack.

This module provides the foundational utilities used throughout the package:
- SHA-256 hashing over bytes and text
- 32-byte digest coercion (raw bytes or hex)
- Canonical JSON serialization for event digests
- YAML/JSON loading with consistent encoding

Design principles:
- Pure functions where possible
- No global mutable state
- Type annotations throughout

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import pathlib
from typing import Any, Optional, Union

import yaml

# Package root, computed once at module load
PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent
SCHEMAS_DIR = PACKAGE_ROOT / "schemas"

DIGEST_SIZE = 32
ZERO_DIGEST = bytes(DIGEST_SIZE)

Digestish = Union[bytes, bytearray, str]


def sha256(data: Union[bytes, str]) -> bytes:
    """Compute SHA-256 of bytes (text is UTF-8 encoded first)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).digest()


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256, returning lowercase hex."""
    return sha256(data).hex()


def coerce_digest(value: Any) -> Optional[bytes]:
    """Return ``value`` as 32 raw bytes, or None if it is not a digest.

    Accepts raw bytes/bytearray of length 32 and 64-char hex strings with an
    optional ``0x`` prefix.
    """
    if isinstance(value, (bytes, bytearray)):
        return bytes(value) if len(value) == DIGEST_SIZE else None
    if isinstance(value, str):
        s = value.strip().lower()
        if s.startswith("0x"):
            s = s[2:]
        if len(s) != DIGEST_SIZE * 2:
            return None
        try:
            return bytes.fromhex(s)
        except ValueError:
            return None
    return None


def is_zero_digest(value: bytes) -> bool:
    return value == ZERO_DIGEST


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes.

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (amounts are integers in base units)
    - Bytes rendered as lowercase hex
    """
    def _normalize(o: Any, path: str = "") -> Any:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, (bytes, bytearray)):
            return bytes(o).hex()
        if isinstance(o, dict):
            return {str(k): _normalize(v, f"{path}.{k}") for k, v in o.items()}
        if isinstance(o, (list, tuple)):
            return [_normalize(v, f"{path}[{i}]") for i, v in enumerate(o)]
        return o

    return json.dumps(
        _normalize(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
