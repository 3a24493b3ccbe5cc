"""
Utility functions for CID Sentinel.

Provides encoding, hashing and time helpers shared by the signer,
the publisher and the ledger.
"""

import base64
import binascii
import hashlib
import time
from typing import Union


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def now_epoch() -> int:
    """Get current Unix timestamp as integer."""
    return int(time.time())


def now_ms() -> int:
    """Get current Unix timestamp in milliseconds."""
    return int(time.time() * 1000)


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """
    Strict base64 decode.

    Raises ValueError on characters outside the base64 alphabet or bad
    padding instead of silently dropping them.
    """
    try:
        return base64.b64decode(s.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64: {e}") from e


def b32_lower_nopad(b: bytes) -> str:
    """RFC 4648 base32, lowercase, without padding (multibase 'b')."""
    return base64.b32encode(b).decode('ascii').lower().rstrip('=')


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]


def short_cid(cid: str, keep: int = 12) -> str:
    """Abbreviate a CID for log lines."""
    if len(cid) <= keep:
        return cid
    return cid[:keep] + "..."
