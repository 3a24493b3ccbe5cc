"""
Content addressing for evidence packs.

The publisher stores each signed pack under an identifier derived from
the payload's hash. Identifiers are CIDv1 strings (raw codec, sha2-256
multihash, base32 multibase), the same shape an IPFS node returns for a
raw-leaf upload, so a locally computed identifier can be compared with
the store's answer.
"""

import hashlib
from typing import Union

from .util import b32_lower_nopad

CID_VERSION_1 = 0x01
CODEC_RAW = 0x55
MULTIHASH_SHA2_256 = 0x12
SHA2_256_LENGTH = 0x20
MULTIBASE_BASE32 = "b"


def sha256_hash(data: Union[bytes, str]) -> str:
    """
    Compute SHA-256 hash in prefixed form.

    Returns:
        Hash string in format "sha256:abcdef..."
    """
    if isinstance(data, str):
        data = data.encode('utf-8')

    digest = hashlib.sha256(data).hexdigest().lower()
    return f"sha256:{digest}"


def content_id(data: Union[bytes, str]) -> str:
    """
    Compute the content identifier of a payload.

    Identical payloads always yield the identical identifier, which is
    what makes publication retries safe to duplicate.

    Returns:
        CIDv1 string starting with "bafkrei"
    """
    if isinstance(data, str):
        data = data.encode('utf-8')

    digest = hashlib.sha256(data).digest()
    raw = bytes([CID_VERSION_1, CODEC_RAW, MULTIHASH_SHA2_256, SHA2_256_LENGTH]) + digest
    return MULTIBASE_BASE32 + b32_lower_nopad(raw)


def verify_content_id(declared: str, data: Union[bytes, str]) -> bool:
    """Recompute a payload's content identifier and compare."""
    return content_id(data) == declared
