"""
Key management module for CID Sentinel.

Loads, generates and validates the watcher's Ed25519 signing keypair.
Secret keys use the 64-byte layout (32-byte seed followed by the
32-byte public key); public keys are 32 bytes. Any other length is a
configuration error reported before the first signing attempt, never
silently truncated or padded.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from nacl.bindings import crypto_sign_PUBLICKEYBYTES, crypto_sign_SECRETKEYBYTES
from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey

from .util import b64d, b64e

SECRET_KEY_ENV = "WATCHER_SECRET_KEY_BASE64"
PUBLIC_KEY_ENV = "WATCHER_PUBLIC_KEY_BASE64"

SECRET_KEY_LENGTH = crypto_sign_SECRETKEYBYTES  # 64
PUBLIC_KEY_LENGTH = crypto_sign_PUBLICKEYBYTES  # 32
SEED_LENGTH = SECRET_KEY_LENGTH - PUBLIC_KEY_LENGTH


class KeyValidationError(ValueError):
    """Raised when key material is malformed or inconsistent."""


@dataclass(frozen=True)
class KeyPair:
    """Ed25519 watcher keypair. The secret half never appears in repr."""
    secret_key: bytes = field(repr=False)
    public_key: bytes

    def __post_init__(self):
        error = validate_key_lengths(self.secret_key, self.public_key)
        if error:
            raise KeyValidationError(error)

    @property
    def public_key_b64(self) -> str:
        return b64e(self.public_key)

    def signing_key(self) -> SigningKey:
        """PyNaCl signing key built from the seed half of the secret key."""
        return SigningKey(self.secret_key[:SEED_LENGTH])

    def verify_key(self) -> VerifyKey:
        return VerifyKey(self.public_key)


def validate_key_lengths(secret_key: bytes, public_key: bytes) -> Optional[str]:
    """
    Validate key formats.

    Returns:
        None when both lengths are correct, otherwise an error message
    """
    if len(secret_key) != SECRET_KEY_LENGTH:
        return f"Secret key must be {SECRET_KEY_LENGTH} bytes, got {len(secret_key)}"
    if len(public_key) != PUBLIC_KEY_LENGTH:
        return f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(public_key)}"
    return None


def generate_keypair() -> KeyPair:
    """Generate a fresh Ed25519 keypair."""
    sk = SigningKey.generate()
    public = bytes(sk.verify_key)
    return KeyPair(secret_key=bytes(sk) + public, public_key=public)


def keypair_from_seed(seed: bytes) -> KeyPair:
    """Deterministic keypair from a 32-byte seed (tests and fixtures)."""
    if len(seed) != SEED_LENGTH:
        raise KeyValidationError(f"Seed must be {SEED_LENGTH} bytes, got {len(seed)}")
    sk = SigningKey(seed)
    public = bytes(sk.verify_key)
    return KeyPair(secret_key=seed + public, public_key=public)


def load_keypair(secret_key_b64: str, public_key_b64: str) -> KeyPair:
    """
    Decode and validate a base64 keypair.

    Raises:
        KeyValidationError: bad base64, wrong length, or the two halves
            do not belong together
    """
    try:
        secret = b64d(secret_key_b64.strip())
    except ValueError as e:
        raise KeyValidationError(f"Secret key is not valid base64: {e}") from e
    try:
        public = b64d(public_key_b64.strip())
    except ValueError as e:
        raise KeyValidationError(f"Public key is not valid base64: {e}") from e

    keypair = KeyPair(secret_key=secret, public_key=public)
    if not check_keypair(keypair):
        raise KeyValidationError("Secret key and public key do not form a keypair")
    return keypair


def load_keypair_from_env() -> Optional[KeyPair]:
    """
    Load the watcher keypair from environment variables.

    Returns:
        None when either variable is unset; raises KeyValidationError
        when they are set but invalid.
    """
    secret_b64 = os.getenv(SECRET_KEY_ENV)
    public_b64 = os.getenv(PUBLIC_KEY_ENV)
    if not secret_b64 or not public_b64:
        return None
    return load_keypair(secret_b64, public_b64)


def keypair_to_base64(keypair: KeyPair) -> Dict[str, str]:
    """Base64 form of a keypair, keyed by environment variable name."""
    return {
        SECRET_KEY_ENV: b64e(keypair.secret_key),
        PUBLIC_KEY_ENV: b64e(keypair.public_key),
    }


def check_keypair(keypair: KeyPair) -> bool:
    """
    Test that keys work together (sign + verify), and that the public
    half embedded in the secret key matches the published key.
    """
    if keypair.secret_key[SEED_LENGTH:] != keypair.public_key:
        return False
    message = b"cid-sentinel key check"
    try:
        signature = keypair.signing_key().sign(message).signature
        keypair.verify_key().verify(message, signature)
        return True
    except CryptoError:
        return False
