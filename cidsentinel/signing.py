"""
Evidence pack signing and verification.

The signing input is the canonical JSON of every pack field except
watcherSig. Signatures are detached Ed25519 signatures, base64 encoded.
Any change to any signed field, a different key, or a missing signature
makes verification fail; verification never raises.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from nacl.exceptions import CryptoError
from nacl.signing import VerifyKey

from .canonicalization import canonicalize
from .keys import PUBLIC_KEY_LENGTH, KeyPair
from .schema import EvidenceCycle, SignedEvidencePack, validate_cycle
from .util import b64d, b64e, sha256_hex

SIGNATURE_FIELD = "watcherSig"
SIGNATURE_LENGTH = 64


class SigningError(Exception):
    """Raised when a cycle cannot be signed (bad key, invalid cycle)."""


class VerificationOutcome(str, Enum):
    VALID = "VALID"
    INVALID = "INVALID"


class VerificationReason(str, Enum):
    MISSING_SIGNATURE = "MISSING_SIGNATURE"
    MALFORMED_KEY = "MALFORMED_KEY"
    MALFORMED_SIGNATURE = "MALFORMED_SIGNATURE"
    SCHEMA_INVALID = "SCHEMA_INVALID"
    BAD_SIGNATURE = "BAD_SIGNATURE"


@dataclass
class VerificationResult:
    """Result of verifying an evidence pack."""
    outcome: VerificationOutcome
    reason: Optional[VerificationReason] = None
    details: Optional[str] = None

    def is_valid(self) -> bool:
        return self.outcome == VerificationOutcome.VALID

    def __bool__(self) -> bool:
        return self.is_valid()

    @classmethod
    def valid(cls) -> 'VerificationResult':
        return cls(outcome=VerificationOutcome.VALID)

    @classmethod
    def invalid(cls, reason: VerificationReason, details: str = None) -> 'VerificationResult':
        return cls(outcome=VerificationOutcome.INVALID, reason=reason, details=details)


PackLike = Union[EvidenceCycle, Mapping[str, Any]]


def _as_wire_dict(pack: PackLike) -> Dict[str, Any]:
    if isinstance(pack, EvidenceCycle):
        return pack.to_wire()
    return dict(pack)


def signing_body(pack: PackLike) -> Dict[str, Any]:
    """Pack dict with the signature field removed."""
    body = _as_wire_dict(pack)
    body.pop(SIGNATURE_FIELD, None)
    return body


def canonical_cycle_bytes(pack: PackLike) -> bytes:
    """The exact bytes that get signed for this cycle."""
    return canonicalize(signing_body(pack))


def sign_cycle(cycle: EvidenceCycle, keypair: KeyPair) -> SignedEvidencePack:
    """
    Sign a cycle with the watcher's secret key.

    Raises:
        SigningError: the cycle fails schema validation or the key
            cannot sign
    """
    if not isinstance(keypair, KeyPair):
        raise SigningError("signing requires a validated KeyPair")

    body = signing_body(cycle)
    errors = validate_cycle(body)
    if errors:
        raise SigningError("cycle failed validation: " + "; ".join(errors))

    try:
        signature = keypair.signing_key().sign(canonicalize(body)).signature
    except CryptoError as e:
        raise SigningError(f"ed25519 signing failed: {e}") from e

    signed = dict(body)
    signed[SIGNATURE_FIELD] = b64e(signature)
    return SignedEvidencePack.model_validate(signed)


def verify_pack(pack: PackLike, public_key_b64: str) -> VerificationResult:
    """
    Verify a signed pack against a base64 public key.

    Steps:
    1. Signature present
    2. Public key decodes to 32 bytes
    3. Signature decodes to 64 bytes
    4. Non-signature fields are a schema-valid cycle
    5. Ed25519 verification over the canonical bytes
    """
    try:
        data = _as_wire_dict(pack)
    except (TypeError, ValueError) as e:
        return VerificationResult.invalid(VerificationReason.SCHEMA_INVALID, str(e))

    signature_b64 = data.get(SIGNATURE_FIELD)
    if not signature_b64 or not isinstance(signature_b64, str):
        return VerificationResult.invalid(VerificationReason.MISSING_SIGNATURE)

    try:
        public_key = b64d(public_key_b64)
    except (ValueError, AttributeError) as e:
        return VerificationResult.invalid(VerificationReason.MALFORMED_KEY, str(e))
    if len(public_key) != PUBLIC_KEY_LENGTH:
        return VerificationResult.invalid(
            VerificationReason.MALFORMED_KEY,
            f"public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(public_key)}"
        )

    try:
        signature = b64d(signature_b64)
    except ValueError as e:
        return VerificationResult.invalid(VerificationReason.MALFORMED_SIGNATURE, str(e))
    if len(signature) != SIGNATURE_LENGTH:
        return VerificationResult.invalid(
            VerificationReason.MALFORMED_SIGNATURE,
            f"signature must be {SIGNATURE_LENGTH} bytes, got {len(signature)}"
        )

    body = signing_body(data)
    errors = validate_cycle(body)
    if errors:
        return VerificationResult.invalid(VerificationReason.SCHEMA_INVALID, "; ".join(errors))

    try:
        payload = canonicalize(body)
        VerifyKey(public_key).verify(payload, signature)
    except (CryptoError, ValueError) as e:
        return VerificationResult.invalid(VerificationReason.BAD_SIGNATURE, str(e) or None)

    return VerificationResult.valid()


def pack_payload(pack: SignedEvidencePack) -> bytes:
    """Canonical bytes of the full signed pack, as published."""
    return canonicalize(pack.to_wire())


def pack_digest(pack: SignedEvidencePack) -> str:
    """SHA-256 hex of the published payload, for logs and anchoring."""
    return sha256_hex(pack_payload(pack))
