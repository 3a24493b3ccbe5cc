"""
CID Sentinel

Availability watcher for content-addressed data.

Each monitoring cycle probes a CID through a set of public gateways,
classifies the result with a k-of-n policy (OK / DEGRADED / BREACH),
and emits a canonical, Ed25519-signed evidence pack that anyone holding
the watcher's public key can verify. Packs are published to a
content-addressed store, and verdicts drive a per-CID stake ledger:
OK cycles pay monitoring rewards, repeated breaches slash the
publisher's insurance pool.

Usage:
    from cidsentinel import (
        CycleRunner,
        ProbeExecutor,
        ThresholdPolicy,
        generate_keypair,
        verify_pack,
    )

    keypair = generate_keypair()
    runner = CycleRunner(
        executor=ProbeExecutor(["https://ipfs.io/ipfs", "https://dweb.link/ipfs"]),
        policy=ThresholdPolicy(k=1, n=2),
        keypair=keypair,
    )
    report = asyncio.run(runner.run_cycle("bafy..."))

    if report.ok:
        assert verify_pack(report.pack, keypair.public_key_b64)
"""

__version__ = "1.0.0"

# Canonicalization and hashing
from .canonicalization import canonicalize, canonicalize_str
from .hashing import content_id, sha256_hash, verify_content_id

# Keys
from .keys import (
    KeyPair,
    KeyValidationError,
    check_keypair,
    generate_keypair,
    load_keypair,
    load_keypair_from_env,
)

# Probing and aggregation
from .probes import ErrorReason, ProbeExecutor, ProbeResult
from .aggregation import Aggregate, CycleStatus, ThresholdPolicy, aggregate, summarize

# Evidence packs
from .schema import EvidenceCycle, SignedEvidencePack, parse_pack, validate_cycle, validate_pack
from .pack import build_cycle, load_pack, save_pack
from .signing import (
    SigningError,
    VerificationReason,
    VerificationResult,
    canonical_cycle_bytes,
    sign_cycle,
    verify_pack,
)

# Publication
from .publisher import KuboPackStore, MemoryPackStore, PackPublisher, PublishResult

# Economics
from .ledger_store import MemoryLedgerStore, SqliteLedgerStore
from .economics import (
    EconomicsEngine,
    EconomicsParams,
    LedgerRejection,
    RejectReason,
    TransferAgent,
    split_deposit,
)

# Orchestration
from .config import SentinelConfig
from .runner import CycleReport, CycleRunner, Stage, StageFailure, Watcher

__all__ = [
    "__version__",
    "canonicalize",
    "canonicalize_str",
    "content_id",
    "sha256_hash",
    "verify_content_id",
    "KeyPair",
    "KeyValidationError",
    "check_keypair",
    "generate_keypair",
    "load_keypair",
    "load_keypair_from_env",
    "ErrorReason",
    "ProbeExecutor",
    "ProbeResult",
    "Aggregate",
    "CycleStatus",
    "ThresholdPolicy",
    "aggregate",
    "summarize",
    "EvidenceCycle",
    "SignedEvidencePack",
    "parse_pack",
    "validate_cycle",
    "validate_pack",
    "build_cycle",
    "load_pack",
    "save_pack",
    "SigningError",
    "VerificationReason",
    "VerificationResult",
    "canonical_cycle_bytes",
    "sign_cycle",
    "verify_pack",
    "KuboPackStore",
    "MemoryPackStore",
    "PackPublisher",
    "PublishResult",
    "MemoryLedgerStore",
    "SqliteLedgerStore",
    "EconomicsEngine",
    "EconomicsParams",
    "LedgerRejection",
    "RejectReason",
    "TransferAgent",
    "split_deposit",
    "SentinelConfig",
    "CycleReport",
    "CycleRunner",
    "Stage",
    "StageFailure",
    "Watcher",
]
