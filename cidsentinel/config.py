"""
Configuration module for CID Sentinel.

Centralizes all configuration with environment variable support and
validation. Everything the watcher, the publisher and the economics
engine recognize is read here; nothing else in the package touches
os.environ except the key loader.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# ============================================================
# Environment Configuration
# ============================================================

# One probe per gateway, so the list length is the threshold's n
DEFAULT_GATEWAYS = [
    "https://ipfs.io/ipfs",
    "https://dweb.link/ipfs",
    "https://cloudflare-ipfs.com/ipfs",
]

# One unit of the ledger currency in its smallest denomination
WEI_PER_UNIT = 10 ** 18
BPS_DENOMINATOR = 10_000


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# ============================================================
# Settings
# ============================================================

@dataclass(frozen=True)
class SentinelConfig:
    """
    Complete watcher configuration.

    Build with SentinelConfig.from_env() in services, or construct
    directly in tests. Call validate() before the first cycle.
    """
    # Probing
    gateways: List[str] = field(default_factory=lambda: list(DEFAULT_GATEWAYS))
    probe_timeout_ms: int = 5000
    max_concurrent_probes: int = 5
    threshold_k: int = 2
    threshold_n: int = 3
    degraded_min_successes: int = 1
    window_minutes: int = 5
    region: str = "global"
    attempted_libp2p: bool = False

    # Economics
    platform_fee_bps: int = 250
    reward_bps: int = 1500
    insurance_bps: int = 8500
    ok_reward_wei: int = 10 ** 14
    breach_threshold: int = 3
    payout_bps: int = 5000
    validator_share_bps: int = 6000
    withdraw_cooldown_seconds: int = 86400
    min_insurance_floor_wei: int = 0
    treasury_address: str = "treasury"
    validator_address: str = "validator"
    policy_address: str = "policy"

    # Publication
    upload_max_retries: int = 2
    upload_backoff_seconds: float = 1.0
    ipfs_api_url: Optional[str] = None

    # Storage
    ledger_db_path: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = True
    debug: bool = False

    @classmethod
    def from_env(cls) -> "SentinelConfig":
        """Read every recognized option from the environment."""
        return cls(
            gateways=_env_list("IPFS_GATEWAYS", DEFAULT_GATEWAYS),
            probe_timeout_ms=_env_int("PROBE_TIMEOUT", 5000),
            max_concurrent_probes=_env_int("PROBE_CONCURRENCY", 5),
            threshold_k=_env_int("THRESHOLD_K", 2),
            threshold_n=_env_int("THRESHOLD_N", 3),
            degraded_min_successes=_env_int("DEGRADED_MIN_SUCCESSES", 1),
            window_minutes=_env_int("WINDOW_MINUTES", 5),
            region=os.getenv("SENTINEL_REGION", "global"),
            attempted_libp2p=_env_bool("ATTEMPTED_LIBP2P", False),
            platform_fee_bps=_env_int("PLATFORM_FEE_BPS", 250),
            reward_bps=_env_int("REWARD_BPS", 1500),
            insurance_bps=_env_int("INSURANCE_BPS", 8500),
            ok_reward_wei=_env_int("OK_REWARD_WEI", 10 ** 14),
            breach_threshold=_env_int("BREACH_THRESHOLD", 3),
            payout_bps=_env_int("PAYOUT_BPS", 5000),
            validator_share_bps=_env_int("VALIDATOR_SHARE_BPS", 6000),
            withdraw_cooldown_seconds=_env_int("WITHDRAW_COOLDOWN_SECONDS", 86400),
            min_insurance_floor_wei=_env_int("MIN_INSURANCE_FLOOR_WEI", 0),
            treasury_address=os.getenv("TREASURY_ADDRESS", "treasury"),
            validator_address=os.getenv("ATTESTA_VALIDATOR_ADDRESS", "validator"),
            policy_address=os.getenv("POLICY_ADDRESS", "policy"),
            upload_max_retries=_env_int("UPLOAD_MAX_RETRIES", 2),
            upload_backoff_seconds=_env_float("UPLOAD_BACKOFF_SECONDS", 1.0),
            ipfs_api_url=os.getenv("IPFS_API_URL") or None,
            ledger_db_path=os.getenv("LEDGER_DB_PATH") or None,
            log_level=os.getenv("SENTINEL_LOG_LEVEL", "INFO"),
            log_json=_env_bool("SENTINEL_LOG_JSON", True),
            debug=_env_bool("SENTINEL_DEBUG", False),
        )

    def validate(self) -> "SentinelConfig":
        """
        Check every invariant and raise ValueError naming the first
        offending option. Returns self so calls can be chained.
        """
        if not self.gateways:
            raise ValueError("IPFS_GATEWAYS must list at least one gateway")
        if not (1 <= self.threshold_k <= self.threshold_n <= 10):
            raise ValueError(
                f"THRESHOLD_K/THRESHOLD_N invalid: need 1 <= k <= n <= 10, "
                f"got k={self.threshold_k} n={self.threshold_n}"
            )
        if len(self.gateways) != self.threshold_n:
            raise ValueError(
                f"IPFS_GATEWAYS lists {len(self.gateways)} gateways but THRESHOLD_N is "
                f"{self.threshold_n}; each cycle probes every gateway once"
            )
        if not (1 <= self.degraded_min_successes <= self.threshold_k):
            raise ValueError(
                f"DEGRADED_MIN_SUCCESSES must be within 1..k, got {self.degraded_min_successes}"
            )
        if not (200 <= self.probe_timeout_ms <= 30000):
            raise ValueError(f"PROBE_TIMEOUT out of range (200-30000ms): {self.probe_timeout_ms}")
        if self.max_concurrent_probes < 1:
            raise ValueError("PROBE_CONCURRENCY must be >= 1")
        if not (1 <= self.window_minutes <= 60):
            raise ValueError(f"WINDOW_MINUTES out of range (1-60): {self.window_minutes}")

        for name in ("platform_fee_bps", "reward_bps", "insurance_bps",
                     "payout_bps", "validator_share_bps"):
            value = getattr(self, name)
            if not (0 <= value <= BPS_DENOMINATOR):
                raise ValueError(f"{name.upper()} must be within 0..10000, got {value}")
        if self.reward_bps + self.insurance_bps != BPS_DENOMINATOR:
            raise ValueError(
                f"REWARD_BPS + INSURANCE_BPS must equal 10000, "
                f"got {self.reward_bps} + {self.insurance_bps}"
            )

        for name in ("ok_reward_wei", "min_insurance_floor_wei", "withdraw_cooldown_seconds"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name.upper()} must be >= 0")
        if self.breach_threshold < 1:
            raise ValueError("BREACH_THRESHOLD must be >= 1")
        if self.upload_max_retries < 0:
            raise ValueError("UPLOAD_MAX_RETRIES must be >= 0")
        if self.upload_backoff_seconds < 0:
            raise ValueError("UPLOAD_BACKOFF_SECONDS must be >= 0")
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Printable view; contains no key material."""
        return {k: getattr(self, k) for k in self.__dataclass_fields__}

    @property
    def effective_log_level(self) -> str:
        """SENTINEL_DEBUG overrides SENTINEL_LOG_LEVEL."""
        return "DEBUG" if self.debug else self.log_level
