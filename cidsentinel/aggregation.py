"""
Evidence Aggregator.

Applies a k-of-n threshold policy to one cycle's probe results:

    success >= k                      -> OK
    degraded_min_successes <= s < k   -> DEGRADED
    otherwise                         -> BREACH

No retries happen here; a cycle is classified from exactly the results
it was given.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .probes import ProbeResult
from .schema import Threshold

FAST_LATENCY_MS = 2000
SLOW_LATENCY_MS = 5000


class CycleStatus(str, Enum):
    OK = "OK"
    DEGRADED = "DEGRADED"
    BREACH = "BREACH"


class Performance(str, Enum):
    FAST = "FAST"
    SLOW = "SLOW"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class ThresholdPolicy:
    """
    k-of-n availability policy.

    degraded_min_successes is the DEGRADED/BREACH boundary: a cycle that
    misses the k bar but still has at least this many successes is
    DEGRADED. The default of 1 means zero successes is a breach.
    """
    k: int = 2
    n: int = 3
    timeout_ms: int = 5000
    degraded_min_successes: int = 1

    def __post_init__(self):
        if not (1 <= self.k <= self.n <= 10):
            raise ValueError(f"threshold k/n invalid: k={self.k} n={self.n} (need 1 <= k <= n <= 10)")
        if not (1 <= self.degraded_min_successes <= self.k):
            raise ValueError(
                f"degraded_min_successes must be within 1..k, got {self.degraded_min_successes}"
            )
        if not (200 <= self.timeout_ms <= 30000):
            raise ValueError(f"timeout_ms out of range (200-30000): {self.timeout_ms}")

    @classmethod
    def from_config(cls, config) -> "ThresholdPolicy":
        return cls(
            k=config.threshold_k,
            n=config.threshold_n,
            timeout_ms=config.probe_timeout_ms,
            degraded_min_successes=config.degraded_min_successes,
        )

    def classify(self, success_count: int) -> CycleStatus:
        if success_count >= self.k:
            return CycleStatus.OK
        if success_count >= self.degraded_min_successes:
            return CycleStatus.DEGRADED
        return CycleStatus.BREACH

    def check_probe_count(self, count: int) -> None:
        """Raise ValueError unless a cycle carries exactly n probes."""
        if count != self.n:
            raise ValueError(f"cycle has {count} probes but the threshold requires n={self.n}")

    def to_threshold(self) -> Threshold:
        """Wire form recorded in pack metadata."""
        return Threshold(k=self.k, n=self.n, timeoutMs=self.timeout_ms)


@dataclass(frozen=True)
class Aggregate:
    """Verdict and derived metrics for one cycle."""
    status: CycleStatus
    success_count: int
    total: int
    availability: float
    avg_latency_ms: Optional[float]
    performance: Performance

    @property
    def breach(self) -> bool:
        return self.status == CycleStatus.BREACH

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "success_count": self.success_count,
            "total": self.total,
            "availability": self.availability,
            "avg_latency_ms": self.avg_latency_ms,
            "performance": self.performance.value,
        }


def performance_band(avg_latency_ms: Optional[float]) -> Performance:
    if avg_latency_ms is None:
        return Performance.TIMEOUT
    if avg_latency_ms < FAST_LATENCY_MS:
        return Performance.FAST
    if avg_latency_ms < SLOW_LATENCY_MS:
        return Performance.SLOW
    return Performance.TIMEOUT


def aggregate(probes: Sequence[ProbeResult], policy: ThresholdPolicy) -> Aggregate:
    """
    Classify a cycle.

    Availability is success / number of probes actually run (0.0 for an
    empty list). Average latency counts ok probes only.
    """
    ok_probes = [p for p in probes if p.ok]
    success_count = len(ok_probes)
    total = len(probes)

    latencies = [p.latency_ms for p in ok_probes if p.latency_ms is not None]
    avg_latency = sum(latencies) / len(latencies) if latencies else None

    return Aggregate(
        status=policy.classify(success_count),
        success_count=success_count,
        total=total,
        availability=success_count / total if total else 0.0,
        avg_latency_ms=avg_latency,
        performance=performance_band(avg_latency),
    )


def summarize(aggregates: Iterable[Aggregate]) -> Dict[str, Any]:
    """Per-run roll-up: status counts, mean availability, mean latency."""
    items: List[Aggregate] = list(aggregates)
    counts = {status.value: 0 for status in CycleStatus}
    for item in items:
        counts[item.status.value] += 1

    latencies = [a.avg_latency_ms for a in items if a.avg_latency_ms is not None]
    return {
        "cycles": len(items),
        "counts": counts,
        "mean_availability": sum(a.availability for a in items) / len(items) if items else 0.0,
        "mean_latency_ms": sum(latencies) / len(latencies) if latencies else None,
    }
