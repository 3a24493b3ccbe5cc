"""
Cycle runner.

Drives one monitoring cycle end to end:

    probe -> aggregate -> build -> validate -> sign -> publish
          -> anchor (optional) -> record on the ledger (optional)

Each stage returns a structured outcome; the runner decides what is
fatal. Validation, signing and ledger failures make the report not ok.
Probe and publication problems only degrade it, and the verdict stays
usable either way.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp
from pydantic import ValidationError

from .aggregation import Aggregate, CycleStatus, ThresholdPolicy, aggregate, summarize
from .economics import EconomicsEngine, LedgerRejection
from .keys import KeyPair
from .logging_config import audit_log, set_cycle_id
from .pack import build_cycle
from .probes import ProbeExecutor, ProbeResult
from .publisher import PackPublisher, PublishResult
from .schema import SignedEvidencePack
from .signing import SigningError, pack_digest, sign_cycle
from .util import mask_sensitive, now_epoch, short_cid

logger = logging.getLogger(__name__)

# (cid, pack content id, verdict) -> external reference such as a tx hash
Anchor = Callable[[str, str, CycleStatus], Awaitable[Optional[str]]]


class Stage(str, Enum):
    VALIDATION = "validation"
    PROBE = "probe"
    SIGNING = "signing"
    UPLOAD = "upload"
    ANCHOR = "anchor"
    LEDGER = "ledger"


FATAL_STAGES = frozenset({Stage.VALIDATION, Stage.SIGNING, Stage.LEDGER})


@dataclass
class StageFailure:
    stage: Stage
    error: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {"stage": self.stage.value, "error": self.error}
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class CycleReport:
    """Everything one cycle produced, including what went wrong."""
    cid: str
    cycle_id: str = ""
    verdict: Optional[CycleStatus] = None
    aggregate: Optional[Aggregate] = None
    probes: List[ProbeResult] = field(default_factory=list)
    pack: Optional[SignedEvidencePack] = None
    publish: Optional[PublishResult] = None
    anchor_ref: Optional[str] = None
    failures: List[StageFailure] = field(default_factory=list)
    timings_ms: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        if self.error is not None:
            return False
        return not any(f.stage in FATAL_STAGES for f in self.failures)

    @property
    def pack_cid(self) -> Optional[str]:
        if self.publish is not None and self.publish.success:
            return self.publish.content_id
        return None

    def failed(self, stage: Stage) -> bool:
        return any(f.stage == stage for f in self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cid": self.cid,
            "cycle_id": self.cycle_id,
            "ok": self.ok,
            "verdict": self.verdict.value if self.verdict else None,
            "aggregate": self.aggregate.to_dict() if self.aggregate else None,
            "pack_cid": self.pack_cid,
            "anchor_ref": self.anchor_ref,
            "failures": [f.to_dict() for f in self.failures],
            "timings_ms": self.timings_ms,
            "error": self.error,
        }


class CycleRunner:
    """
    One watcher's cycle pipeline.

    publisher, anchor and engine are optional collaborators; a cycle
    without them still probes, classifies and signs.
    """

    def __init__(
        self,
        executor: ProbeExecutor,
        policy: ThresholdPolicy,
        keypair: KeyPair,
        publisher: Optional[PackPublisher] = None,
        engine: Optional[EconomicsEngine] = None,
        anchor: Optional[Anchor] = None,
        region: str = "global",
        window_minutes: int = 5,
        attempted_libp2p: bool = False,
        auto_payout: bool = True,
        clock: Callable[[], int] = now_epoch,
    ):
        self.executor = executor
        self.policy = policy
        self.keypair = keypair
        self.publisher = publisher
        self.engine = engine
        self.anchor = anchor
        self.region = region
        self.window_minutes = window_minutes
        self.attempted_libp2p = attempted_libp2p
        self.auto_payout = auto_payout
        self.clock = clock

    @classmethod
    def from_config(cls, config, keypair: KeyPair, **kwargs) -> "CycleRunner":
        kwargs.setdefault("executor", ProbeExecutor.from_config(config))
        kwargs.setdefault("policy", ThresholdPolicy.from_config(config))
        kwargs.setdefault("publisher", PackPublisher.from_config(config))
        return cls(
            keypair=keypair,
            region=config.region,
            window_minutes=config.window_minutes,
            attempted_libp2p=config.attempted_libp2p,
            **kwargs,
        )

    async def run_cycle(self, cid: str, cycle_id: Optional[str] = None) -> CycleReport:
        report = CycleReport(cid=cid, cycle_id=set_cycle_id(cycle_id))

        if not isinstance(cid, str) or not cid.strip():
            report.failures.append(StageFailure(Stage.VALIDATION, "cid is empty"))
            audit_log.stage_failed(str(cid), Stage.VALIDATION.value, "cid is empty")
            return report

        audit_log.cycle_started(cid, len(self.executor.gateways))

        # Probe
        started = time.monotonic()
        try:
            report.probes = await self.executor.probe(cid)
        except (aiohttp.ClientError, OSError) as e:
            self._fail(report, Stage.PROBE, f"probe batch failed: {e}")
            return report
        report.timings_ms["probe"] = _ms_since(started)

        try:
            self.policy.check_probe_count(len(report.probes))
        except ValueError as e:
            self._fail(report, Stage.VALIDATION, str(e))
            return report

        # Aggregate
        agg = aggregate(report.probes, self.policy)
        report.aggregate = agg
        report.verdict = agg.status
        audit_log.cycle_verdict(cid, agg.status.value, agg.success_count, agg.total, agg.avg_latency_ms)
        if agg.success_count == 0:
            report.failures.append(StageFailure(
                Stage.PROBE,
                "no gateway served the content",
                {"errors": {p.vantage_point: p.error_reason for p in report.probes}},
            ))

        # Build, validate and sign
        started = time.monotonic()
        try:
            cycle = build_cycle(
                cid,
                report.probes,
                self.policy,
                region=self.region,
                window_minutes=self.window_minutes,
                attempted_libp2p=self.attempted_libp2p,
                ts=self.clock(),
            )
        except ValidationError as e:
            self._fail(report, Stage.VALIDATION, f"cycle failed validation: {e.error_count()} error(s)",
                       {"errors": [err.get("msg") for err in e.errors()]})
            return report
        except ValueError as e:
            self._fail(report, Stage.VALIDATION, str(e))
            return report

        try:
            report.pack = sign_cycle(cycle, self.keypair)
        except SigningError as e:
            self._fail(report, Stage.SIGNING, str(e))
            return report
        report.timings_ms["sign"] = _ms_since(started)
        audit_log.pack_signed(cid, pack_digest(report.pack), mask_sensitive(self.keypair.public_key_b64, 8))

        # Publish
        if self.publisher is not None:
            started = time.monotonic()
            result = await self.publisher.publish(report.pack)
            report.publish = result
            report.timings_ms["upload"] = _ms_since(started)
            if result.success:
                audit_log.pack_published(cid, result.content_id, result.attempts, result.size)
            else:
                report.failures.append(StageFailure(
                    Stage.UPLOAD, result.error or "upload failed",
                    {"attempts": result.attempts, "retryable": result.retryable},
                ))
                audit_log.publication_failed(cid, result.error or "upload failed", result.attempts, result.retryable)

        # Anchor
        if self.anchor is not None and report.pack_cid:
            started = time.monotonic()
            try:
                report.anchor_ref = await self.anchor(cid, report.pack_cid, agg.status)
            except Exception as e:
                logger.exception("Anchor call failed for %s", short_cid(cid))
                self._fail(report, Stage.ANCHOR, f"{type(e).__name__}: {e}")
            report.timings_ms["anchor"] = _ms_since(started)

        # Ledger
        if self.engine is not None:
            self._record(report, agg.status)

        return report

    def _record(self, report: CycleReport, status: CycleStatus) -> None:
        engine = self.engine
        try:
            record = engine.record_cycle(report.cid, status, caller=engine.params.policy)
            if (
                self.auto_payout
                and status == CycleStatus.BREACH
                and record.consecutive_breaches >= engine.params.breach_threshold
                and record.insurance_pool > 0
            ):
                validator_share, treasury_share = engine.payout_on_breach(report.cid)
                logger.warning(
                    "Insurance payout for %s: validator=%d treasury=%d",
                    short_cid(report.cid), validator_share, treasury_share,
                )
        except LedgerRejection as e:
            self._fail(report, Stage.LEDGER, str(e), {"reason": e.reason.value})

    def _fail(self, report: CycleReport, stage: Stage, error: str, details: Optional[Dict[str, Any]] = None) -> None:
        report.failures.append(StageFailure(stage, error, details))
        audit_log.stage_failed(report.cid, stage.value, error)

    async def run_many(self, cids: Sequence[str], max_concurrent: int = 3) -> List[CycleReport]:
        """
        Run cycles for several CIDs, at most max_concurrent at a time.
        An exception in one CID's cycle becomes that CID's report.
        """
        batch_size = max(1, max_concurrent)
        reports: List[CycleReport] = []
        for start in range(0, len(cids), batch_size):
            batch = list(cids[start:start + batch_size])
            outcomes = await asyncio.gather(*(self.run_cycle(cid) for cid in batch), return_exceptions=True)
            for cid, outcome in zip(batch, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    logger.error("Cycle for %s crashed: %r", short_cid(cid), outcome)
                    reports.append(CycleReport(cid=cid, error=f"{type(outcome).__name__}: {outcome}"))
                else:
                    reports.append(outcome)
        return reports


class Watcher:
    """
    Periodic driver around a CycleRunner.

    Cycles never overlap; the next one starts interval_seconds after the
    previous one started, but never sooner than min_spacing_seconds
    after it finished.
    """

    def __init__(
        self,
        runner: CycleRunner,
        interval_seconds: float = 300.0,
        min_spacing_seconds: float = 10.0,
        max_concurrent: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.runner = runner
        self.interval_seconds = interval_seconds
        self.min_spacing_seconds = min_spacing_seconds
        self.max_concurrent = max_concurrent
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.last_reports: List[CycleReport] = []

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_once(self, cids: Sequence[str]) -> Optional[List[CycleReport]]:
        """Run one round; returns None when a round is already in progress."""
        if self._lock.locked():
            logger.warning("Cycle already in progress, skipping")
            return None
        async with self._lock:
            reports = await self.runner.run_many(cids, self.max_concurrent)
        self.last_reports = reports
        summary = summarize(r.aggregate for r in reports if r.aggregate is not None)
        logger.info("Round finished: %s", summary)
        return reports

    async def run_forever(self, cids: Sequence[str], max_rounds: Optional[int] = None) -> int:
        """Loop until cancelled or max_rounds rounds ran. Returns rounds run."""
        rounds = 0
        while max_rounds is None or rounds < max_rounds:
            started = time.monotonic()
            await self.run_once(cids)
            rounds += 1
            if max_rounds is not None and rounds >= max_rounds:
                break
            elapsed = time.monotonic() - started
            await self._sleep(max(self.interval_seconds - elapsed, self.min_spacing_seconds))
        return rounds


def _ms_since(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))
