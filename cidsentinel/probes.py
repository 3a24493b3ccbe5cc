"""
Probe Executor.

Issues one availability check per gateway for a CID, bounded by a
per-probe timeout and a maximum number of probes in flight. Every
gateway gets exactly one result slot; a failing gateway never aborts its
siblings and failures are kept, classified as timeout, network or
bad-status.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import aiohttp

from . import __version__
from .util import now_ms, short_cid

logger = logging.getLogger(__name__)

USER_AGENT = f"CID-Sentinel/{__version__}"

# Cosmetic vantage-point names for well-known gateways
GATEWAY_LABELS = {
    "ipfs.io": "ipfs-io",
    "dweb.link": "dweb-link",
    "cloudflare-ipfs.com": "cloudflare",
    "gateway.pinata.cloud": "pinata",
    "4everland.io": "4everland",
    "w3s.link": "web3-storage",
}


class ProbeMethod(str, Enum):
    HTTP = "HTTP"
    LIBP2P = "LIBP2P"


class ErrorReason(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    BAD_STATUS = "bad-status"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one gateway check. Immutable once produced."""
    vantage_point: str
    method: str
    gateway_url: str
    ok: bool
    latency_ms: Optional[int] = None
    error_reason: Optional[str] = None
    timestamp: int = 0
    status_code: Optional[int] = None
    content_length: Optional[int] = None
    detail: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        """Probe entry as it appears in an evidence pack."""
        wire: Dict[str, Any] = {
            "vp": self.vantage_point,
            "method": self.method,
            "gateway": self.gateway_url,
            "ok": self.ok,
        }
        if self.latency_ms is not None:
            wire["latMs"] = self.latency_ms
        if self.error_reason is not None:
            wire["err"] = self.error_reason
        return wire


def vantage_point_labels(gateways: Sequence[str]) -> List[str]:
    """
    Label each gateway from the static table, falling back to its
    position. Labels are unique within one gateway set.
    """
    labels: List[str] = []
    for index, gateway in enumerate(gateways):
        host = (urlparse(gateway).hostname or "").lower()
        label = GATEWAY_LABELS.get(host)
        if label is None or label in labels:
            label = f"gateway-{index + 1}"
        labels.append(label)
    return labels


def probe_url(gateway: str, cid: str) -> str:
    return f"{gateway.rstrip('/')}/{cid}"


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))


class ProbeExecutor:
    """
    Bounded-concurrency gateway prober.

    Args:
        gateways: Gateway base URLs, e.g. "https://ipfs.io/ipfs"
        timeout_ms: Per-probe timeout
        max_concurrency: Maximum probes in flight for one CID
        session: Optional shared aiohttp session; one is opened per
            batch when omitted
    """

    def __init__(
        self,
        gateways: Sequence[str],
        timeout_ms: int = 5000,
        max_concurrency: int = 5,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if not gateways:
            raise ValueError("at least one gateway is required")
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.gateways = list(gateways)
        self.timeout_ms = timeout_ms
        self.max_concurrency = max_concurrency
        self._session = session
        self._labels = vantage_point_labels(self.gateways)

    @classmethod
    def from_config(cls, config, session: Optional[aiohttp.ClientSession] = None) -> "ProbeExecutor":
        return cls(
            gateways=config.gateways,
            timeout_ms=config.probe_timeout_ms,
            max_concurrency=config.max_concurrent_probes,
            session=session,
        )

    async def probe(self, cid: str) -> List[ProbeResult]:
        """
        Probe every gateway for one CID.

        Returns:
            One ProbeResult per gateway, in gateway order, failures
            included. Returns only after every probe has completed or
            timed out.
        """
        started = time.monotonic()
        semaphore = asyncio.Semaphore(self.max_concurrency)
        results: List[Optional[ProbeResult]] = [None] * len(self.gateways)

        async def run(index: int, session: aiohttp.ClientSession) -> None:
            async with semaphore:
                results[index] = await self._probe_one(session, cid, index)

        if self._session is not None:
            outcomes = await asyncio.gather(
                *(run(i, self._session) for i in range(len(self.gateways))),
                return_exceptions=True,
            )
        else:
            async with aiohttp.ClientSession(headers={"User-Agent": USER_AGENT}) as session:
                outcomes = await asyncio.gather(
                    *(run(i, session) for i in range(len(self.gateways))),
                    return_exceptions=True,
                )

        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException) and results[index] is None:
                logger.error(
                    "Probe crashed for %s via %s: %r",
                    short_cid(cid), self.gateways[index], outcome,
                )
                results[index] = self._failure(index, ErrorReason.NETWORK, None, repr(outcome))

        ok_count = sum(1 for r in results if r is not None and r.ok)
        logger.info(
            "Probe batch for %s finished in %dms: %d/%d ok",
            short_cid(cid), _elapsed_ms(started), ok_count, len(results),
        )
        return [r for r in results if r is not None]

    async def probe_many(self, cids: Sequence[str], max_concurrent_cids: int = 3) -> Dict[str, List[ProbeResult]]:
        """Probe several CIDs, at most max_concurrent_cids batches at a time."""
        batch_size = max(1, min(max_concurrent_cids, len(cids) or 1))
        out: Dict[str, List[ProbeResult]] = {}
        for start in range(0, len(cids), batch_size):
            batch = cids[start:start + batch_size]
            batch_results = await asyncio.gather(*(self.probe(cid) for cid in batch))
            out.update(zip(batch, batch_results))
        return out

    async def _probe_one(self, session: aiohttp.ClientSession, cid: str, index: int) -> ProbeResult:
        gateway = self.gateways[index]
        url = probe_url(gateway, cid)
        started = time.monotonic()
        try:
            status, content_length = await asyncio.wait_for(
                self._head(session, url), timeout=self.timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            return self._failure(index, ErrorReason.TIMEOUT, self.timeout_ms, f"no response within {self.timeout_ms}ms")
        except (aiohttp.ClientError, OSError, ValueError) as e:
            return self._failure(index, ErrorReason.NETWORK, _elapsed_ms(started), str(e) or type(e).__name__)

        latency = _elapsed_ms(started)
        if 200 <= status < 300:
            return ProbeResult(
                vantage_point=self._labels[index],
                method=ProbeMethod.HTTP.value,
                gateway_url=gateway,
                ok=True,
                latency_ms=latency,
                timestamp=now_ms(),
                status_code=status,
                content_length=content_length,
            )
        return self._failure(index, ErrorReason.BAD_STATUS, latency, f"HTTP {status}", status_code=status)

    async def _head(self, session: aiohttp.ClientSession, url: str):
        async with session.head(url, allow_redirects=True, headers={"User-Agent": USER_AGENT}) as response:
            length = response.headers.get("Content-Length")
            return response.status, int(length) if length and length.isdigit() else None

    def _failure(
        self,
        index: int,
        reason: ErrorReason,
        latency_ms: Optional[int],
        detail: Optional[str],
        status_code: Optional[int] = None,
    ) -> ProbeResult:
        return ProbeResult(
            vantage_point=self._labels[index],
            method=ProbeMethod.HTTP.value,
            gateway_url=self.gateways[index],
            ok=False,
            latency_ms=latency_ms,
            error_reason=reason.value,
            timestamp=now_ms(),
            status_code=status_code,
            detail=detail,
        )
