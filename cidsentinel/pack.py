"""
Evidence cycle assembly and on-disk pack helpers.
"""

from typing import Optional, Sequence, Union

from . import __version__
from .aggregation import ThresholdPolicy
from .probes import ProbeResult
from .schema import EvidenceCycle, PackMeta, SignedEvidencePack, WireProbe, pack_to_json, parse_pack
from .util import now_epoch

BUILDER_VERSION = f"CID-Sentinel-v{__version__}"


def build_cycle(
    cid: str,
    probes: Sequence[ProbeResult],
    policy: ThresholdPolicy,
    region: str = "global",
    window_minutes: int = 5,
    attempted_libp2p: bool = False,
    ts: Optional[int] = None,
    builder: str = BUILDER_VERSION,
) -> EvidenceCycle:
    """
    Assemble the unsigned record for one cycle.

    Raises ValueError when the probe count differs from the policy's n,
    and pydantic ValidationError when the result would not be a valid
    wire cycle (no probes, duplicate vantage points, out-of-range
    latency).
    """
    policy.check_probe_count(len(probes))
    return EvidenceCycle(
        cid=cid,
        ts=ts if ts is not None else now_epoch(),
        probes=[WireProbe.model_validate(p.to_wire()) for p in probes],
        meta=PackMeta(
            builder=builder,
            region=region,
            windowMin=window_minutes,
            threshold=policy.to_threshold(),
            attemptedLibp2p=attempted_libp2p,
        ),
    )


def pack_from_json(text: Union[str, bytes]) -> SignedEvidencePack:
    """Load a signed pack written by save_pack or fetched from a store."""
    return parse_pack(text)


def save_pack(pack: SignedEvidencePack, path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(pack_to_json(pack))
        f.write("\n")


def load_pack(path: str) -> SignedEvidencePack:
    with open(path, "r", encoding="utf-8") as f:
        return pack_from_json(f.read())
