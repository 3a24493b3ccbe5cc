"""
Evidence pack wire format.

Schema-validated records for the JSON object that gets canonicalized,
signed and published:

    {
      "cid": str,
      "ts": int (seconds),
      "probes": [{"vp", "method", "gateway"?, "ok", "latMs"?, "err"?}],
      "meta": {"builder", "region", "windowMin",
               "threshold": {"k", "n", "timeoutMs"}, "attemptedLibp2p"},
      "watcherSig": str (signed packs only)
    }

Optional fields are omitted when absent, never serialized as null, so
a pack read back from storage canonicalizes to the bytes that were
signed.
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    ValidationError,
    model_validator,
)

PROBE_METHODS = ("HTTP", "LIBP2P")
MAX_PROBE_LATENCY_MS = 60000


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        """Plain JSON-ready dict using wire key names."""
        return self.model_dump(by_alias=True, exclude_none=True)


class WireProbe(_WireModel):
    vp: str = Field(min_length=1)
    method: Literal["HTTP", "LIBP2P"]
    gateway: Optional[str] = None
    ok: StrictBool
    lat_ms: Optional[int] = Field(default=None, alias="latMs", ge=0, le=MAX_PROBE_LATENCY_MS)
    err: Optional[str] = None

    @model_validator(mode="after")
    def _check_probe(self) -> "WireProbe":
        if self.method == "HTTP" and not self.gateway:
            raise ValueError("probe.gateway missing for HTTP method")
        if not self.ok and not self.err:
            raise ValueError("probe.err missing for failed probe")
        return self


class Threshold(_WireModel):
    k: StrictInt
    n: StrictInt
    timeout_ms: StrictInt = Field(alias="timeoutMs", ge=200, le=30000)

    @model_validator(mode="after")
    def _check_k_of_n(self) -> "Threshold":
        if not (1 <= self.k <= self.n <= 10):
            raise ValueError("threshold k/n invalid (k must be 1-n, n max 10)")
        return self


class PackMeta(_WireModel):
    builder: str = Field(min_length=1)
    region: str = Field(min_length=1)
    window_min: StrictInt = Field(alias="windowMin", ge=1, le=60)
    threshold: Threshold
    attempted_libp2p: StrictBool = Field(alias="attemptedLibp2p")


class EvidenceCycle(_WireModel):
    """One monitoring cycle, everything except the signature."""
    cid: str = Field(min_length=1)
    ts: StrictInt = Field(gt=0)
    probes: List[WireProbe] = Field(min_length=1)
    meta: PackMeta

    @model_validator(mode="after")
    def _check_probes(self) -> "EvidenceCycle":
        seen = set()
        for probe in self.probes:
            if probe.vp in seen:
                raise ValueError(f"duplicate vp: {probe.vp}")
            seen.add(probe.vp)
        if len(self.probes) != self.meta.threshold.n:
            raise ValueError(
                f"probe count {len(self.probes)} does not match threshold.n {self.meta.threshold.n}"
            )
        return self

    def unsigned(self) -> "EvidenceCycle":
        return EvidenceCycle(cid=self.cid, ts=self.ts, probes=self.probes, meta=self.meta)


class SignedEvidencePack(EvidenceCycle):
    watcher_sig: str = Field(alias="watcherSig", min_length=1)


def _format_errors(exc: ValidationError) -> List[str]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        msg = err.get("msg", "invalid")
        errors.append(f"{loc}: {msg}" if loc else msg)
    return errors


def validate_cycle(data: Dict[str, Any]) -> List[str]:
    """
    Validate an unsigned cycle dict.

    Returns:
        List of error strings; empty when valid. A watcherSig key is
        tolerated so a signed pack can be checked here too.
    """
    body = dict(data)
    body.pop("watcherSig", None)
    try:
        EvidenceCycle.model_validate(body)
    except ValidationError as e:
        return _format_errors(e)
    return []


def validate_pack(data: Dict[str, Any]) -> List[str]:
    """Validate a signed pack dict. Returns list of error strings."""
    try:
        SignedEvidencePack.model_validate(data)
    except ValidationError as e:
        return _format_errors(e)
    return []


def parse_pack(data: Union[Dict[str, Any], str, bytes]) -> SignedEvidencePack:
    """Parse a signed pack; raises pydantic ValidationError on bad input."""
    if isinstance(data, (str, bytes)):
        return SignedEvidencePack.model_validate_json(data)
    return SignedEvidencePack.model_validate(data)


def pack_to_json(pack: EvidenceCycle, indent: Optional[int] = 2) -> str:
    """Serialize for storage or display; key order does not matter here."""
    return json.dumps(pack.to_wire(), indent=indent, sort_keys=True)
