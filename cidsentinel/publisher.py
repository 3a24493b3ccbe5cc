"""
Pack Publisher.

Uploads a signed evidence pack to a content-addressed store. The payload
is the canonical JSON of the full signed pack; identical payloads get
identical identifiers, so a retried upload can never create a second
version of the same pack.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Sequence

import aiohttp

from .hashing import content_id
from .schema import SignedEvidencePack
from .signing import pack_payload

logger = logging.getLogger(__name__)

MAX_PACK_BYTES = 10 * 1024

# Status codes worth another attempt
RETRYABLE_STATUS = frozenset({408, 425, 429})


class PublishError(Exception):
    """A single upload attempt failed."""

    def __init__(self, message: str, retryable: bool, status: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUS or 500 <= status < 600


class PackStore:
    """Content-addressed storage backend."""

    async def put(self, payload: bytes) -> str:
        """Store payload and return its content identifier."""
        raise NotImplementedError


class MemoryPackStore(PackStore):
    """
    In-process content-addressed store.

    fail_next() makes the next uploads fail, which is how tests exercise
    the retry path without a network.
    """

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.put_calls = 0
        self._failures_left = 0
        self._failure_retryable = True

    def fail_next(self, count: int, retryable: bool = True) -> None:
        self._failures_left = count
        self._failure_retryable = retryable

    async def put(self, payload: bytes) -> str:
        self.put_calls += 1
        if self._failures_left > 0:
            self._failures_left -= 1
            if self._failure_retryable:
                raise PublishError("simulated store outage", retryable=True, status=503)
            raise PublishError("simulated store rejection", retryable=False, status=400)
        cid = content_id(payload)
        self.objects[cid] = payload
        return cid

    def get(self, cid: str) -> Optional[bytes]:
        return self.objects.get(cid)


class KuboPackStore(PackStore):
    """
    Uploads through a Kubo-compatible HTTP API (POST /api/v0/add).
    Docs: https://docs.ipfs.tech/reference/kubo/rpc/#api-v0-add
    """

    def __init__(
        self,
        api_url: str,
        timeout_seconds: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
        filename: str = "evidence-pack.json",
    ):
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.filename = filename
        self._session = session

    async def put(self, payload: bytes) -> str:
        if self._session is not None:
            return await self._post(self._session, payload)
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            return await self._post(session, payload)

    async def _post(self, session: aiohttp.ClientSession, payload: bytes) -> str:
        form = aiohttp.FormData()
        form.add_field("file", payload, filename=self.filename, content_type="application/json")
        params = {"cid-version": "1", "raw-leaves": "true", "pin": "true"}
        try:
            async with session.post(f"{self.api_url}/api/v0/add", params=params, data=form) as response:
                body = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            raise PublishError("upload timed out", retryable=True) from e
        except (aiohttp.ClientError, OSError) as e:
            raise PublishError(f"upload network error: {e}", retryable=True) from e

        if status >= 400:
            raise PublishError(
                f"store returned HTTP {status}: {body[:200]}",
                retryable=is_retryable_status(status),
                status=status,
            )
        return _parse_add_reply(body)


def _parse_add_reply(body: str) -> str:
    # Kubo streams one JSON object per line; the last one names the root
    lines = [line for line in body.splitlines() if line.strip()]
    if not lines:
        raise PublishError("store returned an empty reply", retryable=False)
    try:
        reply = json.loads(lines[-1])
    except json.JSONDecodeError as e:
        raise PublishError(f"store reply is not JSON: {e}", retryable=False) from e
    cid = reply.get("Hash") if isinstance(reply, dict) else None
    if not cid or not isinstance(cid, str):
        raise PublishError("store reply has no Hash field", retryable=False)
    return cid


def get_pack_store(config) -> PackStore:
    if config.ipfs_api_url:
        return KuboPackStore(api_url=config.ipfs_api_url)
    return MemoryPackStore()


@dataclass
class PublishResult:
    """Outcome of publishing one pack. Never raised, always returned."""
    success: bool
    content_id: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    retryable: bool = False
    size: int = 0


class PackPublisher:
    """
    Retrying uploader.

    Args:
        store: Content-addressed backend
        max_retries: Extra attempts after the first; attempts = 1 + max_retries
        backoff_seconds: Base delay; attempt i waits backoff * 2**i
    """

    def __init__(
        self,
        store: PackStore,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.store = store
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, store: Optional[PackStore] = None) -> "PackPublisher":
        return cls(
            store=store or get_pack_store(config),
            max_retries=config.upload_max_retries,
            backoff_seconds=config.upload_backoff_seconds,
        )

    async def publish(self, pack: SignedEvidencePack) -> PublishResult:
        return await self.publish_payload(pack_payload(pack))

    async def publish_payload(self, payload: bytes) -> PublishResult:
        size = len(payload)
        if size > MAX_PACK_BYTES:
            return PublishResult(
                success=False,
                attempts=0,
                error=f"pack too large: {size} bytes (max {MAX_PACK_BYTES})",
                retryable=False,
                size=size,
            )

        expected = content_id(payload)
        last_error: Optional[PublishError] = None
        max_attempts = 1 + self.max_retries

        for attempt in range(max_attempts):
            try:
                stored = await self.store.put(payload)
            except PublishError as e:
                last_error = e
                logger.warning("Upload attempt %d/%d failed: %s", attempt + 1, max_attempts, e)
                if not e.retryable:
                    return PublishResult(
                        success=False, attempts=attempt + 1, error=str(e), retryable=False, size=size
                    )
                if attempt + 1 < max_attempts:
                    await self._sleep(self.backoff_seconds * (2 ** attempt))
                continue

            if stored != expected:
                logger.warning("Store assigned %s, locally computed %s", stored, expected)
            return PublishResult(success=True, content_id=stored, attempts=attempt + 1, size=size)

        return PublishResult(
            success=False,
            attempts=max_attempts,
            error=f"retries exhausted: {last_error}",
            retryable=True,
            size=size,
        )


async def verify_pack_access(
    cid: str,
    payload: bytes,
    gateways: Sequence[str],
    timeout_seconds: float = 10.0,
    session: Optional[aiohttp.ClientSession] = None,
) -> Dict[str, bool]:
    """
    Read a published pack back through public gateways.

    Returns a gateway -> bool map; True only when the gateway served the
    exact payload bytes.
    """

    async def fetch(s: aiohttp.ClientSession, gateway: str) -> bool:
        url = f"{gateway.rstrip('/')}/{cid}"
        try:
            async with s.get(url, timeout=aiohttp.ClientTimeout(total=timeout_seconds)) as response:
                if response.status != 200:
                    return False
                return await response.read() == payload
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            logger.debug("Access check via %s failed: %s", gateway, e)
            return False

    if session is not None:
        results = await asyncio.gather(*(fetch(session, g) for g in gateways))
    else:
        async with aiohttp.ClientSession() as own:
            results = await asyncio.gather(*(fetch(own, g) for g in gateways))
    return dict(zip(gateways, results))
