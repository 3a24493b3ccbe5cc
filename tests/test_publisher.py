"""
Pack publisher tests: retry policy, content addressing and the Kubo
upload client against an in-process aiohttp server.
"""

import json
import unittest

from aiohttp import test_utils, web

from cidsentinel.hashing import content_id
from cidsentinel.keys import keypair_from_seed
from cidsentinel.publisher import (
    MAX_PACK_BYTES,
    KuboPackStore,
    MemoryPackStore,
    PackPublisher,
    PublishError,
    verify_pack_access,
)
from cidsentinel.signing import pack_payload, sign_cycle

from test_conformance import make_cycle


class SleepRecorder:

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class PackPublisherTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.pack = sign_cycle(make_cycle(), keypair_from_seed(b"\x02" * 32))
        self.store = MemoryPackStore()
        self.sleep = SleepRecorder()

    def publisher(self, max_retries=2, backoff=1.0):
        return PackPublisher(self.store, max_retries=max_retries, backoff_seconds=backoff, sleep=self.sleep)

    async def test_publish_stores_canonical_payload(self):
        result = await self.publisher().publish(self.pack)
        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 1)
        payload = pack_payload(self.pack)
        self.assertEqual(result.content_id, content_id(payload))
        self.assertEqual(self.store.get(result.content_id), payload)
        self.assertEqual(result.size, len(payload))

    async def test_identical_payload_identical_id(self):
        first = await self.publisher().publish(self.pack)
        second = await self.publisher().publish(self.pack)
        self.assertEqual(first.content_id, second.content_id)
        self.assertEqual(len(self.store.objects), 1)

    async def test_transient_failures_retried_with_backoff(self):
        self.store.fail_next(2)
        result = await self.publisher(max_retries=2, backoff=0.5).publish(self.pack)
        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(self.sleep.delays, [0.5, 1.0])

    async def test_retries_exhausted(self):
        self.store.fail_next(10)
        result = await self.publisher(max_retries=2).publish(self.pack)
        self.assertFalse(result.success)
        self.assertTrue(result.retryable)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(self.store.put_calls, 3)
        self.assertIsNone(result.content_id)
        self.assertIn("retries exhausted", result.error)

    async def test_non_retryable_stops_immediately(self):
        self.store.fail_next(1, retryable=False)
        result = await self.publisher().publish(self.pack)
        self.assertFalse(result.success)
        self.assertFalse(result.retryable)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(self.sleep.delays, [])

    async def test_oversized_payload_rejected(self):
        result = await self.publisher().publish_payload(b"x" * (MAX_PACK_BYTES + 1))
        self.assertFalse(result.success)
        self.assertFalse(result.retryable)
        self.assertEqual(self.store.put_calls, 0)

    def test_negative_retries_rejected(self):
        with self.assertRaises(ValueError):
            PackPublisher(self.store, max_retries=-1)


class KuboNode:
    """Minimal /api/v0/add endpoint. Scripted statuses are served first."""

    def __init__(self):
        self.script = []
        self.uploads = []
        self.params = []
        self.blobs = {}

    async def add(self, request: web.Request) -> web.Response:
        self.params.append(dict(request.query))
        if self.script:
            status, body = self.script.pop(0)
            return web.Response(status=status, text=body)
        reader = await request.multipart()
        part = await reader.next()
        data = await part.read()
        self.uploads.append(data)
        cid = content_id(bytes(data))
        self.blobs[cid] = bytes(data)
        return web.json_response({"Name": part.filename, "Hash": cid, "Size": str(len(data))})

    async def get(self, request: web.Request) -> web.Response:
        blob = self.blobs.get(request.match_info["cid"])
        if blob is None:
            return web.Response(status=404)
        return web.Response(body=blob)


class KuboPackStoreTest(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.node = KuboNode()
        app = web.Application()
        app.router.add_post("/api/v0/add", self.node.add)
        app.router.add_get("/ipfs/{cid}", self.node.get)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()
        self.store = KuboPackStore(str(self.server.make_url("")), timeout_seconds=5)
        self.pack = sign_cycle(make_cycle(), keypair_from_seed(b"\x03" * 32))

    async def asyncTearDown(self):
        await self.server.close()

    async def test_upload_returns_hash(self):
        payload = pack_payload(self.pack)
        cid = await self.store.put(payload)
        self.assertEqual(cid, content_id(payload))
        self.assertEqual(self.node.uploads, [payload])
        self.assertEqual(self.node.params[0]["cid-version"], "1")
        self.assertEqual(self.node.params[0]["raw-leaves"], "true")

    async def test_server_error_is_retryable(self):
        self.node.script = [(503, "busy")]
        with self.assertRaises(PublishError) as ctx:
            await self.store.put(b"{}")
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.status, 503)

    async def test_rate_limit_is_retryable(self):
        self.node.script = [(429, "slow down")]
        with self.assertRaises(PublishError) as ctx:
            await self.store.put(b"{}")
        self.assertTrue(ctx.exception.retryable)

    async def test_client_error_is_final(self):
        self.node.script = [(400, "bad request")]
        with self.assertRaises(PublishError) as ctx:
            await self.store.put(b"{}")
        self.assertFalse(ctx.exception.retryable)

    async def test_malformed_reply_is_final(self):
        self.node.script = [(200, json.dumps({"Name": "x"}))]
        with self.assertRaises(PublishError) as ctx:
            await self.store.put(b"{}")
        self.assertFalse(ctx.exception.retryable)

    async def test_publisher_recovers_from_outage(self):
        self.node.script = [(502, "bad gateway")]
        publisher = PackPublisher(self.store, max_retries=1, backoff_seconds=0, sleep=SleepRecorder())
        result = await publisher.publish(self.pack)
        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 2)

    async def test_unreachable_node_is_retryable(self):
        store = KuboPackStore("http://127.0.0.1:1", timeout_seconds=2)
        with self.assertRaises(PublishError) as ctx:
            await store.put(b"{}")
        self.assertTrue(ctx.exception.retryable)

    async def test_verify_pack_access(self):
        payload = pack_payload(self.pack)
        cid = await self.store.put(payload)
        gateway = str(self.server.make_url("/ipfs"))
        access = await verify_pack_access(cid, payload, [gateway, "http://127.0.0.1:1/ipfs"], timeout_seconds=2)
        self.assertEqual(access, {gateway: True, "http://127.0.0.1:1/ipfs": False})

        other = await verify_pack_access(content_id(b"absent"), b"absent", [gateway], timeout_seconds=2)
        self.assertEqual(other, {gateway: False})


if __name__ == "__main__":
    unittest.main()
