"""
Probe executor tests against an in-process aiohttp gateway.

Routes by first path segment:
    /ok/{cid}       200
    /missing/{cid}  404
    /slow/{cid}     200 after one second
    /track/{cid}    200 after a short delay, recording concurrency
"""

import asyncio
import unittest

from aiohttp import test_utils, web

from cidsentinel.probes import (
    USER_AGENT,
    ErrorReason,
    ProbeExecutor,
    vantage_point_labels,
)

CID = "bafkreihdwdcefgh4dqkjv67uzcmw7ojee6xedzdetojuzjevtenxquvyku"
REFUSED = "http://127.0.0.1:1/ipfs"


class FakeGateway:

    def __init__(self):
        self.in_flight = 0
        self.max_in_flight = 0
        self.user_agents = []
        self.paths = []

    async def handle(self, request: web.Request) -> web.Response:
        mode = request.match_info["mode"]
        self.user_agents.append(request.headers.get("User-Agent"))
        self.paths.append(request.path)
        if mode == "missing":
            return web.Response(status=404)
        if mode == "slow":
            await asyncio.sleep(1.0)
        if mode == "track":
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            await asyncio.sleep(0.05)
            self.in_flight -= 1
        return web.Response(status=200, text="hello world")


class ProbeExecutorTest(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.gateway = FakeGateway()
        app = web.Application()
        app.router.add_head("/{mode}/{cid}", self.gateway.handle)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()

    async def asyncTearDown(self):
        await self.server.close()

    def url(self, mode: str) -> str:
        return str(self.server.make_url(f"/{mode}"))

    async def test_classifies_each_gateway(self):
        executor = ProbeExecutor(
            [self.url("ok"), self.url("missing"), self.url("slow"), REFUSED],
            timeout_ms=250,
        )
        results = await executor.probe(CID)

        self.assertEqual(len(results), 4)
        ok, missing, slow, refused = results
        self.assertTrue(ok.ok)
        self.assertIsNone(ok.error_reason)
        self.assertEqual(ok.status_code, 200)
        self.assertIsNotNone(ok.latency_ms)

        self.assertFalse(missing.ok)
        self.assertEqual(missing.error_reason, ErrorReason.BAD_STATUS.value)
        self.assertEqual(missing.status_code, 404)

        self.assertFalse(slow.ok)
        self.assertEqual(slow.error_reason, ErrorReason.TIMEOUT.value)
        self.assertEqual(slow.latency_ms, 250)

        self.assertFalse(refused.ok)
        self.assertEqual(refused.error_reason, ErrorReason.NETWORK.value)

    async def test_results_keep_gateway_order(self):
        gateways = [self.url("slow"), self.url("ok"), self.url("missing")]
        results = await ProbeExecutor(gateways, timeout_ms=250).probe(CID)
        self.assertEqual([r.gateway_url for r in results], gateways)

    async def test_head_request_shape(self):
        await ProbeExecutor([self.url("ok")], timeout_ms=1000).probe(CID)
        self.assertEqual(self.gateway.paths, [f"/ok/{CID}"])
        self.assertEqual(self.gateway.user_agents, [USER_AGENT])

    async def test_concurrency_bound(self):
        gateways = [self.url("track")] * 6
        results = await ProbeExecutor(gateways, timeout_ms=2000, max_concurrency=2).probe(CID)
        self.assertTrue(all(r.ok for r in results))
        self.assertLessEqual(self.gateway.max_in_flight, 2)

    async def test_wire_shape(self):
        ok, missing = await ProbeExecutor([self.url("ok"), self.url("missing")], timeout_ms=1000).probe(CID)
        wire = ok.to_wire()
        self.assertEqual(set(wire), {"vp", "method", "gateway", "ok", "latMs"})
        self.assertEqual(wire["method"], "HTTP")
        self.assertEqual(missing.to_wire()["err"], "bad-status")

    async def test_probe_many(self):
        executor = ProbeExecutor([self.url("ok"), self.url("missing")], timeout_ms=1000)
        out = await executor.probe_many(["cid-a", "cid-b", "cid-c"], max_concurrent_cids=2)
        self.assertEqual(sorted(out), ["cid-a", "cid-b", "cid-c"])
        for results in out.values():
            self.assertEqual([r.ok for r in results], [True, False])


class VantagePointLabelTest(unittest.TestCase):

    def test_known_hosts_and_fallback(self):
        labels = vantage_point_labels([
            "https://ipfs.io/ipfs",
            "https://unknown.example/ipfs",
            "https://ipfs.io/ipfs",
        ])
        self.assertEqual(labels, ["ipfs-io", "gateway-2", "gateway-3"])

    def test_constructor_validation(self):
        with self.assertRaises(ValueError):
            ProbeExecutor([])
        with self.assertRaises(ValueError):
            ProbeExecutor(["https://ipfs.io/ipfs"], max_concurrency=0)


if __name__ == "__main__":
    unittest.main()
