"""
Cycle runner tests: full pipeline against an in-process gateway, stage
failure tagging, batch isolation and the periodic watcher.
"""

import asyncio
import unittest

from aiohttp import test_utils, web

from cidsentinel.aggregation import CycleStatus, ThresholdPolicy
from cidsentinel.config import WEI_PER_UNIT
from cidsentinel.economics import EconomicsEngine, EconomicsParams
from cidsentinel.keys import keypair_from_seed
from cidsentinel.logging_config import get_cycle_id
from cidsentinel.probes import ProbeExecutor
from cidsentinel.publisher import MemoryPackStore, PackPublisher
from cidsentinel.runner import CycleRunner, Stage, Watcher
from cidsentinel.signing import pack_payload, verify_pack

CID = "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi"
TS = 1_700_000_000


async def no_sleep(seconds):
    return None


class RunnerTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        app = web.Application()
        app.router.add_head("/ok/{cid}", self.serve_ok)
        app.router.add_head("/missing/{cid}", self.serve_missing)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()

        self.keypair = keypair_from_seed(b"\x05" * 32)
        self.store = MemoryPackStore()
        self.publisher = PackPublisher(self.store, max_retries=1, backoff_seconds=0, sleep=no_sleep)
        self.engine = EconomicsEngine(EconomicsParams(), clock=lambda: TS)

    async def asyncTearDown(self):
        await self.server.close()

    async def serve_ok(self, request):
        return web.Response(text="content")

    async def serve_missing(self, request):
        return web.Response(status=404)

    def gateways(self, *modes):
        return [str(self.server.make_url(f"/{mode}")) for mode in modes]

    def runner(self, modes=("ok", "ok", "missing"), **kwargs):
        kwargs.setdefault("publisher", self.publisher)
        kwargs.setdefault("engine", self.engine)
        kwargs.setdefault("keypair", self.keypair)
        return CycleRunner(
            executor=ProbeExecutor(self.gateways(*modes), timeout_ms=2000),
            policy=ThresholdPolicy(k=2, n=3, timeout_ms=2000),
            region="test",
            clock=lambda: TS,
            **kwargs,
        )


class TestRunCycle(RunnerTestCase):

    async def test_ok_cycle_end_to_end(self):
        self.engine.fund_stake(CID, "0xpublisher", WEI_PER_UNIT)
        report = await self.runner().run_cycle(CID)

        self.assertTrue(report.ok)
        self.assertEqual(report.failures, [])
        self.assertEqual(report.verdict, CycleStatus.OK)
        self.assertEqual(report.aggregate.success_count, 2)
        self.assertTrue(report.cycle_id)

        self.assertEqual(report.pack.ts, TS)
        self.assertEqual(report.pack.meta.region, "test")
        self.assertTrue(verify_pack(report.pack, self.keypair.public_key_b64).is_valid())

        self.assertEqual(self.store.get(report.pack_cid), pack_payload(report.pack))
        self.assertEqual(self.engine.accrued_rewards("validator"), self.engine.params.ok_reward)

    async def test_breach_cycles_trigger_payout(self):
        self.engine.fund_stake(CID, "0xpublisher", WEI_PER_UNIT)
        runner = self.runner(modes=("missing", "missing", "missing"))
        for _ in range(3):
            report = await runner.run_cycle(CID)
            self.assertEqual(report.verdict, CycleStatus.BREACH)
            self.assertTrue(report.failed(Stage.PROBE))
            # a breach is a verdict, not a failed cycle
            self.assertTrue(report.ok)

        record = self.engine.get_cid(CID)
        self.assertEqual(record.consecutive_breaches, 0)
        self.assertEqual(record.insurance_pool, 414_375_000_000_000_000)
        self.assertEqual(self.engine.balance_of("validator"), 248_625_000_000_000_000)

    async def test_degraded_cycle(self):
        report = await self.runner(modes=("ok", "missing", "missing"), engine=None).run_cycle(CID)
        self.assertEqual(report.verdict, CycleStatus.DEGRADED)
        self.assertTrue(report.ok)

    async def test_publication_failure_degrades(self):
        self.store.fail_next(5)
        report = await self.runner(engine=None).run_cycle(CID)
        self.assertTrue(report.ok)
        self.assertTrue(report.failed(Stage.UPLOAD))
        self.assertEqual(report.verdict, CycleStatus.OK)
        self.assertIsNotNone(report.pack)
        self.assertIsNone(report.pack_cid)
        self.assertEqual(report.publish.attempts, 2)

    async def test_signing_failure_is_fatal(self):
        report = await self.runner(keypair=object()).run_cycle(CID)
        self.assertFalse(report.ok)
        self.assertEqual([f.stage for f in report.failures], [Stage.SIGNING])
        self.assertEqual(report.verdict, CycleStatus.OK)
        self.assertIsNone(report.pack)
        self.assertEqual(self.store.put_calls, 0)

    async def test_empty_cid_is_validation_failure(self):
        report = await self.runner().run_cycle("  ")
        self.assertFalse(report.ok)
        self.assertEqual(report.failures[0].stage, Stage.VALIDATION)
        self.assertIsNone(report.verdict)

    async def test_gateway_count_other_than_n_is_validation_failure(self):
        self.engine.fund_stake(CID, "0xpublisher", WEI_PER_UNIT)
        before = self.engine.get_cid(CID)
        report = await self.runner(modes=("ok", "ok", "missing", "missing", "missing")).run_cycle(CID)

        self.assertFalse(report.ok)
        self.assertEqual([f.stage for f in report.failures], [Stage.VALIDATION])
        self.assertIn("n=3", report.failures[0].error)
        self.assertEqual(len(report.probes), 5)
        self.assertIsNone(report.verdict)
        self.assertIsNone(report.pack)
        self.assertEqual(self.store.put_calls, 0)
        self.assertEqual(self.engine.get_cid(CID), before)

    async def test_cycle_id_is_bound_to_context(self):
        report = await self.runner(engine=None).run_cycle(CID, cycle_id="cycle-42")
        self.assertEqual(report.cycle_id, "cycle-42")
        self.assertEqual(get_cycle_id(), "cycle-42")

    async def test_unfunded_cid_is_ledger_failure(self):
        report = await self.runner().run_cycle(CID)
        self.assertFalse(report.ok)
        ledger = [f for f in report.failures if f.stage == Stage.LEDGER]
        self.assertEqual(ledger[0].details, {"reason": "NOT_FUNDED"})
        self.assertIsNotNone(report.pack_cid)

    async def test_anchor_receives_pack_cid(self):
        calls = []

        async def anchor(cid, pack_cid, verdict):
            calls.append((cid, pack_cid, verdict))
            return "0xanchor"

        report = await self.runner(engine=None, anchor=anchor).run_cycle(CID)
        self.assertEqual(report.anchor_ref, "0xanchor")
        self.assertEqual(calls, [(CID, report.pack_cid, CycleStatus.OK)])

    async def test_anchor_failure_is_tagged(self):
        async def anchor(cid, pack_cid, verdict):
            raise RuntimeError("rpc down")

        report = await self.runner(engine=None, anchor=anchor).run_cycle(CID)
        self.assertTrue(report.failed(Stage.ANCHOR))
        self.assertTrue(report.ok)
        self.assertIsNotNone(report.pack_cid)

    async def test_report_dict(self):
        report = await self.runner(engine=None).run_cycle(CID)
        data = report.to_dict()
        self.assertEqual(data["verdict"], "OK")
        self.assertEqual(data["pack_cid"], report.pack_cid)
        self.assertIn("probe", data["timings_ms"])


class ExplodingRunner(CycleRunner):

    async def run_cycle(self, cid, cycle_id=None):
        if cid == "boom":
            raise RuntimeError("unexpected")
        return await super().run_cycle(cid, cycle_id)


class TestRunMany(RunnerTestCase):

    async def test_one_crash_does_not_abort_siblings(self):
        runner = ExplodingRunner(
            executor=ProbeExecutor(self.gateways("ok", "ok", "missing"), timeout_ms=2000),
            policy=ThresholdPolicy(k=2, n=3),
            keypair=self.keypair,
            publisher=self.publisher,
        )
        reports = await runner.run_many(["cid-a", "boom", "cid-b"], max_concurrent=2)
        self.assertEqual([r.cid for r in reports], ["cid-a", "boom", "cid-b"])
        self.assertTrue(reports[0].ok)
        self.assertFalse(reports[1].ok)
        self.assertIn("RuntimeError", reports[1].error)
        self.assertTrue(reports[2].ok)

    async def test_cycle_ids_are_distinct(self):
        reports = await self.runner(engine=None).run_many(["cid-a", "cid-b", "cid-c"], max_concurrent=3)
        self.assertEqual(len({r.cycle_id for r in reports}), 3)


class TestWatcher(RunnerTestCase):

    async def test_run_forever_spacing(self):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        watcher = Watcher(self.runner(engine=None), interval_seconds=60, min_spacing_seconds=5, sleep=record_sleep)
        rounds = await watcher.run_forever([CID], max_rounds=3)
        self.assertEqual(rounds, 3)
        self.assertEqual(len(delays), 2)
        self.assertTrue(all(5 <= d <= 60 for d in delays))
        self.assertEqual(len(watcher.last_reports), 1)

    async def test_overlapping_round_refused(self):
        watcher = Watcher(self.runner(engine=None))
        async with watcher._lock:
            self.assertTrue(watcher.running)
            self.assertIsNone(await watcher.run_once([CID]))
        reports = await watcher.run_once([CID])
        self.assertEqual(len(reports), 1)


if __name__ == "__main__":
    unittest.main()
