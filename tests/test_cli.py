"""
Command line interface tests.
"""

import io
import json
import logging
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest import mock

from cidsentinel.cli import main
from cidsentinel.keys import PUBLIC_KEY_ENV, SECRET_KEY_ENV, keypair_from_seed, keypair_to_base64, load_keypair
from cidsentinel.schema import pack_to_json
from cidsentinel.signing import canonical_cycle_bytes, sign_cycle

from test_conformance import make_cycle


def run(argv):
    out, err = io.StringIO(), io.StringIO()
    with redirect_stdout(out), redirect_stderr(err):
        code = main(argv)
    return code, out.getvalue(), err.getvalue()


class TestCli(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.keypair = keypair_from_seed(b"\x09" * 32)
        self.pack = sign_cycle(make_cycle(), self.keypair)
        self.pack_path = os.path.join(self.tmp.name, "pack.json")
        with open(self.pack_path, "w", encoding="utf-8") as f:
            f.write(pack_to_json(self.pack))

    def test_keygen_prints_loadable_keys(self):
        code, out, _ = run(["keygen"])
        self.assertEqual(code, 0)
        values = dict(line.split("=", 1) for line in out.strip().splitlines())
        keypair = load_keypair(values[SECRET_KEY_ENV], values[PUBLIC_KEY_ENV])
        self.assertEqual(len(keypair.public_key), 32)

    def test_verify_valid(self):
        code, out, _ = run(["verify", self.pack_path, "--public-key", self.keypair.public_key_b64])
        self.assertEqual(code, 0)
        self.assertIn("VALID", out)

    def test_verify_tampered(self):
        data = json.loads(pack_to_json(self.pack))
        data["meta"]["region"] = "elsewhere"
        with open(self.pack_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        code, out, _ = run(["verify", self.pack_path, "-k", self.keypair.public_key_b64])
        self.assertEqual(code, 1)
        self.assertIn("BAD_SIGNATURE", out)

    def test_canonicalize(self):
        code, out, err = run(["canonicalize", self.pack_path])
        self.assertEqual(code, 0)
        self.assertEqual(out.strip(), canonical_cycle_bytes(self.pack).decode("utf-8"))
        self.assertTrue(err.strip().startswith("sha256:"))

    def test_split(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            code, out, _ = run(["split", "1000000000000000000"])
        self.assertEqual(code, 0)
        self.assertIn("25000000000000000", out)
        self.assertIn("146250000000000000", out)
        self.assertIn("828750000000000000", out)

    def test_cycle_requires_keys(self):
        root = logging.getLogger()
        self.addCleanup(root.setLevel, root.level)
        self.addCleanup(setattr, root, "handlers", root.handlers[:])
        with mock.patch.dict(os.environ, {"SENTINEL_LOG_JSON": "false"}, clear=True):
            code, _, err = run(["cycle", "bafy-test"])
        self.assertEqual(code, 2)
        self.assertIn(SECRET_KEY_ENV, err)

    def keep_root_logger(self):
        root = logging.getLogger()
        self.addCleanup(root.setLevel, root.level)
        self.addCleanup(setattr, root, "handlers", root.handlers[:])

    def test_verify_non_json_pack(self):
        with open(self.pack_path, "w", encoding="utf-8") as f:
            f.write("{not json")
        code, out, err = run(["verify", self.pack_path, "-k", self.keypair.public_key_b64])
        self.assertEqual(code, 1)
        self.assertEqual(out, "")
        self.assertIn("Cannot read pack", err)

    def test_canonicalize_missing_file(self):
        missing = os.path.join(self.tmp.name, "absent.json")
        code, _, err = run(["canonicalize", missing])
        self.assertEqual(code, 1)
        self.assertIn("Cannot read pack", err)

    def test_ledger_commands_need_db_path(self):
        self.keep_root_logger()
        env = {"SENTINEL_LOG_JSON": "false"}
        env.update(keypair_to_base64(self.keypair))
        with mock.patch.dict(os.environ, env, clear=True):
            for argv in (["fund", "bafy-test", "0xpublisher", "1000"],
                         ["ledger"],
                         ["cycle", "bafy-test", "--ledger"]):
                with self.subTest(command=argv[0]):
                    code, _, err = run(argv)
                    self.assertEqual(code, 2)
                    self.assertIn("LEDGER_DB_PATH", err)

    def test_fund_then_inspect_ledger(self):
        self.keep_root_logger()
        env = {
            "SENTINEL_LOG_JSON": "false",
            "LEDGER_DB_PATH": os.path.join(self.tmp.name, "ledger.db"),
        }
        with mock.patch.dict(os.environ, env, clear=True):
            code, out, _ = run(["fund", "bafy-test", "0xpublisher", "1000000000000000000"])
            self.assertEqual(code, 0)
            self.assertEqual(json.loads(out)["insurance_pool"], 828750000000000000)

            code, _, err = run(["fund", "bafy-test", "0xpublisher", "1000"])
            self.assertEqual(code, 1)
            self.assertIn("ALREADY_FUNDED", err)

            code, out, _ = run(["ledger", "bafy-test"])
        self.assertEqual(code, 0)
        state = json.loads(out)
        self.assertEqual(state["stats"]["cid_economics_count"], 1)
        self.assertEqual(state["stats"]["ledger_events_count"], 1)
        self.assertEqual(state["cid"]["publisher"], "0xpublisher")
        self.assertEqual(state["cid"]["reward_pool"], 146250000000000000)

    def test_debug_sets_root_level(self):
        self.keep_root_logger()
        env = {"SENTINEL_LOG_JSON": "false", "SENTINEL_DEBUG": "1",
               "LEDGER_DB_PATH": os.path.join(self.tmp.name, "ledger.db")}
        with mock.patch.dict(os.environ, env, clear=True):
            code, _, _ = run(["ledger"])
        self.assertEqual(code, 0)
        self.assertEqual(logging.getLogger().level, logging.DEBUG)

    def test_no_command_prints_help(self):
        code, out, _ = run([])
        self.assertEqual(code, 0)
        self.assertIn("cid-sentinel", out)


if __name__ == "__main__":
    unittest.main()
