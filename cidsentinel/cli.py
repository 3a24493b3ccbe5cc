#!/usr/bin/env python3
"""
CID Sentinel Command Line Interface

Usage:
    cid-sentinel keygen
    cid-sentinel probe CID
    cid-sentinel cycle CID [CID ...] [-o DIR]
    cid-sentinel verify PACK.json --public-key B64
    cid-sentinel canonicalize PACK.json
    cid-sentinel split AMOUNT_WEI
    cid-sentinel fund CID PUBLISHER AMOUNT_WEI
    cid-sentinel ledger [CID]
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path


def load_json(path: str) -> dict:
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def _load_config():
    from cidsentinel.config import SentinelConfig
    from cidsentinel.logging_config import configure_logging

    config = SentinelConfig.from_env().validate()
    configure_logging(config.effective_log_level, json_format=config.log_json)
    return config


def _read_pack(path: str):
    """Load a pack file, printing a message and returning None on failure."""
    try:
        return load_json(path)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Cannot read pack {path}: {e}", file=sys.stderr)
        return None


def _open_ledger(config):
    """Persistent ledger store, or None with a message when none is configured."""
    from cidsentinel.ledger_store import SqliteLedgerStore

    if not config.ledger_db_path:
        print("LEDGER_DB_PATH must be set for ledger commands", file=sys.stderr)
        return None
    return SqliteLedgerStore(config.ledger_db_path)


def cmd_keygen(args):
    """Generate a watcher keypair as environment variables."""
    from cidsentinel.keys import generate_keypair, keypair_to_base64

    for name, value in keypair_to_base64(generate_keypair()).items():
        print(f"{name}={value}")
    print("\nKeep the secret key out of logs and version control.", file=sys.stderr)
    return 0


def cmd_probe(args):
    """Probe one CID and print the verdict."""
    from cidsentinel.aggregation import ThresholdPolicy, aggregate
    from cidsentinel.probes import ProbeExecutor

    config = _load_config()
    executor = ProbeExecutor.from_config(config)
    results = asyncio.run(executor.probe(args.cid))
    agg = aggregate(results, ThresholdPolicy.from_config(config))

    for r in results:
        mark = "✓" if r.ok else "✗"
        latency = f"{r.latency_ms}ms" if r.latency_ms is not None else "-"
        print(f"  {mark} {r.vantage_point:<14} {latency:>8}  {r.error_reason or ''}")
    print(json.dumps(agg.to_dict(), indent=2))
    return 0 if agg.status.value == "OK" else 1


def cmd_cycle(args):
    """Run full cycles and write the signed packs."""
    from cidsentinel.economics import EconomicsEngine, EconomicsParams
    from cidsentinel.keys import KeyValidationError, load_keypair_from_env
    from cidsentinel.pack import save_pack
    from cidsentinel.runner import CycleRunner

    config = _load_config()
    try:
        keypair = load_keypair_from_env()
    except KeyValidationError as e:
        print(f"Invalid watcher keys: {e}", file=sys.stderr)
        return 2
    if keypair is None:
        print("WATCHER_SECRET_KEY_BASE64 and WATCHER_PUBLIC_KEY_BASE64 must be set "
              "(see `cid-sentinel keygen`)", file=sys.stderr)
        return 2

    store = None
    engine = None
    if args.ledger:
        store = _open_ledger(config)
        if store is None:
            return 2
        engine = EconomicsEngine(EconomicsParams.from_config(config), store=store)

    runner = CycleRunner.from_config(config, keypair, engine=engine)
    try:
        reports = asyncio.run(runner.run_many(args.cids, args.max_concurrent))
    finally:
        if store is not None:
            store.close()

    out_dir = Path(args.output) if args.output else None
    if out_dir:
        out_dir.mkdir(parents=True, exist_ok=True)

    for report in reports:
        if out_dir and report.pack is not None:
            path = out_dir / f"{report.cid}-{report.pack.ts}.json"
            save_pack(report.pack, str(path))
            print(f"Pack saved to: {path}", file=sys.stderr)
        print(json.dumps(report.to_dict(), indent=2))

    return 0 if all(r.ok for r in reports) else 1


def cmd_verify(args):
    """Verify a signed evidence pack."""
    from cidsentinel.signing import verify_pack

    pack = _read_pack(args.pack)
    if pack is None:
        return 1
    result = verify_pack(pack, args.public_key)
    if result.is_valid():
        print("✓ Signature VALID")
        return 0
    print(f"✗ Signature INVALID: {result.reason.value}")
    if result.details:
        print(f"  {result.details}")
    return 1


def cmd_canonicalize(args):
    """Print the signing input of a pack and its digest."""
    from cidsentinel.hashing import sha256_hash
    from cidsentinel.signing import canonical_cycle_bytes

    pack = _read_pack(args.pack)
    if pack is None:
        return 1
    payload = canonical_cycle_bytes(pack)
    print(payload.decode('utf-8'))
    print(sha256_hash(payload), file=sys.stderr)
    return 0


def cmd_split(args):
    """Show how a deposit is split."""
    from cidsentinel.config import WEI_PER_UNIT, SentinelConfig
    from cidsentinel.economics import EconomicsParams, split_deposit

    params = EconomicsParams.from_config(SentinelConfig.from_env().validate())
    fee, insurance, reward = split_deposit(args.amount, params)
    for name, value in (("deposit", args.amount), ("platform_fee", fee),
                        ("reward_pool", reward), ("insurance_pool", insurance)):
        print(f"{name:<15} {value:>28} wei  ({value / WEI_PER_UNIT:.6f})")
    return 0


def cmd_fund(args):
    """Fund the stake for a CID on the persistent ledger."""
    from cidsentinel.economics import EconomicsEngine, EconomicsParams, LedgerRejection

    config = _load_config()
    store = _open_ledger(config)
    if store is None:
        return 2
    try:
        engine = EconomicsEngine(EconomicsParams.from_config(config), store=store)
        record = engine.fund_stake(args.cid, args.publisher, args.amount)
    except LedgerRejection as e:
        print(f"✗ Funding rejected: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()
    print(json.dumps(record.to_dict(), indent=2))
    return 0


def cmd_ledger(args):
    """Show ledger row counts, and one CID's record when given."""
    config = _load_config()
    store = _open_ledger(config)
    if store is None:
        return 2
    try:
        out = {"stats": store.get_stats()}
        if args.cid:
            record = store.load_cid(args.cid)
            out["cid"] = record.to_dict() if record else None
    finally:
        store.close()
    print(json.dumps(out, indent=2))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="cid-sentinel",
        description="CID availability watcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cid-sentinel keygen >> .env
  cid-sentinel probe bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi
  cid-sentinel cycle bafy... -o packs/
  cid-sentinel verify packs/bafy...json --public-key <base64>
  cid-sentinel split 1000000000000000000
  LEDGER_DB_PATH=data/ledger.db cid-sentinel fund bafy... 0xpublisher 1000000000000000000
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("keygen", help="Generate watcher keypair")

    probe_parser = subparsers.add_parser("probe", help="Probe a CID across gateways")
    probe_parser.add_argument("cid", help="Content identifier")

    cycle_parser = subparsers.add_parser("cycle", help="Run signed monitoring cycles")
    cycle_parser.add_argument("cids", nargs="+", help="Content identifiers")
    cycle_parser.add_argument("-o", "--output", help="Directory for signed packs")
    cycle_parser.add_argument("-c", "--max-concurrent", type=int, default=3, help="CIDs in flight")
    cycle_parser.add_argument("--ledger", action="store_true", help="Record verdicts on the ledger")

    verify_parser = subparsers.add_parser("verify", help="Verify a signed pack")
    verify_parser.add_argument("pack", help="Pack JSON file")
    verify_parser.add_argument("-k", "--public-key", required=True, help="Watcher public key (base64)")

    canon_parser = subparsers.add_parser("canonicalize", help="Print canonical signing bytes")
    canon_parser.add_argument("pack", help="Pack JSON file")

    split_parser = subparsers.add_parser("split", help="Show deposit split")
    split_parser.add_argument("amount", type=int, help="Deposit in wei")

    fund_parser = subparsers.add_parser("fund", help="Fund a CID's stake (needs LEDGER_DB_PATH)")
    fund_parser.add_argument("cid", help="Content identifier")
    fund_parser.add_argument("publisher", help="Publisher address")
    fund_parser.add_argument("amount", type=int, help="Stake in wei")

    ledger_parser = subparsers.add_parser("ledger", help="Show ledger state (needs LEDGER_DB_PATH)")
    ledger_parser.add_argument("cid", nargs="?", help="Content identifier")

    args = parser.parse_args(argv)

    commands = {
        "keygen": cmd_keygen,
        "probe": cmd_probe,
        "cycle": cmd_cycle,
        "verify": cmd_verify,
        "canonicalize": cmd_canonicalize,
        "split": cmd_split,
        "fund": cmd_fund,
        "ledger": cmd_ledger,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 0
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
