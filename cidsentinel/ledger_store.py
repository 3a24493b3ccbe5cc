"""
Storage for the economics ledger.

Every CID record and every account carries a version counter. A state
transition reads through a LedgerTransaction, buffers its writes, and
commits them as one compare-and-swap over every version it read: if any
of them moved, nothing is written and the caller re-runs the transition.
A record that did not exist when read has version 0.

Two backends:
- MemoryLedgerStore: process-local, lock-guarded
- SqliteLedgerStore: file-backed, one SQL transaction per commit
"""

import copy
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class CidRecord:
    """Per-CID stake state. Created on funding, never deleted."""
    cid: str
    publisher: str
    insurance_pool: int = 0
    reward_pool: int = 0
    consecutive_breaches: int = 0
    last_breach_at: Optional[int] = None
    funded_at: int = 0
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Account:
    """Accrued monitoring rewards and pushed balance of one address."""
    address: str
    rewards: int = 0
    balance: int = 0
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LedgerEvent:
    name: str
    fields: Dict[str, Any]
    ts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, "ts": self.ts, **self.fields}


class LedgerTransaction:
    """
    Buffered view of the store for one transition attempt.

    Reads are cached copies; writes stay local until the store commits
    them. Nothing a transition does is visible to other readers unless
    the commit succeeds.
    """

    def __init__(self, store: "LedgerStore"):
        self._store = store
        self.cid_reads: Dict[str, int] = {}
        self.account_reads: Dict[str, int] = {}
        self._cids: Dict[str, Optional[CidRecord]] = {}
        self._accounts: Dict[str, Account] = {}
        self.dirty_cids: Dict[str, CidRecord] = {}
        self.dirty_accounts: Dict[str, Account] = {}
        self.events: List[LedgerEvent] = []

    def get_cid(self, cid: str) -> Optional[CidRecord]:
        if cid not in self._cids:
            record = self._store.load_cid(cid)
            self.cid_reads[cid] = record.version if record else 0
            self._cids[cid] = record
        return self._cids[cid]

    def put_cid(self, record: CidRecord) -> None:
        self.get_cid(record.cid)
        self._cids[record.cid] = record
        self.dirty_cids[record.cid] = record

    def get_account(self, address: str) -> Account:
        if address not in self._accounts:
            account = self._store.load_account(address)
            self.account_reads[address] = account.version if account else 0
            self._accounts[address] = account or Account(address=address)
        return self._accounts[address]

    def put_account(self, account: Account) -> None:
        self.get_account(account.address)
        self._accounts[account.address] = account
        self.dirty_accounts[account.address] = account

    def credit(self, address: str, amount: int) -> None:
        account = self.get_account(address)
        account.balance += amount
        self.put_account(account)

    def emit(self, event: LedgerEvent) -> None:
        self.events.append(event)


class LedgerStore(ABC):
    """Versioned storage for CID records, accounts and the event log."""

    def begin(self) -> LedgerTransaction:
        return LedgerTransaction(self)

    @abstractmethod
    def load_cid(self, cid: str) -> Optional[CidRecord]:
        """Return a detached copy of a CID record, or None."""
        pass

    @abstractmethod
    def load_account(self, address: str) -> Optional[Account]:
        """Return a detached copy of an account, or None."""
        pass

    @abstractmethod
    def commit(self, tx: LedgerTransaction) -> bool:
        """
        Apply every buffered write if no version read by tx has moved.

        Returns:
            True if committed, False on a version conflict (nothing
            written in that case)
        """
        pass

    @abstractmethod
    def events(self) -> List[LedgerEvent]:
        pass


class MemoryLedgerStore(LedgerStore):
    """Thread-safe in-memory store."""

    def __init__(self):
        self._cids: Dict[str, CidRecord] = {}
        self._accounts: Dict[str, Account] = {}
        self._events: List[LedgerEvent] = []
        self._lock = threading.RLock()

    def load_cid(self, cid: str) -> Optional[CidRecord]:
        with self._lock:
            record = self._cids.get(cid)
            return copy.copy(record) if record else None

    def load_account(self, address: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(address)
            return copy.copy(account) if account else None

    def commit(self, tx: LedgerTransaction) -> bool:
        with self._lock:
            for cid, version in tx.cid_reads.items():
                current = self._cids.get(cid)
                if (current.version if current else 0) != version:
                    return False
            for address, version in tx.account_reads.items():
                current = self._accounts.get(address)
                if (current.version if current else 0) != version:
                    return False

            for cid, record in tx.dirty_cids.items():
                stored = copy.copy(record)
                stored.version = tx.cid_reads[cid] + 1
                self._cids[cid] = stored
            for address, account in tx.dirty_accounts.items():
                stored = copy.copy(account)
                stored.version = tx.account_reads[address] + 1
                self._accounts[address] = stored
            self._events.extend(tx.events)
            return True

    def events(self) -> List[LedgerEvent]:
        with self._lock:
            return list(self._events)


class SqliteLedgerStore(LedgerStore):
    """
    SQLite-backed store.

    Commits run inside BEGIN IMMEDIATE so the version checks and the
    writes happen under one write lock; each write is additionally
    guarded by `WHERE version=?` so a racing writer from another
    process is caught by rowcount.
    """

    def __init__(self, path: str = "data/ledger.db"):
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._lock = threading.Lock()
        self.init_db()

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise

    def init_db(self) -> None:
        """Create schema. Safe to call multiple times."""
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS cid_economics (
                cid TEXT PRIMARY KEY,
                publisher TEXT NOT NULL,
                insurance_pool TEXT NOT NULL,
                reward_pool TEXT NOT NULL,
                consecutive_breaches INTEGER NOT NULL,
                last_breach_at INTEGER,
                funded_at INTEGER NOT NULL,
                version INTEGER NOT NULL
            );""")
            # Amounts are stored as decimal text; wei values exceed 64 bits
            conn.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                address TEXT PRIMARY KEY,
                rewards TEXT NOT NULL,
                balance TEXT NOT NULL,
                version INTEGER NOT NULL
            );""")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS ledger_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                ts INTEGER NOT NULL,
                fields_json TEXT NOT NULL
            );""")

    def load_cid(self, cid: str) -> Optional[CidRecord]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM cid_economics WHERE cid=?", (cid,)).fetchone()
        if row is None:
            return None
        return CidRecord(
            cid=row["cid"],
            publisher=row["publisher"],
            insurance_pool=int(row["insurance_pool"]),
            reward_pool=int(row["reward_pool"]),
            consecutive_breaches=row["consecutive_breaches"],
            last_breach_at=row["last_breach_at"],
            funded_at=row["funded_at"],
            version=row["version"],
        )

    def load_account(self, address: str) -> Optional[Account]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM accounts WHERE address=?", (address,)).fetchone()
        if row is None:
            return None
        return Account(
            address=row["address"],
            rewards=int(row["rewards"]),
            balance=int(row["balance"]),
            version=row["version"],
        )

    def commit(self, tx: LedgerTransaction) -> bool:
        try:
            with self._transaction() as conn:
                for cid, version in tx.cid_reads.items():
                    if self._version(conn, "cid_economics", "cid", cid) != version:
                        raise _VersionConflict(cid)
                for address, version in tx.account_reads.items():
                    if self._version(conn, "accounts", "address", address) != version:
                        raise _VersionConflict(address)

                for cid, r in tx.dirty_cids.items():
                    expected = tx.cid_reads[cid]
                    values = (r.publisher, str(r.insurance_pool), str(r.reward_pool),
                              r.consecutive_breaches, r.last_breach_at, r.funded_at)
                    if expected == 0:
                        cur = conn.execute(
                            "INSERT OR IGNORE INTO cid_economics(publisher, insurance_pool, reward_pool, "
                            "consecutive_breaches, last_breach_at, funded_at, cid, version) "
                            "VALUES(?,?,?,?,?,?,?,1)",
                            values + (cid,)
                        )
                    else:
                        cur = conn.execute(
                            "UPDATE cid_economics SET publisher=?, insurance_pool=?, reward_pool=?, "
                            "consecutive_breaches=?, last_breach_at=?, funded_at=?, version=version+1 "
                            "WHERE cid=? AND version=?",
                            values + (cid, expected)
                        )
                    if cur.rowcount != 1:
                        raise _VersionConflict(cid)

                for address, a in tx.dirty_accounts.items():
                    expected = tx.account_reads[address]
                    if expected == 0:
                        cur = conn.execute(
                            "INSERT OR IGNORE INTO accounts(rewards, balance, address, version) VALUES(?,?,?,1)",
                            (str(a.rewards), str(a.balance), address)
                        )
                    else:
                        cur = conn.execute(
                            "UPDATE accounts SET rewards=?, balance=?, version=version+1 "
                            "WHERE address=? AND version=?",
                            (str(a.rewards), str(a.balance), address, expected)
                        )
                    if cur.rowcount != 1:
                        raise _VersionConflict(address)

                for event in tx.events:
                    conn.execute(
                        "INSERT INTO ledger_events(name, ts, fields_json) VALUES(?,?,?)",
                        (event.name, event.ts, json.dumps(event.fields, sort_keys=True))
                    )
        except _VersionConflict:
            return False
        return True

    @staticmethod
    def _version(conn: sqlite3.Connection, table: str, key_column: str, key: str) -> int:
        row = conn.execute(f"SELECT version FROM {table} WHERE {key_column}=?", (key,)).fetchone()
        return row["version"] if row else 0

    def events(self) -> List[LedgerEvent]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT name, ts, fields_json FROM ledger_events ORDER BY seq ASC"
            ).fetchall()
        return [LedgerEvent(name=r["name"], ts=r["ts"], fields=json.loads(r["fields_json"])) for r in rows]

    def get_stats(self) -> Dict[str, int]:
        """Row counts for monitoring."""
        stats = {}
        with self._lock:
            for table in ("cid_economics", "accounts", "ledger_events"):
                cur = self._conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
                stats[f"{table}_count"] = cur.fetchone()["cnt"]
        return stats

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class _VersionConflict(Exception):
    pass
