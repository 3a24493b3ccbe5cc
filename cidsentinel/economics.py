"""
Economics Engine.

Per-CID stake state machine driven by cycle verdicts:

    fund_stake        UNFUNDED -> FUNDED (fee to treasury, rest split
                      into reward and insurance pools)
    record_cycle      OK resets the breach counter and pays the per-cycle
                      monitoring reward; BREACH increments it
    payout_on_breach  slashes a fraction of the insurance pool once the
                      counter reaches the threshold
    claim_rewards     pushes a beneficiary's accrued rewards
    withdraw_publisher_stake
                      returns stake to the publisher outside the cooldown

Each operation is all-or-nothing. It runs against a buffered
transaction, every transfer is checked, and the writes commit as a
single compare-and-swap. A failed precondition or transfer raises
LedgerRejection and nothing is persisted; events reach subscribers only
after the commit.

Amounts are integers in the smallest ledger unit (wei).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple, Union

from .aggregation import CycleStatus
from .config import BPS_DENOMINATOR
from .ledger_store import (
    CidRecord,
    LedgerEvent,
    LedgerStore,
    LedgerTransaction,
    MemoryLedgerStore,
)
from .logging_config import audit_log
from .util import now_epoch

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class RejectReason(str, Enum):
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_STATUS = "INVALID_STATUS"
    ALREADY_FUNDED = "ALREADY_FUNDED"
    NOT_FUNDED = "NOT_FUNDED"
    UNAUTHORIZED = "UNAUTHORIZED"
    THRESHOLD_NOT_MET = "THRESHOLD_NOT_MET"
    INSURANCE_EMPTY = "INSURANCE_EMPTY"
    NO_REWARDS = "NO_REWARDS"
    NOT_PUBLISHER = "NOT_PUBLISHER"
    BREACH_ACTIVE = "BREACH_ACTIVE"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


class LedgerRejection(Exception):
    """A ledger operation was refused. No state changed."""

    def __init__(self, reason: RejectReason, detail: str = ""):
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail


class TransferAgent:
    """Pushes funds out of the ledger. send() returns False on failure."""

    def send(self, tx: LedgerTransaction, to: str, amount: int) -> bool:
        raise NotImplementedError


class InternalTransferAgent(TransferAgent):
    """Credits the ledger's own account book within the same transaction."""

    def send(self, tx: LedgerTransaction, to: str, amount: int) -> bool:
        tx.credit(to, amount)
        return True


@dataclass(frozen=True)
class EconomicsParams:
    platform_fee_bps: int = 250
    reward_bps: int = 1500
    insurance_bps: int = 8500
    ok_reward: int = 10 ** 14
    breach_threshold: int = 3
    payout_bps: int = 5000
    validator_share_bps: int = 6000
    withdraw_cooldown_seconds: int = 86400
    min_insurance_floor: int = 0
    treasury: str = "treasury"
    validator: str = "validator"
    policy: str = "policy"

    def __post_init__(self):
        for name in ("platform_fee_bps", "reward_bps", "insurance_bps", "payout_bps", "validator_share_bps"):
            value = getattr(self, name)
            if not (0 <= value <= BPS_DENOMINATOR):
                raise ValueError(f"{name} must be within 0..{BPS_DENOMINATOR}, got {value}")
        if self.reward_bps + self.insurance_bps != BPS_DENOMINATOR:
            raise ValueError("reward_bps + insurance_bps must equal 10000")
        if self.breach_threshold < 1:
            raise ValueError("breach_threshold must be >= 1")
        if self.ok_reward < 0 or self.min_insurance_floor < 0 or self.withdraw_cooldown_seconds < 0:
            raise ValueError("amounts and cooldown must be >= 0")

    @classmethod
    def from_config(cls, config) -> "EconomicsParams":
        return cls(
            platform_fee_bps=config.platform_fee_bps,
            reward_bps=config.reward_bps,
            insurance_bps=config.insurance_bps,
            ok_reward=config.ok_reward_wei,
            breach_threshold=config.breach_threshold,
            payout_bps=config.payout_bps,
            validator_share_bps=config.validator_share_bps,
            withdraw_cooldown_seconds=config.withdraw_cooldown_seconds,
            min_insurance_floor=config.min_insurance_floor_wei,
            treasury=config.treasury_address,
            validator=config.validator_address,
            policy=config.policy_address,
        )


def split_deposit(amount: int, params: EconomicsParams) -> Tuple[int, int, int]:
    """
    Split a deposit into (platform_fee, insurance, reward).

    Rounding remainders land in the insurance pool so the three parts
    always sum to the deposit.
    """
    fee = amount * params.platform_fee_bps // BPS_DENOMINATOR
    remaining = amount - fee
    reward = remaining * params.reward_bps // BPS_DENOMINATOR
    insurance = remaining - reward
    return fee, insurance, reward


def split_slash(insurance_pool: int, params: EconomicsParams) -> Tuple[int, int, int]:
    """
    Slash amount for a payout and its (validator, treasury) shares.

    A pool too small for the configured fraction to be non-zero is
    slashed in full.
    """
    slash = insurance_pool * params.payout_bps // BPS_DENOMINATOR
    if slash == 0:
        slash = insurance_pool
    validator_share = slash * params.validator_share_bps // BPS_DENOMINATOR
    treasury_share = slash - validator_share
    return slash, validator_share, treasury_share


Subscriber = Callable[[LedgerEvent], None]


class EconomicsEngine:
    """
    Ledger state machine over a versioned store.

    Args:
        params: Split, reward and threshold parameters
        store: Ledger storage (in-memory when omitted)
        transfer_agent: Outbound transfers (internal account book when omitted)
        clock: Returns the current epoch seconds
        max_attempts: Re-runs allowed on a version conflict
    """

    def __init__(
        self,
        params: Optional[EconomicsParams] = None,
        store: Optional[LedgerStore] = None,
        transfer_agent: Optional[TransferAgent] = None,
        clock: Callable[[], int] = now_epoch,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.params = params or EconomicsParams()
        self.store = store or MemoryLedgerStore()
        self.transfer_agent = transfer_agent or InternalTransferAgent()
        self.clock = clock
        self.max_attempts = max_attempts
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def deposit_split(self, amount: int) -> Tuple[int, int, int]:
        return split_deposit(amount, self.params)

    def get_cid(self, cid: str) -> Optional[CidRecord]:
        return self.store.load_cid(cid)

    def accrued_rewards(self, address: str) -> int:
        account = self.store.load_account(address)
        return account.rewards if account else 0

    def balance_of(self, address: str) -> int:
        account = self.store.load_account(address)
        return account.balance if account else 0

    def events(self) -> List[LedgerEvent]:
        return self.store.events()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def fund_stake(self, cid: str, publisher: str, amount: int) -> CidRecord:
        """Create the stake record for a CID. One-time per CID."""

        def transition(tx: LedgerTransaction, now: int) -> CidRecord:
            if not isinstance(amount, int) or amount <= 0:
                raise LedgerRejection(RejectReason.INVALID_AMOUNT, "stake must be > 0")
            if tx.get_cid(cid) is not None:
                raise LedgerRejection(RejectReason.ALREADY_FUNDED, cid)

            fee, insurance, reward = split_deposit(amount, self.params)
            record = CidRecord(
                cid=cid,
                publisher=publisher,
                insurance_pool=insurance,
                reward_pool=reward,
                funded_at=now,
            )
            tx.put_cid(record)
            if fee:
                self._push(tx, self.params.treasury, fee)
            tx.emit(LedgerEvent("PublisherStaked", {
                "cid": cid, "publisher": publisher, "total": amount,
                "insurance": insurance, "rewards": reward,
            }, now))
            return record

        return self._run("fund_stake", transition, cid=cid)

    def record_cycle(self, cid: str, status: Union[CycleStatus, str], caller: str) -> CidRecord:
        """
        Apply one cycle verdict. Only the policy role may call.

        OK resets the breach counter and, while the reward pool covers
        it, accrues the per-cycle reward to the validator. DEGRADED
        changes nothing. BREACH increments the counter.
        """

        def transition(tx: LedgerTransaction, now: int) -> CidRecord:
            if caller != self.params.policy:
                raise LedgerRejection(RejectReason.UNAUTHORIZED, f"{caller} may not record cycles")
            try:
                verdict = CycleStatus(status)
            except ValueError:
                raise LedgerRejection(RejectReason.INVALID_STATUS, str(status)) from None
            record = self._funded(tx, cid)

            if verdict == CycleStatus.OK:
                record.consecutive_breaches = 0
                reward = self.params.ok_reward
                if reward > 0 and record.reward_pool >= reward:
                    record.reward_pool -= reward
                    account = tx.get_account(self.params.validator)
                    account.rewards += reward
                    tx.put_account(account)
                    tx.emit(LedgerEvent("MonitoringRewardPaid", {
                        "cid": cid, "validator": self.params.validator, "amount": reward,
                    }, now))
            elif verdict == CycleStatus.BREACH:
                record.consecutive_breaches += 1
                record.last_breach_at = now
                tx.emit(LedgerEvent("BreachRecorded", {
                    "cid": cid, "consecutiveCount": record.consecutive_breaches,
                }, now))

            tx.put_cid(record)
            return record

        return self._run("record_cycle", transition, cid=cid)

    def payout_on_breach(self, cid: str) -> Tuple[int, int]:
        """
        Slash the insurance pool after enough consecutive breaches.

        Returns:
            (validator_share, treasury_share)
        """

        def transition(tx: LedgerTransaction, now: int) -> Tuple[int, int]:
            record = self._funded(tx, cid)
            if record.consecutive_breaches < self.params.breach_threshold:
                raise LedgerRejection(
                    RejectReason.THRESHOLD_NOT_MET,
                    f"{record.consecutive_breaches}/{self.params.breach_threshold} breaches",
                )
            if record.insurance_pool <= 0:
                raise LedgerRejection(RejectReason.INSURANCE_EMPTY, cid)

            slash, validator_share, treasury_share = split_slash(record.insurance_pool, self.params)
            record.insurance_pool -= slash
            record.consecutive_breaches = 0
            tx.put_cid(record)

            for beneficiary, share in ((self.params.validator, validator_share),
                                       (self.params.treasury, treasury_share)):
                if share:
                    self._push(tx, beneficiary, share)
                tx.emit(LedgerEvent("InsurancePayout", {
                    "cid": cid, "beneficiary": beneficiary, "amount": share,
                }, now))
            return validator_share, treasury_share

        return self._run("payout_on_breach", transition, cid=cid)

    def claim_rewards(self, beneficiary: str) -> int:
        """Push and zero a beneficiary's accrued rewards."""

        def transition(tx: LedgerTransaction, now: int) -> int:
            account = tx.get_account(beneficiary)
            amount = account.rewards
            if amount <= 0:
                raise LedgerRejection(RejectReason.NO_REWARDS, beneficiary)
            account.rewards = 0
            tx.put_account(account)
            self._push(tx, beneficiary, amount)
            tx.emit(LedgerEvent("RewardsClaimed", {"validator": beneficiary, "amount": amount}, now))
            return amount

        return self._run("claim_rewards", transition, beneficiary=beneficiary)

    def withdraw_publisher_stake(self, cid: str, caller: str, amount: int) -> CidRecord:
        """
        Return stake to the publisher.

        Draws from the reward pool first, then from insurance down to the
        configured floor.
        """

        def transition(tx: LedgerTransaction, now: int) -> CidRecord:
            record = self._funded(tx, cid)
            if caller != record.publisher:
                raise LedgerRejection(RejectReason.NOT_PUBLISHER, f"{caller} is not the publisher of {cid}")
            if record.consecutive_breaches != 0:
                raise LedgerRejection(
                    RejectReason.BREACH_ACTIVE, f"{record.consecutive_breaches} consecutive breaches"
                )
            if record.last_breach_at is not None:
                unlocks_at = record.last_breach_at + self.params.withdraw_cooldown_seconds
                if now < unlocks_at:
                    raise LedgerRejection(RejectReason.COOLDOWN_ACTIVE, f"locked until {unlocks_at}")
            if not isinstance(amount, int) or amount <= 0:
                raise LedgerRejection(RejectReason.INVALID_AMOUNT, "withdrawal must be > 0")

            insurance_available = max(0, record.insurance_pool - self.params.min_insurance_floor)
            available = record.reward_pool + insurance_available
            if amount > available:
                raise LedgerRejection(
                    RejectReason.INSUFFICIENT_FUNDS, f"requested {amount}, available {available}"
                )

            from_rewards = min(amount, record.reward_pool)
            record.reward_pool -= from_rewards
            record.insurance_pool -= amount - from_rewards
            tx.put_cid(record)
            self._push(tx, record.publisher, amount)
            tx.emit(LedgerEvent("StakeWithdrawn", {
                "cid": cid, "publisher": record.publisher, "amount": amount,
            }, now))
            return record

        return self._run("withdraw_publisher_stake", transition, cid=cid)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _funded(self, tx: LedgerTransaction, cid: str) -> CidRecord:
        record = tx.get_cid(cid)
        if record is None:
            raise LedgerRejection(RejectReason.NOT_FUNDED, cid)
        return record

    def _push(self, tx: LedgerTransaction, to: str, amount: int) -> None:
        if not self.transfer_agent.send(tx, to, amount):
            raise LedgerRejection(RejectReason.TRANSFER_FAILED, f"transfer of {amount} to {to} failed")

    def _run(self, operation: str, transition: Callable[[LedgerTransaction, int], Any], **context) -> Any:
        for attempt in range(self.max_attempts):
            tx = self.store.begin()
            try:
                result = transition(tx, self.clock())
            except LedgerRejection as e:
                audit_log.ledger_rejected(operation, e.reason.value, detail=e.detail, **context)
                raise
            if self.store.commit(tx):
                self._deliver(tx.events)
                return result
            logger.info("Version conflict in %s (attempt %d/%d)", operation, attempt + 1, self.max_attempts)

        audit_log.ledger_rejected(operation, RejectReason.CONCURRENT_MODIFICATION.value, **context)
        raise LedgerRejection(
            RejectReason.CONCURRENT_MODIFICATION,
            f"{operation} lost {self.max_attempts} commit races",
        )

    def _deliver(self, events: List[LedgerEvent]) -> None:
        for event in events:
            audit_log.ledger_event(event.name, **event.fields)
            for callback in self._subscribers:
                try:
                    callback(event)
                except Exception:
                    logger.exception("Ledger event subscriber failed on %s", event.name)
