"""
Shares-based time-locked staking for StakeLedger.

Holders lock tokens for a chosen number of days and receive *shares*.
Funders pre-pay daily rewards (see ``daily.py``); every processed day
splits its payout over the shares that were active on that day.

Stake lifecycle
───────────────
  Pending   created, ``current_day < locked_day``  (locked_day = start + 1)
  Active    accruing rewards
  Matured   ``current_day >= locked_day + staked_days``
  Closed    ``unlocked_day`` set, by ``stake_end`` or by anyone through
            ``stake_good_accounting``

Only creation and closing are explicit transitions; the other states are
derived from the clock.

Write operations
────────────────
  stake_start             lock tokens, mint shares at the current share rate
  stake_end               close a stake, pay principal + payout − penalty
  stake_good_accounting   settle a matured stake for its absent owner:
                          shares leave the pool, penalty is applied, tokens
                          stay in custody until the owner calls stake_end
  fund_rewards            pre-pay future days
  daily_data_update       close unprocessed days up to a given day

Every operation samples the clock once, runs under one lock and validates
and prices everything first.  Token moves and state changes then run as one
transaction: a custodian error or a failed invariant check reverses the
moves already made and restores the engine, so a failure leaves no trace.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterator, Optional

from stakeledger_core.custodian import BURN_ADDRESS, TokenCustodian
from stakeledger_core.daily import (
    DEFAULT_MAX_CATCH_UP_DAYS,
    CatchUpPlan,
    DailyDatum,
    DailyRewardLedger,
)
from stakeledger_core.errors import (
    AlreadyUnlocked,
    BelowMinimum,
    CustodianError,
    DurationTooLong,
    DurationTooShort,
    EmptyStakeList,
    FutureDay,
    HardLockActive,
    InsufficientBalance,
    InvalidRange,
    InvalidStakeIndex,
    InvariantViolation,
    NotFullyServed,
    NotLaunched,
    StakeIdMismatch,
)
from stakeledger_core.penalty import (
    HARD_LOCK_DAYS,
    PenaltyDisposition,
    PenaltyEngine,
    PenaltySplit,
    StakePerformance,
    hard_lock_active,
)
from stakeledger_core.share_rate import (
    INITIAL_SHARE_RATE,
    ShareRateController,
    bonus_amount,
)

logger = logging.getLogger("stakeledger_staking")

SECONDS_PER_DAY: int = 86_400

MIN_STAKE_DAYS: int = 30
MAX_STAKE_DAYS: int = 5555

# Default sink weights: 3/5 to the penalty recipient, 2/5 burned.
PENALTY_RECIPIENT_WEIGHT: int = 3
BURN_WEIGHT: int = 2


class StakeState(str, Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    MATURED = "Matured"
    CLOSED = "Closed"


# ── Records ─────────────────────────────────────────────────────────────

@dataclass
class Stake:
    """
    One locked deposit.

    ``stake_id`` is a global generation counter: it guards index-based
    calls against the owner's list being reshuffled by a concurrent
    ``stake_end`` (which swaps the last stake into the freed slot).
    """
    stake_id: int
    owner: str
    staked_amount: int
    stake_shares: int
    locked_day: int
    staked_days: int
    unlocked_day: int = 0

    @property
    def maturity_day(self) -> int:
        return self.locked_day + self.staked_days

    @property
    def is_open(self) -> bool:
        return self.unlocked_day == 0

    def state(self, current_day: int) -> StakeState:
        if self.unlocked_day:
            return StakeState.CLOSED
        if current_day >= self.maturity_day:
            return StakeState.MATURED
        if current_day >= self.locked_day:
            return StakeState.ACTIVE
        return StakeState.PENDING

    def to_dict(self, current_day: Optional[int] = None) -> dict:
        d = {
            "stake_id": self.stake_id,
            "owner": self.owner,
            "staked_amount": self.staked_amount,
            "stake_shares": self.stake_shares,
            "locked_day": self.locked_day,
            "staked_days": self.staked_days,
            "unlocked_day": self.unlocked_day,
        }
        if current_day is not None:
            d["state"] = self.state(current_day).value
        return d


@dataclass
class GlobalState:
    """Snapshot of the ledger-wide totals."""
    locked_stake_total: int = 0
    stake_shares_total: int = 0
    next_stake_shares_total: int = 0
    stake_penalty_total: int = 0
    share_rate: int = INITIAL_SHARE_RATE
    daily_data_count: int = 0
    latest_stake_id: int = 0

    def to_dict(self) -> dict:
        return {
            "locked_stake_total": self.locked_stake_total,
            "stake_shares_total": self.stake_shares_total,
            "next_stake_shares_total": self.next_stake_shares_total,
            "stake_penalty_total": self.stake_penalty_total,
            "share_rate": self.share_rate,
            "daily_data_count": self.daily_data_count,
            "latest_stake_id": self.latest_stake_id,
        }


@dataclass(frozen=True)
class _Settlement:
    performance: StakePerformance
    unclaimable: int
    disposition: PenaltyDisposition


@dataclass
class _Checkpoint:
    """Engine state at the start of a write, plus its custodian moves."""
    stakes: dict[str, list[Stake]]
    totals: tuple[int, int, int, int, int]
    share_rate: int
    daily: tuple
    # ("in" | "out", address, amount) in execution order
    moves: list[tuple[str, str, int]]


# ── Engine ──────────────────────────────────────────────────────────────

class StakingEngine:
    """
    The staking ledger.

    Construction needs the token custodian, the launch timestamp (day 0
    starts there) and the address receiving the penalty recipient's
    share.  ``clock`` returns epoch seconds and is injected for tests.
    """

    def __init__(
        self,
        custodian: TokenCustodian,
        launch_timestamp: int,
        penalty_recipient: str,
        *,
        burn_address: str = BURN_ADDRESS,
        penalty_split: Optional[PenaltySplit] = None,
        max_catch_up_days: int = DEFAULT_MAX_CATCH_UP_DAYS,
        clock: Callable[[], float] = time.time,
        invariant_checker=None,
    ) -> None:
        self.custodian = custodian
        self.launch_timestamp = int(launch_timestamp)
        self.penalty_recipient = penalty_recipient
        self.penalty_split = penalty_split or PenaltySplit((
            (penalty_recipient, PENALTY_RECIPIENT_WEIGHT),
            (burn_address, BURN_WEIGHT),
        ))
        self.clock = clock
        self.invariant_checker = invariant_checker

        self.daily = DailyRewardLedger(max_catch_up_days=max_catch_up_days)
        self.rates = ShareRateController()
        self.penalties = PenaltyEngine()

        self.stakes: dict[str, list[Stake]] = {}
        self.locked_stake_total: int = 0
        self.stake_shares_total: int = 0
        self.next_stake_shares_total: int = 0
        self.stake_penalty_total: int = 0
        self.latest_stake_id: int = 0

        self._lock = threading.Lock()
        self._checkpoint: Optional[_Checkpoint] = None

    # ── clock ───────────────────────────────────────────────────────

    def _day_at(self, now: float) -> int:
        if now < self.launch_timestamp:
            raise NotLaunched(f"Ledger launches at {self.launch_timestamp}")
        return int(now - self.launch_timestamp) // SECONDS_PER_DAY

    def _today(self) -> int:
        return self._day_at(self.clock())

    def current_day(self) -> int:
        return self._today()

    # ── read surface ────────────────────────────────────────────────

    def globals(self) -> GlobalState:
        with self._lock:
            return self._globals()

    def _globals(self) -> GlobalState:
        return GlobalState(
            locked_stake_total=self.locked_stake_total,
            stake_shares_total=self.stake_shares_total,
            next_stake_shares_total=self.next_stake_shares_total,
            stake_penalty_total=self.stake_penalty_total,
            share_rate=self.rates.current_rate(),
            daily_data_count=self.daily.daily_data_count,
            latest_stake_id=self.latest_stake_id,
        )

    def stake_count(self, owner: str) -> int:
        with self._lock:
            return len(self.stakes.get(owner, []))

    def stake_lists(self, owner: str, stake_index: int) -> Stake:
        with self._lock:
            stakes = self.stakes.get(owner, [])
            if not 0 <= stake_index < len(stakes):
                raise InvalidStakeIndex(f"No stake {stake_index} for {owner}")
            return replace(stakes[stake_index])

    def daily_data_range(self, from_day: int, to_day: int) -> list[DailyDatum]:
        with self._lock:
            return [replace(d) for d in self.daily.range_query(from_day, to_day)]

    def stake_start_bonus_shares(self, amount: int, days: int) -> int:
        """Bonus credited on top of *amount* for a stake of *days* days."""
        return bonus_amount(amount, days)

    # ── transactions ────────────────────────────────────────────────

    def _totals(self) -> tuple[int, int, int, int, int]:
        return (
            self.locked_stake_total,
            self.stake_shares_total,
            self.next_stake_shares_total,
            self.stake_penalty_total,
            self.latest_stake_id,
        )

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[None]:
        """
        Run the mutating part of a write as one unit.

        Custodian moves go through ``_transfer_in`` / ``_pay_out`` so they
        can be reversed.  Any error inside the block, including a failed
        invariant check on exit, reverses those moves and restores the
        engine to its state on entry before the error propagates.
        """
        self._checkpoint = _Checkpoint(
            stakes={o: [replace(s) for s in owned] for o, owned in self.stakes.items()},
            totals=self._totals(),
            share_rate=self.rates.share_rate,
            daily=self.daily.checkpoint(),
            moves=[],
        )
        if self.invariant_checker is not None:
            self.invariant_checker.capture(self)
        try:
            yield
            if self.invariant_checker is not None:
                ok, msg = self.invariant_checker.verify(self)
                if not ok:
                    logger.error(f"Invariant check failed after {operation}: {msg}")
                    raise InvariantViolation(msg)
        except BaseException:
            self._rollback(operation)
            raise
        finally:
            self._checkpoint = None

    def _rollback(self, operation: str) -> None:
        cp = self._checkpoint
        for direction, address, amount in reversed(cp.moves):
            try:
                if direction == "in":
                    self.custodian.transfer_out(address, amount)
                else:
                    self.custodian.transfer_in(address, amount)
            except CustodianError as exc:
                logger.error(
                    f"Rollback of {operation}: could not reverse {direction} "
                    f"transfer of {amount} for {address}: {exc}"
                )
        self.stakes = cp.stakes
        (self.locked_stake_total, self.stake_shares_total,
         self.next_stake_shares_total, self.stake_penalty_total,
         self.latest_stake_id) = cp.totals
        self.rates.share_rate = cp.share_rate
        self.daily.restore(cp.daily)
        if cp.moves:
            logger.warning(f"{operation} rolled back, {len(cp.moves)} transfers reversed")

    def _transfer_in(self, sender: str, amount: int) -> None:
        self.custodian.transfer_in(sender, amount)
        self._checkpoint.moves.append(("in", sender, amount))

    def _pay_out(self, payments: list[tuple[str, int]]) -> None:
        """Pay every leg or, via the enclosing transaction, none of them."""
        for recipient, amount in payments:
            if amount:
                self.custodian.transfer_out(recipient, amount)
                self._checkpoint.moves.append(("out", recipient, amount))

    # ── catch-up helpers ────────────────────────────────────────────

    def _plan_catch_up(self, target_day: int) -> CatchUpPlan:
        return self.daily.plan_catch_up(
            target_day,
            self.stake_shares_total,
            self.next_stake_shares_total,
            self.stake_penalty_total,
        )

    def _apply_plan(self, plan: CatchUpPlan) -> None:
        if plan.is_empty:
            return
        self.daily.commit(plan)
        self.stake_shares_total = plan.stake_shares_total
        self.next_stake_shares_total = plan.next_stake_shares_total
        self.stake_penalty_total = plan.stake_penalty_total

    # ── stake helpers ───────────────────────────────────────────────

    def _load_stake(self, owner: str, stake_index: int, stake_id: int) -> Stake:
        stakes = self.stakes.get(owner, [])
        if not 0 <= stake_index < len(stakes):
            raise InvalidStakeIndex(f"Stake index {stake_index} invalid for {owner}")
        stake = stakes[stake_index]
        if stake.stake_id != stake_id:
            raise StakeIdMismatch(
                f"Stake {stake_index} of {owner} has id {stake.stake_id}, not {stake_id}"
            )
        return stake

    def _performance(self, stake: Stake, day: int, plan: CatchUpPlan) -> StakePerformance:
        unlocked_day = stake.unlocked_day or day

        def payout_fn(begin: int, end: int) -> int:
            return self.daily.payout_rewards(stake.stake_shares, begin, end, plan)

        return self.penalties.compute(
            principal=stake.staked_amount,
            locked_day=stake.locked_day,
            staked_days=stake.staked_days,
            unlocked_day=unlocked_day,
            payout_fn=payout_fn,
        )

    def _settle(self, stake: Stake, day: int, plan: CatchUpPlan) -> _Settlement:
        """Price the closing of an open stake on *day*."""
        performance = self._performance(stake, day, plan)
        # Rewards the shares kept earning after maturity belong to nobody
        unclaimable = 0
        if day > stake.maturity_day:
            unclaimable = self.daily.payout_rewards(
                stake.stake_shares, stake.maturity_day, day, plan,
            )
        return _Settlement(
            performance=performance,
            unclaimable=unclaimable,
            disposition=self.penalty_split.dispose(performance.capped_penalty),
        )

    def _check_outflow(self, amount: int) -> None:
        custody = self.custodian.balance_of(self.custodian.custody_address)
        if custody < amount:
            raise InsufficientBalance(
                f"Custody holds {custody}, operation pays out {amount}"
            )

    def _release(self, stake: Stake, settlement: _Settlement) -> None:
        """Take an open stake out of the share pool and locked total."""
        if self.daily.is_pending(stake.locked_day):
            self.daily.remove_pending(stake.locked_day, stake.stake_shares)
            self.next_stake_shares_total -= stake.stake_shares
        else:
            self.stake_shares_total -= stake.stake_shares
        self.locked_stake_total -= stake.staked_amount
        self.stake_penalty_total += (
            settlement.disposition.redistributed + settlement.unclaimable
        )

    def _remove_stake(self, owner: str, stake_index: int) -> None:
        stakes = self.stakes[owner]
        last = stakes.pop()
        if stake_index < len(stakes):
            stakes[stake_index] = last

    # ── write surface ───────────────────────────────────────────────

    def stake_start(self, owner: str, amount: int, days: int) -> Stake:
        """Lock *amount* for *days* days; returns the new stake."""
        with self._lock:
            day = self._today()

            if days < MIN_STAKE_DAYS:
                raise DurationTooShort(f"Minimum stake duration is {MIN_STAKE_DAYS} days")
            if days > MAX_STAKE_DAYS:
                raise DurationTooLong(f"Maximum stake duration is {MAX_STAKE_DAYS} days")
            if amount < self.rates.current_rate():
                raise BelowMinimum(
                    f"Staked amount must be at least the share rate ({self.rates.current_rate()})"
                )
            shares = self.rates.shares_for(amount, days)
            if shares <= 0:
                raise BelowMinimum("Staked amount buys no shares")

            with self._transaction("stake_start"):
                self._transfer_in(owner, amount)

                self.latest_stake_id += 1
                stake = Stake(
                    stake_id=self.latest_stake_id,
                    owner=owner,
                    staked_amount=amount,
                    stake_shares=shares,
                    locked_day=day + 1,
                    staked_days=days,
                )
                self.stakes.setdefault(owner, []).append(stake)
                self.daily.add_pending(stake.locked_day, shares)
                self.next_stake_shares_total += shares
                self.locked_stake_total += amount

            logger.info(
                f"Stake {stake.stake_id} started by {owner}: amount={amount} "
                f"days={days} shares={shares} locked_day={stake.locked_day}"
            )
            return replace(stake)

    def stake_end(self, owner: str, stake_index: int, stake_id: int) -> StakePerformance:
        """Close the owner's stake and pay out its return."""
        with self._lock:
            day = self._today()
            stake = self._load_stake(owner, stake_index, stake_id)
            if hard_lock_active(stake.locked_day, day):
                raise HardLockActive(
                    f"Stake {stake_id} is hard-locked until day "
                    f"{stake.locked_day + HARD_LOCK_DAYS}"
                )

            plan = self._plan_catch_up(day)
            payments = []
            if stake.is_open:
                settlement = self._settle(stake, day, plan)
                performance = settlement.performance
                payments.append((owner, performance.stake_return))
                payments.extend(settlement.disposition.transfers)
            else:
                settlement = None
                performance = self._performance(stake, day, plan)
                payments.append((owner, performance.stake_return))
            self._check_outflow(sum(amount for _, amount in payments))

            with self._transaction("stake_end"):
                self._pay_out(payments)
                self._apply_plan(plan)
                if settlement is not None:
                    self._release(stake, settlement)
                    stake.unlocked_day = day

                rate_moved = False
                if performance.capped_penalty == 0 and performance.served_days >= stake.staked_days:
                    rate_moved = self.rates.observe(
                        performance.stake_return, stake.staked_days, stake.stake_shares,
                    )
                self._remove_stake(owner, stake_index)

            logger.info(
                f"Stake {stake_id} ended by {owner}: return={performance.stake_return} "
                f"payout={performance.payout} penalty={performance.capped_penalty}"
                + (f" share_rate={self.rates.current_rate()}" if rate_moved else "")
            )
            return performance

    def stake_good_accounting(
        self,
        caller: str,
        owner: str,
        stake_index: int,
        stake_id: int,
    ) -> StakePerformance:
        """Settle a matured stake on behalf of its owner.

        The stake's shares stop diluting the pool and its penalty (if any)
        is applied, but the return stays in custody until the owner calls
        ``stake_end``.
        """
        with self._lock:
            day = self._today()
            if not self.stakes.get(owner):
                raise EmptyStakeList(f"{owner} has no stakes")
            stake = self._load_stake(owner, stake_index, stake_id)
            if not stake.is_open:
                raise AlreadyUnlocked(f"Stake {stake_id} already unlocked on day {stake.unlocked_day}")
            if day < stake.maturity_day or hard_lock_active(stake.locked_day, day):
                raise NotFullyServed(
                    f"Stake {stake_id} matures on day {stake.maturity_day}"
                )

            plan = self._plan_catch_up(day)
            settlement = self._settle(stake, day, plan)
            self._check_outflow(settlement.disposition.sink_total)

            with self._transaction("stake_good_accounting"):
                self._pay_out(list(settlement.disposition.transfers))
                self._apply_plan(plan)
                self._release(stake, settlement)
                stake.unlocked_day = day

            logger.info(
                f"Stake {stake_id} of {owner} good-accounted by {caller}: "
                f"payout={settlement.performance.payout} "
                f"penalty={settlement.performance.capped_penalty}"
            )
            return settlement.performance

    def get_stake_status(self, owner: str, stake_index: int, stake_id: int) -> StakePerformance:
        """What ``stake_end`` would return right now, without side effects."""
        with self._lock:
            day = self._today()
            stake = self._load_stake(owner, stake_index, stake_id)
            if hard_lock_active(stake.locked_day, day):
                raise HardLockActive(
                    f"Stake {stake_id} is hard-locked until day "
                    f"{stake.locked_day + HARD_LOCK_DAYS}"
                )
            plan = self._plan_catch_up(day)
            return self._performance(stake, day, plan)

    def fund_rewards(
        self,
        funder: str,
        amount_per_day: int,
        days_count: int,
        shift_in_days: int = 0,
    ) -> int:
        """Pre-pay *amount_per_day* for *days_count* days.

        Funding starts at ``current_day + 1 + shift_in_days``; returns that
        first day.
        """
        with self._lock:
            day = self._today()
            self.daily.validate_funding(amount_per_day, days_count)
            if shift_in_days < 0:
                raise InvalidRange("shift_in_days cannot be negative")
            first_day = day + 1 + shift_in_days

            with self._transaction("fund_rewards"):
                self._transfer_in(funder, amount_per_day * days_count)
                self.daily.fund(first_day, amount_per_day, days_count)

            logger.info(
                f"{funder} funded {amount_per_day}/day for days "
                f"{first_day}..{first_day + days_count - 1}"
            )
            return first_day

    def daily_data_update(self, before_day: int) -> int:
        """Close every unprocessed day before *before_day*.

        Returns the number of days closed.
        """
        with self._lock:
            day = self._today()
            if before_day > day:
                raise FutureDay(f"Day {before_day} is in the future (today is {day})")
            if before_day < 0:
                raise InvalidRange("before_day cannot be negative")

            plan = self._plan_catch_up(before_day)
            with self._transaction("daily_data_update"):
                self._apply_plan(plan)
            closed = len(plan.entries)
            if closed:
                logger.info(f"Daily data updated to day {before_day} ({closed} days closed)")
            return closed
