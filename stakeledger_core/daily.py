"""
Per-day reward registry and lazy accrual for StakeLedger.

Funders append payouts to future day slots with ``fund``.  Nothing is
distributed until some operation needs the present: the ledger then
*catches up*, closing every unprocessed day in order.

Catch-up of a day ``d``
───────────────────────
  1. Shares of stakes whose ``locked_day == d`` leave the pending set
     (``next_stake_shares_total``) and join the active pool.
  2. ``payout = funded[d] + stake_penalty_total`` (penalties and carried
     amounts waiting for redistribution).
  3. ``day_share_payout = payout * PAYOUT_INDEX_SCALE // pool``; when the
     pool is empty the whole payout is carried to the next day.

Alongside the per-day records a prefix sum of ``day_share_payout`` is kept
(``cumulative[d]`` = sum over days ``< d``), so the payout of any stake over
any window is one subtraction:

    payout(shares, begin, end) = shares * (cum[end] - cum[begin]) // SCALE

Catch-up is split into a pure ``plan_catch_up`` and a ``commit`` step, so
previews can price unprocessed days without touching the ledger.  A single
plan never spans more than ``max_catch_up_days`` days.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from stakeledger_core.errors import (
    CatchUpBacklog,
    InvalidAmount,
    InvalidRange,
    RangeTooLarge,
)
from stakeledger_core.precision import PAYOUT_INDEX_SCALE

logger = logging.getLogger("stakeledger_daily")

# Longest span a single fund_rewards call may touch.
MAX_FUND_DAYS: int = 365

# Longest backlog a single catch-up may close.
DEFAULT_MAX_CATCH_UP_DAYS: int = 1000


@dataclass
class DailyDatum:
    """Reward record of one day index."""
    day: int
    day_payout_total: int = 0
    day_share_payout: int = 0          # scaled by PAYOUT_INDEX_SCALE
    day_stake_shares_total: int = 0    # active pool the payout was split over
    processed: bool = False

    def to_dict(self) -> dict:
        return {
            "day": self.day,
            "day_payout_total": self.day_payout_total,
            "day_share_payout": self.day_share_payout,
            "day_stake_shares_total": self.day_stake_shares_total,
            "processed": self.processed,
        }


@dataclass(frozen=True)
class CatchUpPlan:
    """Result of closing days ``[first_day, target_day)``, not yet applied."""
    first_day: int
    target_day: int
    entries: tuple[DailyDatum, ...] = ()
    cumulative: tuple[int, ...] = ()   # cum[first_day + 1] ... cum[target_day]
    stake_shares_total: int = 0
    next_stake_shares_total: int = 0
    stake_penalty_total: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.entries


@dataclass
class DailyRewardLedger:
    """Funded payouts, processed days and the cumulative per-share index."""

    max_catch_up_days: int = DEFAULT_MAX_CATCH_UP_DAYS
    processed: list[DailyDatum] = field(default_factory=list)
    cumulative: list[int] = field(default_factory=lambda: [0])
    funded: dict[int, int] = field(default_factory=dict)
    pending_shares: dict[int, int] = field(default_factory=dict)

    @property
    def daily_data_count(self) -> int:
        return len(self.processed)

    # ── funding ─────────────────────────────────────────────────────

    @staticmethod
    def validate_funding(amount_per_day: int, days_count: int) -> None:
        if days_count > MAX_FUND_DAYS:
            raise RangeTooLarge(
                f"Cannot fund more than {MAX_FUND_DAYS} days at once (got {days_count})"
            )
        if days_count <= 0:
            raise InvalidAmount("days_count must be positive")
        if amount_per_day <= 0:
            raise InvalidAmount("amount_per_day must be positive")

    def fund(self, first_day: int, amount_per_day: int, days_count: int) -> None:
        """Add *amount_per_day* to ``days_count`` slots from *first_day* on."""
        self.validate_funding(amount_per_day, days_count)
        if first_day < self.daily_data_count:
            raise InvalidRange(f"Day {first_day} is already processed")
        for day in range(first_day, first_day + days_count):
            self.funded[day] = self.funded.get(day, 0) + amount_per_day

    # ── pending shares ──────────────────────────────────────────────

    def add_pending(self, locked_day: int, shares: int) -> None:
        self.pending_shares[locked_day] = self.pending_shares.get(locked_day, 0) + shares

    def remove_pending(self, locked_day: int, shares: int) -> None:
        left = self.pending_shares.get(locked_day, 0) - shares
        if left < 0:
            raise ValueError(f"Pending shares for day {locked_day} would go negative")
        if left:
            self.pending_shares[locked_day] = left
        else:
            self.pending_shares.pop(locked_day, None)

    def is_pending(self, locked_day: int) -> bool:
        """True while shares locked on *locked_day* are not yet in the pool."""
        return locked_day >= self.daily_data_count

    # ── catch-up ────────────────────────────────────────────────────

    def plan_catch_up(
        self,
        target_day: int,
        stake_shares_total: int,
        next_stake_shares_total: int,
        stake_penalty_total: int,
    ) -> CatchUpPlan:
        """Compute the closing of every day before *target_day*.

        Pure: the ledger is not modified.  Raises ``CatchUpBacklog`` when
        more than ``max_catch_up_days`` days would be closed.
        """
        start = self.daily_data_count
        if target_day <= start:
            return CatchUpPlan(
                first_day=start,
                target_day=start,
                stake_shares_total=stake_shares_total,
                next_stake_shares_total=next_stake_shares_total,
                stake_penalty_total=stake_penalty_total,
            )

        backlog = target_day - start
        if backlog > self.max_catch_up_days:
            raise CatchUpBacklog(
                f"{backlog} unprocessed days exceed the catch-up budget of "
                f"{self.max_catch_up_days}; advance to day "
                f"{start + self.max_catch_up_days} first"
            )

        shares = stake_shares_total
        upcoming = next_stake_shares_total
        carry = stake_penalty_total
        cum = self.cumulative[-1]
        entries: list[DailyDatum] = []
        cumulative: list[int] = []

        for day in range(start, target_day):
            maturing = self.pending_shares.get(day, 0)
            if maturing:
                shares += maturing
                upcoming -= maturing

            payout = self.funded.get(day, 0) + carry
            if shares:
                share_payout = payout * PAYOUT_INDEX_SCALE // shares
                carry = 0
            else:
                # Nobody to pay: the whole amount rolls into the next day
                share_payout = 0
                carry = payout

            cum += share_payout
            entries.append(DailyDatum(
                day=day,
                day_payout_total=payout,
                day_share_payout=share_payout,
                day_stake_shares_total=shares,
                processed=True,
            ))
            cumulative.append(cum)

        return CatchUpPlan(
            first_day=start,
            target_day=target_day,
            entries=tuple(entries),
            cumulative=tuple(cumulative),
            stake_shares_total=shares,
            next_stake_shares_total=upcoming,
            stake_penalty_total=carry,
        )

    def commit(self, plan: CatchUpPlan) -> None:
        """Apply a plan produced by ``plan_catch_up`` on this exact state."""
        if plan.is_empty:
            return
        if plan.first_day != self.daily_data_count:
            raise ValueError(
                f"Stale catch-up plan: starts at {plan.first_day}, "
                f"ledger is at {self.daily_data_count}"
            )
        for entry in plan.entries:
            self.funded.pop(entry.day, None)
            self.pending_shares.pop(entry.day, None)
        self.processed.extend(plan.entries)
        self.cumulative.extend(plan.cumulative)
        logger.debug(
            f"Closed days {plan.first_day}..{plan.target_day - 1} "
            f"(pool={plan.stake_shares_total}, carry={plan.stake_penalty_total})"
        )

    def checkpoint(self) -> tuple[int, dict[int, int], dict[int, int]]:
        """Cheap restore point: processed days only ever grow at the end."""
        return self.daily_data_count, dict(self.funded), dict(self.pending_shares)

    def restore(self, checkpoint: tuple[int, dict[int, int], dict[int, int]]) -> None:
        count, funded, pending = checkpoint
        del self.processed[count:]
        del self.cumulative[count + 1:]
        self.funded = funded
        self.pending_shares = pending

    # ── payout lookup ───────────────────────────────────────────────

    def cumulative_at(self, day: int, plan: CatchUpPlan | None = None) -> int:
        """Sum of ``day_share_payout`` over all days before *day*."""
        if 0 <= day < len(self.cumulative):
            return self.cumulative[day]
        if plan is not None and plan.first_day < day <= plan.target_day:
            return plan.cumulative[day - plan.first_day - 1]
        raise InvalidRange(f"Day {day} has not been processed")

    def payout_rewards(
        self,
        shares: int,
        begin_day: int,
        end_day: int,
        plan: CatchUpPlan | None = None,
    ) -> int:
        """Payout earned by *shares* over days ``[begin_day, end_day)``."""
        if end_day <= begin_day:
            return 0
        delta = self.cumulative_at(end_day, plan) - self.cumulative_at(begin_day, plan)
        return shares * delta // PAYOUT_INDEX_SCALE

    # ── queries ─────────────────────────────────────────────────────

    def datum(self, day: int) -> DailyDatum:
        if day < self.daily_data_count:
            return self.processed[day]
        return DailyDatum(day=day, day_payout_total=self.funded.get(day, 0))

    def range_query(self, from_day: int, to_day: int) -> list[DailyDatum]:
        """Records of days ``[from_day, to_day)``, processed or not."""
        if from_day < 0 or to_day < from_day:
            raise InvalidRange(f"Invalid day range [{from_day}, {to_day})")
        return [self.datum(day) for day in range(from_day, to_day)]

    def funded_total(self) -> int:
        """Funded payout still waiting in unprocessed days."""
        return sum(self.funded.values())
