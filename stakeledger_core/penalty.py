"""
Early / late penalties for StakeLedger.

Hard lock
─────────
For the first ``HARD_LOCK_DAYS`` days after ``locked_day`` a stake cannot
be ended at all, whatever its payout or penalty would be.

Early end (served_days < staked_days)
─────────────────────────────────────
  penalty_days = max(ceil(staked_days / 2), EARLY_PENALTY_MIN_DAYS)

  served > penalty_days   → penalty = payout of the first penalty_days
  served == penalty_days  → penalty = whole payout
  served < penalty_days   → penalty = payout × penalty_days / served
                            (served average stretched over penalty_days)

The share of the payout forfeited therefore shrinks as the stake nears
maturity and vanishes at ``locked_day + staked_days``.

Late end
────────
Rewards stop accruing at maturity.  After a ``LATE_PENALTY_GRACE_DAYS``
grace window, ``principal + payout`` is forfeited linearly over
``LATE_PENALTY_SCALE_DAYS`` days, then entirely.

Every penalty is capped at ``principal + payout``.  Half of the capped
penalty stays in the ledger and is redistributed to the remaining
stakers on the current day; the other half leaves custody through a
``PenaltySplit``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

HARD_LOCK_DAYS: int = 15
EARLY_PENALTY_MIN_DAYS: int = 30
LATE_PENALTY_GRACE_DAYS: int = 30
LATE_PENALTY_SCALE_DAYS: int = 100

# payout_fn(begin_day, end_day) -> payout of the stake over [begin, end)
PayoutFn = Callable[[int, int], int]


@dataclass(frozen=True)
class StakePerformance:
    """Figures of a stake closed on a given day."""
    stake_return: int
    payout: int
    penalty: int
    capped_penalty: int
    served_days: int

    def to_dict(self) -> dict:
        return {
            "stake_return": self.stake_return,
            "payout": self.payout,
            "penalty": self.penalty,
            "capped_penalty": self.capped_penalty,
            "served_days": self.served_days,
        }


def hard_lock_active(locked_day: int, current_day: int) -> bool:
    return current_day < locked_day + HARD_LOCK_DAYS


def penalty_days_for(staked_days: int) -> int:
    return max((staked_days + 1) // 2, EARLY_PENALTY_MIN_DAYS)


def early_payout_and_penalty(
    payout_fn: PayoutFn,
    locked_day: int,
    staked_days: int,
    served_days: int,
) -> tuple[int, int]:
    """Return ``(payout, penalty)`` for a stake ended before maturity."""
    if served_days <= 0:
        return 0, 0

    served_end_day = locked_day + served_days
    penalty_days = penalty_days_for(staked_days)

    if penalty_days < served_days:
        penalty_end_day = locked_day + penalty_days
        penalty = payout_fn(locked_day, penalty_end_day)
        payout = penalty + payout_fn(penalty_end_day, served_end_day)
        return payout, penalty

    payout = payout_fn(locked_day, served_end_day)
    if penalty_days == served_days:
        return payout, payout
    return payout, payout * penalty_days // served_days


def late_penalty(
    locked_day: int,
    staked_days: int,
    unlocked_day: int,
    raw_return: int,
) -> int:
    """Penalty on *raw_return* (principal + payout) for ending late."""
    max_unlocked_day = locked_day + staked_days + LATE_PENALTY_GRACE_DAYS
    if unlocked_day <= max_unlocked_day:
        return 0
    return raw_return * (unlocked_day - max_unlocked_day) // LATE_PENALTY_SCALE_DAYS


class PenaltyEngine:
    """Computes a stake's payout, penalty and return at a given day."""

    def compute(
        self,
        *,
        principal: int,
        locked_day: int,
        staked_days: int,
        unlocked_day: int,
        payout_fn: PayoutFn,
    ) -> StakePerformance:
        served_days = min(max(unlocked_day - locked_day, 0), staked_days)

        if served_days < staked_days:
            payout, penalty = early_payout_and_penalty(
                payout_fn, locked_day, staked_days, served_days,
            )
        else:
            payout = payout_fn(locked_day, locked_day + served_days)
            penalty = late_penalty(
                locked_day, staked_days, unlocked_day, principal + payout,
            )

        stake_return = principal + payout
        capped = min(penalty, stake_return)
        return StakePerformance(
            stake_return=stake_return - capped,
            payout=payout,
            penalty=penalty,
            capped_penalty=capped,
            served_days=served_days,
        )


# ── Disposition ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PenaltyDisposition:
    redistributed: int
    transfers: tuple[tuple[str, int], ...]

    @property
    def sink_total(self) -> int:
        return sum(amount for _, amount in self.transfers)


@dataclass(frozen=True)
class PenaltySplit:
    """Routing of the half of each penalty that leaves the ledger.

    ``recipients`` holds ``(address, weight)`` pairs; the last recipient
    absorbs the rounding remainder.
    """
    recipients: tuple[tuple[str, int], ...]

    def __post_init__(self) -> None:
        if not self.recipients:
            raise ValueError("PenaltySplit needs at least one recipient")
        if any(weight <= 0 for _, weight in self.recipients):
            raise ValueError("PenaltySplit weights must be positive")

    def dispose(self, capped_penalty: int) -> PenaltyDisposition:
        sink = capped_penalty // 2
        redistributed = capped_penalty - sink
        total_weight = sum(weight for _, weight in self.recipients)

        transfers: list[tuple[str, int]] = []
        remaining = sink
        for address, weight in self.recipients[:-1]:
            part = sink * weight // total_weight
            transfers.append((address, part))
            remaining -= part
        transfers.append((self.recipients[-1][0], remaining))

        return PenaltyDisposition(
            redistributed=redistributed,
            transfers=tuple((a, amt) for a, amt in transfers if amt > 0),
        )
