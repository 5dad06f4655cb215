"""
Share pricing for StakeLedger.

A new stake receives ``(amount + bonus) / share_rate`` shares.  The bonus
rewards both size and commitment:

    bonus = amount × ( min(max(amount − FLOOR, 0), SPAN) / AMOUNT_SCALE
                     + min(days − 1, DURATION_MAX_DAYS) / DURATION_SCALE )

  - Size bonus:      0 % up to 50 000 tokens, then +1 % per 20 000 tokens,
                     capped at +50 % (reached at 1 050 000 tokens).
  - Duration bonus:  +1/60 per extra day, capped at +1800 % (1081 days).

The share rate only ever rises.  Whenever a stake closes at full term
with no penalty the controller asks "what rate would have handed a fresh
stake of ``stake_return`` for the same duration exactly these shares?"
and adopts it if it beats the current rate.  Later stakers therefore buy
shares at the best payout ratio the ledger has proven it can honour,
which keeps existing holders from being diluted.
"""

from __future__ import annotations

from stakeledger_core.precision import SHARE_RATE_SCALE, UNITS_PER_TOKEN

# ── Size bonus ──────────────────────────────────────────────────────────

AMOUNT_BONUS_FLOOR: int = 50_000 * UNITS_PER_TOKEN
AMOUNT_BONUS_SPAN: int = 1_000_000 * UNITS_PER_TOKEN
AMOUNT_BONUS_SCALE: int = 2_000_000 * UNITS_PER_TOKEN   # +100 % per 2M tokens

# ── Duration bonus ──────────────────────────────────────────────────────

DURATION_BONUS_SCALE: int = 60          # days for +100 %
DURATION_BONUS_MAX_DAYS: int = 1080     # 1080 / 60 = +1800 %

INITIAL_SHARE_RATE: int = SHARE_RATE_SCALE   # 1.0


def bonus_amount(amount: int, days: int) -> int:
    """Extra principal-equivalent credited to a stake of *amount* × *days*."""
    extra_amount = min(max(amount - AMOUNT_BONUS_FLOOR, 0), AMOUNT_BONUS_SPAN)
    extra_days = min(max(days - 1, 0), DURATION_BONUS_MAX_DAYS)
    numerator = extra_amount * DURATION_BONUS_SCALE + extra_days * AMOUNT_BONUS_SCALE
    return amount * numerator // (AMOUNT_BONUS_SCALE * DURATION_BONUS_SCALE)


class ShareRateController:
    """Holds the global, non-decreasing principal-to-share rate."""

    def __init__(self, share_rate: int = INITIAL_SHARE_RATE) -> None:
        if share_rate <= 0:
            raise ValueError("share_rate must be positive")
        self.share_rate = share_rate

    def current_rate(self) -> int:
        return self.share_rate

    def shares_for(self, amount: int, days: int) -> int:
        """Shares a stake of *amount* for *days* would receive right now."""
        return (amount + bonus_amount(amount, days)) * SHARE_RATE_SCALE // self.share_rate

    def implied_rate(self, stake_return: int, staked_days: int, stake_shares: int) -> int:
        """Rate at which *stake_return* would buy back *stake_shares*."""
        if stake_shares <= 0:
            return 0
        total = stake_return + bonus_amount(stake_return, staked_days)
        return total * SHARE_RATE_SCALE // stake_shares

    def observe(self, stake_return: int, staked_days: int, stake_shares: int) -> bool:
        """Raise the rate from a matured, penalty-free outcome.

        Returns True when the rate moved.
        """
        candidate = self.implied_rate(stake_return, staked_days, stake_shares)
        if candidate > self.share_rate:
            self.share_rate = candidate
            return True
        return False
