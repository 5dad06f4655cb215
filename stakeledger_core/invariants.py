"""
Post-operation invariant checks for StakeLedger.

Run after every write operation when ``[ledger] check_invariants`` is on:
  - Share totals equal the shares of open stakes (active + pending)
  - Pending shares per locked day add up to ``next_stake_shares_total``
  - ``locked_stake_total`` equals the principal of open stakes
  - Share rate, processed-day count and stake ids never go backwards
  - No ledger total is negative
  - Custody holds at least every token the ledger still owes

A failure makes the engine roll the operation back (state and custodian
transfers) and raise ``InvariantViolation``.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class LedgerSnapshot:
    """Monotonic fields captured before an operation."""
    share_rate: int = 0
    daily_data_count: int = 0
    latest_stake_id: int = 0


class InvariantChecker:
    """
    Captures a pre-operation snapshot of the staking engine and validates
    invariants after the operation is applied.
    """

    def __init__(self):
        self._snapshot: LedgerSnapshot | None = None

    def capture(self, engine) -> None:
        self._snapshot = LedgerSnapshot(
            share_rate=engine.rates.current_rate(),
            daily_data_count=engine.daily.daily_data_count,
            latest_stake_id=engine.latest_stake_id,
        )

    def verify(self, engine) -> tuple[bool, str]:
        """
        Verify all invariants against the current engine state.
        Returns (passed, error_message).
        """
        if self._snapshot is None:
            return True, ""

        errors: list[str] = []
        for check in (
            self._check_share_totals,
            self._check_pending_shares,
            self._check_locked_total,
            self._check_monotonic,
            self._check_non_negative,
            self._check_stake_records,
            self._check_custody_solvency,
        ):
            ok, msg = check(engine)
            if not ok:
                errors.append(msg)

        self._snapshot = None
        if errors:
            return False, "; ".join(errors)
        return True, ""

    @staticmethod
    def _open_stakes(engine):
        return [s for owned in engine.stakes.values() for s in owned if s.is_open]

    def _check_share_totals(self, engine) -> tuple[bool, str]:
        open_shares = sum(s.stake_shares for s in self._open_stakes(engine))
        total = engine.stake_shares_total + engine.next_stake_shares_total
        if total != open_shares:
            return (False,
                    f"Share total mismatch: active+pending={total} "
                    f"but open stakes hold {open_shares}")
        return True, ""

    def _check_pending_shares(self, engine) -> tuple[bool, str]:
        pending = sum(engine.daily.pending_shares.values())
        if pending != engine.next_stake_shares_total:
            return (False,
                    f"Pending shares mismatch: per-day sum={pending}, "
                    f"next_stake_shares_total={engine.next_stake_shares_total}")
        return True, ""

    def _check_locked_total(self, engine) -> tuple[bool, str]:
        principal = sum(s.staked_amount for s in self._open_stakes(engine))
        if principal != engine.locked_stake_total:
            return (False,
                    f"Locked total mismatch: locked_stake_total="
                    f"{engine.locked_stake_total} but open principal={principal}")
        return True, ""

    def _check_monotonic(self, engine) -> tuple[bool, str]:
        snap = self._snapshot
        rate = engine.rates.current_rate()
        if rate < snap.share_rate:
            return False, f"Share rate decreased: {snap.share_rate} -> {rate}"
        count = engine.daily.daily_data_count
        if count < snap.daily_data_count:
            return (False,
                    f"Processed day count decreased: {snap.daily_data_count} -> {count}")
        if engine.latest_stake_id < snap.latest_stake_id:
            return (False,
                    f"Stake id went backwards: {snap.latest_stake_id} -> "
                    f"{engine.latest_stake_id}")
        return True, ""

    def _check_non_negative(self, engine) -> tuple[bool, str]:
        for name in (
            "locked_stake_total",
            "stake_shares_total",
            "next_stake_shares_total",
            "stake_penalty_total",
        ):
            value = getattr(engine, name)
            if value < 0:
                return False, f"{name} is negative: {value}"
        return True, ""

    def _check_stake_records(self, engine) -> tuple[bool, str]:
        seen: set[int] = set()
        for owner, owned in engine.stakes.items():
            for stake in owned:
                if stake.owner != owner:
                    return (False,
                            f"Stake {stake.stake_id} filed under {owner} "
                            f"but owned by {stake.owner}")
                if stake.stake_id in seen:
                    return False, f"Duplicate stake id {stake.stake_id}"
                if stake.stake_id > engine.latest_stake_id:
                    return (False,
                            f"Stake id {stake.stake_id} beyond latest "
                            f"{engine.latest_stake_id}")
                seen.add(stake.stake_id)
        return True, ""

    def _check_custody_solvency(self, engine) -> tuple[bool, str]:
        """
        Custody must cover open principal, unprocessed funding and the
        penalty pool awaiting redistribution.  Accrued payouts come on
        top, so this is a lower bound.
        """
        custodian = engine.custodian
        held = custodian.balance_of(custodian.custody_address)
        owed = (engine.locked_stake_total
                + engine.daily.funded_total()
                + engine.stake_penalty_total)
        if held < owed:
            return (False,
                    f"Custody insolvent: holds {held}, owes at least {owed}")
        return True, ""
