"""
Tests for early / late penalties and penalty disposition.
"""

import pytest

from stakeledger_core.penalty import (
    EARLY_PENALTY_MIN_DAYS,
    PenaltyEngine,
    PenaltySplit,
    early_payout_and_penalty,
    hard_lock_active,
    late_penalty,
    penalty_days_for,
)


def flat(per_day):
    """Payout function paying *per_day* for every day of the window."""
    return lambda begin, end: max(end - begin, 0) * per_day


class TestHardLock:
    def test_active_inside_window(self):
        assert hard_lock_active(10, 10)
        assert hard_lock_active(10, 24)

    def test_released_after_window(self):
        assert not hard_lock_active(10, 25)


class TestEarlyPenalty:
    def test_penalty_days(self):
        assert penalty_days_for(30) == EARLY_PENALTY_MIN_DAYS
        assert penalty_days_for(101) == 51
        assert penalty_days_for(100) == 50

    def test_served_less_than_penalty_days(self):
        # 5 per day over 15 days, stretched over 30 penalty days
        assert early_payout_and_penalty(flat(5), 1, 30, 15) == (75, 150)

    def test_served_equal_penalty_days(self):
        assert early_payout_and_penalty(flat(5), 1, 60, 30) == (150, 150)

    def test_served_more_than_penalty_days(self):
        # penalty is the payout of the first 30 days only
        assert early_payout_and_penalty(flat(5), 1, 60, 45) == (225, 150)

    def test_nothing_served(self):
        assert early_payout_and_penalty(flat(5), 1, 30, 0) == (0, 0)


class TestLatePenalty:
    def test_grace_window(self):
        assert late_penalty(0, 100, 130, 1000) == 0

    @pytest.mark.parametrize("days_late,pct", [(31, 1), (80, 50), (129, 99), (130, 100)])
    def test_linear_ramp(self, days_late, pct):
        assert late_penalty(0, 100, 100 + days_late, 1000) == 10 * pct

    def test_beyond_ramp_capped_by_engine(self):
        perf = PenaltyEngine().compute(
            principal=100, locked_day=0, staked_days=30,
            unlocked_day=300, payout_fn=flat(1),
        )
        assert perf.penalty > perf.capped_penalty
        assert perf.capped_penalty == 130
        assert perf.stake_return == 0


class TestPenaltyEngine:
    engine = PenaltyEngine()

    def test_vectors_of_two_staker_run(self):
        """100-token stake earning 5/day, 30-day term, locked on day 1."""
        expected = {16: (25, 150), 21: (50, 150), 26: (75, 150), 31: (250, 0)}
        for day, (ret, penalty) in expected.items():
            perf = self.engine.compute(
                principal=100, locked_day=1, staked_days=30,
                unlocked_day=day, payout_fn=flat(5),
            )
            assert (perf.stake_return, perf.capped_penalty) == (ret, penalty)

    def test_late_stake_stops_earning_at_maturity(self):
        perf = self.engine.compute(
            principal=100, locked_day=1, staked_days=30,
            unlocked_day=40, payout_fn=flat(5),
        )
        assert perf.payout == 150
        assert perf.served_days == 30
        assert perf.penalty == 0

    def test_penalty_capped_at_return(self):
        perf = self.engine.compute(
            principal=10, locked_day=0, staked_days=100,
            unlocked_day=2, payout_fn=flat(50),
        )
        assert perf.payout == 100
        assert perf.penalty == 100 * 50 // 2
        assert perf.capped_penalty == 110
        assert perf.stake_return == 0

    def test_to_dict(self):
        perf = self.engine.compute(
            principal=10, locked_day=0, staked_days=30,
            unlocked_day=30, payout_fn=flat(1),
        )
        assert perf.to_dict() == {
            "stake_return": 40, "payout": 30, "penalty": 0,
            "capped_penalty": 0, "served_days": 30,
        }


class TestPenaltySplit:
    def test_half_redistributed(self):
        split = PenaltySplit((("treasury", 3), ("burn", 2)))
        d = split.dispose(101)
        assert d.redistributed == 51
        assert d.sink_total == 50
        assert d.transfers == (("treasury", 30), ("burn", 20))

    def test_last_recipient_takes_remainder(self):
        split = PenaltySplit((("a", 1), ("b", 1), ("c", 1)))
        d = split.dispose(20)
        assert d.transfers == (("a", 3), ("b", 3), ("c", 4))

    def test_zero_transfers_dropped(self):
        split = PenaltySplit((("treasury", 3), ("burn", 2)))
        d = split.dispose(1)
        assert d.redistributed == 1
        assert d.transfers == ()

    def test_zero_penalty(self):
        d = PenaltySplit((("x", 1),)).dispose(0)
        assert d.redistributed == 0
        assert d.sink_total == 0

    def test_validation(self):
        with pytest.raises(ValueError):
            PenaltySplit(())
        with pytest.raises(ValueError):
            PenaltySplit((("x", 0),))
