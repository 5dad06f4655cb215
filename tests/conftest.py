"""
Shared pytest fixtures for the StakeLedger test suite.
"""

import pytest

from stakeledger_core.custodian import InMemoryToken
from stakeledger_core.invariants import InvariantChecker
from stakeledger_core.precision import UNITS_PER_TOKEN
from stakeledger_core.staking import SECONDS_PER_DAY, StakingEngine

LAUNCH = 1_700_000_000
T = UNITS_PER_TOKEN


class FakeClock:
    """Settable epoch clock; starts a little after launch (day 0)."""

    def __init__(self, now: float = LAUNCH + 60):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance_days(self, days: int) -> None:
        self.now += days * SECONDS_PER_DAY

    def set_day(self, day: int) -> None:
        self.now = LAUNCH + day * SECONDS_PER_DAY + 60


def close_to(actual: int, expected_tokens, tol: int = 100) -> bool:
    """True when *actual* units are within *tol* units of a token amount."""
    return abs(actual - int(expected_tokens * T)) <= tol


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token():
    """Token with a few funded holders."""
    tok = InMemoryToken()
    for holder in ("alice", "bob", "carol"):
        tok.mint(holder, 10_000 * T)
    tok.mint("funder", 1_000_000 * T)
    return tok


@pytest.fixture
def engine(token, clock):
    """Engine launched at LAUNCH, invariants checked after every write."""
    return StakingEngine(
        token,
        LAUNCH,
        "treasury",
        clock=clock,
        invariant_checker=InvariantChecker(),
    )
