"""
Error taxonomy for StakeLedger.

Every rejected operation raises one of the classes below and leaves the
ledger untouched.  Two families cover caller mistakes:

  - ``ValidationError``: malformed input (out-of-range duration,
    below-minimum amount, invalid index, mismatched stake id).
  - ``PolicyViolation``: well-formed input that the current ledger
    state forbids (hard lock, already unlocked, future day, ...).

``CustodianError`` wraps failures of the external token custodian.
Each class carries a stable ``code`` that the REST layer returns.
"""

from __future__ import annotations


class StakingError(Exception):
    """Base class for all ledger errors."""
    code: str = "STAKING_ERROR"


# ── caller input ────────────────────────────────────────────────────────

class ValidationError(StakingError, ValueError):
    code = "VALIDATION_ERROR"


class BelowMinimum(ValidationError):
    code = "BELOW_MINIMUM"


class DurationTooShort(ValidationError):
    code = "DURATION_TOO_SHORT"


class DurationTooLong(ValidationError):
    code = "DURATION_TOO_LONG"


class InvalidStakeIndex(ValidationError):
    code = "INVALID_STAKE_INDEX"


class StakeIdMismatch(ValidationError):
    code = "STAKE_ID_MISMATCH"


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class InvalidRange(ValidationError):
    code = "INVALID_RANGE"


# ── ledger policy ───────────────────────────────────────────────────────

class PolicyViolation(StakingError):
    code = "POLICY_VIOLATION"


class HardLockActive(PolicyViolation):
    code = "HARD_LOCK_ACTIVE"


class AlreadyUnlocked(PolicyViolation):
    code = "ALREADY_UNLOCKED"


class NotFullyServed(PolicyViolation):
    code = "NOT_FULLY_SERVED"


class EmptyStakeList(PolicyViolation):
    code = "EMPTY_STAKE_LIST"


class FutureDay(PolicyViolation):
    code = "FUTURE_DAY"


class RangeTooLarge(PolicyViolation):
    code = "RANGE_TOO_LARGE"


class CatchUpBacklog(PolicyViolation):
    """More unprocessed days than one catch-up is allowed to close."""
    code = "CATCH_UP_BACKLOG"


class NotLaunched(PolicyViolation):
    code = "NOT_LAUNCHED"


# ── collaborators ───────────────────────────────────────────────────────

class CustodianError(StakingError):
    code = "CUSTODIAN_ERROR"


class InsufficientBalance(CustodianError):
    code = "INSUFFICIENT_BALANCE"


class InvariantViolation(StakingError, RuntimeError):
    code = "INVARIANT_VIOLATION"
