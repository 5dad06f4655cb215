"""
Fixed-point constants and helpers for StakeLedger.

Every amount handled by the ledger is an integer count of base units,
matching the 18-decimal model of the staked token:

    1 token = 1,000,000,000,000,000,000 units (smallest indivisible unit)

Shares use the same base-unit scale.  The share rate and the per-share
payout index carry their own scale factors so that the rounding of every
division is explicit and reproducible.  Floats are only ever produced for
display.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

# Number of decimal places of the staked token.
TOKEN_DECIMALS: int = 18

# Smallest representable unit.
UNITS_PER_TOKEN: int = 10 ** TOKEN_DECIMALS

# ``share_rate`` is expressed with 5 implied decimals: 100_000 == 1.0
SHARE_RATE_SCALE: int = 10 ** 5

# Scale of ``day_share_payout`` and of the cumulative payout index.
PAYOUT_INDEX_SCALE: int = 10 ** 30


def to_units(value: int | str | Decimal) -> int:
    """Convert a token amount (``"1.5"``, ``Decimal``, ``int``) to base units.

    Floats are rejected: they cannot represent most decimal amounts exactly.

    >>> to_units("1.5")
    1500000000000000000
    >>> to_units(2)
    2000000000000000000
    """
    if isinstance(value, float):
        raise TypeError("token amounts must not be floats; pass a str or Decimal")
    try:
        dec = Decimal(value)
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"not a token amount: {value!r}") from exc
    units = dec * UNITS_PER_TOKEN
    if units != units.to_integral_value():
        raise ValueError(f"{value!r} has more than {TOKEN_DECIMALS} decimals")
    return int(units)


def from_units(units: int) -> Decimal:
    """Convert base units back to an exact ``Decimal`` token amount."""
    return Decimal(units) / UNITS_PER_TOKEN


def rate_to_decimal(share_rate: int) -> Decimal:
    """Human value of a scaled share rate (``250000`` -> ``2.5``)."""
    return Decimal(share_rate) / SHARE_RATE_SCALE


def format_amount(units: int, symbol: str = "STK", places: int = 6) -> str:
    """Return a human-readable amount, truncated to *places* decimals."""
    quant = Decimal(1).scaleb(-places)
    return f"{from_units(units).quantize(quant, rounding='ROUND_DOWN')} {symbol}"
