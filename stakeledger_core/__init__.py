"""
StakeLedger - a shares-based time-locked staking ledger.

Key features:
- Stakes priced in shares at a monotonically rising share rate
- Size and duration bonuses on new stakes
- Pre-funded daily rewards split pro rata over active shares
- Lazy day catch-up with an O(1) per-stake payout index
- Early and late penalties, half redistributed, half sent to sinks
- Good accounting of matured stakes by third parties
"""

__version__ = "1.0.0"
__all__ = [
    "precision",
    "errors",
    "custodian",
    "daily",
    "share_rate",
    "penalty",
    "staking",
    "invariants",
    "config",
    "logging_config",
    "storage",
    "api",
]
