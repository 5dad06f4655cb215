"""
Token custody for StakeLedger.

The staking engine never touches balances itself.  It instructs a
*custodian* (the transferable-balance token) to pull tokens into the
ledger's custody account and to pay them back out.  Any custodian failure
raises ``CustodianError`` and aborts the whole ledger operation.

``InMemoryToken`` is a complete custodian backed by a dict of balances.
It is used by the node runner (seeded from ``[genesis.accounts]``) and by
the test-suite.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from stakeledger_core.errors import CustodianError, InsufficientBalance

logger = logging.getLogger("stakeledger_custodian")

# Default custody account holding every staked and funded token.
CUSTODY_ADDRESS: str = "stakeledger:custody"

# Penalty share that is taken out of circulation.
BURN_ADDRESS: str = "0x000000000000000000000000000000000000dEaD"


@runtime_checkable
class TokenCustodian(Protocol):
    """What the staking engine needs from the token."""

    custody_address: str

    def transfer_in(self, sender: str, amount: int) -> None:
        """Move *amount* from *sender* into custody."""
        ...

    def transfer_out(self, recipient: str, amount: int) -> None:
        """Move *amount* from custody to *recipient*."""
        ...

    def balance_of(self, address: str) -> int:
        ...


class InMemoryToken:
    """Dict-backed token that doubles as the staking custodian."""

    def __init__(
        self,
        symbol: str = "STK",
        custody_address: str = CUSTODY_ADDRESS,
    ) -> None:
        self.symbol = symbol
        self.custody_address = custody_address
        self.balances: dict[str, int] = {}
        self.total_supply: int = 0

    # ── token operations ────────────────────────────────────────────

    def mint(self, address: str, amount: int) -> None:
        if amount < 0:
            raise CustodianError(f"Cannot mint a negative amount: {amount}")
        self.balances[address] = self.balances.get(address, 0) + amount
        self.total_supply += amount

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise CustodianError(f"Cannot transfer a negative amount: {amount}")
        have = self.balances.get(sender, 0)
        if have < amount:
            raise InsufficientBalance(
                f"{sender} holds {have}, needs {amount}"
            )
        self.balances[sender] = have - amount
        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        logger.debug(f"{self.symbol} transfer {sender} -> {recipient}: {amount}")

    def balance_of(self, address: str) -> int:
        return self.balances.get(address, 0)

    # ── custodian protocol ──────────────────────────────────────────

    def transfer_in(self, sender: str, amount: int) -> None:
        self.transfer(sender, self.custody_address, amount)

    def transfer_out(self, recipient: str, amount: int) -> None:
        self.transfer(self.custody_address, recipient, amount)
