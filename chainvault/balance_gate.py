"""
Balance Gate - mandatory pre-check before every disbursement.

Check-then-act is NOT atomic against the live balance: two paths racing on the
same vault can both pass. The ledger rejects overdrafts itself; the gate only
saves a failed round trip and turns it into a typed InsufficientBalance.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from .errors import InsufficientBalance

logger = logging.getLogger("chainvault.balance_gate")


@dataclass(frozen=True)
class GateResult:
    ok: bool
    required: Decimal
    available: Decimal

    @property
    def shortfall(self) -> Decimal:
        return max(Decimal(0), self.required - self.available)


def can_disburse(vault_balance: Decimal, required_total: Decimal) -> GateResult:
    """ok, or insufficient with the shortfall."""
    vault_balance = Decimal(vault_balance)
    required_total = Decimal(required_total)
    return GateResult(ok=vault_balance >= required_total, required=required_total, available=vault_balance)


class BalanceGate:
    """Reads the live balance from the ledger and applies can_disburse()."""

    def __init__(self, ledger):
        self._ledger = ledger

    async def check(self, account: str, required_total: Decimal) -> GateResult:
        available = await self._ledger.balance(account)
        return can_disburse(available, required_total)

    async def require(self, account: str, required_total: Decimal) -> Decimal:
        """Raise InsufficientBalance unless `account` can cover `required_total`. Returns the balance read."""
        result = await self.check(account, required_total)
        if not result.ok:
            logger.warning(
                f"Balance gate blocked {account[:10]}...: need {result.required}, "
                f"have {result.available} (short {result.shortfall})"
            )
            raise InsufficientBalance(result.required, result.available)
        return result.available
