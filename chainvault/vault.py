"""
Vault Service - direct owner operations on the custodial balance

deposit / withdraw / pay / ping each emit an ActivityEvent once the ledger
confirms. Outgoing movements (withdraw, pay) pass the BalanceGate first.

Designed for: custodial vault disbursement service
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from .activity import ActivityBus, ActivityEvent, ActivityKind
from .balance_gate import BalanceGate
from .chain import ChainTxResult, HistoryEntry, make_ref
from .disbursement import DisbursementExecutor, Transfer
from .errors import LedgerFailure, ValidationError
from .validation import normalize_address, parse_amount

logger = logging.getLogger("chainvault.vault")


class VaultService:

    def __init__(self, ledger, bus: ActivityBus,
                 gate: Optional[BalanceGate] = None,
                 executor: Optional[DisbursementExecutor] = None):
        self._ledger = ledger
        self._bus = bus
        self._gate = gate or BalanceGate(ledger)
        self._executor = executor or DisbursementExecutor(ledger)

    @staticmethod
    def _ref(action: str, account: str, ref: Optional[str]) -> str:
        # A client-supplied ref doubles as an idempotency key for retries
        return make_ref(action, account, ref) if ref else make_ref(action, account, uuid.uuid4().hex)

    async def _settled(self, account: str, ref: str) -> Optional[HistoryEntry]:
        return await self._ledger.find_by_ref(account, ref)

    @staticmethod
    def _raise_for(result: ChainTxResult, what: str):
        if not result.success:
            raise LedgerFailure(f"{what} failed: {result.error}", ref=result.ref,
                                ambiguous=result.ambiguous, tx_hash=result.tx_hash)

    # ============================================================
    # QUERIES
    # ============================================================

    async def balance(self, account: str) -> Decimal:
        return await self._ledger.balance(normalize_address(account, "account"))

    async def history(self, account: str) -> list[HistoryEntry]:
        entries = await self._ledger.recent_history(normalize_address(account, "account"))
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)

    # ============================================================
    # MUTATIONS
    # ============================================================

    async def deposit(self, account: str, amount, ref: Optional[str] = None) -> dict:
        account = normalize_address(account, "account")
        amount = parse_amount(amount)
        ref = self._ref("deposit", account, ref)

        if await self._settled(account, ref) is None:
            result = await self._ledger.deposit(account, amount, ref)
            self._raise_for(result, "Deposit")
            tx_hash = result.tx_hash
        else:
            tx_hash = ""
        logger.info(f"Deposit {amount} into {account[:10]}... ref={ref[:12]}...")

        await self._bus.emit(ActivityEvent(account=account, kind=ActivityKind.DEPOSIT, ref=ref))
        return {"account": account, "amount": str(amount), "ref": ref, "tx_hash": tx_hash}

    async def withdraw(self, account: str, amount, to: Optional[str] = None, ref: Optional[str] = None) -> dict:
        account = normalize_address(account, "account")
        to = normalize_address(to, "to") if to else account
        amount = parse_amount(amount)
        ref = self._ref("withdraw", account, ref)

        if await self._settled(account, ref) is None:
            await self._gate.require(account, amount)
            result = await self._ledger.withdraw(account, amount, to, ref)
            self._raise_for(result, "Withdraw")
            tx_hash = result.tx_hash
        else:
            tx_hash = ""
        logger.info(f"Withdraw {amount} from {account[:10]}... to {to[:10]}...")

        await self._bus.emit(ActivityEvent(account=account, kind=ActivityKind.WITHDRAW, ref=ref))
        return {"account": account, "to": to, "amount": str(amount), "ref": ref, "tx_hash": tx_hash}

    async def pay(self, account: str, to: str, amount, memo: str = "", ref: Optional[str] = None) -> dict:
        account = normalize_address(account, "account")
        to = normalize_address(to, "to")
        if to == account:
            raise ValidationError("Cannot pay your own vault")
        amount = parse_amount(amount)
        ref = self._ref("pay", account, ref)

        if await self._settled(account, ref) is None:
            await self._gate.require(account, amount)
            receipt = await self._executor.execute_one(
                account, Transfer(to=to, amount=amount, ref=ref, memo=memo), reconcile=False
            )
            tx_hash = receipt.tx_hash
        else:
            tx_hash = ""

        await self._bus.emit(ActivityEvent(account=account, kind=ActivityKind.PAY, ref=ref))
        return {
            "account": account,
            "to": to,
            "amount": str(amount),
            "memo": memo,
            "ref": ref,
            "tx_hash": tx_hash,
        }

    async def ping(self, account: str) -> dict:
        """Explicit liveness ping: no balance movement."""
        account = normalize_address(account, "account")
        await self._bus.emit(ActivityEvent(account=account, kind=ActivityKind.PING))
        return {"account": account, "pinged": True}
