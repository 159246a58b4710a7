"""
fakes.py - In-memory Ledger and Signer for engine tests

FakeLedger keeps balances and a per-account history with refs, so
find_by_ref reconciliation behaves like the vault contract's recentHistory.

Example:
    ledger = FakeLedger({OWNER: "10"})
    ledger.fail_recipients.add(BOB)           # transfers to BOB revert
    ledger.land_but_timeout.add(ref)          # transfer lands, caller sees ambiguous failure
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from chainvault.chain import ChainTxResult, HistoryAction, HistoryEntry
from chainvault.errors import ApprovalDeclined

OWNER = "0x" + "0a" * 20
LENDER = "0x" + "1b" * 20
BORROWER = "0x" + "2c" * 20
ALICE = "0x" + "3d" * 20
BOB = "0x" + "4e" * 20
CAROL = "0x" + "5f" * 20
DAVE = "0x" + "60" * 20


def run(coro):
    return asyncio.run(coro)


class Clock:
    """Settable clock: engines call it like utc_now()."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime):
        self.now = value


class FakeLedger:

    def __init__(self, balances: Optional[dict] = None, clock: Optional[Clock] = None):
        self.balances: dict[str, Decimal] = defaultdict(Decimal)
        for account, amount in (balances or {}).items():
            self.balances[account.lower()] = Decimal(str(amount))
        self.history: dict[str, list[HistoryEntry]] = defaultdict(list)
        self.clock = clock
        self.transfers: list[tuple[str, str, Decimal, str]] = []
        self.calls: list[str] = []
        self.fail_recipients: set[str] = set()
        self.land_but_timeout: set[str] = set()
        self._tx = 0

    def _now(self) -> datetime:
        return self.clock() if self.clock else datetime.now(timezone.utc)

    def _record(self, account: str, sender: str, recipient: str, action: HistoryAction,
                amount: Decimal, ref: str):
        self.history[account].append(HistoryEntry(
            timestamp=self._now(),
            sender=sender,
            recipient=recipient,
            action=action,
            amount=amount,
            balance_after=self.balances[account],
            ref=ref,
        ))

    def _receipt(self, ref: str) -> ChainTxResult:
        self._tx += 1
        return ChainTxResult(success=True, tx_hash=f"0x{self._tx:064x}", ref=ref)

    def paid_to(self, recipient: str) -> list[Decimal]:
        return [amount for _, to, amount, _ in self.transfers if to == recipient.lower()]

    # --- Ledger protocol ---

    async def balance(self, account: str) -> Decimal:
        self.calls.append("balance")
        return self.balances[account.lower()]

    async def transfer(self, source: str, to: str, amount: Decimal, ref: str) -> ChainTxResult:
        self.calls.append("transfer")
        source, to = source.lower(), to.lower()
        if to in self.fail_recipients:
            return ChainTxResult(success=False, ref=ref, error="execution reverted")
        if self.balances[source] < amount:
            return ChainTxResult(success=False, ref=ref, error="execution reverted: insufficient vault balance")
        self.balances[source] -= amount
        self.balances[to] += amount
        self.transfers.append((source, to, amount, ref))
        self._record(source, source, to, HistoryAction.PAY, amount, ref)
        if ref in self.land_but_timeout:
            self.land_but_timeout.discard(ref)
            return ChainTxResult(success=False, ref=ref, error="receipt timeout", ambiguous=True, tx_hash="0xpending")
        return self._receipt(ref)

    async def deposit(self, account: str, amount: Decimal, ref: str) -> ChainTxResult:
        self.calls.append("deposit")
        account = account.lower()
        self.balances[account] += amount
        self._record(account, account, account, HistoryAction.DEPOSIT, amount, ref)
        return self._receipt(ref)

    async def withdraw(self, account: str, amount: Decimal, to: str, ref: str) -> ChainTxResult:
        self.calls.append("withdraw")
        account = account.lower()
        if self.balances[account] < amount:
            return ChainTxResult(success=False, ref=ref, error="execution reverted")
        self.balances[account] -= amount
        self._record(account, account, to.lower(), HistoryAction.WITHDRAW, amount, ref)
        return self._receipt(ref)

    async def recent_history(self, account: str) -> list[HistoryEntry]:
        self.calls.append("recent_history")
        return list(self.history[account.lower()])

    async def find_by_ref(self, account: str, ref: str) -> Optional[HistoryEntry]:
        self.calls.append("find_by_ref")
        for entry in self.history[account.lower()]:
            if entry.ref == ref:
                return entry
        return None


class FakeSigner:
    """Signs every message with a fixed signature, or declines."""

    def __init__(self, signature: str = "0x" + "ab" * 65, decline: bool = False):
        self.signature = signature
        self.decline = decline
        self.messages: list[tuple[str, str]] = []

    async def sign(self, account: str, message: str) -> str:
        self.messages.append((account, message))
        if self.decline:
            raise ApprovalDeclined("user rejected signature")
        return self.signature
