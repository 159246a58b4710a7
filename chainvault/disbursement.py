"""
Disbursement Executor - sequential transfers against the ledger

Contract:
- Transfers run strictly one after another (the ledger cannot safely mutate
  one source balance concurrently for a single caller)
- First failure stops the batch; earlier transfers stay committed (no rollback)
- on_progress(next_index, receipt) runs after every success, BEFORE the next
  transfer, so callers persist the cursor durably. A restarted batch resumes
  from that cursor and never re-pays earlier recipients.
- When resuming, the first transfer's ref is looked up in ledger history
  first: it may have landed after the cursor was last written.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Sequence

from .errors import LedgerFailure, ValidationError

logger = logging.getLogger("chainvault.disbursement")


@dataclass(frozen=True)
class Transfer:
    to: str
    amount: Decimal
    ref: str
    memo: str = ""


@dataclass(frozen=True)
class TransferReceipt:
    index: int
    to: str
    amount: Decimal
    ref: str
    tx_hash: str = ""
    reconciled: bool = False   # found already settled in ledger history, not re-sent

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "to": self.to,
            "amount": str(self.amount),
            "ref": self.ref,
            "tx_hash": self.tx_hash,
            "reconciled": self.reconciled,
        }


@dataclass
class BatchResult:
    start_index: int
    total: int
    succeeded: list[TransferReceipt] = field(default_factory=list)
    failed_at: Optional[int] = None
    error: Optional[LedgerFailure] = None

    @property
    def completed(self) -> bool:
        return self.failed_at is None

    @property
    def next_index(self) -> int:
        """Where a retry resumes."""
        return self.start_index + len(self.succeeded)

    @property
    def succeeded_indices(self) -> list[int]:
        return [r.index for r in self.succeeded]

    def raise_for_failure(self):
        if self.error is not None:
            raise self.error


ProgressHook = Callable[[int, TransferReceipt], Awaitable[None]]


class DisbursementExecutor:

    def __init__(self, ledger, spacing_seconds: float = 0.0, sleep=asyncio.sleep):
        self._ledger = ledger
        self._spacing = spacing_seconds
        self._sleep = sleep

    async def execute_batch(
        self,
        source: str,
        transfers: Sequence[Transfer],
        start_index: int = 0,
        on_progress: Optional[ProgressHook] = None,
        reconcile_first: bool = False,
    ) -> BatchResult:
        """
        Execute transfers[start_index:] from `source`'s vault, in order.

        Never raises for a ledger failure: the failure is reported in the result
        (failed_at + error) alongside the receipts that did commit.
        """
        if not 0 <= start_index <= len(transfers):
            raise ValidationError(f"start_index {start_index} outside batch of {len(transfers)}")
        for t in transfers:
            if not t.ref:
                raise ValidationError("every transfer needs a correlation ref")

        result = BatchResult(start_index=start_index, total=len(transfers))

        for i in range(start_index, len(transfers)):
            t = transfers[i]

            # Intentional spacing between ledger calls (ledger-side rate limits)
            if i > start_index and self._spacing > 0:
                await self._sleep(self._spacing)

            receipt = None
            if reconcile_first and i == start_index:
                settled = await self._ledger.find_by_ref(source, t.ref)
                if settled is not None:
                    logger.info(f"Transfer {i} ref={t.ref[:12]}... already settled: not re-sending")
                    receipt = TransferReceipt(index=i, to=t.to, amount=t.amount, ref=t.ref, reconciled=True)

            if receipt is None:
                tx = await self._ledger.transfer(source, t.to, t.amount, t.ref)
                if not tx.success:
                    result.failed_at = i
                    result.error = LedgerFailure(
                        f"Transfer {i} of {len(transfers)} to {t.to} failed: {tx.error}",
                        ref=t.ref,
                        ambiguous=tx.ambiguous,
                        tx_hash=tx.tx_hash,
                        completed=len(result.succeeded),
                        failed_at=i,
                    )
                    logger.warning(
                        f"Batch from {source[:10]}... halted at {i}/{len(transfers)} "
                        f"({len(result.succeeded)} paid this run): {tx.error}"
                    )
                    return result
                receipt = TransferReceipt(index=i, to=t.to, amount=t.amount, ref=t.ref, tx_hash=tx.tx_hash)
                logger.info(f"Paid {t.amount} to {t.to[:10]}... [{i + 1}/{len(transfers)}]")

            result.succeeded.append(receipt)
            if on_progress is not None:
                await on_progress(i + 1, receipt)

        return result

    async def execute_one(self, source: str, transfer: Transfer, reconcile: bool = True) -> TransferReceipt:
        """Single transfer: succeeds or raises LedgerFailure."""
        result = await self.execute_batch(source, [transfer], reconcile_first=reconcile)
        result.raise_for_failure()
        return result.succeeded[0]
