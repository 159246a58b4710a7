"""Lending dashboard figures for one account, as borrower and as lender."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from .cadence import utc_now
from .loans import LoanLifecycle, LoanStatus


async def lending_summary(loans: LoanLifecycle, account: str, now: Optional[datetime] = None) -> dict:
    now = now or utc_now()
    borrows = await loans.list_borrows(account)
    lent = await loans.list_lender_loans(account)

    active_borrows = [l for l in borrows if l.status is LoanStatus.ACTIVE]
    active_lent = [l for l in lent if l.status is LoanStatus.ACTIVE]

    return {
        "account": account.lower(),
        "totalBorrowed": str(sum((l.principal_amount for l in borrows), Decimal(0))),
        "totalOwed": str(sum((l.remaining_amount for l in active_borrows), Decimal(0))),
        "totalLent": str(sum((l.principal_amount for l in lent), Decimal(0))),
        "expectedReturn": str(sum((l.remaining_amount for l in active_lent), Decimal(0))),
        "totalInterestEarned": str(sum(
            (max(Decimal(0), l.total_paid - l.principal_amount) for l in lent), Decimal(0)
        )),
        "activeBorrows": len(active_borrows),
        "activeLoans": len(active_lent),
        "overdueBorrows": sum(1 for l in active_borrows if l.is_overdue(now)),
        "overdueLoans": sum(1 for l in active_lent if l.is_overdue(now)),
        "repaidBorrows": sum(1 for l in borrows if l.status is LoanStatus.REPAID),
    }
