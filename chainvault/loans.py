"""
Loan Lifecycle - P2P lending between vault owners

State machine:
    LoanRequest: pending → accepted | rejected
    accepted --fund--> Loan(active) --repay...--> Loan(repaid)
    LoanOffer:   active → borrowed (at accept) → repaid (when its loan is repaid)

Ordering rules:
- fund: gate → transfer → Loan record persisted → request/offer marked consumed.
  A crash after the transfer leaves the request `accepted`; the retry finds the
  transfer in ledger history by its deterministic ref and only writes records.
- repay: ref = make_ref("loan-repay", loan_id, n) where n is the installment
  number, so a retried installment is reconciled instead of paid twice.
- Overdue is derived (active ∧ now > dueDate). It never blocks repayment.

Store layout:
    lendingOffers/{offerId}
    loanRequests/{lender}/{requestId}
    borrows/{borrower}/{loanId}           authoritative loan record
    lenderLoans/{lender}/{loanId}         lender-side summary

Designed for: custodial vault disbursement service
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from . import cadence
from .activity import ActivityBus, ActivityEvent, ActivityKind
from .balance_gate import BalanceGate
from .cadence import from_iso, to_iso, utc_now
from .chain import make_ref
from .disbursement import DisbursementExecutor, Transfer
from .errors import (
    AlreadyRepaid,
    DuplicateActiveLoan,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .locks import KeyedLocks
from .settings import VAULT_LIMITS
from .validation import clamp_precision, normalize_address, parse_amount, parse_decimal, parse_int

logger = logging.getLogger("chainvault.loans")


class OfferStatus(str, Enum):
    ACTIVE = "active"
    BORROWED = "borrowed"
    REPAID = "repaid"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    REPAID = "repaid"


# ============================================================
# RECORDS
# ============================================================

@dataclass
class LoanOffer:
    id: str
    lender: str
    amount: Decimal
    interest_rate_pct: Decimal
    duration_days: int
    description: str = ""
    status: OfferStatus = OfferStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    borrower: Optional[str] = None
    borrowed_at: Optional[datetime] = None
    repaid_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lenderAccount": self.lender,
            "amount": str(self.amount),
            "interestRatePct": str(self.interest_rate_pct),
            "durationDays": self.duration_days,
            "description": self.description,
            "status": self.status.value,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "borrower": self.borrower,
            "borrowedAt": to_iso(self.borrowed_at),
            "repaidAt": to_iso(self.repaid_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "LoanOffer":
        return cls(
            id=d["id"],
            lender=d["lenderAccount"],
            amount=Decimal(d["amount"]),
            interest_rate_pct=Decimal(d["interestRatePct"]),
            duration_days=int(d["durationDays"]),
            description=d.get("description", ""),
            status=OfferStatus(d.get("status", "active")),
            created_at=from_iso(d.get("createdAt")),
            updated_at=from_iso(d.get("updatedAt")),
            borrower=d.get("borrower"),
            borrowed_at=from_iso(d.get("borrowedAt")),
            repaid_at=from_iso(d.get("repaidAt")),
        )


@dataclass
class LoanRequest:
    id: str
    borrower: str
    lender: str
    amount: Decimal
    interest_rate_pct: Decimal
    duration_days: int
    reason: str = ""
    offer_id: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    decided_at: Optional[datetime] = None
    loan_id: Optional[str] = None          # set once funded: the request is consumed
    funded_at: Optional[datetime] = None

    @property
    def consumed(self) -> bool:
        return self.loan_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "borrowerAccount": self.borrower,
            "lenderAccount": self.lender,
            "amount": str(self.amount),
            "interestRatePct": str(self.interest_rate_pct),
            "durationDays": self.duration_days,
            "reason": self.reason,
            "offerId": self.offer_id,
            "status": self.status.value,
            "createdAt": to_iso(self.created_at),
            "decidedAt": to_iso(self.decided_at),
            "loanId": self.loan_id,
            "fundedAt": to_iso(self.funded_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "LoanRequest":
        return cls(
            id=d["id"],
            borrower=d["borrowerAccount"],
            lender=d["lenderAccount"],
            amount=Decimal(d["amount"]),
            interest_rate_pct=Decimal(d["interestRatePct"]),
            duration_days=int(d["durationDays"]),
            reason=d.get("reason", ""),
            offer_id=d.get("offerId"),
            status=RequestStatus(d.get("status", "pending")),
            created_at=from_iso(d.get("createdAt")),
            decided_at=from_iso(d.get("decidedAt")),
            loan_id=d.get("loanId"),
            funded_at=from_iso(d.get("fundedAt")),
        )


@dataclass
class Installment:
    amount: Decimal
    timestamp: datetime
    receipt_ref: str
    tx_hash: str = ""

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "timestamp": to_iso(self.timestamp),
            "receiptRef": self.receipt_ref,
            "txHash": self.tx_hash,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Installment":
        return cls(
            amount=Decimal(d["amount"]),
            timestamp=from_iso(d["timestamp"]),
            receipt_ref=d["receiptRef"],
            tx_hash=d.get("txHash", ""),
        )


@dataclass
class Loan:
    id: str
    request_id: str
    borrower: str
    lender: str
    principal_amount: Decimal
    interest_rate_pct: Decimal
    duration_days: int
    total_repayment: Decimal
    remaining_amount: Decimal
    due_date: datetime
    funded_at: datetime
    funding_receipt_ref: str
    status: LoanStatus = LoanStatus.ACTIVE
    paid_installments: list[Installment] = field(default_factory=list)
    repaid_at: Optional[datetime] = None
    offer_id: Optional[str] = None
    funding_tx_hash: str = ""
    reason: str = ""

    @property
    def total_paid(self) -> Decimal:
        return sum((i.amount for i in self.paid_installments), Decimal(0))

    def is_overdue(self, now: datetime) -> bool:
        return self.status is LoanStatus.ACTIVE and cadence.ensure_utc(now) > self.due_date

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "requestId": self.request_id,
            "offerId": self.offer_id,
            "borrowerAccount": self.borrower,
            "lenderAccount": self.lender,
            "principalAmount": str(self.principal_amount),
            "interestRatePct": str(self.interest_rate_pct),
            "durationDays": self.duration_days,
            "totalRepayment": str(self.total_repayment),
            "remainingAmount": str(self.remaining_amount),
            "dueDate": to_iso(self.due_date),
            "status": self.status.value,
            "paidInstallments": [i.to_dict() for i in self.paid_installments],
            "fundedAt": to_iso(self.funded_at),
            "repaidAt": to_iso(self.repaid_at),
            "fundingReceiptRef": self.funding_receipt_ref,
            "fundingTxHash": self.funding_tx_hash,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Loan":
        return cls(
            id=d["id"],
            request_id=d.get("requestId", d["id"]),
            offer_id=d.get("offerId"),
            borrower=d["borrowerAccount"],
            lender=d["lenderAccount"],
            principal_amount=Decimal(d["principalAmount"]),
            interest_rate_pct=Decimal(d["interestRatePct"]),
            duration_days=int(d["durationDays"]),
            total_repayment=Decimal(d["totalRepayment"]),
            remaining_amount=Decimal(d["remainingAmount"]),
            due_date=from_iso(d["dueDate"]),
            status=LoanStatus(d.get("status", "active")),
            paid_installments=[Installment.from_dict(i) for i in d.get("paidInstallments") or []],
            funded_at=from_iso(d["fundedAt"]),
            repaid_at=from_iso(d.get("repaidAt")),
            funding_receipt_ref=d.get("fundingReceiptRef", ""),
            funding_tx_hash=d.get("fundingTxHash", ""),
            reason=d.get("reason", ""),
        )

    def summary(self) -> dict:
        """Lender-side mirror under lenderLoans/{lender}/{loanId}."""
        return {
            "borrowerAccount": self.borrower,
            "amount": str(self.principal_amount),
            "totalRepayment": str(self.total_repayment),
            "remainingAmount": str(self.remaining_amount),
            "dueDate": to_iso(self.due_date),
            "status": self.status.value,
        }


def total_repayment(principal: Decimal, interest_rate_pct: Decimal) -> Decimal:
    """principal × (1 + rate/100), fixed at funding time."""
    return clamp_precision(principal * (Decimal(1) + interest_rate_pct / Decimal(100)))


# ============================================================
# LIFECYCLE
# ============================================================

class LoanLifecycle:
    """
    Usage:
        loans = LoanLifecycle(store, ledger, bus)
        offer = await loans.create_offer(lender, "2", "10", 30)
        req = await loans.request(borrower, offer_id=offer.id)
        await loans.accept(lender, req.id)
        loan = await loans.fund(lender, req.id)
        await loans.repay(borrower, loan.id, "1.2")
    """

    def __init__(
        self,
        store,
        ledger,
        bus: ActivityBus,
        executor: Optional[DisbursementExecutor] = None,
        gate: Optional[BalanceGate] = None,
        enforce_single_active_loan: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._ledger = ledger
        self._bus = bus
        self._executor = executor or DisbursementExecutor(ledger)
        self._gate = gate or BalanceGate(ledger)
        self._enforce_single = enforce_single_active_loan
        self._clock = clock
        self._locks = KeyedLocks()

    # ============================================================
    # VALIDATION
    # ============================================================

    @staticmethod
    def _terms(amount, interest_rate_pct, duration_days) -> tuple[Decimal, Decimal, int]:
        amount = parse_amount(amount)
        rate = parse_decimal(interest_rate_pct, "interest_rate_pct")
        if rate < 0:
            raise ValidationError(f"interest_rate_pct must be >= 0, got {rate}")
        if rate > VAULT_LIMITS.MAX_INTEREST_RATE_PCT:
            raise ValidationError(f"interest_rate_pct must be <= {VAULT_LIMITS.MAX_INTEREST_RATE_PCT}, got {rate}")
        duration = parse_int(
            duration_days, "duration_days",
            minimum=VAULT_LIMITS.MIN_LOAN_DURATION_DAYS,
            maximum=VAULT_LIMITS.MAX_LOAN_DURATION_DAYS,
        )
        return amount, rate, duration

    # ============================================================
    # OFFERS
    # ============================================================

    async def create_offer(self, lender: str, amount, interest_rate_pct, duration_days,
                           description: str = "") -> LoanOffer:
        lender = normalize_address(lender, "lender")
        amount, rate, duration = self._terms(amount, interest_rate_pct, duration_days)
        offer = LoanOffer(
            id=self._store.new_key(),
            lender=lender,
            amount=amount,
            interest_rate_pct=rate,
            duration_days=duration,
            description=description or "",
            created_at=self._clock(),
        )
        await self._store.set(f"lendingOffers/{offer.id}", offer.to_dict())
        logger.info(f"Offer {offer.id} created by {lender[:10]}...: {amount} @ {rate}% / {duration}d")
        return offer

    async def get_offer(self, offer_id: str) -> LoanOffer:
        data = await self._store.get(f"lendingOffers/{offer_id}")
        if data is None:
            raise NotFound(f"Offer {offer_id} not found")
        return LoanOffer.from_dict(data)

    async def _own_active_offer(self, offer_id: str, lender: str) -> LoanOffer:
        offer = await self.get_offer(offer_id)
        if offer.lender != normalize_address(lender, "lender"):
            raise NotFound(f"Offer {offer_id} not found for {lender}")
        if offer.status is not OfferStatus.ACTIVE:
            raise InvalidTransition(f"Offer {offer_id} is {offer.status.value}; only active offers can change")
        return offer

    async def update_offer(self, offer_id: str, lender: str, amount=None, interest_rate_pct=None,
                           duration_days=None, description: Optional[str] = None) -> LoanOffer:
        async with self._locks(f"offer:{offer_id}"):
            offer = await self._own_active_offer(offer_id, lender)
            amount, rate, duration = self._terms(
                offer.amount if amount is None else amount,
                offer.interest_rate_pct if interest_rate_pct is None else interest_rate_pct,
                offer.duration_days if duration_days is None else duration_days,
            )
            offer.amount, offer.interest_rate_pct, offer.duration_days = amount, rate, duration
            if description is not None:
                offer.description = description
            offer.updated_at = self._clock()
            await self._store.set(f"lendingOffers/{offer.id}", offer.to_dict())
        return offer

    async def delete_offer(self, offer_id: str, lender: str):
        async with self._locks(f"offer:{offer_id}"):
            await self._own_active_offer(offer_id, lender)
            await self._store.remove(f"lendingOffers/{offer_id}")
        logger.info(f"Offer {offer_id} deleted")

    async def list_offers(self, status: Optional[OfferStatus] = OfferStatus.ACTIVE,
                          lender: Optional[str] = None) -> list[LoanOffer]:
        """Newest first. status=None lists every offer."""
        offers = [LoanOffer.from_dict(d) for d in (await self._store.children("lendingOffers")).values()]
        if status is not None:
            offers = [o for o in offers if o.status is OfferStatus(status)]
        if lender:
            lender = normalize_address(lender, "lender")
            offers = [o for o in offers if o.lender == lender]
        return sorted(offers, key=lambda o: o.created_at, reverse=True)

    # ============================================================
    # REQUESTS
    # ============================================================

    async def request(self, borrower: str, lender: Optional[str] = None, amount=None,
                      interest_rate_pct=None, duration_days=None, reason: str = "",
                      offer_id: Optional[str] = None) -> LoanRequest:
        """
        Create a pending LoanRequest. Against an offer, the lender comes from the
        offer and any term left as None is inherited from it.
        """
        borrower = normalize_address(borrower, "borrower")

        if offer_id:
            offer = await self.get_offer(offer_id)
            if offer.status is not OfferStatus.ACTIVE:
                raise InvalidTransition(f"Offer {offer_id} is no longer available ({offer.status.value})")
            if lender and normalize_address(lender, "lender") != offer.lender:
                raise ValidationError("lender does not match the offer's lender")
            lender = offer.lender
            amount = offer.amount if amount is None else amount
            interest_rate_pct = offer.interest_rate_pct if interest_rate_pct is None else interest_rate_pct
            duration_days = offer.duration_days if duration_days is None else duration_days
        elif not lender:
            raise ValidationError("lender is required when not borrowing against an offer")

        lender = normalize_address(lender, "lender")
        if lender == borrower:
            raise ValidationError("You cannot borrow from yourself")
        amount, rate, duration = self._terms(amount, interest_rate_pct, duration_days)

        if self._enforce_single and await self._active_loan_between(lender, borrower) is not None:
            raise DuplicateActiveLoan(f"{borrower} already has an active loan from {lender}")

        req = LoanRequest(
            id=self._store.new_key(),
            borrower=borrower,
            lender=lender,
            amount=amount,
            interest_rate_pct=rate,
            duration_days=duration,
            reason=reason or "",
            offer_id=offer_id or None,
            created_at=self._clock(),
        )
        await self._store.set(f"loanRequests/{lender}/{req.id}", req.to_dict())
        logger.info(f"Loan request {req.id}: {borrower[:10]}... asks {lender[:10]}... for {amount}")
        return req

    async def get_request(self, lender: str, request_id: str) -> LoanRequest:
        lender = normalize_address(lender, "lender")
        data = await self._store.get(f"loanRequests/{lender}/{request_id}")
        if data is None:
            raise NotFound(f"Loan request {request_id} not found for {lender}")
        return LoanRequest.from_dict(data)

    async def list_requests(self, lender: str, status: Optional[RequestStatus] = None) -> list[LoanRequest]:
        lender = normalize_address(lender, "lender")
        reqs = [LoanRequest.from_dict(d) for d in (await self._store.children(f"loanRequests/{lender}")).values()]
        if status is not None:
            reqs = [r for r in reqs if r.status is RequestStatus(status)]
        return sorted(reqs, key=lambda r: r.created_at, reverse=True)

    async def accept(self, lender: str, request_id: str) -> LoanRequest:
        """pending → accepted. No balance moves until fund(). Accepting twice is a no-op."""
        async with self._locks(f"request:{request_id}"):
            req = await self.get_request(lender, request_id)
            if req.status is RequestStatus.ACCEPTED:
                return req
            if req.status is not RequestStatus.PENDING:
                raise InvalidTransition(f"Request {request_id} is {req.status.value}; cannot accept")

            now = self._clock()
            if req.offer_id:
                async with self._locks(f"offer:{req.offer_id}"):
                    offer = await self.get_offer(req.offer_id)
                    if offer.status is not OfferStatus.ACTIVE:
                        raise InvalidTransition(f"Offer {offer.id} is {offer.status.value}; cannot accept against it")
                    await self._store.update(f"lendingOffers/{offer.id}", {
                        "status": OfferStatus.BORROWED.value,
                        "borrower": req.borrower,
                        "borrowedAt": to_iso(now),
                    })

            req.status = RequestStatus.ACCEPTED
            req.decided_at = now
            await self._store.set(f"loanRequests/{req.lender}/{req.id}", req.to_dict())
        logger.info(f"Loan request {request_id} accepted")
        return req

    async def reject(self, lender: str, request_id: str) -> LoanRequest:
        async with self._locks(f"request:{request_id}"):
            req = await self.get_request(lender, request_id)
            if req.status is RequestStatus.REJECTED:
                return req
            if req.status is not RequestStatus.PENDING:
                raise InvalidTransition(f"Request {request_id} is {req.status.value}; cannot reject")
            req.status = RequestStatus.REJECTED
            req.decided_at = self._clock()
            await self._store.set(f"loanRequests/{req.lender}/{req.id}", req.to_dict())
        logger.info(f"Loan request {request_id} rejected")
        return req

    # ============================================================
    # FUNDING
    # ============================================================

    async def fund(self, lender: str, request_id: str) -> Loan:
        """
        Disburse an accepted request lender → borrower and create the Loan.

        Idempotent: a funded request returns its existing Loan. Ledger failure
        leaves the request `accepted` for a retry.
        """
        async with self._locks(f"request:{request_id}"):
            req = await self.get_request(lender, request_id)
            if req.status is not RequestStatus.ACCEPTED:
                raise InvalidTransition(f"Request {request_id} is {req.status.value}; accept it before funding")

            # One pair lock spans the active-loan check and the loan write
            async with self._locks(f"pair:{req.lender}:{req.borrower}"):
                loan, created = await self._fund_locked(req)
            if not created:
                return loan

        logger.info(
            f"Loan {loan.id} funded: {loan.principal_amount} {loan.lender[:10]}... → {loan.borrower[:10]}... "
            f"| repay {loan.total_repayment} by {loan.due_date.date()}"
        )
        await self._bus.emit(ActivityEvent(account=loan.lender, kind=ActivityKind.LOAN_FUNDED, ref=loan.funding_receipt_ref))
        return loan

    async def _fund_locked(self, req: LoanRequest) -> tuple[Loan, bool]:
        # Loan id = request id: record writes are idempotent across retries
        existing = await self._store.get(f"borrows/{req.borrower}/{req.id}")
        if existing is not None:
            loan = Loan.from_dict(existing)
            if not req.consumed:
                await self._mark_consumed(req, loan)
            return loan, False

        if self._enforce_single and await self._active_loan_between(req.lender, req.borrower) is not None:
            raise DuplicateActiveLoan(f"{req.borrower} already has an active loan from {req.lender}")

        ref = make_ref("loan-fund", req.id)
        settled = await self._ledger.find_by_ref(req.lender, ref)
        if settled is not None:
            logger.info(f"Funding for {req.id} already on ledger: recording only")
            funded_at, tx_hash = settled.timestamp, ""
        else:
            await self._gate.require(req.lender, req.amount)
            receipt = await self._executor.execute_one(
                req.lender,
                Transfer(to=req.borrower, amount=req.amount, ref=ref, memo=f"Loan {req.id}"),
                reconcile=False,
            )
            funded_at, tx_hash = self._clock(), receipt.tx_hash

        total = total_repayment(req.amount, req.interest_rate_pct)
        loan = Loan(
            id=req.id,
            request_id=req.id,
            offer_id=req.offer_id,
            borrower=req.borrower,
            lender=req.lender,
            principal_amount=req.amount,
            interest_rate_pct=req.interest_rate_pct,
            duration_days=req.duration_days,
            total_repayment=total,
            remaining_amount=total,
            due_date=funded_at + timedelta(days=req.duration_days),
            funded_at=funded_at,
            funding_receipt_ref=ref,
            funding_tx_hash=tx_hash,
            reason=req.reason,
        )
        await self._store.set(f"borrows/{loan.borrower}/{loan.id}", loan.to_dict())
        await self._store.set(f"lenderLoans/{loan.lender}/{loan.id}", loan.summary())
        await self._mark_consumed(req, loan)
        return loan, True

    async def _mark_consumed(self, req: LoanRequest, loan: Loan):
        await self._store.update(f"loanRequests/{req.lender}/{req.id}", {
            "loanId": loan.id,
            "fundedAt": to_iso(loan.funded_at),
        })
        if req.offer_id and await self._store.get(f"lendingOffers/{req.offer_id}") is not None:
            await self._store.update(f"lendingOffers/{req.offer_id}", {
                "status": OfferStatus.BORROWED.value,
                "borrower": req.borrower,
                "borrowedAt": to_iso(loan.funded_at),
            })

    # ============================================================
    # REPAYMENT
    # ============================================================

    async def repay(self, borrower: str, loan_id: str, amount, is_final: bool = False) -> Loan:
        """Transfer borrower → lender and record an installment."""
        borrower = normalize_address(borrower, "borrower")
        amount = parse_amount(amount)

        async with self._locks(f"loan:{loan_id}"):
            loan = await self.get_loan(borrower, loan_id)
            if loan.status is LoanStatus.REPAID:
                raise AlreadyRepaid(f"Loan {loan_id} is already repaid")

            ref = make_ref("loan-repay", loan.id, len(loan.paid_installments) + 1)
            settled = await self._ledger.find_by_ref(borrower, ref)
            if settled is not None:
                paid_at, tx_hash, amount = settled.timestamp, "", settled.amount
            else:
                await self._gate.require(borrower, amount)
                receipt = await self._executor.execute_one(
                    borrower,
                    Transfer(to=loan.lender, amount=amount, ref=ref, memo=f"Repayment {loan.id}"),
                    reconcile=False,
                )
                paid_at, tx_hash = self._clock(), receipt.tx_hash

            if amount > loan.remaining_amount:
                logger.warning(f"Loan {loan.id} overpaid by {amount - loan.remaining_amount}")

            loan.paid_installments.append(Installment(amount=amount, timestamp=paid_at, receipt_ref=ref, tx_hash=tx_hash))
            loan.remaining_amount = max(Decimal(0), loan.remaining_amount - amount)
            if loan.remaining_amount == 0 or is_final:
                loan.status = LoanStatus.REPAID
                loan.repaid_at = paid_at

            await self._store.set(f"borrows/{loan.borrower}/{loan.id}", loan.to_dict())
            await self._store.set(f"lenderLoans/{loan.lender}/{loan.id}", loan.summary())
            if loan.status is LoanStatus.REPAID and loan.offer_id \
                    and await self._store.get(f"lendingOffers/{loan.offer_id}") is not None:
                await self._store.update(f"lendingOffers/{loan.offer_id}", {
                    "status": OfferStatus.REPAID.value,
                    "repaidAt": to_iso(paid_at),
                })

        logger.info(
            f"Loan {loan.id} repayment {amount} → remaining {loan.remaining_amount} ({loan.status.value})"
        )
        await self._bus.emit(ActivityEvent(account=borrower, kind=ActivityKind.REPAY, ref=ref))
        return loan

    # ============================================================
    # QUERIES
    # ============================================================

    async def get_loan(self, borrower: str, loan_id: str) -> Loan:
        borrower = normalize_address(borrower, "borrower")
        data = await self._store.get(f"borrows/{borrower}/{loan_id}")
        if data is None:
            raise NotFound(f"Loan {loan_id} not found for {borrower}")
        return Loan.from_dict(data)

    async def list_borrows(self, borrower: str, status: Optional[LoanStatus] = None) -> list[Loan]:
        borrower = normalize_address(borrower, "borrower")
        loans = [Loan.from_dict(d) for d in (await self._store.children(f"borrows/{borrower}")).values()]
        if status is not None:
            loans = [l for l in loans if l.status is LoanStatus(status)]
        return sorted(loans, key=lambda l: l.funded_at, reverse=True)

    async def list_lender_loans(self, lender: str) -> list[Loan]:
        lender = normalize_address(lender, "lender")
        loans = []
        for loan_id, summary in (await self._store.children(f"lenderLoans/{lender}")).items():
            data = await self._store.get(f"borrows/{summary['borrowerAccount']}/{loan_id}")
            if data is None:
                logger.warning(f"lenderLoans/{lender}/{loan_id} points at a missing borrow record")
                continue
            loans.append(Loan.from_dict(data))
        return sorted(loans, key=lambda l: l.funded_at, reverse=True)

    async def _active_loan_between(self, lender: str, borrower: str) -> Optional[Loan]:
        for loan in await self.list_borrows(borrower, LoanStatus.ACTIVE):
            if loan.lender == lender:
                return loan
        return None

    def is_overdue(self, loan: Loan, now: Optional[datetime] = None) -> bool:
        return loan.is_overdue(now or self._clock())

    def days_remaining(self, loan: Loan, now: Optional[datetime] = None) -> int:
        """Days until due; negative once overdue."""
        return cadence.days_remaining(loan.due_date, now or self._clock())
