"""
ChainVault API Server - FastAPI Backend

Endpoints:
- GET  /health                                   Liveness + ledger status
- GET  /vault/{account}                          Vault balance
- POST /vault/{account}/deposit|withdraw|pay     Direct vault movements
- POST /vault/{account}/ping                     Explicit liveness ping
- GET  /vault/{account}/history                  Recent ledger history
- /loans/...                                     Offers, requests, funding, repayment, stats
- /payroll/{owner}/...                           Schedules, saved batches, one-off batch pay
- /nominees/{owner}...                           Nominee config, claim status, claims

Errors: every VaultError is returned as {"error": code, "message": ...} with
the status from ERROR_STATUS.
"""

import logging
import os
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from chainvault.cadence import Frequency, days_remaining, to_iso, utc_now
from chainvault.chain import PresignedSigner
from chainvault.errors import ValidationError, VaultError
from chainvault.loans import Loan, LoanLifecycle, LoanStatus, OfferStatus, RequestStatus
from chainvault.nominee import InactivityClaimGate
from chainvault.payroll import (
    PayrollBatches,
    PayrollRecipient,
    ScheduleEngine,
    ScheduleSpec,
    parse_recipients_csv,
    schedule_spec,
)
from chainvault.stats import lending_summary
from chainvault.vault import VaultService

logger = logging.getLogger("chainvault.api")


ERROR_STATUS = {
    "validation_error": 400,
    "insufficient_balance": 402,
    "claim_rejected": 403,
    "not_found": 404,
    "invalid_transition": 409,
    "already_claimed": 409,
    "already_repaid": 409,
    "schedule_completed": 409,
    "schedule_paused": 409,
    "approval_declined": 409,
    "duplicate_active_loan": 409,
    "ledger_failure": 502,
}


# ============================================================
# MODELS
# ============================================================

class AmountRequest(BaseModel):
    amount: Decimal
    ref: Optional[str] = Field(None, max_length=128)     # client idempotency key


class WithdrawRequest(AmountRequest):
    to: Optional[str] = None


class PayRequest(AmountRequest):
    to: str
    memo: str = Field("", max_length=200)


class OfferRequest(BaseModel):
    lender: str
    amount: Decimal
    interest_rate_pct: Decimal = Field(..., ge=0)
    duration_days: int = Field(..., ge=1)
    description: str = Field("", max_length=500)


class OfferUpdate(BaseModel):
    lender: str
    amount: Optional[Decimal] = None
    interest_rate_pct: Optional[Decimal] = None
    duration_days: Optional[int] = None
    description: Optional[str] = Field(None, max_length=500)


class LoanRequestBody(BaseModel):
    borrower: str
    lender: Optional[str] = None
    offer_id: Optional[str] = None
    amount: Optional[Decimal] = None
    interest_rate_pct: Optional[Decimal] = None
    duration_days: Optional[int] = None
    reason: str = Field("", max_length=500)


class RepayRequest(BaseModel):
    amount: Decimal
    is_final: bool = False


class RecipientModel(BaseModel):
    wallet: str
    amount: Decimal
    label: str = Field("", max_length=120)


class ScheduleRequest(BaseModel):
    name: str = Field(..., max_length=120)
    frequency: Frequency
    recipients: list[RecipientModel] = Field(default_factory=list)
    recipients_csv: Optional[str] = None
    start_date: Optional[datetime] = None
    custom_interval_days: Optional[int] = None
    specific_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    payment_count_limit: Optional[int] = None
    auto_execute: bool = True
    approval_signature: Optional[str] = None


class ScheduleUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=120)
    frequency: Optional[Frequency] = None
    recipients: Optional[list[RecipientModel]] = None
    start_date: Optional[datetime] = None
    custom_interval_days: Optional[int] = None
    specific_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    payment_count_limit: Optional[int] = None
    auto_execute: Optional[bool] = None
    approval_signature: Optional[str] = None


class BatchRequest(BaseModel):
    name: str = Field(..., max_length=120)
    recipients: list[RecipientModel] = Field(default_factory=list)
    recipients_csv: Optional[str] = None


class PayRecipientsRequest(BaseModel):
    recipients: list[RecipientModel] = Field(default_factory=list)
    recipients_csv: Optional[str] = None
    batch_id: Optional[str] = None
    run_id: Optional[str] = None
    memo: str = Field("", max_length=200)


class NomineeModel(BaseModel):
    address: str
    share_pct: Decimal


class NomineeConfigRequest(BaseModel):
    nominees: list[NomineeModel]
    encrypted_payload: str = ""
    inactivity_period_seconds: Optional[int] = None


class ClaimRequest(BaseModel):
    nominee_index: int = Field(..., ge=0)
    claimant: str


# ============================================================
# HELPERS
# ============================================================

def _recipients(models: Optional[list[RecipientModel]], csv_text: Optional[str] = None) -> list[PayrollRecipient]:
    if csv_text:
        return parse_recipients_csv(csv_text)
    return [PayrollRecipient(wallet=m.wallet, amount=m.amount, label=m.label) for m in models or []]


def _spec(req: ScheduleRequest) -> ScheduleSpec:
    return ScheduleSpec(
        name=req.name,
        frequency=req.frequency,
        recipients=_recipients(req.recipients, req.recipients_csv),
        start_date=req.start_date,
        custom_interval_days=req.custom_interval_days,
        specific_date=req.specific_date,
        end_date=req.end_date,
        payment_count_limit=req.payment_count_limit,
        auto_execute=req.auto_execute,
    )


def create_app(
    vault_service: VaultService,
    loans: LoanLifecycle,
    schedules: ScheduleEngine,
    batches: PayrollBatches,
    nominees: InactivityClaimGate,
    ledger_status_fn: Optional[Callable[[], dict]] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """
    Create the FastAPI app wired to the engines.

    ledger_status_fn: sync fn() -> dict reported by /health (chain executor status)
    """
    app = FastAPI(
        title="ChainVault",
        description="Custodial vault with P2P loans, scheduled payroll and nominee claims.",
        version="0.1.0",
    )

    # CORS: allow all in dev, restrict in production via CORS_ORIGINS env var
    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(VaultError)
    async def vault_error_handler(request: Request, exc: VaultError):
        status = ERROR_STATUS.get(exc.code, 400)
        if status >= 500:
            logger.warning(f"{request.method} {request.url.path} → {status} [{exc.code}] {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    def _loan_view(loan: Loan) -> dict:
        now = clock()
        view = loan.to_dict()
        view["overdue"] = loan.is_overdue(now)
        view["daysRemaining"] = days_remaining(loan.due_date, now)
        return view

    # ============================================================
    # HEALTH + VAULT
    # ============================================================

    @app.get("/health")
    async def health():
        """Heartbeat endpoint."""
        return {
            "status": "ok",
            "time": to_iso(clock()),
            "ledger": ledger_status_fn() if ledger_status_fn else None,
        }

    @app.get("/vault/{account}")
    async def vault_balance(account: str):
        balance = await vault_service.balance(account)
        return {"account": account.lower(), "balance": str(balance)}

    @app.post("/vault/{account}/deposit")
    async def vault_deposit(account: str, req: AmountRequest):
        return await vault_service.deposit(account, req.amount, ref=req.ref)

    @app.post("/vault/{account}/withdraw")
    async def vault_withdraw(account: str, req: WithdrawRequest):
        return await vault_service.withdraw(account, req.amount, to=req.to, ref=req.ref)

    @app.post("/vault/{account}/pay")
    async def vault_pay(account: str, req: PayRequest):
        return await vault_service.pay(account, req.to, req.amount, memo=req.memo, ref=req.ref)

    @app.post("/vault/{account}/ping")
    async def vault_ping(account: str):
        return await vault_service.ping(account)

    @app.get("/vault/{account}/history")
    async def vault_history(account: str, limit: int = 50):
        entries = await vault_service.history(account)
        return {"account": account.lower(), "history": [e.to_dict() for e in entries[:limit]]}

    # ============================================================
    # LOANS
    # ============================================================

    @app.post("/loans/offers")
    async def create_offer(req: OfferRequest):
        offer = await loans.create_offer(req.lender, req.amount, req.interest_rate_pct,
                                         req.duration_days, req.description)
        return offer.to_dict()

    @app.get("/loans/offers")
    async def list_offers(status: Optional[OfferStatus] = OfferStatus.ACTIVE, lender: Optional[str] = None):
        return {"offers": [o.to_dict() for o in await loans.list_offers(status, lender)]}

    @app.patch("/loans/offers/{offer_id}")
    async def update_offer(offer_id: str, req: OfferUpdate):
        offer = await loans.update_offer(offer_id, req.lender, amount=req.amount,
                                         interest_rate_pct=req.interest_rate_pct,
                                         duration_days=req.duration_days, description=req.description)
        return offer.to_dict()

    @app.delete("/loans/offers/{offer_id}")
    async def delete_offer(offer_id: str, lender: str):
        await loans.delete_offer(offer_id, lender)
        return {"deleted": offer_id}

    @app.post("/loans/requests")
    async def create_request(req: LoanRequestBody):
        created = await loans.request(
            req.borrower, lender=req.lender, amount=req.amount,
            interest_rate_pct=req.interest_rate_pct, duration_days=req.duration_days,
            reason=req.reason, offer_id=req.offer_id,
        )
        return created.to_dict()

    @app.get("/loans/requests/{lender}")
    async def list_requests(lender: str, status: Optional[RequestStatus] = None):
        return {"requests": [r.to_dict() for r in await loans.list_requests(lender, status)]}

    @app.post("/loans/requests/{lender}/{request_id}/accept")
    async def accept_request(lender: str, request_id: str):
        return (await loans.accept(lender, request_id)).to_dict()

    @app.post("/loans/requests/{lender}/{request_id}/reject")
    async def reject_request(lender: str, request_id: str):
        return (await loans.reject(lender, request_id)).to_dict()

    @app.post("/loans/requests/{lender}/{request_id}/fund")
    async def fund_request(lender: str, request_id: str):
        return _loan_view(await loans.fund(lender, request_id))

    @app.get("/loans/borrows/{borrower}")
    async def list_borrows(borrower: str, status: Optional[LoanStatus] = None):
        return {"loans": [_loan_view(l) for l in await loans.list_borrows(borrower, status)]}

    @app.get("/loans/lent/{lender}")
    async def list_lent(lender: str):
        return {"loans": [_loan_view(l) for l in await loans.list_lender_loans(lender)]}

    @app.post("/loans/borrows/{borrower}/{loan_id}/repay")
    async def repay_loan(borrower: str, loan_id: str, req: RepayRequest):
        return _loan_view(await loans.repay(borrower, loan_id, req.amount, is_final=req.is_final))

    @app.get("/loans/stats/{account}")
    async def loan_stats(account: str):
        return await lending_summary(loans, account, clock())

    # ============================================================
    # PAYROLL SCHEDULES
    # ============================================================

    @app.post("/payroll/{owner}/schedules")
    async def create_schedule(owner: str, req: ScheduleRequest):
        signer = PresignedSigner(req.approval_signature) if req.auto_execute else None
        schedule = await schedules.create(owner, _spec(req), signer)
        return schedule.to_dict()

    @app.post("/payroll/{owner}/schedules/approval-message")
    async def schedule_approval_message(owner: str, req: ScheduleRequest):
        """Text to sign client-side and send back as approval_signature."""
        return {"message": schedules.approval_text(owner, _spec(req))}

    @app.get("/payroll/{owner}/schedules")
    async def list_schedules(owner: str):
        return {"schedules": [s.to_dict() for s in await schedules.list(owner)]}

    @app.get("/payroll/{owner}/schedules/{schedule_id}")
    async def get_schedule(owner: str, schedule_id: str):
        return (await schedules.get(owner, schedule_id)).to_dict()

    @app.patch("/payroll/{owner}/schedules/{schedule_id}")
    async def update_schedule(owner: str, schedule_id: str, req: ScheduleUpdate):
        current = schedule_spec(await schedules.get(owner, schedule_id))
        changes = req.model_dump(exclude_unset=True, exclude={"approval_signature", "recipients"})
        for key, value in changes.items():
            setattr(current, key, value)
        if req.recipients is not None:
            current.recipients = _recipients(req.recipients)
        signer = PresignedSigner(req.approval_signature) if req.approval_signature else None
        updated = await schedules.update(owner, schedule_id, current, signer)
        return updated.to_dict()

    @app.delete("/payroll/{owner}/schedules/{schedule_id}")
    async def delete_schedule(owner: str, schedule_id: str):
        await schedules.delete(owner, schedule_id)
        return {"deleted": schedule_id}

    @app.post("/payroll/{owner}/schedules/{schedule_id}/pause")
    async def pause_schedule(owner: str, schedule_id: str):
        return (await schedules.pause(owner, schedule_id)).to_dict()

    @app.post("/payroll/{owner}/schedules/{schedule_id}/resume")
    async def resume_schedule(owner: str, schedule_id: str):
        return (await schedules.resume(owner, schedule_id)).to_dict()

    @app.post("/payroll/{owner}/schedules/{schedule_id}/execute")
    async def execute_schedule(owner: str, schedule_id: str):
        return (await schedules.execute_now(owner, schedule_id)).to_dict()

    # ============================================================
    # PAYROLL BATCHES
    # ============================================================

    @app.post("/payroll/{owner}/batches")
    async def save_batch(owner: str, req: BatchRequest):
        return await batches.save_batch(owner, req.name, _recipients(req.recipients, req.recipients_csv))

    @app.get("/payroll/{owner}/batches")
    async def list_batches(owner: str):
        return {"batches": await batches.list_batches(owner)}

    @app.delete("/payroll/{owner}/batches/{batch_id}")
    async def delete_batch(owner: str, batch_id: str):
        await batches.delete_batch(owner, batch_id)
        return {"deleted": batch_id}

    @app.post("/payroll/{owner}/pay")
    async def pay_recipients(owner: str, req: PayRecipientsRequest):
        recipients = _recipients(req.recipients, req.recipients_csv)
        if req.batch_id and not req.run_id:
            saved = {b["id"]: b for b in await batches.list_batches(owner)}
            if req.batch_id not in saved:
                raise ValidationError(f"Unknown batch {req.batch_id}")
            recipients = [PayrollRecipient.from_dict(r) for r in saved[req.batch_id]["recipients"]]
        run = await batches.pay_recipients(owner, recipients or None, run_id=req.run_id, memo=req.memo)
        return run.to_dict()

    # ============================================================
    # NOMINEES
    # ============================================================

    @app.put("/nominees/{owner}")
    async def configure_nominees(owner: str, req: NomineeConfigRequest):
        config = await nominees.configure(
            owner,
            [{"address": n.address, "sharePct": n.share_pct} for n in req.nominees],
            encrypted_payload=req.encrypted_payload,
            inactivity_period_seconds=req.inactivity_period_seconds,
        )
        return config.to_dict()

    @app.get("/nominees/{owner}")
    async def get_nominees(owner: str):
        return (await nominees.get(owner)).to_dict()

    @app.delete("/nominees/{owner}")
    async def remove_nominees(owner: str):
        await nominees.remove(owner)
        return {"deleted": owner.lower()}

    @app.get("/nominees/{owner}/status")
    async def nominee_status(owner: str):
        return await nominees.claim_status(owner, clock())

    @app.post("/nominees/{owner}/claim")
    async def claim_share(owner: str, req: ClaimRequest):
        return await nominees.claim(owner, req.nominee_index, req.claimant)

    return app
