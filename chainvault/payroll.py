"""
Schedule Engine - recurring and one-shot payroll

A schedule pays a fixed recipient list on a cadence (daily / weekly / biweekly /
monthly / custom / specific-date). tick(now) is driven by an external timer
(main.py heartbeat) and executes every schedule that is:

    autoExecute ∧ isApproved ∧ ¬isPaused ∧ ¬completed ∧ nextPaymentAt ≤ now

Execution flow per schedule:
1. BalanceGate on the remaining batch total
2. pendingRun cursor persisted, then DisbursementExecutor runs the batch
3. cursor advanced after EVERY transfer (crash → resume, never re-pay)
4. full success → paymentsCompleted++, lastPayment, nextPaymentAt advanced

nextPaymentAt advancement (catch-up policy):
- skip:       first slot of the schedule's grid strictly after max(now, previous)
- sequential: first slot strictly after the previous nextPaymentAt
Both are strictly increasing; neither bursts missed slots inside one tick.

Also here: saved recipient batches and resumable one-off batch payments
(payrollBatches / payrollRuns), CSV import, the approval message text.

Designed for: custodial vault disbursement service
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from . import cadence
from .activity import ActivityBus, ActivityEvent, ActivityKind
from .balance_gate import BalanceGate
from .cadence import Frequency, from_iso, to_iso, utc_now
from .chain import Signer, is_address, make_ref
from .disbursement import DisbursementExecutor, Transfer
from .errors import (
    ApprovalDeclined,
    InvalidTransition,
    NotFound,
    ScheduleCompleted,
    SchedulePaused,
    ValidationError,
    VaultError,
)
from .locks import KeyedLocks
from .settings import VAULT_LIMITS, CatchUpPolicy
from .validation import normalize_address, parse_amount, parse_int

logger = logging.getLogger("chainvault.payroll")


# ============================================================
# RECORDS
# ============================================================

@dataclass
class PayrollRecipient:
    wallet: str
    amount: Decimal
    label: str = ""

    def to_dict(self) -> dict:
        return {"wallet": self.wallet, "amount": str(self.amount), "label": self.label}

    @classmethod
    def from_dict(cls, d: dict) -> "PayrollRecipient":
        return cls(wallet=d["wallet"], amount=Decimal(d["amount"]), label=d.get("label", ""))


@dataclass
class RunCursor:
    """Progress of an in-flight batch: transfers [0, next_index) are paid."""
    run_number: int
    next_index: int
    started_at: datetime

    def to_dict(self) -> dict:
        return {"runNumber": self.run_number, "nextIndex": self.next_index, "startedAt": to_iso(self.started_at)}

    @classmethod
    def from_dict(cls, d: dict) -> "RunCursor":
        return cls(run_number=int(d["runNumber"]), next_index=int(d["nextIndex"]), started_at=from_iso(d["startedAt"]))


@dataclass
class ScheduleSpec:
    """Owner-supplied definition of a schedule (create / update input)."""
    name: str
    frequency: Frequency
    recipients: list[PayrollRecipient]
    start_date: Optional[datetime] = None
    custom_interval_days: Optional[int] = None
    specific_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    payment_count_limit: Optional[int] = None
    auto_execute: bool = True

    @property
    def total_per_payment(self) -> Decimal:
        return sum((r.amount for r in self.recipients), Decimal(0))


@dataclass
class PayrollSchedule:
    id: str
    owner: str
    name: str
    frequency: Frequency
    recipients: list[PayrollRecipient]
    start_date: datetime
    next_payment_at: Optional[datetime]
    total_payments: Optional[int]               # None = unbounded
    custom_interval_days: Optional[int] = None
    specific_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    payment_count_limit: Optional[int] = None
    auto_execute: bool = True
    is_paused: bool = False
    is_approved: bool = False
    approval_signature: Optional[str] = None
    payments_completed: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_payment_at: Optional[datetime] = None
    last_error: Optional[str] = None
    pending_run: Optional[RunCursor] = None
    needs_attention: bool = False              # held after a ledger failure until execute_now/resume

    @property
    def total_per_payment(self) -> Decimal:
        return sum((r.amount for r in self.recipients), Decimal(0))

    @property
    def completed(self) -> bool:
        """Derived: excluded from ticks but never deleted."""
        if self.pending_run is not None:
            return False
        if self.next_payment_at is None:
            return True
        if self.total_payments is not None and self.payments_completed >= self.total_payments:
            return True
        return self.end_date is not None and self.next_payment_at > self.end_date

    def is_due(self, now: datetime) -> bool:
        return (
            self.auto_execute
            and self.is_approved
            and not self.is_paused
            and not self.needs_attention
            and not self.completed
            and self.next_payment_at <= cadence.ensure_utc(now)
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ownerAccount": self.owner,
            "name": self.name,
            "frequency": self.frequency.value,
            "customIntervalDays": self.custom_interval_days,
            "specificDate": to_iso(self.specific_date),
            "startDate": to_iso(self.start_date),
            "endDate": to_iso(self.end_date),
            "paymentCountLimit": self.payment_count_limit,
            "recipients": [r.to_dict() for r in self.recipients],
            "autoExecute": self.auto_execute,
            "isPaused": self.is_paused,
            "isApproved": self.is_approved,
            "approvalSignature": self.approval_signature,
            "nextPaymentAt": to_iso(self.next_payment_at),
            "paymentsCompleted": self.payments_completed,
            "totalPayments": self.total_payments,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "lastPaymentAt": to_iso(self.last_payment_at),
            "lastError": self.last_error,
            "pendingRun": self.pending_run.to_dict() if self.pending_run else None,
            "needsAttention": self.needs_attention,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PayrollSchedule":
        return cls(
            id=d["id"],
            owner=d["ownerAccount"],
            name=d["name"],
            frequency=Frequency(d["frequency"]),
            custom_interval_days=d.get("customIntervalDays"),
            specific_date=from_iso(d.get("specificDate")),
            start_date=from_iso(d["startDate"]),
            end_date=from_iso(d.get("endDate")),
            payment_count_limit=d.get("paymentCountLimit"),
            recipients=[PayrollRecipient.from_dict(r) for r in d.get("recipients") or []],
            auto_execute=bool(d.get("autoExecute", False)),
            is_paused=bool(d.get("isPaused", False)),
            is_approved=bool(d.get("isApproved", False)),
            approval_signature=d.get("approvalSignature"),
            next_payment_at=from_iso(d.get("nextPaymentAt")),
            payments_completed=int(d.get("paymentsCompleted", 0)),
            total_payments=d.get("totalPayments"),
            created_at=from_iso(d.get("createdAt")),
            updated_at=from_iso(d.get("updatedAt")),
            last_payment_at=from_iso(d.get("lastPaymentAt")),
            last_error=d.get("lastError"),
            pending_run=RunCursor.from_dict(d["pendingRun"]) if d.get("pendingRun") else None,
            needs_attention=bool(d.get("needsAttention", False)),
        )


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PayrollRun:
    """One-off batch payment, resumable by id."""
    id: str
    owner: str
    recipients: list[PayrollRecipient]
    next_index: int = 0
    status: RunStatus = RunStatus.RUNNING
    memo: str = ""
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return sum((r.amount for r in self.recipients), Decimal(0))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ownerAccount": self.owner,
            "recipients": [r.to_dict() for r in self.recipients],
            "nextIndex": self.next_index,
            "status": self.status.value,
            "memo": self.memo,
            "total": str(self.total),
            "createdAt": to_iso(self.created_at),
            "completedAt": to_iso(self.completed_at),
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PayrollRun":
        return cls(
            id=d["id"],
            owner=d["ownerAccount"],
            recipients=[PayrollRecipient.from_dict(r) for r in d.get("recipients") or []],
            next_index=int(d.get("nextIndex", 0)),
            status=RunStatus(d.get("status", "running")),
            memo=d.get("memo", ""),
            created_at=from_iso(d.get("createdAt")),
            completed_at=from_iso(d.get("completedAt")),
            last_error=d.get("lastError"),
        )


@dataclass
class TickReport:
    executed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)       # schedule id → error code
    evaluated: int = 0
    overlapped: bool = False

    def to_dict(self) -> dict:
        return {
            "executed": list(self.executed),
            "failed": dict(self.failed),
            "evaluated": self.evaluated,
            "overlapped": self.overlapped,
        }


# ============================================================
# INPUT HELPERS
# ============================================================

def validate_recipients(recipients, owner: Optional[str] = None) -> list[PayrollRecipient]:
    """Non-empty, well-formed addresses, positive amounts."""
    if not recipients:
        raise ValidationError("At least one recipient is required")
    if len(recipients) > VAULT_LIMITS.MAX_RECIPIENTS:
        raise ValidationError(f"At most {VAULT_LIMITS.MAX_RECIPIENTS} recipients per batch")

    out = []
    for i, r in enumerate(recipients):
        if isinstance(r, dict):
            wallet, amount, label = r.get("wallet"), r.get("amount"), r.get("label") or r.get("name") or ""
        else:
            wallet, amount, label = r.wallet, r.amount, r.label
        wallet = normalize_address(wallet, f"recipients[{i}].wallet")
        if owner and wallet == owner:
            raise ValidationError(f"recipients[{i}] is the paying vault itself")
        out.append(PayrollRecipient(wallet=wallet, amount=parse_amount(amount, f"recipients[{i}].amount"), label=label))
    return out


def parse_recipients_csv(text: str) -> list[PayrollRecipient]:
    """
    `wallet,amount,label` rows. A header row mentioning "wallet" is skipped,
    as are blank lines and rows missing a wallet or amount.
    """
    rows = [row for row in csv.reader(io.StringIO(text)) if any(cell.strip() for cell in row)]
    if rows and "wallet" in ",".join(rows[0]).lower():
        rows = rows[1:]

    recipients = []
    for line_no, row in enumerate(rows, start=1):
        cells = [c.strip() for c in row] + ["", "", ""]
        wallet, amount, label = cells[0], cells[1], cells[2]
        if not wallet or not amount:
            continue
        if not is_address(wallet):
            raise ValidationError(f"CSV row {line_no}: invalid wallet address {wallet!r}")
        recipients.append(PayrollRecipient(
            wallet=wallet.lower(),
            amount=parse_amount(amount, f"CSV row {line_no} amount"),
            label=label,
        ))
    if not recipients:
        raise ValidationError("CSV contained no recipients. Use format: wallet,amount,label")
    return recipients


def approval_message(spec: ScheduleSpec) -> str:
    """Text the owner signs once to let a schedule run unattended."""
    return (
        f"I approve automated recurring payments for schedule: {spec.name}\n"
        f"Recipients: {len(spec.recipients)}\n"
        f"Total per payment: {spec.total_per_payment} ETH\n"
        f"Frequency: {cadence.frequency_label(spec.frequency, spec.custom_interval_days)}\n"
        f"This signature authorizes ChainVault to execute these payments automatically."
    )


def schedule_spec(schedule: PayrollSchedule) -> ScheduleSpec:
    return ScheduleSpec(
        name=schedule.name,
        frequency=schedule.frequency,
        recipients=list(schedule.recipients),
        start_date=schedule.start_date,
        custom_interval_days=schedule.custom_interval_days,
        specific_date=schedule.specific_date,
        end_date=schedule.end_date,
        payment_count_limit=schedule.payment_count_limit,
        auto_execute=schedule.auto_execute,
    )


def _payment_terms(spec: ScheduleSpec) -> tuple:
    return (
        spec.frequency,
        spec.custom_interval_days,
        spec.specific_date,
        tuple((r.wallet, r.amount) for r in spec.recipients),
    )


# ============================================================
# ENGINE
# ============================================================

class ScheduleEngine:
    """
    Usage:
        engine = ScheduleEngine(store, ledger, bus)
        sched = await engine.create(owner, spec, signer)
        report = await engine.tick()          # from the heartbeat loop
    """

    def __init__(
        self,
        store,
        ledger,
        bus: ActivityBus,
        executor: Optional[DisbursementExecutor] = None,
        gate: Optional[BalanceGate] = None,
        catch_up_policy: CatchUpPolicy = CatchUpPolicy.SKIP,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._ledger = ledger
        self._bus = bus
        self._executor = executor or DisbursementExecutor(ledger)
        self._gate = gate or BalanceGate(ledger)
        self._policy = catch_up_policy
        self._clock = clock
        self._locks = KeyedLocks()
        self._ticking = False

    @staticmethod
    def _path(owner: str, schedule_id: str) -> str:
        return f"payrollSchedules/{owner}/{schedule_id}"

    # ============================================================
    # VALIDATION
    # ============================================================

    def _validate(self, owner: str, spec: ScheduleSpec, now: datetime) -> ScheduleSpec:
        name = (spec.name or "").strip()
        if not name:
            raise ValidationError("Schedule name is required")
        if len(name) > VAULT_LIMITS.MAX_SCHEDULE_NAME_LENGTH:
            raise ValidationError(f"Schedule name longer than {VAULT_LIMITS.MAX_SCHEDULE_NAME_LENGTH} characters")
        try:
            frequency = Frequency(spec.frequency)
        except ValueError:
            raise ValidationError(f"Unknown frequency {spec.frequency!r}")

        recipients = validate_recipients(spec.recipients, owner)
        start = cadence.ensure_utc(spec.start_date) if spec.start_date else now

        custom = None
        specific = None
        if frequency is Frequency.CUSTOM:
            custom = cadence.validate_custom_interval(spec.custom_interval_days)
        elif frequency is Frequency.SPECIFIC_DATE:
            if spec.specific_date is None:
                raise ValidationError("specific_date is required for a one-time payment")
            specific = cadence.ensure_utc(spec.specific_date)
            if specific <= now:
                raise ValidationError("specific_date must be in the future")

        end = cadence.ensure_utc(spec.end_date) if spec.end_date else None
        limit = spec.payment_count_limit
        if frequency is Frequency.SPECIFIC_DATE:
            end, limit = None, None
        if end is not None and limit is not None:
            raise ValidationError("Set either end_date or payment_count_limit, not both")
        if end is not None and end < start:
            raise ValidationError("end_date is before start_date")
        if limit is not None:
            limit = parse_int(limit, "payment_count_limit", minimum=1)

        return ScheduleSpec(
            name=name,
            frequency=frequency,
            recipients=recipients,
            start_date=start,
            custom_interval_days=custom,
            specific_date=specific,
            end_date=end,
            payment_count_limit=limit,
            auto_execute=bool(spec.auto_execute),
        )

    @staticmethod
    def _first_payment(spec: ScheduleSpec, now: datetime) -> Optional[datetime]:
        return cadence.next_occurrence(
            spec.frequency, spec.start_date, now,
            custom_interval_days=spec.custom_interval_days,
            specific_date=spec.specific_date,
        )

    @staticmethod
    def _total_payments(spec: ScheduleSpec, first: datetime, already_paid: int = 0) -> Optional[int]:
        if spec.frequency is Frequency.SPECIFIC_DATE:
            return 1
        if spec.payment_count_limit is not None:
            return spec.payment_count_limit
        if spec.end_date is None:
            return None
        # Payments land on the start_date grid, so count its slots in [first, end_date]
        if first > spec.end_date:
            remaining = 0
        else:
            remaining = (
                cadence.count_occurrences(spec.frequency, spec.start_date, spec.end_date, spec.custom_interval_days)
                - cadence.count_occurrences(spec.frequency, spec.start_date, first, spec.custom_interval_days)
                + 1
            )
        if already_paid + remaining == 0:
            raise ValidationError("end_date leaves no payment dates")
        return already_paid + remaining

    def approval_text(self, owner: str, spec: ScheduleSpec) -> str:
        """The exact message create() will ask the owner to sign for `spec`."""
        owner = normalize_address(owner, "owner")
        return approval_message(self._validate(owner, spec, self._clock()))

    async def _approve(self, owner: str, spec: ScheduleSpec, signer: Optional[Signer]) -> Optional[str]:
        """Signature, or None when the owner declined (schedule is then forced paused/manual)."""
        if signer is None:
            logger.warning(f"No signer for '{spec.name}': auto-execution needs approval, schedule paused")
            return None
        try:
            return await signer.sign(owner, approval_message(spec))
        except ApprovalDeclined as e:
            logger.warning(f"Approval declined for '{spec.name}' by {owner[:10]}...: {e.message}: schedule paused")
            return None

    # ============================================================
    # CRUD
    # ============================================================

    async def create(self, owner: str, spec: ScheduleSpec, signer: Optional[Signer] = None) -> PayrollSchedule:
        owner = normalize_address(owner, "owner")
        now = self._clock()
        spec = self._validate(owner, spec, now)
        first = self._first_payment(spec, now)
        total = self._total_payments(spec, first)

        schedule = PayrollSchedule(
            id=self._store.new_key(),
            owner=owner,
            name=spec.name,
            frequency=spec.frequency,
            recipients=spec.recipients,
            start_date=spec.start_date,
            custom_interval_days=spec.custom_interval_days,
            specific_date=spec.specific_date,
            end_date=spec.end_date,
            payment_count_limit=spec.payment_count_limit,
            auto_execute=spec.auto_execute,
            next_payment_at=first,
            total_payments=total,
            created_at=now,
            updated_at=now,
        )

        if spec.auto_execute:
            signature = await self._approve(owner, spec, signer)
            if signature:
                schedule.approval_signature = signature
                schedule.is_approved = True
            else:
                schedule.is_paused = True
                schedule.auto_execute = False

        await self._store.set(self._path(owner, schedule.id), schedule.to_dict())
        logger.info(
            f"Schedule {schedule.id} '{schedule.name}' created for {owner[:10]}...: "
            f"{cadence.frequency_label(schedule.frequency, schedule.custom_interval_days)}, "
            f"{len(schedule.recipients)} recipient(s), {schedule.total_per_payment} per run, "
            f"first {to_iso(first)} | approved={schedule.is_approved}"
        )
        return schedule

    async def update(self, owner: str, schedule_id: str, spec: ScheduleSpec,
                     signer: Optional[Signer] = None) -> PayrollSchedule:
        """
        Replace the definition. Changed payment terms (recipients, amounts,
        cadence) void the previous approval. Progress counters are kept.
        """
        owner = normalize_address(owner, "owner")
        async with self._locks(f"schedule:{owner}:{schedule_id}"):
            schedule = await self.get(owner, schedule_id)
            if schedule.pending_run is not None:
                raise InvalidTransition(f"Schedule {schedule_id} has a partially paid run; execute it before editing")

            now = self._clock()
            spec = self._validate(owner, spec, now)
            if spec.payment_count_limit is not None and spec.payment_count_limit < schedule.payments_completed:
                raise ValidationError(
                    f"payment_count_limit {spec.payment_count_limit} is below the "
                    f"{schedule.payments_completed} payments already made"
                )

            old = schedule_spec(schedule)
            terms_changed = _payment_terms(old) != _payment_terms(spec)
            cadence_changed = (
                terms_changed
                or old.start_date != spec.start_date
            )

            if cadence_changed or schedule.next_payment_at is None:
                schedule.next_payment_at = self._first_payment(spec, now)

            schedule.name = spec.name
            schedule.frequency = spec.frequency
            schedule.recipients = spec.recipients
            schedule.start_date = spec.start_date
            schedule.custom_interval_days = spec.custom_interval_days
            schedule.specific_date = spec.specific_date
            schedule.end_date = spec.end_date
            schedule.payment_count_limit = spec.payment_count_limit
            if schedule.next_payment_at is not None:
                schedule.total_payments = self._total_payments(spec, schedule.next_payment_at, schedule.payments_completed)

            needs_approval = spec.auto_execute and (terms_changed or not schedule.is_approved)
            if terms_changed:
                schedule.is_approved = False
                schedule.approval_signature = None
            schedule.auto_execute = spec.auto_execute
            if needs_approval:
                signature = await self._approve(owner, spec, signer)
                if signature:
                    schedule.approval_signature = signature
                    schedule.is_approved = True
                else:
                    schedule.is_paused = True
                    schedule.auto_execute = False

            schedule.updated_at = now
            await self._store.set(self._path(owner, schedule.id), schedule.to_dict())
        logger.info(f"Schedule {schedule_id} updated (terms_changed={terms_changed}, approved={schedule.is_approved})")
        return schedule

    async def get(self, owner: str, schedule_id: str) -> PayrollSchedule:
        owner = normalize_address(owner, "owner")
        data = await self._store.get(self._path(owner, schedule_id))
        if data is None:
            raise NotFound(f"Schedule {schedule_id} not found for {owner}")
        return PayrollSchedule.from_dict(data)

    async def list(self, owner: str) -> list[PayrollSchedule]:
        owner = normalize_address(owner, "owner")
        data = await self._store.children(f"payrollSchedules/{owner}")
        return sorted((PayrollSchedule.from_dict(d) for d in data.values()), key=lambda s: s.created_at, reverse=True)

    async def pause(self, owner: str, schedule_id: str) -> PayrollSchedule:
        return await self._set_paused(owner, schedule_id, True)

    async def resume(self, owner: str, schedule_id: str) -> PayrollSchedule:
        return await self._set_paused(owner, schedule_id, False)

    async def _set_paused(self, owner: str, schedule_id: str, paused: bool) -> PayrollSchedule:
        owner = normalize_address(owner, "owner")
        async with self._locks(f"schedule:{owner}:{schedule_id}"):
            schedule = await self.get(owner, schedule_id)
            schedule.is_paused = paused
            schedule.updated_at = self._clock()
            fields = {"isPaused": paused, "updatedAt": to_iso(schedule.updated_at)}
            if not paused:
                schedule.needs_attention = False
                fields["needsAttention"] = False
            await self._store.update(self._path(owner, schedule_id), fields)
        logger.info(f"Schedule {schedule_id} {'paused' if paused else 'resumed'}")
        return schedule

    async def delete(self, owner: str, schedule_id: str):
        """Hard removal. A due-but-unexecuted payment is dropped with it."""
        owner = normalize_address(owner, "owner")
        async with self._locks(f"schedule:{owner}:{schedule_id}"):
            await self.get(owner, schedule_id)
            await self._store.remove(self._path(owner, schedule_id))
        logger.info(f"Schedule {schedule_id} deleted")

    # ============================================================
    # EXECUTION
    # ============================================================

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        One evaluation pass over every schedule. A failure in one schedule is
        recorded on it (lastError) and does not stop the others.
        """
        report = TickReport()
        if self._ticking:
            logger.warning("Schedule tick still running: skipping this one")
            report.overlapped = True
            return report

        self._ticking = True
        try:
            now = cadence.ensure_utc(now or self._clock())
            owners = await self._store.children("payrollSchedules")
            for owner, schedules in owners.items():
                for schedule_id, data in schedules.items():
                    report.evaluated += 1
                    if not PayrollSchedule.from_dict(data).is_due(now):
                        continue
                    try:
                        executed = await self._execute(owner, schedule_id, now, manual=False)
                        if executed:
                            report.executed.append(schedule_id)
                    except VaultError as e:
                        report.failed[schedule_id] = e.code
                        logger.warning(f"Schedule {schedule_id} failed: [{e.code}] {e.message}")
                        await self._record_error(owner, schedule_id, e)
        finally:
            self._ticking = False

        if report.executed or report.failed:
            logger.info(
                f"Tick: evaluated={report.evaluated} executed={len(report.executed)} failed={len(report.failed)}"
            )
        return report

    async def execute_now(self, owner: str, schedule_id: str) -> PayrollSchedule:
        """Manual run: ignores autoExecute/isApproved, still blocked by isPaused."""
        owner = normalize_address(owner, "owner")
        await self._execute(owner, schedule_id, self._clock(), manual=True)
        return await self.get(owner, schedule_id)

    async def _record_error(self, owner: str, schedule_id: str, error: VaultError):
        if await self._store.get(self._path(owner, schedule_id)) is None:
            return
        await self._store.update(self._path(owner, schedule_id), {
            "lastError": f"[{error.code}] {error.message}",
            "updatedAt": to_iso(self._clock()),
        })

    def _advance(self, schedule: PayrollSchedule, now: datetime) -> Optional[datetime]:
        previous = schedule.next_payment_at
        if schedule.frequency is Frequency.SPECIFIC_DATE:
            return None
        if self._policy is CatchUpPolicy.SEQUENTIAL:
            after = previous
        else:
            after = max(now, previous)
        nxt = cadence.next_occurrence(
            schedule.frequency, schedule.start_date, after,
            custom_interval_days=schedule.custom_interval_days,
        )
        done = (
            (schedule.total_payments is not None and schedule.payments_completed >= schedule.total_payments)
            or (schedule.end_date is not None and nxt > schedule.end_date)
        )
        return None if done else nxt

    async def _execute(self, owner: str, schedule_id: str, now: datetime, manual: bool) -> bool:
        """Run one payment of the schedule. Returns False when a re-check finds nothing to do."""
        async with self._locks(f"schedule:{owner}:{schedule_id}"):
            # Re-read under the lock: a duplicate invocation sees the first one's effects
            schedule = await self.get(owner, schedule_id)
            if schedule.is_paused:
                if manual:
                    raise SchedulePaused(f"Schedule {schedule_id} is paused")
                return False
            if schedule.completed:
                if manual:
                    raise ScheduleCompleted(f"Schedule {schedule_id} has completed all payments")
                return False
            if not manual and not schedule.is_due(now):
                return False

            path = self._path(owner, schedule_id)
            cursor = schedule.pending_run or RunCursor(
                run_number=schedule.payments_completed + 1, next_index=0, started_at=now,
            )
            transfers = [
                Transfer(
                    to=r.wallet,
                    amount=r.amount,
                    ref=make_ref("payroll", schedule.id, cursor.run_number, i),
                    memo=f"{schedule.name} #{cursor.run_number}",
                )
                for i, r in enumerate(schedule.recipients)
            ]

            remaining = sum((t.amount for t in transfers[cursor.next_index:]), Decimal(0))
            await self._gate.require(owner, remaining)

            if schedule.pending_run is None:
                await self._store.update(path, {"pendingRun": cursor.to_dict()})
            else:
                logger.info(f"Resuming schedule {schedule_id} run #{cursor.run_number} at {cursor.next_index}")

            async def on_progress(next_index: int, _receipt):
                cursor.next_index = next_index
                await self._store.update(path, {"pendingRun": cursor.to_dict()})

            result = await self._executor.execute_batch(
                owner, transfers,
                start_index=cursor.next_index,
                on_progress=on_progress,
                reconcile_first=True,
            )

            if not result.completed:
                # Ticks leave the schedule alone until the owner retries or resumes it
                await self._store.update(path, {"needsAttention": True})
                if result.succeeded:
                    await self._bus.emit(ActivityEvent(account=owner, kind=ActivityKind.PAYROLL, ref=transfers[0].ref))
                result.error.details.update({"scheduleId": schedule_id, "runNumber": cursor.run_number})
                raise result.error

            schedule.payments_completed += 1
            schedule.last_payment_at = now
            schedule.pending_run = None
            schedule.needs_attention = False
            schedule.last_error = None
            schedule.next_payment_at = self._advance(schedule, now)
            schedule.updated_at = now
            await self._store.set(path, schedule.to_dict())

        logger.info(
            f"Schedule {schedule_id} paid run #{cursor.run_number} "
            f"({len(transfers)} recipient(s), {schedule.total_per_payment}) → next {to_iso(schedule.next_payment_at)}"
        )
        await self._bus.emit(ActivityEvent(account=owner, kind=ActivityKind.PAYROLL, ref=transfers[0].ref))
        return True


# ============================================================
# SAVED BATCHES + ONE-OFF RUNS
# ============================================================

class PayrollBatches:
    """
    Saved recipient lists and one-off batch payments.

    pay_recipients() persists a run record under payrollRuns/{owner}/{runId}
    with a nextIndex cursor; calling it again with the same run_id resumes.
    """

    def __init__(self, store, ledger, bus: ActivityBus,
                 executor: Optional[DisbursementExecutor] = None,
                 gate: Optional[BalanceGate] = None,
                 clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._bus = bus
        self._executor = executor or DisbursementExecutor(ledger)
        self._gate = gate or BalanceGate(ledger)
        self._clock = clock
        self._locks = KeyedLocks()

    async def save_batch(self, owner: str, name: str, recipients) -> dict:
        owner = normalize_address(owner, "owner")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Batch name is required")
        batch = {
            "name": name,
            "recipients": [r.to_dict() for r in validate_recipients(recipients, owner)],
            "createdAt": to_iso(self._clock()),
        }
        batch_id = await self._store.push(f"payrollBatches/{owner}", batch)
        batch["id"] = batch_id
        return batch

    async def list_batches(self, owner: str) -> list[dict]:
        owner = normalize_address(owner, "owner")
        batches = [dict(b, id=k) for k, b in (await self._store.children(f"payrollBatches/{owner}")).items()]
        return sorted(batches, key=lambda b: b.get("createdAt") or "", reverse=True)

    async def delete_batch(self, owner: str, batch_id: str):
        owner = normalize_address(owner, "owner")
        if await self._store.get(f"payrollBatches/{owner}/{batch_id}") is None:
            raise NotFound(f"Batch {batch_id} not found for {owner}")
        await self._store.remove(f"payrollBatches/{owner}/{batch_id}")

    async def get_run(self, owner: str, run_id: str) -> PayrollRun:
        owner = normalize_address(owner, "owner")
        data = await self._store.get(f"payrollRuns/{owner}/{run_id}")
        if data is None:
            raise NotFound(f"Payroll run {run_id} not found for {owner}")
        return PayrollRun.from_dict(data)

    async def pay_recipients(self, owner: str, recipients=None, run_id: Optional[str] = None,
                             memo: str = "") -> PayrollRun:
        """
        Pay every recipient once, in order. On failure the run is saved as
        `failed` with its cursor and LedgerFailure is raised carrying the runId;
        call again with that run_id to resume from the first unpaid recipient.
        """
        owner = normalize_address(owner, "owner")

        if run_id:
            run = await self.get_run(owner, run_id)
            if recipients:
                given = [(r.wallet, r.amount) for r in validate_recipients(recipients, owner)]
                if given != [(r.wallet, r.amount) for r in run.recipients]:
                    raise ValidationError(f"Recipients differ from payroll run {run_id}")
        else:
            run = PayrollRun(
                id=self._store.new_key(),
                owner=owner,
                recipients=validate_recipients(recipients, owner),
                memo=memo or "",
                created_at=self._clock(),
            )

        async with self._locks(f"run:{owner}:{run.id}"):
            if run_id:
                run = await self.get_run(owner, run.id)
            if run.status is RunStatus.COMPLETED:
                return run

            path = f"payrollRuns/{owner}/{run.id}"
            transfers = [
                Transfer(to=r.wallet, amount=r.amount, ref=make_ref("payroll-run", run.id, i), memo=run.memo)
                for i, r in enumerate(run.recipients)
            ]
            remaining = sum((t.amount for t in transfers[run.next_index:]), Decimal(0))
            await self._gate.require(owner, remaining)

            resuming = run_id is not None
            run.status = RunStatus.RUNNING
            await self._store.set(path, run.to_dict())

            async def on_progress(next_index: int, _receipt):
                run.next_index = next_index
                await self._store.update(path, {"nextIndex": next_index})

            result = await self._executor.execute_batch(
                owner, transfers,
                start_index=run.next_index,
                on_progress=on_progress,
                reconcile_first=resuming,
            )

            if not result.completed:
                run.status = RunStatus.FAILED
                run.last_error = result.error.message
                await self._store.set(path, run.to_dict())
                if result.succeeded:
                    await self._bus.emit(ActivityEvent(account=owner, kind=ActivityKind.PAYROLL, ref=transfers[0].ref))
                result.error.details.update({"runId": run.id, "nextIndex": run.next_index})
                raise result.error

            run.status = RunStatus.COMPLETED
            run.completed_at = self._clock()
            run.last_error = None
            await self._store.set(path, run.to_dict())

        logger.info(f"Payroll run {run.id} paid {len(run.recipients)} recipient(s), total {run.total}")
        await self._bus.emit(ActivityEvent(account=owner, kind=ActivityKind.PAYROLL, ref=transfers[0].ref))
        return run
