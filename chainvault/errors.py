"""
Error taxonomy for every disbursement path.

Engines raise these and never swallow them. The HTTP layer maps `code`
to a status; the schedule tick records them per schedule.
"""

from decimal import Decimal
from typing import Optional


class VaultError(Exception):
    """Base class. `code` is stable and safe to expose to clients."""
    code = "vault_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: dict = {}     # record ids the caller needs to retry / resume

    def to_dict(self) -> dict:
        d = {"error": self.code, "message": self.message}
        if self.details:
            d["details"] = dict(self.details)
        return d


class ValidationError(VaultError):
    """Malformed input. Raised before any persistence or ledger call."""
    code = "validation_error"


class NotFound(VaultError):
    code = "not_found"


class InvalidTransition(VaultError):
    """Operation not allowed from the record's current status."""
    code = "invalid_transition"


class InsufficientBalance(VaultError):
    """Balance gate failure. No ledger call was attempted; safe to retry after a deposit."""
    code = "insufficient_balance"

    def __init__(self, required: Decimal, available: Decimal):
        self.required = required
        self.available = available
        self.shortfall = required - available
        super().__init__(
            f"Insufficient vault balance: required {required}, available {available}, "
            f"shortfall {self.shortfall}"
        )

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({
            "required": str(self.required),
            "available": str(self.available),
            "shortfall": str(self.shortfall),
        })
        return d


class LedgerFailure(VaultError):
    """
    Transfer reverted or timed out.

    ambiguous=True means the outcome is unknown (receipt timeout): re-check
    ledger history for `ref` before retrying.
    completed = transfers of the batch that did commit before the failure.
    """
    code = "ledger_failure"

    def __init__(self, message: str, ref: str = "", ambiguous: bool = False,
                 tx_hash: str = "", completed: int = 0, failed_at: Optional[int] = None):
        super().__init__(message)
        self.ref = ref
        self.ambiguous = ambiguous
        self.tx_hash = tx_hash
        self.completed = completed
        self.failed_at = failed_at

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({
            "ref": self.ref,
            "ambiguous": self.ambiguous,
            "tx_hash": self.tx_hash,
            "completed": self.completed,
            "failed_at": self.failed_at,
        })
        return d


class AlreadyClaimed(VaultError):
    code = "already_claimed"


class AlreadyRepaid(VaultError):
    code = "already_repaid"


class ScheduleCompleted(VaultError):
    code = "schedule_completed"


class SchedulePaused(VaultError):
    code = "schedule_paused"


class ApprovalDeclined(VaultError):
    """Owner did not sign. Non-fatal: the schedule is downgraded to paused/manual."""
    code = "approval_declined"


class ClaimRejected(VaultError):
    """Owner still active, or claimant is not the nominee at that index."""
    code = "claim_rejected"


class DuplicateActiveLoan(VaultError):
    code = "duplicate_active_loan"
