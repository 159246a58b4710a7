"""
Vault Settings - Hardcoded Limits + Environment Configuration

Two layers:
- VAULT_LIMITS: frozen constants. Validation bounds every engine checks against.
- Settings: runtime configuration read from the environment (.env loaded by main.py).

Designed for: custodial vault disbursement service
"""

import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Final, Optional


class CatchUpPolicy(Enum):
    """How a recurring schedule advances after an execution."""
    SKIP = "skip"                   # next occurrence after `now` (missed slots are dropped)
    SEQUENTIAL = "sequential"       # one step past the previous slot (at most one run per tick)


# ============================================================
# LIMITS - not configurable at runtime
# ============================================================

@dataclass(frozen=True)
class VaultLimits:
    """Frozen dataclass = immutable at runtime."""

    # --- AMOUNTS ---
    AMOUNT_DECIMALS: Final[int] = 18                  # wei precision
    MIN_AMOUNT: Final[Decimal] = Decimal("1e-18")     # 1 wei

    # --- PAYROLL ---
    MAX_RECIPIENTS: Final[int] = 100
    MIN_CUSTOM_INTERVAL_DAYS: Final[int] = 1
    MAX_SCHEDULE_NAME_LENGTH: Final[int] = 120

    # --- LOANS ---
    MIN_LOAN_DURATION_DAYS: Final[int] = 1
    MAX_LOAN_DURATION_DAYS: Final[int] = 3650
    MAX_INTEREST_RATE_PCT: Final[Decimal] = Decimal("1000")

    # --- NOMINEES ---
    REQUIRED_SHARE_TOTAL_PCT: Final[int] = 100
    MAX_NOMINEES: Final[int] = 20
    DEFAULT_INACTIVITY_PERIOD_SECONDS: Final[int] = 180 * 86400
    MIN_INACTIVITY_PERIOD_SECONDS: Final[int] = 86400


VAULT_LIMITS = VaultLimits()


# ============================================================
# CHAINS
# ============================================================

CHAIN_DEFAULTS = {
    "sepolia": {
        "rpc": "https://rpc.sepolia.org",
        "chain_id": 11155111,
        "explorer": "https://eth-sepolia.blockscout.com",
        "native_symbol": "ETH",
    },
    "mainnet": {
        "rpc": "https://eth.llamarpc.com",
        "chain_id": 1,
        "explorer": "https://eth.blockscout.com",
        "native_symbol": "ETH",
    },
}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    chain: str = "sepolia"
    rpc_url: str = ""
    vault_address: str = ""
    custodian_keys: tuple[str, ...] = field(default_factory=tuple)
    data_dir: str = "data"
    schedule_tick_seconds: int = 60
    batch_spacing_seconds: float = 10.0
    catch_up_policy: CatchUpPolicy = CatchUpPolicy.SKIP
    inactivity_period_seconds: int = VAULT_LIMITS.DEFAULT_INACTIVITY_PERIOD_SECONDS
    enforce_single_active_loan: bool = True
    receipt_timeout_seconds: int = 120
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def store_path(self) -> str:
        return os.path.join(self.data_dir, "store.json")

    @property
    def resolved_rpc_url(self) -> Optional[str]:
        if self.rpc_url:
            return self.rpc_url
        chain_cfg = CHAIN_DEFAULTS.get(self.chain)
        return chain_cfg["rpc"] if chain_cfg else None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables. Call after load_dotenv()."""
        keys = tuple(k.strip() for k in os.getenv("CUSTODIAN_KEYS", "").split(",") if k.strip())
        policy_raw = os.getenv("CATCH_UP_POLICY", CatchUpPolicy.SKIP.value).strip().lower()
        try:
            policy = CatchUpPolicy(policy_raw)
        except ValueError:
            raise ValueError(f"CATCH_UP_POLICY must be one of {[p.value for p in CatchUpPolicy]}, got {policy_raw!r}")

        return cls(
            chain=os.getenv("CHAIN", "sepolia").strip().lower(),
            rpc_url=os.getenv("RPC_URL", ""),
            vault_address=os.getenv("VAULT_ADDRESS", ""),
            custodian_keys=keys,
            data_dir=os.getenv("DATA_DIR", "data"),
            schedule_tick_seconds=int(os.getenv("SCHEDULE_TICK_SECONDS", "60")),
            batch_spacing_seconds=float(os.getenv("BATCH_SPACING_SECONDS", "10")),
            catch_up_policy=policy,
            inactivity_period_seconds=int(os.getenv(
                "INACTIVITY_PERIOD_SECONDS", str(VAULT_LIMITS.DEFAULT_INACTIVITY_PERIOD_SECONDS)
            )),
            enforce_single_active_loan=_env_bool("ENFORCE_SINGLE_ACTIVE_LOAN", True),
            receipt_timeout_seconds=int(os.getenv("RECEIPT_TIMEOUT_SECONDS", "120")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )


# ============================================================
# LOG REDACTION
# ============================================================

class SecretMaskingFilter(logging.Filter):
    """
    Redact private keys from log output.

    Masks the configured custodian keys (with or without 0x) and any bare
    64-char hex string. 0x-prefixed refs and tx hashes pass through.
    """
    _BARE_KEY = re.compile(r'(?<![0-9a-fA-FxX])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def __init__(self, secrets: tuple[str, ...] = ()):
        super().__init__()
        bare = {s[2:] if s.lower().startswith("0x") else s for s in secrets if s}
        self._secrets = sorted(bare, key=len, reverse=True)

    def mask(self, text: str) -> str:
        for secret in self._secrets:
            text = re.sub(re.escape(secret), "[REDACTED]", text, flags=re.IGNORECASE)
        return self._BARE_KEY.sub("[REDACTED]", text)

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            formatted = record.getMessage()
        except (TypeError, ValueError):
            return True
        masked = self.mask(formatted)
        if masked != formatted:
            record.msg = masked
            record.args = None
        return True
