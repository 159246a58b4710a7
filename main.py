"""
ChainVault - main entry point

Initializes all modules, wires the activity bus, starts the schedule heartbeat
and the server. One file to understand how everything connects.

Usage:
    python main.py              # Start the service
    uvicorn main:app            # Or via uvicorn directly
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from dotenv import load_dotenv


# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

from chainvault.settings import SecretMaskingFilter, Settings

settings = Settings.from_env()

# Logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

_mask_filter = SecretMaskingFilter(settings.custodian_keys)
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("chainvault.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from chainvault.activity import ActivityBus
from chainvault.balance_gate import BalanceGate
from chainvault.chain import ChainExecutor
from chainvault.disbursement import DisbursementExecutor
from chainvault.loans import LoanLifecycle
from chainvault.nominee import InactivityClaimGate
from chainvault.payroll import PayrollBatches, ScheduleEngine
from chainvault.store import open_store
from chainvault.vault import VaultService
from api.server import create_app


# ============================================================
# GLOBALS (singleton instances)
# ============================================================

store = open_store(settings.store_path)
chain_executor = ChainExecutor(receipt_timeout=settings.receipt_timeout_seconds)
activity_bus = ActivityBus()

balance_gate = BalanceGate(chain_executor)
# Single transfers go out immediately; batches keep the spacing between calls
single_executor = DisbursementExecutor(chain_executor)
batch_executor = DisbursementExecutor(chain_executor, spacing_seconds=settings.batch_spacing_seconds)

vault_service = VaultService(chain_executor, activity_bus, gate=balance_gate, executor=single_executor)
loans = LoanLifecycle(
    store, chain_executor, activity_bus,
    executor=single_executor,
    gate=balance_gate,
    enforce_single_active_loan=settings.enforce_single_active_loan,
)
schedules = ScheduleEngine(
    store, chain_executor, activity_bus,
    executor=batch_executor,
    gate=balance_gate,
    catch_up_policy=settings.catch_up_policy,
)
batches = PayrollBatches(store, chain_executor, activity_bus, executor=batch_executor, gate=balance_gate)
nominees = InactivityClaimGate(
    store, chain_executor,
    executor=single_executor,
    gate=balance_gate,
    default_inactivity_period_seconds=settings.inactivity_period_seconds,
)


# ============================================================
# HEARTBEAT - drives ScheduleEngine.tick
# ============================================================

async def _heartbeat_loop():
    """
    Periodic schedule evaluation. Each cycle awaits its tick before sleeping;
    a tick started elsewhere (manual call) is skipped by ScheduleEngine itself.
    """
    while True:
        try:
            if chain_executor.initialized:
                report = await schedules.tick()
                logger.debug(
                    f"HEARTBEAT: evaluated={report.evaluated} executed={len(report.executed)} "
                    f"failed={len(report.failed)} overlapped={report.overlapped}"
                )
        except Exception as e:
            logger.error(f"Heartbeat critical error: {e}")

        await asyncio.sleep(settings.schedule_tick_seconds)


# ============================================================
# APP LIFECYCLE
# ============================================================

_unsubscribe_activity: Optional[Callable[[], None]] = None


@asynccontextmanager
async def lifespan(app):
    """Startup and shutdown."""
    global _unsubscribe_activity

    logger.info("=" * 60)
    logger.info("ChainVault starting...")
    logger.info("=" * 60)

    # Every owner vault action resets the nominee inactivity clock
    _unsubscribe_activity = activity_bus.subscribe(nominees.on_activity)

    rpc_url = settings.resolved_rpc_url
    if rpc_url and chain_executor.initialize(rpc_url, settings.vault_address, settings.custodian_keys):
        logger.info(f"Ledger: {settings.chain} vault {settings.vault_address[:10]}...")
    else:
        logger.warning("Ledger unavailable: API will report ledger failures, schedules will not run")

    heartbeat_task = asyncio.create_task(_heartbeat_loop())
    logger.info(
        f"Schedule tick every {settings.schedule_tick_seconds}s | "
        f"catch-up={settings.catch_up_policy.value} | batch spacing {settings.batch_spacing_seconds}s"
    )

    yield

    # Shutdown
    logger.info("ChainVault shutting down...")
    heartbeat_task.cancel()
    if _unsubscribe_activity:
        _unsubscribe_activity()
    logger.info("Goodbye.")


def create_chainvault_app():
    """Create the fully wired FastAPI app."""
    app = create_app(
        vault_service=vault_service,
        loans=loans,
        schedules=schedules,
        batches=batches,
        nominees=nominees,
        ledger_status_fn=chain_executor.get_status,
    )

    # Replace the default lifespan with ours
    app.router.lifespan_context = lifespan

    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_chainvault_app()

if __name__ == "__main__":
    logger.info(f"Starting server on {settings.host}:{settings.port}")

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
