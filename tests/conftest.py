"""
conftest.py - Shared pytest fixtures

Every engine is wired to the same FakeLedger, in-memory DocumentStore,
ActivityBus and settable Clock, the way main.py wires the real ones.
"""

from datetime import datetime, timezone

import pytest

from chainvault.activity import ActivityBus
from chainvault.balance_gate import BalanceGate
from chainvault.disbursement import DisbursementExecutor
from chainvault.loans import LoanLifecycle
from chainvault.nominee import InactivityClaimGate
from chainvault.payroll import PayrollBatches, ScheduleEngine
from chainvault.settings import CatchUpPolicy
from chainvault.store import DocumentStore
from chainvault.vault import VaultService

from tests.fakes import ALICE, BORROWER, LENDER, OWNER, Clock, FakeLedger, FakeSigner


@pytest.fixture
def clock():
    return Clock(datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(clock):
    return FakeLedger({OWNER: "100", LENDER: "50", BORROWER: "10", ALICE: "5"}, clock=clock)


@pytest.fixture
def store():
    return DocumentStore()


@pytest.fixture
def bus():
    return ActivityBus()


@pytest.fixture
def events(bus):
    """Every ActivityEvent emitted during the test."""
    seen = []
    bus.subscribe(seen.append)
    return seen


@pytest.fixture
def executor(ledger):
    return DisbursementExecutor(ledger)


@pytest.fixture
def gate(ledger):
    return BalanceGate(ledger)


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def vault(ledger, bus, gate, executor):
    return VaultService(ledger, bus, gate=gate, executor=executor)


@pytest.fixture
def loans(store, ledger, bus, executor, gate, clock):
    return LoanLifecycle(store, ledger, bus, executor=executor, gate=gate, clock=clock)


@pytest.fixture
def engine(store, ledger, bus, executor, gate, clock):
    return ScheduleEngine(store, ledger, bus, executor=executor, gate=gate,
                          catch_up_policy=CatchUpPolicy.SKIP, clock=clock)


@pytest.fixture
def batches(store, ledger, bus, executor, gate, clock):
    return PayrollBatches(store, ledger, bus, executor=executor, gate=gate, clock=clock)


@pytest.fixture
def nominees(store, ledger, bus, executor, gate, clock):
    gate_ = InactivityClaimGate(store, ledger, executor=executor, gate=gate,
                                default_inactivity_period_seconds=30 * 86400, clock=clock)
    bus.subscribe(gate_.on_activity)
    return gate_
