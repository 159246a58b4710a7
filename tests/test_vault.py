"""Owner vault operations, activity emission and the activity bus itself."""

from decimal import Decimal

import pytest

from chainvault.activity import ActivityBus, ActivityEvent, ActivityKind
from chainvault.errors import InsufficientBalance, LedgerFailure, ValidationError

from tests.fakes import ALICE, BOB, OWNER, run


class TestVaultService:

    def test_deposit_credits_and_emits(self, vault, ledger, events):
        result = run(vault.deposit(OWNER, "2.5"))
        assert ledger.balances[OWNER] == Decimal("102.5")
        assert result["amount"] == "2.5"
        assert [e.kind for e in events] == [ActivityKind.DEPOSIT]
        assert events[0].account == OWNER

    def test_deposit_with_same_client_ref_is_not_repeated(self, vault, ledger):
        async def scenario():
            await vault.deposit(OWNER, "1", ref="client-1")
            await vault.deposit(OWNER, "1", ref="client-1")

        run(scenario())
        assert ledger.balances[OWNER] == Decimal(101)

    def test_withdraw_gated(self, vault, ledger, events):
        with pytest.raises(InsufficientBalance) as exc:
            run(vault.withdraw(ALICE, "6"))
        assert exc.value.shortfall == Decimal(1)
        assert "withdraw" not in ledger.calls
        assert events == []

    def test_withdraw_to_other_address(self, vault, ledger, events):
        result = run(vault.withdraw(OWNER, "10", to=BOB))
        assert result["to"] == BOB
        assert ledger.balances[OWNER] == Decimal(90)
        assert events[-1].kind is ActivityKind.WITHDRAW

    def test_pay_moves_between_vaults(self, vault, ledger, events):
        run(vault.pay(OWNER, BOB, "3", memo="rent"))
        assert ledger.balances[BOB] == Decimal(3)
        assert ledger.paid_to(BOB) == [Decimal(3)]
        assert events[-1].kind is ActivityKind.PAY

    def test_pay_self_rejected(self, vault):
        with pytest.raises(ValidationError):
            run(vault.pay(OWNER, OWNER.upper().replace("0X", "0x"), "1"))

    def test_pay_failure_raises_without_event(self, vault, ledger, events):
        ledger.fail_recipients.add(BOB)
        with pytest.raises(LedgerFailure):
            run(vault.pay(OWNER, BOB, "1"))
        assert events == []

    @pytest.mark.parametrize("amount", ["0", "-1", "abc", "0.0000000000000000001"])
    def test_bad_amounts(self, vault, amount):
        with pytest.raises(ValidationError):
            run(vault.deposit(OWNER, amount))

    def test_bad_address(self, vault):
        with pytest.raises(ValidationError):
            run(vault.balance("not-an-address"))

    def test_history_newest_first(self, vault, clock):
        async def scenario():
            await vault.deposit(OWNER, "1")
            clock.advance(minutes=5)
            await vault.pay(OWNER, BOB, "1")
            return await vault.history(OWNER)

        entries = run(scenario())
        assert entries[0].timestamp > entries[1].timestamp

    def test_ping_emits_without_ledger_call(self, vault, ledger, events):
        run(vault.ping(OWNER))
        assert events[-1].kind is ActivityKind.PING
        assert ledger.calls == []


class TestActivityBus:

    def test_listener_failure_is_contained(self):
        bus = ActivityBus()
        seen = []

        def broken(event):
            raise RuntimeError("listener down")

        async def async_listener(event):
            seen.append(event.kind)

        bus.subscribe(broken)
        bus.subscribe(async_listener)
        run(bus.emit(ActivityEvent(account=OWNER, kind=ActivityKind.PING)))
        assert seen == [ActivityKind.PING]

    def test_unsubscribe(self):
        bus = ActivityBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()
        run(bus.emit(ActivityEvent(account=OWNER, kind=ActivityKind.PING)))
        assert seen == []
