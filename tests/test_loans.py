"""Loan offers, requests, funding, repayment and the lending summary."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from chainvault.activity import ActivityBus, ActivityKind
from chainvault.chain import make_ref
from chainvault.errors import (
    AlreadyRepaid,
    DuplicateActiveLoan,
    InsufficientBalance,
    InvalidTransition,
    LedgerFailure,
    NotFound,
    ValidationError,
)
from chainvault.loans import (
    LoanLifecycle,
    LoanStatus,
    OfferStatus,
    RequestStatus,
    total_repayment,
)
from chainvault.stats import lending_summary
from chainvault.store import DocumentStore

from tests.fakes import ALICE, BORROWER, LENDER, FakeLedger, run


class YieldingLedger(FakeLedger):
    """Hands control back to the loop before each call, like a real RPC round trip."""

    async def balance(self, account):
        await asyncio.sleep(0)
        return await super().balance(account)

    async def transfer(self, source, to, amount, ref):
        await asyncio.sleep(0)
        return await super().transfer(source, to, amount, ref)

    async def find_by_ref(self, account, ref):
        await asyncio.sleep(0)
        return await super().find_by_ref(account, ref)


async def _funded(loans, amount="2", rate="10", days=30):
    offer = await loans.create_offer(LENDER, amount, rate, days, description="starter")
    req = await loans.request(BORROWER, offer_id=offer.id, reason="rent")
    await loans.accept(LENDER, req.id)
    loan = await loans.fund(LENDER, req.id)
    return offer, req, loan


class TestOffers:

    def test_create_and_list_newest_first(self, loans, clock):
        async def scenario():
            first = await loans.create_offer(LENDER, "1", "5", 10)
            clock.advance(minutes=1)
            second = await loans.create_offer(LENDER, "3", "0", 60)
            return first, second, await loans.list_offers()

        first, second, listed = run(scenario())
        assert [o.id for o in listed] == [second.id, first.id]

    @pytest.mark.parametrize("amount,rate,days", [
        ("0", "5", 10),
        ("1", "-1", 10),
        ("1", "5", 0),
        ("1", "5", 1.5),
    ])
    def test_invalid_terms(self, loans, amount, rate, days):
        with pytest.raises(ValidationError):
            run(loans.create_offer(LENDER, amount, rate, days))

    def test_update_and_delete_only_by_owner(self, loans):
        async def scenario():
            offer = await loans.create_offer(LENDER, "1", "5", 10)
            updated = await loans.update_offer(offer.id, LENDER, amount="4")
            with pytest.raises(NotFound):
                await loans.update_offer(offer.id, ALICE, amount="9")
            await loans.delete_offer(offer.id, LENDER)
            with pytest.raises(NotFound):
                await loans.get_offer(offer.id)
            return updated

        updated = run(scenario())
        assert updated.amount == Decimal(4)
        assert updated.interest_rate_pct == Decimal(5)

    def test_borrowed_offer_is_frozen(self, loans):
        async def scenario():
            offer, _, _ = await _funded(loans)
            with pytest.raises(InvalidTransition):
                await loans.delete_offer(offer.id, LENDER)
            with pytest.raises(InvalidTransition):
                await loans.request(ALICE, offer_id=offer.id)

        run(scenario())


class TestRequests:

    def test_request_inherits_offer_terms(self, loans):
        async def scenario():
            offer = await loans.create_offer(LENDER, "2", "10", 30)
            return await loans.request(BORROWER, offer_id=offer.id)

        req = run(scenario())
        assert req.lender == LENDER
        assert req.amount == Decimal(2)
        assert req.duration_days == 30
        assert req.status is RequestStatus.PENDING

    def test_direct_request_needs_lender(self, loans):
        with pytest.raises(ValidationError):
            run(loans.request(BORROWER, amount="1", interest_rate_pct="1", duration_days=5))

    def test_cannot_borrow_from_yourself(self, loans):
        with pytest.raises(ValidationError):
            run(loans.request(LENDER, lender=LENDER, amount="1", interest_rate_pct="1", duration_days=5))

    def test_reject_then_accept_fails(self, loans):
        async def scenario():
            req = await loans.request(BORROWER, lender=LENDER, amount="1", interest_rate_pct="1", duration_days=5)
            await loans.reject(LENDER, req.id)
            again = await loans.reject(LENDER, req.id)
            with pytest.raises(InvalidTransition):
                await loans.accept(LENDER, req.id)
            return again

        assert run(scenario()).status is RequestStatus.REJECTED

    def test_accept_twice_is_noop(self, loans):
        async def scenario():
            req = await loans.request(BORROWER, lender=LENDER, amount="1", interest_rate_pct="1", duration_days=5)
            first = await loans.accept(LENDER, req.id)
            second = await loans.accept(LENDER, req.id)
            return first, second

        first, second = run(scenario())
        assert first.decided_at == second.decided_at

    def test_fund_requires_acceptance(self, loans, ledger):
        async def scenario():
            req = await loans.request(BORROWER, lender=LENDER, amount="1", interest_rate_pct="1", duration_days=5)
            with pytest.raises(InvalidTransition):
                await loans.fund(LENDER, req.id)

        run(scenario())
        assert ledger.transfers == []

    def test_list_requests_by_status(self, loans):
        async def scenario():
            a = await loans.request(BORROWER, lender=LENDER, amount="1", interest_rate_pct="1", duration_days=5)
            await loans.request(ALICE, lender=LENDER, amount="1", interest_rate_pct="1", duration_days=5)
            await loans.reject(LENDER, a.id)
            return await loans.list_requests(LENDER, RequestStatus.PENDING)

        pending = run(scenario())
        assert [r.borrower for r in pending] == [ALICE]


class TestFundAndRepay:

    def test_end_to_end(self, loans, ledger, clock, store, events):
        async def scenario():
            offer, req, loan = await _funded(loans)
            assert loan.total_repayment == Decimal("2.2")
            assert loan.remaining_amount == Decimal("2.2")
            assert loan.due_date == clock() + timedelta(days=30)
            assert ledger.balances[BORROWER] == Decimal(12)
            assert (await loans.get_request(LENDER, req.id)).loan_id == loan.id
            assert (await loans.get_offer(offer.id)).status is OfferStatus.BORROWED

            clock.advance(days=3)
            loan = await loans.repay(BORROWER, loan.id, "1.2")
            assert loan.remaining_amount == Decimal("1.0")
            assert loan.status is LoanStatus.ACTIVE

            loan = await loans.repay(BORROWER, loan.id, "1.0")
            assert loan.status is LoanStatus.REPAID
            assert loan.remaining_amount == 0
            assert len(loan.paid_installments) == 2

            with pytest.raises(AlreadyRepaid):
                await loans.repay(BORROWER, loan.id, "0.1")
            return offer

        offer = run(scenario())
        assert ledger.balances[LENDER] == Decimal("50.2")
        assert run(loans.get_offer(offer.id)).status is OfferStatus.REPAID
        assert [e.kind for e in events] == [ActivityKind.LOAN_FUNDED, ActivityKind.REPAY, ActivityKind.REPAY]
        mirror = run(store.get(f"lenderLoans/{LENDER}"))
        assert list(mirror.values())[0]["status"] == "repaid"

    def test_fund_is_idempotent(self, loans, ledger):
        async def scenario():
            _, req, loan = await _funded(loans)
            again = await loans.fund(LENDER, req.id)
            return loan, again

        loan, again = run(scenario())
        assert again.id == loan.id
        assert len(ledger.paid_to(BORROWER)) == 1

    def test_fund_gated_on_lender_balance(self, loans, ledger):
        async def scenario():
            req = await loans.request(BORROWER, lender=LENDER, amount="60", interest_rate_pct="1", duration_days=5)
            await loans.accept(LENDER, req.id)
            with pytest.raises(InsufficientBalance):
                await loans.fund(LENDER, req.id)
            return await loans.get_request(LENDER, req.id)

        req = run(scenario())
        assert req.status is RequestStatus.ACCEPTED
        assert not req.consumed
        assert ledger.transfers == []

    def test_fund_retry_after_timeout_reconciles(self, loans, ledger):
        async def scenario():
            req = await loans.request(BORROWER, lender=LENDER, amount="2", interest_rate_pct="0", duration_days=5)
            await loans.accept(LENDER, req.id)
            ledger.land_but_timeout.add(make_ref("loan-fund", req.id))
            with pytest.raises(LedgerFailure) as exc:
                await loans.fund(LENDER, req.id)
            assert exc.value.ambiguous
            return await loans.fund(LENDER, req.id)

        loan = run(scenario())
        assert loan.status is LoanStatus.ACTIVE
        assert ledger.paid_to(BORROWER) == [Decimal(2)]

    def test_single_active_loan_per_pair(self, loans):
        async def scenario():
            await _funded(loans)
            with pytest.raises(DuplicateActiveLoan):
                await loans.request(BORROWER, lender=LENDER, amount="1", interest_rate_pct="1", duration_days=5)

        run(scenario())

    def test_concurrent_funding_for_same_pair_makes_one_loan(self, store, bus, clock):
        ledger = YieldingLedger({LENDER: "50", BORROWER: "10"}, clock=clock)
        loans = LoanLifecycle(store, ledger, bus, clock=clock)

        async def scenario():
            first = await loans.request(BORROWER, lender=LENDER, amount="1", interest_rate_pct="5", duration_days=10)
            second = await loans.request(BORROWER, lender=LENDER, amount="2", interest_rate_pct="5", duration_days=10)
            await loans.accept(LENDER, first.id)
            await loans.accept(LENDER, second.id)
            results = await asyncio.gather(
                loans.fund(LENDER, first.id),
                loans.fund(LENDER, second.id),
                return_exceptions=True,
            )
            return results, await loans.list_borrows(BORROWER, LoanStatus.ACTIVE)

        results, active = run(scenario())
        assert len(active) == 1
        assert sum(isinstance(r, DuplicateActiveLoan) for r in results) == 1
        assert len(ledger.transfers) == 1

    def test_multiple_loans_allowed_when_not_enforced(self, store, ledger, bus, clock):
        loans = LoanLifecycle(store, ledger, bus, enforce_single_active_loan=False, clock=clock)

        async def scenario():
            await _funded(loans, amount="1")
            await _funded(loans, amount="1")
            return await loans.list_borrows(BORROWER, LoanStatus.ACTIVE)

        assert len(run(scenario())) == 2

    def test_repay_gated_on_borrower_balance(self, loans, ledger):
        async def scenario():
            _, _, loan = await _funded(loans)
            with pytest.raises(InsufficientBalance):
                await loans.repay(BORROWER, loan.id, "13")
            return await loans.get_loan(BORROWER, loan.id)

        loan = run(scenario())
        assert loan.paid_installments == []

    def test_final_installment_closes_loan_early(self, loans):
        async def scenario():
            _, _, loan = await _funded(loans)
            return await loans.repay(BORROWER, loan.id, "1", is_final=True)

        loan = run(scenario())
        assert loan.status is LoanStatus.REPAID
        assert loan.remaining_amount == Decimal("1.2")

    def test_overpayment_clamps_remaining_to_zero(self, loans):
        async def scenario():
            _, _, loan = await _funded(loans)
            return await loans.repay(BORROWER, loan.id, "3")

        loan = run(scenario())
        assert loan.remaining_amount == 0
        assert loan.status is LoanStatus.REPAID

    def test_overdue_does_not_block_repayment(self, loans, clock):
        async def scenario():
            _, _, loan = await _funded(loans, days=1)
            clock.advance(days=2)
            assert loans.is_overdue(loan)
            assert loans.days_remaining(loan) == -1
            return await loans.repay(BORROWER, loan.id, "2.2")

        assert run(scenario()).status is LoanStatus.REPAID


class TestRepaymentProperties:

    @given(payments=st.lists(
        st.decimals(min_value=Decimal("0.01"), max_value=Decimal("1"), places=2),
        min_size=1, max_size=8,
    ))
    @settings(max_examples=50, deadline=None)
    def test_remaining_never_increases_and_status_follows(self, payments):
        """
        PROPERTY: remaining = max(0, total - sum(paid)) after every installment,
        and the loan is repaid exactly when remaining reaches zero.
        """
        ledger = FakeLedger({LENDER: "50", BORROWER: "100"})
        loans = LoanLifecycle(DocumentStore(), ledger, ActivityBus())

        async def scenario():
            _, _, loan = await _funded(loans)
            paid = Decimal(0)
            previous = loan.remaining_amount
            for amount in payments:
                if loan.status is LoanStatus.REPAID:
                    break
                loan = await loans.repay(BORROWER, loan.id, amount)
                paid += amount
                assert loan.remaining_amount <= previous
                assert loan.remaining_amount == max(Decimal(0), loan.total_repayment - paid)
                assert (loan.status is LoanStatus.REPAID) == (loan.remaining_amount == 0)
                previous = loan.remaining_amount

        run(scenario())

    @given(
        principal=st.decimals(min_value=Decimal("0.000001"), max_value=Decimal("1000"), places=6),
        rate=st.decimals(min_value=Decimal(0), max_value=Decimal(100), places=2),
    )
    def test_total_repayment_covers_principal(self, principal, rate):
        total = total_repayment(principal, rate)
        assert total >= principal
        assert total.as_tuple().exponent >= -18


class TestLendingSummary:

    def test_summary_for_both_sides(self, loans, clock):
        async def scenario():
            _, _, loan = await _funded(loans)
            await loans.repay(BORROWER, loan.id, "1.2")
            return (
                await lending_summary(loans, BORROWER, now=clock()),
                await lending_summary(loans, LENDER, now=clock() + timedelta(days=31)),
            )

        borrower_view, lender_view = run(scenario())
        assert borrower_view["totalBorrowed"] == "2"
        assert Decimal(borrower_view["totalOwed"]) == Decimal(1)
        assert borrower_view["activeBorrows"] == 1
        assert borrower_view["overdueBorrows"] == 0
        assert lender_view["totalLent"] == "2"
        assert Decimal(lender_view["expectedReturn"]) == Decimal(1)
        assert lender_view["overdueLoans"] == 1
        assert lender_view["totalInterestEarned"] == "0"
