"""
Test suite for the loan state machine

Covers the approval chain, disbursement, repayment to closure, the side
exits (rejection, cancellation, default) and the guarantees around them:
permissions, repeated transitions and the schedule failure path.
"""

import pytest
import threading
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

from loan_ledger.audit import AuditTrail, AuditEventType
from loan_ledger.currency import Money, Currency
from loan_ledger.errors import (
    ConcurrentModification, DuplicateState, Forbidden, InsufficientFunds, InvalidAmount,
    InvalidStateTransition, LoanNotFound, ValidationError
)
from loan_ledger.events import DomainEvent, EventDispatcher
from loan_ledger.invoices import InvoiceManager
from loan_ledger.lifecycle import LoanStateMachine
from loan_ledger.loans import (
    Collateral, CollateralCategory, CollateralStatus, CollateralType, Loan, LoanRepository, LoanStatus
)
from loan_ledger.repayments import InstallmentStatus, RepaymentCoordinator
from loan_ledger.roles import Actor, Role
from loan_ledger.schedule import generate_schedule
from loan_ledger.storage import InMemoryStorage
from loan_ledger.wallets import Correlation, LedgerCategory, WalletLedger


def zar(amount: str) -> Money:
    return Money(Decimal(amount), Currency.ZAR)


ADMIN = Actor.of("admin-1", Role.ADMIN)
BORROWER = Actor.of("borrower-1", Role.MEMBER)
GUARANTOR = Actor.of("guarantor-1", Role.MEMBER)
STRANGER = Actor.of("stranger-1", Role.CLIENT)


def failing_generator(*args):
    raise RuntimeError("calendar service unavailable")


class LifecycleFixture:

    def setup_method(self):
        self.build()

    def build(self, schedule_generator=None):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.dispatcher = EventDispatcher()
        self.loans = LoanRepository(self.storage)
        self.wallets = WalletLedger(self.storage, self.audit_trail, self.dispatcher)
        self.invoices = InvoiceManager(self.storage, self.audit_trail, self.dispatcher)
        kwargs = {"schedule_generator": schedule_generator} if schedule_generator else {}
        self.coordinator = RepaymentCoordinator(
            self.storage, self.audit_trail, self.loans, self.invoices, self.dispatcher, **kwargs
        )
        self.machine = LoanStateMachine(
            self.storage, self.audit_trail, self.loans, self.wallets, self.coordinator, self.dispatcher
        )
        self.wallet = self.wallets.create_wallet("borrower-1")

    def create_loan(self, loan_id: str = "loan-1", **overrides) -> Loan:
        now = datetime.now(timezone.utc)
        fields = dict(
            id=loan_id,
            created_at=now,
            updated_at=now,
            borrower_id="borrower-1",
            guarantor_id="guarantor-1",
            repayment_plan_id="plan-3",
            installment_count=3,
            requested_amount=zar("1200.00"),
            interest_rate=Decimal("10"),
            interest_amount=zar("120.00"),
            penalty_fees=zar("50.00"),
            total_repayable=zar("1370.00"),
            requested_at=now
        )
        fields.update(overrides)
        return self.loans.create(Loan(**fields))

    def approved_loan(self, loan_id: str = "loan-1", **overrides) -> Loan:
        self.create_loan(loan_id, **overrides)
        self.machine.admin_review(loan_id, ADMIN, approve=True)
        self.machine.guarantor_decide(loan_id, GUARANTOR, approve=True)
        return self.machine.borrower_confirm(loan_id, BORROWER, confirm=True)

    def active_loan(self, loan_id: str = "loan-1", **overrides) -> Loan:
        self.approved_loan(loan_id, **overrides)
        return self.machine.disburse(loan_id, ADMIN)


class TestApprovalChain(LifecycleFixture):

    def test_happy_path_to_approval(self):
        self.create_loan()

        loan = self.machine.admin_review("loan-1", ADMIN, approve=True, comment="Good standing")
        assert loan.status == LoanStatus.PENDING_GUARANTOR_APPROVAL
        assert loan.reviewed_at is not None
        assert loan.admin_comment == "Good standing"

        loan = self.machine.guarantor_decide("loan-1", GUARANTOR, approve=True)
        assert loan.status == LoanStatus.PENDING_BORROWER_CONFIRMATION

        loan = self.machine.borrower_confirm("loan-1", BORROWER, confirm=True)
        assert loan.status == LoanStatus.APPROVED_FOR_DISBURSEMENT
        assert loan.approved_at is not None
        assert self.loans.get("loan-1").version == 3

    def test_admin_rejection(self):
        self.create_loan()
        loan = self.machine.admin_review("loan-1", ADMIN, approve=False, comment="Incomplete")
        assert loan.status == LoanStatus.REJECTED
        assert loan.is_terminal

    def test_guarantor_rejection(self):
        self.create_loan()
        self.machine.admin_review("loan-1", ADMIN, approve=True)

        loan = self.machine.guarantor_decide("loan-1", GUARANTOR, approve=False, comment="Cannot cover")

        assert loan.status == LoanStatus.REJECTED
        decisions = self.loans.get_guarantor_decisions("loan-1")
        assert decisions[0].comment == "Cannot cover"
        assert self.wallets.get_entries(self.wallet.id) == []
        with pytest.raises(InvalidStateTransition):
            self.machine.disburse("loan-1", ADMIN)

    def test_borrower_declines(self):
        self.create_loan()
        self.machine.admin_review("loan-1", ADMIN, approve=True)
        self.machine.guarantor_decide("loan-1", GUARANTOR, approve=True)

        loan = self.machine.borrower_confirm("loan-1", BORROWER, confirm=False)

        assert loan.status == LoanStatus.CANCELLED
        assert loan.cancelled_by == "borrower-1"
        assert loan.cancellation_reason == "Declined by borrower"

    def test_only_reviewers_review(self):
        self.create_loan()
        with pytest.raises(Forbidden):
            self.machine.admin_review("loan-1", BORROWER, approve=True)
        assert self.loans.get("loan-1").status == LoanStatus.PENDING_ADMIN_REVIEW

    def test_only_the_named_guarantor_decides(self):
        self.create_loan()
        self.machine.admin_review("loan-1", ADMIN, approve=True)

        with pytest.raises(Forbidden, match="not the guarantor"):
            self.machine.guarantor_decide("loan-1", ADMIN, approve=True)
        with pytest.raises(Forbidden):
            self.machine.guarantor_decide("loan-1", BORROWER, approve=True)

    def test_only_the_borrower_confirms(self):
        self.create_loan()
        self.machine.admin_review("loan-1", ADMIN, approve=True)
        self.machine.guarantor_decide("loan-1", GUARANTOR, approve=True)

        with pytest.raises(Forbidden, match="not the borrower"):
            self.machine.borrower_confirm("loan-1", ADMIN, confirm=True)

    def test_concurrent_reviews_apply_once(self):
        self.create_loan()
        start = threading.Barrier(2)
        results = []
        errors = []

        def review(approve):
            start.wait()
            try:
                results.append(self.machine.admin_review("loan-1", ADMIN, approve=approve))
            except InvalidStateTransition as e:
                errors.append(e)

        threads = [threading.Thread(target=review, args=(approve,)) for approve in (True, False)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 1
        stored = self.loans.get("loan-1")
        assert stored.version == 1
        assert stored.status == results[0].status
        assert len(self.audit_trail.get_events_by_type(AuditEventType.LOAN_ADMIN_REVIEWED)) == 1

    def test_loan_locks_released_after_use(self):
        self.approved_loan()
        self.machine.cancel("loan-1", BORROWER)
        assert len(self.machine._loan_locks) == 0

    def test_repeated_approval_is_duplicate(self):
        self.create_loan()
        self.machine.admin_review("loan-1", ADMIN, approve=True)

        with pytest.raises(DuplicateState):
            self.machine.admin_review("loan-1", ADMIN, approve=True)
        assert self.loans.get("loan-1").version == 1

    def test_status_changes_audited_and_published(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_STATUS_CHANGED, handler)
        self.create_loan()

        self.machine.admin_review("loan-1", ADMIN, approve=True)

        event = handler.call_args[0][0]
        assert event.data == {
            "from_status": "pending_admin_review",
            "to_status": "pending_guarantor_approval",
            "actor_id": "admin-1"
        }
        audit = self.audit_trail.get_events_for_entity("loan", "loan-1")
        assert audit[0].event_type == AuditEventType.LOAN_ADMIN_REVIEWED
        assert audit[0].user_id == "admin-1"

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFound):
            self.machine.admin_review("missing", ADMIN, approve=True)


class TestDisbursement(LifecycleFixture):

    def test_disburse_credits_wallet_and_builds_schedule(self):
        self.approved_loan()

        loan = self.machine.disburse("loan-1", ADMIN)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.disbursed_at is not None
        assert not loan.schedule_pending
        assert self.wallets.get_wallet(self.wallet.id).balance == zar("1200.00")

        entry = self.wallets.get_entry(loan.disbursement_entry_id)
        assert entry.category == LedgerCategory.LOAN_DISBURSEMENT
        assert entry.correlation == Correlation.for_loan("loan-1")
        assert entry.reference == "LOAN-DISB-loan-1"

        schedule = self.coordinator.get_schedule("loan-1")
        assert [i.total_amount for i in schedule] == [zar("440.00")] * 3
        assert schedule[0].due_date == loan.disbursed_at.date()

    def test_second_disbursement_is_duplicate(self):
        self.active_loan()

        with pytest.raises(DuplicateState):
            self.machine.disburse("loan-1", ADMIN)

        assert self.wallets.get_wallet(self.wallet.id).balance == zar("1200.00")
        found = self.wallets.find_entries_by_correlation(
            Correlation.for_loan("loan-1"), LedgerCategory.LOAN_DISBURSEMENT
        )
        assert len(found) == 1

    def test_disburse_requires_permission(self):
        self.approved_loan()
        with pytest.raises(Forbidden):
            self.machine.disburse("loan-1", BORROWER)
        assert self.wallets.get_entries(self.wallet.id) == []

    def test_disburse_publishes(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_DISBURSED, handler)
        self.active_loan()

        data = handler.call_args[0][0].data
        assert data["amount"] == "1200.00"
        assert data["currency"] == "ZAR"
        assert data["schedule_pending"] is False

    def test_failed_disbursement_publishes_nothing(self):
        self.approved_loan()
        recorded = Mock()
        disbursed = Mock()
        self.dispatcher.subscribe(DomainEvent.LEDGER_ENTRY_RECORDED, recorded)
        self.dispatcher.subscribe(DomainEvent.LOAN_DISBURSED, disbursed)
        save = self.loans.save

        def racing_save(loan):
            if loan.status == LoanStatus.ACTIVE:
                raise ConcurrentModification(f"Loan {loan.id} was modified concurrently")
            return save(loan)

        with patch.object(self.loans, "save", side_effect=racing_save):
            with pytest.raises(ConcurrentModification):
                self.machine.disburse("loan-1", ADMIN)

        recorded.assert_not_called()
        disbursed.assert_not_called()
        assert self.wallets.get_entries(self.wallet.id) == []
        assert self.wallets.get_wallet(self.wallet.id).balance == zar("0.00")
        assert self.loans.get("loan-1").status == LoanStatus.APPROVED_FOR_DISBURSEMENT

    def test_disbursement_entry_published_after_commit(self):
        self.approved_loan()
        seen = []

        def on_entry(event):
            seen.append((event.data["category"], self.loans.get("loan-1").status))

        self.dispatcher.subscribe(DomainEvent.LEDGER_ENTRY_RECORDED, on_entry)
        self.machine.disburse("loan-1", ADMIN)

        assert seen == [("loan_disbursement", LoanStatus.ACTIVE)]

    def test_schedule_failure_keeps_disbursement(self):
        self.build(schedule_generator=failing_generator)
        failed = Mock()
        self.dispatcher.subscribe(DomainEvent.SCHEDULE_GENERATION_FAILED, failed)
        self.approved_loan()

        loan = self.machine.disburse("loan-1", ADMIN)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.schedule_pending
        stored = self.loans.get("loan-1")
        assert stored.status == LoanStatus.ACTIVE
        assert stored.schedule_pending
        assert self.wallets.get_wallet(self.wallet.id).balance == zar("1200.00")
        assert self.coordinator.get_schedule("loan-1") == []

        audit = self.audit_trail.get_events_by_type(AuditEventType.SCHEDULE_GENERATION_FAILED)
        assert audit[0].metadata["error_type"] == "RuntimeError"
        assert "calendar service unavailable" in failed.call_args[0][0].data["error"]

    def test_regenerate_after_failure(self):
        self.build(schedule_generator=failing_generator)
        self.approved_loan()
        self.machine.disburse("loan-1", ADMIN)

        self.coordinator.schedule_generator = generate_schedule
        installments = self.machine.regenerate_schedule("loan-1", ADMIN)

        assert len(installments) == 3
        assert not self.loans.get("loan-1").schedule_pending


class TestRepayment(LifecycleFixture):

    def setup_method(self):
        self.build()
        self.active_loan(collateral=[Collateral(
            category=CollateralCategory.PHONE,
            collateral_type=CollateralType.PHONE,
            description="Samsung A15",
            estimated_value=zar("2500.00")
        )])
        self.wallets.deposit(self.wallet.id, zar("120.00"))

    def test_repay_in_full_closes_loan(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_CLOSED, handler)

        outcome = None
        for _ in range(3):
            outcome = self.machine.repay("loan-1", BORROWER, zar("440.00"))

        loan = outcome.loan
        assert loan.status == LoanStatus.CLOSED
        assert loan.closed_at is not None
        assert loan.collateral[0].status == CollateralStatus.RELEASED
        assert self.wallets.get_wallet(self.wallet.id).balance == zar("0.00")
        assert all(i.status == InstallmentStatus.PAID for i in self.coordinator.get_schedule("loan-1"))
        assert self.audit_trail.get_events_by_type(AuditEventType.LOAN_CLOSED)
        handler.assert_called_once()

    def test_partial_repayment_keeps_loan_active(self):
        outcome = self.machine.repay("loan-1", BORROWER, zar("500.00"))

        assert outcome.loan.status == LoanStatus.ACTIVE
        assert [i.installment_number for i in outcome.allocation.settled] == [1]
        assert outcome.ledger_entry.category == LedgerCategory.LOAN_REPAYMENT
        assert self.coordinator.outstanding_balance("loan-1") == zar("820.00")

    def test_only_the_borrower_repays(self):
        with pytest.raises(Forbidden):
            self.machine.repay("loan-1", ADMIN, zar("440.00"))

    def test_invalid_amounts(self):
        with pytest.raises(InvalidAmount):
            self.machine.repay("loan-1", BORROWER, zar("0.00"))
        with pytest.raises(InvalidAmount):
            self.machine.repay("loan-1", BORROWER, Money(Decimal("10"), Currency.USD))

    def test_amount_finer_than_minor_unit_rejected(self):
        with pytest.raises(InvalidAmount, match="minor unit"):
            self.machine.repay("loan-1", BORROWER, Money(Decimal("10.005"), Currency.ZAR))
        assert self.coordinator.outstanding_balance("loan-1") == zar("1320.00")
        assert self.wallets.get_wallet(self.wallet.id).balance == zar("1320.00")

    def test_overpayment_leaves_wallet_untouched(self):
        self.wallets.deposit(self.wallet.id, zar("100.00"))
        with pytest.raises(ValidationError, match="exceeds outstanding"):
            self.machine.repay("loan-1", BORROWER, zar("1320.01"))
        assert self.wallets.get_wallet(self.wallet.id).balance == zar("1420.00")

    def test_wallet_checked_before_outstanding(self):
        with pytest.raises(InsufficientFunds):
            self.machine.repay("loan-1", BORROWER, zar("1320.01"))
        assert self.wallets.get_wallet(self.wallet.id).balance == zar("1320.00")
        assert self.loans.get("loan-1").status == LoanStatus.ACTIVE

    def test_repayment_entry_published(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LEDGER_ENTRY_RECORDED, handler)

        outcome = self.machine.repay("loan-1", BORROWER, zar("440.00"))

        handler.assert_called_once()
        assert handler.call_args[0][0].data["entry_id"] == outcome.ledger_entry.id

    def test_insufficient_funds_changes_nothing(self):
        self.wallets.withdraw(self.wallet.id, zar("1000.00"))
        version = self.loans.get("loan-1").version

        with pytest.raises(InsufficientFunds):
            self.machine.repay("loan-1", BORROWER, zar("440.00"))

        assert self.loans.get("loan-1").version == version
        assert self.coordinator.outstanding_balance("loan-1") == zar("1320.00")
        assert self.wallets.get_wallet(self.wallet.id).balance == zar("320.00")

    def test_repay_closed_loan(self):
        self.machine.repay("loan-1", BORROWER, zar("1320.00"))
        with pytest.raises(InvalidStateTransition):
            self.machine.repay("loan-1", BORROWER, zar("1.00"))

    def test_default(self):
        self.machine.repay("loan-1", BORROWER, zar("440.00"))
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_DEFAULTED, handler)

        loan = self.machine.mark_defaulted("loan-1", ADMIN, reason="No contact for 90 days")

        assert loan.status == LoanStatus.DEFAULTED
        assert loan.collateral[0].status == CollateralStatus.IN_DEFAULT
        statuses = [i.status for i in self.coordinator.get_schedule("loan-1")]
        assert statuses == [InstallmentStatus.PAID, InstallmentStatus.DEFAULTED, InstallmentStatus.DEFAULTED]
        assert handler.call_args[0][0].data["outstanding"] == "880.00"

    def test_default_requires_permission(self):
        with pytest.raises(Forbidden):
            self.machine.mark_defaulted("loan-1", BORROWER)

    def test_regenerate_refused_after_payment(self):
        self.machine.repay("loan-1", BORROWER, zar("10.00"))
        with pytest.raises(DuplicateState):
            self.machine.regenerate_schedule("loan-1", ADMIN)


class TestExits(LifecycleFixture):

    def test_borrower_cancels(self):
        self.create_loan()
        loan = self.machine.cancel("loan-1", BORROWER, reason="No longer needed")

        assert loan.status == LoanStatus.CANCELLED
        assert loan.cancellation_reason == "No longer needed"
        assert loan.cancelled_at is not None

    def test_admin_cancels_approved_loan(self):
        self.approved_loan()
        loan = self.machine.cancel("loan-1", ADMIN)
        assert loan.status == LoanStatus.CANCELLED
        assert loan.cancelled_by == "admin-1"

    def test_stranger_cannot_cancel(self):
        self.create_loan()
        with pytest.raises(Forbidden):
            self.machine.cancel("loan-1", STRANGER)

    def test_cancel_twice_is_duplicate(self):
        self.create_loan()
        self.machine.cancel("loan-1", BORROWER)
        with pytest.raises(DuplicateState):
            self.machine.cancel("loan-1", BORROWER)

    def test_cancel_rejected_loan(self):
        self.create_loan()
        self.machine.admin_review("loan-1", ADMIN, approve=False)

        loan = self.machine.cancel("loan-1", BORROWER, reason="Withdrawn after rejection")

        assert loan.status == LoanStatus.CANCELLED
        assert loan.cancelled_by == "borrower-1"
        audit = self.audit_trail.get_events_by_type(AuditEventType.LOAN_CANCELLED)
        assert audit[0].metadata["previous_status"] == LoanStatus.REJECTED.value

    def test_delete_loan(self):
        self.create_loan()
        self.machine.admin_review("loan-1", ADMIN, approve=True)

        self.machine.delete_loan("loan-1", ADMIN)

        with pytest.raises(LoanNotFound):
            self.loans.get("loan-1")
        assert self.audit_trail.get_events_by_type(AuditEventType.LOAN_DELETED)

    def test_delete_active_loan_refused(self):
        self.active_loan()
        with pytest.raises(InvalidStateTransition):
            self.machine.delete_loan("loan-1", ADMIN)

    def test_delete_requires_permission(self):
        self.create_loan()
        with pytest.raises(Forbidden):
            self.machine.delete_loan("loan-1", BORROWER)


OPERATIONS = {
    "admin_review": ({LoanStatus.PENDING_ADMIN_REVIEW},
                     lambda m: m.admin_review("loan-1", ADMIN, approve=True)),
    "guarantor_decide": ({LoanStatus.PENDING_GUARANTOR_APPROVAL},
                         lambda m: m.guarantor_decide("loan-1", GUARANTOR, approve=True)),
    "borrower_confirm": ({LoanStatus.PENDING_BORROWER_CONFIRMATION},
                         lambda m: m.borrower_confirm("loan-1", BORROWER, confirm=True)),
    "disburse": ({LoanStatus.APPROVED_FOR_DISBURSEMENT},
                 lambda m: m.disburse("loan-1", ADMIN)),
    "repay": ({LoanStatus.ACTIVE},
              lambda m: m.repay("loan-1", BORROWER, zar("100.00"))),
    "cancel": ({LoanStatus.PENDING_ADMIN_REVIEW, LoanStatus.PENDING_GUARANTOR_APPROVAL,
                LoanStatus.PENDING_BORROWER_CONFIRMATION, LoanStatus.APPROVED_FOR_DISBURSEMENT,
                LoanStatus.REJECTED},
               lambda m: m.cancel("loan-1", ADMIN)),
    "mark_defaulted": ({LoanStatus.ACTIVE},
                       lambda m: m.mark_defaulted("loan-1", ADMIN)),
    "regenerate_schedule": ({LoanStatus.ACTIVE},
                            lambda m: m.regenerate_schedule("loan-1", ADMIN)),
}

REFUSED = [
    (name, status)
    for name, (allowed, _) in OPERATIONS.items()
    for status in LoanStatus
    if status not in allowed
]


class TestTransitionMatrix(LifecycleFixture):
    """Every operation outside its source states is refused and changes nothing"""

    @pytest.mark.parametrize("name,status", REFUSED, ids=[f"{n}-{s.value}" for n, s in REFUSED])
    def test_refused_transition(self, name, status):
        self.create_loan(status=status)
        self.wallets.deposit(self.wallet.id, zar("100.00"))
        _, operation = OPERATIONS[name]

        with pytest.raises(InvalidStateTransition):
            operation(self.machine)

        loan = self.loans.get("loan-1")
        assert loan.status == status
        assert loan.version == 0
        assert self.wallets.get_wallet(self.wallet.id).balance == zar("100.00")
