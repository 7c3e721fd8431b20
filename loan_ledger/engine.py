"""
Loan Engine

Facade wiring storage, audit trail, events, wallets, plans, loans,
installments and invoices into the operations callers use. Identity and
roles are resolved by the caller into an ``Actor`` before any call.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple
import uuid

from .audit import AuditTrail, AuditEventType
from .config import LoanLedgerConfig, get_config
from .currency import Currency, Money
from .errors import InvalidAmount, ValidationError
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .invoices import InvoiceManager
from .lifecycle import LoanStateMachine, RepaymentOutcome
from .loans import Collateral, Loan, LoanReference, LoanRepository, LoanStatus, serialize_collateral
from .logging_config import get_logger, log_action, setup_logging
from .plans import RepaymentPlanCatalogue
from .repayments import Installment, RepaymentCoordinator
from .roles import Actor, Permission, Role
from .storage import StorageInterface, create_storage
from .wallets import Correlation, LedgerEntry, Wallet, WalletLedger


class LoanEngine(EventPublisherMixin):
    """Loan lifecycle and ledger engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        settings: Optional[LoanLedgerConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.settings = settings or get_config()
        self.storage = storage or create_storage(self.settings.database_url)
        self.currency = Currency[self.settings.default_currency.upper()]
        self.logger = get_logger("loan_ledger.engine")

        if event_dispatcher is None and self.settings.enable_events:
            event_dispatcher = EventDispatcher()
        self.event_dispatcher = event_dispatcher

        self.audit_trail = AuditTrail(self.storage)
        self.wallets = WalletLedger(self.storage, self.audit_trail, self.event_dispatcher, self.currency)
        self.plans = RepaymentPlanCatalogue(self.storage)
        self.loans = LoanRepository(self.storage)
        self.invoices = InvoiceManager(self.storage, self.audit_trail, self.event_dispatcher)
        self.coordinator = RepaymentCoordinator(
            self.storage, self.audit_trail, self.loans, self.invoices, self.event_dispatcher
        )
        self.state_machine = LoanStateMachine(
            self.storage, self.audit_trail, self.loans, self.wallets,
            self.coordinator, self.event_dispatcher
        )

        self.plans.seed_defaults()

    @classmethod
    def from_config(cls, settings: Optional[LoanLedgerConfig] = None) -> 'LoanEngine':
        """Build an engine from configuration, including log setup"""
        settings = settings or get_config()
        setup_logging(
            level=settings.log_level,
            log_format=settings.log_format,
            log_file=settings.log_file
        )
        return cls(settings=settings)

    def close(self) -> None:
        self.storage.close()

    # Loan origination

    def resolve_interest_rate(self, borrower: Actor) -> Decimal:
        """
        Interest rate (percent) for a borrower

        Members borrow at the member rate; clients and everyone else at the
        client rate. An actor holding both roles is ambiguous and refused.
        """
        is_member = borrower.has_role(Role.MEMBER)
        is_client = borrower.has_role(Role.CLIENT)
        if is_member and is_client:
            raise ValidationError(f"User {borrower.user_id} cannot be both MEMBER and CLIENT")
        if is_member:
            return self.settings.member_interest_rate
        return self.settings.client_interest_rate

    def request_loan(
        self,
        borrower: Actor,
        guarantor_id: str,
        principal: Money,
        plan_id: str,
        purpose: Optional[str] = None,
        collateral: Iterable[Collateral] = (),
        references: Iterable[LoanReference] = ()
    ) -> Loan:
        """
        Create a loan in PENDING_ADMIN_REVIEW

        Interest is ``principal * rate / 100`` with the rate taken from the
        borrower's roles; the configured penalty fee is added to the total.

        Raises:
            Forbidden: borrower may not request loans
            InvalidAmount: principal not positive or not in the engine currency
            ValidationError: principal above the maximum, inactive plan,
                borrower guaranteeing themselves
            PlanNotFound: unknown plan
        """
        borrower.require(Permission.REQUEST_LOAN)

        if not isinstance(principal, Money) or not principal.is_positive():
            raise InvalidAmount("Requested amount must be a positive Money value")
        if not principal.exact:
            raise InvalidAmount(f"Requested amount is finer than the {principal.currency.code} minor unit")
        if principal.currency != self.currency:
            raise InvalidAmount(f"Loans are issued in {self.currency.code}")
        if principal.amount > self.settings.max_loan_amount:
            raise ValidationError(
                f"Requested amount {principal.to_string()} exceeds the maximum of "
                f"{Money(self.settings.max_loan_amount, self.currency).to_string()}"
            )
        if not guarantor_id:
            raise ValidationError("A guarantor is required")
        if guarantor_id == borrower.user_id:
            raise ValidationError("Borrower cannot guarantee their own loan")

        plan = self.plans.get_plan(plan_id)
        if not plan.is_active:
            raise ValidationError(f"Repayment plan {plan.code.value} is not active")

        rate = self.resolve_interest_rate(borrower)
        interest = Money(principal.amount * rate / Decimal('100'), self.currency)
        penalty = Money(self.settings.default_penalty_fee, self.currency)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=borrower.user_id,
            guarantor_id=guarantor_id,
            repayment_plan_id=plan.id,
            installment_count=plan.number_of_months,
            requested_amount=principal,
            interest_rate=rate,
            interest_amount=interest,
            penalty_fees=penalty,
            total_repayable=principal + interest + penalty,
            requested_at=now,
            purpose=purpose,
            collateral=list(collateral),
            references=list(references)
        )

        with self.storage.atomic():
            self.loans.create(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REQUESTED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "guarantor_id": guarantor_id,
                    "plan": plan.code.value,
                    "requested_amount": principal.to_string(),
                    "interest_rate": str(rate),
                    "total_repayable": loan.total_repayable.to_string(),
                    "collateral": serialize_collateral(loan.collateral)
                },
                user_id=borrower.user_id
            )

        log_action(
            self.logger, "info", "Loan requested",
            user_id=borrower.user_id, action="request_loan", resource=f"loan:{loan.id}",
            extra={
                "amount": principal.to_string(),
                "plan": plan.code.value,
                "installments": plan.number_of_months
            }
        )
        self.publish_event(DomainEvent.LOAN_REQUESTED, "loan", loan.id, {
            "borrower_id": loan.borrower_id,
            "guarantor_id": loan.guarantor_id,
            "requested_amount": str(principal.amount),
            "currency": self.currency.code,
            "total_repayable": str(loan.total_repayable.amount)
        })
        return loan

    # Lifecycle

    def admin_review(self, loan_id: str, actor: Actor, approve: bool,
                     comment: Optional[str] = None) -> Loan:
        return self.state_machine.admin_review(loan_id, actor, approve, comment)

    def guarantor_decide(self, loan_id: str, actor: Actor, approve: bool,
                         comment: Optional[str] = None) -> Loan:
        return self.state_machine.guarantor_decide(loan_id, actor, approve, comment)

    def borrower_confirm(self, loan_id: str, actor: Actor, confirm: bool) -> Loan:
        return self.state_machine.borrower_confirm(loan_id, actor, confirm)

    def disburse(self, loan_id: str, actor: Actor) -> Loan:
        return self.state_machine.disburse(loan_id, actor)

    def repay(self, loan_id: str, actor: Actor, amount: Money) -> RepaymentOutcome:
        return self.state_machine.repay(loan_id, actor, amount)

    def cancel(self, loan_id: str, actor: Actor, reason: Optional[str] = None) -> Loan:
        return self.state_machine.cancel(loan_id, actor, reason)

    def mark_defaulted(self, loan_id: str, actor: Actor, reason: Optional[str] = None) -> Loan:
        return self.state_machine.mark_defaulted(loan_id, actor, reason)

    def regenerate_schedule(self, loan_id: str, actor: Actor) -> List[Installment]:
        return self.state_machine.regenerate_schedule(loan_id, actor)

    def delete_loan(self, loan_id: str, actor: Actor) -> None:
        self.state_machine.delete_loan(loan_id, actor)

    # Installments

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """Installments of a loan; raises LoanNotFound for unknown loans"""
        self.loans.get(loan_id)
        return self.coordinator.get_schedule(loan_id)

    def mark_installment_late(self, installment_id: str, late_fee_amount: Money,
                              actor: Actor) -> Installment:
        """Add a late fee to an installment and issue a new repayment demand"""
        actor.require(Permission.MANAGE_SCHEDULE)
        installment = self.coordinator.get_installment(installment_id)
        with self.state_machine.loan_lock(installment.loan_id):
            return self.coordinator.mark_late(installment_id, late_fee_amount, marked_by=actor.user_id)

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.get(loan_id)

    def list_loans(
        self,
        borrower_id: Optional[str] = None,
        guarantor_id: Optional[str] = None,
        status: Optional[LoanStatus] = None
    ) -> List[Loan]:
        return self.loans.find(borrower_id=borrower_id, guarantor_id=guarantor_id, status=status)

    # Wallets

    def open_wallet(self, owner_id: str, actor: Optional[Actor] = None) -> Wallet:
        return self.wallets.create_wallet(owner_id, self.currency,
                                          created_by=actor.user_id if actor else None)

    def deposit(self, wallet_id: str, amount: Money, actor: Optional[Actor] = None,
                reference: Optional[str] = None) -> LedgerEntry:
        return self.wallets.deposit(wallet_id, amount, reference=reference,
                                    created_by=actor.user_id if actor else None)

    def transfer(self, from_wallet_id: str, to_wallet_id: str, amount: Money,
                 actor: Actor, reference: Optional[str] = None) -> Tuple[LedgerEntry, LedgerEntry]:
        """Wallet-to-wallet transfer; the actor must own the source wallet or manage wallets"""
        source = self.wallets.get_wallet(from_wallet_id)
        if source.owner_id != actor.user_id:
            actor.require(Permission.MANAGE_WALLETS)
        return self.wallets.transfer_movement(
            from_wallet_id, to_wallet_id, amount,
            correlation=Correlation(kind="transfer", reference_id=str(uuid.uuid4())),
            created_by=actor.user_id,
            reference=reference
        )
