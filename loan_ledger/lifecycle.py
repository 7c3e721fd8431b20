"""
Loan Lifecycle Module

The loan state machine. Every operation re-reads the loan under a per-loan
lock, checks the caller and the source state, then writes the new state
(plus any ledger movement) as one unit of work.

    PENDING_ADMIN_REVIEW -> PENDING_GUARANTOR_APPROVAL
        -> PENDING_BORROWER_CONFIRMATION -> APPROVED_FOR_DISBURSEMENT
        -> ACTIVE -> CLOSED | DEFAULTED

REJECTED and CANCELLED are side exits before ACTIVE. Lock order is always
loan lock, then wallet lock(s), then the storage unit of work.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AbstractSet, Any, Dict, Iterator, List, Optional

from .audit import AuditTrail, AuditEventType
from .currency import Money, sum_money
from .errors import (
    DuplicateState, Forbidden, InsufficientFunds, InvalidAmount, InvalidStateTransition, ValidationError
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .loans import (
    CollateralStatus, GuarantorVerdict, Loan, LoanRepository, LoanStatus, PRE_ACTIVE_STATUSES
)
from .logging_config import get_logger, log_action
from .repayments import Installment, InstallmentStatus, PaymentAllocation, RepaymentCoordinator
from .roles import Actor, Permission
from .storage import StorageInterface
from .wallets import Correlation, Direction, KeyedLocks, LedgerCategory, LedgerEntry, WalletLedger


# Approval chain in order; an approval that finds the loan at or past its
# outcome on this chain is a repeat
APPROVAL_CHAIN = (
    LoanStatus.PENDING_ADMIN_REVIEW,
    LoanStatus.PENDING_GUARANTOR_APPROVAL,
    LoanStatus.PENDING_BORROWER_CONFIRMATION,
    LoanStatus.APPROVED_FOR_DISBURSEMENT,
    LoanStatus.ACTIVE,
    LoanStatus.CLOSED,
)

CANCELLABLE_STATUSES = PRE_ACTIVE_STATUSES | {LoanStatus.REJECTED}

DELETABLE_STATUSES = CANCELLABLE_STATUSES | {LoanStatus.CANCELLED}


@dataclass
class RepaymentOutcome:
    """Result of a repayment"""
    loan: Loan
    ledger_entry: LedgerEntry
    allocation: PaymentAllocation


class LoanStateMachine(EventPublisherMixin):
    """
    Applies lifecycle transitions to loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        loan_repository: LoanRepository,
        wallet_ledger: WalletLedger,
        coordinator: RepaymentCoordinator,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.loans = loan_repository
        self.wallet_ledger = wallet_ledger
        self.coordinator = coordinator
        self.event_dispatcher = event_dispatcher
        self.logger = get_logger("loan_ledger.lifecycle")

        self._loan_locks = KeyedLocks()

    @contextmanager
    def loan_lock(self, loan_id: str) -> Iterator[None]:
        with self._loan_locks.hold(loan_id):
            yield

    # Approval chain

    def admin_review(self, loan_id: str, actor: Actor, approve: bool,
                     comment: Optional[str] = None) -> Loan:
        """PENDING_ADMIN_REVIEW -> PENDING_GUARANTOR_APPROVAL | REJECTED"""
        actor.require(Permission.REVIEW_LOAN)
        outcome = LoanStatus.PENDING_GUARANTOR_APPROVAL if approve else LoanStatus.REJECTED

        with self.loan_lock(loan_id):
            loan = self.loans.get(loan_id)
            self._check_source(loan, {LoanStatus.PENDING_ADMIN_REVIEW}, outcome, "admin review")

            previous = loan.status
            with self.storage.atomic():
                loan.status = outcome
                loan.reviewed_at = datetime.now(timezone.utc)
                if comment is not None:
                    loan.admin_comment = comment
                self._save_and_audit(loan, actor, AuditEventType.LOAN_ADMIN_REVIEWED, {
                    "approved": approve,
                    "comment": comment
                })

        self._announce(loan, previous, actor, "admin_review")
        return loan

    def guarantor_decide(self, loan_id: str, actor: Actor, approve: bool,
                         comment: Optional[str] = None) -> Loan:
        """PENDING_GUARANTOR_APPROVAL -> PENDING_BORROWER_CONFIRMATION | REJECTED"""
        outcome = LoanStatus.PENDING_BORROWER_CONFIRMATION if approve else LoanStatus.REJECTED

        with self.loan_lock(loan_id):
            loan = self.loans.get(loan_id)
            if actor.user_id != loan.guarantor_id:
                raise Forbidden(f"User {actor.user_id} is not the guarantor of loan {loan_id}")
            self._check_source(loan, {LoanStatus.PENDING_GUARANTOR_APPROVAL}, outcome, "guarantor decision")

            previous = loan.status
            verdict = GuarantorVerdict.APPROVE if approve else GuarantorVerdict.REJECT
            with self.storage.atomic():
                self.loans.add_guarantor_decision(loan.id, actor.user_id, verdict, comment)
                loan.status = outcome
                self._save_and_audit(loan, actor, AuditEventType.LOAN_GUARANTOR_DECIDED, {
                    "decision": verdict.value,
                    "comment": comment
                })

        self._announce(loan, previous, actor, "guarantor_decide")
        return loan

    def borrower_confirm(self, loan_id: str, actor: Actor, confirm: bool) -> Loan:
        """PENDING_BORROWER_CONFIRMATION -> APPROVED_FOR_DISBURSEMENT | CANCELLED"""
        outcome = LoanStatus.APPROVED_FOR_DISBURSEMENT if confirm else LoanStatus.CANCELLED

        with self.loan_lock(loan_id):
            loan = self.loans.get(loan_id)
            self._require_borrower(loan, actor)
            self._check_source(loan, {LoanStatus.PENDING_BORROWER_CONFIRMATION}, outcome, "borrower confirmation")

            previous = loan.status
            now = datetime.now(timezone.utc)
            with self.storage.atomic():
                loan.status = outcome
                if confirm:
                    loan.approved_at = now
                else:
                    loan.cancelled_at = now
                    loan.cancelled_by = actor.user_id
                    loan.cancellation_reason = "Declined by borrower"
                self._save_and_audit(loan, actor, AuditEventType.LOAN_BORROWER_CONFIRMED, {
                    "confirmed": confirm
                })

        self._announce(loan, previous, actor, "borrower_confirm")
        return loan

    # Money

    def disburse(self, loan_id: str, actor: Actor) -> Loan:
        """
        APPROVED_FOR_DISBURSEMENT -> ACTIVE

        Credits the borrower's wallet with the principal, flips the loan to
        ACTIVE and then generates the repayment schedule. A schedule failure
        does not undo the disbursement: the loan is flagged
        ``schedule_pending`` for manual regeneration.
        """
        actor.require(Permission.DISBURSE_LOAN)

        with self.loan_lock(loan_id):
            loan = self.loans.get(loan_id)
            self._check_source(loan, {LoanStatus.APPROVED_FOR_DISBURSEMENT}, LoanStatus.ACTIVE, "disbursement")
            if loan.disbursement_entry_id:
                raise DuplicateState(f"Loan {loan_id} has already been disbursed")

            correlation = Correlation.for_loan(loan.id)
            wallet = self.wallet_ledger.get_wallet_by_owner(loan.borrower_id)
            previous = loan.status

            with self.wallet_ledger.locked(wallet.id), self.storage.atomic():
                if self.wallet_ledger.find_entries_by_correlation(correlation, LedgerCategory.LOAN_DISBURSEMENT):
                    raise DuplicateState(f"Loan {loan_id} already has a disbursement entry")

                entry = self.wallet_ledger.apply_movement(
                    wallet.id,
                    loan.requested_amount,
                    Direction.CREDIT,
                    LedgerCategory.LOAN_DISBURSEMENT,
                    correlation=correlation,
                    created_by=actor.user_id,
                    reference=f"LOAN-DISB-{loan.id[:8]}"
                )
                loan.disbursed_at = datetime.now(timezone.utc)
                loan.disbursement_entry_id = entry.id
                loan.status = LoanStatus.ACTIVE
                self._save_and_audit(loan, actor, AuditEventType.LOAN_DISBURSED, {
                    "wallet_id": wallet.id,
                    "ledger_entry_id": entry.id,
                    "amount": loan.requested_amount.to_string()
                })

            self.wallet_ledger.publish_entry(entry)
            self._generate_schedule_after_disbursement(loan, actor)

        self._announce(loan, previous, actor, "disburse")
        self.publish_event(DomainEvent.LOAN_DISBURSED, "loan", loan.id, {
            "borrower_id": loan.borrower_id,
            "amount": str(loan.requested_amount.amount),
            "currency": loan.currency.code,
            "ledger_entry_id": loan.disbursement_entry_id,
            "schedule_pending": loan.schedule_pending
        })
        return loan

    def _generate_schedule_after_disbursement(self, loan: Loan, actor: Actor) -> None:
        try:
            self.coordinator.replace_schedule(loan, loan.disbursed_at.date())
        except Exception as e:
            # The disbursement has committed; flag the loan instead of reversing it
            with self.storage.atomic():
                loan.schedule_pending = True
                self.loans.save(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.SCHEDULE_GENERATION_FAILED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"error": str(e), "error_type": type(e).__name__},
                    user_id=actor.user_id
                )
            log_action(
                self.logger, "error", f"Schedule generation failed after disbursement: {e}",
                user_id=actor.user_id, action="generate_schedule", resource=f"loan:{loan.id}",
                extra={"error_type": type(e).__name__, "schedule_pending": True},
                exc_info=True
            )
            self.publish_event(DomainEvent.SCHEDULE_GENERATION_FAILED, "loan", loan.id, {
                "error": str(e)
            })

    def repay(self, loan_id: str, actor: Actor, amount: Money) -> RepaymentOutcome:
        """
        Debit the borrower's wallet and allocate the payment to installments

        The loan closes when every installment is paid.

        Raises:
            InvalidAmount: amount not positive or in another currency
            Forbidden: caller is not the borrower
            InvalidStateTransition: loan is not ACTIVE or has nothing outstanding
            InsufficientFunds: wallet balance below the amount
            ValidationError: amount exceeds the outstanding balance

        The wallet balance is checked before the outstanding balance, so a
        payment that is both unaffordable and too large is InsufficientFunds.
        """
        if not isinstance(amount, Money) or not amount.is_positive():
            raise InvalidAmount("Repayment amount must be a positive Money value")
        if not amount.exact:
            raise InvalidAmount(f"Repayment amount is finer than the {amount.currency.code} minor unit")

        with self.loan_lock(loan_id):
            loan = self.loans.get(loan_id)
            self._require_borrower(loan, actor)
            self._check_source(loan, {LoanStatus.ACTIVE}, None, "repayment")
            if amount.currency != loan.currency:
                raise InvalidAmount(f"Repayment must be in {loan.currency.code}")

            wallet = self.wallet_ledger.get_wallet_by_owner(loan.borrower_id)
            previous = loan.status

            with self.wallet_ledger.locked(wallet.id), self.storage.atomic():
                # checked before the debit so a refused payment never touches the wallet
                outstanding = self.coordinator.outstanding_balance(loan.id, loan.currency)
                if outstanding.is_zero():
                    raise InvalidStateTransition(f"Loan {loan_id} has no outstanding installments")
                balance = self.wallet_ledger.get_wallet(wallet.id).balance
                if balance < amount:
                    raise InsufficientFunds(
                        f"Insufficient funds in wallet {wallet.id}: balance {balance.to_string()}, "
                        f"requested {amount.to_string()}"
                    )
                if amount > outstanding:
                    raise ValidationError(
                        f"Repayment {amount.to_string()} exceeds outstanding balance {outstanding.to_string()}"
                    )

                entry = self.wallet_ledger.apply_movement(
                    wallet.id,
                    amount,
                    Direction.DEBIT,
                    LedgerCategory.LOAN_REPAYMENT,
                    correlation=Correlation.for_loan(loan.id),
                    created_by=actor.user_id,
                    reference=f"LOAN-REPAY-{loan.id[:8]}"
                )
                allocation = self.coordinator.apply_payment(loan.id, amount, entry)

                remaining = self.coordinator.outstanding_balance(loan.id, loan.currency)
                metadata: Dict[str, Any] = {
                    "amount": amount.to_string(),
                    "ledger_entry_id": entry.id,
                    "settled_installments": [i.installment_number for i in allocation.settled],
                    "partially_paid_installment": (
                        allocation.partially_paid.installment_number if allocation.partially_paid else None
                    ),
                    "outstanding_after": remaining.to_string()
                }
                if remaining.is_zero():
                    loan.status = LoanStatus.CLOSED
                    loan.closed_at = datetime.now(timezone.utc)
                    for item in loan.collateral:
                        if item.status == CollateralStatus.PLEDGED:
                            item.status = CollateralStatus.RELEASED
                    self._save_and_audit(loan, actor, AuditEventType.LOAN_REPAYMENT_MADE, metadata)
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_CLOSED,
                        entity_type="loan",
                        entity_id=loan.id,
                        metadata={"closed_at": loan.closed_at},
                        user_id=actor.user_id
                    )
                else:
                    self._save_and_audit(loan, actor, AuditEventType.LOAN_REPAYMENT_MADE, metadata)

        log_action(
            self.logger, "info", "Loan repayment applied",
            user_id=actor.user_id, action="repay", resource=f"loan:{loan.id}",
            extra={"amount": amount.to_string(), "outstanding_after": remaining.to_string()}
        )
        self.wallet_ledger.publish_entry(entry)
        self.coordinator.publish_allocation(allocation)
        self.publish_event(DomainEvent.LOAN_REPAYMENT, "loan", loan.id, {
            "amount": str(amount.amount),
            "currency": amount.currency.code,
            "ledger_entry_id": entry.id,
            "outstanding": str(remaining.amount)
        })
        if loan.status == LoanStatus.CLOSED:
            self._announce(loan, previous, actor, "repay")
            self.publish_event(DomainEvent.LOAN_CLOSED, "loan", loan.id, {"borrower_id": loan.borrower_id})

        return RepaymentOutcome(loan=loan, ledger_entry=entry, allocation=allocation)

    # Exits

    def cancel(self, loan_id: str, actor: Actor, reason: Optional[str] = None) -> Loan:
        """Withdraw a loan that never went ACTIVE (rejected ones included); borrower or admin"""
        with self.loan_lock(loan_id):
            loan = self.loans.get(loan_id)
            if actor.user_id != loan.borrower_id and not actor.has_permission(Permission.CANCEL_ANY_LOAN):
                raise Forbidden(f"User {actor.user_id} cannot cancel loan {loan_id}")
            self._check_source(loan, CANCELLABLE_STATUSES, LoanStatus.CANCELLED, "cancellation")

            previous = loan.status
            with self.storage.atomic():
                loan.status = LoanStatus.CANCELLED
                loan.cancelled_at = datetime.now(timezone.utc)
                loan.cancelled_by = actor.user_id
                loan.cancellation_reason = reason
                self._save_and_audit(loan, actor, AuditEventType.LOAN_CANCELLED, {
                    "reason": reason,
                    "previous_status": previous.value
                })

        self._announce(loan, previous, actor, "cancel")
        return loan

    def mark_defaulted(self, loan_id: str, actor: Actor, reason: Optional[str] = None) -> Loan:
        """ACTIVE -> DEFAULTED; open installments and pledged collateral follow"""
        actor.require(Permission.DEFAULT_LOAN)

        with self.loan_lock(loan_id):
            loan = self.loans.get(loan_id)
            self._check_source(loan, {LoanStatus.ACTIVE}, LoanStatus.DEFAULTED, "default")

            previous = loan.status
            with self.storage.atomic():
                defaulted = self.coordinator.close_schedule(loan.id, InstallmentStatus.DEFAULTED)
                outstanding = sum_money((i.outstanding for i in defaulted), loan.currency)
                loan.status = LoanStatus.DEFAULTED
                for item in loan.collateral:
                    if item.status == CollateralStatus.PLEDGED:
                        item.status = CollateralStatus.IN_DEFAULT
                self._save_and_audit(loan, actor, AuditEventType.LOAN_DEFAULTED, {
                    "reason": reason,
                    "defaulted_installments": [i.installment_number for i in defaulted],
                    "outstanding": outstanding.to_string()
                })

        self._announce(loan, previous, actor, "mark_defaulted")
        self.publish_event(DomainEvent.LOAN_DEFAULTED, "loan", loan.id, {
            "borrower_id": loan.borrower_id,
            "guarantor_id": loan.guarantor_id,
            "outstanding": str(outstanding.amount),
            "reason": reason
        })
        return loan

    # Administration

    def regenerate_schedule(self, loan_id: str, actor: Actor) -> List[Installment]:
        """Rebuild the schedule of an ACTIVE loan that has no payments yet"""
        actor.require(Permission.MANAGE_SCHEDULE)

        with self.loan_lock(loan_id):
            loan = self.loans.get(loan_id)
            self._check_source(loan, {LoanStatus.ACTIVE}, None, "schedule regeneration")

            start_date = (loan.disbursed_at or datetime.now(timezone.utc)).date()
            with self.storage.atomic():
                installments = self.coordinator.replace_schedule(loan, start_date)
                loan.schedule_pending = False
                self.loans.save(loan)

        log_action(
            self.logger, "info", "Repayment schedule regenerated",
            user_id=actor.user_id, action="regenerate_schedule", resource=f"loan:{loan.id}",
            extra={"installments": len(installments)}
        )
        return installments

    def delete_loan(self, loan_id: str, actor: Actor) -> None:
        """Remove a loan that never moved money"""
        actor.require(Permission.DELETE_LOAN)

        with self.loan_lock(loan_id):
            loan = self.loans.get(loan_id)
            if loan.status not in DELETABLE_STATUSES:
                raise InvalidStateTransition(f"Cannot delete loan {loan_id} in status {loan.status.value}")

            with self.storage.atomic():
                self.loans.delete(loan.id)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_DELETED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"status": loan.status.value, "borrower_id": loan.borrower_id},
                    user_id=actor.user_id
                )

        log_action(
            self.logger, "info", "Loan deleted",
            user_id=actor.user_id, action="delete_loan", resource=f"loan:{loan_id}",
            extra={"status": loan.status.value}
        )

    # Internals

    def _check_source(self, loan: Loan, allowed: AbstractSet[LoanStatus],
                      outcome: Optional[LoanStatus], operation: str) -> None:
        """Raise unless the loan is in one of the allowed source states"""
        if loan.status in allowed:
            return
        if outcome is not None and self._already_reached(loan.status, outcome):
            raise DuplicateState(
                f"Loan {loan.id} is already {loan.status.value}; {operation} would repeat it"
            )
        raise InvalidStateTransition(
            f"Cannot perform {operation} on loan {loan.id} in status {loan.status.value}"
        )

    @staticmethod
    def _already_reached(status: LoanStatus, outcome: LoanStatus) -> bool:
        if status == outcome:
            return True
        if outcome in APPROVAL_CHAIN and status in APPROVAL_CHAIN:
            return APPROVAL_CHAIN.index(status) >= APPROVAL_CHAIN.index(outcome)
        return False

    @staticmethod
    def _require_borrower(loan: Loan, actor: Actor) -> None:
        if actor.user_id != loan.borrower_id:
            raise Forbidden(f"User {actor.user_id} is not the borrower of loan {loan.id}")

    def _save_and_audit(self, loan: Loan, actor: Actor, event_type: AuditEventType,
                        metadata: Dict[str, Any]) -> None:
        self.loans.save(loan)
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            metadata={**metadata, "status": loan.status.value, "version": loan.version},
            user_id=actor.user_id
        )

    def _announce(self, loan: Loan, previous: LoanStatus, actor: Actor, action: str) -> None:
        log_action(
            self.logger, "info", f"Loan {previous.value} -> {loan.status.value}",
            user_id=actor.user_id, action=action, resource=f"loan:{loan.id}",
            extra={"from_status": previous.value, "to_status": loan.status.value}
        )
        self.publish_event(DomainEvent.LOAN_STATUS_CHANGED, "loan", loan.id, {
            "from_status": previous.value,
            "to_status": loan.status.value,
            "actor_id": actor.user_id
        })
