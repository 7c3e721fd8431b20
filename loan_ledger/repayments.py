"""
Repayment Module

Installment records of an active loan and the coordinator that keeps them in
step with the money: late marking with repayment demands, settlement against
ledger entries, and allocation of a borrower's payment across installments.

The coordinator never moves money itself. It is handed the ledger entry that
the state machine already recorded.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money, sum_money
from .errors import (
    DuplicateState, InstallmentNotFound, InvalidAmount, InvalidStateTransition, ValidationError
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .invoices import Invoice, InvoiceManager, InvoiceType
from .loans import Loan, LoanRepository
from .logging_config import get_logger, log_action
from .schedule import ScheduledInstallment, generate_schedule
from .storage import StorageInterface, StorageRecord
from .wallets import LedgerEntry


class InstallmentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    LATE = "late"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


# Installments that still expect money
OPEN_STATUSES = frozenset({InstallmentStatus.PENDING, InstallmentStatus.LATE})


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a loan"""
    loan_id: str
    installment_number: int
    total_installments: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    late_fee_amount: Money
    total_amount: Money
    paid_amount: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_at: Optional[datetime] = None
    payment_entry_id: Optional[str] = None
    invoice_ids: List[str] = field(default_factory=list)
    last_invoice_id: Optional[str] = None

    def __post_init__(self):
        if self.total_amount != self.principal_amount + self.interest_amount + self.late_fee_amount:
            raise ValueError(
                f"Installment total {self.total_amount.to_string()} does not equal "
                f"principal + interest + late fee"
            )

    @staticmethod
    def record_id(loan_id: str, installment_number: int) -> str:
        return f"{loan_id}:{installment_number}"

    @property
    def outstanding(self) -> Money:
        return self.total_amount - self.paid_amount

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_touched(self) -> bool:
        """Paid in full or in part"""
        return self.status == InstallmentStatus.PAID or self.paid_amount.is_positive()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            id=data['id'],
            created_at=cls.parse_datetime(data['created_at']),
            updated_at=cls.parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            total_installments=data['total_installments'],
            due_date=cls.parse_date(data['due_date']),
            principal_amount=cls.parse_money(data['principal_amount']),
            interest_amount=cls.parse_money(data['interest_amount']),
            late_fee_amount=cls.parse_money(data['late_fee_amount']),
            total_amount=cls.parse_money(data['total_amount']),
            paid_amount=cls.parse_money(data['paid_amount']),
            status=InstallmentStatus(data['status']),
            paid_at=cls.parse_datetime(data.get('paid_at')),
            payment_entry_id=data.get('payment_entry_id'),
            invoice_ids=list(data.get('invoice_ids', [])),
            last_invoice_id=data.get('last_invoice_id')
        )


@dataclass
class PaymentAllocation:
    """How one repayment was spread over the schedule"""
    amount: Money
    settled: List[Installment] = field(default_factory=list)
    partially_paid: Optional[Installment] = None


ScheduleGenerator = Callable[[Money, Money, Money, int, date], List[ScheduledInstallment]]


class RepaymentCoordinator(EventPublisherMixin):
    """
    Reads and writes installment records and issues repayment demands
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        loan_repository: LoanRepository,
        invoice_manager: InvoiceManager,
        event_dispatcher: Optional[EventDispatcher] = None,
        schedule_generator: ScheduleGenerator = generate_schedule
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.loan_repository = loan_repository
        self.invoice_manager = invoice_manager
        self.event_dispatcher = event_dispatcher
        self.schedule_generator = schedule_generator
        self.installments_table = "loan_installments"
        self.logger = get_logger("loan_ledger.repayments")

    # Queries

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """Installments of a loan ordered by installment number"""
        installments = [
            Installment.from_dict(d)
            for d in self.storage.find(self.installments_table, {'loan_id': loan_id})
        ]
        return sorted(installments, key=lambda i: i.installment_number)

    def get_installment(self, installment_id: str) -> Installment:
        data = self.storage.load(self.installments_table, installment_id)
        if not data:
            raise InstallmentNotFound(f"Installment {installment_id} not found")
        return Installment.from_dict(data)

    def outstanding_balance(self, loan_id: str, currency: Currency = Currency.ZAR) -> Money:
        """Amount still owed on open installments"""
        schedule = self.get_schedule(loan_id)
        if schedule:
            currency = schedule[0].total_amount.currency
        return sum_money((i.outstanding for i in schedule if i.is_open), currency)

    # Schedule

    def replace_schedule(self, loan: Loan, start_date: date) -> List[Installment]:
        """
        Discard the loan's installments and generate a fresh schedule

        Raises:
            DuplicateState: an installment has already been paid in full or in part
            ValidationError: the generator rejected the loan's amounts
        """
        with self.storage.atomic():
            existing = self.get_schedule(loan.id)
            if any(i.is_touched for i in existing):
                raise DuplicateState(f"Loan {loan.id} already has paid installments")

            for installment in existing:
                self.storage.delete(self.installments_table, installment.id)

            generated = self.schedule_generator(
                loan.requested_amount,
                loan.interest_amount,
                loan.penalty_fees,
                loan.installment_count,
                start_date
            )

            now = datetime.now(timezone.utc)
            installments = []
            for line in generated:
                installment = Installment(
                    id=Installment.record_id(loan.id, line.installment_number),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    installment_number=line.installment_number,
                    total_installments=loan.installment_count,
                    due_date=line.due_date,
                    principal_amount=line.principal_amount,
                    interest_amount=line.interest_amount,
                    late_fee_amount=line.late_fee_amount,
                    total_amount=line.total_amount,
                    paid_amount=Money.zero(line.total_amount.currency)
                )
                self._save(installment)
                installments.append(installment)

            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "installments": len(installments),
                    "replaced": len(existing),
                    "start_date": start_date.isoformat()
                }
            )

        log_action(
            self.logger, "info", f"Repayment schedule generated with {len(installments)} installments",
            action="replace_schedule", resource=f"loan:{loan.id}",
            extra={"start_date": start_date.isoformat(), "replaced": len(existing)}
        )
        self.publish_event(DomainEvent.SCHEDULE_GENERATED, "loan", loan.id, {
            "installments": len(installments),
            "first_due_date": installments[0].due_date.isoformat() if installments else None
        })
        return installments

    def close_schedule(self, loan_id: str, status: InstallmentStatus) -> List[Installment]:
        """Move every open installment of a loan to ``status`` (defaulted or cancelled)"""
        closed = []
        with self.storage.atomic():
            for installment in self.get_schedule(loan_id):
                if installment.is_open:
                    installment.status = status
                    installment.updated_at = datetime.now(timezone.utc)
                    self._save(installment)
                    closed.append(installment)
        return closed

    # Demands

    def issue_invoice(self, installment_id: str) -> Invoice:
        """Issue a repayment demand for what is still owed on an installment"""
        with self.storage.atomic():
            nested = self.storage.transaction_depth > 1
            installment = self.get_installment(installment_id)
            if not installment.is_open:
                raise InvalidStateTransition(
                    f"Installment {installment_id} is {installment.status.value}, nothing to invoice"
                )
            loan = self.loan_repository.get(installment.loan_id)

            invoice = self.invoice_manager.create_invoice(
                user_id=loan.borrower_id,
                invoice_type=InvoiceType.LOAN_REPAYMENT,
                due_date=installment.due_date,
                principal=installment.principal_amount,
                interest=installment.interest_amount + installment.late_fee_amount,
                total=installment.outstanding,
                reference=loan.id,
                note=f"Installment {installment.installment_number} of {installment.total_installments}",
                metadata={
                    "loan_id": loan.id,
                    "installment_id": installment.id,
                    "installment_number": installment.installment_number,
                    "total_installments": installment.total_installments,
                    "late_fee_amount": str(installment.late_fee_amount.amount)
                }
            )

            installment.invoice_ids.append(invoice.id)
            installment.last_invoice_id = invoice.id
            installment.updated_at = datetime.now(timezone.utc)
            self._save(installment)

        if not nested:
            self.invoice_manager.publish_invoice(invoice)
        return invoice

    def mark_late(self, installment_id: str, late_fee_amount: Money,
                  marked_by: Optional[str] = None) -> Installment:
        """
        Add a late fee to an installment and demand the new total

        Moves no money.

        Raises:
            InvalidAmount: fee not positive or in another currency
            InvalidStateTransition: installment is not pending or late
        """
        if not isinstance(late_fee_amount, Money) or not late_fee_amount.is_positive():
            raise InvalidAmount("Late fee must be a positive Money value")

        with self.storage.atomic():
            installment = self.get_installment(installment_id)
            if not installment.is_open:
                raise InvalidStateTransition(
                    f"Cannot mark {installment.status.value} installment {installment_id} late"
                )
            if late_fee_amount.currency != installment.total_amount.currency:
                raise InvalidAmount("Late fee currency does not match the installment")

            installment.late_fee_amount = installment.late_fee_amount + late_fee_amount
            installment.total_amount = (
                installment.principal_amount + installment.interest_amount + installment.late_fee_amount
            )
            installment.status = InstallmentStatus.LATE
            installment.updated_at = datetime.now(timezone.utc)
            self._save(installment)

            self.audit_trail.log_event(
                event_type=AuditEventType.INSTALLMENT_MARKED_LATE,
                entity_type="installment",
                entity_id=installment.id,
                metadata={
                    "loan_id": installment.loan_id,
                    "late_fee_added": late_fee_amount.to_string(),
                    "late_fee_total": installment.late_fee_amount.to_string(),
                    "total_amount": installment.total_amount.to_string()
                },
                user_id=marked_by
            )

            invoice = self.issue_invoice(installment.id)

        installment = self.get_installment(installment_id)
        self.invoice_manager.publish_invoice(invoice)
        log_action(
            self.logger, "info", f"Installment {installment.installment_number} marked late",
            user_id=marked_by, action="mark_late", resource=f"installment:{installment.id}",
            extra={"late_fee": late_fee_amount.to_string(), "invoice_id": invoice.id}
        )
        self.publish_event(DomainEvent.INSTALLMENT_LATE, "installment", installment.id, {
            "loan_id": installment.loan_id,
            "installment_number": installment.installment_number,
            "late_fee_amount": str(installment.late_fee_amount.amount),
            "total_amount": str(installment.total_amount.amount),
            "invoice_id": invoice.id
        })
        return installment

    # Settlement

    def settle(self, installment_id: str, ledger_entry: LedgerEntry) -> Installment:
        """
        Mark an installment paid by the given ledger entry

        Raises:
            DuplicateState: installment is already paid
            InvalidStateTransition: installment is defaulted or cancelled
        """
        with self.storage.atomic():
            installment = self._settle(self.get_installment(installment_id), ledger_entry)
        self._publish_paid([installment])
        return installment

    def apply_payment(self, loan_id: str, amount: Money, ledger_entry: LedgerEntry) -> PaymentAllocation:
        """
        Allocate a repayment to the loan's open installments, earliest due first

        Fully covered installments are settled. If money remains that does not
        cover the next installment, that installment's outstanding amount is
        reduced and allocation stops there.

        Raises:
            InvalidAmount: amount not positive
            InvalidStateTransition: nothing is outstanding
            ValidationError: amount exceeds what is outstanding
        """
        if not amount.is_positive():
            raise InvalidAmount("Payment amount must be positive")

        with self.storage.atomic():
            open_installments = sorted(
                (i for i in self.get_schedule(loan_id) if i.is_open),
                key=lambda i: (i.due_date, i.installment_number)
            )
            if not open_installments:
                raise InvalidStateTransition(f"Loan {loan_id} has no outstanding installments")

            outstanding = sum_money((i.outstanding for i in open_installments), amount.currency)
            if amount > outstanding:
                raise ValidationError(
                    f"Payment {amount.to_string()} exceeds outstanding balance {outstanding.to_string()}"
                )

            allocation = PaymentAllocation(amount=amount)
            remaining = amount
            for installment in open_installments:
                if remaining >= installment.outstanding:
                    remaining = remaining - installment.outstanding
                    allocation.settled.append(self._settle(installment, ledger_entry))
                else:
                    installment.paid_amount = installment.paid_amount + remaining
                    installment.payment_entry_id = ledger_entry.id
                    installment.updated_at = datetime.now(timezone.utc)
                    self._save(installment)
                    allocation.partially_paid = installment
                    remaining = Money.zero(amount.currency)
                if remaining.is_zero():
                    break

        return allocation

    def publish_allocation(self, allocation: PaymentAllocation) -> None:
        """Publish paid-installment events once the repayment unit has committed"""
        self._publish_paid(allocation.settled)

    def _settle(self, installment: Installment, ledger_entry: LedgerEntry) -> Installment:
        if installment.status == InstallmentStatus.PAID:
            raise DuplicateState(f"Installment {installment.id} is already paid")
        if not installment.is_open:
            raise InvalidStateTransition(
                f"Cannot settle {installment.status.value} installment {installment.id}"
            )

        now = datetime.now(timezone.utc)
        installment.paid_amount = installment.total_amount
        installment.status = InstallmentStatus.PAID
        installment.paid_at = now
        installment.payment_entry_id = ledger_entry.id
        installment.updated_at = now
        self._save(installment)

        self.audit_trail.log_event(
            event_type=AuditEventType.INSTALLMENT_SETTLED,
            entity_type="installment",
            entity_id=installment.id,
            metadata={
                "loan_id": installment.loan_id,
                "installment_number": installment.installment_number,
                "total_amount": installment.total_amount.to_string(),
                "ledger_entry_id": ledger_entry.id
            },
            user_id=ledger_entry.created_by
        )
        return installment

    def _publish_paid(self, installments: List[Installment]) -> None:
        for installment in installments:
            self.publish_event(DomainEvent.INSTALLMENT_PAID, "installment", installment.id, {
                "loan_id": installment.loan_id,
                "installment_number": installment.installment_number,
                "total_amount": str(installment.total_amount.amount),
                "payment_entry_id": installment.payment_entry_id
            })

    def _save(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())
