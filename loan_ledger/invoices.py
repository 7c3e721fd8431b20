"""
Invoice Module

Repayment demands, slips and receipts. An invoice only knows who owes what
and by when; the business object it relates to is carried in ``reference``
and ``metadata``. Rendering invoices to documents is left to subscribers of
the ``invoice.issued`` event.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import random
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Money
from .errors import InvoiceNotFound, ValidationError
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class InvoiceType(Enum):
    LOAN_REPAYMENT = "LOAN_REPAYMENT"
    LOAN_DISBURSEMENT = "LOAN_DISBURSEMENT"
    LOAN_PENALTY = "LOAN_PENALTY"
    TRANSFER_FEE = "TRANSFER_FEE"
    CONTRIBUTION = "CONTRIBUTION"
    MEMBERSHIP_FEE = "MEMBERSHIP_FEE"
    SAVINGS_DEPOSIT = "SAVINGS_DEPOSIT"
    OTHER = "OTHER"


@dataclass
class Invoice(StorageRecord):
    """Issued invoice"""
    user_id: str
    invoice_number: str
    invoice_type: InvoiceType
    issue_date: date
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    reference: Optional[str] = None
    note: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Invoice':
        return cls(
            id=data['id'],
            created_at=cls.parse_datetime(data['created_at']),
            updated_at=cls.parse_datetime(data['updated_at']),
            user_id=data['user_id'],
            invoice_number=data['invoice_number'],
            invoice_type=InvoiceType(data['invoice_type']),
            issue_date=cls.parse_date(data['issue_date']),
            due_date=cls.parse_date(data['due_date']),
            principal_amount=cls.parse_money(data['principal_amount']),
            interest_amount=cls.parse_money(data['interest_amount']),
            total_amount=cls.parse_money(data['total_amount']),
            reference=data.get('reference'),
            note=data.get('note'),
            metadata=data.get('metadata') or {}
        )


def generate_invoice_number(issued_on: date, prefix: str = "INV") -> str:
    """Invoice number such as INV-20251201-12345"""
    return f"{prefix}-{issued_on.strftime('%Y%m%d')}-{random.randint(10000, 99999)}"


class InvoiceManager(EventPublisherMixin):
    """Issues and looks up invoices"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher
        self.invoices_table = "invoices"
        self.logger = get_logger("loan_ledger.invoices")

    def create_invoice(
        self,
        user_id: str,
        invoice_type: InvoiceType,
        due_date: date,
        principal: Money,
        interest: Money,
        total: Optional[Money] = None,
        reference: Optional[str] = None,
        note: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Invoice:
        """
        Issue an invoice

        Args:
            user_id: Who owes the amount
            invoice_type: Category for reporting
            due_date: When payment is due
            principal: Principal part
            interest: Interest part
            total: Amount due; defaults to principal + interest
            reference: Business reference, e.g. the loan id
            note: Free text printed on the invoice
            metadata: Structured extras, e.g. installment number

        Returns:
            Created Invoice. Inside a caller's unit of work the caller
            publishes it with ``publish_invoice`` after committing.
        """
        if not user_id:
            raise ValidationError("Invoice requires a user id")
        if due_date is None:
            raise ValidationError("Due date is required for invoice")
        if principal.currency != interest.currency:
            raise ValidationError("Invoice amounts must share one currency")
        if total is None:
            total = principal + interest
        if total.currency != principal.currency or total.is_negative():
            raise ValidationError("Invoice total must be a non-negative amount in the invoice currency")

        with self.storage.atomic():
            nested = self.storage.transaction_depth > 1
            now = datetime.now(timezone.utc)
            invoice_number = generate_invoice_number(now.date())
            while self.storage.find(self.invoices_table, {'invoice_number': invoice_number}):
                invoice_number = generate_invoice_number(now.date())

            invoice = Invoice(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                invoice_number=invoice_number,
                invoice_type=invoice_type,
                issue_date=now.date(),
                due_date=due_date,
                principal_amount=principal,
                interest_amount=interest,
                total_amount=total,
                reference=reference,
                note=note,
                metadata=metadata or {}
            )
            self.storage.save(self.invoices_table, invoice.id, invoice.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.INVOICE_ISSUED,
                entity_type="invoice",
                entity_id=invoice.id,
                metadata={
                    "invoice_number": invoice_number,
                    "invoice_type": invoice_type.value,
                    "user_id": user_id,
                    "total_amount": total.to_string(),
                    "reference": reference
                }
            )

        if not nested:
            self.publish_invoice(invoice)
        return invoice

    def publish_invoice(self, invoice: Invoice) -> None:
        """Log and publish a committed invoice"""
        log_action(
            self.logger, "info", f"Invoice {invoice.invoice_number} issued",
            user_id=invoice.user_id, action="create_invoice", resource=f"invoice:{invoice.id}",
            extra={
                "invoice_type": invoice.invoice_type.value,
                "total": invoice.total_amount.to_string(),
                "reference": invoice.reference
            }
        )
        self.publish_event(DomainEvent.INVOICE_ISSUED, "invoice", invoice.id, {
            "invoice_number": invoice.invoice_number,
            "invoice_type": invoice.invoice_type.value,
            "user_id": invoice.user_id,
            "total_amount": str(invoice.total_amount.amount),
            "currency": invoice.total_amount.currency.code,
            "due_date": invoice.due_date.isoformat(),
            "reference": invoice.reference
        })

    def get_invoice(self, invoice_id: str) -> Invoice:
        data = self.storage.load(self.invoices_table, invoice_id)
        if not data:
            raise InvoiceNotFound(f"Invoice {invoice_id} not found")
        return Invoice.from_dict(data)

    def get_user_invoices(self, user_id: str,
                          invoice_type: Optional[InvoiceType] = None) -> List[Invoice]:
        """Invoices of a user, newest first"""
        filters = {'user_id': user_id}
        if invoice_type:
            filters['invoice_type'] = invoice_type.value
        invoices = [Invoice.from_dict(d) for d in self.storage.find(self.invoices_table, filters)]
        return sorted(invoices, key=lambda inv: inv.created_at, reverse=True)
