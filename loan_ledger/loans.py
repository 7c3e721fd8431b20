"""
Loan Module

The loan aggregate (loan, pledged collateral, personal references) and its
repository. The repository persists and looks up loans; every business rule
about what may happen to a loan lives in the lifecycle state machine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .currency import Currency, Money
from .errors import ConcurrentModification, DuplicateState, LoanNotFound, ValidationError
from .storage import StorageInterface, StorageRecord, serialize_value


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING_ADMIN_REVIEW = "pending_admin_review"
    PENDING_GUARANTOR_APPROVAL = "pending_guarantor_approval"
    PENDING_BORROWER_CONFIRMATION = "pending_borrower_confirmation"
    APPROVED_FOR_DISBURSEMENT = "approved_for_disbursement"
    ACTIVE = "active"              # Funds disbursed, schedule running
    CLOSED = "closed"              # Fully repaid
    REJECTED = "rejected"          # Declined by admin or guarantor
    CANCELLED = "cancelled"        # Withdrawn before disbursement
    DEFAULTED = "defaulted"        # Written off as not repaid

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    LoanStatus.REJECTED,
    LoanStatus.CANCELLED,
    LoanStatus.CLOSED,
    LoanStatus.DEFAULTED,
})

# Statuses in which no money has moved yet
PRE_ACTIVE_STATUSES = frozenset({
    LoanStatus.PENDING_ADMIN_REVIEW,
    LoanStatus.PENDING_GUARANTOR_APPROVAL,
    LoanStatus.PENDING_BORROWER_CONFIRMATION,
    LoanStatus.APPROVED_FOR_DISBURSEMENT,
})


class CollateralCategory(Enum):
    VEHICLE = "VEHICLE"
    PHONE = "PHONE"


class CollateralType(Enum):
    CAR = "CAR"
    BIKE = "BIKE"
    PHONE = "PHONE"
    LAPTOP = "LAPTOP"
    OTHER = "OTHER"


class CollateralStatus(Enum):
    PLEDGED = "PLEDGED"
    RELEASED = "RELEASED"
    IN_DEFAULT = "IN_DEFAULT"
    RECOVERED = "RECOVERED"


class GuarantorVerdict(Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


@dataclass
class Collateral:
    """Asset pledged against a loan"""
    category: CollateralCategory
    collateral_type: CollateralType
    description: str
    estimated_value: Optional[Money] = None
    status: CollateralStatus = CollateralStatus.PLEDGED
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Collateral':
        return cls(
            id=data['id'],
            category=CollateralCategory(data['category']),
            collateral_type=CollateralType(data['collateral_type']),
            description=data['description'],
            estimated_value=StorageRecord.parse_money(data.get('estimated_value')),
            status=CollateralStatus(data['status'])
        )


@dataclass
class LoanReference:
    """Personal reference supplied by the borrower"""
    first_name: str
    last_name: str
    phone: str
    relation: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanReference':
        return cls(**data)


@dataclass
class Loan(StorageRecord):
    """
    Loan aggregate root

    ``installment_count`` is copied from the repayment plan when the loan is
    requested and is the only input for the schedule size afterwards.
    """
    borrower_id: str
    guarantor_id: str
    repayment_plan_id: str
    installment_count: int
    requested_amount: Money
    interest_rate: Decimal              # percent, e.g. 15 for 15%
    interest_amount: Money
    penalty_fees: Money
    total_repayable: Money
    status: LoanStatus = LoanStatus.PENDING_ADMIN_REVIEW

    requested_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    disbursed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    purpose: Optional[str] = None
    admin_comment: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None

    schedule_pending: bool = False
    disbursement_entry_id: Optional[str] = None
    version: int = 0

    collateral: List[Collateral] = field(default_factory=list)
    references: List[LoanReference] = field(default_factory=list)

    def __post_init__(self):
        if not self.borrower_id or not self.guarantor_id:
            raise ValidationError("Loan requires a borrower and a guarantor")
        if self.guarantor_id == self.borrower_id:
            raise ValidationError("Borrower cannot guarantee their own loan")
        if self.installment_count < 1:
            raise ValidationError("Loan must have at least one installment")

        currency = self.requested_amount.currency
        for amount in (self.interest_amount, self.penalty_fees, self.total_repayable):
            if amount.currency != currency:
                raise ValidationError("All loan amounts must share one currency")

        if self.total_repayable != self.requested_amount + self.interest_amount + self.penalty_fees:
            raise ValidationError("Total repayable must equal principal + interest + penalty fees")
        if self.total_repayable < self.requested_amount:
            raise ValidationError("Total repayable cannot be less than the requested amount")

    @property
    def currency(self) -> Currency:
        return self.requested_amount.currency

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=cls.parse_datetime(data['created_at']),
            updated_at=cls.parse_datetime(data['updated_at']),
            borrower_id=data['borrower_id'],
            guarantor_id=data['guarantor_id'],
            repayment_plan_id=data['repayment_plan_id'],
            installment_count=data['installment_count'],
            requested_amount=cls.parse_money(data['requested_amount']),
            interest_rate=Decimal(data['interest_rate']),
            interest_amount=cls.parse_money(data['interest_amount']),
            penalty_fees=cls.parse_money(data['penalty_fees']),
            total_repayable=cls.parse_money(data['total_repayable']),
            status=LoanStatus(data['status']),
            requested_at=cls.parse_datetime(data.get('requested_at')),
            reviewed_at=cls.parse_datetime(data.get('reviewed_at')),
            approved_at=cls.parse_datetime(data.get('approved_at')),
            disbursed_at=cls.parse_datetime(data.get('disbursed_at')),
            closed_at=cls.parse_datetime(data.get('closed_at')),
            cancelled_at=cls.parse_datetime(data.get('cancelled_at')),
            purpose=data.get('purpose'),
            admin_comment=data.get('admin_comment'),
            cancelled_by=data.get('cancelled_by'),
            cancellation_reason=data.get('cancellation_reason'),
            schedule_pending=data.get('schedule_pending', False),
            disbursement_entry_id=data.get('disbursement_entry_id'),
            version=data.get('version', 0),
            collateral=[Collateral.from_dict(c) for c in data.get('collateral', [])],
            references=[LoanReference.from_dict(r) for r in data.get('references', [])]
        )


@dataclass
class GuarantorDecision(StorageRecord):
    """Append-only record of a guarantor's verdict on a loan"""
    loan_id: str
    guarantor_id: str
    decision: GuarantorVerdict
    comment: Optional[str] = None
    decided_at: Optional[datetime] = None

    @staticmethod
    def record_id(loan_id: str, guarantor_id: str) -> str:
        return f"{loan_id}:{guarantor_id}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GuarantorDecision':
        return cls(
            id=data['id'],
            created_at=cls.parse_datetime(data['created_at']),
            updated_at=cls.parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            guarantor_id=data['guarantor_id'],
            decision=GuarantorVerdict(data['decision']),
            comment=data.get('comment'),
            decided_at=cls.parse_datetime(data.get('decided_at'))
        )


class LoanRepository:
    """
    Persistence for loan aggregates and guarantor decisions
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.decisions_table = "guarantor_decisions"

    def create(self, loan: Loan) -> Loan:
        """Persist a new loan"""
        with self.storage.atomic():
            if self.storage.exists(self.loans_table, loan.id):
                raise ValidationError(f"Loan {loan.id} already exists")
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
        return loan

    def get(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def save(self, loan: Loan) -> Loan:
        """
        Compare-and-set save

        The stored version must still equal ``loan.version``; on success the
        version is incremented.

        Raises:
            LoanNotFound: loan was never created or has been deleted
            ConcurrentModification: loan changed since it was read
        """
        with self.storage.atomic():
            stored = self.storage.load(self.loans_table, loan.id)
            if not stored:
                raise LoanNotFound(f"Loan {loan.id} not found")
            if stored.get('version', 0) != loan.version:
                raise ConcurrentModification(
                    f"Loan {loan.id} was modified concurrently "
                    f"(expected version {loan.version}, found {stored.get('version', 0)})"
                )
            loan.version += 1
            loan.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
        return loan

    def delete(self, loan_id: str) -> None:
        """Remove a loan and its guarantor decisions"""
        with self.storage.atomic():
            if not self.storage.delete(self.loans_table, loan_id):
                raise LoanNotFound(f"Loan {loan_id} not found")
            for decision in self.storage.find(self.decisions_table, {'loan_id': loan_id}):
                self.storage.delete(self.decisions_table, decision['id'])

    def find(
        self,
        borrower_id: Optional[str] = None,
        guarantor_id: Optional[str] = None,
        status: Optional[LoanStatus] = None
    ) -> List[Loan]:
        filters: Dict[str, Any] = {}
        if borrower_id:
            filters['borrower_id'] = borrower_id
        if guarantor_id:
            filters['guarantor_id'] = guarantor_id
        if status:
            filters['status'] = status.value
        return [Loan.from_dict(d) for d in self.storage.find(self.loans_table, filters)]

    def add_guarantor_decision(
        self,
        loan_id: str,
        guarantor_id: str,
        decision: GuarantorVerdict,
        comment: Optional[str] = None
    ) -> GuarantorDecision:
        """
        Append a guarantor decision

        Raises:
            DuplicateState: the guarantor already decided on this loan
        """
        record_id = GuarantorDecision.record_id(loan_id, guarantor_id)
        with self.storage.atomic():
            if self.storage.exists(self.decisions_table, record_id):
                raise DuplicateState(f"Guarantor {guarantor_id} already decided on loan {loan_id}")

            now = datetime.now(timezone.utc)
            record = GuarantorDecision(
                id=record_id,
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                guarantor_id=guarantor_id,
                decision=decision,
                comment=comment,
                decided_at=now
            )
            self.storage.save(self.decisions_table, record.id, record.to_dict())
        return record

    def get_guarantor_decisions(self, loan_id: str) -> List[GuarantorDecision]:
        return [
            GuarantorDecision.from_dict(d)
            for d in self.storage.find(self.decisions_table, {'loan_id': loan_id})
        ]


def serialize_collateral(items: List[Collateral]) -> List[Dict[str, Any]]:
    """Storage form of a collateral list, e.g. for audit metadata"""
    return [serialize_value(item) for item in items]
