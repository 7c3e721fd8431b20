"""
Repayment Plans Module

Catalogue of repayment plans a borrower can choose from. A plan fixes the
number of monthly installments; the value is copied onto the loan at request
time so later catalogue edits never change an existing loan.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any
import uuid

from .errors import PlanNotFound, ValidationError
from .storage import StorageInterface, StorageRecord


class RepaymentPlanCode(Enum):
    ONE_MONTH = "ONE_MONTH"
    TWO_MONTHS = "TWO_MONTHS"
    THREE_MONTHS = "THREE_MONTHS"


DEFAULT_PLANS = (
    (RepaymentPlanCode.ONE_MONTH, "1 Month", 1),
    (RepaymentPlanCode.TWO_MONTHS, "2 Months", 2),
    (RepaymentPlanCode.THREE_MONTHS, "3 Months", 3),
)


@dataclass
class RepaymentPlan(StorageRecord):
    """Selectable repayment plan"""
    code: RepaymentPlanCode
    label: str
    number_of_months: int
    is_active: bool = True

    def __post_init__(self):
        if self.number_of_months < 1:
            raise ValidationError("Repayment plan must have at least one month")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentPlan':
        return cls(
            id=data['id'],
            created_at=cls.parse_datetime(data['created_at']),
            updated_at=cls.parse_datetime(data['updated_at']),
            code=RepaymentPlanCode(data['code']),
            label=data['label'],
            number_of_months=data['number_of_months'],
            is_active=data.get('is_active', True)
        )


class RepaymentPlanCatalogue:
    """Stores and looks up repayment plans"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.plans_table = "repayment_plans"

    def seed_defaults(self) -> List[RepaymentPlan]:
        """Create the default plans that do not exist yet; safe to call repeatedly"""
        seeded = []
        with self.storage.atomic():
            for code, label, months in DEFAULT_PLANS:
                existing = self.get_plan_by_code(code)
                if existing:
                    seeded.append(existing)
                    continue
                now = datetime.now(timezone.utc)
                plan = RepaymentPlan(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    code=code,
                    label=label,
                    number_of_months=months
                )
                self.storage.save(self.plans_table, plan.id, plan.to_dict())
                seeded.append(plan)
        return seeded

    def get_plan(self, plan_id: str) -> RepaymentPlan:
        data = self.storage.load(self.plans_table, plan_id)
        if not data:
            raise PlanNotFound(f"Repayment plan {plan_id} not found")
        return RepaymentPlan.from_dict(data)

    def get_plan_by_code(self, code: RepaymentPlanCode) -> Optional[RepaymentPlan]:
        found = self.storage.find(self.plans_table, {'code': code.value})
        return RepaymentPlan.from_dict(found[0]) if found else None

    def list_plans(self, active_only: bool = True) -> List[RepaymentPlan]:
        plans = [RepaymentPlan.from_dict(d) for d in self.storage.load_all(self.plans_table)]
        if active_only:
            plans = [p for p in plans if p.is_active]
        return sorted(plans, key=lambda p: p.number_of_months)

    def set_active(self, plan_id: str, is_active: bool) -> RepaymentPlan:
        plan = self.get_plan(plan_id)
        plan.is_active = is_active
        plan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.plans_table, plan.id, plan.to_dict())
        return plan
