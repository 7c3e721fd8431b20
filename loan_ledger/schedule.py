"""
Repayment Schedule Generator

Deterministically splits a loan's principal and interest into monthly
installments. Installments 1..N-1 carry ``total / N`` rounded half-up to the
currency's minor unit; installment N absorbs the remainder so the sums are
exact.

    1200.00 principal, 120.00 interest, 3 installments from 2025-01-15:
        2025-01-15  400.00 + 40.00
        2025-02-15  400.00 + 40.00
        2025-03-15  400.00 + 40.00
"""

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_DOWN, ROUND_HALF_UP
from typing import List
import calendar

from .currency import Money
from .errors import ValidationError


@dataclass(frozen=True)
class ScheduledInstallment:
    """One line of a generated schedule, before it is persisted"""
    installment_number: int
    total_installments: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    late_fee_amount: Money
    total_amount: Money


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def split_evenly(total: Money, count: int) -> List[Money]:
    """
    Split an amount into ``count`` shares that add up exactly to ``total``

    Shares are rounded half-up and the last one takes the remainder. For
    amounts smaller than a few minor units per share, half-up rounding can
    overshoot the total; shares are then rounded down instead so the last one
    never goes negative.
    """
    quantum = total.currency.quantum
    for rounding in (ROUND_HALF_UP, ROUND_DOWN):
        share = Money((total.amount / count).quantize(quantum, rounding=rounding), total.currency)
        remainder = total - share * (count - 1)
        if not remainder.is_negative():
            return [share] * (count - 1) + [remainder]
    raise ValidationError(f"Cannot split {total.to_string()} into {count} shares")


def generate_schedule(
    principal: Money,
    interest_total: Money,
    penalty_total: Money,
    installment_count: int,
    start_date: date
) -> List[ScheduledInstallment]:
    """
    Build the repayment schedule for a loan

    Args:
        principal: Disbursed principal
        interest_total: Total interest charged on the loan
        penalty_total: Loan-level penalty fees; validated but not spread over
            installments
        installment_count: Number of monthly installments (N >= 1)
        start_date: Due date of the first installment

    Returns:
        N installments, due monthly from ``start_date``

    Raises:
        ValidationError: N < 1, negative amounts or mixed currencies
    """
    if not isinstance(installment_count, int) or installment_count < 1:
        raise ValidationError("Installment count must be at least 1")

    amounts = (principal, interest_total, penalty_total)
    if not all(isinstance(a, Money) for a in amounts):
        raise ValidationError("Schedule amounts must be Money values")
    currency = principal.currency
    if any(a.currency != currency for a in amounts):
        raise ValidationError("Schedule amounts must share one currency")
    if any(a.is_negative() for a in amounts):
        raise ValidationError("Schedule amounts cannot be negative")
    if not principal.is_positive():
        raise ValidationError("Principal must be positive")

    principal_shares = split_evenly(principal, installment_count)
    interest_shares = split_evenly(interest_total, installment_count)
    zero = Money.zero(currency)

    schedule = []
    for i in range(installment_count):
        schedule.append(ScheduledInstallment(
            installment_number=i + 1,
            total_installments=installment_count,
            due_date=add_months(start_date, i),
            principal_amount=principal_shares[i],
            interest_amount=interest_shares[i],
            late_fee_amount=zero,
            total_amount=principal_shares[i] + interest_shares[i] + zero
        ))
    return schedule
