"""Pure loan arithmetic.

Every function works on unrounded ``Decimal`` values; callers round with
:func:`money` only where a figure is persisted or displayed.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from loanflow.schemas.directory import Client, EmploymentType

TWOPLACES = Decimal("0.01")
HUNDRED = Decimal("100")

BASE_INCOME_MULTIPLIER = 10
EMPLOYMENT_MULTIPLIER_ADJUSTMENT = {
    EmploymentType.EMPLOYED: 5,
    EmploymentType.SELF_EMPLOYED: 0,
    EmploymentType.RETIRED: -5,
}


def _as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value) -> Decimal:
    return _as_decimal(value).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def monthly_rate(annual_rate_percent) -> Decimal:
    return _as_decimal(annual_rate_percent) / HUNDRED / Decimal("12")


def calculate_monthly_payment(principal, annual_rate_percent, term_months: int) -> Decimal:
    principal = _as_decimal(principal)
    if term_months <= 0:
        raise ValueError("term_months must be positive")
    if principal < 0:
        raise ValueError("principal must not be negative")
    rate = monthly_rate(annual_rate_percent)
    if rate < 0:
        raise ValueError("annual rate must not be negative")
    if rate == 0:
        return principal / Decimal(term_months)
    factor = (Decimal("1") + rate) ** term_months
    return principal * rate * factor / (factor - Decimal("1"))


@dataclass(frozen=True)
class RepaymentTerms:
    monthly_installment: Decimal
    total_payable: Decimal
    total_interest: Decimal

    def rounded(self) -> "RepaymentTerms":
        return RepaymentTerms(
            monthly_installment=money(self.monthly_installment),
            total_payable=money(self.total_payable),
            total_interest=money(self.total_interest),
        )


def calculate_terms(principal, annual_rate_percent, term_months: int) -> RepaymentTerms:
    principal = _as_decimal(principal)
    payment = calculate_monthly_payment(principal, annual_rate_percent, term_months)
    total_payable = payment * Decimal(term_months)
    return RepaymentTerms(
        monthly_installment=payment,
        total_payable=total_payable,
        total_interest=total_payable - principal,
    )


def debt_to_income_percent(monthly_payment, monthly_income) -> Decimal:
    income = _as_decimal(monthly_income)
    if income <= 0:
        raise ValueError("monthly_income must be positive")
    return _as_decimal(monthly_payment) / income * HUNDRED


def max_eligible_amount(
    client: Client,
    *,
    absolute_cap,
    default_amount,
) -> Decimal:
    """Lending ceiling derived from stated income, employment and tenure."""
    income = client.monthly_income
    if income is None or income <= 0:
        return _as_decimal(default_amount)
    if client.employment_type == EmploymentType.UNEMPLOYED:
        return Decimal("0")

    multiplier = BASE_INCOME_MULTIPLIER + EMPLOYMENT_MULTIPLIER_ADJUSTMENT.get(client.employment_type, 0)
    experience = _as_decimal(client.work_experience_years)
    if experience > 5:
        multiplier += 2
    elif experience > 2:
        multiplier += 1

    return min(_as_decimal(income) * Decimal(multiplier), _as_decimal(absolute_cap))


def commission(principal, rate_percent) -> Decimal:
    return _as_decimal(principal) * _as_decimal(rate_percent) / HUNDRED


def next_payment_date(from_date: date, offset_days: int = 30) -> date:
    return from_date + timedelta(days=offset_days)


def days_overdue(due_date: date | None, today: date, outstanding) -> int:
    if due_date is None or _as_decimal(outstanding) <= 0:
        return 0
    return max((today - due_date).days, 0)
