"""
Interest / EMI Calculator Module

Pure, deterministic Decimal arithmetic for deposit maturity, loan EMIs,
premature closure and daily account interest. Nothing here touches storage.

Rates are nominal annual percentages (6 means 6% p.a.), compounded monthly.
Intermediate values keep full context precision; only the value returned to
the caller is rounded half-up to 2 decimal places.
"""

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, List, Optional, Tuple, Union

from .currency import quantize_amount, to_decimal
from .errors import ValidationError

Number = Union[Decimal, int, str]

ZERO = Decimal('0')
ONE = Decimal('1')
DEFAULT_PENALTY = Decimal('1')


@dataclass
class ScheduleEntry:
    """One row of a replayed repayment or accrual schedule"""
    number: int
    due_date: date
    amount: Decimal
    principal: Decimal
    interest: Decimal
    balance: Decimal


def monthly_rate(annual_rate_percent: Number) -> Decimal:
    """Monthly rate as a fraction: 12% p.a. -> 0.01"""
    return to_decimal(annual_rate_percent) / Decimal('1200')


def _require_positive(name: str, value: Decimal) -> None:
    if value <= ZERO:
        raise ValidationError(f"{name} must be positive")


def _require_non_negative(name: str, value: Decimal) -> None:
    if value < ZERO:
        raise ValidationError(f"{name} cannot be negative")


def parse_rate(value: Number, name: str = "Interest rate", allow_zero: bool = False) -> Decimal:
    """Validate an annual percentage rate supplied by a caller"""
    try:
        rate = to_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{name} must be a number")
    if not rate.is_finite():
        raise ValidationError(f"{name} must be a finite number")
    if rate < ZERO or (rate == ZERO and not allow_zero):
        raise ValidationError(f"{name} must be positive")
    return rate


def parse_tenure(value: Any) -> int:
    """Validate a tenure in whole months"""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError("Tenure must be positive")
    return value


def _compound(principal: Decimal, rate: Decimal, months: Decimal) -> Decimal:
    return principal * (ONE + monthly_rate(rate)) ** months


def _annuity_due(monthly_amount: Decimal, rate: Decimal, months: Decimal) -> Decimal:
    r = monthly_rate(rate)
    if r == ZERO:
        return monthly_amount * months
    growth = (ONE + r) ** months
    return monthly_amount * ((growth - ONE) / r) * (ONE + r)


def compound_maturity(principal: Number, annual_rate_percent: Number, months: Number) -> Decimal:
    """
    Maturity value of a lump sum compounded monthly: P * (1 + r/1200)^n
    """
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate_percent)
    months = to_decimal(months)
    _require_positive("Principal amount", principal)
    _require_non_negative("Interest rate", rate)
    _require_positive("Tenure", months)
    return quantize_amount(_compound(principal, rate, months))


def emi(principal: Number, annual_rate_percent: Number, months: int) -> Decimal:
    """
    Equated monthly installment: P * r * (1+r)^n / ((1+r)^n - 1)

    A zero rate degrades to straight-line principal / months.
    """
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate_percent)
    _require_positive("Principal amount", principal)
    _require_non_negative("Interest rate", rate)
    if months <= 0:
        raise ValidationError("Tenure must be positive")

    r = monthly_rate(rate)
    if r == ZERO:
        return quantize_amount(principal / Decimal(months))
    growth = (ONE + r) ** months
    return quantize_amount(principal * r * growth / (growth - ONE))


def rd_maturity(monthly_amount: Number, annual_rate_percent: Number, months: int) -> Decimal:
    """
    Recurring deposit maturity: M * [((1+r)^n - 1) / r] * (1+r)
    """
    monthly_amount = to_decimal(monthly_amount)
    rate = to_decimal(annual_rate_percent)
    _require_positive("Monthly amount", monthly_amount)
    _require_non_negative("Interest rate", rate)
    if months <= 0:
        raise ValidationError("Tenure must be positive")
    return quantize_amount(_annuity_due(monthly_amount, rate, Decimal(months)))


def penalized_rate(annual_rate_percent: Number, penalty: Number = DEFAULT_PENALTY) -> Decimal:
    """Contracted rate less the premature-closure penalty, floored at zero"""
    return max(ZERO, to_decimal(annual_rate_percent) - to_decimal(penalty))


def premature_closure_amount(
    principal_or_paid: Number,
    annual_rate_percent: Number,
    elapsed_months: Number,
    monthly_amount: Optional[Number] = None,
    penalty: Number = DEFAULT_PENALTY
) -> Decimal:
    """
    Payout for closing a deposit before maturity at a penalized rate.

    Fixed deposit (``monthly_amount`` omitted): the principal compounded at
    the penalized rate over the elapsed (possibly fractional) months.

    Recurring deposit: ``principal_or_paid`` is the total paid so far. The
    whole installments it covers earn the penalized RD formula; any excess
    beyond whole installments is added back without interest.
    ``elapsed_months`` is ignored for recurring deposits.
    """
    amount = to_decimal(principal_or_paid)
    rate = penalized_rate(annual_rate_percent, penalty)
    _require_non_negative("Amount", amount)

    if monthly_amount is None:
        elapsed = to_decimal(elapsed_months)
        _require_non_negative("Elapsed months", elapsed)
        return quantize_amount(_compound(amount, rate, elapsed))

    monthly_amount = to_decimal(monthly_amount)
    _require_positive("Monthly amount", monthly_amount)
    whole_installments = (amount / monthly_amount).to_integral_value(rounding=ROUND_FLOOR)
    excess = amount - whole_installments * monthly_amount
    return quantize_amount(_annuity_due(monthly_amount, rate, whole_installments) + excess)


def daily_interest(balance: Number, annual_rate_percent: Number,
                   days_per_year: int = 365, days: int = 1) -> Decimal:
    """Simple interest for ``days`` at annual_rate / days_per_year / 100"""
    balance = to_decimal(balance)
    daily_rate = to_decimal(annual_rate_percent) / Decimal(days_per_year) / Decimal('100')
    return quantize_amount(balance * daily_rate * Decimal(days))


def loan_payment_split(outstanding: Number, annual_rate_percent: Number,
                       payment: Number) -> Tuple[Decimal, Decimal]:
    """
    Split a payment into (interest, principal): interest is one month on the
    outstanding balance, principal is the remainder floored at zero.
    """
    interest = to_decimal(outstanding) * monthly_rate(annual_rate_percent)
    principal = max(ZERO, to_decimal(payment) - interest)
    return quantize_amount(interest), quantize_amount(principal)


def elapsed_months(start: date, end: date, days_per_month: Number = Decimal('30.44')) -> Decimal:
    """Elapsed time in (fractional) months using an average month length"""
    days = max(0, (end - start).days)
    return Decimal(days) / to_decimal(days_per_month)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def amortization_schedule(
    principal: Number,
    annual_rate_percent: Number,
    months: int,
    start_date: date,
    installment: Optional[Number] = None
) -> List[ScheduleEntry]:
    """
    Replay an equal-installment loan forward from ``start_date``.

    Installment ``i`` falls due ``i`` months after the start. Interest is a
    month on the remaining principal; the last installment clears whatever
    principal is left.
    """
    principal = to_decimal(principal)
    payment = to_decimal(installment) if installment is not None else emi(principal, annual_rate_percent, months)
    r = monthly_rate(annual_rate_percent)

    schedule = []
    remaining = principal
    for number in range(1, months + 1):
        interest = quantize_amount(remaining * r)
        if number == months:
            principal_part = remaining
        else:
            principal_part = min(remaining, max(ZERO, payment - interest))
        remaining = remaining - principal_part
        schedule.append(ScheduleEntry(
            number=number,
            due_date=add_months(start_date, number),
            amount=quantize_amount(principal_part + interest),
            principal=quantize_amount(principal_part),
            interest=interest,
            balance=quantize_amount(remaining)
        ))
    return schedule


def fd_accrual_schedule(principal: Number, annual_rate_percent: Number,
                        months: int, start_date: date) -> List[ScheduleEntry]:
    """
    Month-by-month value of a fixed deposit; the last row equals the maturity amount.
    """
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate_percent)

    schedule = []
    previous = principal
    for number in range(1, months + 1):
        value = quantize_amount(_compound(principal, rate, Decimal(number)))
        schedule.append(ScheduleEntry(
            number=number,
            due_date=add_months(start_date, number),
            amount=ZERO,
            principal=quantize_amount(principal),
            interest=value - quantize_amount(previous),
            balance=value
        ))
        previous = value
    return schedule
