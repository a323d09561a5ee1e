from __future__ import annotations

import calendar
import re
from datetime import date
from decimal import Decimal

from django.core.exceptions import ValidationError

from .amounts import ZERO, allocate_amounts, quantize
from .models import MonthlyPayment

ACADEMIC_YEAR_PATTERN = re.compile(r'^(\d{4})-(\d{4})$')


def parse_academic_year(academic_year: str) -> tuple[int, int]:
    match = ACADEMIC_YEAR_PATTERN.match((academic_year or '').strip())
    if not match:
        raise ValidationError(f'Academic year "{academic_year}" must look like 2024-2025.')

    first_year, second_year = int(match.group(1)), int(match.group(2))
    if second_year != first_year + 1:
        raise ValidationError(f'Academic year "{academic_year}" must span two consecutive years.')
    return first_year, second_year


def academic_months(start_month: int, total_months: int, academic_year: str):
    """Yield ``(month_index, year, month)`` in academic order.

    Index 0 is ``start_month`` of the first calendar year of the academic
    year; months after December roll into the following year.
    """
    if not 1 <= start_month <= 12:
        raise ValidationError('Schedule start month must be between 1 and 12.')
    if not 1 <= total_months <= 12:
        raise ValidationError('Schedule must cover between 1 and 12 months.')

    first_year, _ = parse_academic_year(academic_year)
    for month_index in range(total_months):
        offset = start_month - 1 + month_index
        yield month_index, first_year + offset // 12, offset % 12 + 1


def _build_schedule(component, amounts, start_month, academic_year):
    rows = []
    months = academic_months(start_month, len(amounts), academic_year)
    for (month_index, year, month), amount in zip(months, amounts):
        rows.append(MonthlyPayment(
            component=component,
            month_index=month_index,
            month_name=calendar.month_name[month],
            due_date=date(year, month, 1),
            amount=amount,
            status=MonthlyPayment.STATUS_PENDING,
            paid_amount=ZERO,
        ))
    return rows


def build_tuition_schedule(annual_amount, total_months, start_month, academic_year):
    return _build_schedule(
        MonthlyPayment.COMPONENT_TUITION,
        allocate_amounts(annual_amount, total_months),
        start_month,
        academic_year,
    )


def build_transportation_schedule(monthly_price, total_months, start_month, academic_year):
    price = quantize(monthly_price)
    return _build_schedule(
        MonthlyPayment.COMPONENT_TRANSPORTATION,
        [price] * total_months,
        start_month,
        academic_year,
    )


def reprice_schedule(months, total, *, keep_paid=True) -> list[MonthlyPayment]:
    """Spread ``total`` over ``months`` in place and return the touched rows.

    With ``keep_paid`` the months that already carry a payment keep their
    scheduled amount and only the rest of the total is spread over the
    unpaid months.
    """
    if not months:
        return []

    if keep_paid:
        locked = [row for row in months if row.has_payment]
        open_rows = [row for row in months if not row.has_payment]
    else:
        locked = []
        open_rows = list(months)

    if not open_rows:
        return []

    locked_total = sum((quantize(row.amount) for row in locked), Decimal('0.00'))
    spread = quantize(total) - locked_total
    if spread < 0:
        spread = ZERO

    changed = []
    for row, amount in zip(open_rows, allocate_amounts(spread, len(open_rows))):
        if quantize(row.amount) != amount:
            row.amount = amount
            changed.append(row)
    return changed


def apply_flat_price(months, monthly_price, *, keep_paid=True) -> list[MonthlyPayment]:
    price = quantize(monthly_price)
    changed = []
    for row in months:
        if keep_paid and row.has_payment:
            continue
        if quantize(row.amount) != price:
            row.amount = price
            changed.append(row)
    return changed


def monthly_amount_at(annual_amount, total_months, month_index) -> Decimal:
    return allocate_amounts(annual_amount, total_months)[month_index]


def is_month_index(value, total_months) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return 0 <= value < total_months
