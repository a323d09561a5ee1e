"""Read-only invoice projections of a payment record.

A projection never writes to the record. Three scopes exist:

* cumulative: everything paid to date, per component;
* single month: the scheduled tuition and transportation amounts of one
  month, plus uniform and inscription fee when they were paid in that same
  calendar month;
* single component: one component only, every other one is zero.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.utils import timezone

from .amounts import (
    COMPONENT_INSCRIPTION_FEE,
    COMPONENT_TUITION,
    COMPONENT_UNIFORM,
    COMPONENTS,
    ZERO,
    ComponentAmounts,
    quantize,
    to_decimal,
)
from .ledger import calculate_amounts, original_tuition
from .schedule import is_month_index, monthly_amount_at
from .stats import payment_history

SCOPE_CUMULATIVE = 'cumulative'
SCOPE_SINGLE_MONTH = 'single_month'
SCOPE_SINGLE_COMPONENT = 'single_component'


@dataclass(frozen=True)
class InvoiceScope:
    kind: str
    month_index: int | None = None
    component: str | None = None

    @classmethod
    def cumulative(cls):
        return cls(SCOPE_CUMULATIVE)

    @classmethod
    def single_month(cls, month_index):
        return cls(SCOPE_SINGLE_MONTH, month_index=month_index)

    @classmethod
    def single_component(cls, component):
        if component not in COMPONENTS:
            raise ValidationError(f'Unknown component "{component}".')
        return cls(SCOPE_SINGLE_COMPONENT, component=component)

    def includes(self, component):
        if self.kind == SCOPE_SINGLE_COMPONENT:
            return component == self.component
        return True


@dataclass(frozen=True)
class DiscountBreakdown:
    percentage: Decimal
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal


@dataclass(frozen=True)
class InvoiceProjection:
    invoice_number: str
    invoice_date: date
    scope: InvoiceScope
    amounts: ComponentAmounts
    tax: ComponentAmounts
    tax_rate: Decimal
    discount: DiscountBreakdown | None = None
    month_name: str = ''

    @property
    def total_ht(self) -> Decimal:
        return self.amounts.grand_total

    @property
    def total_tax(self) -> Decimal:
        return self.tax.grand_total

    @property
    def total_ttc(self) -> Decimal:
        return quantize(self.total_ht + self.total_tax)


def invoice_tax_rate() -> Decimal:
    return to_decimal(getattr(settings, 'BILLING_INVOICE_TAX_RATE', 0))


def _same_month(first, second) -> bool:
    return first is not None and second is not None and (
        first.year == second.year and first.month == second.month
    )


def _month_row(months, month_index):
    for row in months:
        if row.month_index == month_index:
            return row
    return None


def _check_month_index(config, month_index):
    if not is_month_index(month_index, config.total_months):
        raise ValidationError({'month_index': f'Month index must be between 0 and {config.total_months - 1}.'})


def _cumulative_amounts(record):
    return calculate_amounts(record).paid


def _single_component_amounts(record, component):
    paid = calculate_amounts(record).paid
    return paid.only(component)


def _single_month_amounts(record, config, month_index):
    tuition_row = None if record.is_annual else _month_row(record.tuition_months, month_index)
    transport_row = (
        _month_row(record.transportation_months, month_index) if record.transportation_using else None
    )

    reference = None
    for row in (tuition_row, transport_row):
        if row is not None:
            reference = row.payment_date or row.due_date
            break

    uniform = ZERO
    if record.uniform_purchased and record.uniform_is_paid and _same_month(record.uniform_payment_date, reference):
        uniform = record.uniform_price

    inscription_fee = ZERO
    if (
        record.inscription_fee_applicable
        and record.inscription_fee_is_paid
        and _same_month(record.inscription_fee_payment_date, reference)
    ):
        inscription_fee = record.inscription_fee_price

    amounts = ComponentAmounts(
        tuition=tuition_row.amount if tuition_row is not None else ZERO,
        uniform=uniform,
        transportation=transport_row.amount if transport_row is not None else ZERO,
        inscription_fee=inscription_fee,
    )
    month_name = (tuition_row or transport_row).month_name if (tuition_row or transport_row) else ''
    return amounts, month_name


def _discount_breakdown(record, config, scope):
    if not record.discount_enabled or not scope.includes(COMPONENT_TUITION):
        return None

    percentage = record.discount_percentage
    if scope.kind == SCOPE_SINGLE_MONTH:
        if record.is_annual:
            return None
        original = monthly_amount_at(original_tuition(record), config.total_months, scope.month_index)
        row = _month_row(record.tuition_months, scope.month_index)
        final = quantize(row.amount) if row is not None else original
        discount = original - final
        return DiscountBreakdown(
            percentage=percentage,
            original_amount=original,
            discount_amount=discount if discount > 0 else ZERO,
            final_amount=final,
        )

    original = original_tuition(record)
    discount = quantize(record.discount_amount)
    final = original - discount
    return DiscountBreakdown(
        percentage=percentage,
        original_amount=original,
        discount_amount=discount,
        final_amount=final if final > 0 else ZERO,
    )


def invoice_date(record, scope, now=None) -> date:
    """Pick the date printed on an invoice.

    Component payment date first, then the month's payment date, then the
    latest payment in the record's history, then today. A single-component
    invoice falls back to that component's latest payment before the whole
    history.
    """
    history = payment_history(record)

    if scope.kind == SCOPE_SINGLE_COMPONENT:
        if scope.component == COMPONENT_UNIFORM and record.uniform_payment_date:
            return record.uniform_payment_date
        if scope.component == COMPONENT_INSCRIPTION_FEE and record.inscription_fee_payment_date:
            return record.inscription_fee_payment_date
        for entry in history:
            if entry.component == scope.component:
                return entry.date

    if scope.kind == SCOPE_SINGLE_MONTH:
        candidates = []
        if not record.is_annual:
            candidates.append(_month_row(record.tuition_months, scope.month_index))
        if record.transportation_using:
            candidates.append(_month_row(record.transportation_months, scope.month_index))
        for row in candidates:
            if row is not None and row.payment_date:
                return row.payment_date

    if history:
        return history[0].date
    return now or timezone.localdate()


def invoice_number(record, issued_on) -> str:
    return f'INV-{record.academic_year}-{record.pk:06d}-{issued_on:%Y%m%d}'


def project_invoice(record, config, scope, *, now=None) -> InvoiceProjection:
    if scope.kind == SCOPE_CUMULATIVE:
        amounts = _cumulative_amounts(record)
        month_name = ''
    elif scope.kind == SCOPE_SINGLE_MONTH:
        _check_month_index(config, scope.month_index)
        amounts, month_name = _single_month_amounts(record, config, scope.month_index)
    elif scope.kind == SCOPE_SINGLE_COMPONENT:
        if scope.component not in COMPONENTS:
            raise ValidationError(f'Unknown component "{scope.component}".')
        amounts = _single_component_amounts(record, scope.component)
        month_name = ''
    else:
        raise ValidationError(f'Unknown invoice scope "{scope.kind}".')

    rate = invoice_tax_rate()
    tax = ComponentAmounts(**{
        component: amounts.get(component) * rate
        for component in COMPONENTS
    })

    issued_on = invoice_date(record, scope, now=now)
    return InvoiceProjection(
        invoice_number=invoice_number(record, issued_on),
        invoice_date=issued_on,
        scope=scope,
        amounts=amounts,
        tax=tax,
        tax_rate=rate,
        discount=_discount_breakdown(record, config, scope),
        month_name=month_name,
    )
