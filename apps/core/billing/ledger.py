from __future__ import annotations

from decimal import Decimal

from .amounts import COMPONENTS, ZERO, ComponentAmounts, LedgerAmounts, quantize

SNAPSHOT_FIELDS = [
    f'{bucket}_{component}'
    for bucket in ('total', 'paid', 'remaining')
    for component in COMPONENTS + ('grand_total',)
] + ['transportation_total']


def _sum(values) -> Decimal:
    return quantize(sum((quantize(value) for value in values), Decimal('0.00')))


def original_tuition(record) -> Decimal:
    # Undiscounted base priced at generation; only a bulk re-price moves it.
    return quantize(record.tuition_amount)


def tuition_total(record) -> Decimal:
    total = original_tuition(record)
    if record.discount_enabled:
        total -= quantize(record.discount_amount)
    if record.is_annual and record.annual_tuition_is_paid:
        total -= quantize(record.annual_tuition_discount)
    total = quantize(total)
    return total if total > 0 else ZERO


def calculate_amounts(record) -> LedgerAmounts:
    transportation_months = record.transportation_months if record.transportation_using else []

    total = ComponentAmounts(
        tuition=tuition_total(record),
        uniform=record.uniform_price if record.uniform_purchased else ZERO,
        transportation=_sum(row.amount for row in transportation_months),
        inscription_fee=record.inscription_fee_price if record.inscription_fee_applicable else ZERO,
    )

    if record.is_annual and record.annual_tuition_is_paid:
        paid_tuition = quantize(record.annual_tuition_amount)
    else:
        paid_tuition = _sum(row.paid_amount for row in record.tuition_months)

    paid = ComponentAmounts(
        tuition=paid_tuition,
        uniform=record.uniform_price if record.uniform_purchased and record.uniform_is_paid else ZERO,
        transportation=_sum(row.paid_amount for row in transportation_months),
        inscription_fee=(
            record.inscription_fee_price
            if record.inscription_fee_applicable and record.inscription_fee_is_paid
            else ZERO
        ),
    )

    remaining_values = {}
    for component in COMPONENTS:
        difference = total.get(component) - paid.get(component)
        remaining_values[component] = difference if difference > 0 else ZERO
    remaining = ComponentAmounts(**remaining_values)

    return LedgerAmounts(total=total, paid=paid, remaining=remaining)


def apply_amounts(record, amounts: LedgerAmounts):
    for bucket_name in ('total', 'paid', 'remaining'):
        bucket = getattr(amounts, bucket_name)
        for component, value in bucket.as_dict().items():
            setattr(record, f'{bucket_name}_{component}', value)
    record.transportation_total = amounts.total.transportation
    return SNAPSHOT_FIELDS
