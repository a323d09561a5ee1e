from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from apps.core.students.models import Student

from .amounts import (
    COMPONENT_INSCRIPTION_FEE,
    COMPONENT_TRANSPORTATION,
    COMPONENT_TUITION,
    COMPONENT_UNIFORM,
    COMPONENTS,
    ZERO,
    ComponentAmounts,
    quantize,
)
from .models import StudentPaymentRecord

HISTORY_TUITION_MONTHLY = 'tuition_monthly'
HISTORY_TUITION_ANNUAL = 'tuition_annual'
HISTORY_UNIFORM = 'uniform'
HISTORY_TRANSPORTATION_MONTHLY = 'transportation_monthly'
HISTORY_INSCRIPTION_FEE = 'inscription_fee'


@dataclass(frozen=True)
class PaymentHistoryEntry:
    date: date
    amount: Decimal
    method: str
    receipt_number: str
    type: str
    component: str
    month_name: str = ''


def payment_history(record) -> list[PaymentHistoryEntry]:
    """Every recorded payment of ``record``, most recent first."""
    history = []

    for row in record.tuition_months:
        if row.payment_date and row.has_payment:
            history.append(PaymentHistoryEntry(
                date=row.payment_date,
                amount=quantize(row.paid_amount),
                method=row.payment_method,
                receipt_number=row.receipt_number,
                type=HISTORY_TUITION_MONTHLY,
                component=COMPONENT_TUITION,
                month_name=row.month_name,
            ))

    if record.annual_tuition_is_paid and record.annual_tuition_payment_date:
        history.append(PaymentHistoryEntry(
            date=record.annual_tuition_payment_date,
            amount=quantize(record.annual_tuition_amount),
            method=record.annual_tuition_payment_method,
            receipt_number=record.annual_tuition_receipt_number,
            type=HISTORY_TUITION_ANNUAL,
            component=COMPONENT_TUITION,
        ))

    if record.uniform_purchased and record.uniform_is_paid and record.uniform_payment_date:
        history.append(PaymentHistoryEntry(
            date=record.uniform_payment_date,
            amount=quantize(record.uniform_price),
            method=record.uniform_payment_method,
            receipt_number=record.uniform_receipt_number,
            type=HISTORY_UNIFORM,
            component=COMPONENT_UNIFORM,
        ))

    if (
        record.inscription_fee_applicable
        and record.inscription_fee_is_paid
        and record.inscription_fee_payment_date
    ):
        history.append(PaymentHistoryEntry(
            date=record.inscription_fee_payment_date,
            amount=quantize(record.inscription_fee_price),
            method=record.inscription_fee_payment_method,
            receipt_number=record.inscription_fee_receipt_number,
            type=HISTORY_INSCRIPTION_FEE,
            component=COMPONENT_INSCRIPTION_FEE,
        ))

    if record.transportation_using:
        for row in record.transportation_months:
            if row.payment_date and row.has_payment:
                history.append(PaymentHistoryEntry(
                    date=row.payment_date,
                    amount=quantize(row.paid_amount),
                    method=row.payment_method,
                    receipt_number=row.receipt_number,
                    type=HISTORY_TRANSPORTATION_MONTHLY,
                    component=COMPONENT_TRANSPORTATION,
                    month_name=row.month_name,
                ))

    # Stable sort keeps insertion order for payments made on the same day.
    history.sort(key=lambda entry: entry.date, reverse=True)
    return history


def status_counts(records, students_without_record=0) -> dict:
    counts = Counter(record.overall_status for record in records)
    result = {
        status: counts.get(status, 0)
        for status, _ in StudentPaymentRecord.STATUS_CHOICES
        if status != StudentPaymentRecord.STATUS_NOT_APPLICABLE
    }
    result['without_record'] = students_without_record
    result['total'] = sum(counts.values()) + students_without_record
    return result


def collection_rate(collected, expected) -> Decimal:
    if not expected:
        return Decimal('0.0')
    return (Decimal(collected) * 100 / Decimal(expected)).quantize(Decimal('0.1'))


def financial_summary(records) -> dict:
    expected = ComponentAmounts()
    collected = ComponentAmounts()
    outstanding = ComponentAmounts()
    for record in records:
        amounts = record.stored_amounts
        expected += amounts.total
        collected += amounts.paid
        outstanding += amounts.remaining

    rates = {
        component: collection_rate(collected.get(component), expected.get(component))
        for component in COMPONENTS
    }
    rates['grand_total'] = collection_rate(collected.grand_total, expected.grand_total)
    return {
        'expected': expected,
        'collected': collected,
        'outstanding': outstanding,
        'collection_rate': rates,
    }


def grade_category_rollup(records) -> dict:
    rollup = {
        category: {'count': 0, 'expected': ZERO, 'collected': ZERO, 'outstanding': ZERO}
        for category, _ in Student.CATEGORY_CHOICES
    }
    for record in records:
        bucket = rollup.setdefault(
            record.grade_category,
            {'count': 0, 'expected': ZERO, 'collected': ZERO, 'outstanding': ZERO},
        )
        bucket['count'] += 1
        bucket['expected'] += quantize(record.total_grand_total)
        bucket['collected'] += quantize(record.paid_grand_total)
        bucket['outstanding'] += quantize(record.remaining_grand_total)

    for bucket in rollup.values():
        bucket['collection_rate'] = collection_rate(bucket['collected'], bucket['expected'])
    return rollup


def discount_analysis(records) -> dict:
    discounted = [record for record in records if record.discount_enabled]
    total_amount = sum((quantize(record.discount_amount) for record in discounted), ZERO)
    if discounted:
        average = sum(Decimal(record.discount_percentage) for record in discounted) / len(discounted)
        average = average.quantize(Decimal('0.01'))
    else:
        average = Decimal('0.00')

    by_type = Counter(record.discount_type for record in discounted)
    return {
        'count': len(discounted),
        'total_amount': quantize(total_amount),
        'average_percentage': average,
        'by_type': {
            discount_type: by_type.get(discount_type, 0)
            for discount_type, _ in StudentPaymentRecord.DISCOUNT_TYPE_CHOICES
        },
    }
