from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import prefetch_related_objects
from django.utils import timezone

from apps.core.students.models import Student

from .amounts import ZERO, percentage_of, quantize
from .exceptions import AlreadyPaid, NotApplicable, RecordAlreadyExists, StaleRecord
from .ledger import apply_amounts, calculate_amounts, tuition_total
from .models import (
    PAYMENT_METHODS,
    TRANSPORT_CLOSE,
    TRANSPORT_FAR,
    MonthlyPayment,
    PaymentConfiguration,
    StudentPaymentRecord,
)
from .schedule import (
    apply_flat_price,
    build_transportation_schedule,
    build_tuition_schedule,
    is_month_index,
    parse_academic_year,
    reprice_schedule,
)
from .status import resolve_statuses

logger = logging.getLogger(__name__)

MONTH_FIELDS = [
    'amount',
    'status',
    'paid_amount',
    'payment_date',
    'payment_method',
    'receipt_number',
    'notes',
]


def _to_amount(value, field_name='amount') -> Decimal:
    try:
        amount = quantize(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError({field_name: 'Enter a valid amount.'})
    if not amount.is_finite():
        raise ValidationError({field_name: 'Enter a valid amount.'})
    if amount <= 0:
        raise ValidationError({field_name: 'Payment amount must be greater than zero.'})
    return amount


def _validate_payment_method(payment_method):
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError({'payment_method': f'Unsupported payment method "{payment_method}".'})


def _validate_transportation_type(transportation_type):
    if transportation_type not in (None, '', TRANSPORT_CLOSE, TRANSPORT_FAR):
        raise ValidationError({'transportation_type': f'Unknown transportation type "{transportation_type}".'})
    return transportation_type or None


def get_payment_configuration(school, academic_year) -> PaymentConfiguration:
    config = (
        PaymentConfiguration.objects.for_academic_year(school, academic_year)
        .filter(is_active=True)
        .prefetch_related('grade_tuitions')
        .first()
    )
    if not config:
        raise ValidationError(f'No active payment configuration for {academic_year}.')
    return config


def load_record(student, academic_year):
    return (
        StudentPaymentRecord.objects.filter(student=student, academic_year=academic_year)
        .select_related('school', 'student')
        .prefetch_related('monthly_payments')
        .first()
    )


def _reset_schedule_cache(record):
    cache = getattr(record, '_prefetched_objects_cache', {})
    cache.pop('monthly_payments', None)
    prefetch_related_objects([record], 'monthly_payments')


def lock_record(record, expected_version=None) -> StudentPaymentRecord:
    """Re-read ``record`` under a row lock; must run inside ``transaction.atomic``."""
    locked = (
        StudentPaymentRecord.objects.select_for_update()
        .select_related('school', 'student')
        .get(pk=record.pk)
    )
    if expected_version is not None and locked.version != expected_version:
        raise StaleRecord(expected_version, locked.version)
    prefetch_related_objects([locked], 'monthly_payments')
    return locked


def recompute(record, config, today=None):
    amounts = calculate_amounts(record)
    apply_amounts(record, amounts)
    changed_months = resolve_statuses(record, config, today=today)
    return amounts, changed_months


def persist_record(record, config, *, touched_months=(), bump_version=True, today=None):
    _, status_changes = recompute(record, config, today=today)

    rows = {}
    for row in list(touched_months) + status_changes:
        rows[row.pk] = row
    if rows:
        MonthlyPayment.objects.bulk_update(list(rows.values()), MONTH_FIELDS)

    if bump_version:
        record.version += 1
    record.save()
    return record


@transaction.atomic
def generate_payment_record(
    student: Student,
    academic_year,
    *,
    has_uniform=False,
    transportation_type=None,
    include_inscription_fee=False,
    created_by='',
    config: PaymentConfiguration | None = None,
):
    parse_academic_year(academic_year)
    transportation_type = _validate_transportation_type(transportation_type)

    if StudentPaymentRecord.objects.filter(student=student, academic_year=academic_year).exists():
        raise RecordAlreadyExists(
            f'Student {student.admission_number} already has a payment record for {academic_year}.'
        )

    config = config or get_payment_configuration(student.school, academic_year)
    if not student.grade:
        raise ValidationError(f'Student {student.admission_number} has no grade assigned.')

    grade_category = student.grade_category
    tuition_amount = config.tuition_for_grade(student.grade)
    uniform_price = config.uniform_price_for_purchase() if has_uniform else ZERO
    transport_price = (
        config.transportation_monthly_price(transportation_type) if transportation_type else ZERO
    )
    inscription_price = (
        config.inscription_fee_for_category(grade_category) if include_inscription_fee else ZERO
    )

    record = StudentPaymentRecord.objects.create(
        school=student.school,
        student=student,
        academic_year=academic_year,
        grade=student.grade,
        grade_category=grade_category,
        payment_type=StudentPaymentRecord.PAYMENT_TYPE_MONTHLY,
        tuition_amount=tuition_amount,
        uniform_purchased=bool(has_uniform),
        uniform_price=uniform_price,
        inscription_fee_applicable=bool(include_inscription_fee),
        inscription_fee_price=inscription_price,
        transportation_using=bool(transportation_type),
        transportation_type=transportation_type or '',
        transportation_monthly_price=transport_price,
        created_by=(created_by or '')[:150],
    )

    rows = build_tuition_schedule(
        tuition_amount, config.total_months, config.start_month, academic_year
    )
    if transportation_type:
        rows += build_transportation_schedule(
            transport_price, config.total_months, config.start_month, academic_year
        )
    for row in rows:
        row.record = record
    MonthlyPayment.objects.bulk_create(rows)

    prefetch_related_objects([record], 'monthly_payments')
    persist_record(record, config, bump_version=False)

    logger.info(
        'Generated payment record %s for student %s (%s)',
        record.pk,
        student.admission_number,
        academic_year,
    )
    return record


def _record_monthly(
    record,
    config,
    months,
    label,
    *,
    month_index,
    amount,
    payment_method,
    payment_date,
    receipt_number,
    notes,
):
    if not is_month_index(month_index, len(months)):
        raise ValidationError({'month_index': f'Month index must be between 0 and {len(months) - 1}.'})
    payment_amount = _to_amount(amount)
    _validate_payment_method(payment_method)

    row = months[month_index]
    if row.is_fully_paid:
        raise AlreadyPaid(f'{label} for {row.month_name} is already paid.')
    if payment_amount > row.remaining_amount:
        raise ValidationError(
            f'Payment exceeds the remaining {label.lower()} amount for {row.month_name} ({row.remaining_amount}).'
        )

    row.paid_amount = quantize(row.paid_amount + payment_amount)
    row.status = MonthlyPayment.STATUS_PAID if row.is_fully_paid else MonthlyPayment.STATUS_PARTIAL
    row.payment_date = payment_date or timezone.localdate()
    row.payment_method = payment_method
    if receipt_number:
        row.receipt_number = receipt_number[:50]
    if notes:
        row.notes = notes[:255]

    persist_record(record, config, touched_months=[row])
    logger.info(
        'Recorded %s payment of %s for record %s, month %s',
        label.lower(),
        payment_amount,
        record.pk,
        row.month_name,
    )
    return record


@transaction.atomic
def record_tuition_monthly(
    record,
    *,
    month_index,
    amount,
    payment_method,
    payment_date=None,
    receipt_number='',
    notes='',
    expected_version=None,
):
    record = lock_record(record, expected_version)
    if record.is_annual:
        raise NotApplicable('Tuition is settled under the annual plan for this record.')

    config = get_payment_configuration(record.school, record.academic_year)
    return _record_monthly(
        record,
        config,
        record.tuition_months,
        'Tuition',
        month_index=month_index,
        amount=amount,
        payment_method=payment_method,
        payment_date=payment_date,
        receipt_number=receipt_number,
        notes=notes,
    )


@transaction.atomic
def record_transportation_monthly(
    record,
    *,
    month_index,
    amount,
    payment_method,
    payment_date=None,
    receipt_number='',
    notes='',
    expected_version=None,
):
    record = lock_record(record, expected_version)
    if not record.transportation_using:
        raise NotApplicable('Transportation is not used by this student.')

    config = get_payment_configuration(record.school, record.academic_year)
    return _record_monthly(
        record,
        config,
        record.transportation_months,
        'Transportation',
        month_index=month_index,
        amount=amount,
        payment_method=payment_method,
        payment_date=payment_date,
        receipt_number=receipt_number,
        notes=notes,
    )


def _record_binary(record, prefix, label, *, payment_method, payment_date, receipt_number, expected_version):
    record = lock_record(record, expected_version)
    _validate_payment_method(payment_method)

    applicable_field = 'uniform_purchased' if prefix == 'uniform' else 'inscription_fee_applicable'
    if not getattr(record, applicable_field):
        raise NotApplicable(f'{label} is not applicable for this student.')
    if getattr(record, f'{prefix}_is_paid'):
        raise AlreadyPaid(f'{label} has already been paid.')

    config = get_payment_configuration(record.school, record.academic_year)
    setattr(record, f'{prefix}_is_paid', True)
    setattr(record, f'{prefix}_payment_date', payment_date or timezone.localdate())
    setattr(record, f'{prefix}_payment_method', payment_method)
    setattr(record, f'{prefix}_receipt_number', (receipt_number or '')[:50])

    persist_record(record, config)
    logger.info('Recorded %s payment for record %s', label.lower(), record.pk)
    return record


@transaction.atomic
def record_uniform(record, *, payment_method, payment_date=None, receipt_number='', expected_version=None):
    return _record_binary(
        record,
        'uniform',
        'Uniform',
        payment_method=payment_method,
        payment_date=payment_date,
        receipt_number=receipt_number,
        expected_version=expected_version,
    )


@transaction.atomic
def record_inscription_fee(record, *, payment_method, payment_date=None, receipt_number='', expected_version=None):
    return _record_binary(
        record,
        'inscription_fee',
        'Inscription fee',
        payment_method=payment_method,
        payment_date=payment_date,
        receipt_number=receipt_number,
        expected_version=expected_version,
    )


@transaction.atomic
def record_annual_tuition(
    record,
    *,
    payment_method,
    payment_date=None,
    receipt_number='',
    discount=None,
    expected_version=None,
):
    record = lock_record(record, expected_version)
    _validate_payment_method(payment_method)

    if record.annual_tuition_is_paid:
        raise AlreadyPaid('Annual tuition has already been paid.')
    if any(row.has_payment for row in record.tuition_months):
        raise ValidationError('Monthly tuition payments exist; the annual plan is no longer available.')

    config = get_payment_configuration(record.school, record.academic_year)
    payable = tuition_total(record)

    if discount is None:
        settlement = config.annual_discount_for(payable)
    else:
        try:
            settlement = quantize(discount)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError({'discount': 'Enter a valid discount amount.'})
        if not settlement.is_finite():
            raise ValidationError({'discount': 'Enter a valid discount amount.'})
    if settlement < 0 or (settlement > 0 and settlement >= payable):
        raise ValidationError({'discount': f'Annual discount must be between 0 and {payable}.'})

    record.payment_type = StudentPaymentRecord.PAYMENT_TYPE_ANNUAL
    record.annual_tuition_is_paid = True
    record.annual_tuition_payment_date = payment_date or timezone.localdate()
    record.annual_tuition_payment_method = payment_method
    record.annual_tuition_receipt_number = (receipt_number or '')[:50]
    record.annual_tuition_discount = settlement
    record.annual_tuition_amount = quantize(payable - settlement)

    persist_record(record, config)
    logger.info(
        'Recorded annual tuition of %s (discount %s) for record %s',
        record.annual_tuition_amount,
        settlement,
        record.pk,
    )
    return record


@transaction.atomic
def update_record_components(
    record,
    *,
    has_uniform,
    transportation_type,
    has_inscription_fee,
    expected_version=None,
):
    transportation_type = _validate_transportation_type(transportation_type)
    record = lock_record(record, expected_version)
    config = get_payment_configuration(record.school, record.academic_year)

    if record.uniform_purchased and not has_uniform and record.uniform_is_paid:
        raise AlreadyPaid('Uniform has already been paid and cannot be removed.')
    if record.inscription_fee_applicable and not has_inscription_fee and record.inscription_fee_is_paid:
        raise AlreadyPaid('Inscription fee has already been paid and cannot be removed.')

    current_type = record.transportation_type if record.transportation_using else None
    transport_changed = current_type != transportation_type
    if transport_changed and any(row.has_payment for row in record.transportation_months):
        raise AlreadyPaid('Transportation payments exist; the transportation plan cannot be changed.')

    uniform_price = config.uniform_price_for_purchase() if has_uniform and not record.uniform_purchased else None
    inscription_price = (
        config.inscription_fee_for_category(record.grade_category)
        if has_inscription_fee and not record.inscription_fee_applicable
        else None
    )
    transport_price = (
        config.transportation_monthly_price(transportation_type)
        if transport_changed and transportation_type
        else None
    )

    if uniform_price is not None:
        record.uniform_purchased = True
        record.uniform_price = uniform_price
    elif not has_uniform and record.uniform_purchased:
        record.uniform_purchased = False
        record.uniform_price = ZERO

    if inscription_price is not None:
        record.inscription_fee_applicable = True
        record.inscription_fee_price = inscription_price
    elif not has_inscription_fee and record.inscription_fee_applicable:
        record.inscription_fee_applicable = False
        record.inscription_fee_price = ZERO

    if transport_changed:
        MonthlyPayment.objects.filter(
            record=record,
            component=MonthlyPayment.COMPONENT_TRANSPORTATION,
        ).delete()
        if transportation_type:
            rows = build_transportation_schedule(
                transport_price, config.total_months, config.start_month, record.academic_year
            )
            for row in rows:
                row.record = record
            MonthlyPayment.objects.bulk_create(rows)
            record.transportation_using = True
            record.transportation_type = transportation_type
            record.transportation_monthly_price = transport_price
        else:
            record.transportation_using = False
            record.transportation_type = ''
            record.transportation_monthly_price = ZERO
        _reset_schedule_cache(record)

    persist_record(record, config)
    logger.info('Updated components of payment record %s', record.pk)
    return record


def reprice_record(record, config, *, update_unpaid_only=True):
    """Re-price ``record`` in memory from ``config``.

    Returns ``(changed_months, skipped)`` where ``skipped`` counts the
    components and months left untouched because they carry payments. The
    tuition base only moves while an unpaid month can absorb the new price,
    and a settled annual payment is left as it is.
    """
    keep_paid = update_unpaid_only
    skipped = 0
    changed_months = []

    if record.annual_tuition_is_paid:
        # Settled annual tuition is never re-priced.
        skipped += 1
    else:
        tuition_rows = record.tuition_months
        locked = [row for row in tuition_rows if keep_paid and row.has_payment]
        skipped += len(locked)

        previous = (record.tuition_amount, record.discount_amount)
        record.tuition_amount = config.tuition_for_grade(record.grade)
        if record.discount_enabled:
            record.discount_amount = percentage_of(record.tuition_amount, record.discount_percentage)
        total = tuition_total(record)
        locked_total = sum((quantize(row.amount) for row in locked), ZERO)

        if tuition_rows and (len(locked) == len(tuition_rows) or locked_total > total):
            # Paid months leave no room for the new price.
            record.tuition_amount, record.discount_amount = previous
        else:
            changed_months += reprice_schedule(tuition_rows, total, keep_paid=keep_paid)

    if record.uniform_purchased:
        if keep_paid and record.uniform_is_paid:
            skipped += 1
        elif config.uniform_enabled:
            record.uniform_price = quantize(config.uniform_price)

    if record.inscription_fee_applicable:
        if keep_paid and record.inscription_fee_is_paid:
            skipped += 1
        elif config.inscription_fee_enabled:
            record.inscription_fee_price = config.inscription_fee_for_category(record.grade_category)

    if record.transportation_using:
        price = config.transportation_monthly_price(record.transportation_type)
        transport_rows = record.transportation_months
        if keep_paid:
            skipped += sum(1 for row in transport_rows if row.has_payment)
        record.transportation_monthly_price = price
        changed_months += apply_flat_price(transport_rows, price, keep_paid=keep_paid)

    return changed_months, skipped


@transaction.atomic
def refresh_statuses(record, today=None):
    """Re-evaluate overdue state against the clock and store it if it moved."""
    record = lock_record(record)
    config = get_payment_configuration(record.school, record.academic_year)
    before = (record.overall_status, dict(record.component_statuses))

    _, changed_months = recompute(record, config, today=today)
    if changed_months:
        MonthlyPayment.objects.bulk_update(changed_months, ['status'])
    if changed_months or before != (record.overall_status, record.component_statuses):
        record.version += 1
        record.save()
    return record


@transaction.atomic
def delete_payment_record(record):
    record_id = record.pk
    StudentPaymentRecord.objects.filter(pk=record_id).delete()
    logger.info('Deleted payment record %s', record_id)
    return record_id
