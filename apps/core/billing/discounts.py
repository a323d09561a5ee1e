import logging
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from .amounts import ZERO, percentage_of, quantize, to_decimal
from .exceptions import AlreadyPaid, DiscountAlreadyApplied, NoDiscountToRemove
from .ledger import original_tuition, tuition_total
from .models import StudentPaymentRecord
from .schedule import reprice_schedule
from .services import get_payment_configuration, lock_record, persist_record

logger = logging.getLogger(__name__)

DISCOUNT_TYPES = (
    StudentPaymentRecord.DISCOUNT_MONTHLY,
    StudentPaymentRecord.DISCOUNT_ANNUAL,
)


def _validate_percentage(percentage) -> Decimal:
    try:
        value = to_decimal(percentage)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError({'percentage': 'Enter a valid discount percentage.'})
    if not value.is_finite() or not Decimal('1') <= value <= Decimal('100'):
        raise ValidationError({'percentage': 'Discount percentage must be between 1 and 100.'})
    return value.quantize(Decimal('0.01'))


def _reprice_tuition(record):
    if record.is_annual:
        return []
    rows = record.tuition_months
    total = tuition_total(record)
    open_rows = [row for row in rows if not row.has_payment]
    locked_total = sum((quantize(row.amount) for row in rows if row.has_payment), ZERO)
    if not open_rows or locked_total > total:
        raise AlreadyPaid('Paid tuition months leave no room to re-spread the tuition total.')
    return reprice_schedule(rows, total, keep_paid=True)


@transaction.atomic
def apply_discount(
    record,
    *,
    discount_type,
    percentage,
    notes='',
    applied_on=None,
    expected_version=None,
):
    """Enable the tuition discount on ``record``.

    The discount amount is taken from the tuition base stored on the
    record, never from the discounted total. Unpaid tuition months absorb
    the reduction; months with payments keep their scheduled amount.
    """
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError({'discount_type': f'Unknown discount type "{discount_type}".'})
    value = _validate_percentage(percentage)

    record = lock_record(record, expected_version)
    if record.discount_enabled:
        raise DiscountAlreadyApplied('A discount is already applied to this record.')
    if record.annual_tuition_is_paid:
        raise AlreadyPaid('Annual tuition has already been settled.')

    config = get_payment_configuration(record.school, record.academic_year)
    record.discount_enabled = True
    record.discount_type = discount_type
    record.discount_percentage = value
    record.discount_amount = percentage_of(original_tuition(record), value)
    record.discount_applied_date = applied_on or timezone.localdate()
    record.discount_notes = (notes or '')[:255]

    touched = _reprice_tuition(record)
    persist_record(record, config, touched_months=touched)
    logger.info(
        'Applied %s%% %s discount (%s) to payment record %s',
        value,
        discount_type,
        record.discount_amount,
        record.pk,
    )
    return record


@transaction.atomic
def remove_discount(record, expected_version=None):
    record = lock_record(record, expected_version)
    if not record.discount_enabled:
        raise NoDiscountToRemove('No discount is applied to this record.')
    if record.annual_tuition_is_paid:
        raise AlreadyPaid('Annual tuition has already been settled.')

    config = get_payment_configuration(record.school, record.academic_year)
    record.discount_enabled = False
    record.discount_type = ''
    record.discount_percentage = None
    record.discount_amount = ZERO
    record.discount_applied_date = None
    record.discount_notes = ''

    touched = _reprice_tuition(record)
    persist_record(record, config, touched_months=touched)
    logger.info('Removed discount from payment record %s', record.pk)
    return record


def discount_summary(record):
    original = original_tuition(record)
    if not record.discount_enabled:
        return {
            'original_amount': original,
            'discount_amount': ZERO,
            'final_amount': original,
            'percentage': None,
        }

    discount = quantize(record.discount_amount)
    final = original - discount
    return {
        'original_amount': original,
        'discount_amount': discount,
        'final_amount': final if final > 0 else ZERO,
        'percentage': record.discount_percentage,
    }
