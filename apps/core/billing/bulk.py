import logging

from django.core.exceptions import ValidationError
from django.db import transaction

from apps.core.students.models import Student

from .models import StudentPaymentRecord
from .schedule import parse_academic_year
from .services import (
    delete_payment_record,
    generate_payment_record,
    get_payment_configuration,
    lock_record,
    persist_record,
    reprice_record,
)

logger = logging.getLogger(__name__)


def _error_message(exc):
    if isinstance(exc, ValidationError):
        return '; '.join(exc.messages)
    return str(exc)


def _error_entry(student_id, exc):
    return {'student_id': str(student_id), 'error': _error_message(exc)}


def generate_missing(
    school,
    academic_year,
    *,
    default_uniform=False,
    default_transportation=None,
    default_inscription_fee=False,
    created_by='',
):
    """Create a payment record for every active student that lacks one.

    Each student runs in its own savepoint; a failure is logged and reported
    in ``errors`` without stopping the batch.
    """
    parse_academic_year(academic_year)
    config = get_payment_configuration(school, academic_year)

    existing = StudentPaymentRecord.objects.for_academic_year(school, academic_year).values_list(
        'student_id',
        flat=True,
    )
    students = (
        Student.objects.filter(school=school, is_active=True, is_archived=False)
        .exclude(pk__in=existing)
        .select_related('school')
        .order_by('admission_number')
    )

    results = {'success': 0, 'skipped': 0, 'errors': []}
    for student in students:
        if not student.grade:
            results['skipped'] += 1
            continue
        try:
            with transaction.atomic():
                generate_payment_record(
                    student,
                    academic_year,
                    has_uniform=default_uniform,
                    transportation_type=default_transportation,
                    include_inscription_fee=default_inscription_fee,
                    created_by=created_by,
                    config=config,
                )
        except Exception as exc:
            logger.exception('Payment record generation failed for student %s', student.pk)
            results['errors'].append(_error_entry(student.pk, exc))
        else:
            results['success'] += 1

    logger.info(
        'Generated %s payment records for %s (%s skipped, %s failed)',
        results['success'],
        academic_year,
        results['skipped'],
        len(results['errors']),
    )
    return results


def update_existing(school, academic_year, *, update_unpaid_only=True):
    """Re-price every record of the year from the current configuration.

    With ``update_unpaid_only`` paid uniform and inscription prices and every
    month carrying a payment are left as they are; each of them counts once
    in ``skipped``. Settled annual tuition is never re-priced.
    """
    config = get_payment_configuration(school, academic_year)
    records = StudentPaymentRecord.objects.for_academic_year(school, academic_year).order_by('id')

    results = {'updated': 0, 'skipped': 0, 'errors': []}
    for record in records:
        try:
            with transaction.atomic():
                locked = lock_record(record)
                touched, skipped = reprice_record(locked, config, update_unpaid_only=update_unpaid_only)
                persist_record(locked, config, touched_months=touched)
        except Exception as exc:
            logger.exception('Payment record update failed for record %s', record.pk)
            results['errors'].append(_error_entry(record.student_id, exc))
        else:
            results['updated'] += 1
            results['skipped'] += skipped

    logger.info(
        'Updated %s payment records for %s (%s protected items, %s failed)',
        results['updated'],
        academic_year,
        results['skipped'],
        len(results['errors']),
    )
    return results


def delete_all(school, academic_year):
    records = StudentPaymentRecord.objects.for_academic_year(school, academic_year).order_by('id')

    results = {'deleted': 0, 'errors': []}
    for record in records:
        try:
            with transaction.atomic():
                delete_payment_record(record)
        except Exception as exc:
            logger.exception('Payment record deletion failed for record %s', record.pk)
            results['errors'].append(_error_entry(record.student_id, exc))
        else:
            results['deleted'] += 1

    logger.warning('Deleted %s payment records for %s', results['deleted'], academic_year)
    return results
