"""Payment status derivation.

Two state shapes exist:

* monthly components (tuition, transportation):
  ``pending -> partial -> completed``, any non-completed state may become
  ``overdue`` once a due date plus the grace period has passed.
* binary components (uniform, inscription fee):
  ``not_applicable`` or ``pending -> completed``; never partial or overdue.

Nothing here touches the database; "today" defaults to the local date and
``resolve_statuses`` only assigns attributes on the objects it is given.
"""
from __future__ import annotations

from datetime import timedelta

from django.utils import timezone

from .amounts import (
    COMPONENT_INSCRIPTION_FEE,
    COMPONENT_TRANSPORTATION,
    COMPONENT_TUITION,
    COMPONENT_UNIFORM,
)
from .models import MonthlyPayment, StudentPaymentRecord

NOT_APPLICABLE = StudentPaymentRecord.STATUS_NOT_APPLICABLE
PENDING = StudentPaymentRecord.STATUS_PENDING
PARTIAL = StudentPaymentRecord.STATUS_PARTIAL
COMPLETED = StudentPaymentRecord.STATUS_COMPLETED
OVERDUE = StudentPaymentRecord.STATUS_OVERDUE


def is_overdue(due_date, grace_days, today) -> bool:
    if due_date is None:
        return False
    return today > due_date + timedelta(days=grace_days)


def month_status(row, today, grace_days) -> str:
    if row.is_fully_paid:
        return MonthlyPayment.STATUS_PAID
    if is_overdue(row.due_date, grace_days, today):
        return MonthlyPayment.STATUS_OVERDUE
    if row.has_payment:
        return MonthlyPayment.STATUS_PARTIAL
    return MonthlyPayment.STATUS_PENDING


def monthly_component_status(months, today, grace_days) -> str:
    if all(row.is_fully_paid for row in months):
        return COMPLETED
    if any(not row.is_fully_paid and is_overdue(row.due_date, grace_days, today) for row in months):
        return OVERDUE
    if any(row.has_payment for row in months):
        return PARTIAL
    return PENDING


def binary_component_status(applicable, is_paid) -> str:
    if not applicable:
        return NOT_APPLICABLE
    return COMPLETED if is_paid else PENDING


def overall_status(component_statuses, any_paid) -> str:
    applicable = [status for status in component_statuses.values() if status != NOT_APPLICABLE]
    if any(status == OVERDUE for status in applicable):
        return OVERDUE
    if applicable and all(status == COMPLETED for status in applicable):
        return COMPLETED
    if any_paid:
        return PARTIAL
    return PENDING


def tuition_status(record, today, grace_days) -> str:
    if record.is_annual:
        return COMPLETED if record.annual_tuition_is_paid else PENDING
    return monthly_component_status(record.tuition_months, today, grace_days)


def _any_paid(record) -> bool:
    if record.annual_tuition_is_paid:
        return True
    if record.uniform_purchased and record.uniform_is_paid:
        return True
    if record.inscription_fee_applicable and record.inscription_fee_is_paid:
        return True
    return any(row.has_payment for row in record.monthly_payments.all())


def resolve_statuses(record, config, today=None):
    """Assign month, component and overall statuses on ``record``.

    Returns the monthly rows whose status changed so the caller can persist
    them.
    """
    today = today or timezone.localdate()
    grace_days = config.grace_period_days

    rows = list(record.transportation_months) if record.transportation_using else []
    if not record.is_annual:
        rows.extend(record.tuition_months)

    changed_months = []
    for row in rows:
        status = month_status(row, today, grace_days)
        if row.status != status:
            row.status = status
            changed_months.append(row)

    statuses = {
        COMPONENT_TUITION: tuition_status(record, today, grace_days),
        COMPONENT_UNIFORM: binary_component_status(record.uniform_purchased, record.uniform_is_paid),
        COMPONENT_TRANSPORTATION: (
            monthly_component_status(record.transportation_months, today, grace_days)
            if record.transportation_using
            else NOT_APPLICABLE
        ),
        COMPONENT_INSCRIPTION_FEE: binary_component_status(
            record.inscription_fee_applicable,
            record.inscription_fee_is_paid,
        ),
    }

    record.tuition_status = statuses[COMPONENT_TUITION]
    record.uniform_status = statuses[COMPONENT_UNIFORM]
    record.transportation_status = statuses[COMPONENT_TRANSPORTATION]
    record.inscription_fee_status = statuses[COMPONENT_INSCRIPTION_FEE]
    record.overall_status = overall_status(statuses, _any_paid(record))
    return changed_months
