from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone

from apps.core.schools.models import School
from apps.core.students.models import Student

from .amounts import ComponentAmounts, allocate_amounts
from .bulk import delete_all, generate_missing, update_existing
from .discounts import apply_discount, discount_summary, remove_discount
from .exceptions import (
    AlreadyPaid,
    DiscountAlreadyApplied,
    NoDiscountToRemove,
    NotApplicable,
    RecordAlreadyExists,
    StaleRecord,
)
from .invoices import InvoiceScope, project_invoice
from .models import (
    PAYMENT_METHOD_CASH,
    TRANSPORT_CLOSE,
    TRANSPORT_FAR,
    GradeTuition,
    MonthlyPayment,
    PaymentConfiguration,
    StudentPaymentRecord,
)
from .schedule import academic_months, parse_academic_year
from .services import (
    generate_payment_record,
    get_payment_configuration,
    load_record,
    record_annual_tuition,
    record_inscription_fee,
    record_transportation_monthly,
    record_tuition_monthly,
    record_uniform,
    refresh_statuses,
    update_record_components,
)
from .stats import (
    discount_analysis,
    financial_summary,
    grade_category_rollup,
    payment_history,
    status_counts,
)


class BillingBaseTestCase(TestCase):
    def setUp(self):
        self.today = timezone.localdate()
        # Next academic year, so every due date lies in the future.
        self.first_year = self.today.year + 1
        self.academic_year = f'{self.first_year}-{self.first_year + 1}'

        self.school = School.objects.create(name='Billing School', code='billing_school')
        self.config = PaymentConfiguration.objects.create(
            school=self.school,
            academic_year=self.academic_year,
            uniform_enabled=True,
            uniform_price=Decimal('200.00'),
            transportation_enabled=True,
            close_enabled=True,
            close_monthly_price=Decimal('50.00'),
            far_enabled=True,
            far_monthly_price=Decimal('80.00'),
            inscription_fee_enabled=True,
            inscription_fee_maternelle_primaire=Decimal('100.00'),
            inscription_fee_college_lycee=Decimal('150.00'),
        )
        GradeTuition.objects.create(
            configuration=self.config,
            grade=Student.GRADE_PRIMARY_1,
            amount=Decimal('1000.00'),
        )
        GradeTuition.objects.create(
            configuration=self.config,
            grade=Student.GRADE_COLLEGE_7,
            amount=Decimal('1500.00'),
        )

        self.student = Student.objects.create(
            school=self.school,
            admission_number='BIL-001',
            first_name='Amine',
            grade=Student.GRADE_PRIMARY_1,
        )

    def generate(self, student=None, **kwargs):
        return generate_payment_record(student or self.student, self.academic_year, **kwargs)

    def current_config(self):
        return get_payment_configuration(self.school, self.academic_year)

    def raise_grade_tuition(self, amount, grade=Student.GRADE_PRIMARY_1):
        GradeTuition.objects.filter(configuration=self.config, grade=grade).update(amount=Decimal(amount))

    def pay_every_tuition_month(self, record):
        for row in record.tuition_months:
            record = record_tuition_monthly(
                record,
                month_index=row.month_index,
                amount=row.amount,
                payment_method=PAYMENT_METHOD_CASH,
            )
        return record

    def assertLedgerConsistent(self, record):
        record = load_record(record.student, record.academic_year)
        components = ('tuition', 'uniform', 'transportation', 'inscription_fee')
        for bucket in ('total', 'paid', 'remaining'):
            self.assertEqual(
                getattr(record, f'{bucket}_grand_total'),
                sum(getattr(record, f'{bucket}_{component}') for component in components),
                bucket,
            )
        for component in components:
            expected = getattr(record, f'total_{component}') - getattr(record, f'paid_{component}')
            self.assertEqual(
                getattr(record, f'remaining_{component}'),
                max(expected, Decimal('0.00')),
                component,
            )
        if not record.is_annual and record.tuition_months:
            self.assertEqual(sum(row.amount for row in record.tuition_months), record.total_tuition)
        if record.tuition_status == StudentPaymentRecord.STATUS_COMPLETED:
            self.assertEqual(record.remaining_tuition, Decimal('0.00'))
        return record


class ScheduleTests(BillingBaseTestCase):
    def test_allocation_gives_extra_cents_to_first_months(self):
        self.assertEqual(
            allocate_amounts(Decimal('100.00'), 3),
            [Decimal('33.34'), Decimal('33.33'), Decimal('33.33')],
        )
        self.assertEqual(sum(allocate_amounts(Decimal('1000.01'), 10)), Decimal('1000.01'))

    def test_allocation_rejects_negative_total(self):
        with self.assertRaises(ValueError):
            allocate_amounts(Decimal('-1.00'), 2)

    def test_academic_months_roll_into_next_year(self):
        months = list(academic_months(9, 10, '2024-2025'))
        self.assertEqual(months[0], (0, 2024, 9))
        self.assertEqual(months[4], (4, 2025, 1))
        self.assertEqual(months[-1], (9, 2025, 6))

    def test_parse_academic_year_requires_consecutive_years(self):
        self.assertEqual(parse_academic_year('2024-2025'), (2024, 2025))
        for value in ('2024-2026', '2024/2025', ''):
            with self.assertRaises(ValidationError):
                parse_academic_year(value)

    def test_configuration_window_must_match_total_months(self):
        self.config.total_months = 9
        with self.assertRaises(ValidationError):
            self.config.clean()


class RecordGenerationTests(BillingBaseTestCase):
    def test_generation_builds_tuition_schedule(self):
        record = self.generate()

        months = record.tuition_months
        self.assertEqual(len(months), 10)
        self.assertTrue(all(row.amount == Decimal('100.00') for row in months))
        self.assertEqual(months[0].month_name, 'September')
        self.assertEqual(months[0].due_date.isoformat(), f'{self.first_year}-09-01')
        self.assertEqual(months[4].month_name, 'January')
        self.assertEqual(months[4].due_date.year, self.first_year + 1)

        self.assertEqual(record.total_tuition, Decimal('1000.00'))
        self.assertEqual(record.total_uniform, Decimal('0.00'))
        self.assertEqual(record.total_grand_total, Decimal('1000.00'))
        self.assertEqual(record.overall_status, StudentPaymentRecord.STATUS_PENDING)
        self.assertEqual(record.uniform_status, StudentPaymentRecord.STATUS_NOT_APPLICABLE)
        self.assertEqual(record.version, 1)

    def test_generation_with_every_component(self):
        record = self.generate(
            has_uniform=True,
            transportation_type=TRANSPORT_CLOSE,
            include_inscription_fee=True,
        )

        self.assertEqual(len(record.transportation_months), 10)
        self.assertEqual(record.total_uniform, Decimal('200.00'))
        self.assertEqual(record.total_transportation, Decimal('500.00'))
        self.assertEqual(record.transportation_total, Decimal('500.00'))
        self.assertEqual(record.total_inscription_fee, Decimal('100.00'))
        self.assertEqual(record.total_grand_total, Decimal('1800.00'))
        self.assertEqual(record.remaining_grand_total, Decimal('1800.00'))

    def test_duplicate_generation_is_rejected(self):
        self.generate()
        with self.assertRaises(RecordAlreadyExists):
            self.generate()

    def test_disabled_component_blocks_generation(self):
        self.config.uniform_enabled = False
        self.config.save()

        with self.assertRaises(ValidationError):
            self.generate(has_uniform=True)
        self.assertFalse(StudentPaymentRecord.objects.filter(student=self.student).exists())

    def test_missing_grade_mapping_blocks_generation(self):
        self.student.grade = Student.GRADE_LYCEE_1
        self.student.save()

        with self.assertRaises(ValidationError):
            self.generate()
        self.assertFalse(StudentPaymentRecord.objects.exists())


class DiscountTests(BillingBaseTestCase):
    def test_discount_reduces_tuition_only(self):
        record = self.generate(has_uniform=True)
        record = apply_discount(record, discount_type='monthly', percentage=10)

        self.assertEqual(record.discount_amount, Decimal('100.00'))
        self.assertEqual(record.total_tuition, Decimal('900.00'))
        self.assertEqual(record.total_uniform, Decimal('200.00'))
        self.assertTrue(all(row.amount == Decimal('90.00') for row in record.tuition_months))

        record = record_tuition_monthly(record, month_index=0, amount=90, payment_method=PAYMENT_METHOD_CASH)
        record = record_tuition_monthly(record, month_index=1, amount=90, payment_method=PAYMENT_METHOD_CASH)
        self.assertEqual(record.paid_tuition, Decimal('180.00'))
        self.assertEqual(record.remaining_tuition, Decimal('720.00'))

    def test_apply_then_remove_restores_tuition(self):
        record = self.generate()
        record = apply_discount(record, discount_type='annual', percentage='12.5', notes='Sibling')
        self.assertEqual(record.total_tuition, Decimal('875.00'))

        record = remove_discount(record)
        self.assertFalse(record.discount_enabled)
        self.assertIsNone(record.discount_percentage)
        self.assertEqual(record.total_tuition, Decimal('1000.00'))
        self.assertEqual(sum(row.amount for row in record.tuition_months), Decimal('1000.00'))

    def test_discount_keeps_paid_months(self):
        record = self.generate()
        record = record_tuition_monthly(record, month_index=0, amount=100, payment_method=PAYMENT_METHOD_CASH)
        record = apply_discount(record, discount_type='monthly', percentage=10)

        months = record.tuition_months
        self.assertEqual(months[0].amount, Decimal('100.00'))
        self.assertEqual(sum(row.amount for row in months), Decimal('900.00'))

    def test_second_discount_is_rejected(self):
        record = self.generate()
        record = apply_discount(record, discount_type='monthly', percentage=10)
        with self.assertRaises(DiscountAlreadyApplied):
            apply_discount(record, discount_type='monthly', percentage=20)

    def test_remove_without_discount_is_rejected(self):
        record = self.generate()
        with self.assertRaises(NoDiscountToRemove):
            remove_discount(record)

    def test_discount_input_is_validated(self):
        record = self.generate()
        for percentage in (0, 101, 'abc', 'NaN', 'Infinity', '-Infinity'):
            with self.assertRaises(ValidationError):
                apply_discount(record, discount_type='monthly', percentage=percentage)
        with self.assertRaises(ValidationError):
            apply_discount(record, discount_type='weekly', percentage=10)

        record.refresh_from_db()
        self.assertFalse(record.discount_enabled)
        self.assertEqual(record.version, 1)

    def test_apply_then_remove_round_trips_for_any_percentage(self):
        GradeTuition.objects.create(
            configuration=self.config,
            grade=Student.GRADE_MATERNAL,
            amount=Decimal('1000.01'),
        )
        maternal = Student.objects.create(
            school=self.school,
            admission_number='BIL-010',
            first_name='Lina',
            grade=Student.GRADE_MATERNAL,
        )
        cases = [(self.student, percentage) for percentage in ('1', '5', '12.5', '33.33', '50', '99.99', '100')]
        cases.append((maternal, '33.33'))

        for student, percentage in cases:
            with self.subTest(grade=student.grade, percentage=percentage):
                record = load_record(student, self.academic_year) or self.generate(student)
                original = record.total_tuition

                record = apply_discount(record, discount_type='monthly', percentage=percentage)
                self.assertLedgerConsistent(record)
                self.assertEqual(record.total_tuition, original - record.discount_amount)

                record = remove_discount(record)
                record = self.assertLedgerConsistent(record)
                self.assertEqual(record.total_tuition, original)
                self.assertEqual(sum(row.amount for row in record.tuition_months), original)

    def test_discount_needs_an_open_tuition_month(self):
        record = self.pay_every_tuition_month(self.generate())
        with self.assertRaises(AlreadyPaid):
            apply_discount(record, discount_type='monthly', percentage=10)

        record = self.assertLedgerConsistent(record)
        self.assertFalse(record.discount_enabled)
        self.assertEqual(record.total_tuition, Decimal('1000.00'))

    def test_discount_over_paid_months_is_rejected(self):
        record = self.generate()
        for month_index in range(9):
            record = record_tuition_monthly(
                record,
                month_index=month_index,
                amount=100,
                payment_method=PAYMENT_METHOD_CASH,
            )
        with self.assertRaises(AlreadyPaid):
            apply_discount(record, discount_type='monthly', percentage=50)

        record = apply_discount(record, discount_type='monthly', percentage=5)
        record = self.assertLedgerConsistent(record)
        self.assertEqual(record.tuition_months[-1].amount, Decimal('50.00'))

    def test_discount_summary_uses_stored_tuition(self):
        record = self.generate()
        record = apply_discount(record, discount_type='monthly', percentage=10)
        self.raise_grade_tuition('1200.00')

        summary = discount_summary(record)
        self.assertEqual(summary['original_amount'], Decimal('1000.00'))
        self.assertEqual(summary['discount_amount'], Decimal('100.00'))
        self.assertEqual(summary['final_amount'], Decimal('900.00'))


class PaymentRecordingTests(BillingBaseTestCase):
    def test_partial_then_full_monthly_payment(self):
        record = self.generate()
        record = record_tuition_monthly(record, month_index=0, amount='40', payment_method=PAYMENT_METHOD_CASH)

        self.assertEqual(record.tuition_months[0].status, MonthlyPayment.STATUS_PARTIAL)
        self.assertEqual(record.tuition_status, StudentPaymentRecord.STATUS_PARTIAL)
        self.assertEqual(record.overall_status, StudentPaymentRecord.STATUS_PARTIAL)

        record = record_tuition_monthly(record, month_index=0, amount='60', payment_method=PAYMENT_METHOD_CASH)
        self.assertEqual(record.tuition_months[0].status, MonthlyPayment.STATUS_PAID)
        self.assertEqual(record.paid_tuition, Decimal('100.00'))
        self.assertEqual(record.remaining_tuition, Decimal('900.00'))

        stored = MonthlyPayment.objects.get(record=record, component='tuition', month_index=0)
        self.assertEqual(stored.paid_amount, Decimal('100.00'))

    def test_monthly_payment_is_validated(self):
        record = self.generate()
        with self.assertRaises(ValidationError):
            record_tuition_monthly(record, month_index=10, amount=10, payment_method=PAYMENT_METHOD_CASH)
        with self.assertRaises(ValidationError):
            record_tuition_monthly(record, month_index=0, amount=0, payment_method=PAYMENT_METHOD_CASH)
        with self.assertRaises(ValidationError):
            record_tuition_monthly(record, month_index=0, amount=10, payment_method='barter')
        with self.assertRaises(ValidationError):
            record_tuition_monthly(record, month_index=0, amount='100.01', payment_method=PAYMENT_METHOD_CASH)

        record.refresh_from_db()
        self.assertEqual(record.paid_tuition, Decimal('0.00'))
        self.assertEqual(record.version, 1)

    def test_non_finite_amounts_are_rejected(self):
        record = self.generate(transportation_type=TRANSPORT_CLOSE)
        for amount in ('NaN', 'sNaN', 'Infinity'):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError):
                    record_tuition_monthly(record, month_index=0, amount=amount, payment_method=PAYMENT_METHOD_CASH)
                with self.assertRaises(ValidationError):
                    record_transportation_monthly(
                        record,
                        month_index=0,
                        amount=amount,
                        payment_method=PAYMENT_METHOD_CASH,
                    )
                with self.assertRaises(ValidationError):
                    record_annual_tuition(record, payment_method=PAYMENT_METHOD_CASH, discount=amount)

        record = self.assertLedgerConsistent(record)
        self.assertEqual(record.paid_grand_total, Decimal('0.00'))
        self.assertEqual(record.version, 1)

    def test_boolean_month_index_is_rejected(self):
        record = self.generate(transportation_type=TRANSPORT_CLOSE)
        for month_index in (True, False, 1.0, '1'):
            with self.subTest(month_index=month_index):
                with self.assertRaises(ValidationError):
                    record_tuition_monthly(
                        record,
                        month_index=month_index,
                        amount=10,
                        payment_method=PAYMENT_METHOD_CASH,
                    )
                with self.assertRaises(ValidationError):
                    record_transportation_monthly(
                        record,
                        month_index=month_index,
                        amount=10,
                        payment_method=PAYMENT_METHOD_CASH,
                    )

        record.refresh_from_db()
        self.assertEqual(record.paid_grand_total, Decimal('0.00'))

    def test_paid_month_cannot_be_paid_again(self):
        record = self.generate()
        record = record_tuition_monthly(record, month_index=2, amount=100, payment_method=PAYMENT_METHOD_CASH)
        with self.assertRaises(AlreadyPaid):
            record_tuition_monthly(record, month_index=2, amount=1, payment_method=PAYMENT_METHOD_CASH)

    def test_transportation_requires_opt_in(self):
        record = self.generate()
        with self.assertRaises(NotApplicable):
            record_transportation_monthly(record, month_index=0, amount=50, payment_method=PAYMENT_METHOD_CASH)

    def test_transportation_payment(self):
        record = self.generate(transportation_type=TRANSPORT_FAR)
        record = record_transportation_monthly(
            record,
            month_index=3,
            amount=80,
            payment_method=PAYMENT_METHOD_CASH,
            receipt_number='TR-4',
        )
        self.assertEqual(record.paid_transportation, Decimal('80.00'))
        self.assertEqual(record.remaining_transportation, Decimal('720.00'))
        self.assertEqual(record.transportation_status, StudentPaymentRecord.STATUS_PARTIAL)

    def test_inscription_fee_pending_to_completed(self):
        record = self.generate(include_inscription_fee=True)
        self.assertEqual(record.inscription_fee_status, StudentPaymentRecord.STATUS_PENDING)

        record = record_inscription_fee(record, payment_method=PAYMENT_METHOD_CASH)
        self.assertEqual(record.inscription_fee_status, StudentPaymentRecord.STATUS_COMPLETED)
        self.assertEqual(record.paid_inscription_fee, Decimal('100.00'))
        self.assertEqual(record.remaining_inscription_fee, Decimal('0.00'))
        self.assertEqual(record.inscription_fee_payment_date, self.today)

    def test_uniform_binary_guards(self):
        record = self.generate()
        with self.assertRaises(NotApplicable):
            record_uniform(record, payment_method=PAYMENT_METHOD_CASH)

        record = self.generate(student=Student.objects.create(
            school=self.school,
            admission_number='BIL-002',
            first_name='Sara',
            grade=Student.GRADE_COLLEGE_7,
        ), has_uniform=True)
        record = record_uniform(record, payment_method=PAYMENT_METHOD_CASH)
        self.assertEqual(record.uniform_status, StudentPaymentRecord.STATUS_COMPLETED)
        with self.assertRaises(AlreadyPaid):
            record_uniform(record, payment_method=PAYMENT_METHOD_CASH)

    def test_annual_tuition_with_configured_discount(self):
        self.config.annual_discount_enabled = True
        self.config.annual_discount_percentage = Decimal('5.00')
        self.config.save()

        record = self.generate()
        record = record_annual_tuition(record, payment_method=PAYMENT_METHOD_CASH, receipt_number='AN-1')

        self.assertEqual(record.payment_type, StudentPaymentRecord.PAYMENT_TYPE_ANNUAL)
        self.assertEqual(record.annual_tuition_discount, Decimal('50.00'))
        self.assertEqual(record.annual_tuition_amount, Decimal('950.00'))
        self.assertEqual(record.total_tuition, Decimal('950.00'))
        self.assertEqual(record.paid_tuition, Decimal('950.00'))
        self.assertEqual(record.remaining_tuition, Decimal('0.00'))
        self.assertEqual(record.tuition_status, StudentPaymentRecord.STATUS_COMPLETED)
        self.assertEqual(record.overall_status, StudentPaymentRecord.STATUS_COMPLETED)

        with self.assertRaises(NotApplicable):
            record_tuition_monthly(record, month_index=0, amount=10, payment_method=PAYMENT_METHOD_CASH)
        with self.assertRaises(AlreadyPaid):
            record_annual_tuition(record, payment_method=PAYMENT_METHOD_CASH)

    def test_annual_tuition_excludes_monthly_history(self):
        record = self.generate()
        record = record_tuition_monthly(record, month_index=0, amount=10, payment_method=PAYMENT_METHOD_CASH)
        with self.assertRaises(ValidationError):
            record_annual_tuition(record, payment_method=PAYMENT_METHOD_CASH)

    def test_annual_discount_must_stay_below_payable(self):
        record = self.generate()
        with self.assertRaises(ValidationError):
            record_annual_tuition(record, payment_method=PAYMENT_METHOD_CASH, discount='1000')
        with self.assertRaises(ValidationError):
            record_annual_tuition(record, payment_method=PAYMENT_METHOD_CASH, discount='-1')

    def test_stale_version_is_rejected(self):
        record = self.generate(has_uniform=True)
        record = record_uniform(record, payment_method=PAYMENT_METHOD_CASH, expected_version=1)
        self.assertEqual(record.version, 2)

        with self.assertRaises(StaleRecord):
            apply_discount(record, discount_type='monthly', percentage=10, expected_version=1)

    def test_overdue_after_grace_period(self):
        record = self.generate()
        due_date = record.tuition_months[0].due_date

        record = refresh_statuses(record, today=due_date + timedelta(days=5))
        self.assertEqual(record.tuition_status, StudentPaymentRecord.STATUS_PENDING)

        record = refresh_statuses(record, today=due_date + timedelta(days=6))
        self.assertEqual(record.tuition_months[0].status, MonthlyPayment.STATUS_OVERDUE)
        self.assertEqual(record.tuition_status, StudentPaymentRecord.STATUS_OVERDUE)
        self.assertEqual(record.overall_status, StudentPaymentRecord.STATUS_OVERDUE)


class ComponentUpdateTests(BillingBaseTestCase):
    def test_add_transportation(self):
        record = self.generate()
        record = update_record_components(
            record,
            has_uniform=True,
            transportation_type=TRANSPORT_FAR,
            has_inscription_fee=False,
        )
        self.assertEqual(record.total_transportation, Decimal('800.00'))
        self.assertEqual(record.total_uniform, Decimal('200.00'))
        self.assertEqual(record.transportation_status, StudentPaymentRecord.STATUS_PENDING)
        self.assertEqual(len(record.transportation_months), 10)

    def test_paid_transportation_cannot_be_removed(self):
        record = self.generate(transportation_type=TRANSPORT_CLOSE)
        record = record_transportation_monthly(record, month_index=0, amount=50, payment_method=PAYMENT_METHOD_CASH)

        with self.assertRaises(AlreadyPaid):
            update_record_components(
                record,
                has_uniform=False,
                transportation_type=None,
                has_inscription_fee=False,
            )

    def test_paid_uniform_cannot_be_removed(self):
        record = self.generate(has_uniform=True)
        record = record_uniform(record, payment_method=PAYMENT_METHOD_CASH)

        with self.assertRaises(AlreadyPaid):
            update_record_components(
                record,
                has_uniform=False,
                transportation_type=None,
                has_inscription_fee=False,
            )


class BulkOperationTests(BillingBaseTestCase):
    def create_students(self):
        students = [self.student]
        for number, grade in enumerate(
            [Student.GRADE_PRIMARY_1, Student.GRADE_LYCEE_1, Student.GRADE_COLLEGE_7, Student.GRADE_PRIMARY_1],
            start=2,
        ):
            students.append(Student.objects.create(
                school=self.school,
                admission_number=f'BIL-00{number}',
                first_name=f'Student {number}',
                grade=grade,
            ))
        return students

    def test_generate_missing_isolates_failures(self):
        students = self.create_students()

        results = generate_missing(self.school, self.academic_year)

        self.assertEqual(results['success'], 4)
        self.assertEqual(results['skipped'], 0)
        self.assertEqual(len(results['errors']), 1)
        self.assertEqual(results['errors'][0]['student_id'], str(students[2].pk))
        self.assertEqual(StudentPaymentRecord.objects.filter(academic_year=self.academic_year).count(), 4)

    def test_generate_missing_skips_students_without_grade(self):
        Student.objects.create(school=self.school, admission_number='BIL-009', first_name='Nour')
        self.generate()

        results = generate_missing(self.school, self.academic_year)
        self.assertEqual(results, {'success': 0, 'skipped': 1, 'errors': []})

    def test_update_existing_keeps_paid_months(self):
        record = self.generate()
        record_tuition_monthly(record, month_index=0, amount=100, payment_method=PAYMENT_METHOD_CASH)
        GradeTuition.objects.filter(
            configuration=self.config,
            grade=Student.GRADE_PRIMARY_1,
        ).update(amount=Decimal('1200.00'))

        results = update_existing(self.school, self.academic_year)

        self.assertEqual(results, {'updated': 1, 'skipped': 1, 'errors': []})
        amounts = list(
            MonthlyPayment.objects.filter(record=record, component='tuition')
            .order_by('month_index')
            .values_list('amount', flat=True)
        )
        self.assertEqual(amounts[0], Decimal('100.00'))
        self.assertEqual(amounts[1], Decimal('122.23'))
        self.assertEqual(amounts[-1], Decimal('122.22'))
        self.assertEqual(sum(amounts), Decimal('1200.00'))

        record = self.assertLedgerConsistent(record)
        self.assertEqual(record.total_tuition, Decimal('1200.00'))
        self.assertEqual(record.paid_tuition, Decimal('100.00'))

    def test_configuration_change_waits_for_update_existing(self):
        record = self.generate(has_uniform=True)
        record = record_tuition_monthly(record, month_index=0, amount=100, payment_method=PAYMENT_METHOD_CASH)
        self.raise_grade_tuition('1200.00')

        record = record_uniform(record, payment_method=PAYMENT_METHOD_CASH)
        record = self.assertLedgerConsistent(record)
        self.assertEqual(record.tuition_amount, Decimal('1000.00'))
        self.assertEqual(record.total_tuition, Decimal('1000.00'))
        self.assertEqual(record.remaining_tuition, Decimal('900.00'))

        update_existing(self.school, self.academic_year)
        record = self.assertLedgerConsistent(record)
        self.assertEqual(record.tuition_amount, Decimal('1200.00'))
        self.assertEqual(record.total_tuition, Decimal('1200.00'))

    def test_update_existing_leaves_settled_annual_tuition(self):
        record = self.generate()
        record = record_annual_tuition(record, payment_method=PAYMENT_METHOD_CASH, receipt_number='AN-2')
        self.raise_grade_tuition('1200.00')

        results = update_existing(self.school, self.academic_year)

        self.assertEqual(results, {'updated': 1, 'skipped': 1, 'errors': []})
        record = self.assertLedgerConsistent(record)
        self.assertEqual(record.total_tuition, Decimal('1000.00'))
        self.assertEqual(record.paid_tuition, Decimal('1000.00'))
        self.assertEqual(record.remaining_tuition, Decimal('0.00'))
        self.assertEqual(record.tuition_status, StudentPaymentRecord.STATUS_COMPLETED)

    def test_update_existing_leaves_fully_paid_schedule(self):
        record = self.pay_every_tuition_month(self.generate(has_uniform=True))
        self.raise_grade_tuition('1200.00')

        record = record_uniform(record, payment_method=PAYMENT_METHOD_CASH)
        record = self.assertLedgerConsistent(record)
        self.assertEqual(record.total_tuition, Decimal('1000.00'))

        results = update_existing(self.school, self.academic_year)

        self.assertEqual(results, {'updated': 1, 'skipped': 11, 'errors': []})
        record = self.assertLedgerConsistent(record)
        self.assertEqual(record.tuition_amount, Decimal('1000.00'))
        self.assertEqual(record.total_tuition, Decimal('1000.00'))
        self.assertEqual(record.remaining_tuition, Decimal('0.00'))
        self.assertEqual(record.tuition_status, StudentPaymentRecord.STATUS_COMPLETED)

    def test_update_existing_keeps_base_below_paid_months(self):
        record = self.generate()
        for month_index in range(6):
            record = record_tuition_monthly(
                record,
                month_index=month_index,
                amount=100,
                payment_method=PAYMENT_METHOD_CASH,
            )
        self.raise_grade_tuition('500.00')

        update_existing(self.school, self.academic_year)

        record = self.assertLedgerConsistent(record)
        self.assertEqual(record.tuition_amount, Decimal('1000.00'))
        self.assertEqual(record.total_tuition, Decimal('1000.00'))

    def test_delete_all(self):
        self.create_students()
        generate_missing(self.school, self.academic_year)

        results = delete_all(self.school, self.academic_year)
        self.assertEqual(results, {'deleted': 4, 'errors': []})
        self.assertFalse(MonthlyPayment.objects.exists())

    def test_billing_bulk_command(self):
        out = StringIO()
        call_command(
            'billing_bulk',
            'generate',
            '--school',
            self.school.code,
            '--academic-year',
            self.academic_year,
            '--uniform',
            stdout=out,
        )
        self.assertIn('1 generated', out.getvalue())
        record = StudentPaymentRecord.objects.get(student=self.student)
        self.assertTrue(record.uniform_purchased)


class InvoiceProjectionTests(BillingBaseTestCase):
    def test_single_component_uniform(self):
        paid_on = self.today - timedelta(days=3)
        record = self.generate(has_uniform=True)
        record = record_uniform(record, payment_method=PAYMENT_METHOD_CASH, payment_date=paid_on)

        projection = project_invoice(record, self.current_config(), InvoiceScope.single_component('uniform'))

        self.assertEqual(projection.amounts, ComponentAmounts(uniform=Decimal('200.00')))
        self.assertEqual(projection.total_ht, Decimal('200.00'))
        self.assertEqual(projection.total_ttc, projection.total_ht)
        self.assertEqual(projection.invoice_date, paid_on)
        self.assertEqual(
            projection.invoice_number,
            f'INV-{self.academic_year}-{record.pk:06d}-{paid_on:%Y%m%d}',
        )
        self.assertIsNone(projection.discount)

    def test_single_month_shows_scheduled_amounts(self):
        record = self.generate(transportation_type=TRANSPORT_CLOSE, has_uniform=True)
        due_date = record.tuition_months[0].due_date
        record = apply_discount(record, discount_type='monthly', percentage=10)
        record = record_tuition_monthly(
            record,
            month_index=0,
            amount=30,
            payment_method=PAYMENT_METHOD_CASH,
            payment_date=due_date,
        )
        record = record_uniform(record, payment_method=PAYMENT_METHOD_CASH, payment_date=due_date)

        projection = project_invoice(record, self.current_config(), InvoiceScope.single_month(1))

        self.assertEqual(projection.amounts.tuition, Decimal('90.00'))
        self.assertEqual(projection.amounts.transportation, Decimal('50.00'))
        self.assertEqual(projection.amounts.uniform, Decimal('0.00'))
        self.assertEqual(projection.month_name, 'October')
        self.assertEqual(projection.discount.original_amount, Decimal('100.00'))
        self.assertEqual(projection.discount.discount_amount, Decimal('10.00'))
        self.assertEqual(projection.discount.final_amount, Decimal('90.00'))

        september = project_invoice(record, self.current_config(), InvoiceScope.single_month(0))
        self.assertEqual(september.amounts.tuition, Decimal('90.00'))
        self.assertEqual(september.amounts.uniform, Decimal('200.00'))
        self.assertEqual(september.invoice_date, due_date)

    def test_cumulative_shows_paid_to_date(self):
        record = self.generate()
        record = record_tuition_monthly(record, month_index=0, amount=100, payment_method=PAYMENT_METHOD_CASH)
        record = record_tuition_monthly(record, month_index=1, amount=25, payment_method=PAYMENT_METHOD_CASH)

        projection = project_invoice(record, self.current_config(), InvoiceScope.cumulative())
        self.assertEqual(projection.amounts.tuition, Decimal('125.00'))
        self.assertEqual(projection.total_ht, Decimal('125.00'))

    @override_settings(BILLING_INVOICE_TAX_RATE=Decimal('0.19'))
    def test_tax_rate_from_settings(self):
        record = self.generate()
        record = record_tuition_monthly(record, month_index=0, amount=100, payment_method=PAYMENT_METHOD_CASH)

        projection = project_invoice(record, self.current_config(), InvoiceScope.cumulative())
        self.assertEqual(projection.total_tax, Decimal('19.00'))
        self.assertEqual(projection.total_ttc, Decimal('119.00'))

    def test_invoice_date_falls_back_to_now(self):
        record = self.generate()
        now = self.today - timedelta(days=1)

        projection = project_invoice(record, self.current_config(), InvoiceScope.cumulative(), now=now)
        self.assertEqual(projection.invoice_date, now)

    def test_single_component_date_prefers_that_component(self):
        tuition_paid_on = self.today - timedelta(days=10)
        record = self.generate(has_uniform=True)
        record = record_tuition_monthly(
            record,
            month_index=0,
            amount=100,
            payment_method=PAYMENT_METHOD_CASH,
            payment_date=tuition_paid_on,
        )
        record = record_uniform(record, payment_method=PAYMENT_METHOD_CASH, payment_date=self.today)

        tuition = project_invoice(record, self.current_config(), InvoiceScope.single_component('tuition'))
        self.assertEqual(tuition.invoice_date, tuition_paid_on)
        self.assertEqual(tuition.amounts, ComponentAmounts(tuition=Decimal('100.00')))

        cumulative = project_invoice(record, self.current_config(), InvoiceScope.cumulative())
        self.assertEqual(cumulative.invoice_date, self.today)

        transportation = project_invoice(
            record,
            self.current_config(),
            InvoiceScope.single_component('transportation'),
        )
        self.assertEqual(transportation.invoice_date, self.today)

    def test_invalid_scopes(self):
        record = self.generate()
        with self.assertRaises(ValidationError):
            InvoiceScope.single_component('books')
        for month_index in (10, -1, True, None):
            with self.subTest(month_index=month_index):
                with self.assertRaises(ValidationError):
                    project_invoice(record, self.current_config(), InvoiceScope.single_month(month_index))


class PaymentHistoryTests(BillingBaseTestCase):
    def test_history_is_most_recent_first(self):
        record = self.generate(has_uniform=True, include_inscription_fee=True)
        record = record_tuition_monthly(
            record,
            month_index=0,
            amount=100,
            payment_method=PAYMENT_METHOD_CASH,
            payment_date=self.today - timedelta(days=10),
        )
        record = record_uniform(record, payment_method=PAYMENT_METHOD_CASH, payment_date=self.today)
        record = record_inscription_fee(
            record,
            payment_method=PAYMENT_METHOD_CASH,
            payment_date=self.today - timedelta(days=20),
        )

        history = payment_history(record)
        self.assertEqual([entry.type for entry in history], ['uniform', 'tuition_monthly', 'inscription_fee'])
        self.assertEqual(history[1].month_name, 'September')
        self.assertEqual(history[1].amount, Decimal('100.00'))

    def test_summary_and_counts(self):
        record = self.generate(has_uniform=True)
        record = record_uniform(record, payment_method=PAYMENT_METHOD_CASH)
        records = StudentPaymentRecord.objects.filter(school=self.school)

        summary = financial_summary(records)
        self.assertEqual(summary['expected'].grand_total, Decimal('1200.00'))
        self.assertEqual(summary['collected'].uniform, Decimal('200.00'))
        self.assertEqual(summary['collection_rate']['uniform'], Decimal('100.0'))
        self.assertEqual(summary['collection_rate']['grand_total'], Decimal('16.7'))

        counts = status_counts(records, students_without_record=2)
        self.assertEqual(counts['partial'], 1)
        self.assertEqual(counts['total'], 3)

    def test_rollup_and_discount_analysis(self):
        self.generate()
        college = Student.objects.create(
            school=self.school,
            admission_number='BIL-002',
            first_name='Sara',
            grade=Student.GRADE_COLLEGE_7,
        )
        record = self.generate(student=college)
        apply_discount(record, discount_type='annual', percentage=20)
        records = StudentPaymentRecord.objects.filter(school=self.school)

        rollup = grade_category_rollup(records)
        self.assertEqual(rollup['primaire']['count'], 1)
        self.assertEqual(rollup['primaire']['expected'], Decimal('1000.00'))
        self.assertEqual(rollup['secondaire']['expected'], Decimal('1200.00'))
        self.assertEqual(rollup['maternelle']['count'], 0)

        analysis = discount_analysis(records)
        self.assertEqual(analysis['count'], 1)
        self.assertEqual(analysis['total_amount'], Decimal('300.00'))
        self.assertEqual(analysis['average_percentage'], Decimal('20.00'))
        self.assertEqual(analysis['by_type'], {'monthly': 0, 'annual': 1})

    def test_load_record_reads_schedule(self):
        self.assertIsNone(load_record(self.student, self.academic_year))
        self.generate(transportation_type=TRANSPORT_CLOSE)

        record = load_record(self.student, self.academic_year)
        self.assertEqual(len(record.tuition_months), 10)
        self.assertEqual(len(record.transportation_months), 10)
        self.assertEqual(record.stored_amounts.total.grand_total, Decimal('1500.00'))
