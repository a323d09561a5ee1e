from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q

from apps.core.schools.models import School
from apps.core.students.models import Student
from apps.core.utils.managers import SchoolManager

from .amounts import (
    COMPONENT_INSCRIPTION_FEE,
    COMPONENT_TRANSPORTATION,
    COMPONENT_TUITION,
    COMPONENT_UNIFORM,
    ComponentAmounts,
    LedgerAmounts,
    percentage_of,
    quantize,
)

PAYMENT_METHOD_CASH = 'cash'
PAYMENT_METHOD_CHECK = 'check'
PAYMENT_METHOD_BANK_TRANSFER = 'bank_transfer'
PAYMENT_METHOD_ONLINE = 'online'
PAYMENT_METHOD_CHOICES = (
    (PAYMENT_METHOD_CASH, 'Cash'),
    (PAYMENT_METHOD_CHECK, 'Check'),
    (PAYMENT_METHOD_BANK_TRANSFER, 'Bank Transfer'),
    (PAYMENT_METHOD_ONLINE, 'Online'),
)
PAYMENT_METHODS = {value for value, _ in PAYMENT_METHOD_CHOICES}

TRANSPORT_CLOSE = 'close'
TRANSPORT_FAR = 'far'
TRANSPORT_TYPE_CHOICES = (
    (TRANSPORT_CLOSE, 'Close zone'),
    (TRANSPORT_FAR, 'Far zone'),
)


def default_grace_period_days():
    return getattr(settings, 'BILLING_DEFAULT_GRACE_PERIOD_DAYS', 5)


def months_in_window(start_month, end_month):
    return ((end_month - start_month) % 12) + 1


class PaymentConfiguration(models.Model):
    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='payment_configurations',
    )
    objects = SchoolManager()

    academic_year = models.CharField(max_length=9)

    uniform_enabled = models.BooleanField(default=False)
    uniform_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))

    transportation_enabled = models.BooleanField(default=False)
    close_enabled = models.BooleanField(default=False)
    close_monthly_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    far_enabled = models.BooleanField(default=False)
    far_monthly_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))

    inscription_fee_enabled = models.BooleanField(default=False)
    inscription_fee_maternelle_primaire = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal('0.00')
    )
    inscription_fee_college_lycee = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal('0.00')
    )

    start_month = models.PositiveSmallIntegerField(default=9)
    end_month = models.PositiveSmallIntegerField(default=6)
    total_months = models.PositiveSmallIntegerField(default=10)
    grace_period_days = models.PositiveSmallIntegerField(default=default_grace_period_days)

    annual_discount_enabled = models.BooleanField(default=False)
    annual_discount_percentage = models.DecimalField(
        max_digits=5, decimal_places=2, default=Decimal('0.00')
    )

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-academic_year', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'academic_year'],
                name='unique_payment_configuration_per_year',
            ),
            models.CheckConstraint(
                condition=Q(start_month__gte=1) & Q(start_month__lte=12)
                & Q(end_month__gte=1) & Q(end_month__lte=12),
                name='payment_configuration_months_in_range',
            ),
        ]

    def clean(self):
        super().clean()
        for field in ('start_month', 'end_month'):
            value = getattr(self, field)
            if value is None or not 1 <= value <= 12:
                raise ValidationError({field: 'Month must be between 1 and 12.'})

        if self.total_months != months_in_window(self.start_month, self.end_month):
            raise ValidationError({
                'total_months': 'Total months must match the start and end month window.',
            })

        for field in (
            'uniform_price',
            'close_monthly_price',
            'far_monthly_price',
            'inscription_fee_maternelle_primaire',
            'inscription_fee_college_lycee',
        ):
            value = getattr(self, field)
            if value is None or value < 0:
                raise ValidationError({field: 'Price cannot be negative.'})

        if self.annual_discount_enabled and not 0 < self.annual_discount_percentage <= 100:
            raise ValidationError({
                'annual_discount_percentage': 'Annual discount percentage must be between 0 and 100.',
            })

    def tuition_for_grade(self, grade) -> Decimal:
        for row in self.grade_tuitions.all():
            if row.grade == grade:
                return quantize(row.amount)
        raise ValidationError(f'No tuition amount configured for grade "{grade}" in {self.academic_year}.')

    def uniform_price_for_purchase(self) -> Decimal:
        if not self.uniform_enabled:
            raise ValidationError('Uniform is not enabled in the payment configuration.')
        return quantize(self.uniform_price)

    def transportation_monthly_price(self, transportation_type) -> Decimal:
        if not self.transportation_enabled:
            raise ValidationError('Transportation is not enabled in the payment configuration.')
        if transportation_type == TRANSPORT_CLOSE and self.close_enabled:
            return quantize(self.close_monthly_price)
        if transportation_type == TRANSPORT_FAR and self.far_enabled:
            return quantize(self.far_monthly_price)
        raise ValidationError(f'Transportation tariff "{transportation_type}" is not available.')

    def inscription_fee_for_category(self, grade_category) -> Decimal:
        if not self.inscription_fee_enabled:
            raise ValidationError('Inscription fee is not enabled in the payment configuration.')
        if grade_category in (Student.CATEGORY_MATERNELLE, Student.CATEGORY_PRIMAIRE):
            return quantize(self.inscription_fee_maternelle_primaire)
        if grade_category == Student.CATEGORY_SECONDAIRE:
            return quantize(self.inscription_fee_college_lycee)
        raise ValidationError(f'Unknown grade category "{grade_category}".')

    def annual_discount_for(self, tuition_total) -> Decimal:
        if not self.annual_discount_enabled:
            return Decimal('0.00')
        return percentage_of(tuition_total, self.annual_discount_percentage)

    def __str__(self):
        return f"{self.school.name} - {self.academic_year}"


class GradeTuition(models.Model):
    configuration = models.ForeignKey(
        PaymentConfiguration,
        on_delete=models.CASCADE,
        related_name='grade_tuitions',
    )
    grade = models.CharField(max_length=20, choices=Student.GRADE_CHOICES)
    amount = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        ordering = ['configuration', 'grade']
        constraints = [
            models.UniqueConstraint(
                fields=['configuration', 'grade'],
                name='unique_grade_tuition_per_configuration',
            ),
            models.CheckConstraint(
                condition=Q(amount__gte=0),
                name='grade_tuition_non_negative_amount',
            ),
        ]

    def __str__(self):
        return f"{self.get_grade_display()} - {self.amount}"


class StudentPaymentRecord(models.Model):
    PAYMENT_TYPE_MONTHLY = 'monthly'
    PAYMENT_TYPE_ANNUAL = 'annual'
    PAYMENT_TYPE_CHOICES = (
        (PAYMENT_TYPE_MONTHLY, 'Monthly'),
        (PAYMENT_TYPE_ANNUAL, 'Annual'),
    )

    DISCOUNT_MONTHLY = 'monthly'
    DISCOUNT_ANNUAL = 'annual'
    DISCOUNT_TYPE_CHOICES = (
        (DISCOUNT_MONTHLY, 'Monthly'),
        (DISCOUNT_ANNUAL, 'Annual'),
    )

    STATUS_NOT_APPLICABLE = 'not_applicable'
    STATUS_PENDING = 'pending'
    STATUS_PARTIAL = 'partial'
    STATUS_COMPLETED = 'completed'
    STATUS_OVERDUE = 'overdue'
    STATUS_CHOICES = (
        (STATUS_NOT_APPLICABLE, 'Not applicable'),
        (STATUS_PENDING, 'Pending'),
        (STATUS_PARTIAL, 'Partial'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_OVERDUE, 'Overdue'),
    )

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='payment_records',
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='payment_records',
    )
    objects = SchoolManager()

    academic_year = models.CharField(max_length=9)
    grade = models.CharField(max_length=20, choices=Student.GRADE_CHOICES)
    grade_category = models.CharField(max_length=20, choices=Student.CATEGORY_CHOICES)
    payment_type = models.CharField(max_length=10, choices=PAYMENT_TYPE_CHOICES, default=PAYMENT_TYPE_MONTHLY)
    tuition_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    uniform_purchased = models.BooleanField(default=False)
    uniform_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    uniform_is_paid = models.BooleanField(default=False)
    uniform_payment_date = models.DateField(null=True, blank=True)
    uniform_payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, blank=True)
    uniform_receipt_number = models.CharField(max_length=50, blank=True)

    inscription_fee_applicable = models.BooleanField(default=False)
    inscription_fee_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    inscription_fee_is_paid = models.BooleanField(default=False)
    inscription_fee_payment_date = models.DateField(null=True, blank=True)
    inscription_fee_payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, blank=True)
    inscription_fee_receipt_number = models.CharField(max_length=50, blank=True)

    transportation_using = models.BooleanField(default=False)
    transportation_type = models.CharField(max_length=10, choices=TRANSPORT_TYPE_CHOICES, blank=True)
    transportation_monthly_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    transportation_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    annual_tuition_is_paid = models.BooleanField(default=False)
    annual_tuition_payment_date = models.DateField(null=True, blank=True)
    annual_tuition_payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, blank=True)
    annual_tuition_receipt_number = models.CharField(max_length=50, blank=True)
    annual_tuition_discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    annual_tuition_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    discount_enabled = models.BooleanField(default=False)
    discount_type = models.CharField(max_length=10, choices=DISCOUNT_TYPE_CHOICES, blank=True)
    discount_percentage = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    discount_applied_date = models.DateField(null=True, blank=True)
    discount_notes = models.CharField(max_length=255, blank=True)

    total_tuition = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    total_uniform = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    total_transportation = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    total_inscription_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    total_grand_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    paid_tuition = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    paid_uniform = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    paid_transportation = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    paid_inscription_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    paid_grand_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    remaining_tuition = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    remaining_uniform = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    remaining_transportation = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    remaining_inscription_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    remaining_grand_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    overall_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    tuition_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    uniform_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_NOT_APPLICABLE)
    transportation_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_NOT_APPLICABLE)
    inscription_fee_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_NOT_APPLICABLE)

    version = models.PositiveIntegerField(default=1)
    created_by = models.CharField(max_length=150, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['student__admission_number', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['student', 'academic_year'],
                name='unique_payment_record_per_student_year',
            ),
            models.CheckConstraint(
                condition=Q(discount_percentage__isnull=True)
                | (Q(discount_percentage__gte=1) & Q(discount_percentage__lte=100)),
                name='payment_record_discount_percentage_range',
            ),
            models.CheckConstraint(
                condition=Q(tuition_amount__gte=0),
                name='payment_record_non_negative_tuition_amount',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'academic_year', 'overall_status']),
            models.Index(fields=['school', 'academic_year', 'grade_category']),
        ]

    @property
    def is_annual(self):
        return self.payment_type == self.PAYMENT_TYPE_ANNUAL

    def schedule(self, component):
        """Monthly rows of one component in academic order.

        Reads through the prefetch cache so callers mutating the returned
        rows see their own changes on the next call.
        """
        return sorted(
            (row for row in self.monthly_payments.all() if row.component == component),
            key=lambda row: row.month_index,
        )

    @property
    def tuition_months(self):
        return self.schedule(MonthlyPayment.COMPONENT_TUITION)

    @property
    def transportation_months(self):
        return self.schedule(MonthlyPayment.COMPONENT_TRANSPORTATION)

    def is_applicable(self, component):
        if component == COMPONENT_TUITION:
            return True
        if component == COMPONENT_UNIFORM:
            return self.uniform_purchased
        if component == COMPONENT_TRANSPORTATION:
            return self.transportation_using
        if component == COMPONENT_INSCRIPTION_FEE:
            return self.inscription_fee_applicable
        raise ValidationError(f'Unknown component "{component}".')

    def _bucket(self, prefix):
        return ComponentAmounts(
            tuition=getattr(self, f'{prefix}_tuition'),
            uniform=getattr(self, f'{prefix}_uniform'),
            transportation=getattr(self, f'{prefix}_transportation'),
            inscription_fee=getattr(self, f'{prefix}_inscription_fee'),
        )

    @property
    def stored_amounts(self):
        return LedgerAmounts(
            total=self._bucket('total'),
            paid=self._bucket('paid'),
            remaining=self._bucket('remaining'),
        )

    @property
    def component_statuses(self):
        return {
            COMPONENT_TUITION: self.tuition_status,
            COMPONENT_UNIFORM: self.uniform_status,
            COMPONENT_TRANSPORTATION: self.transportation_status,
            COMPONENT_INSCRIPTION_FEE: self.inscription_fee_status,
        }

    def __str__(self):
        return f"{self.student.admission_number} - {self.academic_year}"


class MonthlyPayment(models.Model):
    COMPONENT_TUITION = COMPONENT_TUITION
    COMPONENT_TRANSPORTATION = COMPONENT_TRANSPORTATION
    COMPONENT_CHOICES = (
        (COMPONENT_TUITION, 'Tuition'),
        (COMPONENT_TRANSPORTATION, 'Transportation'),
    )

    STATUS_PENDING = 'pending'
    STATUS_PARTIAL = 'partial'
    STATUS_PAID = 'paid'
    STATUS_OVERDUE = 'overdue'
    STATUS_CHOICES = (
        (STATUS_PENDING, 'Pending'),
        (STATUS_PARTIAL, 'Partial'),
        (STATUS_PAID, 'Paid'),
        (STATUS_OVERDUE, 'Overdue'),
    )

    record = models.ForeignKey(
        StudentPaymentRecord,
        on_delete=models.CASCADE,
        related_name='monthly_payments',
    )
    component = models.CharField(max_length=20, choices=COMPONENT_CHOICES)
    month_index = models.PositiveSmallIntegerField()
    month_name = models.CharField(max_length=20)
    due_date = models.DateField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    payment_date = models.DateField(null=True, blank=True)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, blank=True)
    receipt_number = models.CharField(max_length=50, blank=True)
    notes = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ['record', 'component', 'month_index']
        constraints = [
            models.UniqueConstraint(
                fields=['record', 'component', 'month_index'],
                name='unique_monthly_payment_slot',
            ),
            models.CheckConstraint(
                condition=Q(amount__gte=0) & Q(paid_amount__gte=0),
                name='monthly_payment_non_negative_amounts',
            ),
        ]

    @property
    def remaining_amount(self):
        remaining = quantize(self.amount) - quantize(self.paid_amount)
        return remaining if remaining > 0 else Decimal('0.00')

    @property
    def is_fully_paid(self):
        return quantize(self.paid_amount) >= quantize(self.amount)

    @property
    def has_payment(self):
        return quantize(self.paid_amount) > 0

    def __str__(self):
        return f"{self.record} - {self.component} {self.month_name}"
