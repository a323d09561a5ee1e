from django.contrib import admin

from .models import GradeTuition, MonthlyPayment, PaymentConfiguration, StudentPaymentRecord


class GradeTuitionInline(admin.TabularInline):
    model = GradeTuition
    extra = 0


@admin.register(PaymentConfiguration)
class PaymentConfigurationAdmin(admin.ModelAdmin):
    list_display = (
        'school',
        'academic_year',
        'start_month',
        'end_month',
        'total_months',
        'grace_period_days',
        'is_active',
    )
    list_filter = ('school', 'academic_year', 'is_active')
    inlines = [GradeTuitionInline]


class MonthlyPaymentInline(admin.TabularInline):
    model = MonthlyPayment
    extra = 0
    can_delete = False
    fields = ('component', 'month_index', 'month_name', 'due_date', 'amount', 'paid_amount', 'status')
    readonly_fields = fields


@admin.register(StudentPaymentRecord)
class StudentPaymentRecordAdmin(admin.ModelAdmin):
    list_display = (
        'student',
        'academic_year',
        'grade',
        'payment_type',
        'total_grand_total',
        'paid_grand_total',
        'remaining_grand_total',
        'overall_status',
        'discount_enabled',
    )
    list_filter = ('school', 'academic_year', 'grade_category', 'overall_status', 'payment_type')
    search_fields = ('student__admission_number', 'student__first_name', 'student__last_name')
    readonly_fields = (
        'tuition_amount',
        'total_tuition',
        'total_uniform',
        'total_transportation',
        'total_inscription_fee',
        'total_grand_total',
        'paid_tuition',
        'paid_uniform',
        'paid_transportation',
        'paid_inscription_fee',
        'paid_grand_total',
        'remaining_tuition',
        'remaining_uniform',
        'remaining_transportation',
        'remaining_inscription_fee',
        'remaining_grand_total',
        'overall_status',
        'tuition_status',
        'uniform_status',
        'transportation_status',
        'inscription_fee_status',
        'version',
    )
    inlines = [MonthlyPaymentInline]


@admin.register(MonthlyPayment)
class MonthlyPaymentAdmin(admin.ModelAdmin):
    list_display = ('record', 'component', 'month_name', 'due_date', 'amount', 'paid_amount', 'status')
    list_filter = ('component', 'status', 'record__academic_year')
    search_fields = ('record__student__admission_number', 'receipt_number')
