import random
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction
from faker import Faker

from apps.core.billing.bulk import generate_missing
from apps.core.billing.models import TRANSPORT_CLOSE, TRANSPORT_FAR, GradeTuition, PaymentConfiguration
from apps.core.schools.models import School
from apps.core.students.models import Student

GRADE_TUITION = {
    Student.CATEGORY_MATERNELLE: Decimal('1800.00'),
    Student.CATEGORY_PRIMAIRE: Decimal('2400.00'),
    Student.CATEGORY_SECONDAIRE: Decimal('3000.00'),
}


class Command(BaseCommand):
    help = 'Seeds a demo school with students, a payment configuration and payment records.'

    def add_arguments(self, parser):
        parser.add_argument('--academic-year', default='2024-2025')
        parser.add_argument('--students', type=int, default=30)
        parser.add_argument('--seed', type=int, default=None)

    @transaction.atomic
    def handle(self, *args, **options):
        self.stdout.write('Seeding billing data...')

        fake = Faker()
        if options['seed'] is not None:
            Faker.seed(options['seed'])
            random.seed(options['seed'])

        academic_year = options['academic_year']

        school, created = School.objects.get_or_create(
            name=fake.company() + " School",
            defaults={
                'address': fake.address(),
                'phone': fake.phone_number()[:20],
                'email': fake.email(),
                'current_academic_year': academic_year,
            }
        )
        if created:
            self.stdout.write(self.style.SUCCESS(f'Successfully created school: {school.name}'))

        config, created = PaymentConfiguration.objects.get_or_create(
            school=school,
            academic_year=academic_year,
            defaults={
                'uniform_enabled': True,
                'uniform_price': Decimal('250.00'),
                'transportation_enabled': True,
                'close_enabled': True,
                'close_monthly_price': Decimal('80.00'),
                'far_enabled': True,
                'far_monthly_price': Decimal('120.00'),
                'inscription_fee_enabled': True,
                'inscription_fee_maternelle_primaire': Decimal('150.00'),
                'inscription_fee_college_lycee': Decimal('200.00'),
            }
        )
        if created:
            for grade, _ in Student.GRADE_CHOICES:
                GradeTuition.objects.create(
                    configuration=config,
                    grade=grade,
                    amount=GRADE_TUITION[Student.category_for_grade(grade)],
                )
            self.stdout.write(self.style.SUCCESS(f'Successfully created payment configuration for {academic_year}'))

        grades = [grade for grade, _ in Student.GRADE_CHOICES]
        for _ in range(options['students']):
            student, created = Student.objects.get_or_create(
                school=school,
                admission_number=str(fake.unique.random_number(digits=6, fix_len=True)),
                defaults={
                    'first_name': fake.first_name(),
                    'last_name': fake.last_name(),
                    'email': fake.email(),
                    'grade': random.choice(grades),
                    'admission_date': fake.date_this_decade(),
                }
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f'Successfully created student: {student.full_name}'))

        results = generate_missing(
            school,
            academic_year,
            default_uniform=True,
            default_transportation=random.choice([None, TRANSPORT_CLOSE, TRANSPORT_FAR]),
            default_inscription_fee=True,
            created_by='seed_billing',
        )
        self.stdout.write(self.style.SUCCESS(
            f"Generated {results['success']} payment records "
            f"({results['skipped']} skipped, {len(results['errors'])} failed)."
        ))
        self.stdout.write(self.style.SUCCESS('Billing seeding complete!'))
