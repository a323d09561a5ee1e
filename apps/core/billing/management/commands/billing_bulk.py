from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError

from apps.core.billing.bulk import delete_all, generate_missing, update_existing
from apps.core.billing.models import TRANSPORT_TYPE_CHOICES
from apps.core.schools.models import School


class Command(BaseCommand):
    help = 'Runs a bulk payment record operation for one school and academic year.'

    def add_arguments(self, parser):
        parser.add_argument('action', choices=['generate', 'update', 'delete'])
        parser.add_argument('--school', required=True, help='School code.')
        parser.add_argument('--academic-year', required=True)
        parser.add_argument('--uniform', action='store_true', help='Generate with uniform purchased.')
        parser.add_argument(
            '--transportation',
            choices=[value for value, _ in TRANSPORT_TYPE_CHOICES],
            default=None,
        )
        parser.add_argument('--inscription-fee', action='store_true')
        parser.add_argument(
            '--include-paid',
            action='store_true',
            help='Re-price paid items as well when updating.',
        )
        parser.add_argument('--created-by', default='')
        parser.add_argument('--yes', action='store_true', help='Confirm deletion.')

    def handle(self, *args, **options):
        school = School.objects.filter(code=options['school']).first()
        if not school:
            raise CommandError(f"School with code \"{options['school']}\" does not exist.")

        academic_year = options['academic_year']
        action = options['action']
        try:
            if action == 'generate':
                results = generate_missing(
                    school,
                    academic_year,
                    default_uniform=options['uniform'],
                    default_transportation=options['transportation'],
                    default_inscription_fee=options['inscription_fee'],
                    created_by=options['created_by'],
                )
                summary = f"{results['success']} generated, {results['skipped']} skipped"
            elif action == 'update':
                results = update_existing(
                    school,
                    academic_year,
                    update_unpaid_only=not options['include_paid'],
                )
                summary = f"{results['updated']} updated, {results['skipped']} protected items skipped"
            else:
                if not options['yes']:
                    raise CommandError('Deleting payment records is irreversible; pass --yes to confirm.')
                results = delete_all(school, academic_year)
                summary = f"{results['deleted']} deleted"
        except ValidationError as exc:
            raise CommandError('; '.join(exc.messages))

        for error in results['errors']:
            self.stderr.write(f"Student {error['student_id']}: {error['error']}")

        style = self.style.WARNING if results['errors'] else self.style.SUCCESS
        self.stdout.write(style(f"{summary}, {len(results['errors'])} failed."))
