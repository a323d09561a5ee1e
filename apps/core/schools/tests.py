from django.test import TestCase

from apps.core.schools.models import School


class SchoolCodeTests(TestCase):
    def test_code_is_generated_from_name(self):
        school = School.objects.create(name='Ons School')
        self.assertEqual(school.code, 'ons_school')

    def test_duplicate_names_get_sequenced_codes(self):
        School.objects.create(name='Ons School')
        second = School.objects.create(name='Ons School')
        self.assertEqual(second.code, 'ons_school_1')

    def test_explicit_code_is_kept(self):
        school = School.objects.create(name='Jilma School', code='jilma')
        self.assertEqual(school.code, 'jilma')
