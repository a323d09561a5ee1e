from django.core.exceptions import ValidationError
from django.db import IntegrityError
from django.test import TestCase

from apps.core.schools.models import School

from .models import Student


class StudentModelTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Student School', code='student_school')

    def test_grade_category_is_derived_from_grade(self):
        maternal = Student.objects.create(
            school=self.school,
            admission_number='S001',
            first_name='Lina',
            grade=Student.GRADE_MATERNAL,
        )
        primary = Student.objects.create(
            school=self.school,
            admission_number='S002',
            first_name='Amine',
            grade=Student.GRADE_PRIMARY_4,
        )
        lycee = Student.objects.create(
            school=self.school,
            admission_number='S003',
            first_name='Sami',
            grade=Student.GRADE_LYCEE_2,
        )

        self.assertEqual(maternal.grade_category, Student.CATEGORY_MATERNELLE)
        self.assertEqual(primary.grade_category, Student.CATEGORY_PRIMAIRE)
        self.assertEqual(lycee.grade_category, Student.CATEGORY_SECONDAIRE)

    def test_student_without_grade_has_no_category(self):
        student = Student(school=self.school, admission_number='S004', first_name='Nour')
        self.assertIsNone(student.grade_category)

    def test_admission_number_is_unique_per_school(self):
        Student.objects.create(school=self.school, admission_number='S005', first_name='Ali')
        with self.assertRaises(IntegrityError):
            Student.objects.create(school=self.school, admission_number='S005', first_name='Omar')

    def test_blank_admission_number_is_rejected(self):
        student = Student(school=self.school, admission_number='  ', first_name='Yasmine')
        with self.assertRaises(ValidationError):
            student.clean()
