from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from apps.core.schools.models import School
from apps.core.utils.managers import SchoolManager


class Student(models.Model):
    GRADE_MATERNAL = 'maternal'
    GRADE_PRIMARY_1 = 'primary_1'
    GRADE_PRIMARY_2 = 'primary_2'
    GRADE_PRIMARY_3 = 'primary_3'
    GRADE_PRIMARY_4 = 'primary_4'
    GRADE_PRIMARY_5 = 'primary_5'
    GRADE_PRIMARY_6 = 'primary_6'
    GRADE_COLLEGE_7 = 'college_7'
    GRADE_COLLEGE_8 = 'college_8'
    GRADE_COLLEGE_9 = 'college_9'
    GRADE_LYCEE_1 = 'lycee_1'
    GRADE_LYCEE_2 = 'lycee_2'
    GRADE_LYCEE_3 = 'lycee_3'
    GRADE_LYCEE_4 = 'lycee_4'
    GRADE_CHOICES = (
        (GRADE_MATERNAL, 'Maternal'),
        (GRADE_PRIMARY_1, '1ère année primaire'),
        (GRADE_PRIMARY_2, '2ème année primaire'),
        (GRADE_PRIMARY_3, '3ème année primaire'),
        (GRADE_PRIMARY_4, '4ème année primaire'),
        (GRADE_PRIMARY_5, '5ème année primaire'),
        (GRADE_PRIMARY_6, '6ème année primaire'),
        (GRADE_COLLEGE_7, '7ème année'),
        (GRADE_COLLEGE_8, '8ème année'),
        (GRADE_COLLEGE_9, '9ème année'),
        (GRADE_LYCEE_1, '1ère année lycée'),
        (GRADE_LYCEE_2, '2ème année lycée'),
        (GRADE_LYCEE_3, '3ème année lycée'),
        (GRADE_LYCEE_4, '4ème année lycée'),
    )

    CATEGORY_MATERNELLE = 'maternelle'
    CATEGORY_PRIMAIRE = 'primaire'
    CATEGORY_SECONDAIRE = 'secondaire'
    CATEGORY_CHOICES = (
        (CATEGORY_MATERNELLE, 'Maternelle'),
        (CATEGORY_PRIMAIRE, 'Primaire'),
        (CATEGORY_SECONDAIRE, 'Secondaire'),
    )

    GRADE_CATEGORIES = {
        GRADE_MATERNAL: CATEGORY_MATERNELLE,
        GRADE_PRIMARY_1: CATEGORY_PRIMAIRE,
        GRADE_PRIMARY_2: CATEGORY_PRIMAIRE,
        GRADE_PRIMARY_3: CATEGORY_PRIMAIRE,
        GRADE_PRIMARY_4: CATEGORY_PRIMAIRE,
        GRADE_PRIMARY_5: CATEGORY_PRIMAIRE,
        GRADE_PRIMARY_6: CATEGORY_PRIMAIRE,
        GRADE_COLLEGE_7: CATEGORY_SECONDAIRE,
        GRADE_COLLEGE_8: CATEGORY_SECONDAIRE,
        GRADE_COLLEGE_9: CATEGORY_SECONDAIRE,
        GRADE_LYCEE_1: CATEGORY_SECONDAIRE,
        GRADE_LYCEE_2: CATEGORY_SECONDAIRE,
        GRADE_LYCEE_3: CATEGORY_SECONDAIRE,
        GRADE_LYCEE_4: CATEGORY_SECONDAIRE,
    }

    school = models.ForeignKey(School, on_delete=models.CASCADE, related_name='students')
    objects = SchoolManager()

    admission_number = models.CharField(max_length=50)
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100, blank=True)
    email = models.EmailField(blank=True)
    grade = models.CharField(max_length=20, choices=GRADE_CHOICES, blank=True)
    admission_date = models.DateField(default=timezone.now)

    is_active = models.BooleanField(default=True)
    is_archived = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['admission_number', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'admission_number'],
                name='unique_student_admission_number_per_school',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'is_active']),
            models.Index(fields=['school', 'grade']),
        ]

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def grade_category(self):
        return self.GRADE_CATEGORIES.get(self.grade)

    @classmethod
    def category_for_grade(cls, grade):
        return cls.GRADE_CATEGORIES.get(grade)

    def clean(self):
        super().clean()
        if self.admission_number:
            self.admission_number = self.admission_number.strip()
        if not self.admission_number:
            raise ValidationError({'admission_number': 'Admission number is required.'})

    def __str__(self):
        return f"{self.full_name} ({self.admission_number})"
