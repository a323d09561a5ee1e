from django.db import models


class SchoolQuerySet(models.QuerySet):
    def for_school(self, school):
        return self.filter(school=school)

    def for_academic_year(self, school, academic_year):
        return self.filter(school=school, academic_year=academic_year)


class SchoolManager(models.Manager):
    def get_queryset(self):
        return SchoolQuerySet(self.model, using=self._db)

    def for_school(self, school):
        return self.get_queryset().for_school(school)

    def for_academic_year(self, school, academic_year):
        return self.get_queryset().for_academic_year(school, academic_year)
