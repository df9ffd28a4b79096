from datetime import timedelta

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone

from .scheduling import TaskPriority, TaskRecord, TaskStatus, link_records

STATUS_CHOICES = [(s.value, s.label) for s in TaskStatus]
PRIORITY_CHOICES = [(p.value, p.label) for p in TaskPriority]


def default_end_date():
    return timezone.now() + timedelta(days=1)


class Project(models.Model):
    name = models.CharField(max_length=200)
    description = models.TextField(max_length=2000, blank=True)
    start_date = models.DateTimeField(default=timezone.now)
    end_date = models.DateTimeField(blank=True, null=True)
    project_manager = models.CharField(max_length=100, blank=True)
    status = models.IntegerField(choices=STATUS_CHOICES, default=TaskStatus.NOT_STARTED.value)
    priority = models.IntegerField(choices=PRIORITY_CHOICES, default=TaskPriority.NORMAL.value)
    is_archived = models.BooleanField(default=False)
    color = models.CharField(max_length=7, default='#3498db')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name', 'id']

    def __str__(self):
        return self.name


class Task(models.Model):
    project = models.ForeignKey(Project, related_name='tasks', on_delete=models.CASCADE)
    name = models.CharField(max_length=200)
    description = models.TextField(max_length=1000, blank=True)
    start_date = models.DateTimeField(default=timezone.now)
    end_date = models.DateTimeField(default=default_end_date)
    progress = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    status = models.IntegerField(choices=STATUS_CHOICES, default=TaskStatus.NOT_STARTED.value)
    priority = models.IntegerField(choices=PRIORITY_CHOICES, default=TaskPriority.NORMAL.value)
    assignee = models.CharField(max_length=100, blank=True)
    category = models.CharField(max_length=50, default='General')
    estimated_hours = models.FloatField(default=0.0, validators=[MinValueValidator(0)])
    actual_hours = models.FloatField(default=0.0, validators=[MinValueValidator(0)])
    parent = models.ForeignKey(
        'self', related_name='subtasks', on_delete=models.SET_NULL, blank=True, null=True
    )
    dependencies = models.ManyToManyField(
        'self', symmetrical=False, related_name='dependents', blank=True
    )
    completion_date = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['start_date', 'id']

    def __str__(self):
        return self.name

    def to_record(self) -> TaskRecord:
        """Snapshot this row for the scheduler. Inverse edges are left empty."""
        return TaskRecord(
            id=self.id,
            name=self.name,
            start_date=self.start_date,
            end_date=self.end_date,
            status=TaskStatus(self.status),
            priority=TaskPriority(self.priority),
            progress=self.progress,
            estimated_hours=self.estimated_hours,
            actual_hours=self.actual_hours,
            assignee=self.assignee,
            category=self.category,
            completion_date=self.completion_date,
            parent_id=self.parent_id,
            dependency_ids=[d.id for d in self.dependencies.all()],
        )

    def apply_record(self, record: TaskRecord):
        """Copy the fields the scheduler may change back onto this row."""
        self.start_date = record.start_date
        self.end_date = record.end_date
        self.status = int(record.status)
        self.progress = record.progress
        self.completion_date = record.completion_date


def build_records(tasks):
    """Linked scheduler records for a queryset or list of tasks, in order."""
    return link_records(task.to_record() for task in tasks)
