import uuid

from django.db import models
from django.utils import timezone

from .constants import (
    ATCODER,
    CODECHEF,
    CODEFORCES,
    CODOLIO,
    ERROR_TYPE_CHOICES,
    FETCH_PARTIAL,
    FETCH_PENDING,
    FETCH_STATUS_CHOICES,
    FETCH_SUCCESS,
    GITHUB,
    LEETCODE,
    PERFORMANCE_LEVEL_CHOICES,
    PLATFORM_CHOICES,
)
from .services.metrics import Metrics


def new_job_id():
    return uuid.uuid4().hex


def normalize_reg_no(value) -> str:
    return str(value or '').strip().upper()


class BatchJob(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_PROCESSING = 'processing'
    STATUS_COMPLETED = 'completed'
    STATUS_FAILED = 'failed'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_PROCESSING, 'Processing'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_FAILED, 'Failed'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]
    ACTIVE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)
    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)

    SOURCE_MANUAL = 'manual'
    SOURCE_SCHEDULED = 'scheduled'
    SOURCE_CHOICES = [
        (SOURCE_MANUAL, 'Manual upload'),
        (SOURCE_SCHEDULED, 'Scheduled sweep'),
    ]

    job_id = models.CharField(max_length=64, unique=True, default=new_job_id)
    source = models.CharField(max_length=10, choices=SOURCE_CHOICES, default=SOURCE_MANUAL)
    status = models.CharField(max_length=12, choices=STATUS_CHOICES, default=STATUS_PENDING)

    total_students = models.PositiveIntegerField(default=0)
    processed = models.PositiveIntegerField(default=0)
    successful = models.PositiveIntegerField(default=0)
    failed = models.PositiveIntegerField(default=0)

    week_number = models.PositiveIntegerField(default=1)
    week_label = models.CharField(max_length=50, blank=True)

    started_at = models.DateTimeField(null=True, blank=True)
    ended_at = models.DateTimeField(null=True, blank=True)
    duration_ms = models.PositiveBigIntegerField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status']),
        ]

    def __str__(self):
        return f"{self.job_id} [{self.status}] {self.processed}/{self.total_students}"

    @property
    def percentage(self) -> int:
        if not self.total_students:
            return 0
        return round(self.processed * 100 / self.total_students)

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES


class BatchPlatformTally(models.Model):
    batch = models.ForeignKey(BatchJob, on_delete=models.CASCADE, related_name='platform_tallies')
    platform = models.CharField(max_length=20, choices=PLATFORM_CHOICES)
    attempted = models.PositiveIntegerField(default=0)
    successful = models.PositiveIntegerField(default=0)
    failed = models.PositiveIntegerField(default=0)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['batch', 'platform'], name='uniq_batch_platform_tally'),
        ]

    def __str__(self):
        return f"{self.batch.job_id} {self.platform}: {self.successful}/{self.attempted}"


class BatchError(models.Model):
    batch = models.ForeignKey(BatchJob, on_delete=models.CASCADE, related_name='errors')
    error_type = models.CharField(max_length=12, choices=ERROR_TYPE_CHOICES)
    message = models.TextField()
    reg_no = models.CharField(max_length=50, blank=True)
    platform = models.CharField(max_length=20, choices=PLATFORM_CHOICES, blank=True)
    details = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['batch', 'error_type']),
        ]

    def __str__(self):
        target = self.reg_no or '-'
        if self.platform:
            target = f"{target}/{self.platform}"
        return f"[{self.error_type}] {target}: {self.message}"


class Student(models.Model):
    HANDLE_FIELDS = {
        CODEFORCES: 'handle_codeforces',
        LEETCODE: 'handle_leetcode',
        CODECHEF: 'handle_codechef',
        ATCODER: 'handle_atcoder',
        CODOLIO: 'handle_codolio',
        GITHUB: 'handle_github',
    }

    reg_no = models.CharField(max_length=50, unique=True, help_text="Stored upper-case")
    name = models.CharField(max_length=200)
    department = models.CharField(max_length=100, blank=True)
    year = models.CharField(max_length=20, blank=True)

    # Handles
    handle_codeforces = models.CharField(max_length=100, blank=True, null=True)
    handle_leetcode = models.CharField(max_length=100, blank=True, null=True)
    handle_codechef = models.CharField(max_length=100, blank=True, null=True)
    handle_atcoder = models.CharField(max_length=100, blank=True, null=True)
    handle_codolio = models.CharField(max_length=100, blank=True, null=True)
    handle_github = models.CharField(max_length=100, blank=True, null=True)

    # Rollup refreshed by the pipeline after every processed batch
    total_problems = models.PositiveIntegerField(default=0)
    total_contests = models.PositiveIntegerField(default=0)
    average_rating = models.IntegerField(default=0)
    active_platforms = models.PositiveIntegerField(default=0)
    last_batch = models.ForeignKey(
        BatchJob, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['reg_no']

    def __str__(self):
        return f"{self.reg_no} - {self.name}"

    def save(self, *args, **kwargs):
        self.reg_no = normalize_reg_no(self.reg_no)
        super().save(*args, **kwargs)

    @property
    def platform_ids(self) -> dict:
        return {
            platform: (getattr(self, field) or None)
            for platform, field in self.HANDLE_FIELDS.items()
        }

    def set_platform_ids(self, platform_ids: dict) -> None:
        platform_ids = platform_ids or {}
        for platform, field in self.HANDLE_FIELDS.items():
            value = platform_ids.get(platform)
            value = str(value).strip() if value is not None else ''
            setattr(self, field, value or None)


class PlatformSnapshot(models.Model):
    METRIC_FIELDS = ('rating', 'max_rating', 'problems_solved', 'contests_participated', 'rank')

    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='snapshots')
    platform = models.CharField(max_length=20, choices=PLATFORM_CHOICES)
    identifier = models.CharField(max_length=100, blank=True)

    rating = models.IntegerField(default=0)
    max_rating = models.IntegerField(default=0)
    problems_solved = models.IntegerField(default=0)
    contests_participated = models.IntegerField(default=0)
    rank = models.IntegerField(null=True, blank=True)
    additional_data = models.JSONField(default=dict, blank=True)

    prev_rating = models.IntegerField(default=0)
    prev_max_rating = models.IntegerField(default=0)
    prev_problems_solved = models.IntegerField(default=0)
    prev_contests_participated = models.IntegerField(default=0)
    prev_rank = models.IntegerField(null=True, blank=True)

    change_rating = models.IntegerField(default=0)
    change_max_rating = models.IntegerField(default=0)
    change_problems_solved = models.IntegerField(default=0)
    change_contests_participated = models.IntegerField(default=0)
    change_rank = models.IntegerField(default=0)

    fetch_status = models.CharField(max_length=12, choices=FETCH_STATUS_CHOICES, default=FETCH_PENDING)
    error_message = models.TextField(blank=True)
    last_fetched = models.DateTimeField(null=True, blank=True)
    batch = models.ForeignKey(
        BatchJob, on_delete=models.SET_NULL, null=True, blank=True, related_name='snapshots'
    )
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['student', 'platform'], name='uniq_student_platform_snapshot'),
        ]
        indexes = [
            models.Index(fields=['platform', 'fetch_status']),
        ]

    def __str__(self):
        return f"{self.student.reg_no} {self.platform} [{self.fetch_status}]"

    def current_metrics(self) -> Metrics:
        return Metrics(
            rating=self.rating,
            max_rating=self.max_rating,
            problems_solved=self.problems_solved,
            contests_participated=self.contests_participated,
            rank=self.rank,
            additional_data=dict(self.additional_data or {}),
        )

    def previous_metrics(self) -> Metrics:
        return Metrics(
            rating=self.prev_rating,
            max_rating=self.prev_max_rating,
            problems_solved=self.prev_problems_solved,
            contests_participated=self.prev_contests_participated,
            rank=self.prev_rank,
        )

    @property
    def changes(self) -> dict:
        return {field: getattr(self, f'change_{field}') for field in self.METRIC_FIELDS}

    def record(self, result, batch=None, fetched_at=None) -> None:
        """
        Apply one compared platform result. Only a successful fetch shifts
        current into previous; any other outcome keeps current as it was.
        """
        if result.status == FETCH_SUCCESS:
            for field in self.METRIC_FIELDS:
                setattr(self, f'prev_{field}', getattr(self, field))
                setattr(self, field, getattr(result.metrics, field))
                setattr(self, f'change_{field}', result.changes.get(field, 0))
            self.additional_data = dict(result.metrics.additional_data)
            self.error_message = '; '.join(result.metrics.warnings)
        elif result.status == FETCH_PARTIAL:
            self.error_message = '; '.join(result.metrics.warnings) if result.metrics else ''
        else:
            self.error_message = result.error or ''

        self.identifier = result.identifier or ''
        self.fetch_status = result.status
        self.last_fetched = fetched_at or timezone.now()
        self.batch = batch
        self.save()


class PerformanceHistory(models.Model):
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='history')
    batch = models.ForeignKey(BatchJob, on_delete=models.CASCADE, related_name='history_entries')
    week_number = models.PositiveIntegerField()
    week_label = models.CharField(max_length=50)
    upload_date = models.DateTimeField(default=timezone.now)

    # Frozen copy of every platform result as of this batch
    platform_stats = models.JSONField(default=list)
    overall_score = models.IntegerField(default=0)
    performance_level = models.CharField(max_length=10, choices=PERFORMANCE_LEVEL_CHOICES)
    total_platforms = models.PositiveIntegerField(default=0)
    active_platforms = models.PositiveIntegerField(default=0)
    errors = models.JSONField(default=list, blank=True)
    processing_time_ms = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-week_number', '-created_at']
        constraints = [
            models.UniqueConstraint(fields=['student', 'batch'], name='uniq_student_batch_history'),
        ]
        indexes = [
            models.Index(fields=['student', 'week_number']),
            models.Index(fields=['week_number']),
        ]
        verbose_name_plural = "Performance history"

    def __str__(self):
        return f"{self.student.reg_no} {self.week_label}: {self.overall_score} ({self.performance_level})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Performance history entries are append-only.")
        super().save(*args, **kwargs)
