"""
Batch lifecycle: creation, enqueueing and the conditional status transitions.

Counter changes are single UPDATE statements with F() expressions, and each
transition only matches rows still in a non-terminal status, so concurrent
workers never lose an increment and a finished batch never moves again.
"""
import logging

from django.conf import settings
from django.db import transaction
from django.db.models import F, Max
from django.utils import timezone

from ..constants import (
    ERROR_PROCESSING,
    ERROR_SYSTEM,
    ERROR_VALIDATION,
    FETCH_FAILED,
    FETCH_UNSUPPORTED,
    PLATFORMS,
)
from ..exceptions import BatchAlreadyRunning, EmptyRosterError
from ..models import (
    BatchError,
    BatchJob,
    BatchPlatformTally,
    PerformanceHistory,
    Student,
    new_job_id,
    normalize_reg_no,
)
from .locks import SWEEP_LOCK_KEY, acquire_lock, release_lock

logger = logging.getLogger(__name__)


def next_week_number() -> int:
    current = PerformanceHistory.objects.aggregate(Max('week_number'))['week_number__max']
    return (current or 0) + 1


def week_label(week_number: int) -> str:
    return f"Week {week_number}"


def normalize_roster(students):
    """
    Return (roster, rejected). Rows are keyed by upper-cased regNo; a later
    row for the same regNo replaces the earlier one.
    """
    by_reg_no = {}
    rejected = []
    for index, row in enumerate(students or []):
        reg_no = normalize_reg_no((row or {}).get('regNo'))
        if not reg_no:
            rejected.append({'row': index, 'message': 'Missing regNo'})
            continue
        platform_ids = row.get('platformIds') or {}
        by_reg_no[reg_no] = {
            'regNo': reg_no,
            'name': (row.get('name') or '').strip() or reg_no,
            'department': (row.get('department') or '').strip(),
            'year': str(row.get('year') or '').strip(),
            'platformIds': {
                platform: (str(platform_ids[platform]).strip() or None) if platform_ids.get(platform) else None
                for platform in PLATFORMS
            },
        }
    return list(by_reg_no.values()), rejected


def student_as_roster_row(student: Student) -> dict:
    return {
        'regNo': student.reg_no,
        'name': student.name,
        'department': student.department,
        'year': student.year,
        'platformIds': student.platform_ids,
    }


def build_entry(student: dict, batch_id: str) -> dict:
    return {
        'student': student,
        'batchId': batch_id,
        'enqueuedAt': timezone.now().isoformat(),
    }


def start_batch(students, source=BatchJob.SOURCE_MANUAL) -> BatchJob:
    """
    Create a batch for an already validated roster and enqueue one entry per
    student. Only one batch may be active at a time.
    """
    from ..tasks import process_student

    roster, rejected = normalize_roster(students)
    if not roster:
        raise EmptyRosterError("Roster contains no students with a regNo.")

    job_id = new_job_id()
    if not acquire_lock(SWEEP_LOCK_KEY, ttl_seconds=settings.SWEEP_LOCK_SECONDS, token=job_id):
        raise BatchAlreadyRunning("Another batch is still running.")

    try:
        week_number = next_week_number()
        with transaction.atomic():
            batch = BatchJob.objects.create(
                job_id=job_id,
                source=source,
                total_students=len(roster),
                week_number=week_number,
                week_label=week_label(week_number),
            )
            BatchPlatformTally.objects.bulk_create(
                [BatchPlatformTally(batch=batch, platform=platform) for platform in PLATFORMS]
            )
            for row in rejected:
                BatchError.objects.create(
                    batch=batch,
                    error_type=ERROR_VALIDATION,
                    message=f"Roster row {row['row']}: {row['message']}",
                )
    except Exception:
        release_lock(SWEEP_LOCK_KEY, token=job_id)
        raise

    logger.info(
        "Starting %s batch %s (%s) with %s students.",
        source, batch.job_id, batch.week_label, batch.total_students,
    )

    try:
        for student in roster:
            process_student.apply_async(
                args=[build_entry(student, batch.job_id)],
                task_id=f"{batch.job_id}-{student['regNo']}",
            )
    except Exception as exc:
        logger.exception("Failed to enqueue batch %s", batch.job_id)
        fail_batch(batch.job_id, f"Failed to enqueue students: {exc}")
        raise

    return batch


def run_weekly_sweep():
    """Re-run the whole active roster. Returns the new batch or None."""
    roster = [student_as_roster_row(student) for student in Student.objects.filter(is_active=True)]
    if not roster:
        logger.warning("Weekly sweep skipped: no active students.")
        return None
    try:
        batch = start_batch(roster, source=BatchJob.SOURCE_SCHEDULED)
    except BatchAlreadyRunning:
        logger.warning("Weekly sweep skipped: a batch is already running.")
        return None
    return batch


def mark_processing(job_id: str) -> bool:
    now = timezone.now()
    return BatchJob.objects.filter(job_id=job_id, status=BatchJob.STATUS_PENDING).update(
        status=BatchJob.STATUS_PROCESSING,
        started_at=now,
        updated_at=now,
    ) > 0


def record_batch_error(job_id: str, error_type: str, message: str, reg_no: str = '', platform: str = '', details=None):
    batch = BatchJob.objects.only('id').get(job_id=job_id)
    return BatchError.objects.create(
        batch=batch,
        error_type=error_type,
        message=message,
        reg_no=reg_no or '',
        platform=platform or '',
        details=details or {},
    )


def _bump_student_counters(job_id: str, successful: bool) -> int:
    return BatchJob.objects.filter(job_id=job_id, status__in=BatchJob.ACTIVE_STATUSES).update(
        processed=F('processed') + 1,
        successful=F('successful') + (1 if successful else 0),
        failed=F('failed') + (0 if successful else 1),
        updated_at=timezone.now(),
    )


def _finish(job_id: str, status: str, **conditions) -> bool:
    now = timezone.now()
    updated = BatchJob.objects.filter(
        job_id=job_id,
        status__in=BatchJob.ACTIVE_STATUSES,
        **conditions,
    ).update(status=status, ended_at=now, updated_at=now)
    if not updated:
        return False

    batch = BatchJob.objects.get(job_id=job_id)
    started = batch.started_at or batch.created_at
    batch.duration_ms = max(0, int((now - started).total_seconds() * 1000))
    batch.save(update_fields=['duration_ms'])
    transaction.on_commit(lambda: release_lock(SWEEP_LOCK_KEY, token=job_id))
    logger.info(
        "Batch %s %s: %s processed, %s successful, %s failed in %sms.",
        job_id, status, batch.processed, batch.successful, batch.failed, batch.duration_ms,
    )
    return True


def _complete_if_done(job_id: str) -> bool:
    return _finish(job_id, BatchJob.STATUS_COMPLETED, processed__gte=F('total_students'))


def record_student_result(job_id: str, comparison) -> bool:
    """Count one processed student and its per-platform outcomes."""
    if not _bump_student_counters(job_id, comparison.successful):
        logger.info("Batch %s is no longer active; result not counted.", job_id)
        return False

    batch_filter = {'batch__job_id': job_id}
    for item in comparison.platforms:
        if item.status == FETCH_UNSUPPORTED:
            continue
        failed = item.status == FETCH_FAILED
        BatchPlatformTally.objects.filter(platform=item.platform, **batch_filter).update(
            attempted=F('attempted') + 1,
            successful=F('successful') + (0 if failed else 1),
            failed=F('failed') + (1 if failed else 0),
        )

    _complete_if_done(job_id)
    return True


def record_student_failure(job_id: str, reg_no: str, message: str, error_type: str = ERROR_PROCESSING) -> bool:
    """
    The unit of work gave up for this student; the batch moves on. A student
    whose history entry for this batch is already committed was counted with
    it and is not counted again.
    """
    with transaction.atomic():
        already_recorded = bool(reg_no) and PerformanceHistory.objects.filter(
            batch__job_id=job_id,
            student__reg_no=normalize_reg_no(reg_no),
        ).exists()
        if already_recorded:
            logger.warning("%s already counted in batch %s; failure logged only.", reg_no, job_id)
            counted = False
        else:
            counted = _bump_student_counters(job_id, successful=False) > 0
        record_batch_error(job_id, error_type, message, reg_no=reg_no)
    if counted:
        _complete_if_done(job_id)
    return counted


def fail_batch(job_id: str, reason: str, error_type: str = ERROR_SYSTEM) -> bool:
    record_batch_error(job_id, error_type, reason)
    failed = _finish(job_id, BatchJob.STATUS_FAILED)
    if failed:
        logger.error("Batch %s failed: %s", job_id, reason)
    return failed


def cancel_batch(job_id: str, reason: str = "Cancelled by operator") -> bool:
    cancelled = _finish(job_id, BatchJob.STATUS_CANCELLED)
    if cancelled:
        logger.warning("Batch %s cancelled: %s", job_id, reason)
    return cancelled
