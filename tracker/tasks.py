import logging
import threading
import uuid

from celery import shared_task
from django.conf import settings

from .models import normalize_reg_no
from .services.batches import record_student_failure, run_weekly_sweep
from .services.locks import acquire_lock, entry_lock_key, release_lock
from .services.pipeline import StudentPipeline

logger = logging.getLogger(__name__)

_pipeline = None
_pipeline_lock = threading.Lock()


def _get_pipeline():
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                _pipeline = StudentPipeline()
    return _pipeline


def _retry_countdown(retries: int) -> float:
    return settings.QUEUE_RETRY_DELAY * (2 ** retries)


def _progress_reporter(task):
    def report(percent):
        if task.request.id and not task.request.is_eager:
            task.update_state(state="PROGRESS", meta={"progress": percent})
    return report
@shared_task(bind=True, max_retries=None, acks_late=True, reject_on_worker_lost=True)
def process_student(self, entry, failures=0):
    student = entry.get("student") or {}
    reg_no = normalize_reg_no(student.get("regNo"))
    batch_id = entry.get("batchId")

    lock_key = entry_lock_key(batch_id, reg_no)
    lock_ttl = max(600, int(settings.QUEUE_JOB_TIMEOUT * 5))
    token = uuid.uuid4().hex
    if not acquire_lock(lock_key, ttl_seconds=lock_ttl, token=token):
        # Held by a live run or left by a dead worker; try again once it lapses.
        countdown = min(_retry_countdown(self.request.retries), lock_ttl)
        logger.info("Entry %s is locked; checking again in %ss.", lock_key, countdown)
        raise self.retry(countdown=countdown)

    try:
        return _get_pipeline().process_entry(entry, progress=_progress_reporter(self))
    except Exception as exc:
        attempt = failures + 1
        if attempt >= settings.QUEUE_RETRY_ATTEMPTS:
            logger.error(
                "Giving up on %s in batch %s after %s attempts: %s",
                reg_no, batch_id, attempt, exc,
            )
            record_student_failure(
                batch_id,
                reg_no,
                f"Student failed after {attempt} attempts: {exc}",
            )
            return {"status": "failed", "regNo": reg_no, "batchId": batch_id, "error": str(exc)}

        countdown = _retry_countdown(failures)
        logger.warning(
            "Retrying %s in batch %s (attempt %s/%s) in %ss: %s",
            reg_no, batch_id, attempt, settings.QUEUE_RETRY_ATTEMPTS, countdown, exc,
        )
        raise self.retry(exc=exc, countdown=countdown, kwargs={"failures": attempt})
    finally:
        release_lock(lock_key, token=token)


@shared_task
def weekly_roster_sweep():
    batch = run_weekly_sweep()
    if batch is None:
        return {"status": "skipped"}
    return {
        "status": "started",
        "job_id": batch.job_id,
        "week_label": batch.week_label,
        "total_students": batch.total_students,
    }
