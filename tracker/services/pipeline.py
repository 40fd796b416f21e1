"""
Per-student fetch-reconcile unit of work.

A ``StudentPipeline`` owns the platform clients and one rate limiter per
platform. Every worker thread of a process shares the same instance, so the
limiters throttle all concurrent fetches for a platform together.

Phases of ``process_entry``:
    1. upsert the student record
    2. fan out one rate-limited, retried fetch per platform identifier and
       wait for all of them
    3. compare against the stored snapshots
    4. write snapshots, the history entry and the student rollup
    5. bump the batch counters (same transaction as 4)
"""
import logging
import time
from concurrent.futures import ALL_COMPLETED, ThreadPoolExecutor, wait

from django.conf import settings
from django.db import DatabaseError, transaction

from ..constants import (
    ERROR_API,
    ERROR_DATABASE,
    ERROR_PROCESSING,
    ERROR_VALIDATION,
    FETCH_FAILED,
    FETCH_PARTIAL,
    FETCH_SUCCESS,
    FETCH_UNSUPPORTED,
    PLATFORMS,
)
from ..exceptions import FetchError, JobTimeoutError
from ..models import BatchJob, PerformanceHistory, PlatformSnapshot, Student, normalize_reg_no
from .api_client import build_clients
from .batches import mark_processing, record_batch_error, record_student_failure, record_student_result
from .metrics import PlatformOutcome
from .rate_limit import build_rate_limiters
from .retry import retry_with_backoff
from .scoring import compare_student

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_STUDENT_SAVED = 20
PROGRESS_FETCHED = 60
PROGRESS_COMPARED = 80
PROGRESS_PERSISTED = 95
PROGRESS_DONE = 100


def _is_retryable(exc) -> bool:
    return getattr(exc, "retryable", True)


def _clean_identifier(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class StudentPipeline:
    def __init__(self, clients=None, rate_limiters=None, job_timeout=None, sleep=time.sleep):
        self.clients = clients if clients is not None else build_clients()
        self.rate_limiters = rate_limiters if rate_limiters is not None else build_rate_limiters(self.clients)
        if job_timeout is None:
            job_timeout = getattr(settings, "QUEUE_JOB_TIMEOUT", 60)
        self.job_timeout = job_timeout
        self._sleep = sleep

    # Phase 2

    def fetch_platform(self, platform: str, identifier: str) -> PlatformOutcome:
        """Fetch one platform; failures come back as a failed outcome, never raised."""
        client = self.clients.get(platform)
        if client is None:
            return PlatformOutcome(
                platform=platform,
                identifier=identifier,
                status=FETCH_FAILED,
                error=f"Unsupported platform: {platform}",
                error_kind="api",
            )
        if not client.supported:
            return PlatformOutcome(
                platform=platform,
                identifier=identifier,
                status=FETCH_UNSUPPORTED,
                metrics=client.fetch(identifier),
            )

        limiter = self.rate_limiters[platform]
        attempts = 0

        def attempt():
            nonlocal attempts
            attempts += 1
            limiter.acquire()
            return client.fetch(identifier)

        def on_retry(attempt_number, exc, delay):
            logger.info(
                "%s fetch for %s failed (attempt %s/%s): %s; retrying in %.1fs",
                platform, identifier, attempt_number, client.max_attempts, exc, delay,
            )

        started = time.monotonic()
        try:
            metrics = retry_with_backoff(
                attempt,
                max_attempts=client.max_attempts,
                base_delay=client.base_delay,
                retry_if=_is_retryable,
                sleep=self._sleep,
                on_retry=on_retry,
            )
        except FetchError as exc:
            logger.warning("%s fetch for %s failed: %s", platform, identifier, exc)
            return PlatformOutcome(
                platform=platform,
                identifier=identifier,
                status=FETCH_FAILED,
                error=str(exc),
                error_kind=exc.kind,
                attempts=attempts,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        except Exception as exc:
            logger.exception("Unexpected error fetching %s for %s", platform, identifier)
            return PlatformOutcome(
                platform=platform,
                identifier=identifier,
                status=FETCH_FAILED,
                error=f"{platform} fetch error: {exc}",
                error_kind="api",
                attempts=attempts,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        return PlatformOutcome(
            platform=platform,
            identifier=identifier,
            status=FETCH_PARTIAL if metrics.partial else FETCH_SUCCESS,
            metrics=metrics,
            attempts=attempts,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def fetch_all(self, platform_ids: dict) -> list:
        """
        Fetch every non-empty identifier concurrently and wait for all of
        them. Raises JobTimeoutError if they do not settle within the job
        timeout; unfinished fetches are abandoned.
        """
        targets = []
        for platform in PLATFORMS:
            identifier = _clean_identifier((platform_ids or {}).get(platform))
            if identifier:
                targets.append((platform, identifier))
        if not targets:
            return []

        executor = ThreadPoolExecutor(max_workers=len(targets), thread_name_prefix="platform-fetch")
        futures = [executor.submit(self.fetch_platform, platform, identifier) for platform, identifier in targets]
        _done, not_done = wait(futures, timeout=self.job_timeout, return_when=ALL_COMPLETED)
        if not_done:
            executor.shutdown(wait=False, cancel_futures=True)
            pending = ", ".join(platform for (platform, _), future in zip(targets, futures) if future in not_done)
            raise JobTimeoutError(f"Platform fetches did not finish within {self.job_timeout}s: {pending}")
        executor.shutdown(wait=True)
        return [future.result() for future in futures]

    # Phase 1

    def upsert_student(self, data: dict) -> Student:
        platform_ids = data.get("platformIds") or {}
        defaults = {
            "name": (data.get("name") or "").strip() or normalize_reg_no(data.get("regNo")),
            "department": (data.get("department") or "").strip(),
            "year": str(data.get("year") or "").strip(),
            "is_active": True,
        }
        for platform, field in Student.HANDLE_FIELDS.items():
            defaults[field] = _clean_identifier(platform_ids.get(platform))
        student, _created = Student.objects.update_or_create(
            reg_no=normalize_reg_no(data.get("regNo")),
            defaults=defaults,
        )
        return student

    # Phase 4

    def persist(self, student, batch, comparison, snapshots, processing_time_ms):
        for item in comparison.platforms:
            snapshot = snapshots.get(item.platform) or PlatformSnapshot(student=student, platform=item.platform)
            snapshot.record(item, batch=batch)

            if item.status == FETCH_FAILED:
                record_batch_error(
                    batch.job_id,
                    ERROR_API,
                    item.error or f"{item.platform} fetch failed",
                    reg_no=student.reg_no,
                    platform=item.platform,
                    details={"kind": item.error_kind, "platformId": item.identifier},
                )
            elif item.status == FETCH_PARTIAL:
                record_batch_error(
                    batch.job_id,
                    ERROR_API,
                    f"{item.platform} profile could not be parsed",
                    reg_no=student.reg_no,
                    platform=item.platform,
                    details={"kind": "partial", "warnings": item.warnings},
                )
            elif item.warnings:
                record_batch_error(
                    batch.job_id,
                    ERROR_API,
                    f"{item.platform} profile parsed with missing fields: {'; '.join(item.warnings)}",
                    reg_no=student.reg_no,
                    platform=item.platform,
                    details={"kind": "selector", "warnings": item.warnings},
                )

        PerformanceHistory.objects.create(
            student=student,
            batch=batch,
            week_number=batch.week_number,
            week_label=batch.week_label,
            platform_stats=comparison.platform_stats(),
            overall_score=comparison.overall_score,
            performance_level=comparison.performance_level,
            total_platforms=comparison.total_platforms,
            active_platforms=comparison.active_platforms,
            errors=comparison.errors,
            processing_time_ms=processing_time_ms,
        )

        succeeded = [item.metrics for item in comparison.platforms if item.status == FETCH_SUCCESS]
        Student.objects.filter(pk=student.pk).update(
            total_problems=sum(metrics.problems_solved for metrics in succeeded),
            total_contests=sum(metrics.contests_participated for metrics in succeeded),
            average_rating=round(sum(metrics.rating for metrics in succeeded) / len(succeeded)) if succeeded else 0,
            active_platforms=comparison.active_platforms,
            last_batch=batch,
        )

    def process_entry(self, entry: dict, progress=None) -> dict:
        report = progress or (lambda percent: None)
        started = time.monotonic()
        data = entry.get("student") or {}
        batch_id = entry.get("batchId")
        reg_no = normalize_reg_no(data.get("regNo"))

        batch = BatchJob.objects.filter(job_id=batch_id).first()
        if batch is None:
            logger.warning("Entry for %s references unknown batch %s; dropping.", reg_no, batch_id)
            return {"status": "skipped", "reason": "unknown batch", "regNo": reg_no, "batchId": batch_id}
        if batch.is_terminal:
            logger.info("Batch %s is %s; skipping %s.", batch_id, batch.status, reg_no)
            return {"status": "skipped", "reason": f"batch {batch.status}", "regNo": reg_no, "batchId": batch_id}
        if not reg_no:
            record_student_failure(batch_id, "", "Queue entry has no regNo", error_type=ERROR_VALIDATION)
            return {"status": "invalid", "reason": "missing regNo", "batchId": batch_id}

        mark_processing(batch_id)
        report(PROGRESS_STARTED)

        student = self.upsert_student(data)
        if PerformanceHistory.objects.filter(student=student, batch=batch).exists():
            logger.info("%s already recorded for batch %s; redelivery skipped.", reg_no, batch_id)
            return {"status": "skipped", "reason": "already processed", "regNo": reg_no, "batchId": batch_id}
        report(PROGRESS_STUDENT_SAVED)

        try:
            outcomes = self.fetch_all(student.platform_ids)
            report(PROGRESS_FETCHED)

            snapshots = {snapshot.platform: snapshot for snapshot in student.snapshots.all()}
            comparison = compare_student(
                outcomes,
                {platform: snapshot.current_metrics() for platform, snapshot in snapshots.items()},
            )
            report(PROGRESS_COMPARED)

            processing_time_ms = int((time.monotonic() - started) * 1000)
            with transaction.atomic():
                self.persist(student, batch, comparison, snapshots, processing_time_ms)
                record_student_result(batch_id, comparison)
            report(PROGRESS_PERSISTED)
        except Exception as exc:
            logger.exception("Processing failed for %s in batch %s", reg_no, batch_id)
            error_type = ERROR_DATABASE if isinstance(exc, DatabaseError) else ERROR_PROCESSING
            try:
                record_batch_error(batch_id, error_type, f"Failed to process student: {exc}", reg_no=reg_no)
            except Exception:
                logger.exception("Could not record processing error for %s", reg_no)
            raise

        report(PROGRESS_DONE)
        logger.info(
            "Processed %s for batch %s: score %s (%s), %s/%s platforms in %sms.",
            reg_no, batch_id, comparison.overall_score, comparison.performance_level,
            comparison.active_platforms, comparison.total_platforms, processing_time_ms,
        )
        return {
            "status": "processed",
            "regNo": reg_no,
            "batchId": batch_id,
            "overallScore": comparison.overall_score,
            "performanceLevel": comparison.performance_level,
            "totalPlatforms": comparison.total_platforms,
            "activePlatforms": comparison.active_platforms,
            "failedPlatforms": comparison.failed_platforms,
            "processingTimeMs": processing_time_ms,
        }
