import threading
from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase

from tracker.constants import PLATFORMS
from tracker.exceptions import JobTimeoutError, PlatformAPIError, RateLimited, UserNotFound
from tracker.models import (
    BatchError,
    BatchJob,
    BatchPlatformTally,
    PerformanceHistory,
    PlatformSnapshot,
    Student,
)
from tracker.services.metrics import Metrics
from tracker.services import batches
from tracker.services.pipeline import StudentPipeline


class FakeClient:
    def __init__(self, platform, results=None, supported=True, max_attempts=1, base_delay=1.0, block=None):
        self.platform = platform
        self.results = list(results or [])
        self.supported = supported
        self.rate_limit = 100
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.block = block
        self.calls = 0

    def fetch(self, identifier):
        self.calls += 1
        if self.block is not None:
            self.block.wait(5)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def make_batch(total=1, week_number=1, status=BatchJob.STATUS_PENDING):
    batch = BatchJob.objects.create(
        total_students=total,
        week_number=week_number,
        week_label=f"Week {week_number}",
        status=status,
    )
    BatchPlatformTally.objects.bulk_create(
        [BatchPlatformTally(batch=batch, platform=platform) for platform in PLATFORMS]
    )
    return batch


def make_entry(batch, reg_no="21cs001", **platform_ids):
    return {
        "student": {
            "regNo": reg_no,
            "name": "Asha Rao",
            "department": "CSE",
            "year": "3",
            "platformIds": platform_ids,
        },
        "batchId": batch.job_id,
        "enqueuedAt": "2026-10-18T18:29:00+00:00",
    }


class PipelineTestCase(TestCase):
    def setUp(self):
        patcher = patch("tracker.services.batches.release_lock")
        self.release_lock = patcher.start()
        self.addCleanup(patcher.stop)
        self.sleeps = []

    def build_pipeline(self, clients, job_timeout=5):
        return StudentPipeline(clients=clients, job_timeout=job_timeout, sleep=self.sleeps.append)


class ProcessEntryTests(PipelineTestCase):
    def test_partial_failure_still_records_history(self):
        clients = {
            "codeforces": FakeClient("codeforces", [Metrics(rating=800, problems_solved=200, contests_participated=5)]),
            "leetcode": FakeClient("leetcode", [PlatformAPIError("LeetCode API error: boom", platform="leetcode")]),
            "github": FakeClient("github", [Metrics(rating=0, problems_solved=50)]),
        }
        batch = make_batch(total=1)

        with self.captureOnCommitCallbacks(execute=True):
            result = self.build_pipeline(clients).process_entry(
                make_entry(batch, codeforces="cf_user", leetcode="lc_user", github="gh_user")
            )

        self.assertEqual(result["status"], "processed")
        history = PerformanceHistory.objects.get(student__reg_no="21CS001", batch=batch)
        self.assertEqual(history.total_platforms, 3)
        self.assertEqual(history.active_platforms, 2)
        self.assertEqual(history.overall_score, 50)
        self.assertEqual(history.performance_level, "medium")
        self.assertEqual(len(history.errors), 1)
        self.assertEqual(history.errors[0]["platform"], "leetcode")
        self.assertEqual(history.week_label, "Week 1")

        error = BatchError.objects.get(batch=batch)
        self.assertEqual(error.error_type, "api")
        self.assertEqual(error.platform, "leetcode")
        self.assertEqual(error.reg_no, "21CS001")
        self.assertEqual(error.details["kind"], "api")

        snapshot = PlatformSnapshot.objects.get(student__reg_no="21CS001", platform="leetcode")
        self.assertEqual(snapshot.fetch_status, "failed")

        batch.refresh_from_db()
        self.assertEqual((batch.processed, batch.successful, batch.failed), (1, 0, 1))
        self.assertEqual(batch.status, BatchJob.STATUS_COMPLETED)
        self.assertIsNotNone(batch.ended_at)
        self.assertIsNotNone(batch.duration_ms)
        self.release_lock.assert_called_once()

        tallies = {t.platform: (t.attempted, t.successful, t.failed) for t in batch.platform_tallies.all()}
        self.assertEqual(tallies["codeforces"], (1, 1, 0))
        self.assertEqual(tallies["leetcode"], (1, 0, 1))
        self.assertEqual(tallies["github"], (1, 1, 0))
        self.assertEqual(tallies["codechef"], (0, 0, 0))

    def test_student_is_upserted_with_normalized_reg_no_and_rollup(self):
        clients = {
            "codeforces": FakeClient("codeforces", [Metrics(rating=1400, problems_solved=120, contests_participated=10)]),
            "github": FakeClient("github", [Metrics(rating=20, problems_solved=8)]),
        }
        batch = make_batch()

        self.build_pipeline(clients).process_entry(make_entry(batch, codeforces=" cf_user ", github="gh"))

        student = Student.objects.get(reg_no="21CS001")
        self.assertEqual(student.handle_codeforces, "cf_user")
        self.assertEqual(student.department, "CSE")
        self.assertEqual(student.total_problems, 128)
        self.assertEqual(student.total_contests, 10)
        self.assertEqual(student.average_rating, 710)
        self.assertEqual(student.active_platforms, 2)
        self.assertEqual(student.last_batch, batch)

    def test_successful_refetch_shifts_current_into_previous(self):
        student = Student.objects.create(reg_no="21CS001", name="Asha Rao", handle_codeforces="cf_user")
        PlatformSnapshot.objects.create(
            student=student,
            platform="codeforces",
            identifier="cf_user",
            rating=1500,
            max_rating=1550,
            problems_solved=100,
            contests_participated=8,
            fetch_status="success",
        )
        clients = {
            "codeforces": FakeClient(
                "codeforces",
                [Metrics(rating=1600, max_rating=1600, problems_solved=120, contests_participated=9)],
            ),
        }
        batch = make_batch(week_number=2)

        self.build_pipeline(clients).process_entry(make_entry(batch, codeforces="cf_user"))

        snapshot = PlatformSnapshot.objects.get(student=student, platform="codeforces")
        self.assertEqual(snapshot.rating, 1600)
        self.assertEqual(snapshot.prev_rating, 1500)
        self.assertEqual(snapshot.prev_problems_solved, 100)
        self.assertEqual(snapshot.change_rating, 100)
        self.assertEqual(snapshot.change_problems_solved, 20)
        self.assertEqual(snapshot.change_contests_participated, 1)
        self.assertEqual(snapshot.batch, batch)
        stats = PerformanceHistory.objects.get(student=student).platform_stats[0]
        self.assertEqual(stats["trend"], "up")

    def test_failed_refetch_keeps_current_metrics(self):
        student = Student.objects.create(reg_no="21CS001", name="Asha Rao", handle_codeforces="cf_user")
        PlatformSnapshot.objects.create(
            student=student,
            platform="codeforces",
            identifier="cf_user",
            rating=1500,
            problems_solved=100,
            fetch_status="success",
        )
        clients = {
            "codeforces": FakeClient("codeforces", [UserNotFound("Invalid Codeforces handle: cf_user")]),
        }
        batch = make_batch()

        self.build_pipeline(clients).process_entry(make_entry(batch, codeforces="cf_user"))

        snapshot = PlatformSnapshot.objects.get(student=student, platform="codeforces")
        self.assertEqual(snapshot.rating, 1500)
        self.assertEqual(snapshot.problems_solved, 100)
        self.assertEqual(snapshot.fetch_status, "failed")
        self.assertEqual(snapshot.error_message, "Invalid Codeforces handle: cf_user")
        self.assertEqual(clients["codeforces"].calls, 1)

    def test_identical_refetch_has_zero_changes(self):
        metrics = Metrics(rating=1500, max_rating=1500, problems_solved=100, contests_participated=8)
        clients = {"codeforces": FakeClient("codeforces", [metrics])}
        pipeline = self.build_pipeline(clients)

        first = make_batch(week_number=1)
        pipeline.process_entry(make_entry(first, codeforces="cf_user"))
        second = make_batch(week_number=2)
        pipeline.process_entry(make_entry(second, codeforces="cf_user"))

        snapshot = PlatformSnapshot.objects.get(student__reg_no="21CS001", platform="codeforces")
        self.assertEqual(set(snapshot.changes.values()), {0})
        latest = PerformanceHistory.objects.get(batch=second)
        self.assertEqual(latest.platform_stats[0]["trend"], "stable")
        self.assertEqual(latest.week_number, 2)

    def test_redelivered_entry_is_skipped(self):
        clients = {"codeforces": FakeClient("codeforces", [Metrics(rating=1200)])}
        batch = make_batch(total=2)
        pipeline = self.build_pipeline(clients)
        entry = make_entry(batch, codeforces="cf_user")

        pipeline.process_entry(entry)
        second = pipeline.process_entry(entry)

        self.assertEqual(second["status"], "skipped")
        self.assertEqual(clients["codeforces"].calls, 1)
        self.assertEqual(PerformanceHistory.objects.filter(batch=batch).count(), 1)
        batch.refresh_from_db()
        self.assertEqual(batch.processed, 1)
        self.assertEqual(batch.status, BatchJob.STATUS_PROCESSING)

    def test_terminal_batch_short_circuits(self):
        clients = {"codeforces": FakeClient("codeforces", [Metrics(rating=1200)])}
        batch = make_batch(status=BatchJob.STATUS_CANCELLED)

        result = self.build_pipeline(clients).process_entry(make_entry(batch, codeforces="cf_user"))

        self.assertEqual(result["status"], "skipped")
        self.assertFalse(Student.objects.exists())
        self.assertEqual(clients["codeforces"].calls, 0)

    def test_unsupported_platform_is_recorded_but_not_counted(self):
        clients = {
            "codeforces": FakeClient("codeforces", [Metrics(rating=400, problems_solved=100, contests_participated=5)]),
            "atcoder": FakeClient("atcoder", [Metrics()], supported=False),
        }
        batch = make_batch()

        self.build_pipeline(clients).process_entry(make_entry(batch, codeforces="cf_user", atcoder="ac_user"))

        history = PerformanceHistory.objects.get(batch=batch)
        self.assertEqual(history.total_platforms, 1)
        self.assertEqual(history.overall_score, 50)
        snapshot = PlatformSnapshot.objects.get(platform="atcoder")
        self.assertEqual(snapshot.fetch_status, "unsupported")
        tally = BatchPlatformTally.objects.get(batch=batch, platform="atcoder")
        self.assertEqual(tally.attempted, 0)
        batch.refresh_from_db()
        self.assertEqual(batch.successful, 1)

    def test_student_without_identifiers_scores_zero(self):
        batch = make_batch()

        result = self.build_pipeline({}).process_entry(make_entry(batch))

        self.assertEqual(result["overallScore"], 0)
        history = PerformanceHistory.objects.get(batch=batch)
        self.assertEqual(history.performance_level, "low")
        self.assertEqual(history.total_platforms, 0)

    def test_partial_scrape_annotates_error(self):
        partial = Metrics(warnings=["CodeChef rating not found on profile page"], partial=True)
        clients = {"codechef": FakeClient("codechef", [partial])}
        batch = make_batch()

        self.build_pipeline(clients).process_entry(make_entry(batch, codechef="chef"))

        snapshot = PlatformSnapshot.objects.get(platform="codechef")
        self.assertEqual(snapshot.fetch_status, "partial")
        self.assertIn("rating not found", snapshot.error_message)
        error = BatchError.objects.get(batch=batch)
        self.assertEqual(error.details["kind"], "partial")
        history = PerformanceHistory.objects.get(batch=batch)
        self.assertEqual(history.active_platforms, 0)
        self.assertEqual(history.total_platforms, 1)

    def test_progress_is_reported_in_order(self):
        clients = {"codeforces": FakeClient("codeforces", [Metrics(rating=1200)])}
        batch = make_batch()
        seen = []

        self.build_pipeline(clients).process_entry(make_entry(batch, codeforces="cf_user"), progress=seen.append)

        self.assertEqual(seen, [10, 20, 60, 80, 95, 100])

    def test_batch_completes_only_when_all_students_processed(self):
        clients = {"codeforces": FakeClient("codeforces", [Metrics(rating=1200)])}
        batch = make_batch(total=2)
        pipeline = self.build_pipeline(clients)

        pipeline.process_entry(make_entry(batch, reg_no="21CS001", codeforces="a"))
        batch.refresh_from_db()
        self.assertEqual(batch.status, BatchJob.STATUS_PROCESSING)
        self.assertIsNotNone(batch.started_at)

        pipeline.process_entry(make_entry(batch, reg_no="21CS002", codeforces="b"))
        batch.refresh_from_db()
        self.assertEqual(batch.status, BatchJob.STATUS_COMPLETED)
        self.assertEqual(batch.percentage, 100)

    def test_failure_after_commit_leaves_batch_count_alone(self):
        clients = {"codeforces": FakeClient("codeforces", [Metrics(rating=1200)])}
        batch = make_batch(total=2)

        def progress(percent):
            if percent == 100:
                raise RuntimeError("result backend unavailable")

        with self.assertRaises(RuntimeError):
            self.build_pipeline(clients).process_entry(make_entry(batch, codeforces="cf_user"), progress=progress)
        batches.record_student_failure(batch.job_id, "21CS001", "Student failed after 1 attempts")

        batch.refresh_from_db()
        self.assertEqual((batch.processed, batch.successful, batch.failed), (1, 1, 0))
        self.assertEqual(batch.status, BatchJob.STATUS_PROCESSING)
        self.assertEqual(PerformanceHistory.objects.filter(batch=batch).count(), 1)

    def test_selector_warnings_reach_error_log_and_history(self):
        scraped = Metrics(rating=1650, max_rating=1720, warnings=["CodeChef contests not found on profile page"])
        clients = {"codechef": FakeClient("codechef", [scraped])}
        batch = make_batch()

        self.build_pipeline(clients).process_entry(make_entry(batch, codechef="chef"))

        snapshot = PlatformSnapshot.objects.get(platform="codechef")
        self.assertEqual(snapshot.fetch_status, "success")
        error = BatchError.objects.get(batch=batch)
        self.assertEqual((error.error_type, error.platform), ("api", "codechef"))
        self.assertEqual(error.details["kind"], "selector")
        self.assertEqual(error.details["warnings"], ["CodeChef contests not found on profile page"])
        history = PerformanceHistory.objects.get(batch=batch)
        self.assertEqual(history.active_platforms, 1)
        self.assertEqual(history.errors[0]["kind"], "selector")
        self.assertEqual(history.platform_stats[0]["warnings"], ["CodeChef contests not found on profile page"])
        batch.refresh_from_db()
        self.assertEqual(batch.successful, 1)

    def test_storage_failure_rolls_back_and_propagates(self):
        clients = {"codeforces": FakeClient("codeforces", [Metrics(rating=1200)])}
        batch = make_batch()

        with patch(
            "tracker.services.pipeline.PerformanceHistory.objects.create",
            side_effect=DatabaseError("disk full"),
        ):
            with self.assertRaises(DatabaseError):
                self.build_pipeline(clients).process_entry(make_entry(batch, codeforces="cf_user"))

        batch.refresh_from_db()
        self.assertEqual(batch.processed, 0)
        self.assertFalse(PlatformSnapshot.objects.exists())
        error = BatchError.objects.get(batch=batch)
        self.assertEqual(error.error_type, "database")
        self.assertEqual(error.reg_no, "21CS001")


class FetchPlatformTests(PipelineTestCase):
    def test_retryable_errors_are_retried_with_backoff(self):
        client = FakeClient(
            "leetcode",
            [RateLimited("LeetCode API rate limit exceeded"), Metrics(rating=1700)],
            max_attempts=3,
            base_delay=3.0,
        )
        pipeline = self.build_pipeline({"leetcode": client})

        outcome = pipeline.fetch_platform("leetcode", "alice")

        self.assertEqual(outcome.status, "success")
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(self.sleeps, [3.0])

    def test_exhausted_retries_give_failed_outcome(self):
        client = FakeClient("codeforces", [RateLimited("limit")], max_attempts=3, base_delay=2.0)
        pipeline = self.build_pipeline({"codeforces": client})

        outcome = pipeline.fetch_platform("codeforces", "cf_user")

        self.assertEqual(outcome.status, "failed")
        self.assertEqual(outcome.error_kind, "rate_limited")
        self.assertEqual(client.calls, 3)
        self.assertEqual(self.sleeps, [2.0, 4.0])

    def test_not_found_is_not_retried(self):
        client = FakeClient("codeforces", [UserNotFound("Invalid Codeforces handle: x")], max_attempts=3)
        pipeline = self.build_pipeline({"codeforces": client})

        outcome = pipeline.fetch_platform("codeforces", "x")

        self.assertEqual(outcome.error_kind, "not_found")
        self.assertEqual(client.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_unexpected_exception_is_contained(self):
        client = FakeClient("github", [KeyError("login")])
        pipeline = self.build_pipeline({"github": client})

        outcome = pipeline.fetch_platform("github", "octocat")

        self.assertEqual(outcome.status, "failed")
        self.assertEqual(outcome.error_kind, "api")

    def test_fan_out_timeout_abandons_slow_fetches(self):
        gate = threading.Event()
        self.addCleanup(gate.set)
        clients = {
            "codeforces": FakeClient("codeforces", [Metrics(rating=1200)]),
            "codechef": FakeClient("codechef", [Metrics(rating=1500)], block=gate),
        }
        pipeline = self.build_pipeline(clients, job_timeout=0.1)

        with self.assertRaises(JobTimeoutError) as ctx:
            pipeline.fetch_all({"codeforces": "a", "codechef": "b"})

        self.assertIn("codechef", str(ctx.exception))

    def test_fan_out_skips_blank_identifiers(self):
        clients = {
            "codeforces": FakeClient("codeforces", [Metrics(rating=1200)]),
            "github": FakeClient("github", [Metrics(rating=3)]),
        }
        pipeline = self.build_pipeline(clients)

        outcomes = pipeline.fetch_all({"codeforces": "a", "github": "  ", "leetcode": None})

        self.assertEqual([outcome.platform for outcome in outcomes], ["codeforces"])
        self.assertEqual(clients["github"].calls, 0)
