import threading
import time

from django.test import SimpleTestCase

from tracker.services.api_client import build_clients
from tracker.services.rate_limit import SlidingWindowRateLimiter, build_rate_limiters


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class SlidingWindowRateLimiterTests(SimpleTestCase):
    def test_admits_up_to_limit_without_waiting(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(3, window=1.0, clock=clock, sleep=clock.sleep)

        for _ in range(3):
            limiter.acquire()

        self.assertEqual(clock.sleeps, [])

    def test_waits_until_oldest_admission_leaves_window(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(2, window=1.0, clock=clock, sleep=clock.sleep)

        limiter.acquire()
        clock.now = 0.25
        limiter.acquire()
        clock.now = 0.5
        admitted_at = limiter.acquire()

        self.assertEqual(clock.sleeps, [0.5])
        self.assertEqual(admitted_at, 1.0)

    def test_status_reports_remaining_slots(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(5, window=1.0, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        limiter.acquire()
        clock.now = 0.4

        status = limiter.status()

        self.assertEqual(status["recent"], 2)
        self.assertEqual(status["remaining"], 3)
        self.assertEqual(status["reset_in"], 0.6)

    def test_never_exceeds_limit_in_any_window_under_concurrency(self):
        limit = 4
        window = 0.2
        limiter = SlidingWindowRateLimiter(limit, window=window)
        admitted = []
        admitted_lock = threading.Lock()

        def worker():
            for _ in range(3):
                stamp = limiter.acquire()
                with admitted_lock:
                    admitted.append(stamp)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        started = time.monotonic()
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        admitted.sort()
        self.assertEqual(len(admitted), 15)
        for index in range(len(admitted) - limit):
            self.assertGreaterEqual(admitted[index + limit] - admitted[index], window)
        self.assertGreaterEqual(time.monotonic() - started, window * 3)

    def test_rejects_non_positive_limit(self):
        with self.assertRaises(ValueError):
            SlidingWindowRateLimiter(0)


class BuildRateLimitersTests(SimpleTestCase):
    def test_one_limiter_per_supported_platform(self):
        limiters = build_rate_limiters(build_clients(user_agent="test-agent", github_token=""))

        self.assertEqual(set(limiters), {"codeforces", "leetcode", "codechef", "github"})
        self.assertEqual(limiters["codeforces"].limit, 5)
        self.assertEqual(limiters["leetcode"].limit, 2)
        self.assertEqual(limiters["codechef"].limit, 1)
        self.assertEqual(limiters["github"].limit, 10)
