from __future__ import annotations

import threading
import time
import unittest

from api.worker.scheduler import (
    STATE_IDLE,
    STATE_RUNNING,
    STATE_SCHEDULED,
    CoalescingScheduler,
)


def _wait_until(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class CoalescingSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.schedulers: list[CoalescingScheduler] = []

    def tearDown(self) -> None:
        for scheduler in self.schedulers:
            scheduler.shutdown(wait=True, timeout=5.0)

    def _scheduler(self, run, quiet_period: float) -> CoalescingScheduler:
        scheduler = CoalescingScheduler(run=run, quiet_period_seconds=quiet_period)
        self.schedulers.append(scheduler)
        return scheduler

    def test_rejects_negative_quiet_period(self) -> None:
        with self.assertRaises(ValueError):
            CoalescingScheduler(run=lambda: None, quiet_period_seconds=-1)

    def test_burst_collapses_into_one_run_after_last_trigger(self) -> None:
        started: list[float] = []
        scheduler = self._scheduler(lambda: started.append(time.monotonic()), 0.2)

        for index in range(10):
            scheduler.trigger(f"burst-{index}")
            time.sleep(0.01)
        last_trigger = time.monotonic() - 0.01

        self.assertTrue(_wait_until(lambda: scheduler.runs_completed == 1))
        time.sleep(0.4)
        self.assertEqual(len(started), 1)
        self.assertGreaterEqual(started[0] - last_trigger, 0.2 * 0.9)
        self.assertLessEqual(started[0] - last_trigger, 0.2 + 0.5)

    def test_triggers_further_apart_than_quiet_period_each_run(self) -> None:
        started: list[float] = []
        scheduler = self._scheduler(lambda: started.append(time.monotonic()), 0.1)

        scheduler.trigger("first")
        self.assertTrue(_wait_until(lambda: scheduler.runs_completed == 1))
        time.sleep(0.15)
        second_trigger = time.monotonic()
        scheduler.trigger("second")
        self.assertTrue(_wait_until(lambda: scheduler.runs_completed == 2))

        self.assertEqual(len(started), 2)
        self.assertGreaterEqual(started[1] - second_trigger, 0.1 * 0.9)
        self.assertLessEqual(started[1] - second_trigger, 0.1 + 0.5)

    def test_fired_run_waiting_to_start_reports_scheduled(self) -> None:
        scheduler = self._scheduler(lambda: None, 0.05)
        # hold the run lock so the fired timer has to wait before running
        scheduler._run_lock.acquire()
        try:
            scheduler.trigger("import")
            time.sleep(0.2)
            self.assertEqual(scheduler.state, STATE_SCHEDULED)
            self.assertEqual(scheduler.runs_completed, 0)
        finally:
            scheduler._run_lock.release()

        self.assertTrue(_wait_until(lambda: scheduler.runs_completed == 1))
        self.assertEqual(scheduler.state, STATE_IDLE)

    def test_state_reports_scheduled_then_idle(self) -> None:
        scheduler = self._scheduler(lambda: None, 0.2)
        self.assertEqual(scheduler.state, STATE_IDLE)
        scheduler.trigger("import")
        self.assertEqual(scheduler.state, STATE_SCHEDULED)
        self.assertTrue(_wait_until(lambda: scheduler.runs_completed == 1))
        self.assertEqual(scheduler.state, STATE_IDLE)

    def test_trigger_during_run_schedules_a_second_run_without_overlap(self) -> None:
        release = threading.Event()
        active = {"now": 0, "max": 0}
        lock = threading.Lock()

        def run() -> None:
            with lock:
                active["now"] += 1
                active["max"] = max(active["max"], active["now"])
            release.wait(2.0)
            with lock:
                active["now"] -= 1

        scheduler = self._scheduler(run, 0.05)
        scheduler.trigger("first")
        self.assertTrue(_wait_until(lambda: scheduler.state == STATE_RUNNING))

        scheduler.trigger("during-run")
        time.sleep(0.2)
        release.set()

        self.assertTrue(_wait_until(lambda: scheduler.runs_completed == 2))
        self.assertEqual(active["max"], 1)

    def test_run_exception_is_contained(self) -> None:
        calls = {"n": 0}

        def run() -> None:
            calls["n"] += 1
            raise RuntimeError("boom")

        scheduler = self._scheduler(run, 0.05)
        with self.assertLogs("api.worker.scheduler", level="ERROR"):
            scheduler.trigger("first")
            self.assertTrue(_wait_until(lambda: scheduler.runs_completed == 1))

        scheduler.trigger("second")
        self.assertTrue(_wait_until(lambda: scheduler.runs_completed == 2))
        self.assertEqual(calls["n"], 2)
        self.assertEqual(scheduler.state, STATE_IDLE)

    def test_shutdown_cancels_armed_run_and_ignores_new_triggers(self) -> None:
        calls = {"n": 0}

        def run() -> None:
            calls["n"] += 1

        scheduler = self._scheduler(run, 0.2)
        scheduler.trigger("before-shutdown")
        self.assertTrue(scheduler.shutdown(wait=True, timeout=1.0))
        scheduler.trigger("after-shutdown")

        time.sleep(0.4)
        self.assertEqual(calls["n"], 0)
        self.assertEqual(scheduler.state, STATE_IDLE)


if __name__ == "__main__":
    unittest.main()
