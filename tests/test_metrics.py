from __future__ import annotations

import unittest

from blebridge.metrics import MetricsTracker
from blebridge.pressure import PressureSample


class MetricsTrackerTest(unittest.TestCase):
    def test_timer_counts_success_and_failure(self) -> None:
        metrics = MetricsTracker()
        with metrics.timer():
            pass
        with self.assertRaises(RuntimeError):
            with metrics.timer():
                raise RuntimeError("no device")

        snapshot = metrics.snapshot()
        self.assertEqual(snapshot["total_connections"], 2)
        self.assertEqual(snapshot["successful_connections"], 1)
        self.assertEqual(snapshot["failed_connections"], 1)
        self.assertGreaterEqual(snapshot["average_connection_time"], 0.0)

    def test_connection_time_uses_moving_average(self) -> None:
        metrics = MetricsTracker()
        metrics.record_connection_success(1.0)
        metrics.record_connection_success(2.0)
        self.assertAlmostEqual(metrics.snapshot()["average_connection_time"], 1.1)
        self.assertEqual(metrics.snapshot()["last_connection_time"], 2.0)

    def test_repeated_session_ids_count_as_reconnections(self) -> None:
        metrics = MetricsTracker()
        metrics.record_session_start("s1")
        metrics.record_session_end("s1")
        metrics.record_session_start("s1")
        snapshot = metrics.snapshot()
        self.assertEqual(snapshot["total_reconnections"], 1)
        self.assertEqual(snapshot["reconnections_per_session"], {"s1": 1})
        self.assertEqual(snapshot["active_sessions"], 1)
        self.assertEqual(snapshot["total_sessions"], 2)

    def test_health_report_flags_problems(self) -> None:
        metrics = MetricsTracker()
        self.assertTrue(metrics.health_report()["healthy"])

        metrics.record_connection_attempt()
        metrics.record_connection_failure()
        metrics.update_pressure(PressureSample(listener_count=12))
        metrics.update_pressure(PressureSample(tracked_peripheral_count=11))
        metrics.record_teardown_timeout()

        report = metrics.health_report()
        self.assertFalse(report["healthy"])
        self.assertTrue(any("failure rate" in issue for issue in report["issues"]))
        self.assertIn("Resource leak detected", report["issues"])
        self.assertTrue(any("Listener warnings" in issue for issue in report["issues"]))
        self.assertTrue(report["recommendations"])

    def test_cooldowns_are_recorded(self) -> None:
        metrics = MetricsTracker()
        metrics.record_cooldown(2.5)
        snapshot = metrics.snapshot()
        self.assertEqual(snapshot["cooldowns"], 1)
        self.assertEqual(snapshot["last_cooldown"], 2.5)


if __name__ == "__main__":
    unittest.main()
