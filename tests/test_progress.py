"""
Progress reporter tests.
"""

import logging
import unittest

from azsync.progress import ProgressReporter, SignatureProgressReporter, format_rate, format_seconds


class FakeClock:

    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestFormatting(unittest.TestCase):

    def test_format_seconds(self):
        self.assertEqual(format_seconds(0), "--:--")
        self.assertEqual(format_seconds(42), "42s")
        self.assertEqual(format_seconds(125), "2m05s")
        self.assertEqual(format_seconds(3725), "1h02m05s")

    def test_format_rate(self):
        self.assertEqual(format_rate(512), "512 B/s")
        self.assertEqual(format_rate(2048), "2.00 KB/s")
        self.assertEqual(format_rate(3 * 1024 ** 2), "3.00 MB/s")
        self.assertEqual(format_rate(1.5 * 1024 ** 3), "1.50 GB/s")


class TestProgressReporter(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.logger = logging.getLogger("azsync.test.progress")

    def test_logs_once_per_ten_percent(self):
        reporter = ProgressReporter(1000, "upload", self.logger, clock=self.clock)
        logged = []
        with self.assertLogs(self.logger, level="INFO") as captured:
            for done in range(0, 1001, 25):
                self.clock.now += 1
                logged.append(reporter.report(done))
        self.assertEqual(sum(logged), 10)
        self.assertEqual(len(captured.records), 10)
        self.assertIn("100.0%", captured.records[-1].getMessage())

    def test_jump_past_several_marks_logs_once(self):
        reporter = ProgressReporter(1000, "upload", self.logger, clock=self.clock)
        self.clock.now += 2
        with self.assertLogs(self.logger, level="INFO") as captured:
            self.assertTrue(reporter.report(550))
            self.assertFalse(reporter.report(560))
        self.assertEqual(len(captured.records), 1)
        self.assertIn("550/1,000", captured.records[0].getMessage())

    def test_rate_and_eta(self):
        reporter = ProgressReporter(1000, "upload", self.logger, clock=self.clock)
        self.clock.now += 10
        with self.assertLogs(self.logger, level="INFO") as captured:
            reporter.report(500)
        message = captured.records[0].getMessage()
        self.assertIn("rate=50 B/s", message)
        self.assertIn("eta=10s", message)

    def test_zero_total_never_logs(self):
        reporter = ProgressReporter(0, "upload", self.logger, clock=self.clock)
        self.assertFalse(reporter.report(0))
        self.assertFalse(reporter.report(10))

    def test_advance(self):
        reporter = ProgressReporter(100, "upload", self.logger, clock=self.clock)
        self.clock.now += 1
        reporter.advance(30)
        reporter.advance(30)
        self.assertEqual(reporter.done, 60)


class TestSignatureProgressReporter(unittest.TestCase):

    def test_announces_then_reports(self):
        logger = logging.getLogger("azsync.test.sigprogress")
        reporter = SignatureProgressReporter("t.pkg", logger)
        with self.assertLogs(logger, level="INFO") as captured:
            reporter("Hashing file", 0, 2000)
            reporter("Building signatures", 1000, 2000)
            reporter("Building signatures", 2000, 2000)
        messages = [r.getMessage() for r in captured.records]
        self.assertTrue(messages[0].startswith("Hashing file t.pkg"))
        self.assertEqual(len(messages), 3)


if __name__ == "__main__":
    unittest.main()
