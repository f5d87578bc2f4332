"""
Unit tests for relay metrics (module-level counters and latency snapshot).
"""
import unittest

import metrics.relay_metrics as relay_metrics


class TestRelayMetrics(unittest.TestCase):
    def setUp(self):
        relay_metrics.reset()

    def tearDown(self):
        relay_metrics.reset()

    def test_empty_snapshot(self):
        snap = relay_metrics.get_snapshot()
        self.assertEqual(snap["active_connections"], 0)
        self.assertEqual(snap["turns_completed"], 0)
        self.assertIsNone(snap["avg_latency_ms"])
        self.assertIsNone(snap["p95_latency_ms"])
        self.assertEqual(snap["latency_sample_count"], 0)

    def test_connections_never_negative(self):
        relay_metrics.record_connection_open()
        relay_metrics.record_connection_close()
        relay_metrics.record_connection_close()
        self.assertEqual(relay_metrics.get_snapshot()["active_connections"], 0)

    def test_turn_counters(self):
        relay_metrics.record_turn_accepted()
        relay_metrics.record_turn_accepted()
        relay_metrics.record_turn_ignored()
        relay_metrics.record_duplicate_trigger()
        relay_metrics.record_short_turn_discarded()
        snap = relay_metrics.get_snapshot()
        self.assertEqual(snap["turns_accepted"], 2)
        self.assertEqual(snap["turns_ignored"], 1)
        self.assertEqual(snap["duplicate_triggers"], 1)
        self.assertEqual(snap["short_turns_discarded"], 1)

    def test_latency(self):
        for ms in (100, 200, 300, 400):
            relay_metrics.record_turn_completed(ms)
        snap = relay_metrics.get_snapshot()
        self.assertEqual(snap["turns_completed"], 4)
        self.assertEqual(snap["avg_latency_ms"], 250.0)
        self.assertEqual(snap["p95_latency_ms"], 300.0)
        self.assertEqual(snap["latency_sample_count"], 4)

    def test_evictions_and_failures(self):
        relay_metrics.record_bytes_evicted(1024)
        relay_metrics.record_bytes_evicted(0)
        relay_metrics.record_collaborator_failure("completing")
        relay_metrics.record_collaborator_failure("completing")
        relay_metrics.record_collaborator_failure("synthesizing")
        snap = relay_metrics.get_snapshot()
        self.assertEqual(snap["bytes_evicted"], 1024)
        self.assertEqual(snap["collaborator_failures"], {"completing": 2, "synthesizing": 1})


if __name__ == "__main__":
    unittest.main()
