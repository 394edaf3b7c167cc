#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Bandwidth monitor, quality adapter and latency tracker tests.

A list-backed fake clock keeps every timing deterministic.
"""

import unittest

from network_optimizer import (
    BandwidthMonitor,
    LatencyTracker,
    ManualScheduler,
    NetworkOptimizer,
    OptimizerConfig,
    QualityAdapter,
    ValidationError,
)


class FakeClock:

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestBandwidthMonitor(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.monitor = BandwidthMonitor(monitor_interval=1.0, clock=self.clock)

    def test_single_sample_is_zero(self):
        self.monitor.record_transfer(500)
        self.assertEqual(self.monitor.current_bandwidth(), 0.0)

    def test_same_timestamp_is_zero(self):
        self.monitor.record_transfer(500)
        self.monitor.record_transfer(500)
        self.assertEqual(self.monitor.current_bandwidth(), 0.0)

    def test_current_bandwidth(self):
        self.monitor.record_transfer(100)
        self.clock.now = 0.5
        self.monitor.record_transfer(100)
        self.assertEqual(self.monitor.current_bandwidth(), 400.0)
        self.assertEqual(self.monitor.total_bytes, 200)

    def test_window_purge(self):
        for t in (0.0, 0.5, 1.0):
            self.clock.now = t
            self.monitor.record_transfer(10)
        # exactly one interval old is still inside the window
        self.assertEqual(len(self.monitor.samples), 3)
        self.clock.now = 1.5
        self.monitor.record_transfer(10)
        self.assertEqual([s.timestamp for s in self.monitor.samples], [0.5, 1.0, 1.5])

    def test_purge_without_new_samples(self):
        self.monitor.record_transfer(10)
        self.clock.now = 5.0
        self.monitor.purge()
        self.assertEqual(len(self.monitor.samples), 0)
        self.assertEqual(self.monitor.total_bytes, 10)

    def test_rejects_bad_counts(self):
        for value in (-1, 1.5, True, "10"):
            with self.subTest(value=value):
                with self.assertRaises(ValidationError):
                    self.monitor.record_transfer(value)

    def test_zero_bytes_allowed(self):
        self.monitor.record_transfer(0)
        self.assertEqual(len(self.monitor.samples), 1)

    def test_update_average_and_peak(self):
        self.monitor.record_transfer(100)
        self.clock.now = 1.0
        self.monitor.record_transfer(100)
        self.assertAlmostEqual(self.monitor.update_average(), 20.0)
        self.assertAlmostEqual(self.monitor.update_average(), 38.0)
        self.assertEqual(self.monitor.peak, 200.0)

    def test_reset(self):
        self.monitor.record_transfer(100)
        self.monitor.update_average()
        self.monitor.reset()
        self.assertEqual(self.monitor.average, 0.0)
        self.assertEqual(self.monitor.total_bytes, 0)
        self.assertEqual(len(self.monitor.samples), 0)

    def test_invalid_interval(self):
        with self.assertRaises(ValidationError):
            BandwidthMonitor(monitor_interval=0)


class TestQualityAdapter(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.monitor = BandwidthMonitor(monitor_interval=1.0, clock=self.clock)
        self.adapter = QualityAdapter(self.monitor, target_bandwidth=1000)

    def feed(self, num_bytes):
        self.clock.now = 0.0
        self.monitor.record_transfer(num_bytes)
        self.clock.now = 1.0
        self.monitor.record_transfer(num_bytes)

    def test_idle_link_keeps_max_quality(self):
        self.assertEqual(self.adapter.tick(), 1.0)
        self.assertEqual(self.monitor.average, 0.0)

    def test_slow_link_clamps_to_min(self):
        self.feed(1000)  # 2000 B/s, smoothed to 200
        self.assertEqual(self.adapter.tick(), 0.3)

    def test_fast_link_clamps_to_max(self):
        self.feed(1000000)
        self.assertEqual(self.adapter.tick(), 1.0)

    def test_mid_range(self):
        self.feed(2500)  # 5000 B/s, smoothed to 500
        self.assertAlmostEqual(self.adapter.tick(), 0.5)

    def test_tick_purges_stale_samples(self):
        self.feed(2500)
        self.adapter.tick()
        self.clock.now = 10.0
        self.adapter.tick()
        self.assertEqual(len(self.monitor.samples), 0)
        self.assertAlmostEqual(self.monitor.average, 450.0)
        self.assertAlmostEqual(self.adapter.quality, 0.45)

    def test_non_adaptive(self):
        adapter = QualityAdapter(self.monitor, target_bandwidth=1000, adaptive=False)
        self.feed(1000)
        self.assertEqual(adapter.tick(), 1.0)

    def test_set_quality_clamps(self):
        self.assertEqual(self.adapter.set_quality(5.0), 1.0)
        self.assertEqual(self.adapter.set_quality(-2.0), 0.3)
        self.assertEqual(self.adapter.set_quality(0.6), 0.6)
        self.adapter.reset()
        self.assertEqual(self.adapter.quality, 1.0)

    def test_invalid_parameters(self):
        with self.assertRaises(ValidationError):
            QualityAdapter(self.monitor, target_bandwidth=0)
        with self.assertRaises(ValidationError):
            QualityAdapter(self.monitor, min_quality=0.9, max_quality=0.5)


class TestLatencyTracker(unittest.TestCase):

    def test_first_sample_seeds_average(self):
        tracker = LatencyTracker()
        tracker.record(0.1)
        self.assertEqual(tracker.current, 0.1)
        self.assertEqual(tracker.average, 0.1)
        self.assertEqual(tracker.jitter, 0.0)

    def test_smoothing_and_jitter(self):
        tracker = LatencyTracker()
        tracker.record(0.1)
        tracker.record(0.3)
        self.assertEqual(tracker.current, 0.3)
        self.assertAlmostEqual(tracker.average, 0.12)
        self.assertAlmostEqual(tracker.jitter, 0.2)

    def test_bounded_samples(self):
        tracker = LatencyTracker(max_samples=3)
        for rtt in (0.1, 0.2, 0.3, 0.4, 0.5):
            tracker.record(rtt)
        self.assertEqual(len(tracker.samples), 3)

    def test_negative_rtt(self):
        with self.assertRaises(ValidationError):
            LatencyTracker().record(-0.5)

    def test_reset(self):
        tracker = LatencyTracker()
        tracker.record(0.2)
        tracker.reset()
        self.assertEqual(tracker.average, 0.0)
        self.assertEqual(len(tracker.samples), 0)


class TestOptimalUpdateRate(unittest.TestCase):

    def setUp(self):
        self.optimizer = NetworkOptimizer(OptimizerConfig(), scheduler=ManualScheduler())

    def test_full_quality_no_latency(self):
        self.assertEqual(self.optimizer.get_optimal_update_rate(), 30)

    def test_quality_and_latency(self):
        self.optimizer.set_quality(0.5)
        self.optimizer.latency.record(0.5)
        self.assertEqual(self.optimizer.get_optimal_update_rate(), 7)

    def test_custom_base_rate(self):
        self.optimizer.latency.record(0.25)
        self.assertEqual(self.optimizer.get_optimal_update_rate(base_rate=60), 45)

    def test_latency_factor_floor(self):
        self.optimizer.latency.record(2.0)
        self.assertEqual(self.optimizer.get_optimal_update_rate(), 3)


if __name__ == '__main__':
    unittest.main()
