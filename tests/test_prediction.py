#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Prediction buffer tests: warm-up, linear extrapolation, interpolation and
correction statistics.
"""

import unittest

from network_optimizer import PredictionBuffer, StateSample, ValidationError


class TestPredict(unittest.TestCase):

    def setUp(self):
        self.buffer = PredictionBuffer(capacity=10)

    def test_needs_two_samples(self):
        self.assertIsNone(self.buffer.predict("ship", 1.0))
        self.buffer.update("ship", {"x": 0}, timestamp=0.0)
        self.assertIsNone(self.buffer.predict("ship", 2.0))

    def test_linear_extrapolation(self):
        """x=0 at t=0 and x=10 at t=1 predicts x=20 at t=2"""
        self.buffer.update("ship", {"x": 0}, timestamp=0.0)
        self.buffer.update("ship", {"x": 10}, timestamp=1.0)
        self.assertEqual(self.buffer.predict("ship", 2.0), {"x": 20.0})

    def test_uses_two_newest_samples(self):
        self.buffer.update("ship", {"x": 100}, timestamp=0.0)
        self.buffer.update("ship", {"x": 0}, timestamp=1.0)
        self.buffer.update("ship", {"x": 5}, timestamp=2.0)
        self.assertEqual(self.buffer.predict("ship", 4.0), {"x": 15.0})

    def test_zero_time_delta(self):
        self.buffer.update("ship", {"x": 1}, timestamp=3.0)
        self.buffer.update("ship", {"x": 7}, timestamp=3.0)
        self.assertEqual(self.buffer.predict("ship", 10.0), {"x": 7})

    def test_backwards_timestamps(self):
        self.buffer.update("ship", {"x": 1}, timestamp=5.0)
        self.buffer.update("ship", {"x": 7}, timestamp=4.0)
        self.assertEqual(self.buffer.predict("ship", 10.0), {"x": 7})

    def test_non_numeric_fields_pass_through(self):
        self.buffer.update("ship", {"x": 0, "state": "idle", "alive": True}, timestamp=0.0)
        self.buffer.update("ship", {"x": 10, "state": "moving", "alive": False}, timestamp=1.0)
        predicted = self.buffer.predict("ship", 2.0)
        self.assertEqual(predicted["state"], "moving")
        self.assertIs(predicted["alive"], False)
        self.assertEqual(predicted["x"], 20.0)

    def test_field_missing_from_previous(self):
        self.buffer.update("ship", {"x": 0}, timestamp=0.0)
        self.buffer.update("ship", {"x": 10, "y": 3}, timestamp=1.0)
        self.assertEqual(self.buffer.predict("ship", 2.0), {"x": 20.0, "y": 3})

    def test_entities_are_independent(self):
        self.buffer.update("a", {"x": 0}, timestamp=0.0)
        self.buffer.update("a", {"x": 1}, timestamp=1.0)
        self.buffer.update("b", {"x": 0}, timestamp=0.0)
        self.assertIsNotNone(self.buffer.predict("a", 2.0))
        self.assertIsNone(self.buffer.predict("b", 2.0))
        self.assertEqual(len(self.buffer), 2)
        self.assertIn("a", self.buffer)


class TestBufferManagement(unittest.TestCase):

    def test_capacity_evicts_oldest(self):
        buffer = PredictionBuffer(capacity=3)
        for t in range(5):
            buffer.update("ship", {"x": t}, timestamp=float(t))
        history = buffer.history("ship")
        self.assertEqual(len(history), 3)
        self.assertEqual(history[0].timestamp, 2.0)
        self.assertEqual(buffer.latest("ship").fields, {"x": 4})

    def test_capacity_minimum(self):
        with self.assertRaises(ValidationError):
            PredictionBuffer(capacity=1)

    def test_rejects_non_mapping(self):
        with self.assertRaises(ValidationError):
            PredictionBuffer().update("ship", [1, 2])

    def test_default_timestamp_from_clock(self):
        buffer = PredictionBuffer(clock=lambda: 42.0)
        buffer.update("ship", {"x": 1})
        self.assertEqual(buffer.latest("ship").timestamp, 42.0)

    def test_update_with_state_sample(self):
        buffer = PredictionBuffer()
        buffer.update("ship", StateSample(timestamp=0.0, fields={"x": 0}))
        buffer.update("ship", StateSample(timestamp=1.0, fields={"x": 4}))
        self.assertEqual(buffer.predict("ship", 1.5), {"x": 6.0})

    def test_update_copies_fields(self):
        buffer = PredictionBuffer()
        fields = {"x": 1}
        buffer.update("ship", fields, timestamp=0.0)
        fields["x"] = 99
        self.assertEqual(buffer.latest("ship").fields, {"x": 1})

    def test_forget_and_reset(self):
        buffer = PredictionBuffer()
        buffer.update("ship", {"x": 1}, timestamp=0.0)
        self.assertTrue(buffer.forget("ship"))
        self.assertFalse(buffer.forget("ship"))
        self.assertIsNone(buffer.latest("ship"))
        buffer.update("ship", {"x": 1}, timestamp=0.0)
        buffer.record_correction({"x": 0}, {"x": 5})
        buffer.reset()
        self.assertEqual(len(buffer), 0)
        self.assertEqual(buffer.stats.total_predictions, 0)


class TestInterpolate(unittest.TestCase):

    def setUp(self):
        self.buffer = PredictionBuffer()
        self.buffer.update("ship", {"x": 0, "state": "idle"}, timestamp=0.0)
        self.buffer.update("ship", {"x": 10, "state": "moving"}, timestamp=1.0)
        self.buffer.update("ship", {"x": 30, "state": "moving"}, timestamp=2.0)

    def test_between_samples(self):
        self.assertEqual(self.buffer.interpolate("ship", 0.25), {"x": 2.5, "state": "idle"})
        self.assertEqual(self.buffer.interpolate("ship", 1.5), {"x": 20.0, "state": "moving"})

    def test_before_oldest(self):
        self.assertEqual(self.buffer.interpolate("ship", -1.0), {"x": 0, "state": "idle"})

    def test_after_newest_extrapolates(self):
        self.assertEqual(self.buffer.interpolate("ship", 3.0), {"x": 50.0, "state": "moving"})

    def test_needs_two_samples(self):
        buffer = PredictionBuffer()
        buffer.update("ship", {"x": 0}, timestamp=0.0)
        self.assertIsNone(buffer.interpolate("ship", 0.0))


class TestCorrections(unittest.TestCase):

    def test_accuracy(self):
        buffer = PredictionBuffer()
        self.assertEqual(buffer.stats.accuracy, 0.0)
        error = buffer.record_correction({"x": 20.0}, {"x": 20.005})
        self.assertAlmostEqual(error, 0.005)
        error = buffer.record_correction({"x": 20.0, "state": "idle"}, {"x": 21.0, "state": "moving"})
        self.assertEqual(error, 1.0)
        self.assertEqual(buffer.stats.total_predictions, 2)
        self.assertEqual(buffer.stats.corrections, 1)
        self.assertEqual(buffer.stats.accuracy, 0.5)

    def test_custom_tolerance(self):
        buffer = PredictionBuffer()
        buffer.record_correction({"x": 0.0}, {"x": 0.5}, tolerance=1.0)
        self.assertEqual(buffer.stats.corrections, 0)


if __name__ == '__main__':
    unittest.main()
