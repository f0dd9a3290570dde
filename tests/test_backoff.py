#!/usr/bin/env python3
"""
Unit tests for the backoff helpers
"""

import sys
import unittest
from pathlib import Path

# Add the src directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from backoff import Backoff, compute_delay


class TestComputeDelay(unittest.TestCase):
    """Test cases for compute_delay."""

    def test_exponential_growth_capped(self):
        delays = [compute_delay(n, base=2, cap=30) for n in range(1, 7)]
        self.assertEqual(delays, [2, 4, 8, 16, 30, 30])

    def test_no_delay_before_first_failure(self):
        self.assertEqual(compute_delay(0, base=2, cap=30), 0.0)

    def test_jitter_bounds(self):
        self.assertAlmostEqual(compute_delay(1, 10, 100, jitter=0.2, rng=lambda: 0.0), 8.0)
        self.assertAlmostEqual(compute_delay(1, 10, 100, jitter=0.2, rng=lambda: 0.999999), 12.0, 3)

    def test_jitter_never_exceeds_cap(self):
        self.assertEqual(compute_delay(10, 10, 60, jitter=0.5, rng=lambda: 0.999), 60)


class TestBackoff(unittest.TestCase):
    """Test cases for the stateful Backoff."""

    def test_poll_backoff_reaches_cap_and_stays(self):
        """Five empty polls from 5s reach the 60s cap; the sixth stays there."""
        backoff = Backoff(base=5, cap=60)
        delays = [backoff.increase() for _ in range(5)]
        self.assertEqual(delays, [10, 20, 40, 60, 60])
        self.assertEqual(backoff.increase(), 60)
        self.assertEqual(backoff.current, 60)

    def test_reset(self):
        backoff = Backoff(base=5, cap=60)
        backoff.increase()
        backoff.reset()
        self.assertEqual(backoff.current, 5)
        self.assertEqual(backoff.failures, 0)

    def test_invalid_bounds(self):
        with self.assertRaises(ValueError):
            Backoff(base=10, cap=5)
        with self.assertRaises(ValueError):
            Backoff(base=0, cap=5)


if __name__ == "__main__":
    unittest.main()
