import math
import os
import sys
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from color_tracker import PositionStabilizer  # noqa: E402


class PositionStabilizerTests(unittest.TestCase):
    def test_first_update_is_unsmoothed(self) -> None:
        stabilizer = PositionStabilizer(0.3, 2.0)
        self.assertFalse(stabilizer.initialized)
        self.assertEqual(stabilizer.update((40.0, 25.0), 0.1), (40.0, 25.0))
        self.assertEqual(stabilizer.filtered_position, (40.0, 25.0))

    def test_constant_input_converges_within_bound(self) -> None:
        stabilizer = PositionStabilizer(0.3, 0.0)
        stabilizer.update((0.0, 0.0), 0.0)
        target = (100.0, 50.0)
        epsilon = 0.5

        ticks = stabilizer.ticks_to_converge(math.hypot(*target), epsilon)
        self.assertEqual(ticks, 16)
        for _ in range(ticks):
            output = stabilizer.update(target, 1.0 / 30)

        fx, fy = stabilizer.filtered_position
        self.assertLessEqual(math.hypot(fx - target[0], fy - target[1]), epsilon)
        self.assertEqual(output, stabilizer.filtered_position)

    def test_small_jitter_is_held(self) -> None:
        stabilizer = PositionStabilizer(0.3, 5.0)
        stabilizer.update((50.0, 50.0), 0.0)
        for raw in [(51.0, 50.0), (49.0, 50.0), (50.5, 51.0), (49.5, 49.0)]:
            self.assertEqual(stabilizer.update(raw, 0.01), (50.0, 50.0))

    def test_dwell_promotes_filtered_position(self) -> None:
        stabilizer = PositionStabilizer(0.3, 5.0)
        stabilizer.update((50.0, 50.0), 0.0)

        self.assertEqual(stabilizer.update((52.0, 50.0), 0.07), (50.0, 50.0))
        self.assertEqual(stabilizer.update((52.0, 50.0), 0.07), (50.0, 50.0))
        promoted = stabilizer.update((52.0, 50.0), 0.07)
        self.assertGreater(promoted[0], 51.0)
        self.assertEqual(promoted, stabilizer.filtered_position)
        self.assertEqual(stabilizer.stable_time, 0.0)

    def test_large_movement_passes_through_and_resets_dwell(self) -> None:
        stabilizer = PositionStabilizer(0.3, 5.0)
        stabilizer.update((50.0, 50.0), 0.0)
        stabilizer.update((51.0, 50.0), 0.1)
        self.assertGreater(stabilizer.stable_time, 0.0)

        output = stabilizer.update((100.0, 50.0), 0.1)
        self.assertAlmostEqual(output[0], stabilizer.filtered_position[0])
        self.assertGreater(output[0], 60.0)
        self.assertEqual(stabilizer.stable_time, 0.0)

    def test_reset(self) -> None:
        stabilizer = PositionStabilizer(0.3, 5.0)
        stabilizer.update((10.0, 10.0), 0.0)
        stabilizer.reset()
        self.assertIsNone(stabilizer.filtered_position)
        self.assertEqual(stabilizer.update((90.0, 20.0), 0.1), (90.0, 20.0))

    def test_smooth_factor_clamped(self) -> None:
        self.assertEqual(PositionStabilizer(4.0, 1.0).smooth_factor, 1.0)
        self.assertGreater(PositionStabilizer(0.0, 1.0).smooth_factor, 0.0)


if __name__ == "__main__":
    unittest.main()
