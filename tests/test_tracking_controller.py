import os
import sys
import unittest
from unittest import mock

import numpy as np

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from color_selector import ColorSelector  # noqa: E402
from color_tracker import (FPS_BAND_COLORS, Config, OutputQuad, TargetColor, TrackerSettings,  # noqa: E402
                           TrackingController, TrackingState, annotate)
from detection_markers import DetectionMarkerSpawner  # noqa: E402

RED = (0, 0, 255)    # BGR
BLUE = (255, 0, 0)
BLACK = (0, 0, 0)


def make_frame(width=100, height=100, background=BLUE):
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:] = background
    return frame


class RecordingActor:
    def __init__(self, position=None):
        self.position = position
        self.history = []

    def get_position(self):
        return self.position

    def set_position(self, position):
        self.position = position
        self.history.append(position)


class RecordingTelemetry:
    def __init__(self):
        self.calls = []

    def log_tick(self, scan_number, detected, matched_count, position, cost_ms):
        self.calls.append((scan_number, detected, matched_count, position, cost_ms))


def build(settings=None, **kwargs):
    settings = settings or TrackerSettings(scan_frequency=1, sample_points=100, min_object_size=0)
    target = kwargs.pop('target', TargetColor(1.0, 0.0, 0.0, 0.2))
    return TrackingController(settings=settings, target=target, **kwargs)


class TrackingControllerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.quad = OutputQuad.from_rect(0, 0, 100, 100)

    def test_red_square_detected_near_center(self) -> None:
        frame = make_frame()
        frame[45:55, 45:55] = RED

        for use_hsv in (True, False):
            settings = TrackerSettings(scan_frequency=1, sample_points=100, min_object_size=0,
                                       use_hsv_detection=use_hsv)
            actor = RecordingActor()
            controller = build(settings, actor_sink=actor)
            result = controller.tick(frame, self.quad, dt=0.033)

            self.assertTrue(result.scanned)
            self.assertTrue(result.detected)
            self.assertEqual(result.state, TrackingState.PUBLISHING)
            self.assertTrue(controller.object_detected)
            x, y = result.texture_position
            self.assertLessEqual(abs(x - 50), 10)
            self.assertLessEqual(abs(y - 50), 10)
            self.assertEqual(actor.history, [result.output_position])
            self.assertEqual(controller.state, TrackingState.IDLE)

    def test_min_object_size_is_strict(self) -> None:
        frame = make_frame()
        frame[:, 0:1] = RED  # exactly the 10 samples of column x=0

        at_limit = build(TrackerSettings(scan_frequency=1, sample_points=100, min_object_size=10))
        result = at_limit.tick(frame, self.quad, dt=0.033)
        self.assertEqual(result.matched_count, 10)
        self.assertFalse(result.detected)
        self.assertEqual(result.state, TrackingState.NO_OBJECT)
        self.assertIsNone(result.output_position)

        below_limit = build(TrackerSettings(scan_frequency=1, sample_points=100, min_object_size=9))
        self.assertTrue(below_limit.tick(frame, self.quad, dt=0.033).detected)

    def test_dominant_blob_wins(self) -> None:
        frame = make_frame()
        frame[10:15, 10] = RED        # 5 pixels
        frame[60:68, 60:65] = RED     # 40 pixels
        settings = TrackerSettings(scan_frequency=1, sample_points=10000, min_object_size=10,
                                   blob_proximity_threshold=3.0)
        result = build(settings).tick(frame, self.quad, dt=0.033)

        self.assertTrue(result.detected)
        self.assertEqual(result.matched_count, 45)
        self.assertAlmostEqual(result.texture_position[0], 62.0)
        self.assertAlmostEqual(result.texture_position[1], 63.5)
        self.assertAlmostEqual(result.output_position[0], 62.0)
        self.assertAlmostEqual(result.output_position[1], 63.5)

    def test_scan_frequency_gates_scans(self) -> None:
        frame = make_frame()
        frame[40:60, 40:60] = RED
        controller = build(TrackerSettings(scan_frequency=3, sample_points=100, min_object_size=0))

        results = [controller.tick(frame, self.quad, dt=0.01) for _ in range(6)]
        self.assertEqual([r.scanned for r in results], [False, False, True, False, False, True])
        self.assertFalse(results[0].detected)
        self.assertTrue(results[3].detected)
        self.assertEqual(controller.scan_count, 2)

    def test_unavailable_input_is_a_no_op(self) -> None:
        frame = make_frame()
        frame[40:60, 40:60] = RED
        actor = RecordingActor()
        controller = build(actor_sink=actor)
        self.assertTrue(controller.tick(frame, self.quad, dt=0.01).detected)

        for bad_frame, quad in [(None, self.quad), (frame, None),
                                (np.zeros((0, 0, 3), dtype=np.uint8), self.quad)]:
            result = controller.tick(bad_frame, quad, dt=0.01)
            self.assertTrue(result.scanned)
            self.assertFalse(result.detected)
            self.assertFalse(controller.object_detected)
        self.assertEqual(len(actor.history), 1)

    def test_lost_object_keeps_stale_position(self) -> None:
        frame = make_frame()
        frame[40:60, 40:60] = RED
        controller = build()
        found = controller.tick(frame, self.quad, dt=0.01)
        lost = controller.tick(make_frame(), self.quad, dt=0.01)

        self.assertFalse(lost.detected)
        self.assertEqual(lost.texture_position, found.texture_position)
        self.assertIsNone(lost.output_position)

    def test_between_scans_lost_object_has_no_output(self) -> None:
        frame = make_frame()
        frame[40:60, 40:60] = RED
        controller = build(TrackerSettings(scan_frequency=2, sample_points=100, min_object_size=0))

        controller.tick(frame, self.quad, dt=0.01)
        found = controller.tick(frame, self.quad, dt=0.01)
        held = controller.tick(frame, self.quad, dt=0.01)
        self.assertTrue(found.scanned and found.detected)
        self.assertFalse(held.scanned)
        self.assertEqual(held.output_position, found.output_position)

        lost = controller.tick(make_frame(), self.quad, dt=0.01)
        between = controller.tick(make_frame(), self.quad, dt=0.01)
        self.assertTrue(lost.scanned)
        self.assertFalse(lost.detected)
        self.assertFalse(between.scanned)
        self.assertFalse(between.detected)
        self.assertIsNone(between.output_position)

    def test_detection_mode_switch_keeps_stabilizer_state(self) -> None:
        frame = make_frame()
        frame[40:60, 40:60] = RED
        controller = build()
        found = controller.tick(frame, self.quad, dt=0.01)

        controller.set_detection_mode(False)
        self.assertFalse(controller.settings.use_hsv_detection)
        self.assertEqual(controller.stabilizer.filtered_position, found.texture_position)

    def test_match_capacity_truncates(self) -> None:
        frame = make_frame(background=RED)
        settings = TrackerSettings(scan_frequency=1, sample_points=100, min_object_size=0,
                                   max_matching_pixels=5)
        result = build(settings).tick(frame, self.quad, dt=0.01)
        self.assertEqual(result.matched_count, 5)
        self.assertTrue(result.detected)

    def test_actor_depth_is_preserved(self) -> None:
        frame = make_frame()
        frame[40:60, 40:60] = RED
        actor = RecordingActor(position=(0.0, 0.0, -10.0))
        world = OutputQuad.from_rect(-8.0, -6.0, 16.0, 12.0, y_down=False)
        build(actor_sink=actor).tick(frame, world, dt=0.01)

        x, y, z = actor.position
        self.assertEqual(z, -10.0)
        self.assertLess(abs(x), 1.0)
        self.assertLess(abs(y), 1.0)

    def test_color_change_notification(self) -> None:
        frame = make_frame(background=BLACK)
        frame[20:60, 20:60] = BLUE
        selector = ColorSelector(color=(1.0, 0.0, 0.0), tolerance=0.2)
        controller = build(TrackerSettings(scan_frequency=1, sample_points=100, min_object_size=5))
        controller.attach_selector(selector)

        self.assertFalse(controller.tick(frame, self.quad, dt=0.01).detected)
        selector.set_color_255(0, 0, 255)
        self.assertEqual(controller.target.rgb, (0.0, 0.0, 1.0))
        result = controller.tick(frame, self.quad, dt=0.01)
        self.assertTrue(result.detected)
        self.assertEqual(result.matched_count, 16)

    def test_marker_spawns_are_throttled(self) -> None:
        frame = make_frame()
        frame[40:60, 40:60] = RED
        spawner = DetectionMarkerSpawner()
        controller = build(TrackerSettings(scan_frequency=1, sample_points=100, min_object_size=0,
                                           marker_spawn_interval=0.5),
                           marker_spawner=spawner)
        for _ in range(4):
            controller.tick(frame, self.quad, dt=0.25)
        self.assertEqual(len(spawner.markers), 2)
        self.assertEqual(spawner.markers[0].color, (1.0, 0.0, 0.0))

    def test_telemetry_receives_every_scan(self) -> None:
        frame = make_frame()
        frame[40:60, 40:60] = RED
        telemetry = RecordingTelemetry()
        controller = build(telemetry=telemetry)
        controller.tick(frame, self.quad, dt=0.01)
        controller.tick(make_frame(), self.quad, dt=0.01)

        self.assertEqual([c[0] for c in telemetry.calls], [1, 2])
        self.assertEqual([c[1] for c in telemetry.calls], [True, False])
        self.assertEqual(telemetry.calls[1][2], 0)
        self.assertTrue(all(c[4] >= 0 for c in telemetry.calls))

    def test_detection_mode_toggle_and_reset(self) -> None:
        controller = build()
        controller.set_detection_mode(False)
        self.assertFalse(controller.matcher.use_hsv)
        self.assertFalse(controller.settings.use_hsv_detection)

        frame = make_frame()
        frame[40:60, 40:60] = RED
        controller.tick(frame, self.quad, dt=0.01)
        controller.reset()
        self.assertFalse(controller.object_detected)
        self.assertIsNone(controller.last_texture_position)
        self.assertEqual(controller.scan_count, 0)

    def test_clock_used_when_dt_missing(self) -> None:
        ticks = iter([0.0, 0.5, 1.25])
        controller = build(clock=lambda: next(ticks))
        frame = make_frame()
        for _ in range(3):
            controller.tick(frame, self.quad)
        self.assertAlmostEqual(controller.elapsed_time, 1.25)



class AnnotateTests(unittest.TestCase):
    def fps_region(self, fps):
        frame = make_frame(width=200, height=120, background=BLACK)
        with mock.patch.object(Config, 'SHOW_FPS', True), mock.patch.object(Config, 'SHOW_GRID', False):
            annotate(frame, build(), fps=fps)
        return frame[95:, :150]

    def has_color(self, region, color) -> bool:
        return bool(np.any(np.all(region == color, axis=-1)))

    def test_fps_text_colored_by_band(self) -> None:
        low = self.fps_region(12.0)
        self.assertTrue(self.has_color(low, FPS_BAND_COLORS["low"]))
        self.assertFalse(self.has_color(low, FPS_BAND_COLORS["high"]))

        high = self.fps_region(90.0)
        self.assertTrue(self.has_color(high, FPS_BAND_COLORS["high"]))
        self.assertFalse(self.has_color(high, FPS_BAND_COLORS["low"]))

    def test_no_fps_text_without_rate(self) -> None:
        self.assertFalse(self.fps_region(None).any())

if __name__ == "__main__":
    unittest.main()
