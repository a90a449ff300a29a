#!/usr/bin/env python3
"""
Color Tracker Game Window
Moves an on-screen ship with a colored object held in front of the webcam
(or found in a video file), using the TrackingController pipeline.
"""

import argparse
import time
from queue import Full, Queue
from threading import Thread
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from color_selector import ColorSelector, tolerance_description
from color_tracker import (Config, CoordinateMapper, OutputQuad, TelemetryLogger,
                           TrackingController, annotate)
from detection_markers import DetectionMarkerSpawner

WINDOW_NAME = "Color Tracker"
BACKGROUND_COLOR = (30, 20, 15)

# =============================================================================
# ACTOR
# =============================================================================

class ScreenActor:
    """
    Player ship living in canvas pixel space.

    In direct mode positions are applied immediately, otherwise the ship
    glides towards the last requested position.
    """

    def __init__(self, bounds: Tuple[int, int], smooth_speed: float = 10.0,
                 direct: bool = False, padding: float = 10.0, half_size: float = 18.0):
        self.bounds = bounds
        self.smooth_speed = smooth_speed
        self.direct = direct
        self.padding = padding
        self.half_size = half_size
        self.position = (bounds[0] / 2.0, bounds[1] / 2.0)
        self.target_position = self.position

    def get_position(self) -> Tuple[float, float]:
        return self.position

    def clamp(self, position: Sequence[float]) -> Tuple[float, float]:
        margin = self.half_size + self.padding
        x = min(max(position[0], margin), self.bounds[0] - margin)
        y = min(max(position[1], margin), self.bounds[1] - margin)
        return (x, y)

    def set_position(self, position: Sequence[float]):
        position = self.clamp(position)
        self.target_position = position
        if self.direct:
            self.position = position

    def update(self, dt: float):
        if self.direct or self.position == self.target_position:
            return
        t = min(1.0, self.smooth_speed * dt)
        x, y = self.position
        tx, ty = self.target_position
        self.position = (x + (tx - x) * t, y + (ty - y) * t)

    def draw(self, canvas: np.ndarray):
        x, y = self.position
        s = self.half_size
        hull = np.array([[x, y - s], [x - s * 0.8, y + s], [x, y + s * 0.5], [x + s * 0.8, y + s]],
                        dtype=np.int32)
        cv2.fillPoly(canvas, [hull], (235, 235, 235))
        cv2.polylines(canvas, [hull], True, (255, 200, 0), 2)

# =============================================================================
# DISPLAY HELPERS
# =============================================================================

def fit_rect(frame_size: Tuple[int, int], canvas_size: Tuple[int, int]) -> Tuple[int, int, int, int]:
    """Largest rectangle with the frame's aspect ratio centered in the canvas"""
    frame_w, frame_h = frame_size
    canvas_w, canvas_h = canvas_size
    scale = min(canvas_w / frame_w, canvas_h / frame_h)
    w, h = int(frame_w * scale), int(frame_h * scale)
    return ((canvas_w - w) // 2, (canvas_h - h) // 2, w, h)


def open_source(source) -> cv2.VideoCapture:
    """Open a video file or camera index, raising RuntimeError when unavailable"""
    cap = cv2.VideoCapture(source)
    if not cap.isOpened():
        raise RuntimeError(f"Could not open video source: {source}")

    if isinstance(source, int):
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, Config.FRAME_WIDTH)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, Config.FRAME_HEIGHT)
        cap.set(cv2.CAP_PROP_FPS, 30)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        print(f"Opening camera: {source}")
    else:
        frame_count = cap.get(cv2.CAP_PROP_FRAME_COUNT)
        fps = cap.get(cv2.CAP_PROP_FPS)
        print(f"Opening video file: {source} ({frame_count:.0f} frames, {fps:.1f} FPS)")
    return cap


def capture_thread(cap: cv2.VideoCapture, frame_queue: Queue):
    """Background frame capture; drops frames while the queue is full"""
    while True:
        ret, frame = cap.read()
        if not ret:
            frame_queue.put(None)
            break
        try:
            frame_queue.put_nowait(frame)
        except Full:
            continue


def parse_color(text: str) -> Tuple[int, int, int]:
    parts = [int(p) for p in text.split(",")]
    if len(parts) != 3:
        raise argparse.ArgumentTypeError("color must be R,G,B")
    return tuple(min(255, max(0, p)) for p in parts)

# =============================================================================
# MAIN APPLICATION
# =============================================================================

class TrackerApp:
    """Wires capture, selector, controller, markers, actor and display"""

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.display = not args.no_display
        self.canvas_size = (Config.CANVAS_WIDTH, Config.CANVAS_HEIGHT)
        self.display_rect = fit_rect((Config.FRAME_WIDTH, Config.FRAME_HEIGHT), self.canvas_size)
        self.quad = OutputQuad.from_rect(*self.display_rect, y_down=True)
        self.mapper = CoordinateMapper()

        self.selector = ColorSelector()
        if args.color:
            self.selector.set_color_255(*args.color)
        if args.tolerance is not None:
            self.selector.set_tolerance(args.tolerance)

        self.telemetry = None
        if Config.ENABLE_RESULT_LOGGING:
            self.telemetry = TelemetryLogger(str(Config.VIDEO_SOURCE), settings=Config.snapshot())
            print(f"Result logging enabled. Results will be saved to: {Config.LOG_DIRECTORY}/")

        self.actor = ScreenActor(self.canvas_size)
        self.markers = DetectionMarkerSpawner()
        self.controller = TrackingController(
            settings=Config.snapshot(),
            actor_sink=self.actor,
            marker_spawner=self.markers,
            telemetry=self.telemetry
        )
        self.controller.attach_selector(self.selector)

        self.last_frame: Optional[np.ndarray] = None
        self.canvas = np.zeros((self.canvas_size[1], self.canvas_size[0], 3), dtype=np.uint8)

    def on_mouse(self, event, x, y, flags, param):
        """Left click on the video picks the target color"""
        if event != cv2.EVENT_LBUTTONDOWN or self.last_frame is None:
            return
        point = self.mapper.output_to_texture((x, y), Config.FRAME_WIDTH, Config.FRAME_HEIGHT, self.quad)
        if point is not None and self.selector.pick_from_frame(self.last_frame, point[0], point[1],
                                                               bgr=Config.FRAME_IS_BGR):
            r, g, b = self.selector.color_255()
            print(f"Picked target color RGB({r}, {g}, {b})")

    def render(self, frame: np.ndarray, fps: float):
        x, y, w, h = self.display_rect
        self.canvas[:] = BACKGROUND_COLOR
        view = annotate(frame.copy(), self.controller, fps)
        self.canvas[y:y + h, x:x + w] = cv2.resize(view, (w, h))
        self.markers.draw(self.canvas)
        self.actor.draw(self.canvas)

        tolerance = self.selector.tolerance
        hud = f"Tolerance {tolerance:.2f} - {tolerance_description(tolerance)}"
        cv2.putText(self.canvas, hud, (10, self.canvas_size[1] - 10),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)
        cv2.imshow(WINDOW_NAME, self.canvas)

    def handle_key(self, key: int) -> bool:
        """Returns False when the app should quit"""
        if key == ord('q'):
            print("Quit requested by user")
            return False
        elif key == ord('s'):
            filename = f"snapshot_{self.controller.scan_count:06d}.jpg"
            cv2.imwrite(filename, self.canvas)
            print(f"Saved snapshot: {filename}")
        elif key == ord('h'):
            use_hsv = not self.controller.settings.use_hsv_detection
            self.controller.set_detection_mode(use_hsv)
            print(f"Detection mode: {'HSV' if use_hsv else 'RGB'}")
        elif key in (ord('+'), ord('=')):
            self.selector.set_tolerance(self.selector.tolerance + 0.02)
            print(f"Tolerance: {self.selector.tolerance:.2f}")
        elif key in (ord('-'), ord('_')):
            self.selector.set_tolerance(self.selector.tolerance - 0.02)
            print(f"Tolerance: {self.selector.tolerance:.2f}")
        elif key == ord('g'):
            Config.SHOW_GRID = not Config.SHOW_GRID
            print(f"Sample grid: {'ON' if Config.SHOW_GRID else 'OFF'}")
        elif key == ord('d'):
            Config.DEBUG = not Config.DEBUG
            self.controller.settings = self.controller.settings._replace(debug=Config.DEBUG)
            print(f"Debug mode: {'ON' if Config.DEBUG else 'OFF'}")
        elif key == ord('r'):
            print("Resetting tracker state...")
            self.controller.reset()
            self.markers.clear()
        return True

    def run(self, cap: cv2.VideoCapture):
        frame_queue = None
        if self.args.threaded:
            frame_queue = Queue(maxsize=2)
            Thread(target=capture_thread, args=(cap, frame_queue), daemon=True).start()
            print("Threaded frame capture started")

        if self.display:
            cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)
            cv2.resizeWindow(WINDOW_NAME, *self.canvas_size)
            cv2.setMouseCallback(WINDOW_NAME, self.on_mouse)

        frames = 0
        fps = 0.0
        last_time = time.perf_counter()
        while self.args.frames is None or frames < self.args.frames:
            if frame_queue is not None:
                frame = frame_queue.get()
                if frame is None:
                    print("Capture thread finished")
                    break
            else:
                ret, frame = cap.read()
                if not ret:
                    print(f"End of video or failed to read frame (frame {frames})")
                    break

            now = time.perf_counter()
            dt = now - last_time
            last_time = now

            frame = cv2.resize(frame, (Config.FRAME_WIDTH, Config.FRAME_HEIGHT))
            self.last_frame = frame
            result = self.controller.tick(frame, self.quad, dt)
            frames += 1

            if self.telemetry is not None:
                fps = self.telemetry.record_frame(dt)
            elif dt > 0:
                fps = 1.0 / dt

            if Config.OUTPUT_CSV and result.scanned:
                x, y = result.output_position[:2] if result.detected else (-1, -1)
                print(f"{self.controller.scan_count},{int(result.detected)},{x:.1f},{y:.1f},"
                      f"{result.matched_count},{result.cost_ms:.3f}")

            self.actor.update(dt)
            self.markers.update(dt)

            if self.display:
                self.render(frame, fps)
                key = cv2.waitKey(1) & 0xFF
                if key != 0xFF and not self.handle_key(key):
                    break

        return fps


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Color blob tracker driving an on-screen ship')
    parser.add_argument('--source', type=str, help='Video source (file path or camera index)')
    parser.add_argument('--camera', action='store_true', help='Use camera 0 instead of a video file')
    parser.add_argument('--config', type=str, help='JSON file with option overrides')
    parser.add_argument('--color', type=parse_color, help='Target color as R,G,B (0-255)')
    parser.add_argument('--tolerance', type=float, help='Color tolerance (0-1)')
    parser.add_argument('--rgb', action='store_true', help='Use RGB matching instead of HSV')
    parser.add_argument('--debug', action='store_true', help='Print per-scan diagnostics')
    parser.add_argument('--csv', action='store_true', help='Output CSV tracking data')
    parser.add_argument('--no-display', action='store_true', help='Run without display (headless)')
    parser.add_argument('--no-logging', action='store_true', help='Disable result logging')
    parser.add_argument('--threaded', action='store_true', help='Use threaded frame capture')
    parser.add_argument('--frames', type=int, help='Stop after this many frames')
    return parser


def main(argv=None):
    """Main application entry point"""
    args = build_parser().parse_args(argv)

    if args.config:
        Config.load_json(args.config)
    if args.source:
        Config.VIDEO_SOURCE = int(args.source) if args.source.isdigit() else args.source
    elif args.camera:
        Config.VIDEO_SOURCE = 0
    if args.rgb:
        Config.USE_HSV_DETECTION = False
    if args.debug:
        Config.DEBUG = True
    if args.no_logging:
        Config.ENABLE_RESULT_LOGGING = False
    if args.csv:
        Config.OUTPUT_CSV = True
        print("scan,detected,x,y,matched,cost_ms")  # CSV header

    try:
        cap = open_source(Config.VIDEO_SOURCE)
    except RuntimeError as e:
        print(f"Failed to open video source: {e}")
        print("Troubleshooting:")
        print("  - Check the file path, or pass --camera / --source <index>")
        print("  - Make sure no other application is using the camera")
        return 1

    app = TrackerApp(args)
    settings = app.controller.settings
    print("Color tracker started.")
    print("Controls: 'q'=quit, 's'=snapshot, 'h'=HSV/RGB, '+'/'-'=tolerance, "
          "'g'=sample grid, 'd'=debug, 'r'=reset, click=pick color")
    print(f"Scan every {settings.scan_frequency} frames, {settings.sample_points} sample points, "
          f"{'HSV' if settings.use_hsv_detection else 'RGB'} matching")

    start_time = time.time()
    fps = 0.0
    try:
        fps = app.run(cap)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
    finally:
        total_time = time.time() - start_time
        print(f"Session duration: {total_time:.1f} seconds, scans: {app.controller.scan_count}")
        if app.telemetry is not None:
            app.telemetry.finalize_session(fps)
        cap.release()
        if app.display:
            cv2.destroyAllWindows()
        print("Color tracker stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
