"""
Color Blob Tracking Pipeline
Drives a game actor from a live video feed by following the dominant blob of a
user-chosen color.

Pipeline: frame sampling -> color matching -> blob clustering ->
position stabilization -> coordinate mapping -> actor publishing.
"""

import json
import math
import os
import time
from collections import deque
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

import cv2
import numpy as np

# =============================================================================
# CONFIGURATION & PARAMETERS
# =============================================================================

# External option names -> Config attribute names
_CONFIG_KEYS = {
    "scanFrequency": "SCAN_FREQUENCY",
    "samplePoints": "SAMPLE_POINTS",
    "minObjectSize": "MIN_OBJECT_SIZE",
    "maxMatchingPixels": "MAX_MATCHING_PIXELS",
    "blobProximityThreshold": "BLOB_PROXIMITY_THRESHOLD",
    "useHSVDetection": "USE_HSV_DETECTION",
    "positionSmoothFactor": "POSITION_SMOOTH_FACTOR",
    "minMovementThreshold": "MIN_MOVEMENT_THRESHOLD",
    "markerSpawnInterval": "MARKER_SPAWN_INTERVAL",
}


def _coerce_option(current: Any, value: Any) -> Any:
    """Convert an override to the type of the option's current value"""
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"expected a boolean, got {value!r}")
    if isinstance(current, (int, float)):
        if isinstance(value, bool):
            raise TypeError("expected a number, got a boolean")
        converted = type(current)(value)
        if isinstance(converted, float) and not math.isfinite(converted):
            raise ValueError(f"expected a finite number, got {value!r}")
        return converted
    if isinstance(current, tuple):
        converted = tuple(float(c) for c in value)
        if len(converted) != len(current):
            raise ValueError(f"expected {len(current)} values, got {len(converted)}")
        return converted
    return value


class Config:
    """Configuration parameters for color blob tracking"""

    # Video source configuration
    # Switch between video file and camera based on environment variable or argument
    VIDEO_SOURCE = "demo.mp4"
    if os.getenv("COLOR_TRACKER_SOURCE"):
        VIDEO_SOURCE = os.getenv("COLOR_TRACKER_SOURCE")
        if VIDEO_SOURCE.isdigit():
            VIDEO_SOURCE = int(VIDEO_SOURCE)

    # Processing resolution (frames are resized before scanning)
    FRAME_WIDTH = 640
    FRAME_HEIGHT = 480
    FRAME_IS_BGR = True         # OpenCV capture order; False for RGB frames

    # Display canvas (the output quad is the frame rectangle inside it)
    CANVAS_WIDTH = 960
    CANVAS_HEIGHT = 540

    # Scan scheduling
    SCAN_FREQUENCY = 2          # Frames between scans
    SAMPLE_POINTS = 400         # Sampling budget per scan

    # Detection parameters
    MIN_OBJECT_SIZE = 10        # Match count must be strictly greater
    MAX_MATCHING_PIXELS = 1000  # Match buffer capacity
    BLOB_PROXIMITY_THRESHOLD = 50.0  # Texture pixels
    USE_HSV_DETECTION = True

    # Stabilization parameters
    POSITION_SMOOTH_FACTOR = 0.3
    MIN_MOVEMENT_THRESHOLD = 2.0

    # Detection markers
    MARKER_SPAWN_INTERVAL = 0.5  # Seconds

    # Target color (normalized RGB) and tolerance
    DEFAULT_TARGET_COLOR = (1.0, 0.0, 0.0)
    DEFAULT_TOLERANCE = 0.2

    # Debug and visualization
    DEBUG = False
    SHOW_GRID = False
    SHOW_FPS = True

    # Output configuration
    OUTPUT_CSV = False

    # Result logging configuration
    ENABLE_RESULT_LOGGING = True
    LOG_DIRECTORY = "tracking_results"

    @classmethod
    def apply_overrides(cls, overrides: Dict[str, Any]) -> List[str]:
        """
        Apply option overrides given as camelCase, snake_case or UPPER_CASE keys.

        Returns:
            List of keys that were not recognized or whose value has the wrong
            type (and therefore ignored; the previous value is kept)
        """
        ignored = []
        for key, value in overrides.items():
            attr = _CONFIG_KEYS.get(key, key.upper())
            if not attr.isupper() or not hasattr(cls, attr):
                print(f"Ignoring unknown config option: {key}")
                ignored.append(key)
                continue
            try:
                value = _coerce_option(getattr(cls, attr), value)
            except (TypeError, ValueError):
                print(f"Ignoring invalid value for config option {key}: {value!r}")
                ignored.append(key)
                continue
            setattr(cls, attr, value)
        return ignored

    @classmethod
    def load_json(cls, path: str) -> List[str]:
        """Load overrides from a JSON object file"""
        with open(path, 'r') as f:
            overrides = json.load(f)
        if not isinstance(overrides, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        return cls.apply_overrides(overrides)

    @classmethod
    def snapshot(cls) -> "TrackerSettings":
        """Immutable, clamped copy of the pipeline options"""
        return TrackerSettings(
            scan_frequency=max(1, int(cls.SCAN_FREQUENCY)),
            sample_points=max(1, int(cls.SAMPLE_POINTS)),
            min_object_size=max(0, int(cls.MIN_OBJECT_SIZE)),
            max_matching_pixels=max(1, int(cls.MAX_MATCHING_PIXELS)),
            blob_proximity_threshold=max(0.0, float(cls.BLOB_PROXIMITY_THRESHOLD)),
            use_hsv_detection=bool(cls.USE_HSV_DETECTION),
            position_smooth_factor=min(1.0, max(1e-3, float(cls.POSITION_SMOOTH_FACTOR))),
            min_movement_threshold=max(0.0, float(cls.MIN_MOVEMENT_THRESHOLD)),
            marker_spawn_interval=max(0.0, float(cls.MARKER_SPAWN_INTERVAL)),
            frame_is_bgr=bool(cls.FRAME_IS_BGR),
            debug=bool(cls.DEBUG),
        )


if os.getenv("COLOR_TRACKER_CONFIG"):
    Config.load_json(os.getenv("COLOR_TRACKER_CONFIG"))


class TrackerSettings(NamedTuple):
    """Per-tick snapshot of the pipeline options"""
    scan_frequency: int = 2
    sample_points: int = 400
    min_object_size: int = 10
    max_matching_pixels: int = 1000
    blob_proximity_threshold: float = 50.0
    use_hsv_detection: bool = True
    position_smooth_factor: float = 0.3
    min_movement_threshold: float = 2.0
    marker_spawn_interval: float = 0.5
    frame_is_bgr: bool = True
    debug: bool = False


class TargetColor(NamedTuple):
    """Target color as normalized RGB plus match tolerance, all in [0, 1]"""
    r: float
    g: float
    b: float
    tolerance: float

    @property
    def rgb(self) -> Tuple[float, float, float]:
        return (self.r, self.g, self.b)

    def to_bgr255(self) -> Tuple[int, int, int]:
        """OpenCV drawing color"""
        return (int(round(self.b * 255)), int(round(self.g * 255)), int(round(self.r * 255)))


Point = Tuple[float, float]

# =============================================================================
# FRAME SAMPLER
# =============================================================================

class FrameSampler:
    """
    Uniform sampling grid over a frame.

    Step sizes are ``max(1, floor(size / sqrt(sample_points)))`` per axis and
    at most ``floor(sqrt(sample_points))`` columns and rows are emitted, so the
    grid never exceeds the budget.
    """

    def __init__(self, sample_points: int):
        self.sample_points = max(1, int(sample_points))
        self._grid_cache: Dict[Tuple[int, int], np.ndarray] = {}

    def steps(self, width: int, height: int) -> Tuple[int, int]:
        root = math.sqrt(self.sample_points)
        step_x = max(1, int(math.floor(width / root)))
        step_y = max(1, int(math.floor(height / root)))
        return step_x, step_y

    def sample(self, width: int, height: int) -> np.ndarray:
        """
        Grid coordinates for a frame of the given size.

        Args:
            width, height: Frame dimensions in texture pixels

        Returns:
            int32 array of shape (N, 2) holding (x, y) in x-major scan order,
            empty when either dimension is not positive
        """
        if width <= 0 or height <= 0:
            return np.empty((0, 2), dtype=np.int32)

        key = (int(width), int(height))
        grid = self._grid_cache.get(key)
        if grid is None:
            step_x, step_y = self.steps(width, height)
            per_axis = max(1, int(math.sqrt(self.sample_points)))
            xs = np.arange(0, width, step_x)[:per_axis]
            ys = np.arange(0, height, step_y)[:per_axis]
            gx, gy = np.meshgrid(xs, ys, indexing='ij')
            grid = np.stack([gx.ravel(), gy.ravel()], axis=1).astype(np.int32)
            grid.setflags(write=False)
            self._grid_cache[key] = grid
        return grid

    @staticmethod
    def read_colors(frame: np.ndarray, grid: np.ndarray, bgr: bool = True) -> np.ndarray:
        """
        Normalized RGB colors at the grid coordinates (frame is not modified).

        Args:
            frame: (H, W) or (H, W, C) array, uint8 or float in [0, 1]
            grid: (N, 2) array of (x, y)
            bgr: True if the frame channels are in OpenCV BGR order

        Returns:
            float32 array of shape (N, 3) in RGB order
        """
        if len(grid) == 0:
            return np.empty((0, 3), dtype=np.float32)

        if frame.ndim == 2:
            values = frame[grid[:, 1], grid[:, 0]]
            pixels = np.repeat(values[:, None], 3, axis=1)
        else:
            pixels = frame[grid[:, 1], grid[:, 0], :3]
            if bgr:
                pixels = pixels[:, ::-1]

        pixels = pixels.astype(np.float32)
        if np.issubdtype(frame.dtype, np.integer):
            pixels /= 255.0
        return pixels

# =============================================================================
# COLOR MATCHER
# =============================================================================

def rgb_to_hsv(pixels: np.ndarray) -> np.ndarray:
    """Normalized RGB (N, 3) -> HSV (N, 3) with hue, saturation and value in [0, 1]"""
    image = np.ascontiguousarray(pixels, dtype=np.float32).reshape(-1, 1, 3)
    hsv = cv2.cvtColor(image, cv2.COLOR_RGB2HSV).reshape(-1, 3)
    hsv[:, 0] /= 360.0
    return hsv


class ColorMatcher:
    """
    Tolerance-based color predicate in RGB or weighted HSV space.

    Effective tolerance follows ``tolerance ** 1.5 * 0.5`` so raising the
    slider widens the match region slowly.
    """

    HUE_WEIGHT = 2.0
    SATURATION_WEIGHT = 1.0
    VALUE_WEIGHT = 0.5
    SATURATED = 0.3          # Hue guard applies above this saturation
    PREFILTER_RATIO = 0.7    # Raw RGB / hue rejection at 0.7 * tolerance

    def __init__(self, use_hsv: bool = True):
        self.use_hsv = use_hsv

    @staticmethod
    def scaled_tolerance(tolerance: float) -> float:
        return (tolerance ** 1.5) * 0.5

    def is_match(self, pixel: Sequence[float], target: Sequence[float], tolerance: float) -> bool:
        """Single pixel version of match_mask (alpha channel ignored)"""
        pixels = np.asarray(pixel, dtype=np.float32).reshape(1, -1)
        return bool(self.match_mask(pixels, target, tolerance)[0])

    def match_mask(self, pixels: np.ndarray, target: Sequence[float], tolerance: float) -> np.ndarray:
        """
        Match every pixel against the target color.

        Args:
            pixels: (N, 3) or (N, 4) normalized RGB(A)
            target: normalized RGB of the target (a TargetColor works too)
            tolerance: match tolerance in [0, 1]

        Returns:
            Boolean array of shape (N,)
        """
        pixels = np.asarray(pixels, dtype=np.float32)
        if len(pixels) == 0 or tolerance <= 0:
            return np.zeros(len(pixels), dtype=bool)
        pixels = pixels.reshape(len(pixels), -1)[:, :3]

        target_rgb = np.asarray(tuple(target)[:3], dtype=np.float32)
        diff = np.abs(pixels - target_rgb)

        if self.use_hsv:
            return self._match_hsv(pixels, target_rgb, diff, float(tolerance))
        return self._match_rgb(diff, float(tolerance))

    def _match_rgb(self, diff: np.ndarray, tolerance: float) -> np.ndarray:
        max_diff = min(0.4, tolerance * 1.2)
        mask = np.all(diff < max_diff, axis=1)
        mask &= diff.mean(axis=1) < self.scaled_tolerance(tolerance)
        return mask

    def _match_hsv(self, pixels: np.ndarray, target_rgb: np.ndarray,
                   diff: np.ndarray, tolerance: float) -> np.ndarray:
        # Cheap raw RGB pre-filter
        mask = ~np.any(diff > self.PREFILTER_RATIO * tolerance, axis=1)

        hsv = rgb_to_hsv(pixels)
        target_hsv = rgb_to_hsv(target_rgb.reshape(1, 3))[0]

        h_diff = np.abs(hsv[:, 0] - target_hsv[0])
        h_diff = np.minimum(h_diff, 1.0 - h_diff)
        s_diff = np.abs(hsv[:, 1] - target_hsv[1])
        v_diff = np.abs(hsv[:, 2] - target_hsv[2])

        # Hue bleed between saturated colors
        if target_hsv[1] > self.SATURATED:
            mask &= ~((hsv[:, 1] > self.SATURATED) & (h_diff > self.PREFILTER_RATIO * tolerance))

        mask &= h_diff <= min(0.25, tolerance)
        mask &= s_diff <= min(0.5, tolerance * 1.2)
        mask &= v_diff <= min(0.5, tolerance * 1.5)

        weighted = (h_diff * self.HUE_WEIGHT + s_diff * self.SATURATION_WEIGHT
                    + v_diff * self.VALUE_WEIGHT) / 3.5
        mask &= weighted < self.scaled_tolerance(tolerance)
        return mask

# =============================================================================
# BLOB CLUSTERER
# =============================================================================

class Blob(NamedTuple):
    centroid: Point
    size: int


class BlobClusterer:
    """
    Groups matched coordinates into proximity-connected blobs.

    Two points are neighbours when their Euclidean distance is strictly below
    ``proximity_threshold``. Partitioning is a breadth-first flood fill,
    O(M^2) in the number of matches.
    """

    FAST_PATH_LIMIT = 20

    def __init__(self, proximity_threshold: float, capacity: int):
        self.proximity_threshold = max(0.0, float(proximity_threshold))
        self._allocate(max(1, int(capacity)))

    def _allocate(self, capacity: int):
        self.capacity = capacity
        self._visited = np.zeros(capacity, dtype=bool)
        self._labels = np.full(capacity, -1, dtype=np.int32)

    def partition(self, points: np.ndarray) -> Tuple[np.ndarray, int]:
        """
        Label every point with its blob index.

        Args:
            points: (M, 2) coordinates

        Returns:
            (labels, blob_count) - labels[i] is the blob of points[i], blobs
            numbered in the order their first member appears
        """
        points = np.asarray(points, dtype=np.float32).reshape(-1, 2)
        count = len(points)
        if count > self.capacity:
            self._allocate(count)

        visited = self._visited[:count]
        labels = self._labels[:count]
        visited[:] = False
        labels[:] = -1

        threshold_sq = self.proximity_threshold ** 2
        blob_count = 0
        for start in range(count):
            if visited[start]:
                continue
            visited[start] = True
            labels[start] = blob_count
            queue = deque([start])
            while queue:
                current = queue.popleft()
                delta = points - points[current]
                near = np.flatnonzero(~visited & ((delta * delta).sum(axis=1) < threshold_sq))
                if len(near) == 0:
                    continue
                visited[near] = True
                labels[near] = blob_count
                queue.extend(near.tolist())
            blob_count += 1

        return labels.copy(), blob_count

    def dominant(self, points: np.ndarray) -> Optional[Blob]:
        """
        Largest blob and its centroid.

        Below FAST_PATH_LIMIT points clustering is skipped and the plain average
        of all points is returned. Ties go to the blob found first.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        count = len(points)
        if count == 0:
            return None

        if count < self.FAST_PATH_LIMIT:
            cx, cy = points.mean(axis=0)
            return Blob((float(cx), float(cy)), count)

        labels, blob_count = self.partition(points)
        sizes = np.bincount(labels, minlength=blob_count)
        best = int(np.argmax(sizes))
        cx, cy = points[labels == best].mean(axis=0)
        return Blob((float(cx), float(cy)), int(sizes[best]))

# =============================================================================
# POSITION STABILIZER
# =============================================================================

class PositionStabilizer:
    """
    Exponential smoothing plus dwell-based jitter suppression.

    The returned position only follows the filtered one when it moves by at
    least ``min_movement`` or after the filtered value has stayed inside that
    radius for STABLE_DWELL_SECONDS.
    """

    STABLE_DWELL_SECONDS = 0.2

    def __init__(self, smooth_factor: float, min_movement: float):
        self.smooth_factor = min(1.0, max(1e-3, float(smooth_factor)))
        self.min_movement = max(0.0, float(min_movement))
        self.reset()

    def reset(self):
        self.filtered_position: Optional[Point] = None
        self.last_stable_position: Optional[Point] = None
        self.stable_time = 0.0

    @property
    def initialized(self) -> bool:
        return self.filtered_position is not None

    def update(self, raw: Sequence[float], dt: float) -> Point:
        raw_x, raw_y = float(raw[0]), float(raw[1])

        if self.filtered_position is None:
            # First detection: no smoothing
            self.filtered_position = (raw_x, raw_y)
            self.last_stable_position = self.filtered_position
            self.stable_time = 0.0
            return self.last_stable_position

        fx, fy = self.filtered_position
        alpha = self.smooth_factor
        self.filtered_position = (fx + (raw_x - fx) * alpha, fy + (raw_y - fy) * alpha)

        sx, sy = self.last_stable_position
        movement = math.hypot(self.filtered_position[0] - sx, self.filtered_position[1] - sy)
        if movement < self.min_movement:
            self.stable_time += max(0.0, dt)
            if self.stable_time > self.STABLE_DWELL_SECONDS:
                self.last_stable_position = self.filtered_position
                self.stable_time = 0.0
        else:
            self.stable_time = 0.0
            self.last_stable_position = self.filtered_position

        return self.last_stable_position

    def ticks_to_converge(self, initial_error: float, epsilon: float) -> int:
        """Upper bound of updates needed to bring the filter within epsilon of a fixed input"""
        if initial_error <= epsilon:
            return 0
        if self.smooth_factor >= 1.0:
            return 1
        return int(math.ceil(math.log(epsilon / initial_error) / math.log(1.0 - self.smooth_factor)))

# =============================================================================
# COORDINATE MAPPER
# =============================================================================

class OutputQuad(NamedTuple):
    """Destination quadrilateral of the frame: corners in output space"""
    bottom_left: Point
    top_left: Point
    top_right: Point
    bottom_right: Point

    @classmethod
    def from_rect(cls, x: float, y: float, width: float, height: float,
                  y_down: bool = True) -> "OutputQuad":
        """
        Quad of an axis-aligned rectangle.

        Args:
            x, y: Top-left corner when y_down (display pixels), bottom-left
                corner otherwise (y-up world space)
            width, height: Rectangle size
        """
        if y_down:
            return cls((x, y + height), (x, y), (x + width, y), (x + width, y + height))
        return cls((x, y), (x, y + height), (x + width, y + height), (x + width, y))


def _lerp(a: Point, b: Point, t: float) -> Point:
    return (a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t)


class CoordinateMapper:
    """
    Texture space -> output space.

    Texture row 0 is the top row of the frame (NumPy / OpenCV order). Texture
    (0, 0) lands on the quad's top-left corner and (W, H) on its bottom-right
    corner. Every caller goes through this class so the vertical flip is
    applied exactly once.
    """

    @staticmethod
    def normalize(point: Sequence[float], frame_width: float, frame_height: float) -> Point:
        u = float(point[0]) / frame_width
        v = 1.0 - float(point[1]) / frame_height
        return u, v

    def texture_to_output(self, point: Sequence[float], frame_width: float, frame_height: float,
                          quad: Optional[OutputQuad]) -> Optional[Point]:
        """
        Bilinear interpolation of a texture point inside the output quad.

        Returns:
            Output (x, y), or None when the frame size or quad is unavailable
        """
        if quad is None or frame_width <= 0 or frame_height <= 0:
            return None
        u, v = self.normalize(point, frame_width, frame_height)
        bottom = _lerp(quad.bottom_left, quad.bottom_right, u)
        top = _lerp(quad.top_left, quad.top_right, u)
        return _lerp(bottom, top, v)

    def output_to_texture(self, point: Sequence[float], frame_width: float, frame_height: float,
                          quad: Optional[OutputQuad]) -> Optional[Point]:
        """Inverse mapping, valid for axis-aligned rectangular quads only"""
        if quad is None or frame_width <= 0 or frame_height <= 0:
            return None
        span_x = quad.bottom_right[0] - quad.bottom_left[0]
        span_y = quad.top_left[1] - quad.bottom_left[1]
        if span_x == 0 or span_y == 0:
            return None
        u = (float(point[0]) - quad.bottom_left[0]) / span_x
        v = (float(point[1]) - quad.bottom_left[1]) / span_y
        return u * frame_width, (1.0 - v) * frame_height

# =============================================================================
# TELEMETRY
# =============================================================================

# Text color per performance band (BGR)
FPS_BAND_COLORS = {
    "low": (0, 0, 255),
    "medium": (0, 255, 255),
    "high": (0, 255, 0),
}


def fps_band(fps: float) -> str:
    """Performance band: low below 30 FPS, medium below 60, high otherwise"""
    if fps < 30:
        return "low"
    elif fps < 60:
        return "medium"
    return "high"


class FrameRateMeter:
    """Exponentially averaged frame rate"""

    SMOOTHING = 0.1

    def __init__(self):
        self.delta_time = 0.0

    def update(self, dt: float) -> float:
        if dt > 0:
            if self.delta_time == 0.0:
                self.delta_time = dt
            else:
                self.delta_time += (dt - self.delta_time) * self.SMOOTHING
        return self.fps

    @property
    def fps(self) -> float:
        return 1.0 / self.delta_time if self.delta_time > 0 else 0.0

    @property
    def band(self) -> str:
        return fps_band(self.fps)


class TelemetryLogger:
    """
    Per-scan diagnostics for a tracking session.
    Collects scan data and generates human-readable and JSON reports.
    """

    def __init__(self, video_source: str, log_directory: Optional[str] = None,
                 settings: Optional[TrackerSettings] = None):
        self.video_source = video_source
        self.log_directory = log_directory or Config.LOG_DIRECTORY
        self.settings = settings or Config.snapshot()
        self.session_start = datetime.now()
        self.frame_rate = FrameRateMeter()
        self.scan_data = []
        self.session_stats = {
            'total_frames': 0,
            'total_scans': 0,
            'scans_with_detection': 0,
            'max_matched_pixels': 0,
            'total_cost_ms': 0.0,
            'max_cost_ms': 0.0,
            'detection_sessions': [],
            'avg_fps': 0.0,
            'processing_time': 0.0
        }
        self.current_session = None

    def record_frame(self, dt: float) -> float:
        """Count a rendered frame and return the averaged FPS"""
        self.session_stats['total_frames'] += 1
        return self.frame_rate.update(dt)

    def log_tick(self, scan_number: int, detected: bool, matched_count: int,
                 position: Optional[Point], cost_ms: float):
        """Log data for a single scan"""
        self.scan_data.append({
            'scan': scan_number,
            'timestamp': time.time(),
            'detected': detected,
            'matched_pixels': matched_count,
            'position': None if position is None else [round(position[0], 2), round(position[1], 2)],
            'cost_ms': round(cost_ms, 3),
            'fps': round(self.frame_rate.fps, 1)
        })

        stats = self.session_stats
        stats['total_scans'] += 1
        stats['max_matched_pixels'] = max(stats['max_matched_pixels'], matched_count)
        stats['total_cost_ms'] += cost_ms
        stats['max_cost_ms'] = max(stats['max_cost_ms'], cost_ms)

        if detected:
            stats['scans_with_detection'] += 1
            if self.current_session is None:
                self.current_session = {
                    'start_scan': scan_number,
                    'start_position': None if position is None else list(position),
                    'duration': 1
                }
            else:
                self.current_session['duration'] += 1
        elif self.current_session is not None:
            self.current_session['end_scan'] = scan_number - 1
            stats['detection_sessions'].append(self.current_session)
            self.current_session = None

    def finalize_session(self, final_fps: Optional[float] = None) -> List[str]:
        """
        Close any running detection session and write the reports.

        Returns:
            Paths of the generated report files
        """
        if self.current_session is not None:
            self.current_session['end_scan'] = self.session_stats['total_scans']
            self.session_stats['detection_sessions'].append(self.current_session)
            self.current_session = None

        self.session_stats['avg_fps'] = self.frame_rate.fps if final_fps is None else final_fps
        self.session_stats['processing_time'] = (datetime.now() - self.session_start).total_seconds()

        os.makedirs(self.log_directory, exist_ok=True)
        paths = [
            self._generate_summary_report(),
            self._generate_detailed_report(),
            self._generate_json_report()
        ]
        print(f"\nTracking results saved to: {self.log_directory}/")
        return paths

    def _report_path(self, suffix: str) -> str:
        timestamp = self.session_start.strftime("%Y%m%d_%H%M%S")
        return os.path.join(self.log_directory, f"{timestamp}_{suffix}")

    def _generate_summary_report(self) -> str:
        """Generate a human-readable summary report"""
        filename = self._report_path("tracking_summary.txt")
        stats = self.session_stats

        with open(filename, 'w') as f:
            f.write("=" * 60 + "\n")
            f.write("COLOR TRACKING SESSION SUMMARY\n")
            f.write("=" * 60 + "\n\n")

            f.write(f"Session Start: {self.session_start.strftime('%Y-%m-%d %H:%M:%S')}\n")
            f.write(f"Video Source: {self.video_source}\n")
            f.write(f"Processing Time: {stats['processing_time']:.2f} seconds\n")
            f.write(f"Average FPS: {stats['avg_fps']:.1f} ({fps_band(stats['avg_fps'])})\n\n")

            f.write("SCAN STATISTICS:\n")
            f.write("-" * 16 + "\n")
            f.write(f"Frames Rendered: {stats['total_frames']}\n")
            f.write(f"Scans Run: {stats['total_scans']}\n")
            f.write(f"Scans with Detection: {stats['scans_with_detection']}\n")
            if stats['total_scans'] > 0:
                detection_rate = stats['scans_with_detection'] / stats['total_scans'] * 100
                avg_cost = stats['total_cost_ms'] / stats['total_scans']
                f.write(f"Detection Rate: {detection_rate:.1f}%\n")
                f.write(f"Average Scan Cost: {avg_cost:.2f} ms\n")
            f.write(f"Maximum Scan Cost: {stats['max_cost_ms']:.2f} ms\n")
            f.write(f"Maximum Matched Pixels: {stats['max_matched_pixels']}\n\n")

            sessions = stats['detection_sessions']
            f.write("DETECTION SESSIONS:\n")
            f.write("-" * 19 + "\n")
            f.write(f"Number of Sessions: {len(sessions)}\n")
            for i, session in enumerate(sessions, 1):
                f.write(f"Session {i}: scans {session['start_scan']} - {session.get('end_scan', 'ongoing')}"
                        f" ({session['duration']} scans)\n")
            f.write("\n")

            f.write("CONFIGURATION USED:\n")
            f.write("-" * 19 + "\n")
            for key, value in self.settings._asdict().items():
                f.write(f"{key}: {value}\n")

        print(f"Summary report saved: {filename}")
        return filename

    def _generate_detailed_report(self) -> str:
        """Generate a detailed scan-by-scan report"""
        filename = self._report_path("tracking_detailed.txt")

        with open(filename, 'w') as f:
            f.write("=" * 72 + "\n")
            f.write("DETAILED SCAN-BY-SCAN TRACKING REPORT\n")
            f.write("=" * 72 + "\n\n")
            f.write("Format: Scan | Status | Position (x,y) | Matched | Cost ms | FPS\n")
            f.write("-" * 72 + "\n")

            for data in self.scan_data:
                status = "FOUND " if data['detected'] else "LOST  "
                if data['position'] is None:
                    position = "      -      "
                else:
                    position = f"({data['position'][0]:5.0f},{data['position'][1]:5.0f})"
                f.write(f"{data['scan']:5d} | {status} | {position} | "
                        f"{data['matched_pixels']:4d} | {data['cost_ms']:7.3f} | {data['fps']:5.1f}\n")

        print(f"Detailed report saved: {filename}")
        return filename

    def _generate_json_report(self) -> str:
        """Generate a machine-readable JSON report"""
        filename = self._report_path("tracking_data.json")

        report_data = {
            'session_info': {
                'start_time': self.session_start.isoformat(),
                'video_source': self.video_source,
                'processing_time_seconds': self.session_stats['processing_time'],
                'average_fps': self.session_stats['avg_fps']
            },
            'statistics': self.session_stats,
            'configuration': self.settings._asdict(),
            'scan_data': self.scan_data
        }

        with open(filename, 'w') as f:
            json.dump(report_data, f, indent=2)

        print(f"JSON data saved: {filename}")
        return filename

# =============================================================================
# TRACKING CONTROLLER
# =============================================================================

class TrackingState:
    IDLE = "idle"
    SAMPLING = "sampling"
    MATCHING = "matching"
    NO_OBJECT = "no_object"
    CLUSTERING = "clustering"
    STABILIZING = "stabilizing"
    MAPPING = "mapping"
    PUBLISHING = "publishing"


class TickResult(NamedTuple):
    scanned: bool
    detected: bool
    state: str
    matched_count: int = 0
    texture_position: Optional[Point] = None
    output_position: Optional[Tuple[float, ...]] = None
    cost_ms: float = 0.0


class TrackingController:
    """
    Runs the detection pipeline once every ``scan_frequency`` frames and
    publishes the stabilized, mapped position to the actor sink.

    The actor sink needs ``set_position(position)``; if it also offers
    ``get_position()`` returning a 3-tuple its depth is kept. The marker
    spawner needs ``spawn(position, color)`` and the telemetry sink
    ``log_tick(scan_number, detected, matched_count, position, cost_ms)``.
    """

    def __init__(self, settings: Optional[TrackerSettings] = None,
                 target: Optional[TargetColor] = None,
                 actor_sink=None, marker_spawner=None, telemetry=None,
                 clock: Callable[[], float] = time.perf_counter):
        self.settings = settings or Config.snapshot()
        if target is None:
            target = TargetColor(*Config.DEFAULT_TARGET_COLOR, Config.DEFAULT_TOLERANCE)
        self.target = target

        self.actor_sink = actor_sink
        self.marker_spawner = marker_spawner
        self.telemetry = telemetry
        self._clock = clock

        self._build_stages()
        self.reset()

    def _build_stages(self):
        settings = self.settings
        self.sampler = FrameSampler(settings.sample_points)
        self.matcher = ColorMatcher(settings.use_hsv_detection)
        self.clusterer = BlobClusterer(settings.blob_proximity_threshold, settings.max_matching_pixels)
        self.stabilizer = PositionStabilizer(settings.position_smooth_factor, settings.min_movement_threshold)
        self.mapper = CoordinateMapper()
        # Pre-allocated match storage, reused every scan
        self._match_buffer = np.zeros((settings.max_matching_pixels, 2), dtype=np.int32)

    def reset(self):
        """Forget tracking state (settings and target color are kept)"""
        self.stabilizer.reset()
        self.state = TrackingState.IDLE
        self.frame_counter = 0
        self.scan_count = 0
        self.object_detected = False
        self.matched_count = 0
        self.last_texture_position: Optional[Point] = None
        self.last_output_position = None
        self.last_grid = np.empty((0, 2), dtype=np.int32)
        self.elapsed_time = 0.0
        self._since_last_scan = 0.0
        self._last_clock = None
        self._last_marker_time: Optional[float] = None

    # ------------------------------------------------------------------
    # Collaborator notifications
    # ------------------------------------------------------------------

    def update_target(self, target: TargetColor):
        """Color selector callback; takes effect at the next scan"""
        self.target = target
        if self.settings.debug:
            print(f"Target color updated: RGB({target.r:.2f}, {target.g:.2f}, {target.b:.2f}), "
                  f"tolerance {target.tolerance:.2f}")

    def attach_selector(self, selector):
        """Follow a ColorSelector's current and future selections"""
        selector.subscribe(self.update_target)
        self.update_target(selector.target)

    def set_detection_mode(self, use_hsv: bool):
        self.settings = self.settings._replace(use_hsv_detection=bool(use_hsv))
        self.matcher.use_hsv = bool(use_hsv)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self, frame: Optional[np.ndarray], quad: Optional[OutputQuad],
             dt: Optional[float] = None) -> TickResult:
        """
        Advance one rendered frame; scan when the frame counter is due.

        Args:
            frame: Current frame snapshot, or None when the source is not ready
            quad: Output quad of the frame, or None when unavailable
            dt: Seconds since the previous tick (measured with the clock if None)

        Returns:
            TickResult describing the scan, or scanned=False between scans
        """
        self._advance_clock(dt)
        self.frame_counter += 1
        if self.frame_counter < self.settings.scan_frequency:
            return TickResult(False, self.object_detected, self.state, self.matched_count,
                              self.last_texture_position,
                              self.last_output_position if self.object_detected else None)
        self.frame_counter = 0
        return self.scan(frame, quad)

    def _advance_clock(self, dt: Optional[float]):
        now = self._clock()
        if dt is None:
            dt = 0.0 if self._last_clock is None else now - self._last_clock
        self._last_clock = now
        dt = max(0.0, float(dt))
        self.elapsed_time += dt
        self._since_last_scan += dt

    def scan(self, frame: Optional[np.ndarray], quad: Optional[OutputQuad]) -> TickResult:
        """Run the full pipeline on one frame"""
        started = time.perf_counter()
        settings = self.settings
        target = self.target  # one snapshot per scan
        scan_dt = self._since_last_scan
        self._since_last_scan = 0.0
        self.scan_count += 1

        # Sampling
        self.state = TrackingState.SAMPLING
        if not self._input_ready(frame, quad):
            if settings.debug:
                print(f"Scan {self.scan_count}: input unavailable, skipping")
            return self._finish(started, TrackingState.NO_OBJECT, 0)

        height, width = frame.shape[:2]
        grid = self.sampler.sample(width, height)
        self.last_grid = grid
        pixels = self.sampler.read_colors(frame, grid, bgr=settings.frame_is_bgr)

        # Matching
        self.state = TrackingState.MATCHING
        matched = grid[self.matcher.match_mask(pixels, target, target.tolerance)]
        count = min(len(matched), len(self._match_buffer))
        self._match_buffer[:count] = matched[:count]
        match_set = self._match_buffer[:count]

        if count <= settings.min_object_size:
            return self._finish(started, TrackingState.NO_OBJECT, count)

        # Clustering
        self.state = TrackingState.CLUSTERING
        blob = self.clusterer.dominant(match_set)

        # Stabilizing
        self.state = TrackingState.STABILIZING
        stabilized = self.stabilizer.update(blob.centroid, scan_dt)

        # Mapping
        self.state = TrackingState.MAPPING
        output = self.mapper.texture_to_output(stabilized, width, height, quad)
        if output is None:
            return self._finish(started, TrackingState.NO_OBJECT, count)

        # Publishing
        self.state = TrackingState.PUBLISHING
        self.last_texture_position = stabilized
        self.last_output_position = self._publish(output)
        if self.marker_spawner is not None and self._marker_due(settings.marker_spawn_interval):
            self._last_marker_time = self.elapsed_time
            self.marker_spawner.spawn(output, target.rgb)

        if settings.debug:
            print(f"Scan {self.scan_count}: {count} matches, blob of {blob.size} at "
                  f"({blob.centroid[0]:.1f}, {blob.centroid[1]:.1f}) -> "
                  f"({output[0]:.1f}, {output[1]:.1f})")
        return self._finish(started, TrackingState.PUBLISHING, count)

    def _marker_due(self, interval: float) -> bool:
        return self._last_marker_time is None or self.elapsed_time - self._last_marker_time >= interval

    @staticmethod
    def _input_ready(frame, quad) -> bool:
        if frame is None or quad is None:
            return False
        shape = getattr(frame, 'shape', None)
        if shape is None or len(shape) < 2:
            return False
        return shape[0] > 0 and shape[1] > 0

    def _publish(self, output: Point) -> Tuple[float, ...]:
        position: Tuple[float, ...] = (float(output[0]), float(output[1]))
        if self.actor_sink is None:
            return position

        get_position = getattr(self.actor_sink, 'get_position', None)
        if get_position is not None:
            current = get_position()
            # Depth comes from the actor, never from the mapping
            if current is not None and len(current) > 2:
                position = (position[0], position[1], current[2])
        self.actor_sink.set_position(position)
        return position

    def _finish(self, started: float, state: str, count: int) -> TickResult:
        detected = state == TrackingState.PUBLISHING
        self.object_detected = detected
        self.matched_count = count
        cost_ms = (time.perf_counter() - started) * 1000.0

        if self.telemetry is not None:
            self.telemetry.log_tick(self.scan_count, detected, count,
                                    self.last_output_position if detected else None, cost_ms)

        result = TickResult(True, detected, state, count, self.last_texture_position,
                            self.last_output_position if detected else None, cost_ms)
        self.state = TrackingState.IDLE
        return result

# =============================================================================
# VISUALIZATION
# =============================================================================

def annotate(frame: np.ndarray, controller: TrackingController, fps: Optional[float] = None) -> np.ndarray:
    """
    Add tracking overlay to a frame in texture space (in-place for performance).

    Args:
        frame: BGR frame that was scanned (will be modified in-place)
        controller: Controller whose latest scan is drawn
        fps: Optional frame rate to display

    Returns:
        Same frame object with annotations added
    """
    target_bgr = controller.target.to_bgr255()

    if Config.SHOW_GRID:
        for x, y in controller.last_grid:
            cv2.circle(frame, (int(x), int(y)), 1, (200, 200, 200), -1)

    if controller.last_texture_position is not None:
        cx, cy = (int(round(v)) for v in controller.last_texture_position)
        color = (0, 255, 0) if controller.object_detected else (0, 165, 255)
        cv2.line(frame, (cx - 10, cy), (cx + 10, cy), color, 2)
        cv2.line(frame, (cx, cy - 10), (cx, cy + 10), color, 2)
        cv2.circle(frame, (cx, cy), 14, color, 1)

    if controller.object_detected:
        status_text = f"TRACKING ({controller.matched_count} px)"
        cv2.putText(frame, status_text, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 0), 2)
    else:
        cv2.putText(frame, "NO OBJECT", (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 0, 255), 2)

    # Target color swatch
    cv2.rectangle(frame, (10, 40), (40, 60), target_bgr, -1)
    cv2.rectangle(frame, (10, 40), (40, 60), (255, 255, 255), 1)
    mode = "HSV" if controller.settings.use_hsv_detection else "RGB"
    cv2.putText(frame, f"{mode} tol {controller.target.tolerance:.2f}", (50, 56),
                cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)

    if Config.SHOW_FPS and fps is not None:
        cv2.putText(frame, f"FPS: {fps:.1f}", (10, frame.shape[0] - 10),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, FPS_BAND_COLORS[fps_band(fps)], 1)

    return frame
