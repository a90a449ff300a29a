"""
Target color selection: holds the chosen color and tolerance and notifies
observers (the tracking controller) whenever either changes.
"""

from typing import Callable, List, Optional, Sequence

import numpy as np

from color_tracker import Config, TargetColor

CHANNELS = ('r', 'g', 'b')


def tolerance_description(tolerance: float) -> str:
    """Human-readable label for a tolerance value"""
    if tolerance > 0.4:
        return "Very permissive"
    elif tolerance > 0.3:
        return "Permissive"
    elif tolerance > 0.2:
        return "Normal"
    elif tolerance > 0.1:
        return "Strict"
    return "Very strict"


class ColorSelector:
    """
    Selected target color (normalized RGB) and tolerance.

    Channel setters take 0-255 values and clamp them, tolerance is clamped to
    [0, 1]. Every change calls the subscribed observers with the new
    TargetColor.
    """

    def __init__(self, color: Optional[Sequence[float]] = None, tolerance: Optional[float] = None):
        rgb = Config.DEFAULT_TARGET_COLOR if color is None else color
        self._color = [min(1.0, max(0.0, float(c))) for c in rgb[:3]]
        self._tolerance = self._clamp_tolerance(Config.DEFAULT_TOLERANCE if tolerance is None else tolerance)
        self._observers: List[Callable[[TargetColor], None]] = []

    @staticmethod
    def _clamp_tolerance(value: float) -> float:
        return min(1.0, max(0.0, float(value)))

    @property
    def target(self) -> TargetColor:
        return TargetColor(self._color[0], self._color[1], self._color[2], self._tolerance)

    @property
    def tolerance(self) -> float:
        return self._tolerance

    def color_255(self):
        return tuple(int(round(c * 255)) for c in self._color)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[TargetColor], None]):
        if callback not in self._observers:
            self._observers.append(callback)

    def unsubscribe(self, callback: Callable[[TargetColor], None]):
        if callback in self._observers:
            self._observers.remove(callback)

    def _notify(self):
        target = self.target
        if Config.DEBUG:
            r, g, b = self.color_255()
            print(f"Color updated: R:{r}, G:{g}, B:{b}, tolerance: {target.tolerance:.2f} "
                  f"({tolerance_description(target.tolerance)})")
        for callback in list(self._observers):
            callback(target)

    # ------------------------------------------------------------------
    # Setters
    # ------------------------------------------------------------------

    def set_channel(self, channel: str, value: float):
        """Set one channel from a 0-255 value"""
        index = CHANNELS.index(channel)
        self._color[index] = min(255.0, max(0.0, float(value))) / 255.0
        self._notify()

    def set_color_255(self, r: float, g: float, b: float):
        self._color = [min(255.0, max(0.0, float(c))) / 255.0 for c in (r, g, b)]
        self._notify()

    def set_color(self, rgb: Sequence[float]):
        """Set the color from normalized RGB"""
        self._color = [min(1.0, max(0.0, float(c))) for c in rgb[:3]]
        self._notify()

    def set_tolerance(self, value: float):
        self._tolerance = self._clamp_tolerance(value)
        self._notify()

    def set_channel_text(self, channel: str, text: str) -> bool:
        """Text input for a channel; unparsable text leaves the value unchanged"""
        try:
            value = int(text.strip())
        except ValueError:
            return False
        self.set_channel(channel, value)
        return True

    def set_tolerance_text(self, text: str) -> bool:
        try:
            value = float(text.strip())
        except ValueError:
            return False
        self.set_tolerance(value)
        return True

    def pick_from_frame(self, frame: np.ndarray, x: int, y: int, radius: int = 2, bgr: bool = True) -> bool:
        """
        Select the average color of a small neighbourhood of a frame.

        Returns:
            False if (x, y) lies outside the frame
        """
        height, width = frame.shape[:2]
        x, y = int(x), int(y)
        if not (0 <= x < width and 0 <= y < height):
            return False

        patch = frame[max(0, y - radius):y + radius + 1, max(0, x - radius):x + radius + 1]
        if patch.ndim == 2:
            mean = np.repeat(patch.mean(), 3)
        else:
            mean = patch.reshape(-1, patch.shape[-1])[:, :3].mean(axis=0)
            if bgr:
                mean = mean[::-1]
        if np.issubdtype(frame.dtype, np.integer):
            mean = mean / 255.0
        self.set_color(mean.tolist())
        return True
