"""
Fading detection markers drawn where the tracked object was published.
"""

from typing import List, Sequence, Tuple

import cv2
import numpy as np


class DetectionMarker:
    """Ring that grows and fades out, then expires"""

    FADE_SPEED = 1.0        # Alpha per second
    INITIAL_SIZE = 30.0     # Diameter in pixels
    GROWTH_SPEED = 15.0     # Pixels per second
    MAX_SIZE = 60.0

    def __init__(self, position: Sequence[float], color: Sequence[float]):
        self.position = (float(position[0]), float(position[1]))
        self.color = tuple(float(c) for c in color[:3])
        self.alpha = 1.0
        self.size = self.INITIAL_SIZE

    @property
    def expired(self) -> bool:
        return self.alpha <= 0

    def update(self, dt: float):
        self.alpha -= self.FADE_SPEED * dt
        if self.expired:
            return
        self.size = min(self.MAX_SIZE, self.size + self.GROWTH_SPEED * dt)

    def color_bgr255(self) -> Tuple[int, int, int]:
        r, g, b = self.color
        return (int(round(b * 255)), int(round(g * 255)), int(round(r * 255)))

    def draw(self, canvas: np.ndarray):
        """Alpha-blend the ring onto a BGR canvas (in-place)"""
        if self.expired:
            return
        overlay = canvas.copy()
        center = (int(round(self.position[0])), int(round(self.position[1])))
        cv2.circle(overlay, center, int(self.size / 2), self.color_bgr255(), 3)
        cv2.addWeighted(overlay, self.alpha, canvas, 1.0 - self.alpha, 0, dst=canvas)


class DetectionMarkerSpawner:
    """
    Creates markers at published positions and keeps them alive until they
    fade out; the oldest marker is dropped once max_markers is exceeded.
    """

    def __init__(self, max_markers: int = 16):
        self.max_markers = max(1, int(max_markers))
        self.markers: List[DetectionMarker] = []

    def spawn(self, position: Sequence[float], color: Sequence[float]) -> DetectionMarker:
        marker = DetectionMarker(position, color)
        self.markers.append(marker)
        if len(self.markers) > self.max_markers:
            del self.markers[0]
        return marker

    def update(self, dt: float):
        for marker in self.markers:
            marker.update(dt)
        self.markers = [m for m in self.markers if not m.expired]

    def draw(self, canvas: np.ndarray):
        for marker in self.markers:
            marker.draw(canvas)

    def clear(self):
        self.markers = []
