# faceaccess/liveness.py
from collections import deque
from typing import Iterable, Optional

import numpy as np

from .config import BLINK_THRESHOLD, LIVENESS_WINDOW

# 68-point layout: left eye 36-41, right eye 42-47
LEFT_EYE = list(range(36, 42))
RIGHT_EYE = list(range(42, 48))


def eye_aspect_ratio(points: np.ndarray) -> float:
    """
    (|p1-p5| + |p2-p4|) / (2 |p0-p3|) over the six points of one eye.
    Drops towards zero as the lid closes.
    """
    p = np.asarray(points, dtype=np.float64)[:, :2]
    a = np.linalg.norm(p[1] - p[5])
    b = np.linalg.norm(p[2] - p[4])
    c = np.linalg.norm(p[0] - p[3])
    if c == 0:
        raise ValueError("Degenerate eye landmarks")
    return float((a + b) / (2.0 * c))


def landmarks_ear(landmarks: np.ndarray) -> float:
    """Mean eye aspect ratio of both eyes."""
    lm = np.asarray(landmarks, dtype=np.float64)
    if lm.ndim != 2 or lm.shape[0] < 48:
        raise ValueError("Expected 68-point landmarks")
    return (eye_aspect_ratio(lm[LEFT_EYE]) + eye_aspect_ratio(lm[RIGHT_EYE])) / 2.0


class BlinkDetector:
    """
    Sliding window of eye aspect ratios; live once the window minimum dips
    below the blink threshold.

    This is a coarse heuristic, not an anti-spoofing guarantee: users who
    do not blink within the window read as not live, and fast head motion
    can distort the ratio enough to read as a blink.
    """

    def __init__(self, window: int = LIVENESS_WINDOW, threshold: float = BLINK_THRESHOLD):
        self.threshold = threshold
        self.samples = deque(maxlen=window)

    @property
    def alive(self) -> bool:
        return bool(self.samples) and min(self.samples) < self.threshold

    def push(self, ratio: float) -> bool:
        self.samples.append(ratio)
        return self.alive

    def update(self, landmarks: Optional[np.ndarray]) -> bool:
        if landmarks is None:
            return False
        try:
            ratio = landmarks_ear(landmarks)
        except ValueError:
            return False
        return self.push(ratio)

    def reset(self) -> None:
        self.samples.clear()


def is_live(landmark_frames: Iterable[Optional[np.ndarray]], threshold: float = BLINK_THRESHOLD) -> bool:
    """Run a fresh detector over a burst of frames."""
    frames = list(landmark_frames)
    detector = BlinkDetector(window=max(len(frames), 1), threshold=threshold)
    for lm in frames:
        detector.update(lm)
    return detector.alive
