"""
Gesture Classifier - Finger counting from MediaPipe hand landmarks.

Converts one frame of hand landmarks into a GestureObservation
(finger count + confidence). Never raises: frames it cannot read
produce no observation.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np

from .message import GestureObservation, MAX_FINGER_COUNT, MIN_FINGER_COUNT, now_ms

logger = logging.getLogger(__name__)

# ============================================================================
# MediaPipe Landmark Indices
# ============================================================================

WRIST = 0
THUMB_IP, THUMB_TIP = 3, 4
INDEX_PIP, INDEX_TIP = 6, 8
MIDDLE_PIP, MIDDLE_TIP = 10, 12
RING_PIP, RING_TIP = 14, 16
PINKY_PIP, PINKY_TIP = 18, 20

NUM_LANDMARKS = 21

# (tip, pip) pairs for the four non-thumb fingers
FINGERS = (
    (INDEX_TIP, INDEX_PIP),
    (MIDDLE_TIP, MIDDLE_PIP),
    (RING_TIP, RING_PIP),
    (PINKY_TIP, PINKY_PIP),
)

# Points whose visibility drives the confidence score
KEY_POINTS = (WRIST, THUMB_TIP, INDEX_TIP, MIDDLE_TIP, RING_TIP, PINKY_TIP)

BASE_CONFIDENCE = 0.8
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0


# ============================================================================
# Utility Functions
# ============================================================================

def clamp(v: float, lo: float, hi: float) -> float:
    """Clamp value between lo and hi."""
    return max(lo, min(hi, v))


def _as_points(landmarks: Any) -> Optional[np.ndarray]:
    """
    Convert landmarks to a (21, 2) float array.

    Accepts MediaPipe ``NormalizedLandmarkList`` objects, sequences of
    objects with ``x``/``y`` attributes, or sequences of (x, y[, z]) tuples.
    """
    if landmarks is None:
        return None
    if hasattr(landmarks, "landmark"):
        landmarks = landmarks.landmark
    try:
        pts = [
            (p.x, p.y) if hasattr(p, "x") else (p[0], p[1])
            for p in landmarks
        ]
        arr = np.asarray(pts, dtype=np.float64)
    except (TypeError, ValueError, IndexError):
        return None
    if arr.shape != (NUM_LANDMARKS, 2):
        return None
    return arr


@dataclass(frozen=True)
class LandmarkFrame:
    """21 normalized hand keypoints plus the capture timestamp (ms)."""
    points: np.ndarray
    timestamp: int

    @classmethod
    def from_landmarks(cls, landmarks: Any, timestamp: Optional[int] = None) -> Optional["LandmarkFrame"]:
        pts = _as_points(landmarks)
        if pts is None:
            return None
        return cls(points=pts, timestamp=timestamp if timestamp is not None else now_ms())


# ============================================================================
# Hand Geometry Functions
# ============================================================================

def thumb_extended(pts: np.ndarray) -> bool:
    """Thumb counts as extended when its tip is further along x than its IP joint."""
    # NOTE: raw x comparison, not corrected for handedness or a mirrored feed
    return bool(pts[THUMB_TIP, 0] > pts[THUMB_IP, 0])


def count_fingers(pts: np.ndarray) -> int:
    """Count extended fingers, clamped to the four device slots."""
    count = 1 if thumb_extended(pts) else 0
    for tip, pip in FINGERS:
        # y grows downwards: extended tips sit above their PIP joint
        if pts[tip, 1] < pts[pip, 1]:
            count += 1
    return int(clamp(count, MIN_FINGER_COUNT, MAX_FINGER_COUNT))


def landmark_confidence(pts: np.ndarray) -> float:
    """
    Visibility proxy, not a calibrated probability.

    Base score scaled by the fraction of key points that lie inside the
    normalized frame on both axes.
    """
    key = pts[list(KEY_POINTS)]
    inside = np.all((key >= 0.0) & (key <= 1.0), axis=1)
    confidence = BASE_CONFIDENCE * (float(np.count_nonzero(inside)) / len(KEY_POINTS))
    return float(clamp(confidence, MIN_CONFIDENCE, MAX_CONFIDENCE))


class GestureClassifier:
    """
    Stateless finger-count classifier with counters for diagnostics.
    """

    def __init__(self):
        self._frames = 0
        self._no_hand = 0
        self._malformed = 0

    def classify(self, frame: Optional[LandmarkFrame]) -> Optional[GestureObservation]:
        """Classify one frame; None when there is no hand."""
        self._frames += 1
        if frame is None:
            self._no_hand += 1
            return None
        return GestureObservation(
            finger_count=count_fingers(frame.points),
            confidence=landmark_confidence(frame.points),
            timestamp=frame.timestamp,
        )

    def classify_hands(
        self,
        hands: Optional[Sequence[Any]],
        timestamp: Optional[int] = None,
    ) -> Optional[GestureObservation]:
        """
        Classify the first (highest-priority) hand of a detection result.

        Args:
            hands: Sequence of per-hand landmark lists, possibly empty or None
            timestamp: Capture time in ms (defaults to now)
        """
        if not hands:
            return self.classify(None)
        frame = LandmarkFrame.from_landmarks(hands[0], timestamp)
        if frame is None:
            self._frames += 1
            self._malformed += 1
            logger.debug("Dropping malformed landmark frame")
            return None
        return self.classify(frame)

    def get_stats(self) -> dict:
        return {
            "frames": self._frames,
            "no_hand": self._no_hand,
            "malformed": self._malformed,
        }
