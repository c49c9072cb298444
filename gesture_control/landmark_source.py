"""
Landmark Source - Camera/RTSP capture plus MediaPipe hand landmarks.

Wraps the capture device and the landmark model behind one object that
never raises: when either is unavailable the source reports itself
INACTIVE with a reason and yields no hands. The rest of the pipeline
(simulate in particular) keeps working.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

import cv2
import mediapipe as mp
import numpy as np

logger = logging.getLogger(__name__)


class SourceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class FrameValidationResult:
    """Result of frame validation."""
    valid: bool
    reason: str
    frame: Optional[np.ndarray] = None


class FrameGate:
    """
    Frame quality gate for camera/RTSP frames.

    Validates:
    - cap.read() success
    - Frame not empty/None
    - Frame has shape (H, W, 3)
    - Shape consistency across frames (decode corruption on RTSP)
    """

    def __init__(self, invalid_timeout_ms: int = 2000, allow_shape_change: bool = False):
        self.invalid_timeout_ms = invalid_timeout_ms
        self.allow_shape_change = allow_shape_change

        self._consecutive_invalid_start: Optional[float] = None
        self._last_valid_shape: Optional[Tuple[int, ...]] = None
        self._total_invalid_count = 0
        self._total_valid_count = 0

    def validate(self, ok: bool, frame: Optional[np.ndarray]) -> FrameValidationResult:
        if not ok:
            return self._invalid("read_failed")
        if frame is None:
            return self._invalid("frame_none")
        if frame.size == 0:
            return self._invalid("empty_frame")
        if frame.ndim != 3 or frame.shape[2] != 3:
            return self._invalid("invalid_shape")
        if (
            not self.allow_shape_change
            and self._last_valid_shape is not None
            and frame.shape != self._last_valid_shape
        ):
            logger.warning(
                f"Frame shape changed from {self._last_valid_shape} to {frame.shape} "
                "- possible decode corruption"
            )
            return self._invalid("shape_changed")

        self._total_valid_count += 1
        self._last_valid_shape = frame.shape
        self._consecutive_invalid_start = None
        return FrameValidationResult(True, "ok", frame)

    def _invalid(self, reason: str) -> FrameValidationResult:
        self._total_invalid_count += 1
        if self._consecutive_invalid_start is None:
            self._consecutive_invalid_start = time.monotonic()
        return FrameValidationResult(False, reason)

    def invalid_too_long(self) -> bool:
        """True once invalid frames have persisted past the timeout."""
        if self._consecutive_invalid_start is None:
            return False
        elapsed_ms = (time.monotonic() - self._consecutive_invalid_start) * 1000
        return elapsed_ms >= self.invalid_timeout_ms

    def get_stats(self) -> dict:
        total = self._total_valid_count + self._total_invalid_count
        return {
            "total_frames": total,
            "valid_frames": self._total_valid_count,
            "invalid_frames": self._total_invalid_count,
            "valid_rate": self._total_valid_count / total if total > 0 else 0.0,
        }


def _default_hands_factory(min_detection_confidence: float) -> Any:
    return mp.solutions.hands.Hands(
        static_image_mode=False,
        max_num_hands=1,
        model_complexity=1,
        min_detection_confidence=min_detection_confidence,
        min_tracking_confidence=0.5,
    )


def capture_url(rtsp_url: str) -> str:
    """Prefer TCP transport for RTSP streams."""
    if "?" not in rtsp_url:
        return rtsp_url + "?rtsp_transport=tcp"
    if "rtsp_transport" not in rtsp_url:
        return rtsp_url + "&rtsp_transport=tcp"
    return rtsp_url


@dataclass
class SourceRead:
    """One read: the (mirrored) BGR frame if any, and the detected hands."""
    frame: Optional[np.ndarray] = None
    hands: List[Any] = field(default_factory=list)
    timestamp: float = 0.0


class LandmarkSource:
    """
    Produces hand landmark lists from a camera or RTSP stream.

    Features:
    - Frame quality gate in front of the landmark model
    - Landmark model exceptions caught and counted
    - ACTIVE/INACTIVE status with a reason, logged once per transition
    """

    def __init__(
        self,
        camera_index: int = 0,
        rtsp_url: Optional[str] = None,
        min_detection_confidence: float = 0.6,
        mirror: bool = True,
        max_consecutive_failures: int = 5,
        capture_factory: Callable[[Any], Any] = cv2.VideoCapture,
        hands_factory: Callable[[float], Any] = _default_hands_factory,
    ):
        """
        Initialize the landmark source.

        Args:
            camera_index: Camera device index (used if rtsp_url is None)
            rtsp_url: RTSP stream URL (overrides camera_index if set)
            min_detection_confidence: Landmark model detection threshold
            mirror: Flip frames horizontally, as a selfie view
            max_consecutive_failures: Model failures before going INACTIVE
            capture_factory: Builds the capture object (cv2.VideoCapture)
            hands_factory: Builds the landmark model
        """
        self.camera_index = camera_index
        self.rtsp_url = rtsp_url
        self.min_detection_confidence = min_detection_confidence
        self.mirror = mirror
        self.max_consecutive_failures = max_consecutive_failures
        self._capture_factory = capture_factory
        self._hands_factory = hands_factory

        self.frame_gate = FrameGate()
        self._cap: Any = None
        self._hands: Any = None

        self._status = SourceStatus.INACTIVE
        self._reason = "not_started"
        self._consecutive_failures = 0
        self._model_failures = 0
        self._hand_frames = 0

    @property
    def status(self) -> SourceStatus:
        return self._status

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def active(self) -> bool:
        return self._status is SourceStatus.ACTIVE

    def open(self) -> bool:
        """Open the capture device and the landmark model."""
        try:
            if self.rtsp_url:
                logger.info(f"Opening RTSP stream: {self.rtsp_url}")
                self._cap = self._capture_factory(capture_url(self.rtsp_url))
            else:
                logger.info(f"Opening camera index: {self.camera_index}")
                self._cap = self._capture_factory(self.camera_index)
        except Exception as e:
            self._set_inactive(f"camera_error: {e}")
            return False

        if self._cap is None or not self._cap.isOpened():
            self._set_inactive("camera_unavailable")
            return False

        try:
            self._hands = self._hands_factory(self.min_detection_confidence)
        except Exception as e:
            self._set_inactive(f"landmark_model_unavailable: {e}")
            return False

        self._set_active()
        return True

    def set_detection_confidence(self, value: float) -> None:
        """Rebuild the landmark model with a new detection threshold."""
        if value == self.min_detection_confidence:
            return
        self.min_detection_confidence = value
        if self._hands is None:
            return
        self._close_model()
        try:
            self._hands = self._hands_factory(value)
            logger.info(f"Landmark model detection confidence set to {value}")
        except Exception as e:
            self._set_inactive(f"landmark_model_unavailable: {e}")

    def read(self) -> SourceRead:
        """
        Read one frame and run the landmark model on it.

        Returns:
            SourceRead; ``hands`` is empty when inactive, when the frame is
            invalid, or when no hand is visible.
        """
        now = time.time()
        if self._cap is None or self._hands is None:
            return SourceRead(timestamp=now)

        try:
            ok, frame = self._cap.read()
        except Exception as e:
            logger.debug(f"Capture read error: {e}")
            ok, frame = False, None

        result = self.frame_gate.validate(ok, frame)
        if not result.valid:
            logger.debug(f"Frame invalid: {result.reason}")
            if self.frame_gate.invalid_too_long():
                self._set_inactive("no_valid_frames")
            return SourceRead(timestamp=now)

        frame = result.frame
        if self.mirror:
            frame = cv2.flip(frame, 1)
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

        try:
            detection = self._hands.process(rgb)
        except Exception as e:
            self._consecutive_failures += 1
            self._model_failures += 1
            logger.debug(f"Landmark model error: {e}")
            if self._consecutive_failures >= self.max_consecutive_failures:
                self._set_inactive("landmark_model_failing")
            return SourceRead(frame=frame, timestamp=now)

        self._consecutive_failures = 0
        self._set_active()
        hands = list(getattr(detection, "multi_hand_landmarks", None) or [])
        if hands:
            self._hand_frames += 1
        return SourceRead(frame=frame, hands=hands, timestamp=now)

    def close(self) -> None:
        self._close_model()
        if self._cap is not None:
            self._cap.release()
            self._cap = None
        self._status = SourceStatus.INACTIVE
        self._reason = "closed"

    def _close_model(self) -> None:
        if self._hands is not None and hasattr(self._hands, "close"):
            self._hands.close()
        self._hands = None

    def _set_inactive(self, reason: str) -> None:
        if self._status is SourceStatus.INACTIVE and self._reason == reason:
            return
        self._status = SourceStatus.INACTIVE
        self._reason = reason
        logger.warning(f"Landmark source inactive: {reason}")

    def _set_active(self) -> None:
        if self._status is SourceStatus.ACTIVE:
            return
        self._status = SourceStatus.ACTIVE
        self._reason = "ok"
        logger.info("Landmark source active")

    def get_stats(self) -> dict:
        stats = {
            "status": self._status.value,
            "reason": self._reason,
            "hand_frames": self._hand_frames,
            "model_failures": self._model_failures,
        }
        stats.update(self.frame_gate.get_stats())
        return stats
