"""
Message Schema and Validation for the gesture pipeline.

Defines the records that flow between the classifier, the debounce
machine, the mapper and the dispatcher, their JSON wire form for the
device registry, and validation of observations before they enter the
debounce stage.
"""

import json
import math
import time
import logging
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

MIN_FINGER_COUNT = 0
MAX_FINGER_COUNT = 4

# Device ids addressed by finger count
FINGER_DEVICE_IDS = ("1", "2", "3", "4")
ALL_DEVICES = "all"

# Fixed confidence of simulated (hand-built) gestures
SIMULATED_CONFIDENCE = 0.95

DISABLED_MESSAGE = "Gesture control is disabled. Please enable it first."
NOT_RECOGNIZED_MESSAGE = "Gesture detected but not recognized. Try showing 1-4 fingers."


def now_ms() -> int:
    """Wall-clock timestamp in milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class GestureObservation:
    """
    One classified frame.

    Attributes:
        finger_count: Extended fingers, 0..4
        confidence: Landmark visibility proxy, 0..1
        timestamp: Milliseconds since epoch
    """
    finger_count: int
    confidence: float
    timestamp: int


@dataclass(frozen=True)
class GestureEvent:
    """A committed gesture: either a finger count or a named gesture."""
    confidence: float
    timestamp: int
    finger_count: Optional[int] = None
    gesture: Optional[str] = None

    @classmethod
    def from_observation(cls, obs: GestureObservation) -> "GestureEvent":
        return cls(
            finger_count=obs.finger_count,
            confidence=obs.confidence,
            timestamp=obs.timestamp,
        )

    @property
    def label(self) -> str:
        """Human readable gesture label, e.g. ``2 finger(s)`` or ``wave_left``."""
        if self.finger_count is not None:
            return f"{self.finger_count} finger(s)"
        return self.gesture or "gesture"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }
        if self.finger_count is not None:
            payload["fingerCount"] = self.finger_count
        if self.gesture is not None:
            payload["gestureType"] = self.gesture
        return payload


@dataclass(frozen=True)
class DeviceState:
    """
    Snapshot of one device.

    Wire form (keyed by id in the registry payload):
        {"name": ..., "status": ..., "lastUpdated": ..., "location": ...}
    """
    id: str
    name: str
    status: bool
    last_updated: int
    location: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "lastUpdated": self.last_updated,
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, device_id: Any, data: Mapping[str, Any]) -> "DeviceState":
        return cls(
            id=str(device_id),
            name=str(data.get("name", f"Device {device_id}")),
            status=bool(data["status"]),
            last_updated=int(data.get("lastUpdated", 0)),
            location=str(data.get("location", "")),
        )

    def with_status(self, status: bool, ts: int) -> "DeviceState":
        """Copy with a new status; last_updated never moves backwards."""
        return DeviceState(
            id=self.id,
            name=self.name,
            status=status,
            last_updated=max(ts, self.last_updated),
            location=self.location,
        )


@dataclass(frozen=True)
class MirroredDevice:
    """Local copy of a device, tagged with whether the registry confirmed it."""
    state: DeviceState
    confirmed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        payload = self.state.to_dict()
        payload["confirmed"] = self.confirmed
        return payload

    @classmethod
    def from_dict(cls, device_id: Any, data: Mapping[str, Any]) -> "MirroredDevice":
        return cls(
            state=DeviceState.from_dict(device_id, data),
            confirmed=bool(data.get("confirmed", True)),
        )


class IntentAction(str, Enum):
    """What a dispatch intent asks the registry to do."""
    TOGGLE = "toggle"
    SET_ON = "set_on"
    SET_OFF = "set_off"
    NOT_RECOGNIZED = "not_recognized"

    @property
    def desired_status(self) -> Optional[bool]:
        if self is IntentAction.SET_ON:
            return True
        if self is IntentAction.SET_OFF:
            return False
        return None


@dataclass(frozen=True)
class DispatchIntent:
    """
    A device command produced by the mapper.

    Attributes:
        target: Device id, ``"all"``, or None for not-recognized intents
        action: Requested action
        source: The gesture event that produced the intent
        suggestions: Valid mappings, only set for not-recognized intents
    """
    target: Optional[str]
    action: IntentAction
    source: GestureEvent
    suggestions: Tuple[str, ...] = ()

    @property
    def confidence(self) -> float:
        return self.source.confidence

    @property
    def is_bulk(self) -> bool:
        return self.target == ALL_DEVICES


class FeedbackType(str, Enum):
    GESTURE_DETECTED = "gesture_detected"
    STATUS_CHANGED = "status_changed"
    ERROR = "error"


@dataclass(frozen=True)
class FeedbackEvent:
    """Outbound, fire-and-forget notification for the UI/audio layer."""
    type: FeedbackType
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({"type": self.type.value, "payload": self.payload})

    @classmethod
    def from_json(cls, data: str) -> "FeedbackEvent":
        d = json.loads(data)
        return cls(type=FeedbackType(d["type"]), payload=dict(d.get("payload") or {}))


class ObservationValidator:
    """
    Validates observations before they reach the debounce stage.

    Ensures:
    - finger_count is an integer in [0, 4]
    - confidence is finite and within [0, 1]
    - timestamps are non-decreasing within a session
    """

    def __init__(self):
        self._last_ts: int = 0
        self._dropped_count: int = 0
        self._validated_count: int = 0

    def validate(self, obs: GestureObservation) -> Tuple[bool, str]:
        """
        Validate an observation.

        Returns:
            Tuple of (is_valid, reason_string)
        """
        if isinstance(obs.finger_count, bool) or not isinstance(obs.finger_count, int):
            return self._drop(f"finger_count={obs.finger_count!r} is not an integer", "finger_count_not_int")

        if not MIN_FINGER_COUNT <= obs.finger_count <= MAX_FINGER_COUNT:
            return self._drop(f"finger_count={obs.finger_count} out of range", "finger_count_out_of_range")

        if not math.isfinite(obs.confidence):
            return self._drop(f"confidence={obs.confidence} is not finite", "confidence_not_finite")

        if not 0.0 <= obs.confidence <= 1.0:
            return self._drop(f"confidence={obs.confidence} out of range", "confidence_out_of_range")

        # Equal timestamps are allowed for observations from the same tick
        if obs.timestamp < self._last_ts:
            return self._drop(
                f"timestamp {obs.timestamp} < previous {self._last_ts}", "timestamp_regression"
            )

        self._last_ts = obs.timestamp
        self._validated_count += 1
        return True, "ok"

    def _drop(self, detail: str, reason: str) -> Tuple[bool, str]:
        self._dropped_count += 1
        logger.warning(f"Invalid observation: {detail}")
        return False, reason

    def reset(self) -> None:
        """Forget the last timestamp (new session)."""
        self._last_ts = 0

    def get_stats(self) -> dict:
        """Get validation statistics."""
        total = self._validated_count + self._dropped_count
        return {
            "total_observations": total,
            "validated": self._validated_count,
            "dropped": self._dropped_count,
            "drop_rate": self._dropped_count / total if total > 0 else 0.0,
        }


def device_map_to_dict(devices: Mapping[str, DeviceState]) -> Dict[str, Dict[str, Any]]:
    """Serialize an id -> DeviceState mapping to its wire form."""
    return {device_id: state.to_dict() for device_id, state in devices.items()}


def device_map_from_dict(data: Mapping[str, Mapping[str, Any]]) -> Dict[str, DeviceState]:
    return {str(device_id): DeviceState.from_dict(device_id, d) for device_id, d in data.items()}


def event_payload(event: GestureEvent) -> Dict[str, Any]:
    """Compact gesture summary used in feedback payloads."""
    payload = asdict(event)
    payload["label"] = event.label
    return payload
