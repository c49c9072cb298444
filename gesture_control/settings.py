"""
Gesture Settings - Validated configuration for a gesture session.

Shared by the controller (client side) and the device registry (server
side). Every update goes through validation; unknown keys are dropped.
"""

import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping

DETECTION_RANGES = ("close", "medium", "far")

# Detection range -> minimum detection confidence for the landmark model
DETECTION_CONFIDENCE = {
    "close": 0.8,
    "medium": 0.6,
    "far": 0.4,
}

# Wire name -> attribute name
_WIRE_KEYS = {
    "enabled": "enabled",
    "sensitivity": "sensitivity",
    "detectionRange": "detection_range",
    "responseDelay": "response_delay_ms",
    "cooldown": "cooldown_ms",
}


@dataclass(frozen=True)
class GestureSettings:
    """
    Settings for one gesture control session.

    Attributes:
        enabled: Whether gestures are acted upon
        sensitivity: Minimum observation confidence (0..1)
        detection_range: One of close/medium/far
        response_delay_ms: Stability delay before a gesture fires
        cooldown_ms: Window during which the executed gesture cannot re-fire
    """
    enabled: bool = False
    sensitivity: float = 0.7
    detection_range: str = "medium"
    response_delay_ms: int = 0
    cooldown_ms: int = 1500

    def __post_init__(self):
        if not isinstance(self.enabled, bool):
            raise ValueError(f"enabled must be a boolean, got {self.enabled!r}")
        if isinstance(self.sensitivity, bool) or not isinstance(self.sensitivity, (int, float)):
            raise ValueError(f"sensitivity must be a number, got {self.sensitivity!r}")
        if not math.isfinite(self.sensitivity) or not 0.0 <= self.sensitivity <= 1.0:
            raise ValueError(f"sensitivity must be within [0, 1], got {self.sensitivity}")
        if self.detection_range not in DETECTION_RANGES:
            raise ValueError(
                f"detection_range must be one of {DETECTION_RANGES}, got {self.detection_range!r}"
            )
        for name in ("response_delay_ms", "cooldown_ms"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")

    @property
    def response_delay_s(self) -> float:
        return self.response_delay_ms / 1000.0

    @property
    def cooldown_s(self) -> float:
        return self.cooldown_ms / 1000.0

    @property
    def min_detection_confidence(self) -> float:
        return DETECTION_CONFIDENCE[self.detection_range]

    def updated(self, changes: Mapping[str, Any]) -> "GestureSettings":
        """
        Return a copy with a partial update applied.

        Accepts both wire names (``detectionRange``, ``responseDelay``) and
        attribute names. Unknown keys and ``None`` values are ignored.

        Raises:
            ValueError: If any resulting value is invalid.
        """
        fields: Dict[str, Any] = {}
        attrs = set(_WIRE_KEYS.values())
        for key, value in changes.items():
            if value is None:
                continue
            attr = _WIRE_KEYS.get(key, key if key in attrs else None)
            if attr is None:
                continue
            if attr in ("response_delay_ms", "cooldown_ms") and isinstance(value, float):
                if not value.is_integer():
                    raise ValueError(f"{attr} must be a whole number of milliseconds")
                value = int(value)
            if attr == "sensitivity" and isinstance(value, int) and not isinstance(value, bool):
                value = float(value)
            fields[attr] = value
        return replace(self, **fields)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using wire names."""
        return {
            "enabled": self.enabled,
            "sensitivity": self.sensitivity,
            "detectionRange": self.detection_range,
            "responseDelay": self.response_delay_ms,
            "cooldown": self.cooldown_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GestureSettings":
        return cls().updated(data)
