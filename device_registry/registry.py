"""
Device Registry - Authoritative device state.

Single writer: every mutation runs synchronously on the service's event
loop, so writes are naturally serialised. Each write produces a new
frozen DeviceState whose last_updated is strictly greater than the
previous one for that device. Listeners (WebSocket broadcast, MQTT
publish) are told about every batch of changed devices.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from gesture_control.mapper import MACRO_GESTURES, default_devices, map_gesture, normalize_gesture
from gesture_control.message import (
    DISABLED_MESSAGE,
    NOT_RECOGNIZED_MESSAGE,
    DeviceState,
    GestureEvent,
    IntentAction,
    now_ms,
)
from gesture_control.settings import GestureSettings

logger = logging.getLogger(__name__)

EMERGENCY_GESTURES = ("fist", "emergency")

ChangeListener = Callable[[Dict[str, DeviceState]], None]


class DeviceNotFound(KeyError):
    """No device with the given id."""

    def __init__(self, device_id: str):
        super().__init__(device_id)
        self.device_id = device_id


def _status_word(status: bool) -> str:
    return "ON" if status else "OFF"


class DeviceRegistry:
    """
    In-memory registry of the room devices and the gesture settings.

    Features:
    - Strictly increasing per-device lastUpdated
    - Change listeners for push channels
    - Gesture statistics for the health summary
    """

    def __init__(
        self,
        settings: Optional[GestureSettings] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize the registry with the default devices, all off.

        Args:
            settings: Initial gesture settings
            clock: Millisecond wall clock
        """
        self._clock = clock
        self._devices: Dict[str, DeviceState] = default_devices(clock())
        self._settings = settings or GestureSettings()
        self._listeners: List[ChangeListener] = []

        self._gesture_count = 0
        self._average_confidence = 0.0
        self._last_gesture: Optional[Dict[str, Any]] = None
        self._writes = 0

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, changed: Dict[str, DeviceState]) -> None:
        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(changed)
            except Exception as e:
                logger.error(f"Device change listener failed: {e}")

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @property
    def settings(self) -> GestureSettings:
        return self._settings

    def update_settings(self, changes: Mapping[str, Any]) -> GestureSettings:
        """
        Apply a partial settings update.

        Raises:
            ValueError: If the update is invalid; settings stay unchanged.
        """
        self._settings = self._settings.updated(changes)
        logger.info(f"Gesture settings updated: {self._settings.to_dict()}")
        return self._settings

    def gestures_allowed(self) -> bool:
        return self._settings.enabled

    # ------------------------------------------------------------------
    # Device state
    # ------------------------------------------------------------------

    def get_all(self) -> Dict[str, DeviceState]:
        return dict(self._devices)

    def get(self, device_id: str) -> DeviceState:
        try:
            return self._devices[str(device_id)]
        except KeyError:
            raise DeviceNotFound(str(device_id)) from None

    def _write(self, device_id: str, status: bool) -> DeviceState:
        current = self._devices[device_id]
        ts = max(self._clock(), current.last_updated + 1)
        state = current.with_status(status, ts)
        self._devices[device_id] = state
        self._writes += 1
        return state

    def toggle_by_id(
        self,
        device_id: str,
        desired_status: Optional[bool] = None,
    ) -> Tuple[DeviceState, bool]:
        """
        Toggle a device, or set it when ``desired_status`` is given.

        Returns:
            Tuple of (new state, previous status)

        Raises:
            DeviceNotFound: Unknown device id
        """
        current = self.get(device_id)
        status = (not current.status) if desired_status is None else desired_status
        state = self._write(current.id, status)
        logger.info(f"{state.name} {_status_word(state.status)}")
        self._notify({state.id: state})
        return state, current.status

    def bulk_set(self, ids: Optional[Iterable[str]], status: bool) -> Dict[str, DeviceState]:
        """
        Set several devices; ``ids=None`` means every device.

        All ids are checked before anything is written.

        Raises:
            DeviceNotFound: Any id is unknown
        """
        targets = list(self._devices) if ids is None else [str(i) for i in ids]
        for device_id in targets:
            self.get(device_id)
        changed = {device_id: self._write(device_id, status) for device_id in targets}
        logger.info(f"Bulk set {len(changed)} devices {_status_word(status)}")
        self._notify(changed)
        return changed

    def reset(self) -> Dict[str, DeviceState]:
        """Turn every device off."""
        changed = {device_id: self._write(device_id, False) for device_id in self._devices}
        logger.info("All devices reset to OFF")
        self._notify(changed)
        return changed

    def apply_report(self, device_id: str, status: bool) -> Optional[DeviceState]:
        """Apply a status reported by the device itself (e.g. a wall switch)."""
        if str(device_id) not in self._devices:
            logger.warning(f"Report for unknown device {device_id}")
            return None
        current = self._devices[str(device_id)]
        if current.status == status:
            return current
        state = self._write(current.id, status)
        logger.info(f"{state.name} reported {_status_word(status)}")
        self._notify({state.id: state})
        return state

    # ------------------------------------------------------------------
    # Gesture handling
    # ------------------------------------------------------------------

    def record_gesture_metadata(self, info: Mapping[str, Any]) -> Dict[str, Any]:
        """Count a gesture and remember it as the last one."""
        self._gesture_count += 1
        confidence = info.get("confidence")
        if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
            self._average_confidence += (confidence - self._average_confidence) / self._gesture_count
        self._last_gesture = {key: value for key, value in info.items() if value is not None}
        self._last_gesture["timestamp"] = self._clock()
        return dict(self._last_gesture)

    def process_gesture(self, event: GestureEvent) -> Dict[str, Any]:
        """
        Map a gesture to device changes and apply them.

        Returns:
            Response body: success flag, message, affected device(s), voiceMessage
        """
        if not self._settings.enabled:
            return {"success": False, "message": DISABLED_MESSAGE, "enabled": False}

        intent = map_gesture(event)[0]

        if intent.action is IntentAction.NOT_RECOGNIZED:
            logger.info(f"Unrecognized gesture: {event.label}")
            return {
                "success": True,
                "message": NOT_RECOGNIZED_MESSAGE,
                "action": "gesture_not_recognized",
                "suggestions": list(intent.suggestions),
            }

        if intent.action is IntentAction.TOGGLE:
            state, previous = self.toggle_by_id(intent.target)
            info = self.record_gesture_metadata({
                "deviceId": state.id,
                "fingerCount": event.finger_count,
                "gestureType": event.label,
                "confidence": event.confidence,
                "action": "activated" if state.status else "deactivated",
            })
            return {
                "success": True,
                "message": (
                    f"{event.finger_count} finger gesture: {state.name} "
                    f"{'turned on' if state.status else 'turned off'}"
                ),
                "device": state.to_dict(),
                "deviceId": state.id,
                "fingerCount": event.finger_count,
                "previousStatus": previous,
                "gestureInfo": info,
                "voiceMessage": f"{state.name} {'activated' if state.status else 'deactivated'}",
            }

        status = bool(intent.action.desired_status)
        gesture = normalize_gesture(event.gesture)
        changed = self.bulk_set(None, status)
        if gesture in EMERGENCY_GESTURES:
            message = "Emergency gesture detected - All lights ON"
        else:
            message = f"All lights turned {_status_word(status)} via {gesture} gesture"
        info = self.record_gesture_metadata({
            "gestureType": gesture,
            "confidence": event.confidence,
            "action": message,
            "devicesAffected": len(changed),
        })
        return {
            "success": True,
            "message": message,
            "gestureType": gesture,
            "devices": {device_id: state.to_dict() for device_id, state in changed.items()},
            "gestureInfo": info,
            "voiceMessage": message,
        }

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        active = sum(1 for state in self._devices.values() if state.status)
        return {
            "success": True,
            "status": "Gesture Control Active" if self._settings.enabled else "Gesture Control Inactive",
            "timestamp": self._clock(),
            "activeDevices": active,
            "totalDevices": len(self._devices),
            "gestureCount": self._gesture_count,
            "averageConfidence": round(self._average_confidence, 3),
            "lastGesture": self._last_gesture,
            "settings": self._settings.to_dict(),
        }

    def get_stats(self) -> dict:
        return {
            "devices": len(self._devices),
            "writes": self._writes,
            "gesture_count": self._gesture_count,
            "listeners": len(self._listeners),
            "macros": sorted(MACRO_GESTURES),
        }
