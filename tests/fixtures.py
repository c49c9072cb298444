"""
Synthetic hands and fakes shared by the test modules.
"""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

from gesture_control.classifier import FINGERS, THUMB_IP, THUMB_TIP
from gesture_control.mapper import default_devices
from gesture_control.message import DeviceState, GestureEvent
from gesture_control.registry_client import (
    DeviceNotFound,
    GestureControlDisabled,
    RegistryUnavailable,
)


def make_hand(fingers: int = 0, thumb: bool = False) -> List[Tuple[float, float]]:
    """
    21 (x, y) points with ``fingers`` non-thumb fingers extended.

    All points lie inside the frame, so the confidence is 0.8.
    """
    pts = [[0.5, 0.6] for _ in range(21)]
    pts[THUMB_IP] = [0.5, 0.6]
    pts[THUMB_TIP] = [0.6 if thumb else 0.4, 0.6]
    for i, (tip, pip) in enumerate(FINGERS):
        pts[pip] = [0.5, 0.5]
        pts[tip] = [0.5, 0.3 if i < fingers else 0.7]
    return [tuple(p) for p in pts]


class FakeRegistry:
    """
    In-memory stand-in for RegistryClient.

    ``fail`` may be set to an exception instance raised by every write.
    """

    def __init__(self, devices: Optional[Dict[str, DeviceState]] = None):
        self.devices = dict(devices) if devices is not None else default_devices(1000)
        self.fail: Optional[Exception] = None
        self.calls: List[tuple] = []
        self.settings_pushed: List[dict] = []
        self.enabled = True

    def _next(self, state: DeviceState, status: bool) -> DeviceState:
        return state.with_status(status, state.last_updated + 1)

    async def get_devices(self) -> Dict[str, DeviceState]:
        if self.fail is not None:
            raise self.fail
        return dict(self.devices)

    async def toggle(
        self,
        device_id: str,
        desired_status: Optional[bool] = None,
        event: Optional[GestureEvent] = None,
    ) -> DeviceState:
        self.calls.append(("toggle", device_id, desired_status))
        if self.fail is not None:
            raise self.fail
        if not self.enabled:
            raise GestureControlDisabled("Gesture control is disabled. Please enable it first.")
        if device_id not in self.devices:
            raise DeviceNotFound(device_id)
        current = self.devices[device_id]
        status = (not current.status) if desired_status is None else desired_status
        self.devices[device_id] = self._next(current, status)
        return self.devices[device_id]

    async def bulk_set(
        self,
        ids: Optional[Sequence[str]],
        status: bool,
        event: Optional[GestureEvent] = None,
    ) -> Dict[str, DeviceState]:
        self.calls.append(("bulk", None if ids is None else tuple(ids), status))
        if self.fail is not None:
            raise self.fail
        targets = list(self.devices) if ids is None else list(ids)
        for device_id in targets:
            self.devices[device_id] = self._next(self.devices[device_id], status)
        return {device_id: self.devices[device_id] for device_id in targets}

    async def update_settings(self, changes: dict):
        self.settings_pushed.append(dict(changes))
        if self.fail is not None:
            raise self.fail
        return changes


class SlowRegistry(FakeRegistry):
    """FakeRegistry whose toggle waits on an event, to control response order."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gates: List[asyncio.Event] = []

    async def toggle(self, device_id, desired_status=None, event=None):
        gate = asyncio.Event()
        self.gates.append(gate)
        result = await super().toggle(device_id, desired_status, event)
        await gate.wait()
        return result


def unavailable() -> RegistryUnavailable:
    return RegistryUnavailable("connection refused")
