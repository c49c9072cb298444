"""
Dispatcher - Sends DispatchIntents to the device registry and keeps the
local device mirror reconciled.

Reconciliation rules:
- A confirmed registry response is adopted verbatim, unless the mirror
  already holds a newer confirmed snapshot of the same device.
- When the registry is unreachable the intent is applied optimistically,
  marked unconfirmed and persisted to the local store. There is no retry;
  the next confirmed response or external push supersedes it.
- Unknown devices, disabled gesture control and rejected requests never
  mutate the mirror.

Every dispatch attempt emits exactly one FeedbackEvent.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

from .local_store import LocalDeviceStore
from .mapper import default_devices
from .message import (
    NOT_RECOGNIZED_MESSAGE,
    DeviceState,
    DispatchIntent,
    FeedbackEvent,
    FeedbackType,
    IntentAction,
    MirroredDevice,
    device_map_to_dict,
    event_payload,
    now_ms,
)
from .registry_client import (
    DeviceNotFound,
    GestureControlDisabled,
    RegistryClient,
    RegistryError,
    RegistryUnavailable,
)

logger = logging.getLogger(__name__)


class DispatchResult(str, Enum):
    CONFIRMED = "confirmed"
    OPTIMISTIC = "optimistic"
    UNKNOWN_DEVICE = "unknown_device"
    DISABLED = "disabled"
    NOT_RECOGNIZED = "not_recognized"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of one dispatch attempt and the feedback it produced."""
    intent: DispatchIntent
    result: DispatchResult
    feedback: FeedbackEvent
    devices: Dict[str, DeviceState] = field(default_factory=dict)


def _status_word(status: bool) -> str:
    return "ON" if status else "OFF"


class Dispatcher:
    """
    Executes intents against the registry with local fallback.

    Features:
    - Confirmed responses replace the local copy
    - Optimistic fallback persisted through LocalDeviceStore
    - External pushes (dashboard, wall switch) applied unless stale
    - Gesture count and running mean confidence
    """

    def __init__(
        self,
        registry: RegistryClient,
        store: Optional[LocalDeviceStore] = None,
        on_feedback: Optional[Callable[[FeedbackEvent], None]] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            registry: Registry client (or any object with the same coroutines)
            store: Local store for the mirror; None disables persistence
            on_feedback: Callback for every FeedbackEvent (UI/audio layer)
        """
        self.registry = registry
        self.store = store
        self.on_feedback = on_feedback
        self._mirror: Dict[str, MirroredDevice] = {}

        self._gesture_count = 0
        self._average_confidence = 0.0
        self._results: Dict[str, int] = {r.value: 0 for r in DispatchResult}
        self._last_gesture: Optional[str] = None

    # ------------------------------------------------------------------
    # Mirror
    # ------------------------------------------------------------------

    @property
    def devices(self) -> Dict[str, DeviceState]:
        """Snapshot of the mirrored device states."""
        return {device_id: m.state for device_id, m in self._mirror.items()}

    @property
    def mirror(self) -> Dict[str, MirroredDevice]:
        return dict(self._mirror)

    async def load(self) -> bool:
        """
        Fill the mirror from the registry, falling back to the local store.

        Returns:
            True if the registry answered, False if the fallback was used
        """
        try:
            states = await self.registry.get_devices()
        except RegistryUnavailable as e:
            stored = self.store.load() if self.store is not None else {}
            if stored:
                self._mirror = stored
                logger.warning(f"Registry unavailable ({e}), loaded {len(stored)} devices from local store")
            else:
                self._mirror = {
                    device_id: MirroredDevice(state, confirmed=False)
                    for device_id, state in default_devices(now_ms()).items()
                }
                logger.warning(f"Registry unavailable ({e}), starting from default devices")
            return False

        self._mirror = {device_id: MirroredDevice(state) for device_id, state in states.items()}
        logger.info(f"Loaded {len(states)} devices from registry")
        self._persist()
        return True

    def apply_external(self, state: DeviceState) -> bool:
        """
        Apply a state pushed by another writer.

        A push always replaces an unconfirmed (optimistic) entry, whose
        timestamp comes from the local clock.

        Returns:
            True if the mirror changed, False if the push was stale
        """
        current = self._mirror.get(state.id)
        if (
            current is not None
            and current.confirmed
            and state.last_updated < current.state.last_updated
        ):
            logger.debug(f"Ignoring stale push for device {state.id}")
            return False
        self._mirror[state.id] = MirroredDevice(state, confirmed=True)
        self._persist()
        return True

    def _adopt(self, states: Iterable[DeviceState]) -> Dict[str, DeviceState]:
        adopted: Dict[str, DeviceState] = {}
        for state in states:
            current = self._mirror.get(state.id)
            if (
                current is not None
                and current.confirmed
                and state.last_updated < current.state.last_updated
            ):
                # Late response: a newer confirmed snapshot already arrived
                continue
            self._mirror[state.id] = MirroredDevice(state, confirmed=True)
            adopted[state.id] = state
        return adopted

    def _apply_optimistic(self, intent: DispatchIntent) -> Dict[str, DeviceState]:
        ts = now_ms()
        if intent.is_bulk:
            targets = list(self._mirror)
        elif intent.target in self._mirror:
            targets = [intent.target]
        else:
            targets = []

        changed: Dict[str, DeviceState] = {}
        for device_id in targets:
            current = self._mirror[device_id].state
            desired = intent.action.desired_status
            status = (not current.status) if desired is None else desired
            state = current.with_status(status, ts)
            self._mirror[device_id] = MirroredDevice(state, confirmed=False)
            changed[device_id] = state
        return changed

    def _persist(self) -> None:
        if self.store is not None:
            self.store.save(self._mirror)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, intent: DispatchIntent) -> DispatchOutcome:
        """
        Execute one intent.

        Never raises for registry failures; the outcome and the emitted
        feedback describe what happened.
        """
        self._record_gesture(intent)
        gesture = event_payload(intent.source)

        if intent.action is IntentAction.NOT_RECOGNIZED:
            return self._finish(intent, DispatchResult.NOT_RECOGNIZED, FeedbackEvent(
                FeedbackType.GESTURE_DETECTED,
                {
                    "recognized": False,
                    "gesture": gesture,
                    "message": NOT_RECOGNIZED_MESSAGE,
                    "suggestions": list(intent.suggestions),
                },
            ))

        try:
            if intent.is_bulk:
                states = await self.registry.bulk_set(
                    None, intent.action.desired_status, intent.source
                )
            else:
                state = await self.registry.toggle(
                    intent.target, intent.action.desired_status, intent.source
                )
                states = {state.id: state}

        except RegistryUnavailable as e:
            changed = self._apply_optimistic(intent)
            if not changed:
                logger.warning(f"Registry unavailable and device {intent.target} is not mirrored")
                return self._finish(intent, DispatchResult.UNKNOWN_DEVICE, FeedbackEvent(
                    FeedbackType.ERROR,
                    {
                        "reason": DispatchResult.UNKNOWN_DEVICE.value,
                        "deviceId": intent.target,
                        "gesture": gesture,
                        "message": f"Device {intent.target} not found",
                    },
                ))
            self._persist()
            logger.warning(f"Registry unavailable ({e}), applied {intent.action.value} locally")
            return self._finish(intent, DispatchResult.OPTIMISTIC, FeedbackEvent(
                FeedbackType.STATUS_CHANGED,
                {
                    "confirmed": False,
                    "gesture": gesture,
                    "devices": device_map_to_dict(changed),
                    "message": self._message(intent, changed) + " (offline)",
                },
            ), changed)

        except DeviceNotFound as e:
            logger.warning(f"Unknown device: {e}")
            return self._finish(intent, DispatchResult.UNKNOWN_DEVICE, FeedbackEvent(
                FeedbackType.ERROR,
                {
                    "reason": DispatchResult.UNKNOWN_DEVICE.value,
                    "deviceId": intent.target,
                    "gesture": gesture,
                    "message": f"Device {intent.target} not found",
                },
            ))

        except GestureControlDisabled as e:
            return self._finish(intent, DispatchResult.DISABLED, FeedbackEvent(
                FeedbackType.ERROR,
                {"reason": DispatchResult.DISABLED.value, "gesture": gesture, "message": str(e)},
            ))

        except RegistryError as e:
            logger.error(f"Registry rejected {intent.action.value}: {e}")
            return self._finish(intent, DispatchResult.REJECTED, FeedbackEvent(
                FeedbackType.ERROR,
                {"reason": DispatchResult.REJECTED.value, "gesture": gesture, "message": str(e)},
            ))

        adopted = self._adopt(states.values())
        self._persist()
        return self._finish(intent, DispatchResult.CONFIRMED, FeedbackEvent(
            FeedbackType.STATUS_CHANGED,
            {
                "confirmed": True,
                "gesture": gesture,
                "devices": device_map_to_dict(states),
                "message": self._message(intent, states),
            },
        ), adopted)

    @staticmethod
    def _message(intent: DispatchIntent, states: Dict[str, DeviceState]) -> str:
        if intent.is_bulk:
            return f"All lights turned {_status_word(bool(intent.action.desired_status))}"
        state = next(iter(states.values()))
        return f"{state.name} turned {_status_word(state.status)}"

    def _record_gesture(self, intent: DispatchIntent) -> None:
        self._gesture_count += 1
        self._average_confidence += (intent.confidence - self._average_confidence) / self._gesture_count
        self._last_gesture = intent.source.label

    def _finish(
        self,
        intent: DispatchIntent,
        result: DispatchResult,
        feedback: FeedbackEvent,
        devices: Optional[Dict[str, DeviceState]] = None,
    ) -> DispatchOutcome:
        self._results[result.value] += 1
        self.emit(feedback)
        return DispatchOutcome(intent=intent, result=result, feedback=feedback, devices=devices or {})

    def emit(self, feedback: FeedbackEvent) -> None:
        """Deliver feedback to the UI/audio callback; callback errors are logged."""
        message = feedback.payload.get("message", "")
        logger.info(f"Feedback [{feedback.type.value}] {message}")
        if self.on_feedback is None:
            return
        try:
            self.on_feedback(feedback)
        except Exception as e:
            logger.error(f"Feedback handler failed: {e}")

    def get_stats(self) -> dict:
        return {
            "gesture_count": self._gesture_count,
            "average_confidence": self._average_confidence,
            "last_gesture": self._last_gesture,
            "results": dict(self._results),
            "unconfirmed": sorted(d for d, m in self._mirror.items() if not m.confirmed),
        }
