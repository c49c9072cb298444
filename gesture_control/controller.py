"""
Gesture Controller - Wires the pipeline together for one session.

    hands -> GestureClassifier -> ObservationValidator -> GestureDebouncer
          -> map_gesture -> Dispatcher -> registry / local fallback

Classification, validation, reduction and mapping run synchronously on
the caller's frame; only the registry call is scheduled as a task.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from .classifier import GestureClassifier
from .debounce import GestureDebouncer, Phase, Step
from .dispatcher import DispatchOutcome, Dispatcher
from .mapper import map_gesture
from .message import (
    DISABLED_MESSAGE,
    SIMULATED_CONFIDENCE,
    FeedbackEvent,
    FeedbackType,
    GestureEvent,
    GestureObservation,
    ObservationValidator,
    event_payload,
    now_ms,
)
from .registry_client import RegistryError
from .settings import GestureSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControllerSession:
    """Read-only view of the session state."""
    enabled: bool
    phase: Phase
    last_executed_gesture: Optional[int]
    cooldown_until: Optional[float]
    settings: GestureSettings


class GestureController:
    """
    Owns the session: settings, debounce state and in-flight dispatches.

    Features:
    - Disable cancels any pending timer or cooldown synchronously
    - Enable always starts from IDLE with no last gesture
    - Simulated gestures bypass the classifier and debounce stages
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        settings: Optional[GestureSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.dispatcher = dispatcher
        self._settings = settings or GestureSettings()
        self.classifier = GestureClassifier()
        self.validator = ObservationValidator()
        self.debouncer = GestureDebouncer(
            settings=lambda: self._settings,
            on_event=self._on_gesture,
            clock=clock,
        )
        self._tasks: Set[asyncio.Task] = set()

    @property
    def settings(self) -> GestureSettings:
        return self._settings

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    @property
    def session(self) -> ControllerSession:
        state = self.debouncer.state
        return ControllerSession(
            enabled=self._settings.enabled,
            phase=state.phase,
            last_executed_gesture=state.last_executed,
            cooldown_until=state.cooldown_until,
            settings=self._settings,
        )

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def enable(self) -> None:
        self.update_settings({"enabled": True})

    def disable(self) -> None:
        self.update_settings({"enabled": False})

    def toggle_enabled(self) -> bool:
        self.update_settings({"enabled": not self.enabled})
        return self.enabled

    def update_settings(self, changes: Mapping[str, Any]) -> GestureSettings:
        """
        Apply a validated partial update.

        Raises:
            ValueError: If the update is invalid; settings stay unchanged.
        """
        was_enabled = self._settings.enabled
        self._settings = self._settings.updated(changes)

        if was_enabled and not self._settings.enabled:
            self.debouncer.reset()
            logger.info("Gesture control DISABLED")
        elif not was_enabled and self._settings.enabled:
            self.debouncer.reset()
            self.validator.reset()
            logger.info("Gesture control ENABLED")
        return self._settings

    def reset(self) -> None:
        """Drop any pending gesture and the cooldown without changing settings."""
        self.debouncer.reset()

    async def push_settings(self) -> bool:
        """Send the current settings to the registry; failures are logged."""
        try:
            await self.dispatcher.registry.update_settings(self._settings.to_dict())
            return True
        except RegistryError as e:
            logger.warning(f"Could not push settings to registry: {e}")
            return False

    # ------------------------------------------------------------------
    # Pipeline input
    # ------------------------------------------------------------------

    def on_hands(self, hands: Optional[Sequence[Any]], timestamp: Optional[int] = None) -> Optional[Step]:
        """Feed one frame's hand landmark lists."""
        if not self._settings.enabled:
            return None
        obs = self.classifier.classify_hands(hands, timestamp)
        if obs is None:
            return None
        return self.on_observation(obs)

    def on_observation(self, obs: GestureObservation) -> Optional[Step]:
        """Feed a classified (or hand-built) observation."""
        if not self._settings.enabled:
            return None
        valid, _ = self.validator.validate(obs)
        if not valid:
            return None
        return self.debouncer.observe(obs)

    def _on_gesture(self, event: GestureEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"No running event loop, dropping gesture {event.label}")
            return
        task = loop.create_task(self._dispatch_event(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch_event(self, event: GestureEvent) -> List[DispatchOutcome]:
        outcomes = []
        for intent in map_gesture(event):
            outcomes.append(await self.dispatcher.dispatch(intent))
        return outcomes

    async def simulate(
        self,
        finger_count: Optional[int] = None,
        gesture: Optional[str] = None,
    ) -> List[DispatchOutcome]:
        """
        Dispatch a gesture directly, bypassing classification and debounce.

        Args:
            finger_count: Explicit finger count
            gesture: Named gesture, used when finger_count is None

        Returns:
            One outcome per intent; empty when gesture control is disabled.
        """
        if finger_count is None and gesture is None:
            raise ValueError("simulate needs a finger count or a gesture name")

        event = GestureEvent(
            confidence=SIMULATED_CONFIDENCE,
            timestamp=now_ms(),
            finger_count=finger_count,
            gesture=gesture if finger_count is None else None,
        )
        if not self._settings.enabled:
            self.dispatcher.emit(FeedbackEvent(
                FeedbackType.ERROR,
                {
                    "reason": "disabled",
                    "enabled": False,
                    "gesture": event_payload(event),
                    "message": DISABLED_MESSAGE,
                },
            ))
            return []
        logger.info(f"Simulating gesture: {event.label}")
        return await self._dispatch_event(event)

    async def drain(self) -> None:
        """Wait for dispatches already in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self._settings.enabled,
            "classifier": self.classifier.get_stats(),
            "validator": self.validator.get_stats(),
            "debounce": self.debouncer.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
            "in_flight": len(self._tasks),
        }
