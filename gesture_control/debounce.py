"""
Debounce State Machine - Turns noisy per-frame observations into committed gestures.

The transition logic is a pure reducer::

    reduce(state, event, settings) -> Step(state, effects, trail)

so it can be tested without a camera, a UI, or an event loop.
GestureDebouncer drives the reducer and owns the single cancelable timer
handle of a session.

Phases:
    IDLE -> CANDIDATE -> PENDING -> EXECUTED -> COOLDOWN -> IDLE

CANDIDATE and EXECUTED are transient: a step passes through them and
records them in its trail, but a settled state is always IDLE, PENDING or
COOLDOWN.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional, Tuple, Union

from .message import GestureEvent, GestureObservation
from .settings import GestureSettings

logger = logging.getLogger(__name__)

MIN_GESTURE = 1
MAX_GESTURE = 4


class Phase(str, Enum):
    IDLE = "idle"
    CANDIDATE = "candidate"
    PENDING = "pending"
    EXECUTED = "executed"
    COOLDOWN = "cooldown"


@dataclass(frozen=True)
class DebounceState:
    """
    Settled debounce state.

    Attributes:
        phase: IDLE, PENDING or COOLDOWN
        last_executed: Finger count of the last executed gesture
        pending: Most recent qualifying observation while PENDING
        epoch: Bumped whenever the timer is re-armed or cancelled
        deadline: Monotonic time the armed timer is due, if any
        cooldown_until: Monotonic time last_executed stops blocking repeats;
            kept while a new gesture is pending
    """
    phase: Phase = Phase.IDLE
    last_executed: Optional[int] = None
    pending: Optional[GestureObservation] = None
    epoch: int = 0
    deadline: Optional[float] = None
    cooldown_until: Optional[float] = None


# ============================================================================
# Events
# ============================================================================

@dataclass(frozen=True)
class Observed:
    observation: GestureObservation
    now: float


@dataclass(frozen=True)
class TimerFired:
    epoch: int
    now: float


@dataclass(frozen=True)
class Reset:
    pass


DebounceEvent = Union[Observed, TimerFired, Reset]


# ============================================================================
# Effects
# ============================================================================

@dataclass(frozen=True)
class ArmTimer:
    """Replace the session timer with one firing after ``delay`` seconds."""
    delay: float
    epoch: int


@dataclass(frozen=True)
class CancelTimer:
    pass


@dataclass(frozen=True)
class Execute:
    event: GestureEvent


Effect = Union[ArmTimer, CancelTimer, Execute]


@dataclass(frozen=True)
class Step:
    state: DebounceState
    effects: Tuple[Effect, ...] = ()
    trail: Tuple[Phase, ...] = ()
    note: str = ""


# ============================================================================
# Reducer
# ============================================================================

def ignore_reason(
    state: DebounceState,
    obs: GestureObservation,
    settings: GestureSettings,
) -> Optional[str]:
    """Why an observation cannot start or replace a pending gesture, or None."""
    if not MIN_GESTURE <= obs.finger_count <= MAX_GESTURE:
        return "out_of_range"
    if obs.confidence < settings.sensitivity:
        return "low_confidence"
    if obs.finger_count == state.last_executed:
        return "repeat"
    return None


def _execute(
    state: DebounceState,
    obs: GestureObservation,
    now: float,
    settings: GestureSettings,
    trail: Tuple[Phase, ...],
) -> Step:
    epoch = state.epoch + 1
    cooldown = settings.cooldown_s
    new_state = DebounceState(
        phase=Phase.COOLDOWN,
        last_executed=obs.finger_count,
        pending=None,
        epoch=epoch,
        deadline=now + cooldown,
        cooldown_until=now + cooldown,
    )
    return Step(
        state=new_state,
        effects=(Execute(GestureEvent.from_observation(obs)), ArmTimer(cooldown, epoch)),
        trail=trail + (Phase.EXECUTED, Phase.COOLDOWN),
        note="executed",
    )


def _observe(state: DebounceState, ev: Observed, settings: GestureSettings) -> Step:
    obs = ev.observation
    if state.cooldown_until is not None and ev.now >= state.cooldown_until:
        # Cooldown window over, even if its timer was replaced by a pending one
        state = replace(state, last_executed=None, cooldown_until=None)
    reason = ignore_reason(state, obs, settings)
    if reason is not None:
        return Step(state=state, note=reason)

    if state.phase is Phase.PENDING and state.pending is not None:
        if obs.finger_count == state.pending.finger_count:
            # Same gesture held: keep the running timer, remember the newest reading
            return Step(state=replace(state, pending=obs), trail=(Phase.PENDING,), note="held")
        trail: Tuple[Phase, ...] = (Phase.PENDING,)
        note = "restarted"
    else:
        trail = (Phase.CANDIDATE,)
        note = "pending"

    if trail[-1] is not Phase.PENDING:
        trail = trail + (Phase.PENDING,)

    if settings.response_delay_ms <= 0:
        return _execute(state, obs, ev.now, settings, trail)

    epoch = state.epoch + 1
    delay = settings.response_delay_s
    new_state = replace(
        state,
        phase=Phase.PENDING,
        pending=obs,
        epoch=epoch,
        deadline=ev.now + delay,
    )
    return Step(
        state=new_state,
        effects=(ArmTimer(delay, epoch),),
        trail=trail,
        note=note,
    )


def _timer_fired(state: DebounceState, ev: TimerFired, settings: GestureSettings) -> Step:
    if ev.epoch != state.epoch:
        return Step(state=state, note="stale_timer")

    if state.phase is Phase.PENDING and state.pending is not None:
        return _execute(state, state.pending, ev.now, settings, (Phase.PENDING,))

    if state.phase is Phase.COOLDOWN:
        new_state = DebounceState(phase=Phase.IDLE, epoch=state.epoch)
        return Step(state=new_state, trail=(Phase.IDLE,), note="cooldown_expired")

    return Step(state=state, note="no_timer_expected")


def reduce(state: DebounceState, event: DebounceEvent, settings: GestureSettings) -> Step:
    """
    Pure transition function.

    Args:
        state: Current settled state
        event: Observed, TimerFired or Reset
        settings: Session settings (sensitivity, delay, cooldown)

    Returns:
        Step with the new state, the effects to perform, and the phases
        passed through.
    """
    if isinstance(event, Reset):
        return Step(
            state=DebounceState(epoch=state.epoch + 1),
            effects=(CancelTimer(),),
            trail=(Phase.IDLE,),
            note="reset",
        )
    if isinstance(event, Observed):
        return _observe(state, event, settings)
    if isinstance(event, TimerFired):
        return _timer_fired(state, event, settings)
    raise TypeError(f"Unknown debounce event: {event!r}")


# ============================================================================
# Driver
# ============================================================================

class GestureDebouncer:
    """
    Runs the reducer against live observations.

    Features:
    - One owned asyncio timer handle, replaced on every re-arm
    - Stale timer callbacks rejected by epoch
    - Overdue timers fired on the next observation, so a busy frame loop
      cannot postpone a gesture or a cooldown indefinitely
    - Errors raised by the execute callback are logged, never propagated
    """

    def __init__(
        self,
        settings: Callable[[], GestureSettings],
        on_event: Callable[[GestureEvent], None],
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the debouncer.

        Args:
            settings: Returns the current session settings
            on_event: Called synchronously with each committed GestureEvent
            clock: Monotonic clock in seconds
        """
        self._settings = settings
        self._on_event = on_event
        self._clock = clock
        self._state = DebounceState()
        self._handle: Optional[asyncio.TimerHandle] = None

        self._executed = 0
        self._ignored = 0

    @property
    def state(self) -> DebounceState:
        return self._state

    @property
    def timer_armed(self) -> bool:
        return self._handle is not None

    def observe(self, obs: GestureObservation) -> Step:
        """Feed one observation."""
        now = self._clock()
        self._fire_overdue(now)
        step = self._feed(Observed(obs, now))
        if step.note in ("out_of_range", "low_confidence", "repeat"):
            self._ignored += 1
            logger.debug(f"Observation ignored ({step.note}): {obs}")
        return step

    def reset(self) -> None:
        """Cancel any pending gesture or cooldown and return to IDLE."""
        self._feed(Reset())

    def _fire_overdue(self, now: float) -> None:
        while self._state.deadline is not None and now >= self._state.deadline:
            epoch = self._state.epoch
            self._fire(epoch)
            if self._state.epoch == epoch:
                break

    def _fire(self, epoch: int) -> None:
        if self._handle is not None and epoch == self._state.epoch:
            self._handle.cancel()
            self._handle = None
        self._feed(TimerFired(epoch, self._clock()))

    def _feed(self, event: DebounceEvent) -> Step:
        step = reduce(self._state, event, self._settings())
        self._state = step.state
        if step.trail:
            logger.debug(f"Debounce {step.note}: {' -> '.join(p.value for p in step.trail)}")
        for effect in step.effects:
            self._apply(effect)
        return step

    def _apply(self, effect: Effect) -> None:
        if isinstance(effect, CancelTimer):
            self._cancel_timer()
        elif isinstance(effect, ArmTimer):
            self._cancel_timer()
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # No loop: the deadline is honoured on the next observation
                return
            self._handle = loop.call_later(effect.delay, self._on_timer, effect.epoch)
        elif isinstance(effect, Execute):
            self._executed += 1
            logger.info(
                f"Gesture committed: {effect.event.label} "
                f"(confidence {effect.event.confidence:.2f})"
            )
            try:
                self._on_event(effect.event)
            except Exception as e:
                logger.error(f"Gesture handler failed: {e}")

    def _on_timer(self, epoch: int) -> None:
        if epoch != self._state.epoch:
            return
        self._handle = None
        self._feed(TimerFired(epoch, self._clock()))

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def get_stats(self) -> dict:
        return {
            "phase": self._state.phase.value,
            "last_executed": self._state.last_executed,
            "executed": self._executed,
            "ignored": self._ignored,
            "timer_armed": self.timer_armed,
        }
