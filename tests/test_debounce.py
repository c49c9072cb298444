"""
Test cases for the debounce reducer and its timer driver.
"""
import asyncio
import unittest

from gesture_control.debounce import (
    ArmTimer,
    CancelTimer,
    DebounceState,
    Execute,
    GestureDebouncer,
    Observed,
    Phase,
    Reset,
    TimerFired,
    reduce,
)
from gesture_control.message import GestureObservation
from gesture_control.settings import GestureSettings


def obs(count, confidence=0.9, ts=0):
    return GestureObservation(finger_count=count, confidence=confidence, timestamp=ts)


def executed(step):
    return [e.event for e in step.effects if isinstance(e, Execute)]


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestReducerImmediate(unittest.TestCase):
    """Reducer behaviour with no response delay."""

    def setUp(self):
        self.settings = GestureSettings(enabled=True, sensitivity=0.7, response_delay_ms=0)

    def test_qualifying_observation_executes(self):
        step = reduce(DebounceState(), Observed(obs(2), 0.0), self.settings)
        self.assertEqual(
            step.trail,
            (Phase.CANDIDATE, Phase.PENDING, Phase.EXECUTED, Phase.COOLDOWN),
        )
        self.assertEqual([e.finger_count for e in executed(step)], [2])
        self.assertEqual(step.state.phase, Phase.COOLDOWN)
        self.assertEqual(step.state.last_executed, 2)
        self.assertIn(ArmTimer(1.5, step.state.epoch), step.effects)

    def test_identical_repeats_fire_once(self):
        state = DebounceState()
        fired = []
        for i in range(10):
            step = reduce(state, Observed(obs(2), i * 0.01), self.settings)
            state = step.state
            fired.extend(executed(step))
        self.assertEqual(len(fired), 1)

    def test_repeat_allowed_after_cooldown(self):
        step = reduce(DebounceState(), Observed(obs(2), 0.0), self.settings)
        step = reduce(step.state, TimerFired(step.state.epoch, 1.5), self.settings)
        self.assertEqual(step.state.phase, Phase.IDLE)
        self.assertIsNone(step.state.last_executed)

        step = reduce(step.state, Observed(obs(2), 1.6), self.settings)
        self.assertEqual(len(executed(step)), 1)

    def test_low_confidence_never_fires(self):
        step = reduce(DebounceState(), Observed(obs(2, confidence=0.5), 0.0), self.settings)
        self.assertEqual(step.note, "low_confidence")
        self.assertEqual(step.effects, ())
        self.assertEqual(step.state, DebounceState())

    def test_zero_fingers_ignored(self):
        step = reduce(DebounceState(), Observed(obs(0), 0.0), self.settings)
        self.assertEqual(step.note, "out_of_range")
        self.assertEqual(step.effects, ())

    def test_different_gesture_during_cooldown_fires(self):
        step = reduce(DebounceState(), Observed(obs(1), 0.0), self.settings)
        step = reduce(step.state, Observed(obs(3), 0.2), self.settings)
        self.assertEqual([e.finger_count for e in executed(step)], [3])
        self.assertEqual(step.state.last_executed, 3)


class TestReducerDelayed(unittest.TestCase):
    """Reducer behaviour with a response delay."""

    def setUp(self):
        self.settings = GestureSettings(enabled=True, response_delay_ms=50)

    def test_pending_then_fire(self):
        step = reduce(DebounceState(), Observed(obs(2), 0.0), self.settings)
        self.assertEqual(step.state.phase, Phase.PENDING)
        self.assertEqual(step.trail, (Phase.CANDIDATE, Phase.PENDING))
        self.assertEqual(step.effects, (ArmTimer(0.05, step.state.epoch),))

        fired = reduce(step.state, TimerFired(step.state.epoch, 0.05), self.settings)
        self.assertEqual([e.finger_count for e in executed(fired)], [2])
        self.assertEqual(fired.state.phase, Phase.COOLDOWN)

    def test_last_observation_wins(self):
        first = reduce(DebounceState(), Observed(obs(1, 0.8), 0.0), self.settings)
        second = reduce(first.state, Observed(obs(3, 0.9), 0.01), self.settings)
        self.assertEqual(second.note, "restarted")
        self.assertNotEqual(first.state.epoch, second.state.epoch)

        stale = reduce(second.state, TimerFired(first.state.epoch, 0.05), self.settings)
        self.assertEqual(stale.note, "stale_timer")
        self.assertEqual(executed(stale), [])

        fired = reduce(second.state, TimerFired(second.state.epoch, 0.06), self.settings)
        self.assertEqual([e.finger_count for e in executed(fired)], [3])

    def test_held_gesture_keeps_timer(self):
        first = reduce(DebounceState(), Observed(obs(2, 0.8), 0.0), self.settings)
        held = reduce(first.state, Observed(obs(2, 0.95), 0.02), self.settings)
        self.assertEqual(held.note, "held")
        self.assertEqual(held.effects, ())
        self.assertEqual(held.state.epoch, first.state.epoch)
        self.assertEqual(held.state.pending.confidence, 0.95)

    def test_repeat_gate_clears_while_other_gesture_pending(self):
        immediate = GestureSettings(enabled=True, response_delay_ms=0, cooldown_ms=100)
        delayed = GestureSettings(enabled=True, response_delay_ms=200, cooldown_ms=100)

        step = reduce(DebounceState(), Observed(obs(1), 0.0), immediate)
        self.assertEqual(step.state.cooldown_until, 0.1)

        step = reduce(step.state, Observed(obs(2), 0.05), delayed)
        self.assertEqual(step.state.phase, Phase.PENDING)
        self.assertEqual(step.state.last_executed, 1)
        self.assertEqual(step.state.cooldown_until, 0.1)

        blocked = reduce(step.state, Observed(obs(1), 0.08), delayed)
        self.assertEqual(blocked.note, "repeat")

        step = reduce(blocked.state, Observed(obs(1), 0.12), delayed)
        self.assertEqual(step.note, "restarted")
        self.assertEqual(step.state.pending.finger_count, 1)
        self.assertIsNone(step.state.last_executed)
        self.assertIsNone(step.state.cooldown_until)

    def test_reset_cancels_pending(self):
        step = reduce(DebounceState(), Observed(obs(2), 0.0), self.settings)
        reset = reduce(step.state, Reset(), self.settings)
        self.assertEqual(reset.state.phase, Phase.IDLE)
        self.assertIn(CancelTimer(), reset.effects)

        late = reduce(reset.state, TimerFired(step.state.epoch, 0.05), self.settings)
        self.assertEqual(executed(late), [])
        self.assertEqual(late.state.phase, Phase.IDLE)


class TestDebouncerDriver(unittest.TestCase):
    """Driver without an event loop: deadlines checked on each observation."""

    def test_overdue_timer_fires_on_next_observation(self):
        clock = FakeClock()
        events = []
        settings = GestureSettings(enabled=True, response_delay_ms=100)
        debouncer = GestureDebouncer(lambda: settings, events.append, clock=clock)

        debouncer.observe(obs(2))
        self.assertEqual(events, [])
        self.assertFalse(debouncer.timer_armed)

        clock.now = 0.2
        debouncer.observe(obs(2))
        self.assertEqual([e.finger_count for e in events], [2])
        self.assertEqual(debouncer.state.phase, Phase.COOLDOWN)

    def test_handler_errors_are_contained(self):
        settings = GestureSettings(enabled=True)

        def boom(event):
            raise RuntimeError("handler failed")

        debouncer = GestureDebouncer(lambda: settings, boom, clock=FakeClock())
        step = debouncer.observe(obs(1))
        self.assertEqual(step.state.last_executed, 1)
        self.assertEqual(debouncer.get_stats()["executed"], 1)

    def test_ignored_observations_counted(self):
        settings = GestureSettings(enabled=True)
        debouncer = GestureDebouncer(lambda: settings, lambda e: None, clock=FakeClock())
        debouncer.observe(obs(2, confidence=0.3))
        debouncer.observe(obs(0))
        self.assertEqual(debouncer.get_stats()["ignored"], 2)


class TestDebouncerTimers(unittest.IsolatedAsyncioTestCase):
    """Driver with a running loop and real timers."""

    async def test_delayed_gesture_fires(self):
        events = []
        settings = GestureSettings(enabled=True, response_delay_ms=30)
        debouncer = GestureDebouncer(lambda: settings, events.append)

        debouncer.observe(obs(4))
        self.assertTrue(debouncer.timer_armed)
        await asyncio.sleep(0.1)
        self.assertEqual([e.finger_count for e in events], [4])

    async def test_reset_prevents_scheduled_fire(self):
        events = []
        settings = GestureSettings(enabled=True, response_delay_ms=30)
        debouncer = GestureDebouncer(lambda: settings, events.append)

        debouncer.observe(obs(4))
        debouncer.reset()
        self.assertFalse(debouncer.timer_armed)
        await asyncio.sleep(0.1)
        self.assertEqual(events, [])
        self.assertEqual(debouncer.state.phase, Phase.IDLE)

    async def test_cooldown_expires(self):
        events = []
        settings = GestureSettings(enabled=True, cooldown_ms=30)
        debouncer = GestureDebouncer(lambda: settings, events.append)

        debouncer.observe(obs(1))
        debouncer.observe(obs(1))
        self.assertEqual(len(events), 1)
        await asyncio.sleep(0.1)
        self.assertEqual(debouncer.state.phase, Phase.IDLE)
        debouncer.observe(obs(1))
        self.assertEqual(len(events), 2)


if __name__ == '__main__':
    unittest.main()
