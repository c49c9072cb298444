"""
Test cases for the gesture controller session.
"""
import asyncio
import unittest

from gesture_control.controller import GestureController
from gesture_control.debounce import Phase
from gesture_control.dispatcher import Dispatcher, DispatchResult
from gesture_control.message import FeedbackType, GestureObservation
from gesture_control.settings import GestureSettings
from tests.fixtures import FakeRegistry, make_hand, unavailable


class ControllerTestCase(unittest.IsolatedAsyncioTestCase):

    settings = GestureSettings(enabled=True, sensitivity=0.7)

    async def asyncSetUp(self):
        self.registry = FakeRegistry()
        self.feedback = []
        self.dispatcher = Dispatcher(self.registry, on_feedback=self.feedback.append)
        await self.dispatcher.load()
        self.controller = GestureController(self.dispatcher, self.settings)


class TestGesturePipeline(ControllerTestCase):

    async def test_held_gesture_toggles_once(self):
        for ts in (1000, 1033, 1066):
            self.controller.on_observation(GestureObservation(1, 0.85, ts))
        await self.controller.drain()

        self.assertEqual(self.registry.calls, [("toggle", "1", None)])
        self.assertTrue(self.dispatcher.devices["1"].status)
        self.assertEqual(self.controller.session.phase, Phase.COOLDOWN)
        self.assertEqual(self.controller.session.last_executed_gesture, 1)

    async def test_landmarks_drive_dispatch(self):
        self.controller.on_hands([make_hand(3)], timestamp=1000)
        await self.controller.drain()
        self.assertEqual(self.registry.calls, [("toggle", "3", None)])

    async def test_invalid_observation_dropped(self):
        self.controller.on_observation(GestureObservation(2, 1.7, 1000))
        await self.controller.drain()
        self.assertEqual(self.registry.calls, [])
        self.assertEqual(self.controller.get_stats()["validator"]["dropped"], 1)

    async def test_offline_dispatch_keeps_running(self):
        self.registry.fail = unavailable()
        self.controller.on_observation(GestureObservation(2, 0.9, 1000))
        await self.controller.drain()

        self.assertTrue(self.dispatcher.devices["2"].status)
        self.assertFalse(self.dispatcher.mirror["2"].confirmed)
        self.assertFalse(self.feedback[-1].payload["confirmed"])


class TestSessionControl(ControllerTestCase):

    settings = GestureSettings(enabled=True, response_delay_ms=50)

    async def test_disable_cancels_pending_gesture(self):
        self.controller.on_observation(GestureObservation(2, 0.9, 1000))
        self.assertEqual(self.controller.session.phase, Phase.PENDING)

        self.controller.disable()
        await asyncio.sleep(0.1)
        await self.controller.drain()

        self.assertEqual(self.registry.calls, [])
        self.assertEqual(self.controller.session.phase, Phase.IDLE)

    async def test_observations_ignored_while_disabled(self):
        self.controller.disable()
        self.assertIsNone(self.controller.on_observation(GestureObservation(2, 0.9, 1000)))
        self.assertIsNone(self.controller.on_hands([make_hand(2)], timestamp=1000))

    async def test_enable_starts_fresh(self):
        self.controller.update_settings({"responseDelay": 0})
        self.controller.on_observation(GestureObservation(2, 0.9, 5000))
        await self.controller.drain()
        self.assertEqual(self.controller.session.phase, Phase.COOLDOWN)
        self.assertIsNotNone(self.controller.session.cooldown_until)

        self.assertFalse(self.controller.toggle_enabled())
        self.assertTrue(self.controller.toggle_enabled())
        session = self.controller.session
        self.assertEqual(session.phase, Phase.IDLE)
        self.assertIsNone(session.last_executed_gesture)
        self.assertIsNone(session.cooldown_until)

        # Validator forgets the old timestamps on enable
        self.controller.on_observation(GestureObservation(2, 0.9, 100))
        await self.controller.drain()
        self.assertEqual(len(self.registry.calls), 2)

    async def test_invalid_settings_rejected(self):
        with self.assertRaises(ValueError):
            self.controller.update_settings({"sensitivity": 3})
        self.assertEqual(self.controller.settings, self.settings)

    async def test_push_settings(self):
        self.assertTrue(await self.controller.push_settings())
        self.assertEqual(self.registry.settings_pushed[-1]["responseDelay"], 50)

        self.registry.fail = unavailable()
        self.assertFalse(await self.controller.push_settings())


class TestSimulate(ControllerTestCase):

    async def test_simulated_gesture_dispatched(self):
        (outcome,) = await self.controller.simulate(finger_count=4)
        self.assertIs(outcome.result, DispatchResult.CONFIRMED)
        self.assertEqual(outcome.intent.confidence, 0.95)
        self.assertTrue(self.dispatcher.devices["4"].status)

    async def test_simulated_macro(self):
        (outcome,) = await self.controller.simulate(gesture="all_on")
        self.assertEqual(len(outcome.devices), 4)

    async def test_simulate_while_disabled(self):
        self.controller.disable()
        self.assertEqual(await self.controller.simulate(finger_count=1), [])
        self.assertEqual(self.registry.calls, [])
        event = self.feedback[-1]
        self.assertIs(event.type, FeedbackType.ERROR)
        self.assertEqual(event.payload["reason"], "disabled")

    async def test_simulate_needs_a_gesture(self):
        with self.assertRaises(ValueError):
            await self.controller.simulate()


if __name__ == '__main__':
    unittest.main()
