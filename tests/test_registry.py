"""
Test cases for the authoritative device registry.
"""
import unittest

from device_registry.registry import DeviceNotFound, DeviceRegistry
from gesture_control.message import GestureEvent
from gesture_control.settings import GestureSettings


class FrozenClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now=5000):
        self.now = now

    def __call__(self):
        return self.now


class RegistryTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = FrozenClock()
        self.registry = DeviceRegistry(GestureSettings(enabled=True), clock=self.clock)
        self.changes = []
        self.registry.add_listener(self.changes.append)


class TestDeviceWrites(RegistryTestCase):

    def test_defaults_all_off(self):
        devices = self.registry.get_all()
        self.assertEqual(sorted(devices), ["1", "2", "3", "4"])
        self.assertFalse(any(d.status for d in devices.values()))

    def test_last_updated_strictly_increases(self):
        stamps = []
        for _ in range(5):
            state, _ = self.registry.toggle_by_id("1")
            stamps.append(state.last_updated)
        self.assertEqual(stamps, [5001, 5002, 5003, 5004, 5005])

        self.clock.now = 9000
        state, previous = self.registry.toggle_by_id("1")
        self.assertEqual(state.last_updated, 9000)
        self.assertTrue(previous)

    def test_toggle_with_desired_status(self):
        state, previous = self.registry.toggle_by_id("2", True)
        self.assertTrue(state.status)
        self.assertFalse(previous)
        state, _ = self.registry.toggle_by_id("2", True)
        self.assertTrue(state.status)

    def test_unknown_device(self):
        with self.assertRaises(DeviceNotFound):
            self.registry.toggle_by_id("9")
        self.assertEqual(self.changes, [])

    def test_bulk_with_unknown_id_changes_nothing(self):
        before = self.registry.get_all()
        with self.assertRaises(DeviceNotFound):
            self.registry.bulk_set(["1", "9"], True)
        self.assertEqual(self.registry.get_all(), before)

    def test_bulk_all_and_listener(self):
        changed = self.registry.bulk_set(None, True)
        self.assertEqual(len(changed), 4)
        self.assertEqual(self.changes, [changed])

    def test_reset(self):
        self.registry.bulk_set(["1", "3"], True)
        changed = self.registry.reset()
        self.assertFalse(any(d.status for d in changed.values()))
        self.assertEqual(len(changed), 4)

    def test_apply_report(self):
        state = self.registry.apply_report("3", True)
        self.assertTrue(state.status)
        self.assertEqual(len(self.changes), 1)

        self.registry.apply_report("3", True)
        self.assertEqual(len(self.changes), 1)
        self.assertIsNone(self.registry.apply_report("7", True))

    def test_listener_errors_do_not_block_writes(self):
        def broken(changed):
            raise RuntimeError("subscriber gone")

        self.registry.add_listener(broken)
        state, _ = self.registry.toggle_by_id("4")
        self.assertTrue(state.status)
        self.assertEqual(len(self.changes), 1)


class TestProcessGesture(RegistryTestCase):

    def event(self, count=None, gesture=None, confidence=0.9):
        return GestureEvent(confidence=confidence, timestamp=1, finger_count=count, gesture=gesture)

    def test_finger_gesture_toggles_room(self):
        body = self.registry.process_gesture(self.event(count=2))
        self.assertTrue(body["success"])
        self.assertEqual(body["message"], "2 finger gesture: Bedroom LED turned on")
        self.assertEqual(body["deviceId"], "2")
        self.assertFalse(body["previousStatus"])
        self.assertEqual(body["voiceMessage"], "Bedroom LED activated")

    def test_macro_gestures(self):
        body = self.registry.process_gesture(self.event(gesture="wave_right"))
        self.assertEqual(body["message"], "All lights turned ON via wave_right gesture")
        self.assertTrue(all(d["status"] for d in body["devices"].values()))

        body = self.registry.process_gesture(self.event(gesture="fist"))
        self.assertEqual(body["message"], "Emergency gesture detected - All lights ON")

    def test_unrecognized_gesture(self):
        before = self.registry.get_all()
        body = self.registry.process_gesture(self.event(count=0))
        self.assertEqual(body["action"], "gesture_not_recognized")
        self.assertEqual(len(body["suggestions"]), 4)
        self.assertEqual(self.registry.get_all(), before)

    def test_disabled_changes_nothing(self):
        self.registry.update_settings({"enabled": False})
        before = self.registry.get_all()

        body = self.registry.process_gesture(self.event(count=1))

        self.assertFalse(body["success"])
        self.assertIn("disabled", body["message"])
        self.assertEqual(self.registry.get_all(), before)

    def test_health_summary(self):
        self.registry.process_gesture(self.event(count=1, confidence=0.8))
        self.registry.process_gesture(self.event(count=3, confidence=1.0))

        health = self.registry.health()
        self.assertEqual(health["status"], "Gesture Control Active")
        self.assertEqual(health["activeDevices"], 2)
        self.assertEqual(health["totalDevices"], 4)
        self.assertEqual(health["gestureCount"], 2)
        self.assertAlmostEqual(health["averageConfidence"], 0.9)
        self.assertEqual(health["lastGesture"]["deviceId"], "3")

    def test_invalid_settings_left_unchanged(self):
        with self.assertRaises(ValueError):
            self.registry.update_settings({"sensitivity": 2})
        self.assertEqual(self.registry.settings, GestureSettings(enabled=True))


if __name__ == '__main__':
    unittest.main()
