"""
Test cases for the local device store.
"""
import tempfile
import unittest
from pathlib import Path

from gesture_control.local_store import LocalDeviceStore
from gesture_control.mapper import default_devices
from gesture_control.message import MirroredDevice


class TestLocalDeviceStore(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "nested" / "devices.json"
        self.store = LocalDeviceStore(self.path)

    def tearDown(self):
        self.tmp.cleanup()

    def test_round_trip_keeps_confirmed_flag(self):
        devices = default_devices(500)
        mirror = {
            "1": MirroredDevice(devices["1"].with_status(True, 600), confirmed=False),
            "2": MirroredDevice(devices["2"]),
        }
        self.assertTrue(self.store.save(mirror))
        self.assertEqual(self.store.load(), mirror)

    def test_missing_file_is_empty(self):
        self.assertEqual(self.store.load(), {})

    def test_corrupt_file_is_empty(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json")
        self.assertEqual(self.store.load(), {})

        self.path.write_text('{"1": {"name": "x"}}')
        self.assertEqual(self.store.load(), {})


if __name__ == '__main__':
    unittest.main()
