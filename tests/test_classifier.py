"""
Test cases for finger counting and landmark confidence.
"""
import unittest
from types import SimpleNamespace

from gesture_control.classifier import (
    GestureClassifier,
    LandmarkFrame,
    MIN_CONFIDENCE,
    WRIST,
    THUMB_TIP,
    count_fingers,
    landmark_confidence,
)
from tests.fixtures import make_hand


def frame(points, ts=1000):
    return LandmarkFrame.from_landmarks(points, ts)


class TestFingerCount(unittest.TestCase):
    """Test finger counting from landmark geometry."""

    def test_counts_extended_fingers(self):
        for fingers in range(5):
            with self.subTest(fingers=fingers):
                self.assertEqual(count_fingers(frame(make_hand(fingers)).points), fingers)

    def test_thumb_counts_when_tip_right_of_ip(self):
        self.assertEqual(count_fingers(frame(make_hand(2, thumb=True)).points), 3)

    def test_open_hand_clamped_to_four(self):
        """Thumb plus four fingers would be five; only four devices exist."""
        self.assertEqual(count_fingers(frame(make_hand(4, thumb=True)).points), 4)


class TestConfidence(unittest.TestCase):
    """Test the visibility-based confidence proxy."""

    def test_all_key_points_visible(self):
        self.assertAlmostEqual(landmark_confidence(frame(make_hand(2)).points), 0.8)

    def test_scaled_by_visible_fraction(self):
        pts = make_hand(2)
        pts[WRIST] = (0.5, 1.2)
        pts[THUMB_TIP] = (-0.1, 0.5)
        self.assertAlmostEqual(landmark_confidence(frame(pts).points), 0.8 * 4 / 6)

    def test_never_below_minimum(self):
        pts = [(2.0, 2.0)] * 21
        self.assertEqual(landmark_confidence(frame(pts).points), MIN_CONFIDENCE)


class TestGestureClassifier(unittest.TestCase):
    """Test classifier input handling."""

    def setUp(self):
        self.classifier = GestureClassifier()

    def test_observation_fields(self):
        obs = self.classifier.classify_hands([make_hand(3)], timestamp=1234)
        self.assertEqual(obs.finger_count, 3)
        self.assertAlmostEqual(obs.confidence, 0.8)
        self.assertEqual(obs.timestamp, 1234)

    def test_no_hand_emits_nothing(self):
        self.assertIsNone(self.classifier.classify_hands([]))
        self.assertIsNone(self.classifier.classify_hands(None))
        self.assertEqual(self.classifier.get_stats()["no_hand"], 2)

    def test_first_hand_wins(self):
        obs = self.classifier.classify_hands([make_hand(1), make_hand(4)], timestamp=1)
        self.assertEqual(obs.finger_count, 1)

    def test_malformed_frames_do_not_raise(self):
        bad_inputs = [
            [make_hand(2)[:20]],
            [[("a", "b")] * 21],
            [[None] * 21],
            [42],
        ]
        for hands in bad_inputs:
            with self.subTest(hands=hands):
                self.assertIsNone(self.classifier.classify_hands(hands, timestamp=1))
        stats = self.classifier.get_stats()
        self.assertEqual(stats["malformed"], len(bad_inputs))
        self.assertEqual(stats["frames"], len(bad_inputs))

    def test_accepts_mediapipe_style_landmarks(self):
        landmarks = SimpleNamespace(
            landmark=[SimpleNamespace(x=x, y=y, z=0.0) for x, y in make_hand(2)]
        )
        obs = self.classifier.classify_hands([landmarks], timestamp=5)
        self.assertEqual(obs.finger_count, 2)

    def test_output_ranges(self):
        samples = [make_hand(n, thumb=t) for n in range(5) for t in (False, True)]
        samples.append([(3.0, -1.0)] * 21)
        for pts in samples:
            obs = self.classifier.classify_hands([pts], timestamp=1)
            self.assertIn(obs.finger_count, range(0, 5))
            self.assertGreaterEqual(obs.confidence, 0.0)
            self.assertLessEqual(obs.confidence, 1.0)


if __name__ == '__main__':
    unittest.main()
