"""
Gesture Control - Hand gesture client for smart-home devices.

This package runs on the machine with the camera, counts raised fingers
from MediaPipe hand landmarks, debounces them into gestures and sends the
resulting device commands to the device registry over JSON/HTTP.
"""

__version__ = "1.0.0"
