#!/usr/bin/env python3
"""
Gesture Control Client - Main Entry Point

Runs on the machine with the camera: detects hand landmarks locally with
MediaPipe, turns finger counts into device commands and sends them to the
device registry over JSON/HTTP. Falls back to a local device mirror when
the registry is unreachable.

Usage:
    gesture-control --registry http://127.0.0.1:3001/api/gesture --camera 0 --enable --preview
    gesture-control --rtsp rtsp://10.0.0.5:8554/cam --sensitivity 0.8 --response-delay 300
    gesture-control --simulate 2 --enable
"""

import argparse
import asyncio
import logging
import signal
import sys
import time
from typing import Optional

import cv2
import mediapipe as mp
import numpy as np

from .controller import GestureController
from .dispatcher import Dispatcher
from .landmark_source import LandmarkSource
from .local_store import DEFAULT_STORE_PATH, LocalDeviceStore
from .message import FeedbackEvent
from .registry_client import (
    DEFAULT_REGISTRY_URL,
    RegistryClient,
    RegistryError,
    RegistryEventStream,
)
from .settings import DETECTION_RANGES, GestureSettings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

PREVIEW_WINDOW = "Gesture Control"


class GestureControlClient:
    """
    Main client that integrates all components:
    - Camera/RTSP capture and landmark detection
    - Gesture classification, debounce and mapping
    - Dispatch to the device registry with local fallback
    - Live device updates pushed by the registry
    """

    def __init__(
        self,
        registry_url: str,
        settings: GestureSettings,
        camera_index: int = 0,
        rtsp_url: Optional[str] = None,
        store_path: Optional[str] = None,
        rate: float = 30.0,
        show_preview: bool = False,
        use_camera: bool = True,
        subscribe: bool = True,
    ):
        """
        Initialize the gesture control client.

        Args:
            registry_url: Device registry API root
            settings: Initial session settings
            camera_index: Camera device index (used if rtsp_url is None)
            rtsp_url: RTSP stream URL (overrides camera_index if set)
            store_path: Local device store file
            rate: Frame loop rate (Hz)
            show_preview: Whether to show OpenCV preview window
            use_camera: Open the landmark source at all
            subscribe: Follow the registry's live device updates
        """
        self.rate = rate
        self.show_preview = show_preview
        self.use_camera = use_camera
        self.subscribe = subscribe

        self.registry = RegistryClient(registry_url)
        self.store = LocalDeviceStore(store_path)
        self.dispatcher = Dispatcher(self.registry, self.store, on_feedback=self._on_feedback)
        self.controller = GestureController(self.dispatcher, settings)
        self.source = LandmarkSource(
            camera_index=camera_index,
            rtsp_url=rtsp_url,
            min_detection_confidence=settings.min_detection_confidence,
        )
        self.events = RegistryEventStream(
            RegistryEventStream.url_for(registry_url),
            on_device=self.dispatcher.apply_external,
        )

        self._running = False
        self._last_message = ""
        self.font = cv2.FONT_HERSHEY_SIMPLEX

    async def start(self) -> None:
        logger.info("Starting Gesture Control Client...")
        await self.registry.start()

        if await self.dispatcher.load():
            await self._check_registry()
            await self.controller.push_settings()

        if self.subscribe:
            await self.events.start()

        if self.use_camera and not self.source.open():
            logger.warning(
                f"Camera unavailable ({self.source.reason}); simulate keys remain usable"
            )

        self._running = True
        logger.info("Gesture Control Client started")

    def request_stop(self) -> None:
        self._running = False

    async def stop(self) -> None:
        logger.info("Stopping Gesture Control Client...")
        self._running = False
        self.controller.disable()
        await self.controller.drain()
        await self.events.stop()
        await self.registry.close()
        self.source.close()
        if self.show_preview:
            cv2.destroyAllWindows()
        logger.info("Gesture Control Client stopped")

    async def _check_registry(self) -> None:
        try:
            health = await self.registry.health()
        except RegistryError as e:
            logger.warning(f"Registry health check failed: {e}")
            return
        logger.info(
            f"Registry: {health.get('status')} "
            f"({health.get('activeDevices')}/{health.get('totalDevices')} devices on)"
        )

    async def run(self) -> None:
        """Main frame loop."""
        target_dt = 1.0 / self.rate

        while self._running:
            loop_start = time.time()

            try:
                self._process_frame()
            except Exception as e:
                logger.error(f"Error in frame loop: {e}")

            if self.show_preview:
                await self._handle_key(cv2.waitKey(1) & 0xFF)

            # Rate limiting; also lets dispatch tasks and timers run
            elapsed = time.time() - loop_start
            await asyncio.sleep(max(0.0, target_dt - elapsed))

    def _process_frame(self) -> None:
        self.source.set_detection_confidence(self.controller.settings.min_detection_confidence)
        read = self.source.read()
        self.controller.on_hands(read.hands, int(read.timestamp * 1000))

        if self.show_preview:
            frame = read.frame
            if frame is None:
                frame = np.zeros((480, 640, 3), dtype=np.uint8)
            self._draw_preview(frame, read.hands)
            cv2.imshow(PREVIEW_WINDOW, frame)

    async def _handle_key(self, key: int) -> None:
        if key in (27, ord('q')):
            logger.info("Quit requested")
            self._running = False
        elif key in (ord('e'), ord('E')):
            enabled = self.controller.toggle_enabled()
            logger.info(f"Gesture control {'ENABLED' if enabled else 'DISABLED'} (keyboard)")
            await self.controller.push_settings()
        elif key in (ord('r'), ord('R')):
            self.controller.reset()
            logger.info("Gesture state reset (keyboard)")
        elif ord('1') <= key <= ord('4'):
            await self.controller.simulate(finger_count=key - ord('0'))

    def _on_feedback(self, event: FeedbackEvent) -> None:
        self._last_message = str(event.payload.get("message", ""))

    def _draw_preview(self, frame: np.ndarray, hands) -> None:
        h, w = frame.shape[:2]
        if hands:
            mp.solutions.drawing_utils.draw_landmarks(
                frame, hands[0], mp.solutions.hands.HAND_CONNECTIONS
            )

        session = self.controller.session
        status = f"Gestures {'ENABLED' if session.enabled else 'DISABLED'}"
        color = (0, 255, 0) if session.enabled else (0, 0, 255)
        cv2.putText(frame, status, (20, 40), self.font, 0.9, color, 2)
        cv2.putText(frame, f"State: {session.phase.value}", (20, 70), self.font, 0.5, (255, 255, 255), 1)

        if not self.source.active:
            cv2.putText(
                frame,
                f"Camera inactive: {self.source.reason}",
                (20, 100),
                self.font, 0.5, (0, 165, 255), 1
            )

        y = 130
        for device_id, state in sorted(self.dispatcher.devices.items()):
            on = "ON" if state.status else "off"
            cv2.putText(
                frame,
                f"{device_id} {state.name}: {on}",
                (w - 260, y),
                self.font, 0.5, (0, 255, 255) if state.status else (160, 160, 160), 1
            )
            y += 22

        if self._last_message:
            cv2.putText(frame, self._last_message, (20, h - 40), self.font, 0.6, (255, 255, 0), 2)
        cv2.putText(
            frame,
            "1-4 simulate | e enable | r reset | q quit",
            (20, h - 15),
            self.font, 0.45, (200, 200, 200), 1
        )


async def main_async(args: argparse.Namespace) -> None:
    """Async main entry point."""
    settings = GestureSettings(
        enabled=args.enable,
        sensitivity=args.sensitivity,
        detection_range=args.detection_range,
        response_delay_ms=args.response_delay,
        cooldown_ms=args.cooldown,
    )

    one_shot = args.simulate is not None
    client = GestureControlClient(
        registry_url=args.registry,
        settings=settings,
        camera_index=args.camera,
        rtsp_url=args.rtsp,
        store_path=args.store,
        rate=args.rate,
        show_preview=args.preview and not one_shot,
        use_camera=not one_shot,
        subscribe=not one_shot,
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Shutdown signal received")
        client.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await client.start()
        if one_shot:
            if args.simulate.isdigit():
                await client.controller.simulate(finger_count=int(args.simulate))
            else:
                await client.controller.simulate(gesture=args.simulate)
        else:
            await client.run()
    except Exception as e:
        logger.error(f"Client error: {e}")
    finally:
        await client.stop()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Gesture Control Client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--registry",
        type=str,
        default=DEFAULT_REGISTRY_URL,
        help="Device registry API root",
    )
    parser.add_argument(
        "--camera",
        type=int,
        default=0,
        help="Camera device index",
    )
    parser.add_argument(
        "--rtsp",
        type=str,
        default=None,
        help="RTSP URL (overrides --camera if set)",
    )
    parser.add_argument(
        "--enable",
        action="store_true",
        help="Start with gesture control enabled",
    )
    parser.add_argument(
        "--sensitivity",
        type=float,
        default=0.7,
        help="Minimum gesture confidence (0-1)",
    )
    parser.add_argument(
        "--detection-range",
        choices=DETECTION_RANGES,
        default="medium",
        help="Hand detection range",
    )
    parser.add_argument(
        "--response-delay",
        type=int,
        default=0,
        help="Hold time (ms) before a gesture fires",
    )
    parser.add_argument(
        "--cooldown",
        type=int,
        default=1500,
        help="Time (ms) before the same gesture can fire again",
    )
    parser.add_argument(
        "--store",
        type=str,
        default=str(DEFAULT_STORE_PATH),
        help="Local device store (used when the registry is down)",
    )
    parser.add_argument(
        "--rate",
        type=float,
        default=30.0,
        help="Frame loop rate (Hz)",
    )
    parser.add_argument(
        "--preview",
        action="store_true",
        help="Show preview window",
    )
    parser.add_argument(
        "--simulate",
        type=str,
        default=None,
        metavar="GESTURE",
        help="Send one simulated gesture (finger count or name) and exit",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        asyncio.run(main_async(args))
    except ValueError as e:
        parser.error(str(e))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
