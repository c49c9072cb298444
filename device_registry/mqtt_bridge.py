"""
MQTT Bridge for the LED controllers.

Handles:
- Publishing each device write as retained JSON to home/devices/{id}/state
- Subscribing to home/devices/+/report for wall-switch / controller reports
"""

import asyncio
import json
import logging
import time
from typing import Callable, Optional, Tuple

import paho.mqtt.client as mqtt

from gesture_control.message import DeviceState

logger = logging.getLogger(__name__)

ReportCallback = Callable[[str, bool], None]


def parse_report(payload: bytes) -> bool:
    """
    Parse a device report payload.

    Accepts JSON ``{"status": true}`` or a bare ``on``/``off``/``1``/``0``.

    Raises:
        ValueError: If the payload carries no recognisable status
    """
    text = payload.decode().strip()
    lowered = text.lower()
    if lowered in ("on", "1", "true"):
        return True
    if lowered in ("off", "0", "false"):
        return False
    data = json.loads(text)
    if isinstance(data, dict) and isinstance(data.get("status"), bool):
        return data["status"]
    raise ValueError(f"no status in report: {text!r}")


class MQTTBridge:
    """
    MQTT bridge between the registry and the physical LEDs.

    Every callback runs on paho's network thread; ``on_report`` must be
    thread-safe (AsyncMQTTBridge marshals it onto the event loop).
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        topic_prefix: str = "home/devices",
        on_report: Optional[ReportCallback] = None,
    ):
        """
        Initialize MQTT bridge.

        Args:
            host: MQTT broker host
            port: MQTT broker port
            topic_prefix: Prefix of the per-device state/report topics
            on_report: Callback for (device_id, status) reports
        """
        self.host = host
        self.port = port
        self.topic_prefix = topic_prefix.rstrip("/")
        self.on_report = on_report

        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._running = False

        # Statistics
        self._messages_sent = 0
        self._messages_received = 0
        self._last_send_time: Optional[float] = None

    def state_topic(self, device_id: str) -> str:
        return f"{self.topic_prefix}/{device_id}/state"

    @property
    def report_topic(self) -> str:
        return f"{self.topic_prefix}/+/report"

    def device_from_topic(self, topic: str) -> Optional[str]:
        """``home/devices/3/report`` -> ``"3"``."""
        prefix = self.topic_prefix + "/"
        if not topic.startswith(prefix):
            return None
        parts = topic[len(prefix):].split("/")
        if len(parts) != 2 or parts[1] != "report" or not parts[0]:
            return None
        return parts[0]

    def start(self) -> bool:
        """
        Start the MQTT bridge.

        Returns:
            True if connection successful, False otherwise
        """
        if self._running:
            return True

        try:
            client_id = f"device_registry_{int(time.time())}"
            self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)

            self._client.on_connect = self._on_connect
            self._client.on_disconnect = self._on_disconnect
            self._client.on_message = self._on_message

            logger.info(f"Connecting to MQTT broker at {self.host}:{self.port}")
            self._client.connect(self.host, self.port, keepalive=60)

            # Start loop in background thread
            self._running = True
            self._client.loop_start()

            for _ in range(50):  # 5 second timeout
                if self._connected:
                    break
                time.sleep(0.1)

            if not self._connected:
                logger.warning("MQTT connection timeout - continuing without MQTT")
                return False

            return True

        except (OSError, ValueError) as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
            self._client = None

        self._connected = False
        logger.info("MQTT bridge stopped")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"MQTT connection failed: {reason_code}")
            return
        self._connected = True
        logger.info("Connected to MQTT broker")
        client.subscribe(self.report_topic)
        logger.info(f"Subscribed to {self.report_topic}")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self._connected = False
        if reason_code.is_failure:
            logger.warning(f"Unexpected MQTT disconnection: {reason_code}")
        else:
            logger.info("Disconnected from MQTT broker")

    def _on_message(self, client, userdata, msg):
        self._messages_received += 1
        self.handle_report(msg.topic, msg.payload)

    def handle_report(self, topic: str, payload: bytes) -> Optional[Tuple[str, bool]]:
        """Decode one report and hand it to ``on_report``."""
        device_id = self.device_from_topic(topic)
        if device_id is None:
            logger.debug(f"Ignoring message on {topic}")
            return None
        try:
            status = parse_report(payload)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Invalid report on {topic}: {e}")
            return None

        logger.debug(f"Report from device {device_id}: {status}")
        if self.on_report:
            try:
                self.on_report(device_id, status)
            except Exception as e:
                logger.error(f"Error processing report: {e}")
        return device_id, status

    def publish_state(self, state: DeviceState) -> bool:
        """
        Publish a device state (retained, so controllers get it on reconnect).

        Returns:
            True if published successfully
        """
        if not self._connected or not self._client:
            return False

        payload = {
            "id": state.id,
            "status": state.status,
            "name": state.name,
            "location": state.location,
            "ts": state.last_updated,
        }
        info = self._client.publish(self.state_topic(state.id), json.dumps(payload), qos=1, retain=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"Failed to publish state of device {state.id}: rc={info.rc}")
            return False

        self._messages_sent += 1
        self._last_send_time = time.time()
        logger.debug(f"Published device state: {payload}")
        return True

    @property
    def connected(self) -> bool:
        return self._connected

    def get_stats(self) -> dict:
        """Get bridge statistics."""
        return {
            "connected": self._connected,
            "messages_sent": self._messages_sent,
            "messages_received": self._messages_received,
            "last_send_time": self._last_send_time,
        }


class AsyncMQTTBridge:
    """
    Async wrapper for MQTTBridge.

    Reports arriving on paho's thread are re-dispatched onto the event
    loop that called ``start``.
    """

    def __init__(self, on_report: Optional[ReportCallback] = None, **kwargs):
        """Initialize with same arguments as MQTTBridge."""
        self._on_report = on_report
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._bridge = MQTTBridge(on_report=self._report_threadsafe, **kwargs)

    def _report_threadsafe(self, device_id: str, status: bool) -> None:
        if self._loop is None or self._on_report is None:
            return
        self._loop.call_soon_threadsafe(self._on_report, device_id, status)

    async def start(self) -> bool:
        self._loop = asyncio.get_running_loop()
        return await self._loop.run_in_executor(None, self._bridge.start)

    async def stop(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._bridge.stop)

    def publish_state(self, state: DeviceState) -> bool:
        """Publish without blocking; paho queues the message for its network thread."""
        return self._bridge.publish_state(state)

    @property
    def bridge(self) -> MQTTBridge:
        return self._bridge

    @property
    def connected(self) -> bool:
        return self._bridge.connected

    def get_stats(self) -> dict:
        return self._bridge.get_stats()
