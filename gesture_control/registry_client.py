"""
Device Registry client.

Handles:
- JSON/HTTP calls to the device registry (aiohttp)
- Mapping transport and contract failures onto RegistryUnavailable,
  DeviceNotFound and GestureControlDisabled
- Subscribing to the registry's state-change push stream over WebSocket,
  with exponential backoff reconnection
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import aiohttp
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .message import (
    DeviceState,
    FeedbackEvent,
    FeedbackType,
    GestureEvent,
    device_map_from_dict,
)
from .settings import GestureSettings

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_URL = "http://127.0.0.1:3001/api/gesture"


class RegistryError(Exception):
    """Base class for registry failures."""


class RegistryUnavailable(RegistryError):
    """Registry could not be reached or failed (timeout, network error, 5xx)."""


class DeviceNotFound(RegistryError):
    """Registry does not know the requested device id."""

    def __init__(self, device_id: str, message: str = "Device not found"):
        super().__init__(f"{message}: {device_id}")
        self.device_id = device_id


class GestureControlDisabled(RegistryError):
    """Registry refused a gesture call because gesture control is disabled."""


class RequestRejected(RegistryError):
    """Registry rejected the request body (4xx other than 404)."""


@dataclass
class ClientStats:
    """Statistics about registry calls."""
    requests: int = 0
    failures: int = 0
    last_success_time: Optional[float] = None
    last_failure_time: Optional[float] = None
    last_error: Optional[str] = None


class RegistryClient:
    """
    Async HTTP client for the device registry.

    Every call either returns the registry's confirmed answer or raises
    a RegistryError subclass; transport errors never escape as aiohttp
    exceptions.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_REGISTRY_URL,
        timeout_seconds: float = 2.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize registry client.

        Args:
            base_url: Registry API root, e.g. http://127.0.0.1:3001/api/gesture
            timeout_seconds: Total timeout per request
            session: Optional externally managed aiohttp session
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self.stats = ClientStats()

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "RegistryClient":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Contract operations
    # ------------------------------------------------------------------

    async def get_devices(self) -> Dict[str, DeviceState]:
        data = await self._request("GET", "devices")
        return device_map_from_dict(data.get("devices") or {})

    async def get_settings(self) -> GestureSettings:
        data = await self._request("GET", "settings")
        return GestureSettings.from_dict(data.get("settings") or {})

    async def toggle(
        self,
        device_id: str,
        desired_status: Optional[bool] = None,
        event: Optional[GestureEvent] = None,
    ) -> DeviceState:
        """
        Toggle a device, or set it when ``desired_status`` is given.

        Raises:
            DeviceNotFound: Unknown device id
            GestureControlDisabled: Gesture call while disabled
            RegistryUnavailable: Transport or server failure
        """
        body: Dict[str, Any] = event.to_dict() if event is not None else {}
        if desired_status is not None:
            body["status"] = desired_status
        data = await self._request("POST", f"devices/{device_id}/toggle", body, device_id=device_id)
        return DeviceState.from_dict(device_id, data["device"])

    async def bulk_set(
        self,
        ids: Optional[Sequence[str]],
        status: bool,
        event: Optional[GestureEvent] = None,
    ) -> Dict[str, DeviceState]:
        """Set several devices (every device when ``ids`` is None)."""
        body: Dict[str, Any] = event.to_dict() if event is not None else {}
        body["status"] = status
        if ids is not None:
            body["ids"] = list(ids)
        data = await self._request("POST", "devices/bulk", body)
        return device_map_from_dict(data.get("devices") or {})

    async def reset(self) -> Dict[str, DeviceState]:
        data = await self._request("POST", "reset", {})
        return device_map_from_dict(data.get("devices") or {})

    async def process(self, event: GestureEvent) -> Dict[str, Any]:
        """Let the registry map and apply a gesture itself."""
        return await self._request("POST", "process", event.to_dict())

    async def simulate(
        self,
        finger_count: Optional[int] = None,
        gesture: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if finger_count is not None:
            body["fingerCount"] = finger_count
        if gesture is not None:
            body["gestureType"] = gesture
        return await self._request("POST", "simulate", body)

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", "health")

    async def update_settings(self, changes: Mapping[str, Any]) -> GestureSettings:
        data = await self._request("POST", "settings", dict(changes))
        return GestureSettings.from_dict(data.get("settings") or {})

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        device_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self.start()
        url = f"{self.base_url}/{path}"
        self.stats.requests += 1

        try:
            async with self._session.request(method, url, json=body, timeout=self.timeout) as resp:
                status = resp.status
                try:
                    data = await resp.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError):
                    data = None
        except asyncio.TimeoutError:
            raise self._unavailable(f"{method} {path} timed out")
        except aiohttp.ClientError as e:
            raise self._unavailable(f"{method} {path} failed: {e}")

        if not isinstance(data, dict):
            data = {}

        if status == 404:
            self._record_success()
            raise DeviceNotFound(device_id or path, data.get("error", "Device not found"))

        if status >= 500:
            raise self._unavailable(f"{method} {path} returned HTTP {status}")

        if status >= 400:
            self._record_success()
            raise RequestRejected(f"{method} {path} returned HTTP {status}: {data}")

        self._record_success()

        if data.get("success") is False:
            message = str(data.get("message") or data.get("error") or "request refused")
            if data.get("enabled") is False or "disabled" in message.lower():
                raise GestureControlDisabled(message)
            raise RequestRejected(message)

        return data

    def _unavailable(self, detail: str) -> RegistryUnavailable:
        self.stats.failures += 1
        self.stats.last_failure_time = time.time()
        self.stats.last_error = detail
        logger.warning(f"Registry unavailable: {detail}")
        return RegistryUnavailable(detail)

    def _record_success(self) -> None:
        self.stats.last_success_time = time.time()

    def get_stats(self) -> dict:
        return {
            "base_url": self.base_url,
            "requests": self.stats.requests,
            "failures": self.stats.failures,
            "last_success_time": self.stats.last_success_time,
            "last_failure_time": self.stats.last_failure_time,
            "last_error": self.stats.last_error,
        }


class RegistryEventStream:
    """
    Subscribes to the registry's ``status_changed`` push stream.

    Features:
    - Exponential backoff on connection failure (1s -> 30s max)
    - Each pushed device state is handed to ``on_device``
    """

    def __init__(
        self,
        url: str,
        on_device: Callable[[DeviceState], None],
        max_backoff_seconds: float = 30.0,
        initial_backoff_seconds: float = 1.0,
    ):
        """
        Initialize the event stream.

        Args:
            url: WebSocket URL, e.g. ws://127.0.0.1:3001/api/gesture/events
            on_device: Callback for every device state pushed by the registry
            max_backoff_seconds: Maximum backoff time between reconnect attempts
            initial_backoff_seconds: Initial backoff time
        """
        self.url = url
        self.on_device = on_device
        self.max_backoff = max_backoff_seconds
        self.initial_backoff = initial_backoff_seconds

        self._running = False
        self._connected = False
        self._current_backoff = initial_backoff_seconds
        self._task: Optional[asyncio.Task] = None

        self.reconnect_attempts = 0
        self.messages_received = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @staticmethod
    def url_for(registry_url: str) -> str:
        """Derive the push stream URL from the HTTP API root."""
        url = registry_url.rstrip("/")
        if url.startswith("https://"):
            url = "wss://" + url[len("https://"):]
        elif url.startswith("http://"):
            url = "ws://" + url[len("http://"):]
        return f"{url}/events"

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._connection_loop())
        logger.info(f"Registry event stream started, connecting to {self.url}")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._connected = False
        logger.info("Registry event stream stopped")

    async def _connection_loop(self) -> None:
        while self._running:
            try:
                await self._listen()
                self._current_backoff = self.initial_backoff
            except asyncio.CancelledError:
                break
            except (OSError, WebSocketException) as e:
                logger.warning(f"Registry event stream error: {e}")

            if not self._running:
                break

            logger.info(f"Reconnecting event stream in {self._current_backoff:.1f}s...")
            await asyncio.sleep(self._current_backoff)
            self._current_backoff = min(self._current_backoff * 2, self.max_backoff)
            self.reconnect_attempts += 1

    async def _listen(self) -> None:
        async with websockets.connect(
            self.url,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
        ) as ws:
            self._connected = True
            logger.info("Registry event stream connected")
            try:
                async for message in ws:
                    self.handle_message(message)
            except ConnectionClosed:
                pass
            finally:
                self._connected = False

    def handle_message(self, message: Any) -> None:
        """Apply one pushed message; malformed messages are logged and skipped."""
        self.messages_received += 1
        try:
            event = FeedbackEvent.from_json(message)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Invalid push message: {e}")
            return

        if event.type is not FeedbackType.STATUS_CHANGED:
            return

        devices = event.payload.get("devices") or {}
        try:
            states = device_map_from_dict(devices)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Invalid device push: {e}")
            return

        for state in states.values():
            self.on_device(state)
