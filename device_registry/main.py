#!/usr/bin/env python3
"""
Device Registry - Main Entry Point

Serves the authoritative device state to gesture clients and dashboards:
- JSON/HTTP API under /api/gesture
- Live device updates over WebSocket /api/gesture/events
- Optional MQTT bridge to the physical LED controllers

Environment Variables:
    REGISTRY_HOST: Bind address (default: 0.0.0.0)
    REGISTRY_PORT: Port (default: 3001)
    GESTURE_ENABLED: Start with gesture control enabled (default: false)
    GESTURE_SENSITIVITY: Initial sensitivity 0-1 (default: 0.7)
    ENABLE_MQTT: Bridge device state to MQTT (default: true)
    MQTT_HOST: MQTT broker host (default: localhost)
    MQTT_PORT: MQTT broker port (default: 1883)
    MQTT_TOPIC_PREFIX: Device topic prefix (default: home/devices)

Usage:
    device-registry
    GESTURE_ENABLED=true ENABLE_MQTT=false python -m device_registry.main
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import uvicorn

from gesture_control.message import DeviceState
from gesture_control.settings import GestureSettings

from .api import RegistryServer
from .mqtt_bridge import AsyncMQTTBridge
from .registry import DeviceRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class RegistryService:
    """
    Main service integrating the registry, its HTTP API and MQTT.

    Architecture:
        Client/Dashboard -> HTTP -> DeviceRegistry -> WebSocket push
                                                   -> MQTT (home/devices/{id}/state)
        LED controller -> MQTT (home/devices/{id}/report) -> DeviceRegistry
    """

    def __init__(
        self,
        settings: GestureSettings,
        host: str = "0.0.0.0",
        port: int = 3001,
        mqtt_host: str = "localhost",
        mqtt_port: int = 1883,
        mqtt_topic_prefix: str = "home/devices",
        enable_mqtt: bool = True,
    ):
        """
        Initialize the registry service.

        Args:
            settings: Initial gesture settings
            host: Server bind address
            port: Server port
            mqtt_host: MQTT broker host
            mqtt_port: MQTT broker port
            mqtt_topic_prefix: Device topic prefix
            enable_mqtt: Whether to enable MQTT bridge
        """
        self.host = host
        self.port = port
        self.mqtt_host = mqtt_host
        self.mqtt_port = mqtt_port
        self.mqtt_topic_prefix = mqtt_topic_prefix
        self.enable_mqtt = enable_mqtt

        self.registry = DeviceRegistry(settings)
        self.server = RegistryServer(self.registry, lifespan=self._lifespan)
        self.mqtt_bridge: Optional[AsyncMQTTBridge] = None

    async def start(self) -> None:
        """Start the MQTT bridge, if enabled."""
        logger.info("Starting Device Registry...")

        if self.enable_mqtt:
            self.mqtt_bridge = AsyncMQTTBridge(
                host=self.mqtt_host,
                port=self.mqtt_port,
                topic_prefix=self.mqtt_topic_prefix,
                on_report=self._on_report,
            )
            if await self.mqtt_bridge.start():
                logger.info("MQTT bridge started")
                self.registry.add_listener(self._publish_states)
                self._publish_states(self.registry.get_all())
            else:
                logger.warning("MQTT bridge failed to connect, continuing without it")
                await self.mqtt_bridge.stop()
                self.mqtt_bridge = None

        logger.info(f"Device Registry started on {self.host}:{self.port}")

    async def stop(self) -> None:
        logger.info("Stopping Device Registry...")
        if self.mqtt_bridge:
            self.registry.remove_listener(self._publish_states)
            await self.mqtt_bridge.stop()
            self.mqtt_bridge = None
        logger.info("Device Registry stopped")

    @asynccontextmanager
    async def _lifespan(self, app):
        """Start the service with the app and stop it on shutdown."""
        await self.start()
        try:
            yield
        finally:
            await self.stop()

    def _publish_states(self, changed: Dict[str, DeviceState]) -> None:
        if self.mqtt_bridge is None:
            return
        for state in changed.values():
            self.mqtt_bridge.publish_state(state)

    def _on_report(self, device_id: str, status: bool) -> None:
        """Runs on the event loop (marshalled from the MQTT thread)."""
        self.registry.apply_report(device_id, status)

    def get_app(self):
        """Get the FastAPI application for uvicorn."""
        return self.server.app

    def get_stats(self) -> dict:
        return {
            "server": self.server.get_stats(),
            "mqtt_bridge": self.mqtt_bridge.get_stats() if self.mqtt_bridge else {},
        }


def main() -> None:
    """Main entry point; uvicorn owns the loop and the signal handling."""
    try:
        settings = GestureSettings(
            enabled=env_flag("GESTURE_ENABLED", False),
            sensitivity=float(os.environ.get("GESTURE_SENSITIVITY", "0.7")),
        )
        port = int(os.environ.get("REGISTRY_PORT", "3001"))
        mqtt_port = int(os.environ.get("MQTT_PORT", "1883"))
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    service = RegistryService(
        settings=settings,
        host=os.environ.get("REGISTRY_HOST", "0.0.0.0"),
        port=port,
        mqtt_host=os.environ.get("MQTT_HOST", "localhost"),
        mqtt_port=mqtt_port,
        mqtt_topic_prefix=os.environ.get("MQTT_TOPIC_PREFIX", "home/devices"),
        enable_mqtt=env_flag("ENABLE_MQTT", True),
    )
    uvicorn.run(service.get_app(), host=service.host, port=service.port, log_level="info")


if __name__ == "__main__":
    main()
