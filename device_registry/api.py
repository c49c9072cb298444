"""
Device Registry HTTP/WebSocket API.

Handles:
- FastAPI JSON routes under /api/gesture (devices, toggle, bulk, process,
  simulate, reset, health, settings, commands, presets)
- WebSocket endpoint /api/gesture/events pushing status_changed messages
  to every connected dashboard or client
- Disabled-gesture rejection for gesture-originated writes
"""

import asyncio
import logging
from typing import Any, Dict, List, Literal, Optional, Set

from fastapi import APIRouter, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from gesture_control.mapper import command_catalogue
from gesture_control.message import (
    DISABLED_MESSAGE,
    SIMULATED_CONFIDENCE,
    DeviceState,
    FeedbackEvent,
    FeedbackType,
    GestureEvent,
    device_map_to_dict,
    now_ms,
)

from .presets import PRESET_SETTINGS, list_presets
from .registry import DeviceNotFound, DeviceRegistry

logger = logging.getLogger(__name__)

API_PREFIX = "/api/gesture"


# ============================================================================
# Request bodies
# ============================================================================

class ToggleRequest(BaseModel):
    fingerCount: Optional[int] = None
    gestureType: Optional[str] = None
    status: Optional[bool] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class BulkRequest(BaseModel):
    ids: Optional[List[str]] = None
    status: bool
    fingerCount: Optional[int] = None
    gestureType: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class GestureRequest(BaseModel):
    fingerCount: Optional[int] = None
    gestureType: Optional[str] = None
    confidence: float = Field(0.8, ge=0.0, le=1.0)
    timestamp: Optional[int] = None


class SimulateRequest(BaseModel):
    fingerCount: Optional[int] = None
    gestureType: Optional[str] = None


class SettingsRequest(BaseModel):
    enabled: Optional[bool] = None
    sensitivity: Optional[float] = Field(None, ge=0.0, le=1.0)
    detectionRange: Optional[Literal["close", "medium", "far"]] = None
    responseDelay: Optional[int] = Field(None, ge=0)
    cooldown: Optional[int] = Field(None, ge=0)


class PresetRequest(BaseModel):
    presetType: str
    presetName: Optional[str] = None


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=404, content={"success": False, "error": "Device not found"})


def _disabled() -> Dict[str, Any]:
    return {"success": False, "message": DISABLED_MESSAGE, "enabled": False}


def _gesture_label(finger_count: Optional[int], gesture_type: Optional[str]) -> str:
    if finger_count:
        return f"{finger_count} finger(s)"
    return gesture_type or "gesture"


class RegistryServer:
    """
    FastAPI front end for a DeviceRegistry.

    Features:
    - JSON contract rooted at /api/gesture
    - Live status_changed push over WebSocket
    - CORS open for browser dashboards
    """

    def __init__(self, registry: Optional[DeviceRegistry] = None, lifespan=None):
        """
        Initialize the registry server.

        Args:
            registry: Registry to serve; a fresh one with defaults if None
            lifespan: Optional startup/shutdown context for the app
        """
        self.registry = registry or DeviceRegistry()
        self._subscribers: Set[WebSocket] = set()

        self._total_requests = 0
        self._broadcasts = 0

        self.app = FastAPI(title="Gesture Device Registry", lifespan=lifespan)
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self.registry.add_listener(self._on_devices_changed)
        self._setup_routes()

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------

    def _on_devices_changed(self, changed: Dict[str, DeviceState]) -> None:
        if not self._subscribers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, skipping device broadcast")
            return
        message = FeedbackEvent(
            FeedbackType.STATUS_CHANGED,
            {"devices": device_map_to_dict(changed)},
        ).to_json()
        loop.create_task(self._broadcast(message))

    async def _broadcast(self, message: str) -> None:
        self._broadcasts += 1
        for websocket in list(self._subscribers):
            try:
                await websocket.send_text(message)
            except Exception as e:
                logger.warning(f"Dropping event subscriber: {e}")
                self._subscribers.discard(websocket)

    async def _handle_events(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._subscribers.add(websocket)
        logger.info(f"Event subscriber connected from {websocket.client}")
        try:
            snapshot = FeedbackEvent(
                FeedbackType.STATUS_CHANGED,
                {"devices": device_map_to_dict(self.registry.get_all())},
            )
            await websocket.send_text(snapshot.to_json())
            while True:
                # Subscribers only listen; anything they send is ignored
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Event subscriber disconnected")
        finally:
            self._subscribers.discard(websocket)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _setup_routes(self):
        """Set up FastAPI routes."""
        router = APIRouter(prefix=API_PREFIX)
        registry = self.registry

        @self.app.middleware("http")
        async def count_requests(request, call_next):
            self._total_requests += 1
            return await call_next(request)

        @self.app.get("/health")
        async def server_health():
            """Liveness endpoint."""
            return {"status": "ok", **self.get_stats()}

        @router.get("/devices")
        async def get_devices():
            return {
                "success": True,
                "devices": device_map_to_dict(registry.get_all()),
                "settings": registry.settings.to_dict(),
                "timestamp": now_ms(),
            }

        @router.post("/devices/bulk")
        async def bulk_set(body: BulkRequest):
            gesture_originated = body.fingerCount is not None or body.gestureType is not None
            if gesture_originated and not registry.gestures_allowed():
                return _disabled()
            try:
                changed = registry.bulk_set(body.ids, body.status)
            except DeviceNotFound:
                return _not_found()
            if gesture_originated:
                registry.record_gesture_metadata({
                    "fingerCount": body.fingerCount,
                    "gestureType": _gesture_label(body.fingerCount, body.gestureType),
                    "confidence": body.confidence,
                    "action": "activated" if body.status else "deactivated",
                    "devicesAffected": len(changed),
                })
            return {"success": True, "devices": device_map_to_dict(changed)}

        @router.get("/devices/{device_id}")
        async def get_device(device_id: str):
            try:
                state = registry.get(device_id)
            except DeviceNotFound:
                return _not_found()
            return {"success": True, "device": state.to_dict()}

        @router.post("/devices/{device_id}/toggle")
        async def toggle_device(device_id: str, body: Optional[ToggleRequest] = None):
            body = body or ToggleRequest()
            gesture_originated = body.fingerCount is not None or body.gestureType is not None
            if gesture_originated and not registry.gestures_allowed():
                return _disabled()
            try:
                state, previous = registry.toggle_by_id(device_id, body.status)
            except DeviceNotFound:
                return _not_found()

            label = _gesture_label(body.fingerCount, body.gestureType)
            info = None
            if gesture_originated:
                info = registry.record_gesture_metadata({
                    "deviceId": state.id,
                    "fingerCount": body.fingerCount,
                    "gestureType": body.gestureType,
                    "confidence": body.confidence,
                    "action": "activated" if state.status else "deactivated",
                })
            return {
                "success": True,
                "device": state.to_dict(),
                "previousStatus": previous,
                "message": f"{state.name} {'turned on' if state.status else 'turned off'} via {label}",
                "gestureInfo": info,
            }

        @router.post("/process")
        async def process_gesture(body: GestureRequest):
            event = GestureEvent(
                confidence=body.confidence,
                timestamp=body.timestamp or now_ms(),
                finger_count=body.fingerCount,
                gesture=body.gestureType,
            )
            return registry.process_gesture(event)

        @router.post("/simulate")
        async def simulate_gesture(body: SimulateRequest):
            label = _gesture_label(body.fingerCount, body.gestureType)
            logger.info(f"Simulating gesture: {label}")
            event = GestureEvent(
                confidence=SIMULATED_CONFIDENCE,
                timestamp=now_ms(),
                finger_count=body.fingerCount,
                gesture=body.gestureType,
            )
            return registry.process_gesture(event)

        @router.post("/reset")
        async def reset_devices():
            changed = registry.reset()
            return {
                "success": True,
                "message": "All devices reset to OFF",
                "devices": device_map_to_dict(changed),
            }

        @router.get("/health")
        async def gesture_health():
            return registry.health()

        @router.get("/settings")
        async def get_settings():
            return {
                "success": True,
                "settings": registry.settings.to_dict(),
                "devices": device_map_to_dict(registry.get_all()),
            }

        @router.post("/settings")
        async def update_settings(body: SettingsRequest):
            try:
                settings = registry.update_settings(body.model_dump(exclude_none=True))
            except ValueError as e:
                return JSONResponse(status_code=422, content={"success": False, "error": str(e)})
            return {
                "success": True,
                "settings": settings.to_dict(),
                "message": "Gesture settings updated successfully",
            }

        @router.get("/commands")
        async def get_commands():
            commands = command_catalogue()
            return {
                "success": True,
                "data": commands,
                "settings": registry.settings.to_dict(),
                "totalCommands": len(commands),
            }

        @router.get("/presets")
        async def get_presets():
            presets = list_presets()
            return {
                "success": True,
                "data": presets,
                "currentSettings": registry.settings.to_dict(),
                "availableTypes": list(presets),
                "totalPresets": sum(len(entries) for entries in presets.values()),
            }

        @router.post("/presets/apply")
        async def apply_preset(body: PresetRequest):
            changes = PRESET_SETTINGS.get(body.presetType)
            if changes is None:
                return JSONResponse(
                    status_code=400,
                    content={"success": False, "error": f"Unknown preset type: {body.presetType}"},
                )
            settings = registry.update_settings(changes)
            logger.info(f"Applied gesture preset: {body.presetType}")
            return {
                "success": True,
                "message": f"Preset \"{body.presetName or body.presetType}\" applied successfully",
                "presetType": body.presetType,
                "presetName": body.presetName,
                "updatedSettings": settings.to_dict(),
            }

        @router.websocket("/events")
        async def device_events(websocket: WebSocket):
            """WebSocket endpoint for live device updates."""
            await self._handle_events(websocket)

        self.app.include_router(router)

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "subscribers": len(self._subscribers),
            "total_requests": self._total_requests,
            "broadcasts": self._broadcasts,
            "registry": self.registry.get_stats(),
        }


def create_app(registry: Optional[DeviceRegistry] = None, lifespan=None):
    """
    Create FastAPI application around a registry.

    Returns:
        Tuple of (FastAPI application, RegistryServer)
    """
    server = RegistryServer(registry, lifespan)
    return server.app, server
