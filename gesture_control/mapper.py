"""
Command Mapper - GestureEvent -> DispatchIntents.

Pure and deterministic. Finger counts toggle one room each; named macro
gestures set every device to an explicit state.
"""

from typing import Dict, List, Optional, Tuple

from .message import (
    ALL_DEVICES,
    FINGER_DEVICE_IDS,
    DeviceState,
    DispatchIntent,
    GestureEvent,
    IntentAction,
)

# Finger count -> (device id, room label)
FINGER_DEVICES: Dict[int, Tuple[str, str]] = {
    1: (FINGER_DEVICE_IDS[0], "Living Room LED"),
    2: (FINGER_DEVICE_IDS[1], "Bedroom LED"),
    3: (FINGER_DEVICE_IDS[2], "Kitchen LED"),
    4: (FINGER_DEVICE_IDS[3], "Bathroom LED"),
}

DEVICE_LOCATIONS: Dict[str, str] = {
    FINGER_DEVICE_IDS[0]: "living_room",
    FINGER_DEVICE_IDS[1]: "bedroom",
    FINGER_DEVICE_IDS[2]: "kitchen",
    FINGER_DEVICE_IDS[3]: "bathroom",
}

# Named gesture -> bulk action
MACRO_GESTURES: Dict[str, IntentAction] = {
    "wave_right": IntentAction.SET_ON,
    "all_on": IntentAction.SET_ON,
    "wave_left": IntentAction.SET_OFF,
    "all_off": IntentAction.SET_OFF,
    "fist": IntentAction.SET_ON,
    "emergency": IntentAction.SET_ON,
}

MACRO_DESCRIPTIONS: Dict[str, str] = {
    "wave_right": "All lights ON",
    "all_on": "All lights ON",
    "wave_left": "All lights OFF",
    "all_off": "All lights OFF",
    "fist": "Emergency - all lights ON",
    "emergency": "Emergency - all lights ON",
}

SUGGESTIONS: Tuple[str, ...] = tuple(
    f"{count} finger{'s' if count > 1 else ''} = {label}"
    for count, (_, label) in sorted(FINGER_DEVICES.items())
)


def default_devices(timestamp: int = 0) -> Dict[str, DeviceState]:
    """The four room LEDs, all off."""
    return {
        device_id: DeviceState(
            id=device_id,
            name=label,
            status=False,
            last_updated=timestamp,
            location=DEVICE_LOCATIONS[device_id],
        )
        for _, (device_id, label) in sorted(FINGER_DEVICES.items())
    }


def normalize_gesture(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    return name.strip().lower().replace(" ", "_").replace("-", "_")


def map_gesture(event: GestureEvent) -> Tuple[DispatchIntent, ...]:
    """
    Map a committed gesture to dispatch intents.

    Finger counts take precedence over a gesture name when both are set.

    Returns:
        Tuple of one or more DispatchIntents
    """
    if event.finger_count is not None:
        target = FINGER_DEVICES.get(event.finger_count)
        if target is not None:
            return (DispatchIntent(target=target[0], action=IntentAction.TOGGLE, source=event),)

    action = MACRO_GESTURES.get(normalize_gesture(event.gesture) or "")
    if action is not None:
        return (DispatchIntent(target=ALL_DEVICES, action=action, source=event),)

    return (
        DispatchIntent(
            target=None,
            action=IntentAction.NOT_RECOGNIZED,
            source=event,
            suggestions=SUGGESTIONS,
        ),
    )


def command_catalogue() -> List[dict]:
    """All gesture -> action mappings, for display."""
    commands = []
    for count, (device_id, label) in sorted(FINGER_DEVICES.items()):
        commands.append({
            "name": f"{count} finger{'s' if count > 1 else ''}",
            "fingerCount": count,
            "action": IntentAction.TOGGLE.value,
            "target": device_id,
            "description": f"Toggle {label}",
        })
    for name, action in MACRO_GESTURES.items():
        commands.append({
            "name": name,
            "gestureType": name,
            "action": action.value,
            "target": ALL_DEVICES,
            "description": MACRO_DESCRIPTIONS[name],
        })
    return commands
