"""
Accessibility presets: gesture subsets and the settings each one applies.
"""

from typing import Any, Dict, List

from gesture_control.mapper import FINGER_DEVICES, MACRO_DESCRIPTIONS

# Preset type -> settings changes applied by POST presets/apply
PRESET_SETTINGS: Dict[str, Dict[str, Any]] = {
    "mobility": {"sensitivity": 0.7, "detectionRange": "medium"},
    "visual": {"sensitivity": 0.9, "detectionRange": "close"},
    "hearing": {},
    "cognitive": {"sensitivity": 0.9, "responseDelay": 500},
}

# Preset type -> (finger counts, named gestures) offered
PRESET_GESTURES = {
    "mobility": ((1, 2, 3, 4), ("fist",)),
    "visual": ((1, 2), ("wave_right", "fist")),
    "hearing": ((1, 2), ("all_on", "all_off")),
    "cognitive": ((1, 2), ("emergency",)),
}


def _gesture_entries(preset_type: str) -> List[Dict[str, Any]]:
    counts, names = PRESET_GESTURES[preset_type]
    sensitivity = PRESET_SETTINGS[preset_type].get("sensitivity", 0.7)
    entries = []
    for count in counts:
        _, label = FINGER_DEVICES[count]
        entries.append({
            "name": f"{count} finger{'s' if count > 1 else ''}",
            "fingerCount": count,
            "description": f"Toggle {label}",
            "sensitivity": sensitivity,
        })
    for name in names:
        entries.append({
            "name": name,
            "gestureType": name,
            "description": MACRO_DESCRIPTIONS[name],
            "sensitivity": sensitivity,
        })
    return entries


def list_presets() -> Dict[str, List[Dict[str, Any]]]:
    return {preset_type: _gesture_entries(preset_type) for preset_type in PRESET_SETTINGS}
