"""
Local device store - durable copy of the device mirror.

Keeps optimistic (unconfirmed) device states across restarts while the
device registry is unreachable.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from .message import MirroredDevice

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = Path.home() / ".gesture_control" / "devices.json"


class LocalDeviceStore:
    """JSON file holding ``{id: {name, status, lastUpdated, location, confirmed}}``."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else DEFAULT_STORE_PATH

    def load(self) -> Dict[str, MirroredDevice]:
        """Read the stored mirror; an absent or unreadable file yields an empty mirror."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            return {
                str(device_id): MirroredDevice.from_dict(device_id, entry)
                for device_id, entry in data.items()
            }
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable device store {self.path}: {e}")
            return {}

    def save(self, devices: Mapping[str, MirroredDevice]) -> bool:
        """
        Write the mirror atomically.

        Returns:
            True if written, False on I/O failure (logged)
        """
        payload = {device_id: mirrored.to_dict() for device_id, mirrored in devices.items()}
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
            return True
        except OSError as e:
            logger.error(f"Failed to persist device store {self.path}: {e}")
            return False
