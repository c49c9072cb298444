"""
Device Registry - Authoritative smart-home device state.

This package runs on the home server and:
- Serves device state and gesture settings over JSON/HTTP
- Pushes device changes to dashboards over WebSocket
- Bridges device state to the LED controllers over MQTT
"""

__version__ = "1.0.0"
