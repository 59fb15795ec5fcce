from .bus import EventBus
from .ws import WebSocketHub, hub

__all__ = ["EventBus", "WebSocketHub", "hub"]
