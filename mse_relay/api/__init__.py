"""api — FastAPI REST + WebSocket relay."""
from .server import create_app, wire_broadcasts, ws_pool

__all__ = ["create_app", "wire_broadcasts", "ws_pool"]
