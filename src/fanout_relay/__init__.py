"""Real-time fan-out relay: publish once over HTTP, deliver to every WebSocket client."""

__version__ = "0.1.0"
