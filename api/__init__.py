"""CanvasFlow HTTP/WebSocket API (Starlette, served by Granian)."""
