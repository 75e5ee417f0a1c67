"""
Xander Draw
===========

Live diagram ingest server for a shared Excalidraw canvas.

Supports:
- Drawing from simple shape descriptors
- Drawing from Mermaid flowchart syntax (external converter with local fallback)
- Scene sync to every connected canvas over WebSocket

Endpoints:
- REST: /api/draw, /api/draw/mermaid, /api/auto, /api/clear, /api/scene, /api/health
- WebSocket: /ws
"""

__version__ = "0.1.0"

from .server import create_app

__all__ = ["create_app", "__version__"]
