#!/usr/bin/env python3
"""
Xander Draw - Ingest Server
===========================

Accepts diagram instructions from external automation clients and pushes them
to connected Excalidraw canvases over WebSocket.

Supported input formats:
- Simple shapes JSON: array of shape descriptors
- Mermaid syntax: flowchart text

Endpoints:
- POST /api/draw          Draw shape descriptors on the canvas
- POST /api/draw/mermaid  Parse Mermaid syntax and draw
- POST /api/auto          Detect the input format and draw
- POST /api/clear         Clear the canvas
- POST /api/scene         Replace the entire scene
- GET  /api/scene         Export the current scene
- GET  /api/health        Health check
- WS   /ws                Real-time scene sync
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from .mermaid import DiagramCompiler, TextToElementsConverter
from .scene import SyncBroadcaster
from .shapes import InvalidShapeError, compile_shapes

logger = logging.getLogger(__name__)


class BadRequest(ValueError):
    """The request body has the wrong type or shape."""


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _read_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise BadRequest(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise BadRequest("Request body must be a JSON object")
    return body


def _append_flag(body: dict) -> bool:
    append = body.get("append", True)
    if not isinstance(append, bool):
        raise BadRequest("append must be a boolean")
    return append


class IngestGateway:
    """Request handlers driving the scene through the broadcaster."""

    def __init__(self, broadcaster: SyncBroadcaster, compiler: DiagramCompiler):
        self.broadcaster = broadcaster
        self.compiler = compiler

    def _apply(self, elements: list, append: bool) -> dict:
        if append:
            self.broadcaster.append(elements)
        else:
            self.broadcaster.replace_elements(elements)
        logger.info("Scene %s with %d elements (%d total)",
                    "appended" if append else "replaced", len(elements),
                    len(self.broadcaster.store))
        return {
            "success": True,
            "elementsAdded": len(elements),
            "totalElements": len(self.broadcaster.store),
        }

    # ========================================================================
    # Drawing
    # ========================================================================

    async def draw(self, request: Request) -> JSONResponse:
        try:
            body = await _read_body(request)
            descriptors = body.get("elements")
            if not isinstance(descriptors, list):
                raise BadRequest("elements must be an array of shape descriptors")
            append = _append_flag(body)

            elements = compile_shapes(descriptors)
            return JSONResponse(self._apply(elements, append))

        except (BadRequest, InvalidShapeError) as e:
            return _error(str(e), 400)
        except Exception as e:
            logger.exception("/api/draw failed")
            return _error(str(e), 500)

    async def draw_mermaid(self, request: Request) -> JSONResponse:
        try:
            body = await _read_body(request)
            definition = body.get("definition")
            if not isinstance(definition, str):
                raise BadRequest("definition must be a Mermaid syntax string")
            append = _append_flag(body)

            elements = await self.compiler.compile_text(definition)
            return JSONResponse(self._apply(elements, append))

        except (BadRequest, InvalidShapeError) as e:
            return _error(str(e), 400)
        except Exception as e:
            logger.exception("/api/draw/mermaid failed")
            return _error(str(e), 500)

    async def auto(self, request: Request) -> JSONResponse:
        """Draw either a Mermaid string or a list of shape descriptors."""
        try:
            body = await _read_body(request)
            source = body.get("input")
            append = _append_flag(body)

            if isinstance(source, str):
                input_format = "mermaid"
                elements = await self.compiler.compile_text(source)
            elif isinstance(source, list):
                input_format = "shapes"
                elements = compile_shapes(source)
            else:
                raise BadRequest("input must be a Mermaid string or an array of shape descriptors")

            result = self._apply(elements, append)
            return JSONResponse({**result, "format": input_format})

        except (BadRequest, InvalidShapeError) as e:
            return _error(str(e), 400)
        except Exception as e:
            logger.exception("/api/auto failed")
            return _error(str(e), 500)

    # ========================================================================
    # Scene
    # ========================================================================

    async def clear(self, request: Request) -> JSONResponse:
        try:
            self.broadcaster.clear()
            logger.info("Scene cleared")
            return JSONResponse({"success": True, "message": "Canvas cleared"})
        except Exception as e:
            logger.exception("/api/clear failed")
            return _error(str(e), 500)

    async def replace_scene(self, request: Request) -> JSONResponse:
        try:
            body = await _read_body(request)
            elements = body.get("elements")
            if elements is None:
                elements = []
            if not isinstance(elements, list):
                raise BadRequest("elements must be an array")
            app_state = body.get("appState")
            if app_state is not None and not isinstance(app_state, dict):
                raise BadRequest("appState must be an object")

            self.broadcaster.replace(elements, app_state)
            logger.info("Scene replaced with %d elements", len(elements))
            return JSONResponse({
                "success": True,
                "totalElements": len(self.broadcaster.store),
            })

        except BadRequest as e:
            return _error(str(e), 400)
        except Exception as e:
            logger.exception("POST /api/scene failed")
            return _error(str(e), 500)

    async def export_scene(self, request: Request) -> JSONResponse:
        return JSONResponse(self.broadcaster.export_snapshot())

    async def health(self, request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "clients": self.broadcaster.client_count,
            "elements": len(self.broadcaster.store),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    # ========================================================================
    # WebSocket
    # ========================================================================

    async def scene_socket(self, websocket: WebSocket) -> None:
        await websocket.accept()
        client = websocket.client
        name = f"{client.host}:{client.port}" if client else ""

        subscriber = self.broadcaster.subscribe(websocket, name)
        sender = asyncio.create_task(subscriber.pump())
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"].decode("utf-8", errors="replace")
                if raw is not None:
                    self.broadcaster.handle_message(subscriber, raw)
        finally:
            self.broadcaster.unsubscribe(subscriber)
            sender.cancel()


def create_app(
    broadcaster: Optional[SyncBroadcaster] = None,
    converter: Optional[TextToElementsConverter] = None,
    cors_origins: Optional[list[str]] = None,
) -> Starlette:
    """Create the ingest application.

    The broadcaster (and the scene store it owns) is created here unless one
    is passed in, so each app instance has its own scene.
    """
    broadcaster = broadcaster if broadcaster is not None else SyncBroadcaster()
    gateway = IngestGateway(broadcaster, DiagramCompiler(converter))

    routes = [
        Route("/api/health", gateway.health, methods=["GET"]),
        Route("/api/draw", gateway.draw, methods=["POST"]),
        Route("/api/draw/mermaid", gateway.draw_mermaid, methods=["POST"]),
        Route("/api/auto", gateway.auto, methods=["POST"]),
        Route("/api/clear", gateway.clear, methods=["POST"]),
        Route("/api/scene", gateway.replace_scene, methods=["POST"]),
        Route("/api/scene", gateway.export_scene, methods=["GET"]),
        WebSocketRoute("/ws", gateway.scene_socket),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=cors_origins if cors_origins is not None else ["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]

    app = Starlette(routes=routes, middleware=middleware)
    app.state.broadcaster = broadcaster
    app.state.gateway = gateway
    return app
