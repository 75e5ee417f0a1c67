"""
Scene Store and Sync Broadcaster
================================

The server holds the authoritative scene. Every mutation replaces the stored
scene in one step and then queues the full scene for every subscriber, except
the subscriber that pushed the change.

Messages (JSON text frames):
- ``{"type": "scene:init", "payload": scene}``: first message on a new connection
- ``{"type": "scene:update", "payload": scene}``: after every mutation; peers
  may send the same message to push their own edits
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

SCENE_INIT = "scene:init"
SCENE_UPDATE = "scene:update"

# Outbound messages a connection may have queued before it is dropped
MAX_PENDING = 256


@dataclass(frozen=True)
class Scene:
    elements: tuple = ()
    app_state: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {"elements": list(self.elements), "appState": dict(self.app_state)}


class SceneStore:
    """In-memory holder of the current scene.

    Each mutation swaps in a new Scene, so readers never see a partial update.
    """

    def __init__(self):
        self._scene = Scene()

    @property
    def scene(self) -> Scene:
        return self._scene

    @property
    def is_empty(self) -> bool:
        return not self._scene.elements

    def __len__(self):
        return len(self._scene.elements)

    def append(self, elements: list) -> None:
        self._scene = Scene(self._scene.elements + tuple(elements), self._scene.app_state)

    def replace(self, elements: list, app_state: Optional[dict] = None) -> None:
        self._scene = Scene(tuple(elements), dict(app_state) if app_state else {})

    def replace_elements(self, elements: list) -> None:
        """Replace the element list, keeping the current view state."""
        self._scene = Scene(tuple(elements), self._scene.app_state)

    def clear(self) -> None:
        self.replace([])

    def export_snapshot(self) -> dict:
        return self._scene.to_payload()


# ============================================================================
# Subscribers
# ============================================================================

class TextSender(Protocol):
    async def send_text(self, data: str) -> None:
        ...


class Subscriber:
    """One connected peer with its own FIFO of outbound messages.

    A peer that falls ``max_pending`` messages behind is treated like one
    whose send failed: it is marked dead and its backlog is discarded.
    """

    def __init__(self, transport: TextSender, name: str = "", max_pending: int = MAX_PENDING):
        self.transport = transport
        self.name = name or hex(id(transport))
        self.alive = True
        self._max_pending = max_pending
        # One extra slot for the close sentinel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending + 1)

    def enqueue(self, message: str) -> None:
        if not self.alive:
            return
        if self._queue.qsize() >= self._max_pending:
            logger.warning("Client %s is %d messages behind, marking connection dead",
                           self.name, self._queue.qsize())
            self._abandon()
            return
        self._queue.put_nowait(message)

    def close(self) -> None:
        self.alive = False
        if self._queue.full():
            self._abandon()
        else:
            self._queue.put_nowait(None)

    def _abandon(self) -> None:
        self.alive = False
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def pump(self) -> None:
        """Send queued messages in order until closed or the transport fails."""
        while True:
            message = await self._queue.get()
            if message is None:
                return
            try:
                await self.transport.send_text(message)
            except Exception as e:
                logger.info("Send to %s failed, marking connection dead: %s", self.name, e)
                self.alive = False
                return


# ============================================================================
# Broadcaster
# ============================================================================

class SyncBroadcaster:
    """Applies scene mutations and fans the new scene out to subscribers.

    All methods except ``Subscriber.pump`` run to completion without awaiting,
    so mutations apply in arrival order and every broadcast carries a fully
    applied scene.
    """

    def __init__(self, store: Optional[SceneStore] = None, max_pending: int = MAX_PENDING):
        self.store = store if store is not None else SceneStore()
        self.max_pending = max_pending
        self._subscribers: set[Subscriber] = set()

    @property
    def client_count(self) -> int:
        return sum(1 for sub in self._subscribers if sub.alive)

    def subscribe(self, transport: TextSender, name: str = "") -> Subscriber:
        subscriber = Subscriber(transport, name, self.max_pending)
        # Queue init before joining the set so no update can precede it
        subscriber.enqueue(self._message(SCENE_INIT))
        self._subscribers.add(subscriber)
        logger.info("Client %s connected (%d total)", subscriber.name, len(self._subscribers))
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.discard(subscriber)
            logger.info("Client %s disconnected (%d total)", subscriber.name, len(self._subscribers))
        subscriber.close()

    def _message(self, kind: str) -> str:
        return json.dumps({"type": kind, "payload": self.store.export_snapshot()})

    def broadcast(self, exclude: Optional[Subscriber] = None) -> None:
        message = self._message(SCENE_UPDATE)
        for subscriber in list(self._subscribers):
            if subscriber is exclude or not subscriber.alive:
                continue
            subscriber.enqueue(message)

    # -- mutations -----------------------------------------------------------

    def append(self, elements: list, origin: Optional[Subscriber] = None) -> None:
        self.store.append(elements)
        self.broadcast(exclude=origin)

    def replace(self, elements: list, app_state: Optional[dict] = None,
                origin: Optional[Subscriber] = None) -> None:
        self.store.replace(elements, app_state)
        self.broadcast(exclude=origin)

    def replace_elements(self, elements: list, origin: Optional[Subscriber] = None) -> None:
        self.store.replace_elements(elements)
        self.broadcast(exclude=origin)

    def clear(self, origin: Optional[Subscriber] = None) -> None:
        self.store.clear()
        self.broadcast(exclude=origin)

    def export_snapshot(self) -> dict:
        return self.store.export_snapshot()

    # -- inbound -------------------------------------------------------------

    def handle_message(self, subscriber: Subscriber, raw: str) -> bool:
        """Apply one inbound message from ``subscriber``.

        Returns True when the message changed the scene. Malformed messages
        are logged and dropped.
        """
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Dropping invalid message from %s: %s", subscriber.name, e)
            return False

        if not isinstance(message, dict):
            logger.warning("Dropping non-object message from %s", subscriber.name)
            return False

        kind = message.get("type")
        if kind != SCENE_UPDATE:
            logger.debug("Ignoring message type %r from %s", kind, subscriber.name)
            return False

        payload: Any = message.get("payload")
        if not isinstance(payload, dict) or not isinstance(payload.get("elements"), list):
            logger.warning("Dropping scene:update without an elements list from %s", subscriber.name)
            return False

        app_state = payload.get("appState")
        if app_state is not None and not isinstance(app_state, dict):
            logger.warning("Dropping scene:update with non-object appState from %s", subscriber.name)
            return False

        self.replace(payload["elements"], app_state, origin=subscriber)
        return True
