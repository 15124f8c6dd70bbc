# events.py
import asyncio
import logging
from typing import Any, Callable, List

from Livechat_Hub.data_models import Platform

logger = logging.getLogger(__name__)

CHAT_MESSAGE = "chat-message"
AUTH_TOKEN_RECEIVED = "auth-token-received"
TWITCH_USER_STATE = "twitch-current-user-state"


def connected_event(platform: Platform) -> str:
    return f"{platform.event_prefix}-connected"


def error_event(platform: Platform) -> str:
    return f"{platform.event_prefix}-error"


Listener = Callable[[str, Any], None]


class EventSink:
    """
    Fire-and-forget fan-out of engine events to whoever is listening (usually a UI).

    Adapters call `emit` from inside their decode loops, so listeners must be
    quick and non-blocking. A failing listener is logged and skipped, it is
    never allowed to propagate into a session.
    """

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, name: str, payload: Any = None) -> None:
        if not self._listeners:
            logger.debug(f"No listener for event '{name}', dropping it.")
            return
        for listener in list(self._listeners):
            try:
                listener(name, payload)
            except Exception as e:
                logger.error(f"Failed to deliver event '{name}' to {listener!r}: {e}", exc_info=True)

    def queue_listener(self, maxsize: int = 1000) -> "asyncio.Queue":
        """
        Subscribes a bounded asyncio queue and returns it.

        Events arrive as (name, payload) tuples. When the queue is full the
        event is dropped with a warning instead of blocking the emitter.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        def _put(name: str, payload: Any) -> None:
            try:
                queue.put_nowait((name, payload))
            except asyncio.QueueFull:
                logger.warning(f"Event queue is full. Event '{name}' dropped.")

        _put.queue = queue  # lets callers find the listener again to unsubscribe
        self.subscribe(_put)
        return queue

    def remove_queue(self, queue: "asyncio.Queue") -> None:
        for listener in list(self._listeners):
            if getattr(listener, "queue", None) is queue:
                self.unsubscribe(listener)
