"""
Session registry and cooperative cancellation for live chat adapters.

Each join owns one Session and one asyncio task. The registry maps
(platform, channel) to the live Session and keeps a process-wide cache of
resolved platform identifiers that outlives individual sessions.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Tuple, TypeVar

from Livechat_Hub.data_models import Credentials, Platform
from Livechat_Hub.errors import SessionCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")
SessionKey = Tuple[Platform, str]


class CancellationToken:
    """
    A one-shot shutdown signal handed to a session task at spawn time.

    The task observes it at every suspension point through `race`, which
    gives the signal precedence over whatever the task was waiting for.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SessionCancelled()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """
        Waits for `awaitable` unless the token fires first.

        Raises SessionCancelled if the token is (or becomes) set, even when
        the awaitable completed in the same loop iteration.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        if self._event.is_set():
            if work.done() and not work.cancelled():
                # retrieve so a failed frame read is not reported as "never retrieved"
                work.exception()
            raise SessionCancelled()
        return work.result()

    async def sleep(self, delay: float) -> None:
        await self.race(asyncio.sleep(delay))


@dataclass
class Session:
    """
    One active join of a channel on a platform.

    `channel` is the caller's identifier normalized by the adapter.
    `ids` is filled in as resolution succeeds (e.g. chatroom_id and
    broadcaster_user_id for Kick, room_id for Twitch, video_id for YouTube).
    """
    platform: Platform
    channel: str
    credentials: Credentials = field(default_factory=Credentials)
    ids: Dict[str, str] = field(default_factory=dict)
    token: Optional[CancellationToken] = field(default_factory=CancellationToken)
    task: Optional["asyncio.Task"] = None
    transport: Any = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> SessionKey:
        return (self.platform, self.channel)

    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()


class SessionRegistry:
    """
    Injectable, lock-protected state shared by the controller and every adapter.

    The lock is only ever held for a single dictionary read or write and
    never across an `await`.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[SessionKey, Session] = {}
        self._ids: Dict[SessionKey, Dict[str, str]] = {}

    def register(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.key] = session

    def get(self, platform: Platform, channel: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get((platform, channel))

    def sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def take_cancel_handle(self, platform: Platform, channel: str) -> Optional[CancellationToken]:
        """Removes and returns the session's cancellation token, so it can be signalled at most once."""
        with self._lock:
            session = self._sessions.get((platform, channel))
            if session is None or session.token is None:
                return None
            token, session.token = session.token, None
            return token

    def discard(self, session: Session) -> bool:
        """Removes `session` if it is still the one registered for its key."""
        with self._lock:
            if self._sessions.get(session.key) is session:
                del self._sessions[session.key]
                return True
            return False

    def cache_id(self, platform: Platform, channel: str, name: str, value: str) -> None:
        with self._lock:
            self._ids.setdefault((platform, channel), {})[name] = value

    def cached_id(self, platform: Platform, channel: str, name: str) -> Optional[str]:
        with self._lock:
            return self._ids.get((platform, channel), {}).get(name)
