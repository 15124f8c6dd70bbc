"""
Base Adapter Module for Livechat_Hub
Defines the capability interface every platform adapter implements, and the
session loop they all share.
"""
import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from curl_cffi.requests import AsyncSession

from Livechat_Hub.data_models import Credentials, NormalizedMessage, Platform
from Livechat_Hub.errors import ErrorEvent, LiveChatError, SessionCancelled, SessionEnded
from Livechat_Hub.events import CHAT_MESSAGE, EventSink, connected_event, error_event
from Livechat_Hub.session import CancellationToken, Session, SessionRegistry


class ChatAdapter(ABC):
    """
    Protocol adapter for one platform.

    A session runs `resolve` -> `connect` -> `decode_next` (repeatedly), every
    step raced against the session's cancellation token, and always finishes
    with `stop`, which must release the transport.
    """
    platform: Platform

    def __init__(self, sink: EventSink, registry: SessionRegistry, http: AsyncSession,
                 settings: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.sink = sink
        self.registry = registry
        self._http = http
        self.settings = settings or {}

    @abstractmethod
    def normalize_channel(self, identifier: str) -> str:
        """Canonical registry key for a caller-entered channel identifier."""
        pass

    @abstractmethod
    async def resolve(self, session: Session) -> None:
        """Maps the session's channel to platform-native ids (stored in session.ids)."""
        pass

    @abstractmethod
    async def connect(self, session: Session) -> None:
        """Opens the transport (stored in session.transport) and subscribes to the chat feed."""
        pass

    @abstractmethod
    async def decode_next(self, session: Session) -> List[NormalizedMessage]:
        """Waits for the next frame and decodes it. Frames that carry no chat yield []."""
        pass

    @abstractmethod
    async def send(self, channel: str, body: str, credentials: Optional[Credentials]) -> None:
        """Delivers an outbound chat message or raises SendError."""
        pass

    async def stop(self, session: Session) -> None:
        """Leaves the feed and closes the transport. Must not raise."""
        session.transport = None

    @abstractmethod
    def begin_oauth(self, open_url: Callable[[str], Any]) -> str:
        """Opens the platform's authorization page and returns its URL."""
        pass

    @abstractmethod
    async def complete_oauth(self, code_or_token: str) -> str:
        """Exchanges or validates what the authorization redirect returned, and emits the bearer token."""
        pass

    # --- shared helpers ---

    def remember_id(self, session: Session, name: str, value: Any) -> None:
        value = str(value)
        session.ids[name] = value
        self.registry.cache_id(self.platform, session.channel, name, value)

    def emit_message(self, message: NormalizedMessage) -> None:
        elements = tuple(
            e for e in message.inline_elements
            if 0 <= e.start_offset <= e.end_offset <= len(message.body)
        )
        if len(elements) != len(message.inline_elements):
            self.logger.debug(f"Dropped {len(message.inline_elements) - len(elements)} out-of-range inline elements from {message.id}")
            message = dataclasses.replace(message, inline_elements=elements)
        self.sink.emit(CHAT_MESSAGE, message)

    def emit_connected(self, resolved_id: str) -> None:
        self.sink.emit(connected_event(self.platform), resolved_id)

    def emit_error(self, exc: Exception) -> None:
        self.sink.emit(error_event(self.platform), ErrorEvent.from_exception(self.platform, exc))

    # --- session loop ---

    async def run(self, session: Session, token: CancellationToken) -> None:
        try:
            await token.race(self.resolve(session))
            await token.race(self.connect(session))
            while True:
                messages = await token.race(self.decode_next(session))
                for message in messages:
                    self.emit_message(message)
        finally:
            await self.stop(session)

    async def run_session(self, session: Session, token: CancellationToken) -> None:
        """
        Task body for one join. Connection and authentication failures end the
        session and are reported as '{platform}-error' events.
        """
        self.logger.info(f"Starting {self.platform.value} session for '{session.channel}'")
        try:
            await self.run(session, token)
        except SessionCancelled:
            self.logger.info(f"{self.platform.value} session for '{session.channel}' cancelled.")
        except SessionEnded as e:
            self.logger.info(f"{self.platform.value} session for '{session.channel}' ended: {e}")
        except LiveChatError as e:
            self.logger.error(f"{self.platform.value} session for '{session.channel}' failed: {e}")
            self.emit_error(e)
        except Exception as e:
            self.logger.error(f"Unexpected error in {self.platform.value} session for '{session.channel}': {e}", exc_info=True)
            self.emit_error(e)
        finally:
            self.registry.discard(session)
            self.logger.info(f"{self.platform.value} session for '{session.channel}' stopped.")
