"""
Error taxonomy shared by all chat adapters.

Per-frame decode problems are absorbed inside the adapters. Everything
defined here either terminates a session (resolution, transport,
authentication) or is reported synchronously to a caller (send, oauth).
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any

from Livechat_Hub.data_models import Platform


class ErrorKind(str, Enum):
    RESOLUTION = "resolution"
    TRANSPORT = "transport"
    AUTHENTICATION = "authentication"
    SEND = "send"
    OAUTH = "oauth"


class LiveChatError(Exception):
    """Base exception for every externally-reported live chat failure."""
    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str, platform: Optional[Platform] = None,
                 status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.platform = platform
        self.status = status
        self.body = body

    def __str__(self) -> str:
        text = self.message
        if self.status is not None:
            text = f"{text} (HTTP {self.status})"
        if self.body:
            text = f"{text}: {self.body}"
        return text


class ResolutionError(LiveChatError):
    """An identifier could not be mapped to a platform-native id."""
    kind = ErrorKind.RESOLUTION


class TransportError(LiveChatError):
    """Connect/read/write failure on a session transport."""
    kind = ErrorKind.TRANSPORT


class AuthenticationError(LiveChatError):
    """Invalid or expired credential. The UI should prompt for re-authentication."""
    kind = ErrorKind.AUTHENTICATION


class SendError(LiveChatError):
    """An outbound chat message could not be delivered. The session stays alive."""
    kind = ErrorKind.SEND


class OAuthError(LiveChatError):
    kind = ErrorKind.OAUTH


class DecodeError(Exception):
    """A single frame had an unexpected shape. Never terminates a session."""


class SessionEnded(Exception):
    """The remote side ended the feed normally (e.g. the stream went offline)."""


class SessionCancelled(Exception):
    """Raised inside a session task when its cancellation token fires."""


@dataclass(frozen=True)
class ErrorEvent:
    """Payload of the '{platform}-error' events."""
    platform: Platform
    kind: ErrorKind
    message: str
    status: Optional[int] = None
    body: Optional[str] = None

    @classmethod
    def from_exception(cls, platform: Platform, exc: Exception) -> "ErrorEvent":
        if isinstance(exc, LiveChatError):
            return cls(platform=platform, kind=exc.kind, message=exc.message,
                       status=exc.status, body=exc.body)
        return cls(platform=platform, kind=ErrorKind.TRANSPORT, message=str(exc) or exc.__class__.__name__)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform.value,
            "kind": self.kind.value,
            "message": self.message,
            "status": self.status,
            "body": self.body,
        }
