# data_models.py
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple, Dict, Any


class Platform(str, Enum):
    TWITCH = "Twitch"
    YOUTUBE = "YouTube"
    KICK = "Kick"

    @property
    def event_prefix(self) -> str:
        """Lowercase name used to build per-platform event names, e.g. 'kick-connected'."""
        return self.value.lower()

    @classmethod
    def _missing_(cls, value):
        # Accept 'twitch', 'KICK', ' YouTube ' from command surfaces.
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return None


class MessageKind(str, Enum):
    CHAT = "chat"
    SYSTEM = "system-event"


@dataclass(frozen=True)
class InlineElement:
    """
    A marked span inside a message body representing an emote or emoji.

    Offsets are Python string indices (Unicode codepoints) into the body,
    `end_offset` is exclusive.
    """
    artifact_id: str
    display_code: str
    start_offset: int
    end_offset: int


@dataclass(frozen=True)
class NormalizedMessage:
    """
    A standardized, immutable representation of a chat event from any platform.

    This structure decouples downstream consumers from the specific
    data formats of the different chat protocols.

    Attributes:
        id (str): Platform-native message id, used by consumers for de-duplication.
        platform (Platform): The source platform.
        username (str): The display name of the user who sent the message.
        body (str): The text content of the message.
        timestamp (datetime): Local wall-clock time of receipt.
        color (Optional[str]): '#RRGGBB' display color, or None when unknown.
        badges (Tuple[str, ...]): Ordered badge names.
        is_moderator, is_vip, is_member (bool): Author status flags.
        inline_elements (Tuple[InlineElement, ...]): Emote/emoji spans within `body`.
        kind (MessageKind): Ordinary chat or a system event (cheer, sub, redemption...).
        system_note (Optional[str]): Human-readable annotation for system events.
    """
    id: str
    platform: Platform
    username: str
    body: str
    timestamp: datetime
    color: Optional[str] = None
    badges: Tuple[str, ...] = ()
    is_moderator: bool = False
    is_vip: bool = False
    is_member: bool = False
    inline_elements: Tuple[InlineElement, ...] = ()
    kind: MessageKind = MessageKind.CHAT
    system_note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation for event listeners outside the process."""
        data = asdict(self)
        data["platform"] = self.platform.value
        data["kind"] = self.kind.value
        data["timestamp"] = self.timestamp.isoformat()
        data["badges"] = list(self.badges)
        data["inline_elements"] = [asdict(e) for e in self.inline_elements]
        return data


@dataclass(frozen=True)
class Credentials:
    """
    A bearer credential, shared by value between the controller and sessions.

    `username` is only meaningful for Twitch IRC logins.
    """
    token: Optional[str] = None
    username: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    def __repr__(self) -> str:
        # Never leak the token through logs.
        hidden = f"{self.token[:5]}..." if self.token else None
        return f"Credentials(username={self.username!r}, token={hidden!r})"

