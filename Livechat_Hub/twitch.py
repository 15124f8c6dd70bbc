# twitch.py
import asyncio
import logging
import random
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from curl_cffi.requests import RequestsError

from Livechat_Hub.base_adapter import ChatAdapter
from Livechat_Hub.data_models import Credentials, InlineElement, MessageKind, NormalizedMessage, Platform
from Livechat_Hub.errors import AuthenticationError, OAuthError, SendError, TransportError
from Livechat_Hub.events import AUTH_TOKEN_RECEIVED, TWITCH_USER_STATE
from Livechat_Hub.livechat_utils import extract_access_token, mask_token, normalize_hex_color, status_ok
from Livechat_Hub.session import Session

logger = logging.getLogger(__name__)

TWITCH_IRC_HOST = "irc.chat.twitch.tv"
TWITCH_IRC_TLS_PORT = 6697
TWITCH_AUTHORIZE_URL = "https://id.twitch.tv/oauth2/authorize"
TWITCH_VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"
SYSTEM_EVENT_COLOR = "#9146FF"
AUTH_FAILURE_NOTICES = (
    "Login authentication failed",
    "Improperly formatted auth",
    "Login unsuccessful",
)

_TAG_ESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}


class TwitchIrcError(TransportError):
    """Custom exception for Twitch IRC connection errors."""
    pass


@dataclass(frozen=True)
class IrcLine:
    """One parsed IRC line. (Internal to this module)"""
    command: str
    params: Tuple[str, ...] = ()
    trailing: Optional[str] = None
    prefix: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def nick(self) -> Optional[str]:
        if not self.prefix:
            return None
        return self.prefix.split("!", 1)[0]


def unescape_tag_value(value: str) -> str:
    """Reverses IRCv3 message-tag escaping (\\s, \\:, \\\\, \\r, \\n)."""
    out = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\":
            if i + 1 < len(value):
                nxt = value[i + 1]
                out.append(_TAG_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def parse_irc_line(raw: str) -> Optional[IrcLine]:
    """
    Parses '@tags :prefix COMMAND params :trailing'. Returns None for blank lines.
    """
    line = raw.rstrip("\r\n")
    if not line.strip():
        return None

    tags: Dict[str, str] = {}
    if line.startswith("@"):
        tag_part, _, line = line[1:].partition(" ")
        for item in tag_part.split(";"):
            if not item:
                continue
            key, _, value = item.partition("=")
            tags[key] = unescape_tag_value(value)

    line = line.lstrip(" ")
    prefix = None
    if line.startswith(":"):
        prefix, _, line = line[1:].partition(" ")

    trailing = None
    if line.startswith(":"):
        line, trailing = "", line[1:]
    elif " :" in line:
        line, trailing = line.split(" :", 1)

    parts = line.split()
    if not parts:
        return None
    return IrcLine(command=parts[0].upper(), params=tuple(parts[1:]), trailing=trailing, prefix=prefix, tags=tags)


def parse_badges(badges_tag: str) -> Tuple[str, ...]:
    """'moderator/1,subscriber/12' -> ('moderator', 'subscriber')"""
    return tuple(b.split("/", 1)[0] for b in badges_tag.split(",") if b)


def parse_emotes(emotes_tag: str, body: str) -> Tuple[InlineElement, ...]:
    """
    Converts the 'emotes' tag ('25:0-4,12-16/1902:6-10') into inline elements.

    Twitch reports inclusive codepoint ranges, which map directly onto Python
    string indices. Ranges that fall outside the body are skipped.
    """
    elements = []
    for group in emotes_tag.split("/"):
        emote_id, _, ranges = group.partition(":")
        if not emote_id or not ranges:
            continue
        for span in ranges.split(","):
            start_s, _, end_s = span.partition("-")
            try:
                start, end = int(start_s), int(end_s) + 1
            except ValueError:
                continue
            if 0 <= start < end <= len(body):
                elements.append(InlineElement(emote_id, body[start:end], start, end))
    return tuple(sorted(elements, key=lambda e: e.start_offset))


def _display_name(line: IrcLine) -> str:
    return line.tags.get("display-name") or line.tags.get("login") or line.nick or "Unknown"


def _strip_action(text: str) -> str:
    """'/me' messages arrive wrapped as '\\x01ACTION text\\x01'."""
    if text.startswith("\x01ACTION ") and text.endswith("\x01"):
        return text[len("\x01ACTION "):-1]
    return text


def decode_privmsg(line: IrcLine) -> NormalizedMessage:
    """
    Decodes a PRIVMSG into a chat message. Cheers and channel-point
    redemptions are classified as system events.
    """
    body = _strip_action(line.trailing or "")
    badges = parse_badges(line.tags.get("badges", ""))

    kind = MessageKind.CHAT
    system_note = None
    bits = line.tags.get("bits")
    if bits:
        kind = MessageKind.SYSTEM
        system_note = f"Cheered {bits} Bits!"
    elif line.tags.get("custom-reward-id"):
        # The tag only carries the reward id, not its name.
        kind = MessageKind.SYSTEM
        system_note = "Redeemed a Channel Reward!"

    return NormalizedMessage(
        id=line.tags.get("id") or datetime.now(timezone.utc).isoformat(),
        platform=Platform.TWITCH,
        username=_display_name(line),
        body=body,
        timestamp=datetime.now().astimezone(),
        color=normalize_hex_color(line.tags.get("color")),
        badges=badges,
        is_moderator="moderator" in badges,
        is_vip="vip" in badges,
        is_member=False,
        inline_elements=parse_emotes(line.tags.get("emotes", ""), body),
        kind=kind,
        system_note=system_note,
    )


def decode_usernotice(line: IrcLine) -> NormalizedMessage:
    """Decodes a USERNOTICE (sub, resub, raid, gift...) into a system event."""
    body = line.trailing or ""
    return NormalizedMessage(
        # USERNOTICE ids are not stable across notice types, fall back to receipt time
        id=line.tags.get("id") or datetime.now(timezone.utc).isoformat(),
        platform=Platform.TWITCH,
        username=_display_name(line),
        body=body,
        timestamp=datetime.now().astimezone(),
        color=SYSTEM_EVENT_COLOR,
        inline_elements=parse_emotes(line.tags.get("emotes", ""), body),
        kind=MessageKind.SYSTEM,
        system_note=line.tags.get("system-msg") or line.tags.get("msg-id"),
    )


class IrcConnection:
    """Line-oriented wrapper around an asyncio stream pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer

    async def send_line(self, line: str) -> None:
        self._writer.write(f"{line}\r\n".encode("utf-8"))
        await self._writer.drain()

    async def read_line(self) -> str:
        data = await self._reader.readline()
        return data.decode("utf-8", errors="replace")

    async def close(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError, ssl.SSLError) as e:
            logger.debug(f"Error while closing Twitch IRC connection: {e}")


class TwitchAdapter(ChatAdapter):
    """
    Twitch chat over IRC/TLS. Connects anonymously (read-only) unless both a
    username and a token are provided.
    """
    platform = Platform.TWITCH

    def normalize_channel(self, identifier: str) -> str:
        return identifier.strip().lstrip("#").strip().lower()

    async def resolve(self, session: Session) -> None:
        # The numeric room id arrives with ROOMSTATE after JOIN.
        self.remember_id(session, "login", session.channel)

    async def connect(self, session: Session) -> None:
        host = self.settings.get("irc_host", TWITCH_IRC_HOST)
        port = int(self.settings.get("irc_port", TWITCH_IRC_TLS_PORT))
        try:
            reader, writer = await asyncio.open_connection(host, port, ssl=True)
        except (OSError, ssl.SSLError) as e:
            raise TwitchIrcError(f"Failed to connect to Twitch chat server: {e}", platform=self.platform) from e

        connection = IrcConnection(reader, writer)
        session.transport = connection

        creds = session.credentials
        try:
            await connection.send_line("CAP REQ :twitch.tv/tags twitch.tv/commands")
            if creds.is_authenticated and creds.username:
                token = creds.token.removeprefix("oauth:")
                self.logger.info(f"Authenticating as user: '{creds.username}' (token {mask_token(token)})")
                await connection.send_line(f"PASS oauth:{token}")
                await connection.send_line(f"NICK {creds.username.lower()}")
            else:
                self.logger.info("Authenticating anonymously")
                await connection.send_line(f"NICK justinfan{random.randint(10000, 99999)}")
            self.logger.info(f"Attempting to join Twitch channel: {session.channel}")
            await connection.send_line(f"JOIN #{session.channel}")
        except (ConnectionError, OSError) as e:
            raise TwitchIrcError(f"Failed to log in to Twitch chat: {e}", platform=self.platform) from e

    async def decode_next(self, session: Session) -> List[NormalizedMessage]:
        connection: IrcConnection = session.transport
        try:
            raw = await connection.read_line()
        except (ConnectionError, OSError, ssl.SSLError) as e:
            raise TwitchIrcError(f"Twitch connection lost: {e}", platform=self.platform) from e
        if not raw:
            raise TwitchIrcError("Twitch incoming stream ended.", platform=self.platform)

        line = parse_irc_line(raw)
        if line is None:
            return []

        if line.command == "PING":
            await connection.send_line(f"PONG :{line.trailing or 'tmi.twitch.tv'}")
            return []
        if line.command == "NOTICE":
            self._handle_notice(line)
            return []
        if line.command == "RECONNECT":
            raise TwitchIrcError("Twitch asked the client to reconnect.", platform=self.platform)

        try:
            if line.command == "PRIVMSG":
                return [decode_privmsg(line)]
            if line.command == "USERNOTICE":
                return [decode_usernotice(line)]
            if line.command == "ROOMSTATE":
                self._handle_roomstate(session, line)
            elif line.command in ("USERSTATE", "GLOBALUSERSTATE"):
                self._handle_userstate(line)
            elif line.command == "JOIN":
                self.logger.debug(f"Twitch Joined: {line.params[0] if line.params else session.channel}")
        except (KeyError, ValueError, IndexError) as e:
            self.logger.warning(f"Skipping malformed Twitch {line.command} line: {e}")
        return []

    def _handle_notice(self, line: IrcLine) -> None:
        text = line.trailing or ""
        self.logger.info(f"Twitch Notice: {text}")
        if any(text.startswith(notice) for notice in AUTH_FAILURE_NOTICES):
            raise AuthenticationError(
                "Login authentication failed. Please check your token.",
                platform=self.platform,
            )

    def _handle_roomstate(self, session: Session, line: IrcLine) -> None:
        room_id = line.tags.get("room-id")
        if room_id and session.ids.get("room_id") != room_id:
            self.logger.info(f"Twitch RoomState: room-id={room_id}")
            self.remember_id(session, "room_id", room_id)
            self.emit_connected(room_id)

    def _handle_userstate(self, line: IrcLine) -> None:
        badges = parse_badges(line.tags.get("badges", ""))
        is_mod = "moderator" in badges or "broadcaster" in badges
        # GLOBALUSERSTATE never carries channel moderator badges, only the broadcaster one
        if line.command == "GLOBALUSERSTATE" and not is_mod:
            return
        self.sink.emit(TWITCH_USER_STATE, {"is_mod": is_mod, "badges": list(badges)})

    async def stop(self, session: Session) -> None:
        connection: Optional[IrcConnection] = session.transport
        session.transport = None
        if connection is None:
            return
        try:
            self.logger.info(f"Leaving Twitch channel: {session.channel}")
            await connection.send_line(f"PART #{session.channel}")
        except (ConnectionError, OSError) as e:
            self.logger.debug(f"Could not send PART for #{session.channel}: {e}")
        await connection.close()

    async def send(self, channel: str, body: str, credentials: Optional[Credentials] = None) -> None:
        """
        Writes PRIVMSG on the joined session's connection, so the message goes
        out as the account that session logged in with. `credentials`, when
        given, must name that same account.
        """
        channel = self.normalize_channel(channel)
        session = self.registry.get(self.platform, channel)
        if session is None or session.transport is None:
            raise SendError("Twitch client not connected", platform=self.platform)
        login = session.credentials
        if not login.is_authenticated or not login.username:
            raise SendError("Sending to Twitch chat requires a logged-in account.", platform=self.platform)
        if credentials is not None and credentials.username and \
                credentials.username.lower() != login.username.lower():
            raise SendError(f"Channel '{channel}' is joined as '{login.username}'; re-join to send as "
                            f"'{credentials.username}'.", platform=self.platform)

        text = " ".join(body.splitlines()).strip()
        if not text:
            raise SendError("Cannot send an empty message.", platform=self.platform)
        self.logger.info(f"Sending message to '{channel}'")
        try:
            await session.transport.send_line(f"PRIVMSG #{channel} :{text}")
        except (ConnectionError, OSError) as e:
            raise SendError(f"Failed to send Twitch message: {e}", platform=self.platform) from e

    # --- OAuth (implicit grant) ---

    def authorize_url(self) -> str:
        params = {
            "response_type": "token",
            "client_id": self.settings.get("client_id", ""),
            "redirect_uri": self.settings.get("redirect_uri", ""),
            "scope": " ".join(self.settings.get("scopes", ["chat:read", "chat:edit"])),
        }
        return f"{TWITCH_AUTHORIZE_URL}?{urlencode(params)}"

    def begin_oauth(self, open_url: Callable[[str], Any]) -> str:
        url = self.authorize_url()
        open_url(url)
        return url

    async def complete_oauth(self, code_or_token: str) -> str:
        token = extract_access_token(code_or_token).removeprefix("oauth:")
        if not token:
            raise OAuthError("No Twitch access token provided.", platform=self.platform)
        try:
            res = await self._http.get(TWITCH_VALIDATE_URL, headers={"Authorization": f"OAuth {token}"})
        except RequestsError as e:
            raise OAuthError(f"Network error validating Twitch token: {e}", platform=self.platform) from e
        if not status_ok(res.status_code):
            raise OAuthError("Twitch rejected the access token.", platform=self.platform,
                             status=res.status_code, body=res.text)
        data = res.json()
        self.logger.info(f"Twitch token valid for login '{data.get('login')}' with scopes {data.get('scopes')}")
        self.sink.emit(AUTH_TOKEN_RECEIVED, token)
        return token
