# kick.py
import base64
import hashlib
import json
import logging
import re
import secrets
import string
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import websockets
from curl_cffi.requests import RequestsError
from websockets.exceptions import ConnectionClosed, WebSocketException

from Livechat_Hub.base_adapter import ChatAdapter
from Livechat_Hub.data_models import Credentials, InlineElement, MessageKind, NormalizedMessage, Platform
from Livechat_Hub.errors import DecodeError, OAuthError, ResolutionError, SendError, TransportError
from Livechat_Hub.events import AUTH_TOKEN_RECEIVED
from Livechat_Hub.livechat_utils import normalize_hex_color, status_ok
from Livechat_Hub.session import Session

# The parent application is responsible for configuring the root logger.
logger = logging.getLogger(__name__)

PUSHER_KEY = "32cbd69e4b950bf97679"
PUSHER_CLUSTER = "us2"
CHAT_MESSAGE_EVENT = "App\\Events\\ChatMessageEvent"
KICK_CHANNEL_API = "https://kick.com/api/v2/channels"
KICK_CHAT_API = "https://api.kick.com/public/v1/chat"
KICK_AUTHORIZE_URL = "https://kick.com/oauth/authorize"
VERIFIER_LENGTH = 32

_EMOTE_TOKEN = re.compile(r"\[emote:(\d+):([\w\-]+)\]")


class KickApiError(ResolutionError):
    """Custom exception for Kick API-related errors."""
    pass


def generate_pkce_verifier(length: int = VERIFIER_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def pkce_challenge(verifier: str) -> str:
    """base64url(sha256(verifier)) without padding, as required by code_challenge_method=S256."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class PkceState:
    """
    Holds at most one outstanding PKCE verifier. A new login attempt replaces
    the previous verifier; an exchange consumes it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._verifier: Optional[str] = None

    def store(self, verifier: str) -> None:
        with self._lock:
            self._verifier = verifier

    def take(self) -> Optional[str]:
        with self._lock:
            verifier, self._verifier = self._verifier, None
            return verifier


def parse_emote_tokens(content: str) -> Tuple[InlineElement, ...]:
    """'[emote:37226:KEKW]' tokens become inline elements spanning the whole token."""
    return tuple(
        InlineElement(match.group(1), match.group(2), match.start(), match.end())
        for match in _EMOTE_TOKEN.finditer(content)
    )


def decode_chat_payload(data: Dict[str, Any]) -> NormalizedMessage:
    """Builds a message from the (already decoded) ChatMessageEvent payload."""
    content = data.get("content") or ""
    sender = data.get("sender") or {}
    if not isinstance(content, str) or not isinstance(sender, dict):
        raise DecodeError("Chat payload has unexpected content or sender types")
    identity = sender.get("identity") or {}
    if not isinstance(identity, dict):
        raise DecodeError("Chat payload sender identity is not an object")

    badges = []
    for badge in identity.get("badges") or []:
        badge_type = badge.get("type") if isinstance(badge, dict) else None
        if badge_type:
            badges.append(badge_type)

    return NormalizedMessage(
        id=str(data.get("id") or ""),
        platform=Platform.KICK,
        username=sender.get("username") or "Unknown",
        body=content,
        timestamp=datetime.now().astimezone(),
        color=normalize_hex_color(identity.get("color")),
        badges=tuple(badges),
        is_moderator="moderator" in badges,
        is_vip="vip" in badges,
        is_member=False,
        inline_elements=parse_emote_tokens(content),
        kind=MessageKind.CHAT,
    )


def decode_pusher_frame(text: str) -> Tuple[Optional[str], Optional[NormalizedMessage]]:
    """
    Returns (event name, message). Only ChatMessageEvent frames produce a
    message; their `data` field is itself a JSON-encoded string.
    """
    try:
        frame = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Frame is not valid JSON: {e}") from e
    if not isinstance(frame, dict):
        raise DecodeError("Frame is not a JSON object")

    event = frame.get("event")
    if event != CHAT_MESSAGE_EVENT:
        return event, None

    raw = frame.get("data")
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError as e:
        raise DecodeError(f"Chat event carries undecodable data: {e}") from e
    if not isinstance(data, dict):
        raise DecodeError("Chat event data is not a JSON object")
    try:
        return event, decode_chat_payload(data)
    except (TypeError, AttributeError, ValueError) as e:
        raise DecodeError(f"Chat payload has an unexpected shape: {e}") from e


class KickAdapter(ChatAdapter):
    """
    Kick chat: read-only Pusher WebSocket subscription for ingestion, the
    official REST API for sending, and PKCE OAuth through a token relay.
    """
    platform = Platform.KICK

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.pkce = PkceState()
        self._headers = {
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/110.0.0.0 Safari/537.36",
            "Accept": "application/json",
            "Accept-Language": "en-US,en;q=0.9",
        }

    def normalize_channel(self, identifier: str) -> str:
        return identifier.strip().lower()

    # --- identifier resolution ---

    async def get_channel_info(self, slug: str) -> Tuple[str, str]:
        """Fetches (chatroom_id, broadcaster_user_id) for a channel slug."""
        url = f"{self.settings.get('channel_api_url', KICK_CHANNEL_API)}/{slug}"
        try:
            # Use impersonate to mimic a real browser's TLS fingerprint
            res = await self._http.get(url, headers=self._headers, impersonate="chrome110")
        except RequestsError as e:
            logger.error(f"Network error while getting channel info for '{slug}': {e}")
            raise KickApiError(f"Could not retrieve channel info for '{slug}'.", platform=self.platform) from e

        if not status_ok(res.status_code):
            raise KickApiError(f"Kick channel lookup failed for '{slug}'.", platform=self.platform,
                               status=res.status_code, body=res.text[:500])
        try:
            data = res.json()
        except ValueError as e:
            raise KickApiError(f"Kick returned invalid channel data for '{slug}'.", platform=self.platform) from e
        if not isinstance(data, dict):
            raise ResolutionError(f"Kick returned invalid channel data for '{slug}'.", platform=self.platform)

        chatroom_id = (data.get("chatroom") or {}).get("id")
        if chatroom_id is None:
            raise ResolutionError(f"No chatroom ID found for '{slug}'.", platform=self.platform)
        # On v2/channels/{slug} the top-level 'id' is the channel id, which doubles as the user id when the others are absent
        user_id = next((data[k] for k in ("userid", "user_id", "id") if data.get(k) is not None), None)
        if user_id is None:
            raise ResolutionError(f"No user ID found for '{slug}'.", platform=self.platform)

        logger.info(f"Resolved Kick channel '{slug}': chatroom={chatroom_id}, user={user_id}")
        return str(chatroom_id), str(user_id)

    async def resolve(self, session: Session) -> None:
        chatroom_id = self.registry.cached_id(self.platform, session.channel, "chatroom_id")
        user_id = self.registry.cached_id(self.platform, session.channel, "broadcaster_user_id")
        if not chatroom_id or not user_id:
            chatroom_id, user_id = await self.get_channel_info(session.channel)
        self.remember_id(session, "chatroom_id", chatroom_id)
        self.remember_id(session, "broadcaster_user_id", user_id)

    # --- Pusher transport ---

    def pusher_url(self) -> str:
        cluster = self.settings.get("pusher_cluster", PUSHER_CLUSTER)
        key = self.settings.get("pusher_key", PUSHER_KEY)
        return f"wss://ws-{cluster}.pusher.com/app/{key}?protocol=7&client=js&version=8.4.0-rc2&flash=false"

    async def connect(self, session: Session) -> None:
        try:
            ws = await websockets.connect(self.pusher_url())
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Failed to connect to Kick chat server: {e}", platform=self.platform) from e
        session.transport = ws

        subscribe_msg = {
            "event": "pusher:subscribe",
            "data": {"auth": "", "channel": f"chatrooms.{session.ids['chatroom_id']}.v2"},
        }
        try:
            await ws.send(json.dumps(subscribe_msg))
        except WebSocketException as e:
            raise TransportError(f"Kick subscribe failed: {e}", platform=self.platform) from e
        self.emit_connected(session.channel)

    async def decode_next(self, session: Session) -> List[NormalizedMessage]:
        ws = session.transport
        try:
            text = await ws.recv()
        except ConnectionClosed as e:
            raise TransportError(f"Kick WS stream ended: {e}", platform=self.platform) from e
        if isinstance(text, bytes):
            return []

        try:
            event, message = decode_pusher_frame(text)
        except DecodeError as e:
            logger.debug(f"Skipping Kick frame: {e}")
            return []
        if event == "pusher:ping":
            try:
                await ws.send(json.dumps({"event": "pusher:pong", "data": {}}))
            except ConnectionClosed as e:
                raise TransportError(f"Kick WS closed while answering ping: {e}", platform=self.platform) from e
        elif event == "pusher:error":
            logger.warning(f"Kick Pusher error frame: {text[:200]}")
        elif event == "pusher_internal:subscription_succeeded":
            logger.info(f"Subscribed to Kick chatroom for '{session.channel}'")
        return [message] if message else []

    async def stop(self, session: Session) -> None:
        ws = session.transport
        session.transport = None
        if ws is None:
            return
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug(f"Error while closing Kick WebSocket: {e}")

    # --- sending ---

    async def broadcaster_id_for(self, channel: str) -> str:
        """Read-through lookup of the broadcaster user id used by the chat API."""
        cached = self.registry.cached_id(self.platform, channel, "broadcaster_user_id")
        if cached:
            return cached
        try:
            chatroom_id, user_id = await self.get_channel_info(channel)
        except ResolutionError as e:
            raise SendError("Could not resolve channel ID for sending", platform=self.platform,
                            status=e.status, body=e.body) from e
        self.registry.cache_id(self.platform, channel, "chatroom_id", chatroom_id)
        self.registry.cache_id(self.platform, channel, "broadcaster_user_id", user_id)
        return user_id

    async def send(self, channel: str, body: str, credentials: Optional[Credentials]) -> None:
        if credentials is None or not credentials.is_authenticated:
            raise SendError("Sending to Kick chat requires a logged-in account.", platform=self.platform)
        channel = self.normalize_channel(channel)
        broadcaster_id = await self.broadcaster_id_for(channel)

        payload = {
            "broadcaster_user_id": int(broadcaster_id) if broadcaster_id.isdigit() else broadcaster_id,
            "content": body,
            "type": "user",
        }
        headers = {
            "Authorization": f"Bearer {credentials.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            res = await self._http.post(self.settings.get("chat_api_url", KICK_CHAT_API), json=payload, headers=headers)
        except RequestsError as e:
            raise SendError(f"Network error sending Kick message: {e}", platform=self.platform) from e
        if not status_ok(res.status_code):
            raise SendError("Send failed", platform=self.platform, status=res.status_code, body=res.text)

    # --- OAuth (PKCE through the token relay) ---

    def authorize_url(self, challenge: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.settings.get("client_id", ""),
            "redirect_uri": self.settings.get("redirect_uri", ""),
            "scope": " ".join(self.settings.get("scopes", ["user:read", "channel:read", "chat:write"])),
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        return f"{KICK_AUTHORIZE_URL}?{urlencode(params)}"

    def begin_oauth(self, open_url: Callable[[str], Any]) -> str:
        verifier = generate_pkce_verifier()
        self.pkce.store(verifier)
        url = self.authorize_url(pkce_challenge(verifier))
        open_url(url)
        return url

    async def complete_oauth(self, code_or_token: str) -> str:
        verifier = self.pkce.take()
        if verifier is None:
            raise OAuthError("No pending PKCE verifier. Start the Kick login again.", platform=self.platform)

        relay_url = self.settings.get("token_relay_url")
        if not relay_url:
            raise OAuthError("No Kick token relay configured.", platform=self.platform)
        payload = {
            "code": code_or_token.strip(),
            "code_verifier": verifier,
            "redirect_uri": self.settings.get("redirect_uri", ""),
        }
        logger.info(f"Exchanging Kick code via relay: {relay_url}")
        try:
            res = await self._http.post(relay_url, json=payload, headers={"Accept": "application/json"})
        except RequestsError as e:
            raise OAuthError(f"Network error during Kick token exchange: {e}", platform=self.platform) from e

        if not status_ok(res.status_code):
            raise OAuthError("Token exchange failed", platform=self.platform, status=res.status_code, body=res.text)
        try:
            token = res.json().get("access_token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise OAuthError("No access_token in token exchange response", platform=self.platform,
                             status=res.status_code, body=res.text)

        logger.info("Kick Token Exchange Successful")
        self.sink.emit(AUTH_TOKEN_RECEIVED, token)
        return token
