# youtube.py
import asyncio
import json
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

import google.oauth2.credentials
from curl_cffi.requests import RequestsError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from Livechat_Hub.base_adapter import ChatAdapter
from Livechat_Hub.data_models import Credentials, InlineElement, MessageKind, NormalizedMessage, Platform
from Livechat_Hub.errors import OAuthError, ResolutionError, SendError, SessionEnded, TransportError
from Livechat_Hub.events import AUTH_TOKEN_RECEIVED
from Livechat_Hub.livechat_utils import extract_access_token, retry_with_backoff, status_ok
from Livechat_Hub.session import Session

# Set up logging
logger = logging.getLogger(__name__)

YOUTUBE_BASE_URL = "https://www.youtube.com"
LIVE_CHAT_ENDPOINT = "https://www.youtube.com/youtubei/v1/live_chat/get_live_chat"
GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
DEFAULT_CLIENT_VERSION = "2.20230622.06.00"
SEND_SCOPES = (
    "https://www.googleapis.com/auth/youtube.force-ssl",
    "https://www.googleapis.com/auth/youtube",
)
MODERATOR_COLOR = "#5E84F1"
MEMBER_COLOR = "#2BA640"
SUPER_CHAT_COLOR = "#FFCA28"

_API_KEY_RE = re.compile(r'"INNERTUBE_API_KEY":"([^"]+)"')
_CONTINUATION_RE = re.compile(r'"continuation":"([^"]+)"')
_CANONICAL_RE = re.compile(r'link rel="canonical" href="https://www.youtube.com/watch\?v=([^"]+)"')
_VIDEO_ID_RE = re.compile(r'"videoId":"([^"]+)"')


class YouTubeApiError(ResolutionError):
    """Custom exception for YouTube API-related errors."""
    pass


class YouTubeSendFailure(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    MISSING_SCOPE = "missing_scope"
    API_DISABLED = "api_disabled"
    NO_CHANNEL = "no_channel"
    STREAM_ENDED = "stream_ended"
    NO_LIVE_CHAT = "no_live_chat"
    REQUEST_FAILED = "request_failed"


class YouTubeSendError(SendError):
    """A send failure with a user-actionable reason."""

    def __init__(self, reason: YouTubeSendFailure, message: str, status: Optional[int] = None,
                 body: Optional[str] = None):
        super().__init__(message, platform=Platform.YOUTUBE, status=status, body=body)
        self.reason = reason


# --- identifier resolution ---

def normalize_youtube_input(raw: str) -> str:
    """
    'SomeChannel' -> '@SomeChannel'; 'youtube.com/@x' -> 'youtube.com/@x/live'.
    Eleven characters or fewer without a domain is taken to be a video id.
    """
    candidate = raw.strip()
    has_domain = "youtube.com" in candidate or "youtu.be" in candidate
    if "youtube.com/@" in candidate and "/live" not in candidate:
        candidate = f"{candidate.rstrip('/')}/live"
    elif not has_domain and not candidate.startswith("@") and len(candidate) > 11:
        candidate = f"@{candidate}"
    return candidate


def extract_video_id_from_url(url: str) -> Optional[str]:
    """Video id from a watch, share, /live/, /shorts/ or /embed/ URL."""
    if "://" not in url:
        url = f"https://{url}"
    parsed = urlparse(url)
    video_id = parse_qs(parsed.query).get("v", [None])[0]
    if video_id:
        return video_id

    segments = [s for s in parsed.path.split("/") if s]
    if parsed.netloc.endswith("youtu.be") and segments:
        return segments[0]
    for marker in ("live", "shorts", "embed"):
        if marker in segments:
            idx = segments.index(marker)
            if idx + 1 < len(segments):
                return segments[idx + 1]
    return None


def find_video_id_in_html(html: str) -> Optional[str]:
    match = _CANONICAL_RE.search(html) or _VIDEO_ID_RE.search(html)
    return match.group(1) if match else None


def extract_bootstrap(html: str) -> Tuple[str, str]:
    """
    Returns (api_key, continuation) from a watch page. The continuation is
    only searched for after the liveChatRenderer marker, since the page holds
    several unrelated continuations.
    """
    key_match = _API_KEY_RE.search(html)
    if not key_match:
        raise YouTubeApiError("Could not find INNERTUBE_API_KEY. Is the video live?", platform=Platform.YOUTUBE)

    pos = html.find("liveChatRenderer")
    cont_match = _CONTINUATION_RE.search(html, pos) if pos != -1 else None
    if not cont_match:
        raise YouTubeApiError("Could not find initial continuation token. Stream might be offline or no chat.",
                              platform=Platform.YOUTUBE)
    return key_match.group(1), cont_match.group(1)


def next_continuation(data: Dict[str, Any]) -> Optional[str]:
    continuations = (data.get("continuationContents", {})
                     .get("liveChatContinuation", {})
                     .get("continuations") or [])
    if not continuations:
        return None
    first = continuations[0]
    for key in ("invalidationContinuationData", "timedContinuationData"):
        token = (first.get(key) or {}).get("continuation")
        if token:
            return token
    return None


# --- item decoding ---

def build_message_text(runs: List[Dict[str, Any]]) -> Tuple[str, Tuple[InlineElement, ...]]:
    """Concatenates text runs; emoji runs become inline elements at the current offset."""
    body = ""
    elements = []
    for run in runs:
        if "text" in run:
            body += run["text"]
        elif "emoji" in run:
            emoji = run["emoji"]
            emoji_id = emoji.get("emojiId", "")
            shortcuts = emoji.get("shortcuts") or []
            code = shortcuts[0] if shortcuts else emoji_id
            if not code:
                continue
            start = len(body)
            body += code
            elements.append(InlineElement(emoji_id or code, code, start, len(body)))
    return body, tuple(elements)


def _simple_text(node: Optional[Dict[str, Any]]) -> str:
    if not node:
        return ""
    if "simpleText" in node:
        return node["simpleText"]
    return "".join(run.get("text", "") for run in node.get("runs", []))


def _author_status(renderer: Dict[str, Any]) -> Tuple[Tuple[str, ...], bool, bool]:
    badges = []
    is_mod = is_member = False
    for badge in renderer.get("authorBadges", []):
        tooltip = badge.get("liveChatAuthorBadgeRenderer", {}).get("tooltip", "")
        if not tooltip:
            continue
        if "Moderator" in tooltip:
            is_mod = True
            badges.append("moderator")
        elif "Member" in tooltip:
            is_member = True
            badges.append("member")
        elif "Owner" in tooltip:
            badges.append("owner")
        elif "Verified" in tooltip:
            badges.append("verified")
    return tuple(badges), is_mod, is_member


def decode_chat_item(item: Dict[str, Any], not_before_usec: int = 0) -> Optional[NormalizedMessage]:
    """
    Decodes one addChatItemAction item. Returns None for unsupported item
    types and for anything the endpoint reports as older than `not_before_usec`.
    """
    if "liveChatTextMessageRenderer" in item:
        renderer, kind = item["liveChatTextMessageRenderer"], MessageKind.CHAT
    elif "liveChatPaidMessageRenderer" in item:
        renderer, kind = item["liveChatPaidMessageRenderer"], MessageKind.SYSTEM
    elif "liveChatMembershipItemRenderer" in item:
        renderer, kind = item["liveChatMembershipItemRenderer"], MessageKind.SYSTEM
    else:
        return None

    try:
        timestamp_usec = int(renderer.get("timestampUsec", 0))
    except (TypeError, ValueError):
        timestamp_usec = 0
    if timestamp_usec < not_before_usec:
        return None

    body, elements = build_message_text(renderer.get("message", {}).get("runs", []))
    badges, is_mod, is_member = _author_status(renderer)

    system_note = None
    color = MODERATOR_COLOR if is_mod else MEMBER_COLOR if is_member else None
    if "liveChatPaidMessageRenderer" in item:
        system_note = f"Super Chat {_simple_text(renderer.get('purchaseAmountText'))}".strip()
        color = SUPER_CHAT_COLOR
    elif "liveChatMembershipItemRenderer" in item:
        system_note = _simple_text(renderer.get("headerSubtext")) or "New member"
        color = MEMBER_COLOR

    return NormalizedMessage(
        id=renderer.get("id", ""),
        platform=Platform.YOUTUBE,
        username=_simple_text(renderer.get("authorName")) or "Unknown",
        body=body,
        timestamp=datetime.now().astimezone(),
        color=color,
        badges=badges,
        is_moderator=is_mod,
        is_vip=False,
        is_member=is_member,
        inline_elements=elements,
        kind=kind,
        system_note=system_note,
    )


def decode_chat_actions(data: Dict[str, Any], not_before_usec: int = 0) -> List[NormalizedMessage]:
    actions = (data.get("continuationContents", {})
               .get("liveChatContinuation", {})
               .get("actions") or [])
    messages = []
    for action in actions:
        item = action.get("addChatItemAction", {}).get("item")
        if not item:
            continue
        try:
            message = decode_chat_item(item, not_before_usec)
        except (KeyError, TypeError, AttributeError) as e:
            logger.debug(f"Skipping malformed YouTube chat item: {e}")
            continue
        if message:
            messages.append(message)
    return messages


def _http_error_reason(e: HttpError) -> str:
    try:
        payload = json.loads(e.content.decode("utf-8"))
        errors = payload.get("error", {}).get("errors") or [{}]
        return errors[0].get("reason", "") or payload.get("error", {}).get("status", "")
    except (ValueError, AttributeError, UnicodeDecodeError):
        return ""


def classify_http_error(e: HttpError) -> YouTubeSendFailure:
    status = e.resp.status
    reason = _http_error_reason(e)
    if status == 401:
        return YouTubeSendFailure.NOT_AUTHENTICATED
    if reason in ("accessNotConfigured", "SERVICE_DISABLED"):
        return YouTubeSendFailure.API_DISABLED
    if reason in ("insufficientPermissions", "ACCESS_TOKEN_SCOPE_INSUFFICIENT"):
        return YouTubeSendFailure.MISSING_SCOPE
    if reason in ("liveChatEnded", "liveChatDisabled"):
        return YouTubeSendFailure.STREAM_ENDED
    if reason in ("liveChatNotFound",):
        return YouTubeSendFailure.NO_LIVE_CHAT
    if reason in ("youtubeSignupRequired", "channelNotFound"):
        return YouTubeSendFailure.NO_CHANNEL
    return YouTubeSendFailure.REQUEST_FAILED


class YouTubeAdapter(ChatAdapter):
    """
    YouTube chat scraped from the watch page's live-chat renderer and polled
    through the web client's get_live_chat endpoint. Sending goes through the
    official Data API with a user OAuth token.
    """
    platform = Platform.YOUTUBE

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._headers = {
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/110.0.0.0 Safari/537.36",
            "Accept-Language": "en-US,en;q=0.9",
        }

    def normalize_channel(self, identifier: str) -> str:
        return identifier.strip()

    # --- identifier resolution ---

    async def resolve_video_id(self, raw: str) -> str:
        candidate = normalize_youtube_input(raw)

        if candidate.startswith("@") or "/live" in candidate:
            direct = extract_video_id_from_url(candidate) if "/live/" in candidate else None
            if direct:
                return direct
            live_url = f"{YOUTUBE_BASE_URL}/{candidate}/live" if candidate.startswith("@") else candidate
            if "://" not in live_url:
                live_url = f"https://{live_url}"
            return await self._resolve_live_page(live_url, candidate)

        if "youtube.com" in candidate or "youtu.be" in candidate:
            video_id = extract_video_id_from_url(candidate)
            if not video_id:
                raise ResolutionError(f"Could not find a video id in '{raw}'.", platform=self.platform)
            return video_id

        return candidate

    async def _resolve_live_page(self, live_url: str, fallback: str) -> str:
        logger.info(f"Resolving handle/url {live_url}...")
        try:
            res = await self._http.get(live_url, headers=self._headers, impersonate="chrome110", allow_redirects=True)
        except RequestsError as e:
            logger.warning(f"Failed to resolve handle: {e}")
            return fallback

        final_url = str(res.url or live_url)
        logger.debug(f"Redirected to: {final_url}")
        video_id = extract_video_id_from_url(final_url)
        if not video_id:
            video_id = find_video_id_in_html(res.text or "")
        if video_id:
            return video_id
        logger.warning(f"Could not resolve live stream from {final_url}. Is the user live?")
        return fallback

    async def resolve(self, session: Session) -> None:
        video_id = await self.resolve_video_id(session.channel)
        logger.info(f"Starting YouTube chat for video: {video_id}")
        self.remember_id(session, "video_id", video_id)

    # --- polling transport ---

    @retry_with_backoff(max_retries=3, initial_delay=2, backoff_factor=2, exceptions=(RequestsError,))
    async def fetch_watch_page(self, video_id: str) -> str:
        res = await self._http.get(f"{YOUTUBE_BASE_URL}/watch?v={video_id}", headers=self._headers,
                                   impersonate="chrome110")
        if not status_ok(res.status_code):
            raise YouTubeApiError(f"Failed to fetch YouTube page for '{video_id}'.", platform=self.platform,
                                  status=res.status_code)
        return res.text

    async def connect(self, session: Session) -> None:
        video_id = session.ids["video_id"]
        try:
            html = await self.fetch_watch_page(video_id)
        except RequestsError as e:
            raise TransportError(f"Failed to fetch YouTube page: {e}", platform=self.platform) from e
        api_key, continuation = extract_bootstrap(html)
        session.transport = {
            "api_key": api_key,
            "continuation": continuation,
            "not_before_usec": int(session.started_at.timestamp() * 1_000_000),
            "polls": 0,
        }
        self.emit_connected(video_id)

    async def decode_next(self, session: Session) -> List[NormalizedMessage]:
        state = session.transport
        if state["polls"]:
            await asyncio.sleep(float(self.settings.get("poll_interval_s", 1)))
        state["polls"] += 1

        url = f"{LIVE_CHAT_ENDPOINT}?{urlencode({'key': state['api_key']})}"
        body = {
            "context": {
                "client": {
                    "clientName": "WEB",
                    "clientVersion": self.settings.get("client_version", DEFAULT_CLIENT_VERSION),
                }
            },
            "continuation": state["continuation"],
        }
        try:
            res = await self._http.post(url, json=body, headers=self._headers, impersonate="chrome110")
            if not status_ok(res.status_code):
                raise YouTubeApiError("Chat request failed", platform=self.platform, status=res.status_code)
            data = res.json()
            if not isinstance(data, dict):
                raise ValueError("Unexpected chat response shape")
        except (RequestsError, YouTubeApiError, ValueError) as e:
            logger.warning(f"Chat request failed: {e}")
            await asyncio.sleep(float(self.settings.get("error_backoff_s", 5)))
            return []

        messages = decode_chat_actions(data, state["not_before_usec"])
        continuation = next_continuation(data)
        if not continuation:
            # Deliver what this page carried before ending.
            for message in messages:
                self.emit_message(message)
            raise SessionEnded("No next continuation found. Chat has ended or is disabled.")
        state["continuation"] = continuation
        return messages

    async def stop(self, session: Session) -> None:
        session.transport = None

    # --- sending (YouTube Data API v3) ---

    async def _token_scopes(self, token: str) -> List[str]:
        try:
            res = await self._http.get(GOOGLE_TOKENINFO_URL, params={"access_token": token})
        except RequestsError as e:
            raise YouTubeSendError(YouTubeSendFailure.REQUEST_FAILED, f"Could not verify YouTube token: {e}") from e
        if not status_ok(res.status_code):
            raise YouTubeSendError(YouTubeSendFailure.NOT_AUTHENTICATED,
                                   "YouTube token is invalid or expired. Please log in again.",
                                   status=res.status_code, body=res.text)
        return (res.json().get("scope") or "").split()

    def _youtube_client(self, token: str):
        creds = google.oauth2.credentials.Credentials(token=token)
        return build("youtube", "v3", credentials=creds, cache_discovery=False)

    async def _execute(self, request):
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            reason = classify_http_error(e)
            logger.error(f"HTTP error from YouTube Data API ({reason.value}): {e}")
            raise YouTubeSendError(reason, f"YouTube API request failed: {reason.value}",
                                   status=e.resp.status, body=_http_error_reason(e) or None) from e

    async def live_chat_id_for(self, youtube, channel: str) -> str:
        """
        Active live chat id for a channel identifier, resolved lazily. The chat
        id is cached per video, so a channel that goes live again with a new
        video gets a fresh lookup.
        """
        video_id = self.registry.cached_id(self.platform, channel, "video_id")
        if not video_id:
            try:
                video_id = await self.resolve_video_id(channel)
            except ResolutionError as e:
                raise YouTubeSendError(YouTubeSendFailure.NO_LIVE_CHAT, str(e)) from e
            self.registry.cache_id(self.platform, channel, "video_id", video_id)
        cached = self.registry.cached_id(self.platform, video_id, "live_chat_id")
        if cached:
            return cached

        response = await self._execute(youtube.videos().list(part="liveStreamingDetails", id=video_id))
        items = response.get("items") or []
        if not items:
            raise YouTubeSendError(YouTubeSendFailure.NO_LIVE_CHAT, f"No YouTube video found for '{video_id}'.")
        details = items[0].get("liveStreamingDetails") or {}
        live_chat_id = details.get("activeLiveChatId")
        if not live_chat_id:
            if details.get("actualEndTime"):
                raise YouTubeSendError(YouTubeSendFailure.STREAM_ENDED, "The livestream has ended.")
            raise YouTubeSendError(YouTubeSendFailure.NO_LIVE_CHAT, "This video has no active live chat.")
        self.registry.cache_id(self.platform, video_id, "live_chat_id", live_chat_id)
        return live_chat_id

    async def send(self, channel: str, body: str, credentials: Optional[Credentials]) -> None:
        if credentials is None or not credentials.is_authenticated:
            raise YouTubeSendError(YouTubeSendFailure.NOT_AUTHENTICATED, "Please log in to YouTube to send messages.")
        channel = self.normalize_channel(channel)
        token = credentials.token

        scopes = await self._token_scopes(token)
        if not any(scope in scopes for scope in SEND_SCOPES):
            raise YouTubeSendError(YouTubeSendFailure.MISSING_SCOPE,
                                   "YouTube token lacks the youtube.force-ssl scope. Please log in again.")

        youtube = await asyncio.to_thread(self._youtube_client, token)

        channels = await self._execute(youtube.channels().list(part="id", mine=True))
        if not channels.get("items"):
            raise YouTubeSendError(YouTubeSendFailure.NO_CHANNEL,
                                   "This Google account has no YouTube channel. Create one to chat.")

        live_chat_id = await self.live_chat_id_for(youtube, channel)
        request = youtube.liveChatMessages().insert(
            part="snippet",
            body={
                "snippet": {
                    "liveChatId": live_chat_id,
                    "type": "textMessageEvent",
                    "textMessageDetails": {"messageText": body},
                }
            },
        )
        await self._execute(request)
        logger.info(f"Sent YouTube message to live chat {live_chat_id}")

    # --- OAuth (implicit grant) ---

    def authorize_url(self) -> str:
        params = {
            "client_id": self.settings.get("client_id", ""),
            "redirect_uri": self.settings.get("redirect_uri", ""),
            "response_type": "token",
            "scope": " ".join(self.settings.get("scopes", [SEND_SCOPES[0], "email", "profile", "openid"])),
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    def begin_oauth(self, open_url: Callable[[str], Any]) -> str:
        url = self.authorize_url()
        open_url(url)
        return url

    async def complete_oauth(self, code_or_token: str) -> str:
        token = extract_access_token(code_or_token)
        if not token:
            raise OAuthError("No YouTube access token provided.", platform=self.platform)
        try:
            res = await self._http.get(GOOGLE_TOKENINFO_URL, params={"access_token": token})
        except RequestsError as e:
            raise OAuthError(f"Network error validating YouTube token: {e}", platform=self.platform) from e
        if not status_ok(res.status_code):
            raise OAuthError("Google rejected the access token.", platform=self.platform,
                             status=res.status_code, body=res.text)
        logger.info(f"YouTube token valid, scopes: {res.json().get('scope')}")
        self.sink.emit(AUTH_TOKEN_RECEIVED, token)
        return token
