# livechat.py
import asyncio
import logging
import webbrowser
from typing import Any, Callable, Dict, List, Optional

from curl_cffi.requests import AsyncSession

from Livechat_Hub.base_adapter import ChatAdapter
from Livechat_Hub.data_models import Credentials, Platform
from Livechat_Hub.events import EventSink
from Livechat_Hub.kick import KickAdapter
from Livechat_Hub.session import Session, SessionKey, SessionRegistry
from Livechat_Hub.twitch import TwitchAdapter
from Livechat_Hub.youtube import YouTubeAdapter


logger = logging.getLogger(__name__)

ADAPTER_TYPES = {
    Platform.TWITCH: TwitchAdapter,
    Platform.KICK: KickAdapter,
    Platform.YOUTUBE: YouTubeAdapter,
}


class LiveChatController:
    """
    Command surface over the three platform adapters.

    `join` spawns one session task per (platform, channel); everything a
    session produces (chat, connected, error) arrives through `sink`.
    `send` and the OAuth calls report their failures to the caller.
    """
    def __init__(self, config: Optional[Dict[str, Any]] = None, sink: Optional[EventSink] = None,
                 registry: Optional[SessionRegistry] = None, http_session: Optional[AsyncSession] = None,
                 open_url: Callable[[str], Any] = webbrowser.open):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.config = config or {}
        self.sink = sink or EventSink()
        self.registry = registry or SessionRegistry()
        self._owns_http = http_session is None
        self.http_session = http_session or AsyncSession()
        self.open_url = open_url
        # join/leave for one channel run one at a time
        self._channel_locks: Dict[SessionKey, asyncio.Lock] = {}

        self.adapters: Dict[Platform, ChatAdapter] = {
            platform: adapter_type(self.sink, self.registry, self.http_session,
                                   self.config.get(platform.event_prefix, {}))
            for platform, adapter_type in ADAPTER_TYPES.items()
        }
        self.logger.info(f"Controller initialized for platforms: {[p.value for p in self.adapters]}")

    def adapter(self, platform: Platform) -> ChatAdapter:
        return self.adapters[Platform(platform)]

    def _channel_lock(self, platform: Platform, channel: str) -> asyncio.Lock:
        return self._channel_locks.setdefault((platform, channel), asyncio.Lock())

    async def join(self, platform: Platform, channel: str, credentials: Optional[Credentials] = None) -> Session:
        """Starts a session; an existing session for the same channel is stopped first."""
        adapter = self.adapter(platform)
        channel = adapter.normalize_channel(channel)
        if not channel:
            raise ValueError("Channel identifier cannot be empty.")

        async with self._channel_lock(adapter.platform, channel):
            await self._stop_session(adapter.platform, channel)

            session = Session(platform=adapter.platform, channel=channel, credentials=credentials or Credentials())
            self.registry.register(session)
            session.task = asyncio.create_task(
                adapter.run_session(session, session.token),
                name=f"{adapter.platform.event_prefix}:{channel}",
            )
        self.logger.info(f"Joined {adapter.platform.value} channel '{channel}'")
        return session

    async def leave(self, platform: Platform, channel: str) -> bool:
        """Stops the channel's session and waits for its teardown. False if there was none."""
        adapter = self.adapter(platform)
        channel = adapter.normalize_channel(channel)
        async with self._channel_lock(adapter.platform, channel):
            return await self._stop_session(adapter.platform, channel)

    async def _stop_session(self, platform: Platform, channel: str) -> bool:
        session = self.registry.get(platform, channel)
        token = self.registry.take_cancel_handle(platform, channel)
        if token is None:
            return False

        self.logger.info(f"Leaving {platform.value} channel '{channel}'")
        token.cancel()
        if session is not None:
            if session.task is not None:
                await asyncio.gather(session.task, return_exceptions=True)
            self.registry.discard(session)
        return True

    async def send(self, platform: Platform, channel: str, body: str,
                   credentials: Optional[Credentials] = None) -> None:
        """Raises SendError (or a platform subclass) when the message could not be delivered."""
        adapter = self.adapter(platform)
        await adapter.send(channel, body, credentials)

    def begin_oauth(self, platform: Platform) -> str:
        return self.adapter(platform).begin_oauth(self.open_url)

    async def complete_oauth(self, platform: Platform, code_or_token: str) -> str:
        return await self.adapter(platform).complete_oauth(code_or_token)

    def active_sessions(self) -> List[Session]:
        return [s for s in self.registry.sessions() if s.is_running()]

    async def close(self):
        """Stops every session and releases the shared HTTP session."""
        self.logger.info("Stopping all sessions...")
        for session in self.registry.sessions():
            await self.leave(session.platform, session.channel)
        if self._owns_http:
            await self.http_session.close()
        self.logger.info("All sessions stopped.")


### The section below demonstrates how to use the controller.
async def main():
    """Joins the channels named in .env and prints chat until interrupted."""
    from dotenv import load_dotenv
    from src.utils.env_utils import get_env_var
    from src.utils.logger import setup_logging
    from Livechat_Hub.events import CHAT_MESSAGE
    from Livechat_Hub.livechat_config import build_livechat_config

    load_dotenv()
    setup_logging()

    print("--- Live Chat Controller ---")
    controller = LiveChatController(build_livechat_config())

    def print_event(name, payload):
        if name == CHAT_MESSAGE:
            note = f" [{payload.system_note}]" if payload.system_note else ""
            print(f"[{payload.platform.value}] {payload.username}: {payload.body}{note}")
        else:
            print(f"<{name}> {payload}")

    controller.sink.subscribe(print_event)

    channels = {
        Platform.TWITCH: get_env_var("TW_CHANNEL", str),
        Platform.KICK: get_env_var("KICK_CHANNEL", str),
        Platform.YOUTUBE: get_env_var("YT_CHANNEL", str),
    }
    twitch_credentials = Credentials(token=get_env_var("TW_TOKEN", str), username=get_env_var("TW_USERNAME", str))

    try:
        for platform, channel in channels.items():
            if channel:
                creds = twitch_credentials if platform is Platform.TWITCH else None
                await controller.join(platform, channel, creds)
        if not controller.registry.sessions():
            print("No channels configured. Set TW_CHANNEL, KICK_CHANNEL or YT_CHANNEL in .env")
            return
        while controller.active_sessions():
            await asyncio.sleep(1)
    finally:
        await controller.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
