import sys
import os
import asyncio
import json
from datetime import datetime
from dotenv import load_dotenv
import pytest

# Add the project's root directory to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

load_dotenv()#get .env file variables

from Livechat_Hub.base_adapter import ChatAdapter
from Livechat_Hub.data_models import NormalizedMessage, Platform
from Livechat_Hub.errors import SendError
from Livechat_Hub.events import EventSink
from Livechat_Hub.session import SessionRegistry


class FakeResponse:
    """Stand-in for a curl_cffi Response."""
    def __init__(self, status_code=200, json_data=None, text=None, url=None):
        self.status_code = status_code
        self._json = json_data
        self.text = text if text is not None else (json.dumps(json_data) if json_data is not None else "")
        self.url = url

    def json(self):
        if self._json is None:
            return json.loads(self.text)
        return self._json


class FakeHttp:
    """
    Stand-in for curl_cffi's AsyncSession. Responses are matched by URL prefix;
    a response may also be an exception instance, which is raised instead.
    """
    def __init__(self):
        self.routes = []
        self.calls = []

    def add(self, method, url_prefix, *responses):
        self.routes.append([method.upper(), url_prefix, list(responses)])

    async def _request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        for route_method, prefix, responses in self.routes:
            if route_method == method and url.startswith(prefix) and responses:
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, Exception):
                    raise response
                return response
        raise AssertionError(f"Unexpected {method} {url}")

    async def get(self, url, **kwargs):
        return await self._request("GET", url, **kwargs)

    async def post(self, url, **kwargs):
        return await self._request("POST", url, **kwargs)

    async def close(self):
        pass

    def count(self, method, url_prefix):
        return sum(1 for m, u, _ in self.calls if m == method and u.startswith(url_prefix))


class FakeReader:
    """asyncio.StreamReader fed from a queue; b'' means EOF."""
    def __init__(self, lines=()):
        self.queue = asyncio.Queue()
        for line in lines:
            self.feed(line)

    def feed(self, line):
        self.queue.put_nowait(line.encode("utf-8") + b"\r\n" if line else b"")

    async def readline(self):
        return await self.queue.get()


class FakeWriter:
    def __init__(self):
        self.sent = []
        self.closed = False

    def write(self, data):
        self.sent.append(data.decode("utf-8").rstrip("\r\n"))

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class FakeWebSocket:
    """Minimal websockets client connection."""
    def __init__(self, frames=()):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False
        for frame in frames:
            self.incoming.put_nowait(frame)

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def recv(self):
        frame = await self.incoming.get()
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def close(self):
        self.closed = True


class EventRecorder:
    def __init__(self, sink):
        self.events = []
        sink.subscribe(self)

    def __call__(self, name, payload):
        self.events.append((name, payload))

    def named(self, name):
        return [payload for event, payload in self.events if event == name]


class ScriptedAdapter(ChatAdapter):
    """Adapter whose transport is an asyncio.Queue of message bodies (or exceptions)."""
    platform = Platform.TWITCH

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.feeds = {}
        self.stopped = []
        self.sent = []

    def feed(self, channel):
        return self.feeds.setdefault(channel, asyncio.Queue())

    def normalize_channel(self, identifier):
        return identifier.strip().lstrip("#").lower()

    async def resolve(self, session):
        self.remember_id(session, "room_id", f"id-{session.channel}")

    async def connect(self, session):
        session.transport = self.feed(session.channel)
        self.emit_connected(session.ids["room_id"])

    async def decode_next(self, session):
        item = await session.transport.get()
        if isinstance(item, Exception):
            raise item
        return [NormalizedMessage(id=item, platform=self.platform, username="u", body=item,
                                  timestamp=datetime.now().astimezone())]

    async def stop(self, session):
        self.stopped.append(session)
        session.transport = None

    async def send(self, channel, body, credentials):
        if not credentials or not credentials.is_authenticated:
            raise SendError("not logged in", platform=self.platform)
        self.sent.append((channel, body))

    def begin_oauth(self, open_url):
        open_url("https://example.com/authorize")
        return "https://example.com/authorize"

    async def complete_oauth(self, code_or_token):
        return code_or_token


@pytest.fixture
def sink():
    return EventSink()


@pytest.fixture
def recorder(sink):
    return EventRecorder(sink)


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def http():
    return FakeHttp()


async def wait_for(predicate, timeout=2.0):
    """Polls `predicate` until true, yielding to the event loop in between."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
