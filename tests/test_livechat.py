import asyncio
from datetime import datetime

import pytest
import pytest_asyncio

from conftest import FakeHttp, ScriptedAdapter, wait_for
from Livechat_Hub.data_models import Credentials, InlineElement, NormalizedMessage, Platform
from Livechat_Hub.errors import SendError, TransportError
from Livechat_Hub.events import CHAT_MESSAGE
from Livechat_Hub.kick import KickAdapter
from Livechat_Hub.livechat import LiveChatController
from Livechat_Hub.twitch import TwitchAdapter
from Livechat_Hub.youtube import YouTubeAdapter


@pytest_asyncio.fixture
async def controller():
    opened = []
    ctl = LiveChatController({}, http_session=FakeHttp(), open_url=opened.append)
    ctl.opened = opened
    ctl.adapters[Platform.TWITCH] = ScriptedAdapter(ctl.sink, ctl.registry, ctl.http_session)
    yield ctl
    await ctl.close()


@pytest.fixture
def events(controller):
    received = []
    controller.sink.subscribe(lambda name, payload: received.append((name, payload)))
    return received


def test_controller_builds_one_adapter_per_platform():
    ctl = LiveChatController({"kick": {"client_id": "abc"}}, http_session=FakeHttp())
    assert isinstance(ctl.adapters[Platform.TWITCH], TwitchAdapter)
    assert isinstance(ctl.adapters[Platform.KICK], KickAdapter)
    assert isinstance(ctl.adapters[Platform.YOUTUBE], YouTubeAdapter)
    assert ctl.adapters[Platform.KICK].settings == {"client_id": "abc"}
    assert all(a.registry is ctl.registry and a.sink is ctl.sink for a in ctl.adapters.values())


@pytest.mark.asyncio
async def test_join_emits_connected_and_messages_in_order(controller, events):
    adapter = controller.adapters[Platform.TWITCH]
    session = await controller.join("twitch", "#SomeStreamer ")
    assert session.channel == "somestreamer"

    for body in ("one", "two", "three"):
        adapter.feed("somestreamer").put_nowait(body)
    await wait_for(lambda: len([e for e in events if e[0] == CHAT_MESSAGE]) == 3)

    assert events[0] == ("twitch-connected", "id-somestreamer")
    assert [p.body for name, p in events if name == CHAT_MESSAGE] == ["one", "two", "three"]


@pytest.mark.asyncio
async def test_leave_without_session_is_a_noop(controller):
    assert await controller.leave(Platform.TWITCH, "nobody") is False


@pytest.mark.asyncio
async def test_leave_stops_task_and_releases_transport(controller):
    adapter = controller.adapters[Platform.TWITCH]
    session = await controller.join(Platform.TWITCH, "chan")
    await wait_for(lambda: session.transport is not None)

    assert await controller.leave(Platform.TWITCH, "CHAN") is True
    assert session.task.done()
    assert adapter.stopped == [session]
    assert session.transport is None
    assert controller.registry.get(Platform.TWITCH, "chan") is None
    assert await controller.leave(Platform.TWITCH, "chan") is False


@pytest.mark.asyncio
async def test_rejoin_retires_previous_session_first(controller):
    adapter = controller.adapters[Platform.TWITCH]
    first = await controller.join(Platform.TWITCH, "chan")
    await wait_for(lambda: first.transport is not None)

    second = await controller.join(Platform.TWITCH, "chan")

    assert first.task.done()
    assert adapter.stopped == [first]
    assert controller.registry.get(Platform.TWITCH, "chan") is second
    await wait_for(lambda: second.transport is not None)
    assert [s for s in controller.active_sessions()] == [second]


@pytest.mark.asyncio
async def test_concurrent_joins_leave_a_single_running_session(controller):
    first = await controller.join(Platform.TWITCH, "chan")
    await wait_for(lambda: first.transport is not None)

    second, third = await asyncio.gather(controller.join(Platform.TWITCH, "chan"),
                                         controller.join(Platform.TWITCH, "chan"))

    assert first.task.done() and second.task.done()
    assert controller.registry.get(Platform.TWITCH, "chan") is third
    assert controller.active_sessions() == [third]

    await controller.close()
    assert third.task.done()


@pytest.mark.asyncio
async def test_transport_failure_removes_session_and_reports_error(controller, events):
    adapter = controller.adapters[Platform.TWITCH]
    session = await controller.join(Platform.TWITCH, "chan")
    adapter.feed("chan").put_nowait(TransportError("connection reset", platform=Platform.TWITCH))

    await session.task
    assert [p.kind.value for name, p in events if name == "twitch-error"] == ["transport"]
    assert controller.registry.get(Platform.TWITCH, "chan") is None
    assert await controller.leave(Platform.TWITCH, "chan") is False


@pytest.mark.asyncio
async def test_out_of_range_inline_elements_are_dropped(controller, events):
    adapter = controller.adapters[Platform.TWITCH]
    adapter.emit_message(NormalizedMessage(
        id="1", platform=Platform.TWITCH, username="u", body="hey", timestamp=datetime.now().astimezone(),
        inline_elements=(InlineElement("a", "hey", 0, 3), InlineElement("b", "x", 2, 10)),
    ))
    message = events[-1][1]
    assert [e.artifact_id for e in message.inline_elements] == ["a"]


@pytest.mark.asyncio
async def test_send_and_oauth_delegate_to_adapter(controller):
    adapter = controller.adapters[Platform.TWITCH]
    await controller.send(Platform.TWITCH, "chan", "hi", Credentials(token="t", username="me"))
    assert adapter.sent == [("chan", "hi")]
    with pytest.raises(SendError):
        await controller.send(Platform.TWITCH, "chan", "hi", None)

    assert controller.begin_oauth(Platform.TWITCH) == "https://example.com/authorize"
    assert controller.opened == ["https://example.com/authorize"]
    assert await controller.complete_oauth(Platform.TWITCH, "tok") == "tok"


@pytest.mark.asyncio
async def test_close_stops_every_session(controller):
    one = await controller.join(Platform.TWITCH, "one")
    two = await controller.join(Platform.TWITCH, "two")
    await controller.close()
    assert one.task.done() and two.task.done()
    assert controller.registry.sessions() == []


@pytest.mark.asyncio
async def test_join_rejects_empty_channel(controller):
    with pytest.raises(ValueError):
        await controller.join(Platform.TWITCH, "  #  ")
