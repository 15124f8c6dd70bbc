import asyncio
import pytest

from conftest import FakeReader, FakeResponse, FakeWriter
from Livechat_Hub import twitch
from Livechat_Hub.data_models import Credentials, MessageKind, Platform
from Livechat_Hub.errors import AuthenticationError, OAuthError, SendError, TransportError
from Livechat_Hub.events import AUTH_TOKEN_RECEIVED, CHAT_MESSAGE, TWITCH_USER_STATE
from Livechat_Hub.session import Session
from Livechat_Hub.twitch import (IrcConnection, TwitchAdapter, decode_privmsg, decode_usernotice,
                                 parse_emotes, parse_irc_line, unescape_tag_value)

PRIVMSG = ("@badge-info=;badges=moderator/1,subscriber/12;color=#1E90FF;display-name=SomeViewer;"
           "emotes=;id=b34ccfc7-4977-403a-8a94-33c6bac34fb8;mod=1 "
           ":someviewer!someviewer@someviewer.tmi.twitch.tv PRIVMSG #somestreamer :hello there")


@pytest.fixture
def adapter(sink, registry, http):
    return TwitchAdapter(sink, registry, http)


@pytest.fixture
def irc(monkeypatch):
    reader, writer = FakeReader(), FakeWriter()
    opened = []

    async def fake_open_connection(host, port, ssl=None):
        opened.append((host, port, ssl))
        return reader, writer

    monkeypatch.setattr(twitch.asyncio, "open_connection", fake_open_connection)
    return reader, writer, opened


def test_parse_irc_line_with_tags_prefix_and_trailing():
    line = parse_irc_line(PRIVMSG)
    assert line.command == "PRIVMSG"
    assert line.params == ("#somestreamer",)
    assert line.trailing == "hello there"
    assert line.nick == "someviewer"
    assert line.tags["display-name"] == "SomeViewer"


def test_parse_irc_line_blank_is_none():
    assert parse_irc_line("\r\n") is None


def test_unescape_tag_value():
    assert unescape_tag_value(r"Hello\sworld\:\\") == "Hello world;\\"


def test_plain_chat_line_is_chat_without_note():
    message = decode_privmsg(parse_irc_line(PRIVMSG))
    assert message.kind == MessageKind.CHAT
    assert message.system_note is None
    assert message.platform == Platform.TWITCH
    assert message.id == "b34ccfc7-4977-403a-8a94-33c6bac34fb8"
    assert message.username == "SomeViewer"
    assert message.color == "#1E90FF"
    assert message.badges == ("moderator", "subscriber")
    assert message.is_moderator and not message.is_vip


def test_missing_color_is_none():
    message = decode_privmsg(parse_irc_line("@color=;badges=vip/1 :a!a@a PRIVMSG #c :hi"))
    assert message.color is None
    assert message.is_vip


def test_bits_line_is_system_event():
    message = decode_privmsg(parse_irc_line("@bits=100;badges= :a!a@a PRIVMSG #c :Cheer100 nice"))
    assert message.kind == MessageKind.SYSTEM
    assert message.system_note == "Cheered 100 Bits!"


def test_bits_take_priority_over_reward():
    message = decode_privmsg(parse_irc_line("@bits=5;custom-reward-id=abc :a!a@a PRIVMSG #c :x"))
    assert message.system_note == "Cheered 5 Bits!"


def test_reward_line_is_system_event():
    message = decode_privmsg(parse_irc_line("@custom-reward-id=abc-123 :a!a@a PRIVMSG #c :pick me"))
    assert message.kind == MessageKind.SYSTEM
    assert message.system_note == "Redeemed a Channel Reward!"


def test_emote_offsets_are_codepoints_and_exclusive():
    body = "😀 Kappa hi Kappa"
    elements = parse_emotes("25:2-6,11-15", body)
    assert [(e.start_offset, e.end_offset) for e in elements] == [(2, 7), (11, 16)]
    assert all(body[e.start_offset:e.end_offset] == "Kappa" for e in elements)


def test_out_of_range_emotes_are_skipped():
    assert parse_emotes("25:0-40", "short") == ()


def test_action_messages_are_unwrapped():
    message = decode_privmsg(parse_irc_line(":a!a@a PRIVMSG #c :\x01ACTION waves\x01"))
    assert message.body == "waves"


def test_usernotice_is_system_event_with_fallback_id():
    line = parse_irc_line(r"@login=subber;display-name=Subber;msg-id=resub;"
                          r"system-msg=Subber\ssubscribed\sfor\s3\smonths! :tmi.twitch.tv USERNOTICE #c :great stream")
    message = decode_usernotice(line)
    assert message.kind == MessageKind.SYSTEM
    assert message.username == "Subber"
    assert message.system_note == "Subber subscribed for 3 months!"
    assert message.color == twitch.SYSTEM_EVENT_COLOR
    assert message.id


def test_channel_is_canonicalized(adapter):
    assert adapter.normalize_channel("#SomeStreamer ") == "somestreamer"


@pytest.mark.asyncio
async def test_anonymous_connect_joins_canonical_channel(adapter, irc):
    reader, writer, opened = irc
    session = Session(platform=Platform.TWITCH, channel=adapter.normalize_channel("#SomeStreamer "))
    await adapter.connect(session)

    assert opened == [(twitch.TWITCH_IRC_HOST, twitch.TWITCH_IRC_TLS_PORT, True)]
    assert writer.sent[0] == "CAP REQ :twitch.tv/tags twitch.tv/commands"
    assert writer.sent[1].startswith("NICK justinfan")
    assert writer.sent[-1] == "JOIN #somestreamer"
    assert not any(line.startswith("PASS") for line in writer.sent)


@pytest.mark.asyncio
async def test_authenticated_connect_sends_pass_and_nick(adapter, irc):
    _, writer, _ = irc
    session = Session(platform=Platform.TWITCH, channel="somestreamer",
                      credentials=Credentials(token="oauth:abc123", username="MyBot"))
    await adapter.connect(session)
    assert "PASS oauth:abc123" in writer.sent
    assert "NICK mybot" in writer.sent


@pytest.mark.asyncio
async def test_decode_loop_answers_ping_and_tracks_roomstate(adapter, recorder):
    reader, writer = FakeReader(["PING :tmi.twitch.tv", "@room-id=1234 :tmi.twitch.tv ROOMSTATE #c"]), FakeWriter()
    session = Session(platform=Platform.TWITCH, channel="c", transport=IrcConnection(reader, writer))

    assert await adapter.decode_next(session) == []
    assert writer.sent == ["PONG :tmi.twitch.tv"]

    assert await adapter.decode_next(session) == []
    assert session.ids["room_id"] == "1234"
    assert recorder.named("twitch-connected") == ["1234"]


@pytest.mark.asyncio
async def test_userstate_emits_current_user_state(adapter, recorder):
    reader = FakeReader(["@badges=moderator/1 :tmi.twitch.tv USERSTATE #c"])
    session = Session(platform=Platform.TWITCH, channel="c", transport=IrcConnection(reader, FakeWriter()))
    await adapter.decode_next(session)
    assert recorder.named(TWITCH_USER_STATE) == [{"is_mod": True, "badges": ["moderator"]}]


@pytest.mark.asyncio
async def test_auth_failure_notice_raises_authentication_error(adapter):
    reader = FakeReader([":tmi.twitch.tv NOTICE * :Login authentication failed"])
    session = Session(platform=Platform.TWITCH, channel="c", transport=IrcConnection(reader, FakeWriter()))
    with pytest.raises(AuthenticationError):
        await adapter.decode_next(session)


@pytest.mark.asyncio
async def test_eof_is_transport_failure(adapter):
    reader = FakeReader([""])
    session = Session(platform=Platform.TWITCH, channel="c", transport=IrcConnection(reader, FakeWriter()))
    with pytest.raises(TransportError):
        await adapter.decode_next(session)


@pytest.mark.asyncio
async def test_session_emits_chat_then_reports_auth_error(adapter, registry, recorder, irc):
    reader, writer, _ = irc
    reader.feed(PRIVMSG)
    reader.feed(":tmi.twitch.tv NOTICE * :Login authentication failed")
    session = Session(platform=Platform.TWITCH, channel="somestreamer",
                      credentials=Credentials(token="bad", username="me"))
    registry.register(session)

    await adapter.run_session(session, session.token)

    messages = recorder.named(CHAT_MESSAGE)
    assert [m.body for m in messages] == ["hello there"]
    errors = recorder.named("twitch-error")
    assert len(errors) == 1 and errors[0].kind.value == "authentication"
    assert registry.get(Platform.TWITCH, "somestreamer") is None
    assert writer.closed
    assert "PART #somestreamer" in writer.sent


@pytest.mark.asyncio
async def test_send_requires_authenticated_session(adapter, registry):
    with pytest.raises(SendError):
        await adapter.send("somestreamer", "hi", None)

    session = Session(platform=Platform.TWITCH, channel="somestreamer",
                      transport=IrcConnection(FakeReader(), FakeWriter()))
    registry.register(session)
    with pytest.raises(SendError):
        await adapter.send("#SomeStreamer", "hi", None)


@pytest.mark.asyncio
async def test_send_writes_privmsg(adapter, registry):
    writer = FakeWriter()
    session = Session(platform=Platform.TWITCH, channel="somestreamer",
                      credentials=Credentials(token="tok", username="me"),
                      transport=IrcConnection(FakeReader(), writer))
    registry.register(session)
    await adapter.send("#SomeStreamer", "hello\nworld", Credentials(token="tok", username="me"))
    assert writer.sent == ["PRIVMSG #somestreamer :hello world"]


@pytest.mark.asyncio
async def test_send_goes_out_as_the_joined_account(adapter, registry):
    writer = FakeWriter()
    session = Session(platform=Platform.TWITCH, channel="somestreamer",
                      credentials=Credentials(token="tok", username="Me"),
                      transport=IrcConnection(FakeReader(), writer))
    registry.register(session)

    with pytest.raises(SendError):
        await adapter.send("somestreamer", "hi", Credentials(token="other", username="someone_else"))
    await adapter.send("somestreamer", "hi", None)
    await adapter.send("somestreamer", "again", Credentials(token="tok", username="me"))
    assert writer.sent == ["PRIVMSG #somestreamer :hi", "PRIVMSG #somestreamer :again"]


def test_begin_oauth_opens_implicit_grant_url(sink, registry, http):
    adapter = TwitchAdapter(sink, registry, http, {"client_id": "cid", "redirect_uri": "https://example.com/auth"})
    opened = []
    url = adapter.begin_oauth(opened.append)
    assert opened == [url]
    assert url.startswith(twitch.TWITCH_AUTHORIZE_URL)
    assert "response_type=token" in url and "client_id=cid" in url


@pytest.mark.asyncio
async def test_complete_oauth_validates_and_emits_token(adapter, http, recorder):
    http.add("GET", twitch.TWITCH_VALIDATE_URL, FakeResponse(200, {"login": "me", "scopes": ["chat:read"]}))
    token = await adapter.complete_oauth("heychat://auth#access_token=abc123&scope=chat%3Aread")
    assert token == "abc123"
    assert recorder.named(AUTH_TOKEN_RECEIVED) == ["abc123"]
    assert http.calls[0][2]["headers"]["Authorization"] == "OAuth abc123"


@pytest.mark.asyncio
async def test_complete_oauth_rejected_token(adapter, http, recorder):
    http.add("GET", twitch.TWITCH_VALIDATE_URL, FakeResponse(401, text='{"status":401,"message":"invalid access token"}'))
    with pytest.raises(OAuthError) as exc_info:
        await adapter.complete_oauth("oauth:bad")
    assert exc_info.value.status == 401
    assert "invalid access token" in str(exc_info.value)
    assert recorder.named(AUTH_TOKEN_RECEIVED) == []
