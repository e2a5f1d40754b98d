"""Tests for channels/bridge.py — event parsing, contact lookup, session calls
with mocked httpx, pairing codes, disconnect."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from channels import ConnectionUpdate, ContactInfo, CredentialsUpdate, InboundMessage
from channels.bridge import BridgeSession, parse_bridge_event, parse_contact


def _mock_response(json_data, status_code=200):
    """Create a mock httpx.Response."""
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = json_data
    resp.raise_for_status = MagicMock()
    return resp


def _make_session(**overrides):
    defaults = {"base_url": "http://bridge.test:3000/", "creds": {"me": "x"}, "poll_timeout": 5}
    defaults.update(overrides)
    session = BridgeSession(**defaults)
    mock_client = AsyncMock()
    mock_client.is_closed = False
    session._client = mock_client
    return session, mock_client


def _upsert(*messages, kind="notify"):
    return {"type": "messages.upsert", "data": {"type": kind, "messages": list(messages)}}


def _raw_message(jid="15551234567@s.whatsapp.net", text="hi", from_me=False, **extra):
    raw = {
        "key": {"remoteJid": jid, "fromMe": from_me, "id": "3EB0ABC"},
        "message": {"conversation": text},
        "messageTimestamp": 1700000000,
        "pushName": "Alice",
    }
    raw.update(extra)
    return raw


# ─── Parsing ──────────────────────────────────────────────────────


class TestParseConnection:
    def test_qr(self):
        events = parse_bridge_event({"type": "connection.update", "data": {"qr": "2@abc"}})
        assert events == [ConnectionUpdate(qr="2@abc")]

    def test_open(self):
        events = parse_bridge_event({"type": "connection.update", "data": {"connection": "open"}})
        assert events[0].connection == "open"

    def test_close_boom_error(self):
        events = parse_bridge_event({"type": "connection.update", "data": {
            "connection": "close",
            "lastDisconnect": {"error": {"message": "Connection Failure",
                                         "output": {"statusCode": 401}}},
        }})
        assert events[0].close_code == 401
        assert events[0].close_reason == "Connection Failure"

    def test_close_flat_status(self):
        events = parse_bridge_event({"type": "connection.update", "data": {
            "connection": "close",
            "lastDisconnect": {"statusCode": "428", "message": "Connection Closed"},
        }})
        assert events[0].close_code == 428
        assert events[0].close_reason == "Connection Closed"

    def test_close_without_details(self):
        events = parse_bridge_event({"type": "connection.update",
                                     "data": {"connection": "close"}})
        assert events[0].close_code is None


class TestParseOther:
    def test_creds(self):
        events = parse_bridge_event({"type": "creds.update", "data": {"registered": True}})
        assert events == [CredentialsUpdate({"registered": True})]

    def test_unknown_type_ignored(self):
        assert parse_bridge_event({"type": "presence.update", "data": {}}) == []

    def test_missing_data(self):
        assert parse_bridge_event({"type": "messages.upsert"}) == []


class TestParseMessages:
    def test_conversation(self):
        [msg] = parse_bridge_event(_upsert(_raw_message()))
        assert msg == InboundMessage(
            remote_jid="15551234567@s.whatsapp.net",
            from_me=False,
            text="hi",
            timestamp=1700000000.0,
            push_name="Alice",
            message_id="3EB0ABC",
        )

    def test_timestamp_as_long(self):
        raw = _raw_message(messageTimestamp={"low": 1700000000, "high": 0, "unsigned": False})
        [msg] = parse_bridge_event(_upsert(raw))
        assert msg.timestamp == 1700000000.0

    def test_timestamp_as_long_with_negative_low(self):
        # 2200000000 overflows a signed 32-bit low word
        raw = _raw_message(messageTimestamp={"low": 2200000000 - 2**32, "high": 0, "unsigned": True})
        [msg] = parse_bridge_event(_upsert(raw))
        assert msg.timestamp == 2200000000.0

    def test_timestamp_as_string(self):
        [msg] = parse_bridge_event(_upsert(_raw_message(messageTimestamp="1700000060")))
        assert msg.timestamp == 1700000060.0

    @pytest.mark.parametrize("value", [None, 0, "soon", {"unsigned": True}, {"low": "x"}])
    def test_unusable_timestamp_uses_receive_time(self, value):
        with patch("channels.bridge.time.time", return_value=1800000000.0):
            [msg] = parse_bridge_event(_upsert(_raw_message(messageTimestamp=value)))
        assert msg.timestamp == 1800000000.0

    def test_extended_text(self):
        raw = _raw_message(message={"extendedTextMessage": {"text": "with link"}})
        [msg] = parse_bridge_event(_upsert(raw))
        assert msg.text == "with link"

    def test_image_caption(self):
        raw = _raw_message(message={"imageMessage": {"caption": "look"}})
        [msg] = parse_bridge_event(_upsert(raw))
        assert msg.text == "look"

    def test_no_text(self):
        raw = _raw_message(message={"stickerMessage": {}})
        [msg] = parse_bridge_event(_upsert(raw))
        assert msg.text is None

    def test_history_append_ignored(self):
        assert parse_bridge_event(_upsert(_raw_message(), kind="append")) == []

    def test_multiple_messages(self):
        events = parse_bridge_event(_upsert(
            _raw_message(text="a"), _raw_message(jid="2@s.whatsapp.net", text="b")))
        assert [m.text for m in events] == ["a", "b"]

    def test_message_without_jid_dropped(self):
        raw = _raw_message()
        raw["key"] = {}
        assert parse_bridge_event(_upsert(raw)) == []

    def test_from_me_flag(self):
        [msg] = parse_bridge_event(_upsert(_raw_message(from_me=True)))
        assert msg.from_me is True


class TestParseContact:
    def test_fields(self):
        info = parse_contact("1@s.whatsapp.net",
                            {"name": "Mom", "verifiedName": "", "notify": "Mum"})
        assert info == ContactInfo(jid="1@s.whatsapp.net", name="Mom", notify="Mum")

    def test_pushname_alias(self):
        assert parse_contact("1@s.whatsapp.net", {"pushname": "P"}).notify == "P"


# ─── Session calls ────────────────────────────────────────────────


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_opens_session_with_creds(self):
        session, client = _make_session()
        client.request.return_value = _mock_response({"id": "s-1"})
        await session.connect()
        assert session.session_id == "s-1"
        args, kwargs = client.request.call_args
        assert args == ("POST", "http://bridge.test:3000/sessions")
        assert kwargs["json"] == {"creds": {"me": "x"}}

    @pytest.mark.asyncio
    async def test_connect_failure_raises(self):
        session, client = _make_session()
        client.request.side_effect = httpx.ConnectError("refused")
        with pytest.raises(ConnectionError, match="unreachable"):
            await session.connect()

    @pytest.mark.asyncio
    async def test_bridge_error_raises(self):
        session, client = _make_session()
        client.request.return_value = _mock_response({"error": "busy"}, status_code=503)
        with pytest.raises(ConnectionError, match="busy"):
            await session.connect()

    @pytest.mark.asyncio
    async def test_missing_session_id(self):
        session, client = _make_session()
        client.request.return_value = _mock_response({})
        with pytest.raises(ConnectionError, match="no session id"):
            await session.connect()


class TestEvents:
    @pytest.mark.asyncio
    async def test_long_poll_advances_cursor(self):
        session, client = _make_session()
        session.session_id = "s-1"
        client.request.side_effect = [
            _mock_response({"events": [
                {"seq": 1, "type": "connection.update", "data": {"qr": "2@a"}},
                {"seq": 2, "type": "connection.update", "data": {"connection": "open"}},
            ]}),
            _mock_response({"events": [
                {"seq": 3, **_upsert(_raw_message())},
            ]}),
        ]
        stream = session.events()
        first = await stream.__anext__()
        second = await stream.__anext__()
        third = await stream.__anext__()
        await stream.aclose()

        assert first.qr == "2@a"
        assert second.connection == "open"
        assert isinstance(third, InboundMessage)
        polls = client.request.call_args_list
        assert polls[0].kwargs["params"] == {"after": 0, "timeout": 5}
        assert polls[1].kwargs["params"] == {"after": 2, "timeout": 5}
        assert session._cursor == 3

    @pytest.mark.asyncio
    async def test_poll_failure_propagates(self):
        session, client = _make_session()
        session.session_id = "s-1"
        client.request.side_effect = httpx.ReadError("connection reset")
        with pytest.raises(httpx.ReadError):
            await session.events().__anext__()


class TestFetchContact:
    @pytest.mark.asyncio
    async def test_found(self):
        session, client = _make_session()
        client.get.return_value = _mock_response({"name": "Mom"})
        info = await session.fetch_contact("15551234567@s.whatsapp.net")
        assert info.name == "Mom"
        assert client.get.call_args[0][0] == (
            "http://bridge.test:3000/contacts/15551234567@s.whatsapp.net")

    @pytest.mark.asyncio
    async def test_not_found_is_empty(self):
        session, client = _make_session()
        client.get.return_value = _mock_response({}, status_code=404)
        info = await session.fetch_contact("1@s.whatsapp.net")
        assert info == ContactInfo(jid="1@s.whatsapp.net")

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        session, client = _make_session()
        resp = _mock_response({}, status_code=500)
        resp.raise_for_status.side_effect = httpx.HTTPStatusError(
            "500", request=MagicMock(), response=resp)
        client.get.return_value = resp
        with pytest.raises(httpx.HTTPStatusError):
            await session.fetch_contact("1@s.whatsapp.net")


class TestPairingCode:
    @pytest.mark.asyncio
    async def test_returns_code(self):
        session, client = _make_session()
        session.session_id = "s-1"
        client.request.return_value = _mock_response({"code": "ABCD1234"})
        assert await session.request_pairing_code("15551234567") == "ABCD1234"
        args, kwargs = client.request.call_args
        assert args[1].endswith("/sessions/s-1/pairing-code")
        assert kwargs["json"] == {"phone": "15551234567"}

    @pytest.mark.asyncio
    async def test_empty_code_raises(self):
        session, client = _make_session()
        client.request.return_value = _mock_response({"code": ""})
        with pytest.raises(RuntimeError):
            await session.request_pairing_code("15551234567")


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_deletes_session_and_closes_client(self):
        session, client = _make_session()
        session.session_id = "s-1"
        await session.disconnect()
        client.delete.assert_awaited_once_with("http://bridge.test:3000/sessions/s-1")
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delete_failure_still_closes(self):
        session, client = _make_session()
        session.session_id = "s-1"
        client.delete.side_effect = httpx.ConnectError("gone")
        await session.disconnect()
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_never_connected(self):
        session = BridgeSession("http://bridge.test:3000")
        await session.disconnect()  # Should not raise
