"""WhatsApp channel via a bridge service (HTTP long polling).

The bridge runs the WhatsApp Web protocol and exposes one session per
POST /sessions. Inbound: events long polling (httpx async).
Lookups and pairing: plain HTTP calls (httpx async).

Reconnects are not handled here. When polling fails the exception
propagates out of events() and the supervisor decides what to do.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from urllib.parse import quote

import httpx

from . import (
    ConnectionUpdate,
    ContactInfo,
    CredentialsUpdate,
    InboundMessage,
    SessionEvent,
)

log = logging.getLogger(__name__)


def _status_code(last_disconnect: dict | None) -> int | None:
    """Pull the status code out of a lastDisconnect payload.

    Accepts both the flat form {"statusCode": 401} and the Boom error
    form {"error": {"output": {"statusCode": 401}}}.
    """
    if not isinstance(last_disconnect, dict):
        return None
    code = last_disconnect.get("statusCode")
    if code is None:
        error = last_disconnect.get("error") or {}
        if isinstance(error, dict):
            code = (error.get("output") or {}).get("statusCode")
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _close_reason(last_disconnect: dict | None) -> str:
    if not isinstance(last_disconnect, dict):
        return ""
    error = last_disconnect.get("error")
    if isinstance(error, dict):
        return str(error.get("message", ""))
    return str(last_disconnect.get("message", ""))


def _message_text(message: dict | None) -> str | None:
    """Extract text from a WhatsApp message payload, or None."""
    if not isinstance(message, dict):
        return None
    if message.get("conversation"):
        return message["conversation"]
    extended = message.get("extendedTextMessage") or {}
    if extended.get("text"):
        return extended["text"]
    for media in ("imageMessage", "videoMessage", "documentMessage"):
        caption = (message.get(media) or {}).get("caption")
        if caption:
            return caption
    return None


def _timestamp(value) -> float:
    """Seconds since the epoch from a messageTimestamp value.

    The protocol library sends either a number, a numeric string, or a
    serialized Long {"low": ..., "high": ..., "unsigned": ...}. Anything
    unusable falls back to the receive time.
    """
    if isinstance(value, dict) and "low" in value:
        try:
            low, high = int(value["low"]), int(value.get("high") or 0)
        except (TypeError, ValueError):
            return time.time()
        value = (high << 32) | (low & 0xFFFFFFFF)
    if isinstance(value, bool):
        return time.time()
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return time.time()
    return seconds if seconds > 0 else time.time()


def _parse_message(raw: dict) -> InboundMessage | None:
    key = raw.get("key") or {}
    remote_jid = key.get("remoteJid", "")
    if not remote_jid:
        return None
    return InboundMessage(
        remote_jid=remote_jid,
        from_me=bool(key.get("fromMe", False)),
        text=_message_text(raw.get("message")),
        timestamp=_timestamp(raw.get("messageTimestamp")),
        push_name=raw.get("pushName") or "",
        message_id=key.get("id", ""),
    )


def parse_bridge_event(item: dict) -> list[SessionEvent]:
    """Parse one bridge event dict into zero or more session events.

    Event types follow the protocol library's names: connection.update,
    creds.update and messages.upsert. Anything else is ignored.
    """
    event_type = item.get("type", "")
    data = item.get("data") or {}

    if event_type == "connection.update":
        last = data.get("lastDisconnect")
        return [ConnectionUpdate(
            connection=data.get("connection"),
            qr=data.get("qr"),
            close_code=_status_code(last),
            close_reason=_close_reason(last),
        )]

    if event_type == "creds.update":
        return [CredentialsUpdate(creds=dict(data))]

    if event_type == "messages.upsert":
        # "append" upserts are history sync, not live traffic
        if data.get("type", "notify") != "notify":
            return []
        parsed = []
        for raw in data.get("messages", []):
            if isinstance(raw, dict):
                msg = _parse_message(raw)
                if msg is not None:
                    parsed.append(msg)
        return parsed

    log.debug("Ignoring bridge event type: %r", event_type)
    return []


def parse_contact(jid: str, data: dict) -> ContactInfo:
    return ContactInfo(
        jid=jid,
        name=data.get("name") or None,
        verified_name=data.get("verifiedName") or None,
        notify=data.get("notify") or data.get("pushname") or None,
    )


class BridgeSession:
    def __init__(
        self,
        base_url: str,
        creds: dict | None = None,
        poll_timeout: int = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.creds = dict(creds or {})
        self.poll_timeout = poll_timeout
        self.session_id: str = ""
        self._cursor: int = 0  # last seen event sequence number
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.poll_timeout + 30.0, connect=10.0),
            )
        return self._client

    async def _api(self, method: str, path: str, **kwargs) -> dict:
        """Call a bridge endpoint and return its JSON body."""
        client = await self._get_client()
        resp = await client.request(method, f"{self.base_url}{path}", **kwargs)

        # Parse JSON first — the bridge returns error descriptions on 4xx/5xx.
        try:
            data = resp.json()
        except ValueError as exc:
            resp.raise_for_status()
            raise RuntimeError(f"Bridge error ({method} {path}): non-JSON response {resp.status_code}") from exc

        if resp.status_code >= 400:
            desc = data.get("error", f"HTTP {resp.status_code}") if isinstance(data, dict) else resp.status_code
            raise RuntimeError(f"Bridge error ({method} {path}): {desc}")
        return data if isinstance(data, dict) else {}

    async def connect(self) -> None:
        """Open a protocol session on the bridge with our credentials."""
        try:
            data = await self._api("POST", "/sessions", json={"creds": self.creds})
        except Exception as e:
            log.error("Cannot open bridge session at %s: %s", self.base_url, e)
            raise ConnectionError(f"WhatsApp bridge unreachable: {e}") from e
        self.session_id = str(data.get("id", ""))
        if not self.session_id:
            raise ConnectionError("WhatsApp bridge returned no session id")
        log.info("Bridge session opened: %s", self.session_id)

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Long-polling loop. Yields events until the bridge fails."""
        while True:
            data = await self._api(
                "GET",
                f"/sessions/{self.session_id}/events",
                params={"after": self._cursor, "timeout": self.poll_timeout},
            )
            for item in data.get("events", []):
                seq = item.get("seq", 0)
                if isinstance(seq, int) and seq > self._cursor:
                    self._cursor = seq
                for event in parse_bridge_event(item):
                    yield event

    async def fetch_contact(self, jid: str) -> ContactInfo:
        """Look up contact metadata. Unknown contacts yield empty metadata."""
        client = await self._get_client()
        resp = await client.get(f"{self.base_url}/contacts/{quote(jid, safe='@.')}")
        if resp.status_code == 404:
            return ContactInfo(jid=jid)
        resp.raise_for_status()
        return parse_contact(jid, resp.json())

    async def request_pairing_code(self, phone: str) -> str:
        data = await self._api(
            "POST", f"/sessions/{self.session_id}/pairing-code",
            json={"phone": phone},
        )
        code = data.get("code", "")
        if not code:
            raise RuntimeError("Bridge returned an empty pairing code")
        return code

    async def disconnect(self) -> None:
        """Close the bridge session and the HTTP client."""
        if self._client is None or self._client.is_closed:
            return
        if self.session_id:
            try:
                await self._client.delete(f"{self.base_url}/sessions/{self.session_id}")
            except httpx.HTTPError as e:
                log.debug("Bridge session close failed (non-critical): %s", e)
        await self._client.aclose()
