"""Messaging collaborator interface and shared event types.

Defines the contract between the supervisor and the WhatsApp transport.
A session emits connection, credential and message events, answers
contact-metadata lookups, and can issue a pairing code.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, Union

if TYPE_CHECKING:
    from config import Config

# Close status code the platform uses for an authenticated logout
LOGGED_OUT = 401

# JID suffix of one-to-one chats; groups use @g.us, broadcasts @broadcast
USER_JID_SUFFIX = "@s.whatsapp.net"


@dataclass
class ConnectionUpdate:
    connection: str | None = None   # "connecting", "open", "close"
    qr: str | None = None           # QR payload while awaiting a scan
    close_code: int | None = None   # status code of the last disconnect
    close_reason: str = ""


@dataclass
class CredentialsUpdate:
    creds: dict = field(default_factory=dict)


@dataclass
class InboundMessage:
    remote_jid: str
    from_me: bool
    text: str | None
    timestamp: float                # platform timestamp, Unix seconds
    push_name: str = ""
    message_id: str = ""


@dataclass
class ContactInfo:
    jid: str
    name: str | None = None             # address-book name
    verified_name: str | None = None    # business verified name
    notify: str | None = None           # push name announced by the sender


SessionEvent = Union[ConnectionUpdate, CredentialsUpdate, InboundMessage]


class MessagingSession(Protocol):
    async def connect(self) -> None: ...
    def events(self) -> AsyncIterator[SessionEvent]: ...
    async def fetch_contact(self, jid: str) -> ContactInfo: ...
    async def request_pairing_code(self, phone: str) -> str: ...
    async def disconnect(self) -> None: ...


SessionFactory = Callable[[dict], MessagingSession]


def create_session_factory(config: Config) -> SessionFactory:
    """Factory: build a session factory from config.

    The returned callable takes the persisted credential material and
    returns a fresh, unconnected session.
    """
    ch_type = config.session_channel

    if ch_type == "bridge":
        from .bridge import BridgeSession

        def _bridge(creds: dict) -> MessagingSession:
            return BridgeSession(
                base_url=config.bridge_url,
                creds=creds,
                poll_timeout=config.poll_timeout,
            )
        return _bridge
    if ch_type == "replay":
        from .replay import ReplaySession

        def _replay(creds: dict) -> MessagingSession:
            return ReplaySession(config.replay_file)
        return _replay
    raise ValueError(f"Unknown session channel: {ch_type!r}")
