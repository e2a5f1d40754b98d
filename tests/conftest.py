"""Shared fixtures for the strangerd test suite.

All tests use temporary directories and fake sessions.
Nothing touches ~/.strangerd/ or a real WhatsApp bridge.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from channels import ConnectionUpdate, ContactInfo, InboundMessage  # noqa: E402


class FakeSession:
    """Scripted stand-in for a messaging session.

    Tests push events with feed(); events() yields them until close_stream()
    or fail_stream() is called. Contact metadata comes from `contacts`.
    """

    def __init__(self, creds=None, contacts=None, connect_error=None):
        self.creds = dict(creds or {})
        self.contacts: dict[str, ContactInfo] = dict(contacts or {})
        self.connect_error = connect_error
        self.probe_errors: list[Exception] = []
        self.pairing_codes: list = []
        self.pairing_requests: list[str] = []
        self.connected = False
        self.disconnected = False
        self._events: asyncio.Queue = asyncio.Queue()

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def feed(self, *events):
        for e in events:
            self._events.put_nowait(e)

    def close_stream(self):
        self._events.put_nowait(StopAsyncIteration)

    def fail_stream(self, exc):
        self._events.put_nowait(exc)

    async def events(self):
        while True:
            item = await self._events.get()
            if item is StopAsyncIteration:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def fetch_contact(self, jid):
        if self.probe_errors:
            raise self.probe_errors.pop(0)
        return self.contacts.get(jid, ContactInfo(jid=jid))

    async def request_pairing_code(self, phone):
        self.pairing_requests.append(phone)
        if not self.pairing_codes:
            raise RuntimeError("no pairing code scripted")
        code = self.pairing_codes.pop(0)
        if isinstance(code, Exception):
            raise code
        return code

    async def disconnect(self):
        self.disconnected = True


class FakeSessionFactory:
    """Session factory that records every session it builds."""

    def __init__(self, **session_kwargs):
        self.session_kwargs = session_kwargs
        self.sessions: list[FakeSession] = []
        self.creds_seen: list[dict] = []

    def __call__(self, creds):
        self.creds_seen.append(dict(creds))
        session = FakeSession(creds=creds, **self.session_kwargs)
        self.sessions.append(session)
        return session

    @property
    def current(self) -> FakeSession:
        return self.sessions[-1]


def dm(phone="15551234567", text="hello", ts=1700000000.0, from_me=False,
       push_name="", suffix="@s.whatsapp.net"):
    """Build a one-to-one inbound message."""
    return InboundMessage(
        remote_jid=f"{phone}{suffix}",
        from_me=from_me,
        text=text,
        timestamp=ts,
        push_name=push_name,
    )


OPEN = ConnectionUpdate(connection="open")


@pytest.fixture
def export_dir(tmp_path):
    d = tmp_path / "exports"
    d.mkdir()
    return d


@pytest.fixture
def creds_dir(tmp_path):
    return tmp_path / "auth"


@pytest.fixture
def factory():
    return FakeSessionFactory()


@pytest.fixture
def minimal_toml_data(tmp_path):
    """Small valid config data (as parsed dict, not raw TOML)."""
    return {
        "http": {"host": "127.0.0.1", "port": 8099, "token": "s3cret"},
        "capture": {"excerpt_limit": 50, "probe_attempts": 2, "probe_delay": 0},
        "export": {"dir": str(tmp_path / "exports"), "batch_size": 3},
        "session": {"bridge_url": "http://bridge.test:3000", "reconnect_delay": 0.01},
        "paths": {
            "state_dir": str(tmp_path / "state"),
            "credentials_dir": str(tmp_path / "state" / "auth"),
            "log_file": str(tmp_path / "state" / "strangerd.log"),
        },
    }


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep host environment overrides out of config tests."""
    for var in ("STRANGERD_TOKEN", "PORT", "STRANGERD_PAIRING_PHONE", "STRANGERD_BRIDGE_URL"):
        monkeypatch.delenv(var, raising=False)
