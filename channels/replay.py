"""Replay channel — bridge events from a JSONL file, for dry runs.

Each line is one bridge event ({"type": ..., "data": ...}), the same
format the bridge serves. "contacts.upsert" lines feed contact metadata.
The stream ends at EOF, which shuts the daemon down.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path

from . import ConnectionUpdate, ContactInfo, SessionEvent
from .bridge import parse_bridge_event, parse_contact

log = logging.getLogger(__name__)


class ReplaySession:
    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self._contacts: dict[str, ContactInfo] = {}

    async def connect(self) -> None:
        if not self.path.is_file():
            raise ConnectionError(f"Replay file not found: {self.path}")
        log.info("Replaying events from %s", self.path)

    async def events(self) -> AsyncIterator[SessionEvent]:
        lines = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        opened = False
        for n, line in enumerate(lines.splitlines(), 1):
            if not line.strip():
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError:
                log.warning("Replay line %d is not JSON, skipping", n)
                continue
            if not isinstance(item, dict):
                continue
            if item.get("type") == "contacts.upsert":
                for raw in item.get("data") or []:
                    if isinstance(raw, dict) and raw.get("id"):
                        self._contacts[raw["id"]] = parse_contact(raw["id"], raw)
                continue
            events = parse_bridge_event(item)
            for event in events:
                if isinstance(event, ConnectionUpdate) and event.connection == "open":
                    opened = True
                elif not opened and not isinstance(event, ConnectionUpdate):
                    # Recorded traffic without a handshake: open implicitly
                    opened = True
                    yield ConnectionUpdate(connection="open")
                yield event

    async def fetch_contact(self, jid: str) -> ContactInfo:
        return self._contacts.get(jid, ContactInfo(jid=jid))

    async def request_pairing_code(self, phone: str) -> str:
        raise RuntimeError("Pairing codes are not available when replaying")

    async def disconnect(self) -> None:
        pass
