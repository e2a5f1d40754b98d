"""Capture pipeline — inbound messages to ledger entries.

The ledger keeps at most one record per sender phone, in first-seen
order, and never updates or deletes. The ingestor decides which senders
qualify: one-to-one, not from us, not already captured, and unknown to
the address book.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from channels import USER_JID_SUFFIX, ContactInfo, InboundMessage
from retry import RetryPolicy

if TYPE_CHECKING:
    from export import PersistenceBatcher

log = logging.getLogger(__name__)

NO_TEXT = "No text"

_NON_DIGITS = re.compile(r"\D")


def canonical_phone(jid: str) -> str:
    """Derive the dedup key from a JID: user part, no device suffix, digits only.

    "15551234567:12@s.whatsapp.net" -> "15551234567"
    """
    user = jid.split("@", 1)[0]
    user = user.split(":", 1)[0]
    return _NON_DIGITS.sub("", user)


def format_timestamp(ts: float) -> str:
    """Unix seconds -> ISO 8601 UTC with millisecond precision."""
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> float:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()


@dataclass(frozen=True)
class ContactRecord:
    phone: str
    display_name: str
    message_excerpt: str
    captured_at: float

    def to_dict(self) -> dict:
        return {
            "phone": self.phone,
            "name": self.display_name,
            "message": self.message_excerpt,
            "timestamp": format_timestamp(self.captured_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ContactRecord:
        """Rebuild a record from its exported form. Raises on bad input."""
        phone = data["phone"]
        if not isinstance(phone, str) or not phone:
            raise ValueError(f"invalid phone: {phone!r}")
        return cls(
            phone=phone,
            display_name=str(data.get("name", "")),
            message_excerpt=str(data.get("message", "")),
            captured_at=parse_timestamp(data["timestamp"]),
        )


class Ledger:
    """Ordered, deduplicated, append-only list of captured contacts."""

    def __init__(self, records: Iterable[ContactRecord] = ()):
        self._records: list[ContactRecord] = []
        self._phones: set[str] = set()
        for record in records:
            self.add(record)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ContactRecord]:
        return iter(self._records)

    def __contains__(self, phone: object) -> bool:
        return phone in self._phones

    def add(self, record: ContactRecord) -> bool:
        """Append record unless its phone is already present."""
        if record.phone in self._phones:
            return False
        self._records.append(record)
        self._phones.add(record.phone)
        return True

    def snapshot(self) -> list[ContactRecord]:
        return list(self._records)


def is_unrecognized(contact: ContactInfo | None) -> bool:
    """A sender is unrecognized when it has no verified and no saved name."""
    if contact is None:
        return True
    return not contact.verified_name and not contact.name


ContactProbe = Callable[[str], Awaitable[ContactInfo]]


class CaptureIngestor:
    def __init__(
        self,
        ledger: Ledger,
        probe: ContactProbe,
        batcher: PersistenceBatcher | None = None,
        excerpt_limit: int = 100,
        placeholder_name: str = "Unknown",
        retry: RetryPolicy | None = None,
    ):
        self.ledger = ledger
        self.probe = probe
        self.batcher = batcher
        self.excerpt_limit = excerpt_limit
        self.placeholder_name = placeholder_name
        self.retry = retry or RetryPolicy(attempts=3, delay=1.0)
        self.seen = 0
        self.skipped_known = 0
        self.probe_failures = 0

    async def ingest(self, msg: InboundMessage) -> ContactRecord | None:
        """Process one inbound message. Returns the new record, if any."""
        if msg.from_me or not msg.remote_jid.endswith(USER_JID_SUFFIX):
            return None
        phone = canonical_phone(msg.remote_jid)
        if not phone or phone in self.ledger:
            return None
        self.seen += 1

        contact = await self._lookup(msg.remote_jid)
        if not is_unrecognized(contact):
            self.skipped_known += 1
            log.debug("Sender %s is a known contact, not captured", phone)
            return None

        record = ContactRecord(
            phone=phone,
            display_name=self._display_name(contact, msg),
            message_excerpt=(msg.text or NO_TEXT)[:self.excerpt_limit],
            captured_at=msg.timestamp,
        )
        self.ledger.add(record)
        log.info("Captured unsaved number %s (%s), message: %s",
                 record.phone, record.display_name, record.message_excerpt)

        if self.batcher is not None:
            self.batcher.note_new_entry()
            self.batcher.maybe_flush()
        return record

    async def _lookup(self, jid: str) -> ContactInfo | None:
        """Probe contact metadata; None when the probe keeps failing."""
        try:
            return await self.retry.run(self.probe, jid, label=f"contact lookup {jid}")
        except Exception as e:
            self.probe_failures += 1
            log.warning("Contact lookup for %s failed, treating as unknown: %s", jid, e)
            return None

    def _display_name(self, contact: ContactInfo | None, msg: InboundMessage) -> str:
        if contact is not None and contact.notify:
            return contact.notify
        return msg.push_name or self.placeholder_name
