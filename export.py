"""Snapshot export — JSON, CSV and vCard views of the ledger.

Every flush regenerates all three files from the whole ledger; nothing
is ever appended. Each file is swapped in atomically, so readers see
either the previous flush or the new one.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import time
from pathlib import Path

from capture import ContactRecord, Ledger
from credentials import atomic_write

log = logging.getLogger(__name__)

CSV_HEADER = ["phone", "name", "message", "timestamp"]

# format -> (file on disk, content type, download filename)
EXPORT_FORMATS: dict[str, tuple[str, str, str]] = {
    "json": ("contacts.json", "application/json", "unsaved_contacts.json"),
    "csv": ("contacts.csv", "text/csv", "unsaved_contacts.csv"),
    "vcf": ("contacts.vcf", "text/vcard", "unsaved_contacts.vcf"),
}


def render_json(records: list[ContactRecord]) -> str:
    return json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False) + "\n"


def render_csv(records: list[ContactRecord]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=CSV_HEADER, lineterminator="\r\n")
    writer.writeheader()
    for r in records:
        writer.writerow(r.to_dict())
    return buf.getvalue()


def _vcard_escape(value: str) -> str:
    """Escape a vCard 3.0 text value (RFC 2426 §4)."""
    return (
        value.replace("\\", "\\\\")
        .replace("\r\n", "\n")
        .replace("\n", "\\n")
        .replace(";", "\\;")
        .replace(",", "\\,")
    )


def render_vcard(records: list[ContactRecord]) -> str:
    blocks = []
    for r in records:
        lines = [
            "BEGIN:VCARD",
            "VERSION:3.0",
            f"FN:{_vcard_escape(r.display_name)}",
            f"TEL;TYPE=CELL:{r.phone}",
        ]
        if r.message_excerpt:
            lines.append(f"NOTE:From WhatsApp message: {_vcard_escape(r.message_excerpt)}")
        lines.append("END:VCARD")
        blocks.append("\r\n".join(lines) + "\r\n")
    return "".join(blocks)


_RENDERERS = {
    "json": render_json,
    "csv": render_csv,
    "vcf": render_vcard,
}


def export_path(export_dir: Path, fmt: str) -> Path:
    return Path(export_dir) / EXPORT_FORMATS[fmt][0]


def load_snapshot(export_dir: Path) -> list[ContactRecord]:
    """Read records back from the JSON snapshot.

    A missing file is an empty ledger. A corrupt file is logged as lost
    state and also yields an empty ledger.
    """
    path = export_path(export_dir, "json")
    if not path.exists():
        return []
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, list):
            raise ValueError("snapshot is not a JSON array")
        return [ContactRecord.from_dict(item) for item in raw]
    except (OSError, ValueError, KeyError, TypeError) as e:
        log.warning("Snapshot %s is unreadable, previously captured contacts are lost "
                    "for this run: %s", path, e)
        return []


def purge_snapshots(export_dir: Path) -> None:
    for fmt in EXPORT_FORMATS:
        path = export_path(export_dir, fmt)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            log.error("Could not delete snapshot %s: %s", path, e)
    log.info("Snapshot files purged from %s", export_dir)


class PersistenceBatcher:
    """Counts new ledger entries and flushes full snapshots in batches."""

    def __init__(self, ledger: Ledger, export_dir: Path, batch_size: int = 10):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.ledger = ledger
        self.export_dir = Path(export_dir)
        self.batch_size = batch_size
        self.pending = 0
        self.flush_count = 0
        self.last_flush_at: float | None = None
        self.last_error: str = ""

    def note_new_entry(self) -> None:
        self.pending += 1

    def maybe_flush(self) -> bool:
        """Flush if the batch threshold is reached. Returns True if flushed."""
        if self.pending < self.batch_size:
            return False
        return self.flush()

    def flush(self, force: bool = False) -> bool:
        """Write all three snapshots from the current ledger.

        Ignores the batch threshold. Without force, does nothing when no
        entries are pending. An empty ledger is never written. On failure
        the pending count is kept so the next trigger retries.
        """
        if not self.pending and not force:
            return False
        records = self.ledger.snapshot()
        if not records:
            return False

        try:
            self.export_dir.mkdir(parents=True, exist_ok=True)
            # Render everything before touching disk
            rendered = {fmt: render(records) for fmt, render in _RENDERERS.items()}
            for fmt, text in rendered.items():
                atomic_write(export_path(self.export_dir, fmt), text.encode("utf-8"))
        except OSError as e:
            self.last_error = str(e)
            log.error("Snapshot flush failed (%d pending, will retry): %s", self.pending, e)
            return False

        log.info("Snapshots written: %d contacts (%d new) to %s",
                 len(records), self.pending, self.export_dir)
        self.pending = 0
        self.flush_count += 1
        self.last_flush_at = time.time()
        self.last_error = ""
        return True

    def purge(self) -> None:
        """Delete the snapshot files and drop the pending count."""
        purge_snapshots(self.export_dir)
        self.pending = 0
