"""Credential store — durable, opaque auth material for the WhatsApp session.

The material is whatever the protocol hands us in creds.update events.
Updates are merged into one JSON file, written atomically each time.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

log = logging.getLogger(__name__)

CREDS_FILE = "creds.json"


def atomic_write(path: Path, data: str | bytes) -> None:
    """Write to temp file then rename — atomic on POSIX."""
    tmp = path.with_name(path.name + ".tmp")
    mode = "wb" if isinstance(data, bytes) else "w"
    encoding = None if isinstance(data, bytes) else "utf-8"
    with open(tmp, mode, encoding=encoding) as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    tmp.replace(path)


class CredentialStore:
    def __init__(self, directory: Path):
        self.dir = Path(directory)
        self.path = self.dir / CREDS_FILE

    def load(self) -> dict:
        """Return the stored material, or {} when absent or unreadable."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Credential file %s is unreadable, starting without credentials "
                        "(a new login will be required): %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            log.warning("Credential file %s has unexpected shape, ignoring it", self.path)
            return {}
        return data

    def save(self, update: dict) -> dict:
        """Merge an update into the stored material and persist it.

        Applying the same update twice leaves the same file behind.
        Returns the merged material. Raises OSError on write failure.
        """
        merged = self.load()
        merged.update(update)
        self.dir.mkdir(parents=True, exist_ok=True)
        atomic_write(self.path, json.dumps(merged, indent=2, sort_keys=True))
        try:
            os.chmod(self.path, 0o600)
        except OSError:  # noqa: S110 — chmod unsupported on some mounts
            pass
        return merged

    def clear(self) -> None:
        """Forget the stored material (after a logout)."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            log.error("Could not remove credential file %s: %s", self.path, e)
            return
        log.info("Credentials cleared: %s", self.path)
