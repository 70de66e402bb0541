"""Per-host persisted state.

One human-diffable JSON file per alias under ``<root>/``.  The record is a
hint for skipping the slow path, never proof that an agent works: every
connection still does a live handshake.
"""

from __future__ import annotations

import contextlib
import dataclasses
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class HostRecord:
    alias: str
    last_deployed_version: str | None = None
    last_deployed_at: str | None = None  # ISO-8601 UTC
    remote_path: str | None = None
    remote_checksum: str | None = None
    last_seen_ok: bool = False

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "HostRecord":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class HostStateStore:
    """Load and save :class:`HostRecord` values by alias.

    Writes go to a temp file in the same directory, are fsynced and then
    renamed over the old file, so a crash leaves either the old record or
    the new one.  Writers for the same alias are serialised by a lock.
    """

    SUFFIX = ".json"

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _path(self, alias: str) -> Path:
        if not alias:
            raise ValueError("Host alias must not be empty")
        return self.root / (quote(alias, safe="") + self.SUFFIX)

    def _lock(self, alias: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(alias, threading.Lock())

    def get(self, alias: str) -> HostRecord | None:
        path = self._path(alias)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable host record %s, treating as absent: %s", path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Host record %s is not an object, treating as absent", path)
            return None
        data["alias"] = alias
        try:
            return HostRecord.from_dict(data)
        except TypeError as exc:
            logger.warning("Malformed host record %s: %s", path, exc)
            return None

    def put(self, record: HostRecord) -> None:
        path = self._path(record.alias)
        body = json.dumps(record.to_dict(), indent=2, sort_keys=True) + "\n"
        with self._lock(record.alias):
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=self.SUFFIX)
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(body)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp)
                raise
        logger.debug("Saved host record for %s", record.alias)

    def aliases(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            unquote(p.name[: -len(self.SUFFIX)])
            for p in self.root.glob("*" + self.SUFFIX)
            if not p.name.startswith(".tmp-")
        )
