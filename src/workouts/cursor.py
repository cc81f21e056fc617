"""SyncCursor: the remote-change watermark owned by RemoteSyncBridge.

The cursor is the highest remote ``change_seq`` whose batch has been fully
merged. It is persisted as JSON (like a resumable backfill checkpoint) and
only ever moves forward, except through ``reset()`` after an explicit
local-store reset.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from src.models.base import utc_now
from src.workouts.errors import PermanentLocalError

logger = logging.getLogger("workoutsync.cursor")


@dataclass
class SyncCursor:
    """Persistent pull watermark.

    Attributes:
        value:      Highest remote change sequence incorporated locally.
        updated_at: When the cursor last moved.
        path:       JSON file backing the cursor (None = memory only).
    """

    value: int = 0
    updated_at: datetime | None = None
    path: Path | None = field(default=None, repr=False)

    def to_json(self) -> dict:
        return {
            "value": self.value,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_json(cls, data: dict, path: Path | None = None) -> "SyncCursor":
        cursor = cls(path=path)
        cursor.value = max(int(data.get("value", 0)), 0)
        if stamp := data.get("updated_at"):
            try:
                cursor.updated_at = datetime.fromisoformat(stamp)
            except ValueError:
                pass
        return cursor

    @classmethod
    def load(cls, path: str | Path | None) -> "SyncCursor":
        """Read the cursor from disk; a missing or unreadable file starts at 0."""
        if path is None:
            return cls()
        target = Path(path)
        if not target.exists():
            return cls(path=target)
        try:
            return cls.from_json(json.loads(target.read_text(encoding="utf-8")), target)
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable sync cursor at %s (%s); starting from 0", target, exc)
            return cls(path=target)

    def advance(self, value: int) -> bool:
        """Move the cursor forward to ``value``. Returns False if it would rewind."""
        if value <= self.value:
            return False
        previous = (self.value, self.updated_at)
        self.value = value
        self.updated_at = utc_now()
        try:
            self._save()
        except PermanentLocalError:
            self.value, self.updated_at = previous
            raise
        return True

    def reset(self) -> None:
        self.value = 0
        self.updated_at = utc_now()
        self._save()
        logger.warning("Sync cursor reset to 0")

    def _save(self) -> None:
        if self.path is None:
            return
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(self.to_json()), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise PermanentLocalError(f"Cannot persist sync cursor to {self.path}: {exc}") from exc
