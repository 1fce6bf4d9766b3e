"""Append-only ledger of completed actions, stored as JSON lines."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_INCOMPLETE = "incomplete"
STATUS_UNDONE = "undone"


@dataclass(frozen=True)
class LedgerEntry:
    """One action the engine performed.

    ``result`` is None for a tombstone (permanent delete). ``reverts``
    points at the entry an ``undone`` record neutralises.
    """

    timestamp: datetime
    action: str
    original: Path
    result: Path | None
    rule: str | None = None
    status: str = STATUS_COMPLETED
    size: int | None = None
    mtime_ns: int | None = None
    label: str | None = None
    reverts: int | None = None
    error: str | None = None
    entry_id: int | None = None

    @property
    def is_tombstone(self) -> bool:
        return self.result is None and self.action == "delete"

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["original"] = str(self.original)
        data["result"] = str(self.result) if self.result is not None else None
        return data

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> LedgerEntry:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            action=data["action"],
            original=Path(data["original"]),
            result=Path(data["result"]) if data.get("result") else None,
            rule=data.get("rule"),
            status=data.get("status", STATUS_COMPLETED),
            size=data.get("size"),
            mtime_ns=data.get("mtime_ns"),
            label=data.get("label"),
            reverts=data.get("reverts"),
            error=data.get("error"),
            entry_id=data.get("entry_id"),
        )


def now() -> datetime:
    return datetime.now(UTC)


class Ledger:
    """Durable append log with monotonically increasing ids.

    Entries are never rewritten. Undo and abandonment are recorded as new
    entries. All methods are thread-safe.
    """

    def __init__(self, path: Path | None = None) -> None:
        """Open (or create) the ledger.

        Args:
            path: JSON-lines file. Keeps entries in memory only if None.

        """
        self.path = path
        self._lock = threading.Lock()
        self._entries: list[LedgerEntry] = []
        self._by_id: dict[int, LedgerEntry] = {}
        self._reverted: set[int] = set()
        self._next_id = 1
        if path is not None:
            self._load(path)

    def _load(self, path: Path) -> None:
        if not path.exists():
            return
        with path.open(encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = LedgerEntry.from_json(json.loads(line))
                except (ValueError, KeyError, TypeError):
                    # A torn final write after a crash is expected; anything else is logged too
                    logger.warning("Skipping unreadable ledger line %d in %s", lineno, path)
                    continue
                if entry.entry_id is None:
                    logger.warning("Skipping ledger line %d without an id in %s", lineno, path)
                    continue
                self._index(entry.entry_id, entry)

    def _index(self, entry_id: int, entry: LedgerEntry) -> None:
        self._entries.append(entry)
        self._by_id[entry_id] = entry
        if entry.reverts is not None:
            self._reverted.add(entry.reverts)
        self._next_id = max(self._next_id, entry_id + 1)

    def record(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry and return it with its id.

        Entries that already carry an id are returned unchanged, so a
        replayed entry never produces a duplicate.
        """
        if entry.entry_id is not None:
            return entry
        with self._lock:
            entry_id = self._next_id
            stored = replace(entry, entry_id=entry_id)
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(stored.to_json()) + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            self._index(entry_id, stored)
            return stored

    def get(self, entry_id: int) -> LedgerEntry | None:
        with self._lock:
            return self._by_id.get(entry_id)

    def entries(self) -> list[LedgerEntry]:
        with self._lock:
            return list(self._entries)

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(self.entries())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def is_reverted(self, entry_id: int) -> bool:
        with self._lock:
            return entry_id in self._reverted

    def latest_for(self, original: Path) -> LedgerEntry | None:
        """Most recent completed, not undone, entry whose original path is ``original``."""
        with self._lock:
            for entry in reversed(self._entries):
                if (
                    entry.original == original
                    and entry.status == STATUS_COMPLETED
                    and entry.entry_id not in self._reverted
                ):
                    return entry
        return None

    def restored_files(self) -> dict[Path, tuple[int | None, int | None]]:
        """Files put back by undo and not acted on since, with their size and mtime then."""
        restored: dict[Path, tuple[int | None, int | None]] = {}
        with self._lock:
            for entry in self._entries:
                if entry.status == STATUS_UNDONE and entry.result is not None:
                    restored[entry.result] = (entry.size, entry.mtime_ns)
                elif entry.status == STATUS_COMPLETED:
                    restored.pop(entry.original, None)
        return restored

    def recent(self, limit: int = 50) -> list[LedgerEntry]:
        with self._lock:
            return list(reversed(self._entries[-limit:]))

    def mark_incomplete(self, action: str, original: Path, reason: str, rule: str | None = None) -> LedgerEntry:
        """Flag an action abandoned mid-flight for manual follow-up."""
        return self.record(
            LedgerEntry(
                timestamp=now(),
                action=action,
                original=original,
                result=None,
                rule=rule,
                status=STATUS_INCOMPLETE,
                error=reason,
            )
        )
