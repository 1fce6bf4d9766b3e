"""Label index for tagged files."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path


class TagIndex:
    """Maps file paths to labels, persisted as a small JSON document."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._tags: dict[str, list[str]] = {}
        if path is not None and path.exists():
            with path.open(encoding="utf-8") as f:
                self._tags = json.load(f)

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self._tags, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def labels_for(self, path: Path) -> list[str]:
        with self._lock:
            return list(self._tags.get(str(path), []))

    def add(self, path: Path, label: str) -> bool:
        """Attach a label. Returns False if the file already had it."""
        with self._lock:
            labels = self._tags.setdefault(str(path), [])
            if label in labels:
                return False
            labels.append(label)
            self._save()
            return True

    def remove(self, path: Path, label: str) -> bool:
        """Detach a label. Returns False if the file did not have it."""
        with self._lock:
            labels = self._tags.get(str(path), [])
            if label not in labels:
                return False
            labels.remove(label)
            if not labels:
                del self._tags[str(path)]
            self._save()
            return True
