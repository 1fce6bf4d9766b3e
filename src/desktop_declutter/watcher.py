"""File system watcher with explicit debouncing, built on watchdog."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Callable

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .classifier import is_internal_name
from .errors import DeviceLost

if TYPE_CHECKING:
    from watchdog.events import FileSystemEvent

    from .config import DeclutterConfig

# Upper bound on how long the event loop sleeps between root checks
_MAX_TICK = 0.1


class EventKind(Enum):
    """Kind of change observed on a path."""

    CREATED = "created"
    MODIFIED = "modified"
    RENAMED = "renamed"
    REMOVED = "removed"


@dataclass(frozen=True)
class WatchEvent:
    """Debounced change with a stream-wide sequence number."""

    kind: EventKind
    path: Path
    sequence: int
    src_path: Path | None = None


@dataclass
class _Buffered:
    kind: EventKind
    src_path: Path | None


# Kinds a later MODIFIED event folds into
_ABSORBS_MODIFIED = (EventKind.CREATED, EventKind.MODIFIED, EventKind.RENAMED)


class EventCoalescer:
    """Per-path timer queue that merges bursts of events.

    Events for a path are buffered until the path has been quiet for the
    debounce window, then released in arrival order. A MODIFIED event that
    follows a CREATED, MODIFIED or RENAMED event for the same path is folded
    into it. Sequence numbers are assigned on release and increase across
    all paths.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._buffers: dict[Path, list[_Buffered]] = {}
        self._last_seen: dict[Path, float] = {}
        self._sequence = 0

    def add(self, kind: EventKind, path: Path, src_path: Path | None = None) -> None:
        """Buffer a raw event. Safe to call from the observer thread."""
        with self._lock:
            buffer = self._buffers.setdefault(path, [])
            if not (kind is EventKind.MODIFIED and buffer and buffer[-1].kind in _ABSORBS_MODIFIED):
                buffer.append(_Buffered(kind, src_path))
            # Any activity restarts the path's quiet period
            self._last_seen.pop(path, None)
            self._last_seen[path] = self._clock()

    def release(self) -> list[WatchEvent]:
        """Pop every path that has been quiet for the window.

        Returns:
            Events in release order, oldest quiet path first.

        """
        now = self._clock()
        released: list[WatchEvent] = []
        with self._lock:
            ready = [path for path, seen in self._last_seen.items() if now - seen >= self.window]
            for path in ready:
                del self._last_seen[path]
                for item in self._buffers.pop(path, []):
                    self._sequence += 1
                    released.append(WatchEvent(item.kind, path, self._sequence, item.src_path))
        return released

    def next_deadline(self) -> float | None:
        """Clock time at which the oldest buffered path becomes quiet."""
        with self._lock:
            if not self._last_seen:
                return None
            return min(self._last_seen.values()) + self.window

    def clear(self) -> int:
        with self._lock:
            count = sum(len(b) for b in self._buffers.values())
            self._buffers.clear()
            self._last_seen.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)


class DeclutterEventHandler(FileSystemEventHandler):
    """Translates watchdog events into raw events for the coalescer."""

    def __init__(self, coalescer: EventCoalescer, logger: logging.Logger) -> None:
        """Initialize the event handler.

        Args:
            coalescer: Destination for translated events.
            logger: Logger instance.

        """
        super().__init__()
        self.coalescer = coalescer
        self.logger = logger

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(EventKind.CREATED, event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward(EventKind.MODIFIED, event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._forward(EventKind.REMOVED, event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._forward(EventKind.RENAMED, event)

    def _forward(self, kind: EventKind, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        try:
            if kind is EventKind.RENAMED:
                src = Path(os.fsdecode(event.src_path))
                dest = Path(os.fsdecode(event.dest_path))
                if is_internal_name(dest.name):
                    return
                self.coalescer.add(kind, dest, src)
                return
            path = Path(os.fsdecode(event.src_path))
            if is_internal_name(path.name):
                return
            self.coalescer.add(kind, path)
        except (OSError, TypeError, ValueError) as e:
            self.logger.warning("Skipping unreadable event %r: %s", event, e)


def scan_directory(root: Path, logger: logging.Logger, *, recursive: bool = False) -> list[Path]:
    """List the files currently in a watched root.

    Hidden and internal files are skipped. Entries that cannot be read are
    logged and skipped.

    Raises:
        DeviceLost: If the root itself cannot be listed.

    """
    found: list[Path] = []
    stack = [root]
    while stack:
        directory = stack.pop()
        try:
            entries = sorted(directory.iterdir())
        except PermissionError as e:
            if directory == root:
                raise DeviceLost(root, f"cannot list root: {e}") from e
            logger.warning("Skipping unreadable directory %s: %s", directory, e)
            continue
        except FileNotFoundError as e:
            if directory == root:
                raise DeviceLost(root) from e
            continue

        for entry in entries:
            if is_internal_name(entry.name):
                continue
            try:
                if entry.is_dir() and not entry.is_symlink():
                    if recursive and entry.suffix.lower() != ".app":
                        stack.append(entry)
                    continue
                if entry.is_file():
                    found.append(entry)
            except OSError as e:
                logger.warning("Skipping %s: %s", entry, e)
    return found


class FileWatcher:
    """Watches one root directory and yields debounced events."""

    def __init__(
        self,
        root: Path,
        config: DeclutterConfig,
        logger: logging.Logger,
        clock: Callable[[], float] = time.monotonic,
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        """Initialize the file watcher.

        Args:
            root: Directory to watch.
            config: Declutter configuration.
            logger: Logger instance.
            clock: Monotonic clock driving the debounce timers.
            observer_factory: Builds the watchdog observer.

        """
        self.root = root
        self.config = config
        self.logger = logger
        self.base_window = config.debounce_window
        self.max_window = config.debounce_max_ms / 1000
        self.coalescer = EventCoalescer(self.base_window, clock)
        self._clock = clock
        self._observer_factory = observer_factory
        self._observer: Observer | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Check if watcher is running."""
        return self._running

    @property
    def debounce_window(self) -> float:
        return self.coalescer.window

    def start(self) -> None:
        """Start watching the root.

        Raises:
            DeviceLost: If the root does not exist or cannot be watched.

        """
        if self._observer is not None:
            return
        if not self.root.is_dir():
            raise DeviceLost(self.root, "watch directory does not exist")

        observer = self._observer_factory()
        handler = DeclutterEventHandler(self.coalescer, self.logger)
        try:
            observer.schedule(handler, str(self.root), recursive=self.config.recursive)
            observer.start()
        except OSError as e:
            raise DeviceLost(self.root, f"cannot watch: {e}") from e

        self._observer = observer
        self._running = True
        self.logger.info("Watching directory: %s", self.root)

    def stop(self) -> None:
        """Stop watching; an active ``events()`` loop ends at its next tick."""
        self._running = False
        if self._observer is not None:
            self._observer.stop()
            if self._observer.is_alive():
                self._observer.join(timeout=5.0)
            self._observer = None
            self.logger.info("Stopped watching: %s", self.root)

    def restart(self) -> None:
        """Stop, drop buffered events and start again."""
        self.stop()
        dropped = self.coalescer.clear()
        if dropped:
            self.logger.debug("Dropped %d buffered events on restart", dropped)
        self.coalescer.window = self.base_window
        self.start()

    def widen_debounce(self) -> float:
        """Double the debounce window, up to the configured maximum."""
        widened = min(max(self.coalescer.window * 2, 0.001), self.max_window)
        if widened != self.coalescer.window:
            self.logger.info("Backlog on %s, debounce widened to %.2fs", self.root, widened)
        self.coalescer.window = widened
        return widened

    def restore_debounce(self) -> None:
        if self.coalescer.window != self.base_window:
            self.logger.info("Backlog cleared on %s, debounce back to %.2fs", self.root, self.base_window)
        self.coalescer.window = self.base_window

    def _check_alive(self) -> None:
        if not self.root.is_dir():
            raise DeviceLost(self.root)
        if self._observer is not None and not self._observer.is_alive():
            raise DeviceLost(self.root, "observer thread died")

    def _sleep_for(self) -> float:
        deadline = self.coalescer.next_deadline()
        if deadline is None:
            return _MAX_TICK
        return min(_MAX_TICK, max(0.0, deadline - self._clock()))

    async def events(self) -> AsyncIterator[WatchEvent]:
        """Yield debounced events until ``stop()`` is called.

        Raises:
            DeviceLost: If the root disappears or the observer dies.

        """
        while self._running:
            self._check_alive()
            for event in self.coalescer.release():
                yield event
                if not self._running:
                    return
            await asyncio.sleep(self._sleep_for())
