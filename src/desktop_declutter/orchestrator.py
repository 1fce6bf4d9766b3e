"""Orchestrates watching, classification and action execution."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import signal
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Callable, Iterable, TypeVar

from rich.console import Console
from rich.logging import RichHandler

from .classifier import Act, Classifier, Decision, Ignore
from .errors import (
    ActionError,
    DestinationConflict,
    DeviceLost,
    LedgerWriteError,
    NotFound,
    PermissionDenied,
    TransientIOError,
    UndoError,
)
from .executor import ActionExecutor
from .ledger import Ledger, LedgerEntry
from .notifications import ActionCompleted, ActionFailed, ActionUndone, Notifier
from .records import FileRecord
from .rules import Rule, RuleSet
from .watcher import EventKind, FileWatcher, WatchEvent, scan_directory

if TYPE_CHECKING:
    from .config import DeclutterConfig

T = TypeVar("T")


class RootState(Enum):
    """Lifecycle state of one watched root."""

    IDLE = "idle"
    SCANNING = "scanning"
    ACTING = "acting"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class OrchestratorStats:
    """Statistics for the orchestrator."""

    start_time: datetime
    events_seen: int = 0
    files_classified: int = 0
    files_ignored: int = 0
    actions_completed: int = 0
    actions_skipped: int = 0
    errors: int = 0
    watcher_restarts: int = 0
    incomplete: int = 0


@dataclass
class PendingAction:
    """Latest classification of a path, waiting for a worker."""

    root: Path
    record: FileRecord
    decision: Act

    @property
    def path(self) -> Path:
        return self.record.path


class PathLocks:
    """Per-path asyncio locks, acquired in sorted order to avoid deadlocks."""

    def __init__(self) -> None:
        self._locks: dict[Path, asyncio.Lock] = {}
        self._users: Counter[Path] = Counter()

    def is_locked(self, path: Path) -> bool:
        lock = self._locks.get(path)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, *paths: Path | None) -> AsyncIterator[None]:
        keys = sorted({p for p in paths if p is not None}, key=str)
        for key in keys:
            self._locks.setdefault(key, asyncio.Lock())
            self._users[key] += 1

        acquired: list[asyncio.Lock] = []
        try:
            for key in keys:
                lock = self._locks[key]
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in keys:
                self._users[key] -= 1
                if self._users[key] <= 0:
                    del self._users[key]
                    del self._locks[key]


class Orchestrator:
    """Keeps watched directories organised according to the rule set."""

    def __init__(
        self,
        config: DeclutterConfig,
        *,
        logger: logging.Logger | None = None,
        ledger: Ledger | None = None,
        executor: ActionExecutor | None = None,
        notifier: Notifier | None = None,
        watcher_factory: Callable[[Path], FileWatcher] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Declutter configuration. Validated here.
            logger: Logger instance. Set up from the config if None.
            ledger: Action ledger. Opens the configured ledger file if None.
            executor: Action executor. Built from the config if None.
            notifier: Notification hub. A fresh one if None.
            watcher_factory: Builds the watcher for a root.

        Raises:
            ConfigError: If the configuration or rule set is invalid.

        """
        config.validate()
        self.config = config
        self.logger = logger or self._setup_logging()
        self.ledger = ledger or Ledger(config.ledger_path)
        self.executor = executor or ActionExecutor(config, self.logger, self.ledger)
        self.notifier = notifier or Notifier(self.logger)
        self.classifier = Classifier(config.default_policy, config.unsorted_folder)
        self.roots = list(config.watch_directories)
        self._ruleset = config.build_ruleset()
        self._watcher_factory = watcher_factory or (lambda root: FileWatcher(root, config, self.logger))

        # State
        self.stats = OrchestratorStats(start_time=datetime.now())
        self.states: dict[Path, RootState] = {root: RootState.IDLE for root in self.roots}
        self.watchers: dict[Path, FileWatcher] = {}
        self.locks = PathLocks()
        self._queue: asyncio.Queue[Path] = asyncio.Queue()
        self._pending: dict[Path, PendingAction] = {}
        self._inflight: dict[Path, PendingAction] = {}
        self._active: Counter[Path] = Counter()
        self._backlogged: set[Path] = set()
        self._restored = self.ledger.restored_files()
        self._pool = ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="declutter")
        self._workers: list[asyncio.Task[None]] = []
        self._supervisors: list[asyncio.Task[None]] = []
        self._stop_requested: asyncio.Event | None = None
        self._running = False

    def _setup_logging(self) -> logging.Logger:
        """Set up logging for the orchestrator.

        Returns:
            Configured logger instance.

        """
        logger = logging.getLogger("desktop-declutter")
        logger.setLevel(getattr(logging, self.config.log_level))

        # Clear existing handlers to avoid duplicates if the orchestrator is recreated
        if logger.handlers:
            logger.handlers.clear()

        console_handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
        )
        console_handler.setLevel(logging.INFO)
        logger.addHandler(console_handler)

        self.config.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(self.config.log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
        logger.addHandler(file_handler)

        return logger

    # Rules

    @property
    def ruleset(self) -> RuleSet:
        return self._ruleset

    def reload_rules(self, rules: Iterable[Rule]) -> RuleSet:
        """Validate a new rule list and swap it in as a whole.

        Raises:
            RuleConflict: If the new rules are invalid; the old set stays active.

        """
        ruleset = RuleSet.build(rules, self.roots)
        self._ruleset = ruleset
        self.logger.info("Loaded %d rules", len(ruleset))
        return ruleset

    # Scanning

    def _set_state(self, root: Path, state: RootState) -> None:
        if self.states.get(root) is RootState.STOPPED:
            return
        if self.states.get(root) is not state:
            self.logger.debug("%s: %s -> %s", root, self.states.get(root, RootState.IDLE).value, state.value)
        self.states[root] = state

    def _settle(self, root: Path) -> None:
        if self.states.get(root) in (RootState.SCANNING, RootState.ACTING):
            self._set_state(root, RootState.ACTING if self._active[root] else RootState.IDLE)

    def _in_scope(self, root: Path, path: Path) -> bool:
        if self.config.recursive:
            return path != root and path.is_relative_to(root)
        return path.parent == root

    def _is_restored(self, path: Path) -> bool:
        """Files put back by undo stay put until they change."""
        held = self._restored.get(path)
        if held is None:
            return False
        try:
            stat = path.stat()
        except OSError:
            del self._restored[path]
            return False
        if (stat.st_size, stat.st_mtime_ns) == held:
            return True
        del self._restored[path]
        return False

    def _discard(self, path: Path) -> None:
        self._pending.pop(path, None)

    def submit(self, root: Path, path: Path, event: WatchEvent | None = None) -> Decision | None:
        """Snapshot and classify a path, queueing it if it needs action.

        A newer snapshot of a path that is still waiting replaces the older
        one, so only the latest state is ever acted on.

        Returns:
            The decision, or None if the path was dropped before classification.

        """
        if event is not None:
            if event.kind is EventKind.REMOVED:
                self._discard(path)
                return None
            if event.kind is EventKind.RENAMED and event.src_path is not None:
                self._discard(event.src_path)

        if not self._in_scope(root, path):
            self._discard(path)
            return None
        if self._is_restored(path):
            self._discard(path)
            return Ignore("restored by undo")

        self._set_state(root, RootState.SCANNING)
        try:
            try:
                record = FileRecord.snapshot(path)
            except FileNotFoundError:
                self._discard(path)
                return None
            except OSError as e:
                self.logger.warning("Cannot read %s, skipping: %s", path, e)
                self._discard(path)
                return None

            decision = self.classifier.classify(record, self._ruleset)
            self.stats.files_classified += 1
            if isinstance(decision, Ignore):
                self.stats.files_ignored += 1
                self._discard(path)
                self.logger.debug("Ignoring %s: %s", path.name, decision.reason)
                return decision

            first = path not in self._pending
            self._pending[path] = PendingAction(root, record, decision)
            if first:
                self._queue.put_nowait(path)
            self.logger.debug("Queued %s for rule %s", path.name, decision.rule.name)
            self._apply_backpressure(root)
            return decision
        finally:
            self._settle(root)

    def scan_root(self, root: Path) -> int:
        """Classify every file already present in a root.

        Returns:
            Number of files queued for action.

        """
        queued = 0
        for path in scan_directory(root, self.logger, recursive=self.config.recursive):
            if isinstance(self.submit(root, path), Act):
                queued += 1
        self.logger.info("Scanned %s: %d files need action", root, queued)
        return queued

    def preview(self, roots: Iterable[Path] | None = None) -> list[tuple[FileRecord, Decision]]:
        """Classify every file in the given roots (all watched roots by default) without acting."""
        results: list[tuple[FileRecord, Decision]] = []
        for root in self.roots if roots is None else roots:
            if not root.is_dir():
                self.logger.warning("Watch directory does not exist: %s", root)
                continue
            for path in scan_directory(root, self.logger, recursive=self.config.recursive):
                try:
                    record = FileRecord.snapshot(path)
                except OSError:
                    continue
                results.append((record, self.classifier.classify(record, self._ruleset)))
        return results

    def _apply_backpressure(self, root: Path) -> None:
        watcher = self.watchers.get(root)
        if watcher is None:
            return
        depth = self._queue.qsize()
        if depth > self.config.queue_high_water and root not in self._backlogged:
            self._backlogged.add(root)
            watcher.widen_debounce()
        elif depth <= self.config.queue_high_water // 2 and root in self._backlogged:
            self._backlogged.discard(root)
            watcher.restore_debounce()

    # Acting

    async def _run_blocking(self, func: Callable[..., T], *args: object) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool, functools.partial(func, *args))

    async def _worker(self) -> None:
        while True:
            path = await self._queue.get()
            try:
                pending = self._pending.pop(path, None)
                if pending is not None:
                    try:
                        await self._act(pending)
                    except Exception as e:
                        self.logger.exception("Unexpected error handling %s", path)
                        self._report(path, e)
            finally:
                self._queue.task_done()
            for root in list(self._backlogged):
                self._apply_backpressure(root)

    async def _act(self, pending: PendingAction) -> LedgerEntry | None:
        root, path = pending.root, pending.path
        rule, action = pending.decision.rule, pending.decision.action
        target = self.executor.target_for(action, path, root)

        self._inflight[path] = pending
        self._active[root] += 1
        self._set_state(root, RootState.ACTING)
        try:
            # Record under the lock so entries for one path stay in action order.
            async with self.locks.hold(path, target):
                entry = await self._run_blocking(self.executor.apply, action, path, root, rule.name)
                if entry is None:
                    self.stats.actions_skipped += 1
                    return None
                try:
                    entry = await self._run_blocking(self.ledger.record, entry)
                except OSError as e:
                    raise LedgerWriteError(path, f"{action.kind} done but not recorded: {e}") from e
        except NotFound:
            self.logger.debug("File vanished before %s: %s", action.kind, path)
            self.stats.actions_skipped += 1
            return None
        except PermissionDenied as e:
            self.logger.error("Permission denied for %s: %s", path, e.reason)
            self._report(path, e)
            return None
        except DestinationConflict as e:
            self.logger.warning("Destination taken for %s: %s", path.name, e.reason)
            self._report(path, e)
            return None
        except TransientIOError as e:
            self.logger.error("I/O error for %s: %s", path, e.reason)
            self._report(path, e)
            return None
        except LedgerWriteError as e:
            self.logger.error("Ledger write failed for %s: %s", path, e.reason)
            self._report(path, e)
            return None
        except ActionError as e:
            self.logger.error("Action failed for %s: %s", path, e)
            self._report(path, e)
            return None
        finally:
            self._inflight.pop(path, None)
            self._active[root] -= 1
            if self._active[root] <= 0:
                del self._active[root]
                self._settle(root)

        self.stats.actions_completed += 1
        self.notifier.publish(ActionCompleted(entry))
        return entry

    def _report(self, path: Path, error: Exception) -> None:
        self.stats.errors += 1
        self.notifier.publish(
            ActionFailed(
                path=path,
                error=str(error),
                kind=type(error).__name__,
                retryable=getattr(error, "retryable", False),
            )
        )

    # Undo

    async def undo(self, entry_id: int) -> LedgerEntry:
        """Reverse a completed action.

        Args:
            entry_id: Ledger id of the action.

        Returns:
            The ``undone`` ledger entry.

        Raises:
            UndoStale: The file changed since the action.
            UndoError: The entry is unknown, already undone or irreversible.

        """
        entry = self.ledger.get(entry_id)
        if entry is None:
            raise UndoError(f"no ledger entry with id {entry_id}")
        if self.ledger.is_reverted(entry_id):
            raise UndoError(f"entry {entry_id} was already undone")

        async with self.locks.hold(entry.original, entry.result):
            undo_entry = await self._run_blocking(self.executor.revert, entry)
            undo_entry = await self._run_blocking(self.ledger.record, undo_entry)

        if undo_entry.result is not None:
            self._restored[undo_entry.result] = (undo_entry.size, undo_entry.mtime_ns)
        self.notifier.publish(ActionUndone(undo_entry))
        return undo_entry

    # Lifecycle

    async def _startup(self) -> None:
        for result in await self._run_blocking(self.executor.recover):
            if result.entry is not None:
                entry = await self._run_blocking(self.ledger.record, result.entry)
                if entry.reverts is not None and entry.result is not None:
                    self._restored[entry.result] = (entry.size, entry.mtime_ns)
        if cleaned := await self._run_blocking(self.executor.cleanup_trash):
            self.logger.info("Cleaned %d expired trash directories", cleaned)

    def _backoff_delay(self, attempt: int) -> float:
        return min(self.config.backoff_base * (2**attempt), self.config.backoff_cap)

    async def _supervise(self, root: Path, stop: asyncio.Event) -> None:
        """Run the watcher for one root, restarting it with backoff when the root is lost."""
        watcher = self._watcher_factory(root)
        self.watchers[root] = watcher
        attempt = 0
        lost = False
        while not stop.is_set():
            try:
                if lost:
                    watcher.restart()
                else:
                    watcher.start()
                self.scan_root(root)
                attempt = 0
                async for event in watcher.events():
                    self.stats.events_seen += 1
                    self.submit(root, event.path, event)
            except DeviceLost as e:
                watcher.stop()
                if stop.is_set():
                    break
                lost = True
                delay = self._backoff_delay(attempt)
                attempt += 1
                self.stats.watcher_restarts += 1
                self._set_state(root, RootState.BACKOFF)
                self.logger.warning("Lost %s (%s), retrying in %.1fs", root, e, delay)
                self._report(root, e)
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                continue
            finally:
                watcher.stop()
            break

    async def run(self) -> None:
        """Recover, scan and watch every root until ``request_stop()``."""
        stop = self._stop_requested = asyncio.Event()
        self._running = True
        self.logger.info("Starting desktop declutter for %s", ", ".join(str(r) for r in self.roots))

        try:
            await self._startup()
            self._workers = [
                asyncio.create_task(self._worker(), name=f"declutter-worker-{i}")
                for i in range(self.config.workers)
            ]
            self._supervisors = [
                asyncio.create_task(self._supervise(root, stop), name=f"declutter-watch-{root.name}")
                for root in self.roots
            ]
            await stop.wait()
        finally:
            await self._shutdown()

    async def run_daemon(self) -> None:
        """Run until SIGTERM or SIGINT."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)
        await self.run()

    async def run_once(self) -> list[LedgerEntry]:
        """Scan every root once, act on what matches, and return the new entries."""
        self._stop_requested = asyncio.Event()
        before = len(self.ledger)
        await self._startup()
        for root in self.roots:
            try:
                self.scan_root(root)
            except DeviceLost as e:
                self.logger.error("Cannot scan %s: %s", root, e)
                self._report(root, e)

        workers = [asyncio.create_task(self._worker()) for _ in range(self.config.workers)]
        try:
            await self._queue.join()
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
        return self.ledger.entries()[before:]

    def request_stop(self) -> None:
        """Ask a running orchestrator to shut down."""
        self.logger.info("Shutdown requested")
        for watcher in self.watchers.values():
            watcher.stop()
        if self._stop_requested is not None:
            self._stop_requested.set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def _shutdown(self) -> None:
        for watcher in self.watchers.values():
            watcher.stop()
        for task in self._supervisors:
            task.cancel()
        await asyncio.gather(*self._supervisors, return_exceptions=True)

        if dropped := len(self._pending):
            self.logger.info("Dropping %d queued files that were not started", dropped)
        self._pending.clear()

        # Let in-flight actions finish rather than interrupting a file operation
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.shutdown_grace
        while self._inflight and loop.time() < deadline:
            await asyncio.sleep(0.05)

        for path, pending in list(self._inflight.items()):
            self.logger.warning("Abandoning %s of %s after grace period", pending.decision.action.kind, path)
            self.ledger.mark_incomplete(
                pending.decision.action.kind,
                path,
                "abandoned at shutdown",
                rule=pending.decision.rule.name,
            )
            self.stats.incomplete += 1

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._pool.shutdown(wait=False, cancel_futures=True)

        for root in self.roots:
            self.states[root] = RootState.STOPPED
        self._running = False
        self.logger.info(
            "Stopped. Stats: events=%d, completed=%d, skipped=%d, errors=%d, incomplete=%d",
            self.stats.events_seen,
            self.stats.actions_completed,
            self.stats.actions_skipped,
            self.stats.errors,
            self.stats.incomplete,
        )
