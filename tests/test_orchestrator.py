"""Tests for the orchestrator."""

from __future__ import annotations

import asyncio
import errno
import logging
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock, patch

import pytest

from desktop_declutter.classifier import Act, Ignore
from desktop_declutter.config import DeclutterConfig
from desktop_declutter.errors import RuleConflict, UndoError
from desktop_declutter.executor import ActionExecutor, file_checksum
from desktop_declutter.ledger import STATUS_INCOMPLETE, STATUS_UNDONE, Ledger, LedgerEntry
from desktop_declutter.notifications import ActionCompleted, ActionFailed, ActionUndone
from desktop_declutter.orchestrator import Orchestrator, PathLocks, RootState
from desktop_declutter.rules import Glob, Move, Rule
from desktop_declutter.watcher import EventKind, FileWatcher, WatchEvent


@pytest.fixture
def root(tmp_path: Path) -> Path:
    """Create the watched directory."""
    desktop = tmp_path / "Desktop"
    desktop.mkdir()
    return desktop


@pytest.fixture
def config(tmp_path: Path, root: Path) -> DeclutterConfig:
    """Create a test configuration that files PNGs into a screenshots folder."""
    cfg = DeclutterConfig()
    cfg.watch_directories = [root]
    cfg.rules = [Rule("screenshots", (Glob("*.png"),), Move(Path("Pictures/Screenshots")))]
    cfg.trash_dir = tmp_path / "trash"
    cfg.state_dir = tmp_path / "state"
    cfg.log_file = tmp_path / "test.log"
    cfg.debounce_ms = 50
    cfg.workers = 4
    cfg.io_retry_delay = 0.0
    cfg.shutdown_grace = 1.0
    cfg.backoff_base = 0.05
    cfg.backoff_cap = 0.2
    return cfg


@pytest.fixture
def orchestrator(config: DeclutterConfig) -> Orchestrator:
    """Create an orchestrator with a test logger."""
    return Orchestrator(config, logger=logging.getLogger("test-orchestrator"))


async def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until ``predicate`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.02)


def _screenshots(root: Path) -> Path:
    return root / "Pictures" / "Screenshots"


class TestOrchestratorInit:
    """Tests for orchestrator initialization."""

    def test_initial_state(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that every root starts idle."""
        assert orchestrator.states == {root: RootState.IDLE}
        assert not orchestrator.is_running
        assert len(orchestrator.ruleset) == 1

    def test_invalid_log_level_raises(self, config: DeclutterConfig) -> None:
        """Test that an invalid configuration is rejected at startup."""
        config.log_level = "INVALID"

        with pytest.raises(ValueError, match="Invalid log_level"):
            Orchestrator(config)

    def test_sets_up_logging(self, config: DeclutterConfig) -> None:
        """Test that the default logger writes to the configured file."""
        orchestrator = Orchestrator(config)

        assert orchestrator.logger.name == "desktop-declutter"
        assert any(isinstance(h, logging.FileHandler) for h in orchestrator.logger.handlers)
        assert config.log_file.parent.exists()


class TestRules:
    """Tests for rule reloading and preview."""

    def test_reload_rules_swaps_atomically(self, orchestrator: Orchestrator) -> None:
        """Test that a valid rule list replaces the old one."""
        old = orchestrator.ruleset
        orchestrator.reload_rules([Rule("pdfs", (Glob("*.pdf"),), Move(Path("Documents")))])

        assert orchestrator.ruleset is not old
        assert [r.name for r in orchestrator.ruleset.rules] == ["pdfs"]

    def test_invalid_reload_keeps_old_rules(self, orchestrator: Orchestrator) -> None:
        """Test that a rejected rule list leaves the active set in place."""
        old = orchestrator.ruleset

        with pytest.raises(RuleConflict):
            orchestrator.reload_rules([Rule("escape", (Glob("*"),), Move(Path("../Out")))])

        assert orchestrator.ruleset is old

    def test_preview_does_not_touch_files(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that preview only classifies."""
        (root / "shot.png").touch()
        (root / "notes.txt").touch()

        results = {record.name: decision for record, decision in orchestrator.preview()}

        assert isinstance(results["shot.png"], Act)
        assert isinstance(results["notes.txt"], Ignore)
        assert (root / "shot.png").exists()


class TestSubmit:
    """Tests for classification and queueing."""

    @pytest.mark.asyncio
    async def test_duplicate_events_queue_once(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that repeated events for a path keep one queue slot and the latest snapshot."""
        path = root / "shot.png"
        path.write_bytes(b"1")
        for sequence in range(5):
            orchestrator.submit(root, path, WatchEvent(EventKind.MODIFIED, path, sequence))
        path.write_bytes(b"12345")
        orchestrator.submit(root, path, WatchEvent(EventKind.MODIFIED, path, 5))

        assert orchestrator._queue.qsize() == 1
        assert orchestrator._pending[path].record.size == 5

    @pytest.mark.asyncio
    async def test_removed_event_discards_pending(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that a deleted file is not acted on."""
        path = root / "shot.png"
        path.touch()
        orchestrator.submit(root, path)
        path.unlink()

        assert orchestrator.submit(root, path, WatchEvent(EventKind.REMOVED, path, 2)) is None
        assert path not in orchestrator._pending

    @pytest.mark.asyncio
    async def test_rename_discards_old_name(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that a renamed file is only handled under its new name."""
        old = root / "draft.png"
        old.touch()
        orchestrator.submit(root, old)
        new = root / "final.png"
        old.rename(new)

        orchestrator.submit(root, new, WatchEvent(EventKind.RENAMED, new, 2, src_path=old))

        assert set(orchestrator._pending) == {new}

    @pytest.mark.asyncio
    async def test_ignores_files_outside_root(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that files in subfolders are skipped when not recursive."""
        path = root / "Folder" / "shot.png"
        path.parent.mkdir()
        path.touch()

        assert orchestrator.submit(root, path) is None

    @pytest.mark.asyncio
    async def test_vanished_file_dropped(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that a file gone before classification is dropped quietly."""
        assert orchestrator.submit(root, root / "gone.png") is None
        assert orchestrator._queue.qsize() == 0

    @pytest.mark.asyncio
    async def test_backpressure_widens_and_restores(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that a backed-up queue widens the debounce window until it drains."""
        orchestrator.config.queue_high_water = 2
        watcher = MagicMock()
        orchestrator.watchers[root] = watcher
        for i in range(4):
            (root / f"shot{i}.png").touch()
            orchestrator.submit(root, root / f"shot{i}.png")

        watcher.widen_debounce.assert_called_once()

        await orchestrator.run_once()

        watcher.restore_debounce.assert_called_once()


class TestActing:
    """Tests for executing actions."""

    @pytest.mark.asyncio
    async def test_run_once_files_matching(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test a single pass over the watched directory."""
        (root / "Screenshot 1.png").write_bytes(b"png")
        (root / "notes.txt").write_bytes(b"txt")

        entries = await orchestrator.run_once()

        assert [e.result for e in entries] == [_screenshots(root) / "Screenshot 1.png"]
        assert (root / "notes.txt").exists()
        assert orchestrator.stats.actions_completed == 1
        assert orchestrator.states[root] is RootState.IDLE

    @pytest.mark.asyncio
    async def test_run_once_is_idempotent(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that a second pass finds nothing to do."""
        (root / "a.png").touch()

        assert len(await orchestrator.run_once()) == 1
        assert await orchestrator.run_once() == []

    @pytest.mark.asyncio
    async def test_queued_events_collapse_to_one_action(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that events queued before any worker runs act on each file once."""
        paths = [root / f"shot{i}.png" for i in range(10)]
        for path in paths:
            path.write_bytes(path.name.encode())

        real_apply = orchestrator.executor.apply
        with patch.object(orchestrator.executor, "apply", side_effect=real_apply) as apply:
            for sequence in range(100):
                path = paths[sequence % 10]
                orchestrator.submit(root, path, WatchEvent(EventKind.MODIFIED, path, sequence))
            entries = await orchestrator.run_once()

        assert apply.call_count == 10
        assert sorted(e.result.name for e in entries) == sorted(p.name for p in paths)

    @pytest.mark.asyncio
    async def test_concurrent_events_never_overlap_on_a_path(self, config: DeclutterConfig, root: Path) -> None:
        """Test that events arriving while workers run never act on one path twice at once."""
        config.workers = 16
        orchestrator = Orchestrator(config, logger=logging.getLogger("test-orchestrator"))
        paths = [root / f"shot{i}.png" for i in range(10)]
        for path in paths:
            path.write_bytes(path.name.encode())

        guard = threading.Lock()
        active: Counter[Path] = Counter()
        overlaps: list[Path] = []
        real_apply = orchestrator.executor.apply

        def slow_apply(action: object, path: Path, *args: object) -> object:
            with guard:
                active[path] += 1
                if active[path] > 1:
                    overlaps.append(path)
            try:
                time.sleep(0.05)
                return real_apply(action, path, *args)
            finally:
                with guard:
                    active[path] -= 1

        workers = [asyncio.create_task(orchestrator._worker()) for _ in range(config.workers)]
        try:
            with patch.object(orchestrator.executor, "apply", side_effect=slow_apply) as apply:
                for sequence in range(100):
                    path = paths[sequence % 10]
                    orchestrator.submit(root, path, WatchEvent(EventKind.MODIFIED, path, sequence))
                    await asyncio.sleep(0)
                await asyncio.wait_for(orchestrator._queue.join(), timeout=10)
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        assert apply.call_count > 10
        assert overlaps == []
        assert len(orchestrator.ledger) == 10
        assert sorted(p.name for p in _screenshots(root).iterdir()) == sorted(p.name for p in paths)

    @pytest.mark.asyncio
    async def test_ledger_written_while_path_locked(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that the entry is recorded before the path is released to other workers."""
        (root / "a.png").touch()
        held: list[bool] = []
        real_record = orchestrator.ledger.record

        def record(entry: LedgerEntry) -> LedgerEntry:
            held.append(orchestrator.locks.is_locked(entry.original))
            return real_record(entry)

        with patch.object(orchestrator.ledger, "record", side_effect=record):
            await orchestrator.run_once()

        assert held == [True]

    @pytest.mark.asyncio
    async def test_ledger_write_failure_is_isolated(self, config: DeclutterConfig, root: Path) -> None:
        """Test that a failed ledger write is reported and the worker moves on."""
        config.workers = 1
        orchestrator = Orchestrator(config, logger=logging.getLogger("test-orchestrator"))
        for name in ("a.png", "b.png"):
            (root / name).write_bytes(b"png")
        subscription = orchestrator.notifier.subscribe()
        real_record = orchestrator.ledger.record
        calls: list[LedgerEntry] = []

        def record(entry: LedgerEntry) -> LedgerEntry:
            calls.append(entry)
            if len(calls) == 1:
                raise OSError(errno.ENOSPC, "No space left on device")
            return real_record(entry)

        with patch.object(orchestrator.ledger, "record", side_effect=record):
            entries = await asyncio.wait_for(orchestrator.run_once(), timeout=5)

        assert len(entries) == 1
        (event,) = [e for e in subscription.drain() if isinstance(e, ActionFailed)]
        assert event.kind == "LedgerWriteError"
        assert orchestrator.stats.errors == 1
        assert not list(root.glob("*.png"))

    @pytest.mark.asyncio
    async def test_unexpected_error_keeps_worker_alive(self, config: DeclutterConfig, root: Path) -> None:
        """Test that an unexpected exception for one file does not stop the pool."""
        config.workers = 1
        orchestrator = Orchestrator(config, logger=logging.getLogger("test-orchestrator"))
        for name in ("a.png", "b.png"):
            (root / name).write_bytes(b"png")
        subscription = orchestrator.notifier.subscribe()
        real_apply = orchestrator.executor.apply
        calls: list[Path] = []

        def apply(action: object, path: Path, *args: object) -> object:
            calls.append(path)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return real_apply(action, path, *args)

        with patch.object(orchestrator.executor, "apply", side_effect=apply):
            entries = await asyncio.wait_for(orchestrator.run_once(), timeout=5)

        assert len(entries) == 1
        (event,) = [e for e in subscription.drain() if isinstance(e, ActionFailed)]
        assert event.kind == "RuntimeError"
        assert event.path == calls[0]
        assert calls[0].exists()

    @pytest.mark.asyncio
    async def test_shared_destination_is_serialized(self, tmp_path: Path, config: DeclutterConfig) -> None:
        """Test that two roots moving the same name into one folder never overwrite each other."""
        shared = tmp_path / "Shots"
        roots = [tmp_path / "One", tmp_path / "Two"]
        for index, watched in enumerate(roots):
            watched.mkdir()
            (watched / "a.png").write_bytes(f"from-{index}".encode())
        config.watch_directories = roots
        config.rules = [Rule("shots", (Glob("*.png"),), Move(shared))]
        orchestrator = Orchestrator(config, logger=logging.getLogger("test-orchestrator"))

        entries = await orchestrator.run_once()

        assert len(entries) == 2
        assert sorted(p.name for p in shared.iterdir()) == ["a 2.png", "a.png"]
        assert {p.read_bytes() for p in shared.iterdir()} == {b"from-0", b"from-1"}

    @pytest.mark.asyncio
    async def test_failure_is_reported(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that a failed action is logged, counted and published."""
        orchestrator.config.conflict_policy = "fail"
        (root / "a.png").write_bytes(b"new")
        _screenshots(root).mkdir(parents=True)
        (_screenshots(root) / "a.png").write_bytes(b"old")
        subscription = orchestrator.notifier.subscribe()

        assert await orchestrator.run_once() == []

        (event,) = subscription.drain()
        assert isinstance(event, ActionFailed)
        assert event.kind == "DestinationConflict"
        assert not event.retryable
        assert orchestrator.stats.errors == 1
        assert (root / "a.png").exists()

    @pytest.mark.asyncio
    async def test_completed_actions_are_published(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that subscribers see completed actions with ledger ids."""
        (root / "a.png").touch()
        subscription = orchestrator.notifier.subscribe()

        await orchestrator.run_once()

        (event,) = subscription.drain()
        assert isinstance(event, ActionCompleted)
        assert event.entry.entry_id == 1

    @pytest.mark.asyncio
    async def test_startup_recovers_interrupted_moves(
        self, orchestrator: Orchestrator, root: Path, tmp_path: Path
    ) -> None:
        """Test that an interrupted move is completed and recorded before scanning."""
        source = root / "big.iso"
        target = tmp_path / "External" / "big.iso"
        target.parent.mkdir()
        target.write_bytes(b"iso")
        source.write_bytes(b"iso")
        partial = target.with_name("big.iso.declutter-partial")
        orchestrator.executor._write_sentinel(source, target, partial, file_checksum(source), "move", "isos")

        entries = await orchestrator.run_once()

        assert [e.action for e in entries] == ["move"]
        assert not source.exists()


class TestUndo:
    """Tests for undo through the orchestrator."""

    @pytest.mark.asyncio
    async def test_undo_round_trip(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that undo restores the file and it is not immediately re-filed."""
        source = root / "Screenshot.png"
        source.write_bytes(b"png")
        (entry,) = await orchestrator.run_once()
        subscription = orchestrator.notifier.subscribe()

        undo = await orchestrator.undo(entry.entry_id)

        assert source.read_bytes() == b"png"
        assert undo.status == STATUS_UNDONE
        assert undo.reverts == entry.entry_id
        assert isinstance(subscription.drain()[0], ActionUndone)

        # The restored file stays where the user put it back
        assert await orchestrator.run_once() == []
        assert source.exists()

    @pytest.mark.asyncio
    async def test_restored_file_refiled_after_change(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that a restored file is handled again once it changes."""
        source = root / "Screenshot.png"
        source.write_bytes(b"png")
        (entry,) = await orchestrator.run_once()
        await orchestrator.undo(entry.entry_id)

        source.write_bytes(b"edited png")

        assert len(await orchestrator.run_once()) == 1
        assert not source.exists()

    @pytest.mark.asyncio
    async def test_restored_files_survive_restart(self, config: DeclutterConfig, root: Path) -> None:
        """Test that a new orchestrator also leaves restored files alone."""
        source = root / "Screenshot.png"
        source.write_bytes(b"png")
        first = Orchestrator(config, logger=logging.getLogger("test-orchestrator"))
        (entry,) = await first.run_once()
        await first.undo(entry.entry_id)

        second = Orchestrator(config, logger=logging.getLogger("test-orchestrator"))

        assert await second.run_once() == []
        assert source.exists()

    @pytest.mark.asyncio
    async def test_undo_twice_refused(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that an entry can only be undone once."""
        (root / "a.png").touch()
        (entry,) = await orchestrator.run_once()
        await orchestrator.undo(entry.entry_id)

        with pytest.raises(UndoError, match="already undone"):
            await orchestrator.undo(entry.entry_id)

    @pytest.mark.asyncio
    async def test_undo_unknown_entry(self, orchestrator: Orchestrator) -> None:
        """Test that unknown ids are refused."""
        with pytest.raises(UndoError, match="no ledger entry"):
            await orchestrator.undo(99)


class TestLifecycle:
    """Tests for the watch loop, backoff and shutdown."""

    @pytest.mark.asyncio
    async def test_new_file_is_filed(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test end to end: a new screenshot lands in the screenshots folder."""
        task = asyncio.create_task(orchestrator.run())
        try:
            await _wait_for(lambda: root in orchestrator.watchers and orchestrator.watchers[root].is_running)

            (root / "Screenshot 2024-01-01.png").write_bytes(b"png")

            target = _screenshots(root) / "Screenshot 2024-01-01.png"
            await _wait_for(target.exists)
        finally:
            orchestrator.request_stop()
            await asyncio.wait_for(task, timeout=5)

        assert not (root / "Screenshot 2024-01-01.png").exists()
        (entry,) = orchestrator.ledger.entries()
        assert entry.action == "move"
        assert entry.original == root / "Screenshot 2024-01-01.png"
        assert entry.result == _screenshots(root) / "Screenshot 2024-01-01.png"
        assert orchestrator.states[root] is RootState.STOPPED
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_existing_files_filed_on_start(self, orchestrator: Orchestrator, root: Path) -> None:
        """Test that files present before startup are handled by the initial scan."""
        (root / "old.png").touch()
        task = asyncio.create_task(orchestrator.run())
        try:
            await _wait_for((_screenshots(root) / "old.png").exists)
        finally:
            orchestrator.request_stop()
            await asyncio.wait_for(task, timeout=5)

    @pytest.mark.asyncio
    async def test_lost_root_backs_off_and_recovers(self, config: DeclutterConfig, tmp_path: Path) -> None:
        """Test that a missing root is retried with backoff until it appears."""
        volume = tmp_path / "Volume"
        config.watch_directories = [volume]
        logger = logging.getLogger("test-orchestrator")
        built: list[FileWatcher] = []

        def build_watcher(root: Path) -> FileWatcher:
            watcher = FileWatcher(root, config, logger)
            built.append(watcher)
            return watcher

        orchestrator = Orchestrator(config, logger=logger, watcher_factory=build_watcher)
        subscription = orchestrator.notifier.subscribe()

        task = asyncio.create_task(orchestrator.run())
        try:
            await _wait_for(lambda: orchestrator.states[volume] is RootState.BACKOFF)
            volume.mkdir()
            (volume / "shot.png").touch()
            await _wait_for((_screenshots(volume) / "shot.png").exists)
        finally:
            orchestrator.request_stop()
            await asyncio.wait_for(task, timeout=5)

        assert orchestrator.stats.watcher_restarts >= 1
        assert len(built) == 1
        failures = [e for e in subscription.drain() if isinstance(e, ActionFailed)]
        assert failures
        assert failures[0].kind == "DeviceLost"

    def test_backoff_delay_is_capped(self, orchestrator: Orchestrator) -> None:
        """Test the exponential backoff schedule."""
        delays = [orchestrator._backoff_delay(n) for n in range(6)]

        assert delays == pytest.approx([0.05, 0.1, 0.2, 0.2, 0.2, 0.2])

    @pytest.mark.asyncio
    async def test_shutdown_flags_unfinished_actions(
        self, orchestrator: Orchestrator, config: DeclutterConfig, root: Path
    ) -> None:
        """Test that actions still running after the grace period are recorded as incomplete."""
        config.shutdown_grace = 0.1
        (root / "huge.png").touch()

        def slow_apply(*args: object, **kwargs: object) -> None:
            time.sleep(1.0)

        with patch.object(orchestrator.executor, "apply", side_effect=slow_apply):
            task = asyncio.create_task(orchestrator.run())
            await _wait_for(lambda: bool(orchestrator._inflight))
            orchestrator.request_stop()
            await asyncio.wait_for(task, timeout=5)

        (entry,) = orchestrator.ledger.entries()
        assert entry.status == STATUS_INCOMPLETE
        assert entry.original == root / "huge.png"
        assert entry.rule == "screenshots"
        assert orchestrator.stats.incomplete == 1


class TestPathLocks:
    """Tests for PathLocks."""

    @pytest.mark.asyncio
    async def test_same_path_is_exclusive(self) -> None:
        """Test that two holders of one path never overlap."""
        locks = PathLocks()
        active: list[int] = []
        overlaps: list[bool] = []

        async def worker() -> None:
            async with locks.hold(Path("/d/a"), Path("/d/X/a")):
                active.append(1)
                overlaps.append(len(active) > 1)
                await asyncio.sleep(0.01)
                active.pop()

        await asyncio.gather(*(worker() for _ in range(5)))

        assert not any(overlaps)
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_opposite_order_does_not_deadlock(self) -> None:
        """Test that lock order is independent of argument order."""
        locks = PathLocks()

        async def hold(first: Path, second: Path) -> None:
            async with locks.hold(first, second):
                await asyncio.sleep(0.01)

        async with asyncio.timeout(2):
            await asyncio.gather(
                hold(Path("/a"), Path("/b")),
                hold(Path("/b"), Path("/a")),
            )

    @pytest.mark.asyncio
    async def test_none_paths_ignored(self) -> None:
        """Test that a missing target does not need a lock."""
        locks = PathLocks()

        async with locks.hold(Path("/a"), None):
            assert locks.is_locked(Path("/a"))

        assert not locks.is_locked(Path("/a"))


class TestLedgerIntegration:
    """Tests for ledger wiring."""

    @pytest.mark.asyncio
    async def test_entries_are_persisted(
        self, orchestrator: Orchestrator, config: DeclutterConfig, root: Path
    ) -> None:
        """Test that completed actions are in the ledger file."""
        (root / "a.png").touch()

        await orchestrator.run_once()

        (entry,) = Ledger(config.ledger_path).entries()
        assert entry.action == "move"
        assert entry.rule == "screenshots"

    def test_custom_executor_is_used(self, config: DeclutterConfig) -> None:
        """Test dependency injection of the executor."""
        executor = ActionExecutor(config, logging.getLogger("test-orchestrator"), Ledger())

        orchestrator = Orchestrator(config, logger=logging.getLogger("test-orchestrator"), executor=executor)

        assert orchestrator.executor is executor
