"""Apply and revert file actions with crash recovery and trash support."""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterator, TypeVar

from .classifier import PARTIAL_SUFFIX, SENTINEL_SUFFIX
from .errors import (
    ActionError,
    DestinationConflict,
    NotFound,
    PermissionDenied,
    TransientIOError,
    UndoError,
    UndoStale,
)
from .ledger import STATUS_COMPLETED, STATUS_UNDONE, LedgerEntry, now
from .rules import Action, Archive, Delete, Move, Tag
from .tags import TagIndex

if TYPE_CHECKING:
    from .config import DeclutterConfig
    from .ledger import Ledger

T = TypeVar("T")

_CHUNK_SIZE = 1024 * 1024
_PROTECTED_PREFIXES = ("/Applications/", "/System/")


@dataclass
class RecoveryResult:
    """Outcome of resolving one interrupted cross-volume move."""

    source: Path
    destination: Path
    outcome: str  # "completed", "rolled_back", "unrecoverable"
    entry: LedgerEntry | None = None


def file_checksum(path: Path) -> str:
    """SHA-256 of a file's contents."""
    digest = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def is_protected(path: Path) -> bool:
    """Application bundles in system locations are never touched."""
    return path.suffix.lower() == ".app" and str(path).startswith(_PROTECTED_PREFIXES)


@contextlib.contextmanager
def _io_errors(path: Path) -> Iterator[None]:
    """Translate OS errors into the action error taxonomy."""
    try:
        yield
    except ActionError:
        raise
    except FileNotFoundError as e:
        raise NotFound(path, str(e)) from e
    except PermissionError as e:
        raise PermissionDenied(path, str(e)) from e
    except OSError as e:
        raise TransientIOError(path, str(e)) from e


class ActionExecutor:
    """Performs move, archive, delete and tag actions on single files."""

    def __init__(
        self,
        config: DeclutterConfig,
        logger: logging.Logger,
        ledger: Ledger | None = None,
        tags: TagIndex | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            config: Declutter configuration.
            logger: Logger instance.
            ledger: Ledger used to detect already-applied actions.
            tags: Label index. Defaults to ``tags.json`` in the state directory.
            sleep: Sleep function used between retries.

        """
        self.config = config
        self.logger = logger
        self.ledger = ledger
        self.tags = tags if tags is not None else TagIndex(config.state_dir / "tags.json")
        self._sleep = sleep

    @property
    def pending_dir(self) -> Path:
        """Directory holding sentinels of in-progress cross-volume moves."""
        return self.config.state_dir / "pending"

    # Planning

    @staticmethod
    def resolve_destination(destination: Path, root: Path) -> Path:
        """Resolve a rule destination against the watched root."""
        return destination if destination.is_absolute() else root / destination

    def target_for(self, action: Action, path: Path, root: Path | None = None) -> Path | None:
        """Best guess of where an action will put a file, before collision handling.

        Used to lock destinations; returns None for actions that do not
        relocate into a predictable place or when the file is gone.
        """
        root = root or path.parent
        if isinstance(action, Move):
            return self.resolve_destination(action.destination, root) / path.name
        if isinstance(action, Archive):
            try:
                return self._archive_bucket(action, path, root) / path.name
            except OSError:
                return None
        return None

    def _archive_bucket(self, action: Archive, path: Path, root: Path) -> Path:
        modified = datetime.fromtimestamp(path.stat().st_mtime)
        base = self.resolve_destination(action.destination, root)
        return base / f"{modified:%Y}" / f"{modified:%m}"

    # Applying

    def apply(
        self,
        action: Action,
        path: Path,
        root: Path | None = None,
        rule: str | None = None,
    ) -> LedgerEntry | None:
        """Apply an action to a file.

        Args:
            action: Action to perform.
            path: File to act on.
            root: Watched root that relative destinations resolve against.
            rule: Name of the rule that chose the action, for the ledger.

        Returns:
            Entry describing the completed action (without an id), or None
            if the action was already applied and nothing happened.

        Raises:
            NotFound: The file vanished.
            PermissionDenied: The filesystem refused, or the file is protected.
            DestinationConflict: The name is taken and the policy is ``fail``.
            TransientIOError: The operation kept failing after all retries.

        """
        if is_protected(path):
            raise PermissionDenied(path, "application bundles in system locations are protected")
        root = root or path.parent
        return self._with_retries(path, lambda: self._apply_once(action, path, root, rule))

    def _with_retries(self, path: Path, operation: Callable[[], T]) -> T:
        attempts = self.config.io_retries
        for attempt in range(attempts):
            try:
                return operation()
            except TransientIOError as e:
                if attempt + 1 >= attempts:
                    self.logger.error("Giving up on %s after %d attempts: %s", path, attempts, e.reason)
                    raise
                delay = self.config.io_retry_delay * (2**attempt)
                self.logger.warning(
                    "I/O error on %s (attempt %d/%d), retrying in %.2fs: %s",
                    path.name,
                    attempt + 1,
                    attempts,
                    delay,
                    e.reason,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def _apply_once(self, action: Action, path: Path, root: Path, rule: str | None) -> LedgerEntry | None:
        with _io_errors(path):
            if isinstance(action, (Move, Archive)):
                return self._relocate(action, path, root, rule)
            if isinstance(action, Delete):
                return self._delete(path, rule)
            if isinstance(action, Tag):
                return self._tag(path, action.label, rule)
        raise TypeError(f"unknown action: {action!r}")

    def _relocate(self, action: Move | Archive, path: Path, root: Path, rule: str | None) -> LedgerEntry | None:
        if not path.exists():
            if self._already_applied(action, path):
                self.logger.debug("Already %sd: %s", action.kind, path.name)
                return None
            raise NotFound(path, "file no longer exists")

        if isinstance(action, Archive):
            dest_dir = self._archive_bucket(action, path, root)
        else:
            dest_dir = self.resolve_destination(action.destination, root)

        if path.parent == dest_dir:
            self.logger.debug("Already in place: %s", path)
            return None

        dest_dir.mkdir(parents=True, exist_ok=True)
        target = self._resolve_conflict(dest_dir / path.name)
        self._move_file(path, target, action.kind, rule)

        self.logger.info("%s %s -> %s", action.kind.capitalize(), path.name, target)
        return self._entry_for(action.kind, path, target, rule)

    def _already_applied(self, action: Move | Archive, path: Path) -> bool:
        if self.ledger is None:
            return False
        previous = self.ledger.latest_for(path)
        return (
            previous is not None
            and previous.action == action.kind
            and previous.result is not None
            and previous.result.exists()
        )

    def _delete(self, path: Path, rule: str | None) -> LedgerEntry:
        if not path.exists():
            raise NotFound(path, "file no longer exists")

        if not self.config.enable_trash:
            path.unlink()
            self.logger.info("Deleted %s permanently", path)
            return LedgerEntry(timestamp=now(), action="delete", original=path, result=None, rule=rule)

        trash_subdir = self.config.trash_dir / datetime.now(UTC).strftime("%Y-%m-%d")
        trash_subdir.mkdir(parents=True, exist_ok=True)
        target = self._unique_name(trash_subdir / path.name)
        self._move_file(path, target, "delete", rule)

        self.logger.info("Moved %s to trash: %s", path.name, target)
        return self._entry_for("delete", path, target, rule)

    def _tag(self, path: Path, label: str, rule: str | None) -> LedgerEntry | None:
        if not path.exists():
            raise NotFound(path, "file no longer exists")
        if not self.tags.add(path, label):
            self.logger.debug("Already tagged %s with %r", path.name, label)
            return None
        self.logger.info("Tagged %s with %r", path.name, label)
        return replace(self._entry_for("tag", path, path, rule), label=label)

    @staticmethod
    def _entry_for(kind: str, original: Path, result: Path, rule: str | None) -> LedgerEntry:
        stat = result.stat()
        return LedgerEntry(
            timestamp=now(),
            action=kind,
            original=original,
            result=result,
            rule=rule,
            size=stat.st_size,
            mtime_ns=stat.st_mtime_ns,
        )

    # Name collisions

    def _resolve_conflict(self, target: Path) -> Path:
        if not os.path.lexists(target):
            return target

        policy = self.config.conflict_policy
        if policy == "fail":
            raise DestinationConflict(target, "destination already exists")

        if policy == "timestamp":
            stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
            candidate = target.with_name(f"{target.stem}-{stamp}{target.suffix}")
            if not os.path.lexists(candidate):
                self.logger.info("Name collision for %s, using %s", target.name, candidate.name)
                return candidate
            target = candidate

        candidate = self._unique_name(target)
        self.logger.info("Name collision for %s, using %s", target.name, candidate.name)
        return candidate

    @staticmethod
    def _unique_name(target: Path) -> Path:
        """Finder-style ``name 2.ext``, ``name 3.ext`` until a free name is found."""
        if not os.path.lexists(target):
            return target
        counter = 2
        while True:
            candidate = target.with_name(f"{target.stem} {counter}{target.suffix}")
            if not os.path.lexists(candidate):
                return candidate
            counter += 1

    # Moving bytes

    @staticmethod
    def _same_volume(source: Path, dest_dir: Path) -> bool:
        return source.stat().st_dev == dest_dir.stat().st_dev

    def _move_file(
        self,
        source: Path,
        target: Path,
        kind: str,
        rule: str | None,
        reverts: int | None = None,
    ) -> None:
        if self._same_volume(source, target.parent):
            os.rename(source, target)
        else:
            self._copy_verify_delete(source, target, kind, rule, reverts)

    def _copy_verify_delete(
        self,
        source: Path,
        target: Path,
        kind: str,
        rule: str | None,
        reverts: int | None = None,
    ) -> None:
        """Cross-volume move guarded by a sentinel.

        Runs to completion once started; if the process dies part way,
        ``recover`` finishes or rolls back using the sentinel.
        """
        checksum = file_checksum(source)
        partial = target.with_name(target.name + PARTIAL_SUFFIX)
        sentinel = self._write_sentinel(source, target, partial, checksum, kind, rule, reverts)

        shutil.copy2(source, partial)
        if file_checksum(partial) != checksum:
            partial.unlink()
            sentinel.unlink()
            raise TransientIOError(source, f"checksum mismatch copying to {target}")

        os.replace(partial, target)
        source.unlink()
        sentinel.unlink()

    def _write_sentinel(
        self,
        source: Path,
        target: Path,
        partial: Path,
        checksum: str,
        kind: str,
        rule: str | None,
        reverts: int | None = None,
    ) -> Path:
        self.pending_dir.mkdir(parents=True, exist_ok=True)
        sentinel = self.pending_dir / f"{uuid.uuid4().hex}{SENTINEL_SUFFIX}"
        data = {
            "source": str(source),
            "destination": str(target),
            "partial": str(partial),
            "checksum": checksum,
            "action": kind,
            "rule": rule,
            "reverts": reverts,
            "started": now().isoformat(),
        }
        with sentinel.open("w", encoding="utf-8") as f:
            json.dump(data, f)
            f.flush()
            os.fsync(f.fileno())
        return sentinel

    # Crash recovery

    def recover(self) -> list[RecoveryResult]:
        """Finish or roll back cross-volume moves interrupted by a crash.

        Afterwards exactly one live copy of each affected file exists.

        Returns:
            One result per sentinel found.

        """
        results: list[RecoveryResult] = []
        if not self.pending_dir.exists():
            return results

        for sentinel in sorted(self.pending_dir.glob(f"*{SENTINEL_SUFFIX}")):
            try:
                with sentinel.open(encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                self.logger.error("Unreadable sentinel %s: %s", sentinel.name, e)
                continue

            try:
                result = self._recover_one(data)
            except OSError as e:
                self.logger.error("Recovery failed for %s: %s", data.get("source"), e)
                continue

            sentinel.unlink()
            results.append(result)
            self.logger.info(
                "Recovered interrupted %s of %s: %s",
                data.get("action", "move"),
                result.source.name,
                result.outcome,
            )
        return results

    def _recover_one(self, data: dict[str, Any]) -> RecoveryResult:
        source = Path(data["source"])
        target = Path(data["destination"])
        partial = Path(data["partial"])
        checksum = data["checksum"]
        kind = data.get("action", "move")
        rule = data.get("rule")
        reverts = data.get("reverts")

        target_ok = target.exists() and file_checksum(target) == checksum
        partial_ok = partial.exists() and file_checksum(partial) == checksum

        if target_ok:
            # Crashed after the final rename
            if source.exists():
                source.unlink()
            if partial.exists():
                partial.unlink()
            entry = self._recovered_entry(kind, source, target, rule, reverts)
            return RecoveryResult(source, target, "completed", entry)

        if partial_ok and not source.exists():
            os.replace(partial, target)
            entry = self._recovered_entry(kind, source, target, rule, reverts)
            return RecoveryResult(source, target, "completed", entry)

        if partial.exists():
            partial.unlink()
        if source.exists():
            return RecoveryResult(source, target, "rolled_back")

        self.logger.error("No verified copy left for %s", source)
        return RecoveryResult(source, target, "unrecoverable")

    def _recovered_entry(
        self, kind: str, source: Path, target: Path, rule: str | None, reverts: int | None
    ) -> LedgerEntry:
        entry = self._entry_for(kind, source, target, rule)
        if reverts is None:
            return entry
        # A finished undo neutralises the entry it reverts
        return replace(entry, status=STATUS_UNDONE, reverts=reverts)

    # Undo

    def revert(self, entry: LedgerEntry) -> LedgerEntry:
        """Reverse a completed action.

        Args:
            entry: Ledger entry to reverse.

        Returns:
            A new ``undone`` entry referencing ``entry``.

        Raises:
            UndoStale: The file changed since the action.
            UndoError: The action cannot be reversed.

        """
        if entry.status != STATUS_COMPLETED:
            raise UndoError(f"entry {entry.entry_id} is {entry.status}, not completed")
        if entry.result is None:
            raise UndoError(f"{entry.original.name} was deleted permanently")

        if entry.action == "tag":
            if entry.label is None or not self.tags.remove(entry.original, entry.label):
                raise UndoStale(f"{entry.original.name} no longer carries tag {entry.label!r}")
            self.logger.info("Removed tag %r from %s", entry.label, entry.original.name)
            return self._undo_entry(entry)

        result = entry.result
        try:
            stat = result.stat()
        except FileNotFoundError as e:
            raise UndoStale(f"{result} no longer exists") from e
        if stat.st_size != entry.size or stat.st_mtime_ns != entry.mtime_ns:
            raise UndoStale(f"{result.name} was modified after it was {entry.action}d")
        if os.path.lexists(entry.original):
            raise UndoError(f"{entry.original} is occupied by another file")

        try:
            entry.original.parent.mkdir(parents=True, exist_ok=True)
            self._move_file(result, entry.original, "undo", entry.rule, reverts=entry.entry_id)
        except OSError as e:
            raise UndoError(f"could not move {result.name} back: {e}") from e

        self.logger.info("Restored %s -> %s", result, entry.original)
        return self._undo_entry(entry)

    @staticmethod
    def _undo_entry(entry: LedgerEntry) -> LedgerEntry:
        size = mtime_ns = None
        with contextlib.suppress(OSError):
            stat = entry.original.stat()
            size, mtime_ns = stat.st_size, stat.st_mtime_ns
        return LedgerEntry(
            timestamp=now(),
            action="undo",
            original=entry.result or entry.original,
            result=entry.original,
            rule=entry.rule,
            status=STATUS_UNDONE,
            size=size,
            mtime_ns=mtime_ns,
            label=entry.label,
            reverts=entry.entry_id,
        )

    # Trash retention

    def cleanup_trash(self) -> int:
        """Remove trash date directories older than the retention period.

        Returns:
            Number of directories removed.

        """
        if not self.config.enable_trash or not self.config.trash_dir.exists():
            return 0

        cutoff = datetime.now(UTC) - timedelta(days=self.config.trash_retention_days)
        cleaned = 0

        try:
            for date_dir in self.config.trash_dir.iterdir():
                if not date_dir.is_dir():
                    continue

                try:
                    dir_date = datetime.strptime(date_dir.name, "%Y-%m-%d").replace(tzinfo=UTC)
                except ValueError:
                    continue

                if dir_date < cutoff:
                    shutil.rmtree(date_dir)
                    self.logger.info("Removed expired trash directory: %s", date_dir.name)
                    cleaned += 1

        except OSError as e:
            self.logger.error("Error cleaning trash directory: %s", e)

        return cleaned

    def list_trash(self) -> list[tuple[Path, datetime]]:
        """List all files in the trash, newest first."""
        files: list[tuple[Path, datetime]] = []

        if not self.config.trash_dir.exists():
            return files

        try:
            for date_dir in self.config.trash_dir.iterdir():
                if not date_dir.is_dir():
                    continue

                try:
                    dir_date = datetime.strptime(date_dir.name, "%Y-%m-%d").replace(tzinfo=UTC)
                except ValueError:
                    continue

                files.extend((p, dir_date) for p in date_dir.iterdir() if p.is_file())

        except OSError as e:
            self.logger.error("Error listing trash directory: %s", e)

        return sorted(files, key=lambda x: x[1], reverse=True)
