"""Error taxonomy for the declutter engine."""

from __future__ import annotations

from pathlib import Path


class DeclutterError(Exception):
    """Base exception for all declutter errors."""


class ValidationError(DeclutterError, ValueError):
    """Configuration or rule set is unusable; fatal at startup."""


class ConfigError(ValidationError):
    """Raised when configuration data cannot be processed."""


class RuleConflict(ValidationError):
    """Raised when a rule set contradicts itself or is malformed."""


class InvalidDestination(RuleConflict):
    """Raised when a rule destination is not allowed for the watched root."""


class ActionError(DeclutterError):
    """Base exception for failures while applying an action to a file."""

    retryable: bool = False

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
        self.reason = message


class NotFound(ActionError):
    """File vanished between detection and action."""


class PermissionDenied(ActionError):
    """The filesystem refused the operation."""


class DestinationConflict(ActionError):
    """Destination name is taken and the conflict policy refuses to rename."""


class TransientIOError(ActionError):
    """Filesystem error that may succeed on retry."""

    retryable = True


class LedgerWriteError(ActionError):
    """The file was acted on but the ledger entry could not be written."""


class DeviceLost(DeclutterError):
    """The watched root disappeared or the observer died."""

    def __init__(self, root: Path, message: str = "watched root is gone") -> None:
        super().__init__(f"{root}: {message}")
        self.root = root


class UndoError(DeclutterError):
    """Raised when a ledger entry cannot be reversed."""


class UndoStale(UndoError):
    """The target changed after the action; the user must re-decide."""
