"""File snapshots taken at observation time."""

from __future__ import annotations

import mimetypes
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class FileKind(Enum):
    """Broad category of a file, derived from its extension."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    ARCHIVE = "archive"
    CODE = "code"
    APP = "app"
    FOLDER = "folder"
    OTHER = "other"

    @classmethod
    def from_path(cls, path: Path, *, is_dir: bool = False) -> FileKind:
        """Classify a path into a broad kind.

        Args:
            path: Path to classify.
            is_dir: Whether the path is a directory.

        Returns:
            The matching kind, ``OTHER`` if the extension is unknown.

        """
        ext = path.suffix.lower().lstrip(".")
        if ext == "app":
            return cls.APP
        if is_dir:
            return cls.FOLDER
        for kind, extensions in _KIND_EXTENSIONS.items():
            if ext in extensions:
                return kind
        return cls.OTHER


_KIND_EXTENSIONS: dict[FileKind, frozenset[str]] = {
    FileKind.IMAGE: frozenset({"png", "jpg", "jpeg", "gif", "heic", "heif", "tiff", "tif", "bmp", "webp", "svg", "ico"}),
    FileKind.VIDEO: frozenset({"mov", "mp4", "m4v", "avi", "mkv", "webm", "wmv", "flv", "3gp"}),
    FileKind.AUDIO: frozenset({"mp3", "wav", "aiff", "m4a", "flac", "aac", "ogg", "wma"}),
    FileKind.DOCUMENT: frozenset({
        "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "rtf", "txt", "md", "pages", "numbers", "key", "csv",
    }),
    FileKind.ARCHIVE: frozenset({"zip", "rar", "7z", "tar", "gz", "bz2", "xz", "dmg", "iso"}),
    FileKind.CODE: frozenset({
        "swift", "js", "ts", "py", "java", "cpp", "c", "h", "html", "css", "json", "xml", "yaml", "yml", "sh",
    }),
}


@dataclass(frozen=True)
class FileRecord:
    """Immutable snapshot of a file's metadata."""

    path: Path
    size: int
    created: float
    modified: float
    extension: str
    content_type: str | None
    kind: FileKind
    observed_at: float

    @property
    def name(self) -> str:
        """File name without directories."""
        return self.path.name

    @property
    def age_days(self) -> float:
        """Days between the last modification and the observation."""
        return max(0.0, self.observed_at - self.modified) / 86400

    @classmethod
    def snapshot(cls, path: Path, *, observed_at: float | None = None) -> FileRecord:
        """Stat a path and build a record from it.

        Args:
            path: File to observe.
            observed_at: Observation timestamp. Defaults to now.

        Returns:
            A fresh record.

        Raises:
            FileNotFoundError: If the file vanished.
            PermissionError: If the file cannot be stat'ed.

        """
        stat = path.stat()
        is_dir = path.is_dir()
        # st_birthtime exists on macOS and BSD only
        created = getattr(stat, "st_birthtime", stat.st_ctime)
        content_type, _ = mimetypes.guess_type(path.name)
        return cls(
            path=path,
            size=stat.st_size,
            created=created,
            modified=stat.st_mtime,
            extension=path.suffix.lower(),
            content_type=content_type,
            kind=FileKind.from_path(path, is_dir=is_dir),
            observed_at=time.time() if observed_at is None else observed_at,
        )
