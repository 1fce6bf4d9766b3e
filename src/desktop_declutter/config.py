"""Configuration management for the desktop declutter daemon."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .classifier import DefaultPolicy
from .errors import ConfigError, RuleConflict
from .rules import Rule, RuleSet, rule_to_config, rules_from_config

CONFLICT_POLICIES = ("suffix", "timestamp", "fail")

_TRUE_STRINGS = frozenset({"true", "yes", "on", "1"})


def parse_bool(value: Any, default: bool) -> bool:
    """Parse a YAML scalar as a boolean.

    Args:
        value: Raw value from the config file.
        default: Value to use when ``value`` is None.

    Returns:
        Parsed boolean. Unknown strings are False.

    """
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _default_workers() -> int:
    return os.cpu_count() or 4


def _as_int(name: str, value: Any) -> int:
    """Convert a config value to int, rejecting fractions and booleans."""
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a whole number: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ConfigError(f"{name} must be a whole number: {value!r}")


def _as_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number: {value!r}") from e


def _as_path(name: str, value: Any) -> Path:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{name} must be a path: {value!r}")
    return Path(os.path.expanduser(value))


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a nested mapping; an empty section counts as no settings."""
    section = data[name]
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"{name} must be a mapping: {section!r}")
    return section


@dataclass
class DeclutterConfig:
    """Configuration for the desktop declutter daemon."""

    # Directories to keep tidy
    watch_directories: list[Path] = field(default_factory=lambda: [Path.home() / "Desktop"])
    recursive: bool = False

    # Ordered rules; first match by priority wins
    rules: list[Rule] = field(default_factory=list)

    # What to do with files no rule matches: "ignore" or "unsorted"
    default_action: str = "ignore"
    unsorted_folder: Path = Path("Unsorted")

    # Quiet period before a changed file is classified (milliseconds)
    debounce_ms: int = 500
    # Upper bound for the debounce window while the work queue is backed up
    debounce_max_ms: int = 5000
    queue_high_water: int = 256

    # Worker pool
    workers: int = field(default_factory=_default_workers)
    conflict_policy: str = "suffix"
    io_retries: int = 3
    io_retry_delay: float = 0.2

    # Lifecycle
    shutdown_grace: float = 5.0
    backoff_base: float = 1.0
    backoff_cap: float = 60.0

    # Trash settings
    enable_trash: bool = True
    trash_dir: Path = field(default_factory=lambda: Path.home() / ".desktop-declutter-trash")
    trash_retention_days: int = 30

    # Ledger, sentinels and tag index
    state_dir: Path = field(
        default_factory=lambda: Path.home() / "Library/Application Support/desktop-declutter/state"
    )

    # Logging
    log_file: Path = field(default_factory=lambda: Path.home() / "Library/Logs/desktop-declutter.log")
    log_level: str = "INFO"

    @property
    def default_policy(self) -> DefaultPolicy:
        return DefaultPolicy(self.default_action)

    @property
    def debounce_window(self) -> float:
        """Debounce window in seconds."""
        return self.debounce_ms / 1000

    @property
    def ledger_path(self) -> Path:
        return self.state_dir / "ledger.jsonl"

    @classmethod
    def get_config_path(cls) -> Path:
        """Get the default configuration file path."""
        return Path.home() / "Library/Application Support/desktop-declutter/config.yaml"

    @classmethod
    def load(cls, config_path: Path | None = None) -> DeclutterConfig:
        """Load configuration from YAML file.

        Args:
            config_path: Path to config file. Uses default if None.

        Returns:
            Loaded and validated configuration.

        Raises:
            ConfigError: If the file is malformed or a value is invalid.

        """
        if config_path is None:
            config_path = cls.get_config_path()

        if not config_path.exists():
            config = cls()
            config.validate()
            return config

        try:
            with config_path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Invalid config in {config_path}: expected a mapping")

        config = cls._from_dict(data)
        config.validate()
        return config

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> DeclutterConfig:
        """Create config from dictionary."""
        config = cls()

        if "watch_directories" in data:
            directories = data["watch_directories"] or []
            if not isinstance(directories, list):
                raise ConfigError(f"watch_directories must be a list: {directories!r}")
            config.watch_directories = [_as_path("watch_directories entry", p) for p in directories]
        config.recursive = parse_bool(data.get("recursive"), config.recursive)

        if "rules" in data:
            rules = data["rules"] or []
            if not isinstance(rules, list):
                raise ConfigError(f"rules must be a list: {rules!r}")
            try:
                config.rules = rules_from_config(rules)
            except RuleConflict as e:
                raise ConfigError(f"Invalid rule: {e}") from e

        if "default_action" in data:
            config.default_action = str(data["default_action"]).lower()
        if "unsorted_folder" in data:
            config.unsorted_folder = _as_path("unsorted_folder", data["unsorted_folder"])

        for name in ("debounce_ms", "debounce_max_ms", "queue_high_water", "workers", "io_retries"):
            if name in data:
                setattr(config, name, _as_int(name, data[name]))
        for name in ("io_retry_delay", "shutdown_grace", "backoff_base", "backoff_cap"):
            if name in data:
                setattr(config, name, _as_float(name, data[name]))

        if "conflict_policy" in data:
            config.conflict_policy = str(data["conflict_policy"]).lower()

        # Trash settings
        if "trash" in data:
            trash = _section(data, "trash")
            config.enable_trash = parse_bool(trash.get("enabled"), config.enable_trash)
            if "directory" in trash:
                config.trash_dir = _as_path("trash directory", trash["directory"])
            if "retention_days" in trash:
                config.trash_retention_days = _as_int("trash retention_days", trash["retention_days"])

        if "state_dir" in data:
            config.state_dir = _as_path("state_dir", data["state_dir"])

        # Logging
        if "logging" in data:
            logging_cfg = _section(data, "logging")
            if "file" in logging_cfg:
                config.log_file = _as_path("logging file", logging_cfg["file"])
            if "level" in logging_cfg:
                config.log_level = str(logging_cfg["level"]).upper()

        return config

    def validate(self) -> None:
        """Check every field, failing on the first invalid one.

        Raises:
            ConfigError: With a message naming the offending field.

        """
        if self.debounce_ms < 0:
            raise ConfigError(f"debounce_ms must not be negative: {self.debounce_ms}")
        if self.debounce_max_ms < self.debounce_ms:
            raise ConfigError("debounce_max_ms must be at least debounce_ms")
        if self.workers <= 0:
            raise ConfigError(f"workers must be positive: {self.workers}")
        if self.queue_high_water <= 0:
            raise ConfigError(f"queue_high_water must be positive: {self.queue_high_water}")
        if self.io_retries <= 0:
            raise ConfigError(f"io_retries must be positive: {self.io_retries}")
        if self.io_retry_delay < 0:
            raise ConfigError(f"io_retry_delay must not be negative: {self.io_retry_delay}")
        if self.shutdown_grace < 0:
            raise ConfigError(f"shutdown_grace must not be negative: {self.shutdown_grace}")
        if self.backoff_base <= 0 or self.backoff_cap < self.backoff_base:
            raise ConfigError("backoff_base must be positive and not exceed backoff_cap")
        if self.trash_retention_days < 0:
            raise ConfigError(f"trash retention_days must not be negative: {self.trash_retention_days}")
        if self.conflict_policy not in CONFLICT_POLICIES:
            raise ConfigError(
                f"conflict_policy must be one of {', '.join(CONFLICT_POLICIES)}: {self.conflict_policy}"
            )
        if self.default_action not in {p.value for p in DefaultPolicy}:
            raise ConfigError(f"default_action must be 'ignore' or 'unsorted': {self.default_action}")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigError(f"Invalid log_level: {self.log_level}")
        if not self.watch_directories:
            raise ConfigError("watch_directories must not be empty")
        if ".." in self.unsorted_folder.parts:
            raise ConfigError(f"unsorted_folder must not use '..': {self.unsorted_folder}")

        try:
            self.build_ruleset()
        except RuleConflict as e:
            raise ConfigError(f"Invalid rule set: {e}") from e

    def build_ruleset(self) -> RuleSet:
        """Validate the rules against every watched root and sort them."""
        return RuleSet.build(self.rules, self.watch_directories)

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to YAML file.

        Args:
            config_path: Path to save config. Uses default if None.

        """
        if config_path is None:
            config_path = self.get_config_path()

        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "watch_directories": [str(p) for p in self.watch_directories],
            "recursive": self.recursive,
            "rules": [rule_to_config(rule) for rule in self.rules],
            "default_action": self.default_action,
            "unsorted_folder": str(self.unsorted_folder),
            "debounce_ms": self.debounce_ms,
            "debounce_max_ms": self.debounce_max_ms,
            "queue_high_water": self.queue_high_water,
            "workers": self.workers,
            "conflict_policy": self.conflict_policy,
            "io_retries": self.io_retries,
            "io_retry_delay": self.io_retry_delay,
            "shutdown_grace": self.shutdown_grace,
            "backoff_base": self.backoff_base,
            "backoff_cap": self.backoff_cap,
            "trash": {
                "enabled": self.enable_trash,
                "directory": str(self.trash_dir),
                "retention_days": self.trash_retention_days,
            },
            "state_dir": str(self.state_dir),
            "logging": {
                "file": str(self.log_file),
                "level": self.log_level,
            },
        }

        with config_path.open("w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
