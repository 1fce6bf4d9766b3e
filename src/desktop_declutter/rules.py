"""Rule model: predicates, actions and first-match-wins rule sets.

A rule is an ordered tuple of predicates plus one action. Predicates and
actions are small frozen dataclasses grouped into the ``Predicate`` and
``Action`` unions; nothing here touches the filesystem.
"""

from __future__ import annotations

import fnmatch
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Iterable

from .errors import InvalidDestination, RuleConflict
from .records import FileKind, FileRecord


@dataclass(frozen=True)
class Glob:
    """Shell-style pattern on the file name, case-insensitive."""

    pattern: str

    def holds(self, record: FileRecord) -> bool:
        """Match the lowercased name against the lowercased pattern."""
        return fnmatch.fnmatchcase(record.name.lower(), self.pattern.lower())


@dataclass(frozen=True)
class Extension:
    """File extension is one of a fixed set."""

    extensions: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.extensions:
            raise RuleConflict("extension predicate needs at least one extension")
        normalized = tuple(sorted({_normalize_extension(ext) for ext in self.extensions}))
        object.__setattr__(self, "extensions", normalized)

    def holds(self, record: FileRecord) -> bool:
        """Compare the normalized extension, so ``PNG`` and ``.png`` are equal."""
        return record.extension in self.extensions


@dataclass(frozen=True)
class Regex:
    """Regular expression searched in the file name."""

    pattern: str
    _compiled: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "_compiled", re.compile(self.pattern))
        except re.error as e:
            raise RuleConflict(f"invalid regex {self.pattern!r}: {e}") from e

    def holds(self, record: FileRecord) -> bool:
        """Search anywhere in the name; anchor the pattern to match whole names."""
        return self._compiled.search(record.name) is not None


@dataclass(frozen=True)
class OlderThan:
    """File was last modified at least ``days`` before it was observed."""

    days: float

    def __post_init__(self) -> None:
        if self.days < 0:
            raise RuleConflict(f"age threshold must not be negative: {self.days}")

    def holds(self, record: FileRecord) -> bool:
        """Age is measured from the observation time, not the current time."""
        return record.age_days >= self.days


@dataclass(frozen=True)
class LargerThan:
    """File size is at least ``size`` bytes."""

    size: int

    def __post_init__(self) -> None:
        if self.size < 0:
            raise RuleConflict(f"size threshold must not be negative: {self.size}")

    def holds(self, record: FileRecord) -> bool:
        """Check the size captured in the snapshot."""
        return record.size >= self.size


@dataclass(frozen=True)
class KindIs:
    """File falls into a broad category such as images or archives."""

    kind: FileKind

    def holds(self, record: FileRecord) -> bool:
        """Check the category derived from the extension."""
        return record.kind is self.kind


Predicate = Glob | Extension | Regex | OlderThan | LargerThan | KindIs


@dataclass(frozen=True)
class Move:
    """Relocate the file into a folder."""

    destination: Path
    kind: ClassVar[str] = "move"


@dataclass(frozen=True)
class Archive:
    """Relocate the file into a year/month bucket below a folder."""

    destination: Path
    kind: ClassVar[str] = "archive"


@dataclass(frozen=True)
class Delete:
    """Send the file to the trash, or unlink it when trash is disabled."""

    kind: ClassVar[str] = "delete"


@dataclass(frozen=True)
class Tag:
    """Attach a label to the file without moving it."""

    label: str
    kind: ClassVar[str] = "tag"


Action = Move | Archive | Delete | Tag


@dataclass(frozen=True)
class Rule:
    """Predicates that must all hold, the action to take, and a priority.

    Lower priority values win. Rules with equal priority keep their
    declaration order.
    """

    name: str
    predicates: tuple[Predicate, ...]
    action: Action
    priority: int = 0

    def __post_init__(self) -> None:
        if not self.predicates:
            raise RuleConflict(f"rule {self.name!r} has no predicates")

    def holds(self, record: FileRecord) -> bool:
        """Check every predicate in order, stopping at the first failure."""
        return all(predicate.holds(record) for predicate in self.predicates)


@dataclass(frozen=True)
class RuleSet:
    """Validated rules sorted by priority.

    Instances are immutable; a reload builds a new one and swaps the
    reference.
    """

    rules: tuple[Rule, ...] = ()

    @classmethod
    def build(cls, rules: Iterable[Rule], roots: Iterable[Path] = ()) -> RuleSet:
        """Validate rules against every root and return them in match order.

        Raises:
            RuleConflict: If the rules are inconsistent or a destination is invalid.

        """
        rules = list(rules)
        roots = list(roots)
        for root in roots:
            validate(rules, root)
        if not roots:
            validate(rules, None)
        return cls(tuple(sorted(rules, key=lambda r: r.priority)))

    def match(self, record: FileRecord) -> Rule | None:
        return match(self.rules, record)

    def __len__(self) -> int:
        return len(self.rules)


def validate(rules: Iterable[Rule], root: Path | None) -> None:
    """Check a rule list for conflicts and invalid destinations.

    Args:
        rules: Rules in declaration order.
        root: Watched root that relative destinations are resolved against.

    Raises:
        RuleConflict: Two rules share predicates and priority but disagree on the action.
        InvalidDestination: A destination escapes the root or is otherwise unusable.

    """
    seen: dict[tuple[int, frozenset[Predicate]], Rule] = {}
    names: set[str] = set()

    for rule in rules:
        if rule.name in names:
            raise RuleConflict(f"duplicate rule name: {rule.name!r}")
        names.add(rule.name)

        key = (rule.priority, frozenset(rule.predicates))
        if (other := seen.get(key)) is not None and other.action != rule.action:
            raise RuleConflict(
                f"rules {other.name!r} and {rule.name!r} have the same predicates "
                f"and priority {rule.priority} but different actions"
            )
        seen.setdefault(key, rule)

        if isinstance(rule.action, (Move, Archive)):
            _validate_destination(rule, rule.action.destination, root)


def _validate_destination(rule: Rule, destination: Path, root: Path | None) -> None:
    if ".." in destination.parts:
        raise InvalidDestination(f"rule {rule.name!r}: destination {destination} uses '..' traversal")
    if str(destination).startswith("~"):
        raise InvalidDestination(f"rule {rule.name!r}: destination {destination} was not expanded")
    if destination.is_absolute():
        return
    if root is None:
        return

    base = Path(os.path.abspath(root))
    resolved = Path(os.path.abspath(base / destination))
    if not resolved.is_relative_to(base):
        raise InvalidDestination(f"rule {rule.name!r}: destination {destination} escapes {root}")
    if resolved == base:
        raise InvalidDestination(f"rule {rule.name!r}: destination {destination} is the watched root")


def match(rules: Iterable[Rule], record: FileRecord) -> Rule | None:
    """Return the first rule, by priority then declaration order, that holds for a record."""
    for rule in sorted(rules, key=lambda r: r.priority):
        if rule.holds(record):
            return rule
    return None


def _normalize_extension(raw: str) -> str:
    ext = raw.strip().lower()
    if not ext:
        raise RuleConflict("extension cannot be empty")
    return ext if ext.startswith(".") else f".{ext}"


def _expand(raw: str) -> Path:
    return Path(os.path.expanduser(raw))


def _parse_predicates(name: str, data: dict[str, Any]) -> tuple[Predicate, ...]:
    predicates: list[Predicate] = []
    for key, value in data.items():
        if key == "glob":
            predicates.append(Glob(str(value)))
        elif key == "extension":
            values = [value] if isinstance(value, str) else list(value)
            predicates.append(Extension(tuple(str(v) for v in values)))
        elif key == "regex":
            predicates.append(Regex(str(value)))
        elif key == "older_than_days":
            predicates.append(OlderThan(float(value)))
        elif key == "larger_than_mb":
            predicates.append(LargerThan(int(float(value) * 1024 * 1024)))
        elif key == "kind":
            try:
                predicates.append(KindIs(FileKind(str(value).lower())))
            except ValueError as e:
                raise RuleConflict(f"rule {name!r}: unknown kind {value!r}") from e
        else:
            raise RuleConflict(f"rule {name!r}: unknown match key {key!r}")
    return tuple(predicates)


def _parse_action(name: str, data: dict[str, Any]) -> Action:
    if len(data) != 1:
        raise RuleConflict(f"rule {name!r}: action needs exactly one of move, archive, delete, tag")
    key, value = next(iter(data.items()))
    if key == "move":
        return Move(_expand(str(value)))
    if key == "archive":
        return Archive(_expand(str(value)))
    if key == "delete":
        if value is not True:
            raise RuleConflict(f"rule {name!r}: use 'delete: true'")
        return Delete()
    if key == "tag":
        if not str(value).strip():
            raise RuleConflict(f"rule {name!r}: tag label cannot be empty")
        return Tag(str(value).strip())
    raise RuleConflict(f"rule {name!r}: unknown action {key!r}")


def rules_from_config(entries: list[dict[str, Any]]) -> list[Rule]:
    """Build rules from the ``rules`` list of the configuration file.

    Args:
        entries: Raw rule mappings with ``name``, ``priority``, ``match`` and ``action``.

    Returns:
        Rules in declaration order.

    Raises:
        RuleConflict: If an entry is malformed.

    """
    rules: list[Rule] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise RuleConflict(f"rule #{index} must be a mapping")
        name = str(entry.get("name") or f"rule-{index}")
        match_data = entry.get("match")
        action_data = entry.get("action")
        if not isinstance(match_data, dict) or not match_data:
            raise RuleConflict(f"rule {name!r}: 'match' must be a non-empty mapping")
        if not isinstance(action_data, dict):
            raise RuleConflict(f"rule {name!r}: 'action' must be a mapping")
        try:
            priority = int(entry.get("priority", 0))
        except (TypeError, ValueError) as e:
            raise RuleConflict(f"rule {name!r}: priority must be an integer") from e

        rules.append(
            Rule(
                name=name,
                predicates=_parse_predicates(name, match_data),
                action=_parse_action(name, action_data),
                priority=priority,
            )
        )
    return rules


def rule_to_config(rule: Rule) -> dict[str, Any]:
    """Inverse of ``rules_from_config`` for a single rule, used when saving."""
    match_data: dict[str, Any] = {}
    for predicate in rule.predicates:
        if isinstance(predicate, Glob):
            match_data["glob"] = predicate.pattern
        elif isinstance(predicate, Extension):
            match_data["extension"] = list(predicate.extensions)
        elif isinstance(predicate, Regex):
            match_data["regex"] = predicate.pattern
        elif isinstance(predicate, OlderThan):
            match_data["older_than_days"] = predicate.days
        elif isinstance(predicate, LargerThan):
            match_data["larger_than_mb"] = predicate.size / (1024 * 1024)
        elif isinstance(predicate, KindIs):
            match_data["kind"] = predicate.kind.value

    action = rule.action
    if isinstance(action, (Move, Archive)):
        action_data: dict[str, Any] = {action.kind: str(action.destination)}
    elif isinstance(action, Tag):
        action_data = {"tag": action.label}
    else:
        action_data = {"delete": True}

    return {"name": rule.name, "priority": rule.priority, "match": match_data, "action": action_data}
