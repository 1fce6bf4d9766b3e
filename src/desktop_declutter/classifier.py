"""Classify file records against a rule set."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .records import FileKind, FileRecord
from .rules import Action, Glob, Move, Rule, RuleSet

# Names the executor leaves behind during multi-step operations
SENTINEL_SUFFIX = ".declutter-pending"
PARTIAL_SUFFIX = ".declutter-partial"


class DefaultPolicy(Enum):
    """What to do with files no rule matches."""

    IGNORE = "ignore"
    UNSORTED = "unsorted"


@dataclass(frozen=True)
class Act:
    """Apply ``action`` because ``rule`` matched."""

    rule: Rule
    action: Action


@dataclass(frozen=True)
class Ignore:
    """Leave the file alone."""

    reason: str


Decision = Act | Ignore


def is_internal_name(name: str) -> bool:
    """Check for hidden files and the engine's own temporary files."""
    return (
        name.startswith((".", "$"))
        or name.endswith((SENTINEL_SUFFIX, PARTIAL_SUFFIX))
    )


class Classifier:
    """Pure mapping from a file record and a rule set to a decision."""

    def __init__(
        self,
        default_policy: DefaultPolicy = DefaultPolicy.IGNORE,
        unsorted_folder: Path = Path("Unsorted"),
    ) -> None:
        """Initialize the classifier.

        Args:
            default_policy: Policy for files no rule matches.
            unsorted_folder: Fallback folder, relative to the watched root.

        """
        self.default_policy = default_policy
        self.unsorted_rule = Rule(
            name="unsorted",
            predicates=(Glob("*"),),
            action=Move(unsorted_folder),
            priority=2**31,
        )

    def classify(self, record: FileRecord, ruleset: RuleSet) -> Decision:
        """Decide what to do with a file.

        Args:
            record: Snapshot of the file.
            ruleset: Rules to evaluate.

        Returns:
            ``Act`` with the winning rule, or ``Ignore`` with a reason.

        """
        if is_internal_name(record.name):
            return Ignore("hidden or internal file")
        if record.kind in (FileKind.FOLDER, FileKind.APP):
            return Ignore("directory or application bundle")

        if (rule := ruleset.match(record)) is not None:
            return Act(rule, rule.action)

        if self.default_policy is DefaultPolicy.UNSORTED:
            return Act(self.unsorted_rule, self.unsorted_rule.action)
        return Ignore("no rule matched")
