"""Section-count rules gating the backlog -> todo transition."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from .models import SectionType, Task, TaskValidationError


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(slots=True, frozen=True)
class SectionRule:
    """At least `min_count` sections drawn from any of `section_types`."""

    section_types: tuple[SectionType, ...]
    min_count: int
    severity: Severity = Severity.ERROR

    @property
    def label(self) -> str:
        return "|".join(section_type.value for section_type in self.section_types)

    def count(self, task: Task) -> int:
        return sum(task.section_count(section_type) for section_type in self.section_types)


@dataclass(slots=True, frozen=True)
class TriageIssue:
    rule: SectionRule
    current: int

    @property
    def severity(self) -> Severity:
        return self.rule.severity

    @property
    def required(self) -> int:
        return self.rule.min_count

    @property
    def message(self) -> str:
        return f"{self.rule.label}: has {self.current}, needs at least {self.required}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "section_types": [section_type.value for section_type in self.rule.section_types],
            "current": self.current,
            "required": self.required,
            "severity": self.severity.value,
            "message": self.message,
        }


@dataclass(slots=True)
class TriageResult:
    task_id: str
    issues: list[TriageIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[TriageIssue]:
        return [issue for issue in self.issues if issue.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[TriageIssue]:
        return [issue for issue in self.issues if issue.severity is Severity.WARNING]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "valid": self.is_valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }


DEFAULT_REQUIRED: dict[str, int] = {
    "testing_criterion": 2,
    "step": 1,
    "constraint": 2,
}
DEFAULT_RECOMMENDED: dict[str, int] = {
    "goal|desired_behavior": 1,
    "anti_pattern": 1,
    "failure_test": 1,
    "context": 1,
}


def parse_rule_key(key: str) -> tuple[SectionType, ...]:
    """Turn "goal|desired_behavior" into its section types."""
    types: list[SectionType] = []
    for token in key.split("|"):
        token = token.strip().lower()
        try:
            section_type = SectionType(token)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in SectionType)
            raise TaskValidationError(f"Unknown section type '{token}'. Expected one of: {allowed}") from exc
        if section_type not in types:
            types.append(section_type)
    return tuple(types)


def rules_from_mapping(counts: Mapping[str, int], severity: Severity) -> tuple[SectionRule, ...]:
    rules: list[SectionRule] = []
    for key, min_count in counts.items():
        if not isinstance(key, str):
            raise TaskValidationError(f"Section rule key {key!r} must be a string")
        if isinstance(min_count, bool) or not isinstance(min_count, int) or min_count < 0:
            raise TaskValidationError(f"Minimum count for '{key}' must be a non-negative integer")
        rules.append(SectionRule(parse_rule_key(key), min_count, severity))
    return tuple(rules)


def default_rules() -> tuple[SectionRule, ...]:
    return rules_from_mapping(DEFAULT_REQUIRED, Severity.ERROR) + rules_from_mapping(
        DEFAULT_RECOMMENDED, Severity.WARNING
    )


@dataclass(slots=True, frozen=True)
class TriageConfig:
    rules: tuple[SectionRule, ...] = field(default_factory=default_rules)

    @classmethod
    def from_counts(
        cls,
        required: Mapping[str, int] | None = None,
        recommended: Mapping[str, int] | None = None,
    ) -> TriageConfig:
        required = DEFAULT_REQUIRED if required is None else required
        recommended = DEFAULT_RECOMMENDED if recommended is None else recommended
        return cls(
            rules_from_mapping(required, Severity.ERROR)
            + rules_from_mapping(recommended, Severity.WARNING)
        )

    def rules_for(self, severity: Severity) -> list[SectionRule]:
        return [rule for rule in self.rules if rule.severity is severity]


class TriageValidator:
    def __init__(self, config: TriageConfig | None = None) -> None:
        self.config = config or TriageConfig()

    def validate(self, task: Task) -> TriageResult:
        return TriageResult(task_id=task.id, issues=list(self._issues(task, self.config.rules)))

    @staticmethod
    def _issues(task: Task, rules: Iterable[SectionRule]) -> Iterable[TriageIssue]:
        for rule in rules:
            current = rule.count(task)
            if current < rule.min_count:
                yield TriageIssue(rule=rule, current=current)
