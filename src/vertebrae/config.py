"""Engine settings resolved from `.vtb/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from .models import TaskValidationError
from .triage import (
    DEFAULT_RECOMMENDED,
    DEFAULT_REQUIRED,
    TriageConfig,
    TriageValidator,
)
from .workflow import StatusMachine, Workflow, WorkflowDefinition, definition_for


DEFAULT_WORKFLOW = Workflow.STANDARD


@dataclass(slots=True, frozen=True)
class EngineConfig:
    workflow: Workflow = DEFAULT_WORKFLOW
    triage: TriageConfig = field(default_factory=TriageConfig)

    @property
    def definition(self) -> WorkflowDefinition:
        return definition_for(self.workflow)

    def validator(self) -> TriageValidator:
        return TriageValidator(self.triage)

    def status_machine(self) -> StatusMachine:
        return StatusMachine(self.definition, self.validator())


def _resolve_workflow(value: Any, source: str, warn: Callable[[str], None] | None) -> Workflow:
    if value is None:
        return DEFAULT_WORKFLOW
    try:
        return Workflow(str(value).strip().lower())
    except ValueError:
        if warn is not None:
            warn(
                f"Invalid settings.workflow in {source}. "
                f"Using default '{DEFAULT_WORKFLOW.value}'."
            )
        return DEFAULT_WORKFLOW


def _resolve_counts(
    triage: Mapping[str, Any],
    key: str,
    default: Mapping[str, int],
    source: str,
    warn: Callable[[str], None] | None,
) -> Mapping[str, int]:
    value = triage.get(key)
    if value is None:
        return default
    if not isinstance(value, dict):
        if warn is not None:
            warn(f"Invalid settings.triage.{key} in {source}. Using defaults.")
        return default
    return value


def _resolve_triage(value: Any, source: str, warn: Callable[[str], None] | None) -> TriageConfig:
    if value is None:
        return TriageConfig()
    if not isinstance(value, dict):
        if warn is not None:
            warn(f"Invalid settings.triage section in {source}. Using defaults.")
        return TriageConfig()

    supported = {"required", "recommended"}
    for key in value.keys():
        if key not in supported and warn is not None:
            warn(f"Unsupported settings.triage key '{key}' in {source}. Ignoring.")

    required = _resolve_counts(value, "required", DEFAULT_REQUIRED, source, warn)
    recommended = _resolve_counts(value, "recommended", DEFAULT_RECOMMENDED, source, warn)
    try:
        return TriageConfig.from_counts(required, recommended)
    except TaskValidationError as exc:
        if warn is not None:
            warn(f"Invalid settings.triage in {source}: {exc}. Using defaults.")
        return TriageConfig()


def resolve_engine_config(
    data: Mapping[str, Any],
    source: str | Path = "config",
    warn: Callable[[str], None] | None = None,
) -> EngineConfig:
    supported_top_keys = {"settings"}
    for key in data.keys():
        if key not in supported_top_keys and warn is not None:
            warn(f"Unsupported config key '{key}' in {source}. Ignoring.")

    settings = data.get("settings", {})
    if settings is None:
        settings = {}
    if not isinstance(settings, dict):
        if warn is not None:
            warn(f"Invalid settings section in {source}. Using defaults.")
        return EngineConfig()

    supported_settings_keys = {"workflow", "triage"}
    for key in settings.keys():
        if key not in supported_settings_keys and warn is not None:
            warn(f"Unsupported settings key '{key}' in {source}. Ignoring.")

    return EngineConfig(
        workflow=_resolve_workflow(settings.get("workflow"), str(source), warn),
        triage=_resolve_triage(settings.get("triage"), str(source), warn),
    )
