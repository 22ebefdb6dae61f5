"""
Workflow Configuration Loader (``workflow_config.loader``).

Responsibility
--------------
Loads YAML workflow documents and parses them into the frozen definition
types of ``workflow_kernel.domain``.  A document carries an optional
``settings:`` block (engine-wide EngineSettings) and a ``workflows:`` list
of definitions.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Depends on the kernel domain
types and on ``workflow_config.validator``.  No dependency on services.

Invariants enforced
-------------------
* Every parsed definition has exactly one initial state.
* Every returned definition has passed ``ensure_valid``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  document for change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Unparseable values (durations, enum names, states)  -> ``ValueError``.
* Structurally invalid definitions  -> ``InvalidDefinitionError``.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from workflow_config.validator import ensure_valid
from workflow_engines.approval import ApprovalEngine
from workflow_kernel.domain.sla import EscalationAction, EscalationRule, SlaConfiguration
from workflow_kernel.domain.task import TaskPriority
from workflow_kernel.domain.workflow import (
    ApprovalConfig,
    EngineSettings,
    Transition,
    WorkflowDefinition,
)
from workflow_kernel.logging_config import get_logger

logger = get_logger("config.loader")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([dhms])")
_DURATION_UNITS = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}


@dataclass(frozen=True)
class WorkflowConfig:
    """Parsed and validated workflow document."""

    settings: EngineSettings
    definitions: tuple[WorkflowDefinition, ...]
    checksum: str = ""

    def get(self, definition_id: str) -> WorkflowDefinition | None:
        for definition in self.definitions:
            if definition.id == definition_id:
                return definition
        return None


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping")
    return data


def parse_duration(value: Any) -> timedelta:
    """
    Parse a duration: ``"48h"``, ``"30m"``, ``"2d"``, ``"1h30m"``, a bare
    number of hours, or a ``timedelta``.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Cannot parse duration from {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(hours=value)
    if isinstance(value, str):
        text = value.strip().lower()
        parts = _DURATION_PART.findall(text)
        if parts and _DURATION_PART.sub("", text).strip() == "":
            total = timedelta(0)
            for amount, unit in parts:
                total += timedelta(**{_DURATION_UNITS[unit]: float(amount)})
            return total
    raise ValueError(f"Cannot parse duration from {value!r}")


def parse_datetime(value: Any) -> datetime:
    """Parse an absolute instant; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value)
    else:
        raise ValueError(f"Cannot parse datetime from {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _enum(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValueError(f"Invalid {field_name} {value!r} (expected one of: {allowed})") from None


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value))


def parse_settings(data: dict[str, Any] | None) -> EngineSettings:
    data = data or {}
    defaults = EngineSettings()
    return EngineSettings(
        max_delegation_depth=int(data.get("max_delegation_depth", defaults.max_delegation_depth)),
        default_at_risk_ratio=float(data.get("default_at_risk_ratio", defaults.default_at_risk_ratio)),
        system_actor_id=str(data.get("system_actor_id", defaults.system_actor_id)),
    )


def parse_escalation(data: dict[str, Any]) -> EscalationRule:
    """Parse one rule: ``after`` (duration) or ``at`` (instant), plus action."""
    return EscalationRule(
        action=_enum(EscalationAction, data["action"], "escalation action"),
        threshold=parse_duration(data["after"]) if "after" in data else None,
        at=parse_datetime(data["at"]) if "at" in data else None,
        target=data.get("target"),
        message=data.get("message", ""),
    )


def parse_sla(data: dict[str, Any]) -> SlaConfiguration:
    ratio = data.get("at_risk_ratio")
    return SlaConfiguration(
        duration=parse_duration(data["duration"]),
        use_business_hours=bool(data.get("business_hours", False)),
        on_breach_action=_enum(
            EscalationAction, data.get("on_breach", EscalationAction.NOTIFY.value), "on_breach action",
        ),
        at_risk_ratio=float(ratio) if ratio is not None else None,
        escalation_rules=tuple(parse_escalation(e) for e in data.get("escalations", ())),
        breach_target=data.get("breach_target"),
    )


def parse_approval(data: dict[str, Any]) -> ApprovalConfig:
    threshold = data.get("threshold")
    depth = data.get("max_delegation_depth")
    return ApprovalConfig(
        strategy=str(data["strategy"]).lower(),
        assignees=tuple(str(a) for a in data.get("assignees", ())),
        quorum=int(data["quorum"]) if data.get("quorum") is not None else None,
        weights={str(k): _decimal(v) for k, v in (data.get("weights") or {}).items()},
        threshold=_decimal(threshold) if threshold is not None else None,
        reject_to=data.get("reject_to"),
        max_delegation_depth=int(depth) if depth is not None else None,
        priority=_enum(TaskPriority, data.get("priority", TaskPriority.MEDIUM.value), "priority"),
    )


def parse_transition(data: dict[str, Any]) -> Transition:
    """
    Parse a transition.  ``from`` accepts one state name or a list.
    """
    sources = data["from"]
    if isinstance(sources, str):
        sources = [sources]
    return Transition(
        name=data["name"],
        from_states=frozenset(sources),
        to_state=data["to"],
        guard=data.get("guard"),
        approval=parse_approval(data["approval"]) if data.get("approval") else None,
        sla=parse_sla(data["sla"]) if data.get("sla") else None,
    )


def _parse_states(data: dict[str, Any]) -> tuple[tuple[str, ...], str, tuple[str, ...]]:
    """States are plain names or mappings with ``name`` and ``initial``/``final`` flags."""
    names: list[str] = []
    initial: list[str] = []
    final: list[str] = list(data.get("final_states", ()))
    for entry in data["states"]:
        if isinstance(entry, str):
            names.append(entry)
            continue
        if not isinstance(entry, dict) or "name" not in entry:
            raise ValueError(f"Workflow '{data.get('id')}': invalid state entry {entry!r}")
        names.append(entry["name"])
        if entry.get("initial"):
            initial.append(entry["name"])
        if entry.get("final") and entry["name"] not in final:
            final.append(entry["name"])

    if "initial_state" in data:
        initial.append(data["initial_state"])
        initial = list(dict.fromkeys(initial))
    if len(initial) != 1:
        raise ValueError(
            f"Workflow '{data.get('id')}' must declare exactly one initial state, got {initial}"
        )
    return tuple(names), initial[0], tuple(final)


def parse_definition(data: dict[str, Any]) -> WorkflowDefinition:
    """
    Parse a ``WorkflowDefinition`` from a dict.

    Raises:
        KeyError: if ``id``, ``states`` or a transition's required keys
            are missing.
        ValueError: if values cannot be parsed.
    """
    states, initial, final = _parse_states(data)
    return WorkflowDefinition(
        id=data["id"],
        name=data.get("name", data["id"]),
        states=states,
        initial_state=initial,
        transitions=tuple(parse_transition(t) for t in data.get("transitions", ())),
        final_states=final,
        rejection_state=data.get("rejection_state"),
        forbid_self_approval=bool(data.get("forbid_self_approval", False)),
        version=int(data.get("version", 1)),
        description=data.get("description", ""),
    )


def parse_workflow_config(
    data: dict[str, Any],
    approval_engine: ApprovalEngine | None = None,
) -> WorkflowConfig:
    """Parse and validate a whole document."""
    definitions = tuple(parse_definition(d) for d in data.get("workflows", ()))
    seen: set[str] = set()
    for definition in definitions:
        if definition.id in seen:
            raise ValueError(f"Duplicate workflow id '{definition.id}'")
        seen.add(definition.id)
        result = ensure_valid(definition, approval_engine)
        for warning in result.warnings:
            logger.warning(
                "definition_warning",
                extra={"definition_id": definition.id, "warning": warning},
            )
    return WorkflowConfig(
        settings=parse_settings(data.get("settings")),
        definitions=definitions,
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
