"""
SLA and escalation value objects (``workflow_kernel.domain.sla``).

Responsibility
--------------
Describes how long a task may stay open, when it is considered at risk,
and which escalation fires once it is late.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* An EscalationRule has exactly one of ``threshold`` (relative to task
  creation) or ``at`` (absolute instant).
* ``SlaConfiguration.duration`` is positive.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class SlaStatus(str, Enum):
    """Deadline status of an open task."""

    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"


class EscalationAction(str, Enum):
    """What an escalation does to the late task."""

    REASSIGN = "reassign"
    NOTIFY = "notify"
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class EscalationRule:
    """A time threshold paired with the action to take once it passes."""

    action: EscalationAction
    threshold: timedelta | None = None
    at: datetime | None = None
    target: str | None = None
    message: str = ""

    def __post_init__(self) -> None:
        if (self.threshold is None) == (self.at is None):
            raise ValueError(
                "EscalationRule requires exactly one of 'threshold' or 'at'"
            )
        if self.threshold is not None and self.threshold < timedelta(0):
            raise ValueError("EscalationRule threshold must not be negative")


@dataclass(frozen=True)
class SlaConfiguration:
    """Deadline policy for tasks opened by a transition.

    ``at_risk_ratio`` of None defers to the engine-wide default.  When no
    ``escalation_rules`` are declared, a breach applies ``on_breach_action``
    (to ``breach_target`` when set) at the deadline itself.
    """

    duration: timedelta
    use_business_hours: bool = False
    on_breach_action: EscalationAction = EscalationAction.NOTIFY
    at_risk_ratio: float | None = None
    escalation_rules: tuple[EscalationRule, ...] = ()
    breach_target: str | None = None

    def __post_init__(self) -> None:
        if self.duration <= timedelta(0):
            raise ValueError("SLA duration must be positive")
        if self.at_risk_ratio is not None and not 0 < self.at_risk_ratio <= 1:
            raise ValueError("at_risk_ratio must be in (0, 1]")

    def effective_rules(self) -> tuple[EscalationRule, ...]:
        if self.escalation_rules:
            return self.escalation_rules
        return (
            EscalationRule(
                action=self.on_breach_action,
                threshold=self.duration,
                target=self.breach_target,
                message="SLA breached",
            ),
        )


@dataclass(frozen=True)
class SlaEvaluation:
    """Result of checking one task against its SLA at one instant.

    ``escalation`` is the single rule selected for a breach (None when not
    breached or nothing qualifies); ``threshold_key`` is its idempotency
    marker in whole seconds.
    """

    status: SlaStatus
    started_at: datetime
    due_at: datetime
    elapsed: timedelta
    duration: timedelta
    escalation: EscalationRule | None = None
    threshold_key: int | None = None
    already_escalated: bool = False

    @property
    def remaining(self) -> timedelta:
        return max(self.duration - self.elapsed, timedelta(0))

    @property
    def should_escalate(self) -> bool:
        return self.escalation is not None and not self.already_escalated
