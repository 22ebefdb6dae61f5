"""
workflow_engines.sla -- SLA status and escalation selection.

Responsibility:
    Given when a task opened, its SLA configuration and the current
    instant, compute the deadline, the counted elapsed time, the status
    (on_track / at_risk / breached) and, on a breach, the single escalation
    rule that applies.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  ``now`` and the calendar
    are passed in; nothing here reads a clock.

Invariants enforced:
    - breached iff elapsed >= duration; at_risk iff elapsed >= ratio *
      duration and not breached.
    - At most one rule is selected: among rules whose threshold has been
      reached, the one with the highest threshold wins.  Ties keep the
      rule declared first.
    - A rule whose threshold key is already in ``escalated_thresholds`` is
      reported but flagged ``already_escalated``, so repeated checks in the
      same bucket fire nothing.

Failure modes:
    - None beyond ValueError from malformed value objects.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from workflow_kernel.domain.calendar import BusinessCalendar, WallClockCalendar
from workflow_kernel.domain.sla import (
    EscalationRule,
    SlaConfiguration,
    SlaEvaluation,
    SlaStatus,
)

_WALL_CLOCK = WallClockCalendar()


def calendar_for(sla: SlaConfiguration, business_calendar: BusinessCalendar) -> BusinessCalendar:
    """Business calendar when the SLA counts working time, wall clock otherwise."""
    return business_calendar if sla.use_business_hours else _WALL_CLOCK


def compute_due_at(
    started_at: datetime,
    sla: SlaConfiguration,
    business_calendar: BusinessCalendar,
) -> datetime:
    return calendar_for(sla, business_calendar).add_duration(started_at, sla.duration)


def _rule_threshold(
    rule: EscalationRule,
    started_at: datetime,
    calendar: BusinessCalendar,
) -> timedelta:
    if rule.threshold is not None:
        return rule.threshold
    # Absolute rules are measured on the same calendar as elapsed time.
    return calendar.elapsed(started_at, rule.at)


def select_escalation(
    rules: Iterable[EscalationRule],
    started_at: datetime,
    elapsed: timedelta,
    now: datetime,
    calendar: BusinessCalendar,
) -> tuple[EscalationRule, timedelta] | None:
    """Return the reached rule with the highest threshold, or None."""
    best: tuple[EscalationRule, timedelta] | None = None
    for rule in rules:
        if rule.at is not None:
            reached = now >= rule.at
        else:
            reached = elapsed >= rule.threshold
        if not reached:
            continue
        threshold = _rule_threshold(rule, started_at, calendar)
        if best is None or threshold > best[1]:
            best = (rule, threshold)
    return best


def evaluate_sla(
    started_at: datetime,
    sla: SlaConfiguration,
    now: datetime,
    business_calendar: BusinessCalendar,
    default_at_risk_ratio: float = 0.8,
    escalated_thresholds: Iterable[int] = (),
) -> SlaEvaluation:
    calendar = calendar_for(sla, business_calendar)
    due_at = calendar.add_duration(started_at, sla.duration)
    elapsed = calendar.elapsed(started_at, now)

    ratio = sla.at_risk_ratio if sla.at_risk_ratio is not None else default_at_risk_ratio
    if elapsed >= sla.duration:
        status = SlaStatus.BREACHED
    elif elapsed >= sla.duration * ratio:
        status = SlaStatus.AT_RISK
    else:
        status = SlaStatus.ON_TRACK

    if status != SlaStatus.BREACHED:
        return SlaEvaluation(
            status=status,
            started_at=started_at,
            due_at=due_at,
            elapsed=elapsed,
            duration=sla.duration,
        )

    selected = select_escalation(sla.effective_rules(), started_at, elapsed, now, calendar)
    if selected is None:
        return SlaEvaluation(
            status=status,
            started_at=started_at,
            due_at=due_at,
            elapsed=elapsed,
            duration=sla.duration,
        )

    rule, threshold = selected
    key = int(threshold.total_seconds())
    return SlaEvaluation(
        status=status,
        started_at=started_at,
        due_at=due_at,
        elapsed=elapsed,
        duration=sla.duration,
        escalation=rule,
        threshold_key=key,
        already_escalated=key in set(escalated_thresholds),
    )
