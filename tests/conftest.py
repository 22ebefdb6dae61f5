"""
Pytest fixtures for the workflow kernel test suite.

Provides:
- Structured logging configured once per session, plus ``captured_logs``
- A DeterministicClock and a notifier that records what it was asked to send
- WorkflowManager instances wired to in-memory repositories
- The purchase order definition used across service tests
- In-memory SQLite session factories for the SQLAlchemy adapters
"""

import json
import logging
from datetime import timedelta
from decimal import Decimal
from io import StringIO

import pytest

from workflow_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from workflow_kernel.domain.clock import DeterministicClock
from workflow_kernel.domain.sla import EscalationAction, EscalationRule, SlaConfiguration
from workflow_kernel.domain.workflow import (
    ApprovalConfig,
    Transition,
    WorkflowDefinition,
)
from workflow_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from workflow_services.directory import StaticActorDirectory
from workflow_services.memory import (
    InMemoryDefinitionRepository,
    InMemoryHistoryRepository,
    InMemoryInstanceRepository,
    InMemoryTaskRepository,
)
from workflow_services.workflow_manager import WorkflowManager

REQUESTER = "requester"
APPROVERS = ("alice", "bob", "carol")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture workflow_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, manager):
            manager.instantiate(...)
            logs = captured_logs()
            assert any(r["message"] == "workflow_instantiated" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("workflow_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Collaborators
# =============================================================================


class RecordingNotifier:
    """NotifierPort that keeps every notification in memory."""

    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []

    def notify(self, recipient, template_id, data):
        self.sent.append((recipient, template_id, dict(data)))

    def recipients(self, template_id: str) -> list[str]:
        return [r for r, t, _ in self.sent if t == template_id]


class FailingNotifier:
    def notify(self, recipient, template_id, data):
        raise ConnectionError("mail relay unavailable")


@pytest.fixture
def clock():
    """Provide a deterministic clock (Monday 2024-01-01 09:00 UTC)."""
    return DeterministicClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def directory():
    return StaticActorDirectory()


# =============================================================================
# Definitions
# =============================================================================


def build_po_definition(
    strategy: str = "majority",
    assignees: tuple[str, ...] = APPROVERS,
    guard: str | None = None,
    sla: SlaConfiguration | None = None,
    forbid_self_approval: bool = False,
    rejection_state: str | None = "rejected",
    **approval_kwargs,
) -> WorkflowDefinition:
    """draft -submit-> pending_approval -approve(gated)-> approved."""
    return WorkflowDefinition(
        id="purchase_order",
        name="Purchase Order",
        states=("draft", "pending_approval", "approved", "rejected"),
        initial_state="draft",
        transitions=(
            Transition(
                name="submit",
                from_states=frozenset({"draft"}),
                to_state="pending_approval",
                guard=guard,
            ),
            Transition(
                name="approve",
                from_states=frozenset({"pending_approval"}),
                to_state="approved",
                approval=ApprovalConfig(
                    strategy=strategy, assignees=tuple(assignees), **approval_kwargs,
                ),
                sla=sla,
            ),
            Transition(
                name="withdraw",
                from_states=frozenset({"pending_approval"}),
                to_state="draft",
            ),
        ),
        final_states=("approved", "rejected"),
        rejection_state=rejection_state,
        forbid_self_approval=forbid_self_approval,
    )


def build_sla(
    duration: timedelta = timedelta(hours=8),
    rules: tuple[EscalationRule, ...] = (),
    **kwargs,
) -> SlaConfiguration:
    return SlaConfiguration(duration=duration, escalation_rules=rules, **kwargs)


@pytest.fixture
def make_po_definition():
    """Factory for purchase order definitions; see ``build_po_definition``."""
    return build_po_definition


@pytest.fixture
def make_sla():
    return build_sla


@pytest.fixture
def escalation_rule():
    def _rule(hours: float, action=EscalationAction.NOTIFY, target=None, message=""):
        return EscalationRule(
            action=action, threshold=timedelta(hours=hours), target=target, message=message,
        )

    return _rule


@pytest.fixture
def weights():
    def _weights(**values):
        return {k: Decimal(str(v)) for k, v in values.items()}

    return _weights


# =============================================================================
# Manager fixtures
# =============================================================================


@pytest.fixture
def make_manager(clock, notifier, directory):
    """
    Build a WorkflowManager over fresh in-memory repositories.

    Keyword arguments override any collaborator.
    """

    def _make(*definitions, **overrides):
        kwargs = {
            "definitions": InMemoryDefinitionRepository(list(definitions)),
            "instances": InMemoryInstanceRepository(),
            "tasks": InMemoryTaskRepository(),
            "history": InMemoryHistoryRepository(),
            "notifier": notifier,
            "clock": clock,
            "actor_directory": directory,
        }
        kwargs.update(overrides)
        return WorkflowManager(**kwargs)

    return _make


@pytest.fixture
def manager(make_manager):
    """Manager with the default majority-of-three purchase order definition."""
    return make_manager(build_po_definition())


@pytest.fixture
def submitted(manager):
    """Purchase order PO-1 submitted and waiting on its approval task."""
    instance = manager.instantiate(
        "purchase_order", "PurchaseOrder", "PO-1", {"amount": 5000}, actor_id=REQUESTER,
    )
    result = manager.apply(instance.id, "submit", REQUESTER)
    (task,) = manager.open_tasks(instance.id)
    return result.instance, task


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def sqlite_session_factory():
    """Fresh in-memory SQLite schema per test."""
    reset_engine()
    init_engine_from_url("sqlite://")
    create_tables()
    yield get_session_factory()
    drop_tables()
    reset_engine()
