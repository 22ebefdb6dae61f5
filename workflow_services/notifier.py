"""
workflow_services.notifier -- Reference NotifierPort adapters.

LoggingNotifier writes every notification as a structured log record,
which is enough for development and for hosts that ship their logs to an
alerting pipeline.  Real delivery channels (mail, chat, push) are host
concerns and implement the same ``notify`` method.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from workflow_kernel.logging_config import get_logger

logger = get_logger("services.notifier")

TEMPLATE_TASK_ASSIGNED = "workflow.task_assigned"
TEMPLATE_TASK_ESCALATED = "workflow.task_escalated"
TEMPLATE_TASK_COMPLETED = "workflow.task_completed"


class LoggingNotifier:
    def notify(self, recipient: str, template_id: str, data: Mapping[str, Any]) -> None:
        logger.info(
            "notification_sent",
            extra={
                "recipient": recipient,
                "template_id": template_id,
                "data": dict(data),
            },
        )


class NullNotifier:
    """Discards notifications."""

    def notify(self, recipient: str, template_id: str, data: Mapping[str, Any]) -> None:
        return None
