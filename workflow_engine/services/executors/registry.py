from typing import Dict, Optional

from ...schemas.workflow import ActionKind, CONTROL_FLOW_KINDS
from ..collaborators import Collaborators
from .base import ActionExecutor, RetryPolicy
from .calendar import CreateCalendarEventExecutor, SendCalendarInviteExecutor
from .communication import MakeCallExecutor, SendEmailExecutor, SendSlackExecutor, SendSmsExecutor
from .crm import (
    AddNoteExecutor, CreateLeadExecutor, CreateTaskExecutor, UpdateDealExecutor, UpdateLeadExecutor
)
from .integration import ApiCallExecutor, GoogleSheetsAddRowExecutor, WebhookExecutor

EXECUTOR_CLASSES = {
    ActionKind.SEND_SMS: SendSmsExecutor,
    ActionKind.SEND_EMAIL: SendEmailExecutor,
    ActionKind.MAKE_CALL: MakeCallExecutor,
    ActionKind.SEND_SLACK: SendSlackExecutor,
    ActionKind.CREATE_LEAD: CreateLeadExecutor,
    ActionKind.UPDATE_LEAD: UpdateLeadExecutor,
    ActionKind.CREATE_TASK: CreateTaskExecutor,
    ActionKind.UPDATE_DEAL: UpdateDealExecutor,
    ActionKind.ADD_NOTE: AddNoteExecutor,
    ActionKind.CREATE_CALENDAR_EVENT: CreateCalendarEventExecutor,
    ActionKind.SEND_CALENDAR_INVITE: SendCalendarInviteExecutor,
    ActionKind.GOOGLE_SHEETS_ADD_ROW: GoogleSheetsAddRowExecutor,
    ActionKind.WEBHOOK: WebhookExecutor,
    ActionKind.API_CALL: ApiCallExecutor,
}

_missing = set(ActionKind) - CONTROL_FLOW_KINDS - set(EXECUTOR_CLASSES)
if _missing:
    raise RuntimeError(f"No executor registered for: {', '.join(sorted(kind.value for kind in _missing))}")


def build_executor_registry(
    collaborators: Collaborators,
    retry_policy: Optional[RetryPolicy] = None
) -> Dict[str, ActionExecutor]:
    """One executor instance per action kind, keyed by the kind's wire value"""
    return {
        kind.value: executor_class(collaborators, retry_policy)
        for kind, executor_class in EXECUTOR_CLASSES.items()
    }
