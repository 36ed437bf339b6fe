"""
CRM mutation executors.

Every write carries an idempotency key derived from run id and node id, so a
step retried after a transient failure upserts the same record.
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from ...core.exceptions import PermanentExecutorError
from ...schemas.workflow import (
    ActionKind, AddNoteConfig, CreateLeadConfig, CreateTaskConfig, UpdateDealConfig, UpdateLeadConfig
)
from ..execution_context import ExecutionContext
from .base import ActionExecutor, idempotency_key, require_resolved

RELATIVE_DATE_PATTERN = re.compile(r"^\+\s*(\d+)\s*(minute|hour|day|week)s?$", re.IGNORECASE)


def resolve_due_date(value: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
    """'+2 days' -> ISO timestamp relative to now; anything else passes through"""
    if not value:
        return None
    match = RELATIVE_DATE_PATTERN.match(value.strip())
    if not match:
        return value
    amount, unit = int(match.group(1)), match.group(2).lower()
    now = now or datetime.now(timezone.utc)
    return (now + timedelta(**{f"{unit}s": amount})).isoformat()


class CreateLeadExecutor(ActionExecutor):
    action_type = ActionKind.CREATE_LEAD.value

    async def execute(self, node_id: str, config: CreateLeadConfig, context: ExecutionContext) -> Dict[str, Any]:
        if not config.lead_data:
            raise PermanentExecutorError(self.action_type, "leadData is empty")
        record_id = await self.collaborators.crm.create_record(
            context.tenant_id, "lead", config.lead_data, idempotency_key(context, node_id)
        )
        return {"record_id": record_id}


class UpdateLeadExecutor(ActionExecutor):
    action_type = ActionKind.UPDATE_LEAD.value

    async def execute(self, node_id: str, config: UpdateLeadConfig, context: ExecutionContext) -> Dict[str, Any]:
        lead_id = require_resolved(self.action_type, "leadId", config.lead_id)
        record_id = await self.collaborators.crm.update_record(
            context.tenant_id, "lead", lead_id, config.lead_data, idempotency_key(context, node_id)
        )
        return {"record_id": record_id}


class CreateTaskExecutor(ActionExecutor):
    action_type = ActionKind.CREATE_TASK.value

    async def execute(self, node_id: str, config: CreateTaskConfig, context: ExecutionContext) -> Dict[str, Any]:
        title = require_resolved(self.action_type, "taskTitle", config.task_title)
        fields = {
            "title": title,
            "description": config.task_description,
            "type": config.task_type,
            "priority": config.task_priority,
            "due_date": resolve_due_date(config.task_due_date),
        }
        record_id = await self.collaborators.crm.create_record(
            context.tenant_id,
            "task",
            {key: value for key, value in fields.items() if value is not None},
            idempotency_key(context, node_id)
        )
        return {"record_id": record_id, "title": title}


class UpdateDealExecutor(ActionExecutor):
    action_type = ActionKind.UPDATE_DEAL.value

    async def execute(self, node_id: str, config: UpdateDealConfig, context: ExecutionContext) -> Dict[str, Any]:
        deal_id = require_resolved(self.action_type, "dealId", config.deal_id)
        record_id = await self.collaborators.crm.update_record(
            context.tenant_id, "deal", deal_id, config.deal_data, idempotency_key(context, node_id)
        )
        return {"record_id": record_id}


class AddNoteExecutor(ActionExecutor):
    action_type = ActionKind.ADD_NOTE.value

    async def execute(self, node_id: str, config: AddNoteConfig, context: ExecutionContext) -> Dict[str, Any]:
        target_id = require_resolved(self.action_type, "targetId", config.target_id)
        record_id = await self.collaborators.crm.add_note(
            context.tenant_id, target_id, config.text, idempotency_key(context, node_id)
        )
        return {"record_id": record_id}
