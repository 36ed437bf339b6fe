"""
Communication executors: SMS, email, Slack and outbound voice calls.
"""
import re
from typing import Any, Dict

from ...core.exceptions import PermanentExecutorError
from ...schemas.workflow import (
    ActionKind, MakeCallConfig, SendEmailConfig, SendSlackConfig, SendSmsConfig
)
from ..execution_context import ExecutionContext
from .base import ActionExecutor, E164_PATTERN, EMAIL_PATTERN, require_resolved


def normalize_phone(action_type: str, value: str) -> str:
    phone = re.sub(r"[\s\-().]", "", require_resolved(action_type, "phone number", value))
    if not E164_PATTERN.match(phone):
        raise PermanentExecutorError(action_type, f"Invalid phone number '{value}', expected E.164 format")
    return phone


class SendSmsExecutor(ActionExecutor):
    action_type = ActionKind.SEND_SMS.value

    async def execute(self, node_id: str, config: SendSmsConfig, context: ExecutionContext) -> Dict[str, Any]:
        to = normalize_phone(self.action_type, config.to)
        require_resolved(self.action_type, "message", config.message)

        message_id = await self.collaborators.messaging.send_sms(context.tenant_id, to, config.message)
        return {"message_id": message_id, "recipient": to}


class SendEmailExecutor(ActionExecutor):
    action_type = ActionKind.SEND_EMAIL.value

    async def execute(self, node_id: str, config: SendEmailConfig, context: ExecutionContext) -> Dict[str, Any]:
        recipient = require_resolved(self.action_type, "recipient", config.recipient).strip()
        if not EMAIL_PATTERN.match(recipient):
            raise PermanentExecutorError(self.action_type, f"Invalid email address '{recipient}'")

        message_id = await self.collaborators.messaging.send_email(
            context.tenant_id, recipient, config.subject, config.body, config.attachments
        )
        return {"message_id": message_id, "recipient": recipient}


class SendSlackExecutor(ActionExecutor):
    action_type = ActionKind.SEND_SLACK.value

    async def execute(self, node_id: str, config: SendSlackConfig, context: ExecutionContext) -> Dict[str, Any]:
        channel = require_resolved(self.action_type, "channel", config.channel).strip()
        message_id = await self.collaborators.messaging.post_slack_message(context.tenant_id, channel, config.text)
        return {"message_id": message_id, "channel": channel}


class MakeCallExecutor(ActionExecutor):
    """Places an outbound call through the voice agent provider"""
    action_type = ActionKind.MAKE_CALL.value

    async def execute(self, node_id: str, config: MakeCallConfig, context: ExecutionContext) -> Dict[str, Any]:
        agent_id = require_resolved(self.action_type, "agentId", config.agent_id)
        phone = normalize_phone(self.action_type, config.phone_number)

        call_id = await self.collaborators.messaging.place_call(context.tenant_id, agent_id, phone)
        return {"message_id": call_id, "call_id": call_id, "recipient": phone}
