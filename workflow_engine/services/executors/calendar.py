from datetime import datetime
from typing import Any, Dict

from ...core.exceptions import PermanentExecutorError
from ...schemas.workflow import ActionKind, CalendarEventConfig
from ..execution_context import ExecutionContext
from .base import ActionExecutor, EMAIL_PATTERN, require_resolved


def _parse_time(action_type: str, field: str, value: str) -> datetime:
    value = require_resolved(action_type, field, value).strip()
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise PermanentExecutorError(action_type, f"'{field}' is not an ISO-8601 time: '{value}'")


class CreateCalendarEventExecutor(ActionExecutor):
    action_type = ActionKind.CREATE_CALENDAR_EVENT.value
    send_invites = False

    async def execute(self, node_id: str, config: CalendarEventConfig, context: ExecutionContext) -> Dict[str, Any]:
        title = require_resolved(self.action_type, "eventTitle", config.event_title)
        start = _parse_time(self.action_type, "eventStart", config.event_start)
        end = _parse_time(self.action_type, "eventEnd", config.event_end)
        if end <= start:
            raise PermanentExecutorError(self.action_type, "eventEnd must be after eventStart")

        attendees = [attendee.strip() for attendee in config.attendees if attendee and attendee.strip()]
        invalid = [attendee for attendee in attendees if not EMAIL_PATTERN.match(attendee)]
        if invalid:
            raise PermanentExecutorError(self.action_type, f"Invalid attendee address(es): {', '.join(invalid)}")
        if self.send_invites and not attendees:
            raise PermanentExecutorError(self.action_type, "No attendees to invite")

        event_id = await self.collaborators.calendar.create_event(
            context.tenant_id,
            config.calendar,
            title,
            config.event_description,
            start.isoformat(),
            end.isoformat(),
            attendees,
            send_invites=self.send_invites
        )
        return {"event_id": event_id, "attendees": attendees}


class SendCalendarInviteExecutor(CreateCalendarEventExecutor):
    """Same as creating an event, but the calendar sends invitations to attendees"""
    action_type = ActionKind.SEND_CALENDAR_INVITE.value
    send_invites = True
