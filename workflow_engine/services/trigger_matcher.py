from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from apscheduler.triggers.cron import CronTrigger

from ..schemas.workflow import (
    WorkflowDefinition, WorkflowTrigger, TriggerConditions, TriggerSchedule, TriggerType
)
from ..schemas.execution import TriggerEvent
from ..core.logging_config import get_logger, log_workflow_trigger

logger = get_logger("trigger_matcher")

_MISSING = object()


def _in_set(allowed: Optional[List[str]], value: Optional[str]) -> bool:
    """Membership check where an absent or empty set means 'any'"""
    if not allowed:
        return True
    return value is not None and value in allowed


def _flag_matches(expected: Optional[bool], actual: Optional[bool]) -> bool:
    if expected is None:
        return True
    return actual is expected


class TriggerMatcher:
    """Decides whether an event (or a cron tick) should start a workflow run"""

    @staticmethod
    def matches(workflow: WorkflowDefinition, event: TriggerEvent) -> bool:
        """Only enabled workflows ever match. Never mutates the workflow."""
        if not workflow.enabled:
            return False
        return TriggerMatcher.matches_trigger(workflow.trigger, event)

    @staticmethod
    def matches_trigger(trigger: WorkflowTrigger, event: TriggerEvent) -> bool:
        if trigger.type == TriggerType.SCHEDULE:
            return False  # fired by due_by_schedule only
        if event.type != trigger.type.value:
            return False
        return TriggerMatcher.conditions_hold(trigger.conditions, event)

    @staticmethod
    def conditions_hold(conditions: Optional[TriggerConditions], event: TriggerEvent) -> bool:
        """All specified conditions must hold; unspecified ones are wildcards"""
        if conditions is None:
            return True

        if not _in_set(conditions.agent_types, event.agent_type):
            return False
        if not _in_set(conditions.call_status, event.call_status):
            return False
        if not _flag_matches(conditions.lead_qualified, event.lead_qualified):
            return False
        if not _flag_matches(conditions.appointment_booked, event.appointment_booked):
            return False
        if not _flag_matches(conditions.payment_captured, event.payment_captured):
            return False
        if not _in_set(conditions.sentiment, event.sentiment):
            return False

        if conditions.minimum_duration is not None:
            if event.duration_seconds is None or event.duration_seconds < conditions.minimum_duration:
                return False

        for key, expected in (conditions.custom_fields or {}).items():
            if TriggerMatcher._event_field(event, key) != expected:
                return False

        return True

    @staticmethod
    def _event_field(event: TriggerEvent, key: str) -> Any:
        if key in event.custom_fields:
            return event.custom_fields[key]
        return event.payload.get(key, _MISSING)

    @staticmethod
    def build_cron(schedule: TriggerSchedule) -> CronTrigger:
        """Build an APScheduler cron trigger. Raises ValueError for a bad expression or timezone."""
        try:
            return CronTrigger.from_crontab(schedule.expression, timezone=schedule.timezone or "UTC")
        except (ValueError, KeyError, TypeError) as e:
            raise ValueError(str(e) or "invalid cron schedule")

    @staticmethod
    def due_by_schedule(schedule: Optional[TriggerSchedule], now: datetime) -> bool:
        """
        True when the cron expression fires within the minute containing `now`.

        Evaluated once per minute by the scheduler tick; naive datetimes are UTC.
        """
        if schedule is None:
            return False
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        try:
            cron = TriggerMatcher.build_cron(schedule)
        except ValueError as e:
            logger.warning(f"Skipping invalid schedule '{schedule.expression}': {e}")
            return False

        minute_start = now.replace(second=0, microsecond=0)
        next_fire = cron.get_next_fire_time(None, minute_start)
        return next_fire is not None and next_fire == minute_start

    @staticmethod
    def find_matching(
        workflows: Iterable[WorkflowDefinition],
        event: TriggerEvent,
        tenant_id: str
    ) -> List[WorkflowDefinition]:
        """All workflows of a tenant whose trigger accepts the event"""
        matched = []
        checked = 0
        for workflow in workflows:
            checked += 1
            if TriggerMatcher.matches(workflow, event):
                matched.append(workflow)
                log_workflow_trigger(
                    tenant_id=tenant_id,
                    trigger_type=workflow.trigger.type.value,
                    event_type=event.type,
                    triggered=True,
                    workflow_id=workflow.id,
                    workflow_name=workflow.name
                )

        if not matched:
            log_workflow_trigger(
                tenant_id=tenant_id,
                trigger_type="none",
                event_type=event.type,
                triggered=False,
                reason="no_triggers_matched",
                workflows_checked=checked
            )
        return matched
