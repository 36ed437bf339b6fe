import yaml
import json
from typing import Dict, Any, List, Optional, Set
from pydantic import ValidationError

from ..schemas.workflow import (
    WorkflowDefinition, TriggerType, ConditionNode, LoopNode
)
from ..core.exceptions import WorkflowValidationError
from ..core.logging_config import get_logger
from .condition_evaluator import ConditionEvaluator
from .trigger_matcher import TriggerMatcher

logger = get_logger("workflow_parser")


class WorkflowParseError(WorkflowValidationError):
    """Raised when workflow definition cannot be parsed"""
    pass


class WorkflowParser:
    """Parses and validates workflow definitions from dict/YAML/JSON"""

    @staticmethod
    def parse_from_dict(definition: Dict[str, Any]) -> WorkflowDefinition:
        """Parse workflow definition from dictionary"""
        try:
            return WorkflowDefinition.model_validate(definition)
        except ValidationError as e:
            logger.error("Failed to parse workflow definition", error=str(e))
            errors = [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in e.errors()
            ]
            raise WorkflowParseError(f"Invalid workflow definition: {e}", errors)

    @staticmethod
    def parse_from_yaml(yaml_content: str) -> WorkflowDefinition:
        """Parse workflow definition from YAML string"""
        try:
            definition = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            logger.error("Failed to parse YAML content", error=str(e))
            raise WorkflowParseError(f"Invalid YAML format: {e}")
        if not isinstance(definition, dict):
            raise WorkflowParseError("Workflow YAML must contain a mapping")
        return WorkflowParser.parse_from_dict(definition)

    @staticmethod
    def parse_from_json(json_content: str) -> WorkflowDefinition:
        """Parse workflow definition from JSON string"""
        try:
            definition = json.loads(json_content)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse JSON content", error=str(e))
            raise WorkflowParseError(f"Invalid JSON format: {e}")
        if not isinstance(definition, dict):
            raise WorkflowParseError("Workflow JSON must contain an object")
        return WorkflowParser.parse_from_dict(definition)

    @staticmethod
    def validate_workflow(definition: WorkflowDefinition) -> List[str]:
        """Validate workflow definition and return list of errors"""
        errors = []

        if not definition.actions:
            errors.append("Workflow has no actions")

        # Check for duplicate node IDs
        node_ids = [node.id for node in definition.actions]
        duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
        if duplicates:
            errors.append(f"Duplicate action IDs found: {', '.join(duplicates)}")
        known_ids = set(node_ids)

        entry_nodes = [node.id for node in definition.actions if node.entry]
        if len(entry_nodes) > 1:
            errors.append(f"More than one entry action: {', '.join(entry_nodes)}")

        # Validate node references
        for node in definition.actions:
            if node.next_action and node.next_action not in known_ids:
                errors.append(f"Action '{node.id}' references non-existent action '{node.next_action}'")

            if isinstance(node, ConditionNode):
                for branch, targets in (("trueActions", node.config.true_actions),
                                        ("falseActions", node.config.false_actions)):
                    for target in targets:
                        if target not in known_ids:
                            errors.append(
                                f"Condition '{node.id}' {branch} references non-existent action '{target}'"
                            )
                errors.extend(
                    f"Condition '{node.id}': {message}"
                    for message in ConditionEvaluator.validate(node.config.condition)
                )

            if isinstance(node, LoopNode):
                if not node.config.items.strip():
                    errors.append(f"Loop '{node.id}' missing items variable path")
                if node.config.action_id not in known_ids:
                    errors.append(
                        f"Loop '{node.id}' references non-existent action '{node.config.action_id}'"
                    )

        # Schedule triggers need a valid cron expression
        trigger = definition.trigger
        if trigger.type == TriggerType.SCHEDULE and not trigger.schedule:
            errors.append("Schedule trigger missing schedule")
        if trigger.schedule:
            try:
                TriggerMatcher.build_cron(trigger.schedule)
            except ValueError as e:
                errors.append(f"Invalid schedule '{trigger.schedule.expression}': {e}")

        return errors

    @staticmethod
    def ensure_valid(definition: WorkflowDefinition):
        """Raise WorkflowValidationError listing every problem in the definition"""
        errors = WorkflowParser.validate_workflow(definition)
        if errors:
            raise WorkflowValidationError(f"Workflow validation failed: {'; '.join(errors)}", errors)

    @staticmethod
    def find_unreachable(definition: WorkflowDefinition) -> List[str]:
        """Actions that can never be visited from the entry action"""
        entry = WorkflowParser.get_entry_node(definition)
        if not entry:
            return []

        index = WorkflowParser.node_index(definition)
        seen: Set[str] = set()
        pending = [entry.id]
        while pending:
            node_id = pending.pop()
            node = index.get(node_id)
            if node is None or node_id in seen:
                continue
            seen.add(node_id)
            if node.next_action:
                pending.append(node.next_action)
            if isinstance(node, ConditionNode):
                pending.extend(node.config.true_actions)
                pending.extend(node.config.false_actions)
            if isinstance(node, LoopNode):
                pending.append(node.config.action_id)

        return [node.id for node in definition.actions if node.id not in seen]

    @staticmethod
    def get_entry_node(definition: WorkflowDefinition):
        """The action marked `entry`, otherwise the first action"""
        if not definition.actions:
            return None
        for node in definition.actions:
            if node.entry:
                return node
        return definition.actions[0]

    @staticmethod
    def node_index(definition: WorkflowDefinition) -> Dict[str, Any]:
        return {node.id: node for node in definition.actions}

    @staticmethod
    def to_dict(definition: WorkflowDefinition) -> Dict[str, Any]:
        """Convert workflow definition to its camelCase wire form"""
        return definition.model_dump(mode="json", by_alias=True, exclude_none=True)

    @staticmethod
    def to_yaml(definition: WorkflowDefinition) -> str:
        """Convert workflow definition to YAML string"""
        return yaml.dump(WorkflowParser.to_dict(definition), default_flow_style=False, sort_keys=False)

    @staticmethod
    def to_json(definition: WorkflowDefinition) -> str:
        """Convert workflow definition to JSON string"""
        return json.dumps(WorkflowParser.to_dict(definition), indent=2)


# Example workflow definitions
EXAMPLE_QUALIFIED_LEAD_FOLLOW_UP = {
    "name": "Qualified Lead Follow Up",
    "description": "Text qualified callers and queue a follow-up task",
    "enabled": True,
    "category": "follow_up",
    "trigger": {
        "type": "call_completed",
        "conditions": {"leadQualified": True}
    },
    "actions": [
        {
            "id": "thank_you_sms",
            "type": "send_sms",
            "name": "Thank the caller",
            "config": {"to": "{{lead_phone}}", "message": "Thanks for calling {{business_name}}!"},
            "nextAction": "follow_up_task"
        },
        {
            "id": "follow_up_task",
            "type": "create_task",
            "name": "Follow up",
            "config": {"taskTitle": "Follow up with {{lead_name}}", "taskPriority": "high"}
        }
    ],
    "variables": {"business_name": "Acme Plumbing"}
}

EXAMPLE_MISSED_CALL_RECOVERY = {
    "name": "Missed Call Recovery",
    "description": "Branch on call sentiment and nudge the lead again after a day",
    "enabled": True,
    "category": "lead_nurture",
    "trigger": {
        "type": "call_completed",
        "conditions": {"callStatus": ["no-answer", "failed"]}
    },
    "actions": [
        {
            "id": "check_email",
            "type": "condition",
            "config": {
                "condition": "{{lead_email}} !== ''",
                "trueActions": ["recovery_email"],
                "falseActions": ["recovery_sms"]
            },
            "nextAction": "wait_a_day"
        },
        {
            "id": "recovery_email",
            "type": "send_email",
            "config": {
                "recipient": "{{lead_email}}",
                "subject": "Sorry we missed you",
                "body": "<p>Hi {{lead_name}}, reply to book a time.</p>"
            }
        },
        {
            "id": "recovery_sms",
            "type": "send_sms",
            "config": {"to": "{{lead_phone}}", "message": "Sorry we missed your call!"}
        },
        {
            "id": "wait_a_day",
            "type": "delay",
            "config": {"duration": 1, "unit": "days"},
            "nextAction": "note"
        },
        {
            "id": "note",
            "type": "add_note",
            "config": {"targetId": "{{lead_id}}", "text": "Recovery sequence sent"}
        }
    ]
}
