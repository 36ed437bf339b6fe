"""
Per-run execution context.

Holds the triggering event, tenant variables and the outputs of the nodes
visited so far. Lookups walk the layers in a fixed order:
loop locals, node outputs, event fields, tenant variables, system values.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from ..schemas.execution import TriggerEvent

MISSING = object()


def _walk_path(value: Any, keys) -> Any:
    for key in keys:
        if isinstance(value, dict):
            if key not in value:
                return MISSING
            value = value[key]
        elif isinstance(value, (list, tuple)) and key.isdigit():
            index = int(key)
            if index >= len(value):
                return MISSING
            value = value[index]
        else:
            return MISSING
    return value


def event_fields(event: TriggerEvent) -> Dict[str, Any]:
    """Flatten an event into the field map templates see (payload wins)"""
    fields = {
        "event_type": event.type,
        "agent_type": event.agent_type,
        "call_status": event.call_status,
        "lead_qualified": event.lead_qualified,
        "appointment_booked": event.appointment_booked,
        "payment_captured": event.payment_captured,
        "sentiment": event.sentiment,
        "duration_seconds": event.duration_seconds,
    }
    fields = {key: value for key, value in fields.items() if value is not None}
    fields.update(event.custom_fields or {})
    fields.update(event.payload or {})
    return fields


@dataclass
class ExecutionContext:
    run_id: str
    event: TriggerEvent
    workflow_id: Optional[str] = None
    tenant_id: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    locals: Dict[str, Any] = field(default_factory=dict)
    system: Dict[str, Any] = field(default_factory=dict)
    _event_fields: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @classmethod
    def create(
        cls,
        run_id: str,
        event: TriggerEvent,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> "ExecutionContext":
        now = now or datetime.now(timezone.utc)
        system = {
            "timestamp": now.isoformat(),
            "date": now.strftime("%Y-%m-%d"),
            "time": now.strftime("%H:%M:%S"),
            "run_id": run_id,
            "workflow_id": workflow_id,
            "tenant_id": tenant_id,
        }
        return cls(
            run_id=run_id,
            event=event,
            workflow_id=workflow_id,
            tenant_id=tenant_id,
            variables=dict(variables or {}),
            system=system,
        )

    @property
    def fields(self) -> Dict[str, Any]:
        if self._event_fields is None:
            self._event_fields = event_fields(self.event)
        return self._event_fields

    def child(self, **bindings) -> "ExecutionContext":
        """Context for a loop iteration. Outputs stay shared with the parent run."""
        local_scope = dict(self.locals)
        local_scope.update(bindings)
        return ExecutionContext(
            run_id=self.run_id,
            event=self.event,
            workflow_id=self.workflow_id,
            tenant_id=self.tenant_id,
            variables=self.variables,
            outputs=self.outputs,
            locals=local_scope,
            system=self.system,
            _event_fields=self._event_fields,
        )

    def record_output(self, node_id: str, output: Optional[Dict[str, Any]]):
        self.outputs[node_id] = output if output is not None else {}

    def lookup(self, path: str) -> Tuple[bool, Any]:
        """Resolve a dotted path. Returns (found, value)."""
        keys = [key for key in path.strip().split(".") if key]
        if not keys:
            return False, None

        head, rest = keys[0], keys[1:]
        layers = (
            self.locals,
            self.outputs,
            self.fields,
            self.variables,
            {"_system": self.system},
        )
        for layer in layers:
            if head in layer:
                value = _walk_path(layer[head], rest)
                if value is not MISSING:
                    return True, value
        return False, None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "tenant_id": self.tenant_id,
            "event": self.event.model_dump(mode="json", by_alias=True),
            "variables": self.variables,
            "outputs": self.outputs,
            "locals": self.locals,
            "system": self.system,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionContext":
        return cls(
            run_id=data["run_id"],
            workflow_id=data.get("workflow_id"),
            tenant_id=data.get("tenant_id"),
            event=TriggerEvent.model_validate(data.get("event") or {"type": "manual"}),
            variables=data.get("variables") or {},
            outputs=data.get("outputs") or {},
            locals=data.get("locals") or {},
            system=data.get("system") or {},
        )
