"""
Unit tests for placeholder resolution and the execution context lookup order
"""
from datetime import datetime, timezone

import pytest

from workflow_engine.schemas.execution import TriggerEvent
from workflow_engine.services.execution_context import ExecutionContext
from workflow_engine.services.variable_resolver import VariableResolver


@pytest.fixture
def context():
    event = TriggerEvent(
        type="call_completed",
        sentiment="positive",
        custom_fields={"source": "ads"},
        payload={"lead_name": "Ada", "lead": {"phone": "+14155550100", "tags": ["vip", "new"]}}
    )
    ctx = ExecutionContext.create(
        run_id="run-1",
        event=event,
        workflow_id="wf-1",
        tenant_id="tenant-1",
        variables={"business_name": "Acme", "lead_name": "from-variables"},
        now=datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
    )
    ctx.record_output("create_lead", {"record_id": "lead-7"})
    return ctx


class TestResolve:

    def test_resolves_event_and_variables(self, context):
        result = VariableResolver.resolve("Hi {{lead_name}}, thanks for calling {{business_name}}", context)
        assert result == "Hi Ada, thanks for calling Acme"

    def test_event_payload_shadows_tenant_variables(self, context):
        assert VariableResolver.resolve("{{lead_name}}", context) == "Ada"

    def test_node_output_and_nested_paths(self, context):
        assert VariableResolver.resolve("{{create_lead.record_id}}", context) == "lead-7"
        assert VariableResolver.resolve("{{lead.phone}}", context) == "+14155550100"
        assert VariableResolver.resolve("{{lead.tags.1}}", context) == "new"

    def test_unresolved_placeholder_is_left_verbatim(self, context):
        assert VariableResolver.resolve("Hello {{missing.value}}!", context) == "Hello {{missing.value}}!"

    def test_malformed_template_is_returned_unchanged(self, context):
        template = "Hello {{lead_name"
        assert VariableResolver.resolve(template, context) == template
        assert VariableResolver.resolve("}} {{lead_name}}", context) == "}} {{lead_name}}"

    def test_resolution_is_single_pass(self, context):
        context.record_output("echo", {"text": "{{business_name}}"})
        assert VariableResolver.resolve("{{echo.text}}", context) == "{{business_name}}"

    def test_whitespace_inside_braces(self, context):
        assert VariableResolver.resolve("{{ lead_name }}", context) == "Ada"

    def test_system_values(self, context):
        assert VariableResolver.resolve("{{_system.date}} {{_system.time}}", context) == "2026-03-01 09:30:00"
        assert VariableResolver.resolve("{{_system.run_id}}", context) == "run-1"

    def test_value_formatting(self, context):
        context.record_output("flags", {"ok": True, "none": None, "items": ["a", "b"], "data": {"k": 1}})
        assert VariableResolver.resolve("{{flags.ok}}", context) == "true"
        assert VariableResolver.resolve("[{{flags.none}}]", context) == "[]"
        assert VariableResolver.resolve("{{flags.items}}", context) == "a, b"
        assert VariableResolver.resolve("{{flags.data}}", context) == '{"k": 1}'

    def test_plain_text_untouched(self, context):
        assert VariableResolver.resolve("no placeholders", context) == "no placeholders"
        assert VariableResolver.resolve("", context) == ""


class TestResolveValue:

    def test_nested_structures(self, context):
        config = {
            "to": "{{lead.phone}}",
            "fields": {"name": "{{lead_name}}", "score": 5},
            "list": ["{{source}}", 3]
        }
        resolved = VariableResolver.resolve_value(config, context)
        assert resolved == {
            "to": "+14155550100",
            "fields": {"name": "Ada", "score": 5},
            "list": ["ads", 3]
        }
        # Original config is not mutated
        assert config["to"] == "{{lead.phone}}"

    def test_whole_string_placeholder_is_stringified(self, context):
        context.record_output("picked", {"ids": [1, 2], "count": 7})
        resolved = VariableResolver.resolve_value({"ids": "{{picked.ids}}", "count": "{{picked.count}}"}, context)
        assert resolved == {"ids": "1, 2", "count": "7"}

    def test_unresolved_placeholders_listed(self):
        assert VariableResolver.unresolved_placeholders("{{a}} and {{b.c}}") == ["a", "b.c"]
        assert VariableResolver.unresolved_placeholders(12) == []

    def test_strip_placeholder(self):
        assert VariableResolver.strip_placeholder("{{ leads }}") == "leads"
        assert VariableResolver.strip_placeholder("payload.items") == "payload.items"


class TestExecutionContext:

    def test_loop_locals_win(self, context):
        child = context.child(item={"name": "Grace"}, index=2)
        assert VariableResolver.resolve("{{item.name}} #{{index}}", child) == "Grace #2"
        # Outputs are shared with the parent run
        child.record_output("inner", {"x": 1})
        assert context.lookup("inner.x") == (True, 1)

    def test_round_trips_through_dict(self, context):
        restored = ExecutionContext.from_dict(context.to_dict())
        assert restored.lookup("create_lead.record_id") == (True, "lead-7")
        assert restored.lookup("lead_name") == (True, "Ada")
        assert restored.lookup("_system.tenant_id") == (True, "tenant-1")

    def test_lookup_miss(self, context):
        assert context.lookup("nope") == (False, None)
        assert context.lookup("lead.tags.9") == (False, None)
