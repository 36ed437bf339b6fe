"""
Variable resolver for workflow execution.
Handles {{placeholder}} interpolation against an execution context.
"""
import re
import json
from typing import Any, List

from ..core.logging_config import get_logger
from .execution_context import ExecutionContext

logger = get_logger("variable_resolver")


class VariableResolver:
    """Resolves {{path}} placeholders in action configuration"""

    # Pattern for variable interpolation {{variable_name}} or {{node.sub.path}}
    VARIABLE_PATTERN = re.compile(r'\{\{\s*([A-Za-z_][\w\-]*(?:\.[\w\-]+)*)\s*\}\}')

    @staticmethod
    def resolve(template: str, context: ExecutionContext) -> str:
        """
        Resolve placeholders in a template string.

        Args:
            template: String containing {{variable}} placeholders
            context: Execution context to resolve against

        Returns:
            Template with resolvable placeholders replaced. Unresolved
            placeholders are left verbatim and a template with unbalanced
            braces is returned unchanged.
        """
        if not template or "{{" not in template and "}}" not in template:
            return template

        if not VariableResolver.is_balanced(template):
            logger.warning("Malformed placeholder, leaving template unchanged", template=template[:100])
            return template

        def replace_variable(match):
            found, value = context.lookup(match.group(1))
            if not found:
                return match.group(0)
            return VariableResolver.format_value(value)

        # Single pass: substituted values are never re-scanned
        return VariableResolver.VARIABLE_PATTERN.sub(replace_variable, template)

    @staticmethod
    def resolve_value(value: Any, context: ExecutionContext) -> Any:
        """Resolve every string inside a nested config structure"""
        if isinstance(value, str):
            return VariableResolver.resolve(value, context)
        if isinstance(value, dict):
            return {key: VariableResolver.resolve_value(item, context) for key, item in value.items()}
        if isinstance(value, list):
            return [VariableResolver.resolve_value(item, context) for item in value]
        return value

    @staticmethod
    def format_value(value: Any) -> str:
        """String form of a context value as it is inserted into a template"""
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (list, tuple)):
            return ", ".join(VariableResolver.format_value(item) for item in value)
        if isinstance(value, dict):
            return json.dumps(value, default=str)
        return str(value)

    @staticmethod
    def is_balanced(template: str) -> bool:
        """True when every '{{' is closed by '}}' before the next one opens"""
        open_placeholder = False
        i = 0
        while i < len(template):
            if template.startswith("{{", i):
                if open_placeholder:
                    return False
                open_placeholder = True
                i += 2
            elif template.startswith("}}", i):
                if not open_placeholder:
                    return False
                open_placeholder = False
                i += 2
            else:
                i += 1
        return not open_placeholder

    @staticmethod
    def unresolved_placeholders(text: Any) -> List[str]:
        """Placeholders still present after resolution, for required-field checks"""
        if not isinstance(text, str):
            return []
        return [match.group(1) for match in VariableResolver.VARIABLE_PATTERN.finditer(text)]

    @staticmethod
    def strip_placeholder(path: str) -> str:
        """'{{ leads }}' -> 'leads'; plain paths are returned as they are"""
        match = VariableResolver.VARIABLE_PATTERN.fullmatch(path.strip())
        return match.group(1) if match else path.strip()
