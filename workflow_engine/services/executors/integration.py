"""
Integration executors: outbound webhooks, generic API calls and Google Sheets rows.
"""
from datetime import datetime, timezone
from typing import Any, Dict
from urllib.parse import urlparse

from ...core.config import settings
from ...core.exceptions import ExecutorError, FatalExecutorError
from ...schemas.workflow import ActionKind, GoogleSheetsRowConfig, HttpActionConfig
from ..execution_context import ExecutionContext
from ..service_clients import check_response
from .base import ActionExecutor, require_resolved

SUPPORTED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


def validate_url(action_type: str, url: str) -> str:
    """A URL that can never work makes the rest of the run meaningless"""
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc or " " in url:
        raise FatalExecutorError(action_type, f"Malformed URL '{url}'")
    return url


class HttpActionExecutor(ActionExecutor):
    """Shared by `webhook` and `api_call`"""

    def timeout_for(self, config: HttpActionConfig) -> float:
        if config.timeout_ms:
            return config.timeout_ms / 1000
        return settings.HTTP_ACTION_TIMEOUT_SECONDS

    def build_body(self, config: HttpActionConfig, context: ExecutionContext) -> Any:
        return config.body

    async def execute(self, node_id: str, config: HttpActionConfig, context: ExecutionContext) -> Dict[str, Any]:
        url = validate_url(self.action_type, config.url)
        method = config.method.upper()
        if method not in SUPPORTED_METHODS:
            raise FatalExecutorError(self.action_type, f"Unsupported HTTP method: {method}")

        headers = dict(config.headers)
        headers.setdefault("Content-Type", "application/json")
        headers.setdefault("User-Agent", f"WorkflowAutomation/{context.run_id}")

        try:
            response = await self.collaborators.http.request(
                method,
                url,
                headers=headers,
                body=self.build_body(config, context),
                timeout_ms=int(self.timeout_for(config) * 1000)
            )
        except ExecutorError as e:
            raise type(e)(self.action_type, e.detail)

        check_response(self.action_type, response)
        return {
            "status_code": response.status,
            "response_data": response.body,
            "url": url,
            "method": method
        }


class WebhookExecutor(HttpActionExecutor):
    action_type = ActionKind.WEBHOOK.value

    def build_body(self, config: HttpActionConfig, context: ExecutionContext) -> Any:
        # Tenant context wrapped around the configured payload
        return {
            "tenant_id": context.tenant_id,
            "workflow_id": context.workflow_id,
            "run_id": context.run_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": config.body or {}
        }


class ApiCallExecutor(HttpActionExecutor):
    action_type = ActionKind.API_CALL.value


class GoogleSheetsAddRowExecutor(ActionExecutor):
    """Appends a row through the integrations service, which holds the tenant's Google credentials"""
    action_type = ActionKind.GOOGLE_SHEETS_ADD_ROW.value

    def timeout_for(self, config: GoogleSheetsRowConfig) -> float:
        return settings.HTTP_ACTION_TIMEOUT_SECONDS

    async def execute(self, node_id: str, config: GoogleSheetsRowConfig, context: ExecutionContext) -> Dict[str, Any]:
        spreadsheet_id = require_resolved(self.action_type, "spreadsheetId", config.spreadsheet_id)
        base_url = (self.collaborators.integrations_url or settings.INTEGRATIONS_SERVICE_URL).rstrip("/")
        url = f"{base_url}/api/v1/tenants/{context.tenant_id}/google-sheets/{spreadsheet_id}/rows"

        try:
            response = await self.collaborators.http.request(
                "POST",
                url,
                headers={"Content-Type": "application/json"},
                body={"sheet_name": config.sheet_name, "values": config.values},
                timeout_ms=int(self.timeout_for(config) * 1000)
            )
        except ExecutorError as e:
            raise type(e)(self.action_type, e.detail)

        check_response(self.action_type, response)
        body = response.body if isinstance(response.body, dict) else {}
        return {
            "spreadsheet_id": spreadsheet_id,
            "sheet_name": config.sheet_name,
            "updated_range": body.get("updated_range")
        }
