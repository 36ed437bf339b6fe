"""
HTTP clients for the CRM, calendar and generic webhook collaborators.
"""
import httpx
from typing import Dict, Any, List, Optional

from ..core.config import settings
from ..core.exceptions import (
    ExecutorError, TransientExecutorError, PermanentExecutorError, FatalExecutorError
)
from ..core.logging_config import get_logger
from .collaborators import Collaborators, HttpResponse
from .messaging_publisher import get_messaging_publisher

logger = get_logger("service_clients")


def check_response(action_type: str, response: HttpResponse) -> HttpResponse:
    """5xx and 429 are retryable, other 4xx are not"""
    if response.status >= 500 or response.status == 429:
        raise TransientExecutorError(action_type, f"Upstream returned HTTP {response.status}")
    if response.status >= 400:
        raise PermanentExecutorError(action_type, f"Upstream rejected request with HTTP {response.status}")
    return response


class HttpxRequester:
    """Generic outbound HTTP used by webhook, api_call and sheets actions"""

    def __init__(self, default_timeout: Optional[float] = None):
        self.default_timeout = default_timeout or settings.HTTP_ACTION_TIMEOUT_SECONDS

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout_ms: Optional[int] = None
    ) -> HttpResponse:
        timeout = timeout_ms / 1000 if timeout_ms else self.default_timeout
        method = method.upper()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                if method in ("GET", "DELETE"):
                    response = await client.request(method, url, headers=headers, params=body or None)
                else:
                    response = await client.request(method, url, headers=headers, json=body)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise FatalExecutorError("http", f"Malformed URL '{url}': {e}")
        except httpx.TimeoutException:
            raise TransientExecutorError("http", f"{method} {url} timed out after {timeout}s")
        except httpx.RequestError as e:
            raise TransientExecutorError("http", f"{method} {url} failed: {e}")

        logger.info(f"HTTP {method} {url} -> {response.status_code}")

        if response.headers.get("content-type", "").startswith("application/json"):
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
        else:
            payload = response.text

        return HttpResponse(status=response.status_code, body=payload, headers=dict(response.headers))


class _ServiceClient:
    service_name = "service"

    def __init__(self, base_url: str, requester: Optional[HttpxRequester] = None):
        self.base_url = base_url.rstrip("/")
        self.http = requester or HttpxRequester(default_timeout=settings.EXECUTOR_TIMEOUT_SECONDS)

    async def _call(
        self,
        action_type: str,
        method: str,
        path: str,
        body: Dict[str, Any],
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = await self.http.request(method, f"{self.base_url}{path}", headers=headers, body=body)
        except ExecutorError as e:
            # Re-tag with the action that made the call, keeping the classification
            raise type(e)(action_type, e.detail)

        check_response(action_type, response)
        if not isinstance(response.body, dict) or "id" not in response.body:
            raise PermanentExecutorError(action_type, f"{self.service_name} response missing record id")
        return response.body


class CrmServiceClient(_ServiceClient):
    """CRM record store. Writes carry an Idempotency-Key so retries upsert."""
    service_name = "CRM service"

    def __init__(self, base_url: Optional[str] = None, requester: Optional[HttpxRequester] = None):
        super().__init__(base_url or settings.CRM_SERVICE_URL, requester)

    async def create_record(
        self,
        tenant_id: str,
        kind: str,
        fields: Dict[str, Any],
        idempotency_key: Optional[str] = None
    ) -> str:
        body = await self._call(
            f"create_{kind}", "POST", f"/api/v1/tenants/{tenant_id}/{kind}s", fields, idempotency_key
        )
        return str(body["id"])

    async def update_record(
        self,
        tenant_id: str,
        kind: str,
        record_id: str,
        fields: Dict[str, Any],
        idempotency_key: Optional[str] = None
    ) -> str:
        body = await self._call(
            f"update_{kind}", "PATCH", f"/api/v1/tenants/{tenant_id}/{kind}s/{record_id}", fields, idempotency_key
        )
        return str(body["id"])

    async def add_note(
        self,
        tenant_id: str,
        target_id: str,
        text: str,
        idempotency_key: Optional[str] = None
    ) -> str:
        body = await self._call(
            "add_note", "POST", f"/api/v1/tenants/{tenant_id}/notes",
            {"target_id": target_id, "text": text}, idempotency_key
        )
        return str(body["id"])


class CalendarServiceClient(_ServiceClient):
    """Calendar bridge for Google / Outlook calendars connected by the tenant"""
    service_name = "Calendar service"

    def __init__(self, base_url: Optional[str] = None, requester: Optional[HttpxRequester] = None):
        super().__init__(base_url or settings.CALENDAR_SERVICE_URL, requester)

    async def create_event(
        self,
        tenant_id: str,
        calendar: str,
        title: str,
        description: Optional[str],
        start: str,
        end: str,
        attendees: List[str],
        send_invites: bool = False
    ) -> str:
        action_type = "send_calendar_invite" if send_invites else "create_calendar_event"
        body = await self._call(action_type, "POST", f"/api/v1/tenants/{tenant_id}/events", {
            "calendar": calendar,
            "title": title,
            "description": description,
            "start": start,
            "end": end,
            "attendees": attendees,
            "send_invites": send_invites
        })
        return str(body["id"])


def build_default_collaborators() -> Collaborators:
    """Production wiring: RabbitMQ for messaging, HTTP for everything else"""
    return Collaborators(
        messaging=get_messaging_publisher(),
        crm=CrmServiceClient(),
        calendar=CalendarServiceClient(),
        http=HttpxRequester(),
        integrations_url=settings.INTEGRATIONS_SERVICE_URL
    )
