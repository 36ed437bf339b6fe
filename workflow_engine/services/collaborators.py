"""
Interfaces of the external systems the action executors call into.

Concrete implementations live in messaging_publisher.py and service_clients.py.
Implementations classify their own failures by raising TransientExecutorError
or PermanentExecutorError.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol


@dataclass
class HttpResponse:
    status: int
    body: Any = None
    headers: Optional[Dict[str, str]] = None


class MessagingGateway(Protocol):
    async def send_sms(self, tenant_id: str, to: str, body: str) -> str: ...

    async def send_email(self, tenant_id: str, to: str, subject: str, html: str,
                         attachments: Optional[List[str]] = None) -> str: ...

    async def post_slack_message(self, tenant_id: str, channel: str, text: str) -> str: ...

    async def place_call(self, tenant_id: str, agent_id: str, phone_number: str) -> str: ...


class CrmStore(Protocol):
    async def create_record(self, tenant_id: str, kind: str, fields: Dict[str, Any],
                            idempotency_key: Optional[str] = None) -> str: ...

    async def update_record(self, tenant_id: str, kind: str, record_id: str, fields: Dict[str, Any],
                            idempotency_key: Optional[str] = None) -> str: ...

    async def add_note(self, tenant_id: str, target_id: str, text: str,
                       idempotency_key: Optional[str] = None) -> str: ...


class CalendarGateway(Protocol):
    async def create_event(self, tenant_id: str, calendar: str, title: str, description: Optional[str],
                           start: str, end: str, attendees: List[str], send_invites: bool = False) -> str: ...


class HttpRequester(Protocol):
    async def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
                      body: Any = None, timeout_ms: Optional[int] = None) -> HttpResponse: ...


@dataclass
class Collaborators:
    messaging: MessagingGateway
    crm: CrmStore
    calendar: CalendarGateway
    http: HttpRequester
    integrations_url: str = ""
