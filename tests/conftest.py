"""
Pytest configuration and shared fixtures for workflow engine tests
"""
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Settings are read at import time: point the engine at in-memory SQLite first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENVIRONMENT", "test")

# Add parent directory to path so we can import workflow_engine modules
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from workflow_engine.core.database import Base, SessionLocal, engine
from workflow_engine.core.exceptions import TransientExecutorError
from workflow_engine.models import Workflow, WorkflowRun  # noqa: F401
from workflow_engine.schemas.execution import TriggerEvent
from workflow_engine.services.collaborators import Collaborators, HttpResponse
from workflow_engine.services.executors import RetryPolicy, build_executor_registry
from workflow_engine.services.graph_interpreter import GraphInterpreter


class FakeMessaging:
    """Records every message; `failures` makes the next N calls raise a transient error"""

    def __init__(self, failures: int = 0):
        self.sent: List[Dict[str, Any]] = []
        self.failures = failures
        self.calls = 0

    def _next(self, channel: str, **fields) -> str:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientExecutorError(channel, "gateway unavailable")
        message_id = f"msg-{len(self.sent) + 1}"
        self.sent.append({"channel": channel, "message_id": message_id, **fields})
        return message_id

    async def send_sms(self, tenant_id, to, body):
        return self._next("sms", tenant_id=tenant_id, to=to, body=body)

    async def send_email(self, tenant_id, to, subject, html, attachments=None):
        return self._next("email", tenant_id=tenant_id, to=to, subject=subject, html=html)

    async def post_slack_message(self, tenant_id, channel, text):
        return self._next("slack", tenant_id=tenant_id, to=channel, body=text)

    async def place_call(self, tenant_id, agent_id, phone_number):
        return self._next("call", tenant_id=tenant_id, to=phone_number, agent_id=agent_id)


class FakeCrm:
    """Upserts by idempotency key, like the CRM service"""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Dict[str, Any]] = []

    def _upsert(self, kind: str, fields: Dict[str, Any], key: Optional[str], record_id: Optional[str] = None) -> str:
        self.calls.append({"kind": kind, "fields": fields, "key": key, "record_id": record_id})
        record_id = record_id or f"{kind}-{len(self.records) + 1}"
        existing = self.records.get(key) if key else None
        if existing:
            return existing["id"]
        self.records[key or record_id] = {"id": record_id, "kind": kind, **fields}
        return record_id

    async def create_record(self, tenant_id, kind, fields, idempotency_key=None):
        return self._upsert(kind, fields, idempotency_key)

    async def update_record(self, tenant_id, kind, record_id, fields, idempotency_key=None):
        return self._upsert(kind, fields, idempotency_key, record_id)

    async def add_note(self, tenant_id, target_id, text, idempotency_key=None):
        return self._upsert("note", {"target_id": target_id, "text": text}, idempotency_key)


class FakeCalendar:
    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def create_event(self, tenant_id, calendar, title, description, start, end, attendees, send_invites=False):
        event_id = f"evt-{len(self.events) + 1}"
        self.events.append({
            "id": event_id, "title": title, "start": start, "end": end,
            "attendees": attendees, "send_invites": send_invites
        })
        return event_id


class FakeHttp:
    """Returns queued responses (or raises queued exceptions) in order; defaults to 200"""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.requests: List[Dict[str, Any]] = []

    async def request(self, method, url, headers=None, body=None, timeout_ms=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "body": body, "timeout_ms": timeout_ms})
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return HttpResponse(status=200, body={"ok": True})


class FakeAbortRegistry:
    def __init__(self):
        self.flags = set()

    def request_abort(self, run_id: str) -> bool:
        self.flags.add(run_id)
        return True

    def is_aborted(self, run_id: str) -> bool:
        return run_id in self.flags

    def clear(self, run_id: str):
        self.flags.discard(run_id)


@pytest.fixture
def fast_retry():
    """Three attempts without backoff waits"""
    return RetryPolicy(max_attempts=3, multiplier=0, max_wait=0)


@pytest.fixture
def collaborators():
    return Collaborators(
        messaging=FakeMessaging(),
        crm=FakeCrm(),
        calendar=FakeCalendar(),
        http=FakeHttp(),
        integrations_url="http://integrations.test"
    )


@pytest.fixture
def abort_registry():
    return FakeAbortRegistry()


@pytest.fixture
def make_interpreter(collaborators, fast_retry, abort_registry):
    def _make(**kwargs):
        executors = build_executor_registry(collaborators, fast_retry)
        kwargs.setdefault("abort_registry", abort_registry)
        return GraphInterpreter(executors, **kwargs)
    return _make


@pytest.fixture
def call_event():
    return TriggerEvent(
        type="call_completed",
        agent_type="sales",
        call_status="completed",
        lead_qualified=True,
        sentiment="positive",
        duration_seconds=240,
        payload={
            "lead_name": "Ada Lovelace",
            "lead_phone": "+14155550100",
            "lead_email": "ada@example.com",
            "lead_id": "lead-42"
        }
    )


@pytest.fixture
def db_session():
    """Fresh in-memory schema per test"""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_session):
    return SessionLocal
