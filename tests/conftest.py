"""
Shared fixtures: in-memory stores, a scripted rendering agent and a
recording notification transport.
"""

import asyncio
from typing import List, Optional, Sequence

import pytest

from app.config import Settings
from app.models.order import Order, OrderStatus, PaymentStatus
from app.services.event_log import InMemoryEventLog
from app.services.generation.agent import ArtifactRef, Credentials, RenderingAgent, Session
from app.services.monitoring.error_tracking import ErrorSink
from app.services.order_store import InMemoryOrderStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeRenderingAgent(RenderingAgent):
    """
    Scripted agent.

    artifact_after: number of empty checks before the artifact shows up
    (None = never, which makes polling time out).
    """

    def __init__(
        self,
        artifact_after: Optional[int] = 0,
        artifact_url: str = "https://videos.example.com/v/abc123.mp4",
        login_error: Optional[Exception] = None,
        option_error: Optional[Exception] = None,
        prompt_error: Optional[Exception] = None,
        unverified: Sequence[str] = (),
        started_by: Optional[str] = "click",
        check_error_on: Sequence[int] = (),
        gate: Optional[asyncio.Event] = None
    ):
        self.artifact_after = artifact_after
        self.artifact_url = artifact_url
        self.login_error = login_error
        self.option_error = option_error
        self.prompt_error = prompt_error
        self.unverified = set(unverified)
        self.started_by = started_by
        self.check_error_on = set(check_error_on)
        self.gate = gate

        self.opened: List[Session] = []
        self.closed: List[str] = []
        self.applied: List[tuple] = []
        self.prompts: List[str] = []
        self.triggers: List[str] = []
        self.checks = 0
        self.keep_alives = 0
        self.purges = 0
        self.active = 0
        self.max_active = 0

    async def open_session(self, label=None) -> Session:
        session = Session(label=label)
        self.opened.append(session)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        return session

    async def login(self, session, credentials: Credentials) -> None:
        if self.login_error is not None:
            raise self.login_error

    async def apply_option(self, session, option, value) -> None:
        if self.option_error is not None:
            raise self.option_error
        self.applied.append((option, value))

    async def verify_option(self, session, option, value) -> bool:
        return option not in self.unverified

    async def enter_prompt(self, session, prompt) -> None:
        if self.prompt_error is not None:
            raise self.prompt_error
        self.prompts.append(prompt)

    def trigger_strategies(self):
        return ("click", "evaluate_click", "mouse_click", "dispatch_event")

    async def trigger(self, session, strategy) -> bool:
        self.triggers.append(strategy)
        return strategy == self.started_by

    async def check_artifact(self, session, match_key) -> Optional[ArtifactRef]:
        if self.gate is not None:
            await self.gate.wait()
        self.checks += 1
        if self.checks in self.check_error_on:
            raise RuntimeError("page evaluation failed")
        if self.artifact_after is not None and self.checks > self.artifact_after:
            return ArtifactRef(url=self.artifact_url)
        return None

    async def keep_alive(self, session) -> None:
        self.keep_alives += 1

    async def purge_caches(self, session) -> None:
        self.purges += 1

    async def close_session(self, session) -> None:
        self.closed.append(session.session_id)
        self.active -= 1


class RecordingTransport:
    """Fails the first `failures` sends, then records deliveries"""

    def __init__(self, failures: int = 0, error: Optional[Exception] = None):
        self.failures = failures
        self.error = error or ConnectionError("smtp relay unavailable")
        self.attempts: List[tuple] = []
        self.sent: List[tuple] = []

    async def send(self, recipient: str, payload: dict) -> str:
        self.attempts.append((recipient, payload))
        if len(self.attempts) <= self.failures:
            raise self.error
        self.sent.append((recipient, payload))
        return f"delivery-{len(self.sent)}"


def build_order(order_id: str = "O1", **fields) -> Order:
    values = {
        "payment_status": PaymentStatus.PAYMENT_COMPLETED,
        "status": OrderStatus.PENDING_GENERATION,
        "email": f"{order_id.lower()}@example.com",
        "prompt": "A red fox running through fresh snow at sunrise",
        "resolution": "720",
        "duration": "10",
        "aspect_ratio": "16:9",
    }
    values.update(fields)
    return Order(order_id=order_id, **values)


@pytest.fixture
def make_order():
    return build_order


@pytest.fixture
def order_store():
    return InMemoryOrderStore()


@pytest.fixture
def event_log():
    return InMemoryEventLog()


@pytest.fixture
def error_sink():
    return ErrorSink()


@pytest.fixture
def make_agent():
    return FakeRenderingAgent


@pytest.fixture
def make_transport():
    return RecordingTransport


@pytest.fixture
def credentials():
    return Credentials(email="studio@example.com", password="hunter2")


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url=None,
        environment="testing",
        webhook_secret="whsec-test",
        api_key="api-test-key",
        sora_email="studio@example.com",
        sora_password="hunter2",
        generation_poll_interval_seconds=0.01,
        generation_timeout_seconds=0.2,
        notification_retry_delay_seconds=0.0,
        resend_api_key=None
    )
