from __future__ import annotations

from datetime import datetime
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from detector.database import Base, create_session_factory
from detector.models import Resource
from detector.services.alerter import AlerterService
from detector.services.ledger import IssueLedger
from detector.services.notifier import SlackNotifier

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


class WebhookRecorder:
    """httpx transport that records webhook posts and answers with a fixed status."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def webhook() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def alerter(webhook: WebhookRecorder) -> AlerterService:
    notifier = SlackNotifier("https://hooks.example.test/T000/B000", transport=webhook.transport)
    return AlerterService(notifier)


@pytest.fixture
def ledger(alerter: AlerterService) -> IssueLedger:
    return IssueLedger(alerter)


async def add_resource(
    session_factory,
    *,
    identifier: str = "res-1",
    url: str = "https://example.test/health",
    connecting_ip: Optional[str] = None,
    deleted: Optional[datetime] = None,
    next_scan: Optional[datetime] = None,
) -> int:
    async with session_factory() as session:
        resource = Resource(
            identifier=identifier,
            url=url,
            connecting_ip=connecting_ip,
            deleted=deleted,
            next_scan=next_scan,
        )
        session.add(resource)
        await session.commit()
        return resource.id
