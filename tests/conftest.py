"""
Pytest configuration and fixtures
"""
import json
from datetime import datetime, timedelta
from typing import AsyncGenerator

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from drivesync.database import Base
from drivesync import models  # noqa: F401
from drivesync.models import MobileSession
from drivesync.services.push_gateway import ExpoPushClient

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

PUSH_URL = "https://push.test/send"
RECEIPTS_URL = "https://push.test/receipts"


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory over a fresh in-memory database."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_session(session_factory):
    """Insert a MobileSession directly, bypassing registration."""
    async def _make(user_id="user-1", platform="ios", push_token=None, is_active=True, **kwargs):
        now = datetime.utcnow()
        async with session_factory() as db:
            session = MobileSession(
                user_id=user_id,
                device_id=kwargs.pop("device_id", f"device-{push_token or user_id}"),
                platform=platform,
                push_token=push_token,
                is_active=is_active,
                created_at=kwargs.pop("created_at", now),
                last_active_at=now,
                expires_at=kwargs.pop("expires_at", now + timedelta(days=30)),
                **kwargs,
            )
            db.add(session)
            await db.commit()
            await db.refresh(session)
            return session
    return _make


class FakeExpo:
    """Records gateway requests and answers from configurable callbacks."""

    def __init__(self):
        self.send_calls = []
        self.receipt_calls = []
        self.ticket_for = lambda message, index: {"status": "ok", "id": f"ticket-{message['to']}"}
        self.fail_send_call = set()  # 1-based call numbers answered with HTTP 500
        self.receipts = {}
        self.fail_receipts = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if str(request.url) == PUSH_URL:
            self.send_calls.append(body)
            if len(self.send_calls) in self.fail_send_call:
                return httpx.Response(500, text="upstream error")
            tickets = [self.ticket_for(message, i) for i, message in enumerate(body)]
            return httpx.Response(200, json={"data": tickets})

        self.receipt_calls.append(body["ids"])
        if self.fail_receipts:
            return httpx.Response(503, text="unavailable")
        found = {rid: self.receipts[rid] for rid in body["ids"] if rid in self.receipts}
        return httpx.Response(200, json={"data": found})


@pytest.fixture
def fake_expo() -> FakeExpo:
    return FakeExpo()


@pytest.fixture
def gateway(fake_expo) -> ExpoPushClient:
    return ExpoPushClient(
        push_url=PUSH_URL,
        receipts_url=RECEIPTS_URL,
        access_token="",
        timeout=5,
        transport=httpx.MockTransport(fake_expo.handler),
    )
