"""Pytest configuration and shared fixtures.

Store-backed tests run against an in-memory SQLite database created from the
same SQLAlchemy models as production. Every test gets a fresh database.
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from uuid import uuid4

os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from shipwatch.escalation.application import EscalationNotifier, StaticConfigProvider
from shipwatch.escalation.domain import EngineConfig
from shipwatch.escalation.infrastructure.models import (
    EscalationContactModel,
    IssueModel,
    ShipmentModel,
)
from shipwatch.escalation.services import build_escalation_services
from shipwatch.infrastructure.database import build_session_maker, create_tables


T0 = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock callable that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingSink:
    """Notification sink that keeps what it was given."""

    def __init__(self):
        self.messages: List[Tuple[str, dict]] = []
        self.fail = False

    async def publish(self, channel: str, message: dict) -> None:
        if self.fail:
            raise RuntimeError("sink down")
        self.messages.append((channel, message))

    @property
    def channels(self) -> List[str]:
        return [channel for channel, _ in self.messages]


class Seeder:
    """Inserts rows owned by other services (shipments, issues, contacts)."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def _add(self, model):
        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
        return model.id

    async def shipment(
        self,
        status: str = "in_transit",
        service_level: str = "standard",
        is_vip: bool = False,
        promised_delivery_at: Optional[datetime] = None,
        sla_risk_score: float = 0.0,
        tracking_number: Optional[str] = None,
    ) -> str:
        return await self._add(ShipmentModel(
            tracking_number=tracking_number or f"TRK-{uuid4().hex[:10]}",
            status=status,
            service_level=service_level,
            is_vip=is_vip,
            promised_delivery_at=promised_delivery_at,
            sla_risk_score=sla_risk_score,
            created_at=T0,
            updated_at=T0,
        ))

    async def issue(self, shipment_id: str, severity_score: float, status: str = "open") -> str:
        return await self._add(IssueModel(
            shipment_id=shipment_id,
            severity_score=severity_score,
            status=status,
            issue_type="delay",
            created_at=T0,
        ))

    async def contact(
        self,
        user_id: str,
        timeout_seconds: Optional[int],
        position: int = 0,
        channel_type: str = "slack",
        is_active: bool = True,
    ) -> str:
        return await self._add(EscalationContactModel(
            user_id=user_id,
            position=position,
            channel_type=channel_type,
            timeout_seconds=timeout_seconds,
            is_active=is_active,
            created_at=T0,
        ))

    async def ladder(self, timeouts=(300, 900, 1800)) -> List[str]:
        """One contact per timeout, inserted longest timeout first."""
        ids = {}
        for position, timeout in enumerate(sorted(timeouts, reverse=True)):
            ids[timeout] = await self.contact(f"user-{timeout}", timeout, position=position)
        return [ids[t] for t in timeouts]


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_maker(engine)


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def config_provider(engine_config) -> StaticConfigProvider:
    return StaticConfigProvider(engine_config)


@pytest.fixture
def notifier(sink, clock) -> EscalationNotifier:
    return EscalationNotifier(sink, clock)


@pytest.fixture
def open_services(session_factory, config_provider, notifier, clock):
    """Services bound to a fresh session: ``async with open_services() as svc``."""

    @asynccontextmanager
    async def _open():
        async with session_factory() as session:
            yield build_escalation_services(session, config_provider, notifier, clock)

    return _open
