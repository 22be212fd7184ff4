"""Shared fixtures for the incident service test suite."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from incident_service.config import Settings
from incident_service.db import create_engine, create_schema, create_session_factory
from incident_service.event_store import EventStore
from incident_service.events import IncidentCreated
from incident_service.projections import IncidentProjector


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'incidents.db'}",
        projection_mode="inline",
        create_schema=True,
    )


@pytest_asyncio.fixture
async def session_factory(settings):
    engine = create_engine(settings)
    await create_schema(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def event_store(session_factory) -> EventStore:
    return EventStore(session_factory)


@pytest.fixture
def projector(session_factory) -> IncidentProjector:
    return IncidentProjector(session_factory)


def make_created(incident_id: UUID | None = None, name: str = "Disk full") -> IncidentCreated:
    return IncidentCreated(
        incident_id=incident_id or uuid4(),
        sequence=1,
        occurred_at=datetime.now(timezone.utc),
        name=name,
        description="/var is full",
    )
