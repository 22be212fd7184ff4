"""Tests for IncidentAggregate: fold and command methods."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import ClassVar
from uuid import uuid4

import pytest

from incident_service.aggregate import IncidentAggregate
from incident_service.errors import UnknownEventError
from incident_service.events import (
    AgentAssigned,
    CommentAdded,
    IncidentAcknowledged,
    IncidentClosed,
    IncidentCreated,
    IncidentEvent,
    IncidentStatus,
    Priority,
    StatusUpdated,
)
from incident_service.outcomes import Rejection


def _committed(agg: IncidentAggregate) -> IncidentAggregate:
    agg.mark_committed()
    return agg


@pytest.fixture
def incident() -> IncidentAggregate:
    return _committed(IncidentAggregate.create(uuid4(), "Disk full", "/var is full"))


class TestCreate:
    def test_defaults(self) -> None:
        incident_id = uuid4()
        agg = IncidentAggregate.create(incident_id, "Disk full", "/var is full")
        assert agg.id == incident_id
        assert agg.name == "Disk full"
        assert agg.status is IncidentStatus.OPEN
        assert agg.priority is Priority.LOW
        assert agg.assigned_agent_id is None
        assert agg.acknowledged is False
        assert agg.version == 0
        assert len(agg.changes) == 1
        assert isinstance(agg.changes[0], IncidentCreated)
        assert agg.changes[0].sequence == 1

    def test_mark_committed_advances_version_and_clears_buffer(self) -> None:
        agg = IncidentAggregate.create(uuid4(), "n", "d")
        agg.mark_committed()
        assert agg.version == 1
        assert agg.changes == ()


class TestCommands:
    def test_sequences_follow_buffer(self, incident) -> None:
        incident.set_priority(Priority.HIGH)
        incident.add_comment("investigating", "ops")
        assert [e.sequence for e in incident.changes] == [2, 3]
        assert incident.version == 1

    def test_assign_agent_twice(self, incident) -> None:
        first, second = uuid4(), uuid4()
        assert incident.assign_agent(first) is None
        rejection = incident.assign_agent(second)
        assert isinstance(rejection, Rejection)
        assert incident.assigned_agent_id == first
        assert len(incident.changes) == 1

    def test_close_requires_resolved_or_acknowledged_status(self, incident) -> None:
        for status in (IncidentStatus.OPEN, IncidentStatus.IN_PROGRESS):
            incident.update_status(status)
            _committed(incident)
            rejection = incident.close()
            assert isinstance(rejection, Rejection)
            assert incident.status is status
            assert incident.changes == ()

    @pytest.mark.parametrize("status", [IncidentStatus.RESOLVED, IncidentStatus.ACKNOWLEDGED])
    def test_close_succeeds(self, incident, status) -> None:
        incident.update_status(status)
        assert incident.close() is None
        assert incident.status is IncidentStatus.CLOSED
        assert isinstance(incident.changes[-1], IncidentClosed)

    def test_close_twice(self, incident) -> None:
        incident.update_status(IncidentStatus.RESOLVED)
        assert incident.close() is None
        _committed(incident)
        assert isinstance(incident.close(), Rejection)

    def test_acknowledge_sets_flag_not_status(self, incident) -> None:
        incident.acknowledge()
        assert incident.acknowledged is True
        assert incident.status is IncidentStatus.OPEN

    def test_comments_keep_history(self, incident) -> None:
        incident.add_comment("first", "a")
        incident.add_comment("second", "b")
        assert incident.comments == ["first", "second"]


class TestFold:
    def test_replay_reproduces_state(self, incident) -> None:
        agent = uuid4()
        incident.assign_agent(agent)
        incident.set_priority(Priority.CRITICAL)
        incident.add_comment("investigating", "ops")
        incident.update_status(IncidentStatus.RESOLVED)
        incident.acknowledge()
        incident.close()

        created = IncidentCreated(
            incident_id=incident.id, sequence=1, occurred_at=datetime.now(timezone.utc),
            name=incident.name, description=incident.description,
        )
        replayed = IncidentAggregate.from_events([created, *incident.changes])

        assert replayed.id == incident.id
        assert replayed.assigned_agent_id == agent
        assert replayed.priority is Priority.CRITICAL
        assert replayed.comments == ["investigating"]
        assert replayed.acknowledged is True
        assert replayed.status is IncidentStatus.CLOSED
        assert replayed.version == 7
        assert replayed.changes == ()

    def test_last_status_wins(self) -> None:
        incident_id = uuid4()
        now = datetime.now(timezone.utc)
        events = [
            IncidentCreated(incident_id=incident_id, sequence=1, occurred_at=now, name="n", description="d"),
            StatusUpdated(incident_id=incident_id, sequence=2, occurred_at=now, status=IncidentStatus.RESOLVED),
            StatusUpdated(incident_id=incident_id, sequence=3, occurred_at=now, status=IncidentStatus.IN_PROGRESS),
        ]
        assert IncidentAggregate.from_events(events).status is IncidentStatus.IN_PROGRESS

    def test_unknown_event_type_fails(self) -> None:
        class IncidentMerged(IncidentEvent):
            kind: ClassVar[str] = "IncidentMerged"

        incident_id = uuid4()
        now = datetime.now(timezone.utc)
        events = [
            IncidentCreated(incident_id=incident_id, sequence=1, occurred_at=now, name="n", description="d"),
            IncidentMerged(incident_id=incident_id, sequence=2, occurred_at=now),
        ]
        with pytest.raises(UnknownEventError):
            IncidentAggregate.from_events(events)

    def test_fold_handles_every_declared_kind(self) -> None:
        incident_id = uuid4()
        now = datetime.now(timezone.utc)
        events = [
            IncidentCreated(incident_id=incident_id, sequence=1, occurred_at=now, name="n", description="d"),
            AgentAssigned(incident_id=incident_id, sequence=2, occurred_at=now, agent_id=uuid4()),
            CommentAdded(incident_id=incident_id, sequence=3, occurred_at=now, text="t", author="a"),
            IncidentAcknowledged(incident_id=incident_id, sequence=4, occurred_at=now),
            IncidentClosed(incident_id=incident_id, sequence=5, occurred_at=now),
        ]
        agg = IncidentAggregate.from_events(events)
        assert agg.status is IncidentStatus.CLOSED
        assert agg.version == 5
