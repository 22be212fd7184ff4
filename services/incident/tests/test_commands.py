"""Tests for IncidentCommandService: outcomes, retries, end-to-end flow."""

from __future__ import annotations

from uuid import uuid4

import pytest

from incident_service.aggregate import IncidentAggregate
from incident_service.commands import IncidentCommandService
from incident_service.errors import PersistenceError
from incident_service.event_store import EventStore
from incident_service.events import IncidentStatus, Priority
from incident_service.outcomes import OutcomeKind
from incident_service.publisher import InlinePublisher
from incident_service.queries import get_incident


class RacingEventStore(EventStore):
    """最初の n 回の追記の直前に、別の書き込みを割り込ませる"""

    def __init__(self, session_factory, races: int) -> None:
        super().__init__(session_factory)
        self.races = races
        self.appends = 0

    async def append(self, incident_id, expected_version, events):
        self.appends += 1
        if self.races > 0 and expected_version > 0:
            self.races -= 1
            rival = IncidentAggregate.from_events(await self.load(incident_id))
            rival.add_comment("rival", "other-writer")
            await super().append(incident_id, rival.version, rival.changes)
        return await super().append(incident_id, expected_version, events)


class RecordingPublisher:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published = []

    async def publish(self, events) -> None:
        if self.fail:
            raise ConnectionError("redis down")
        self.published.extend(events)


class FailingInlinePublisher(InlinePublisher):
    """fail_next が立っている間の 1 回だけ発行に失敗する"""

    fail_next = False

    async def publish(self, events) -> None:
        if self.fail_next:
            self.fail_next = False
            raise ConnectionError("redis down")
        await super().publish(events)


class BrokenEventStore(EventStore):
    async def append(self, incident_id, expected_version, events):
        raise PersistenceError("database unavailable")


@pytest.fixture
def service(event_store, projector) -> IncidentCommandService:
    return IncidentCommandService(event_store, InlinePublisher(projector, event_store))


async def _view(session_factory, incident_id):
    async with session_factory() as session:
        return await get_incident(session, incident_id)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_incident_lifecycle(self, service, session_factory) -> None:
        created = await service.create_incident("Disk full", "/var is full")
        assert created.kind is OutcomeKind.ACCEPTED
        x = created.incident_id

        assert (await service.add_comment(x, "investigating", "ops")).ok
        assert (await _view(session_factory, x)).last_comment == "investigating"

        assert (await service.set_priority(x, Priority.HIGH)).ok
        assert (await _view(session_factory, x)).priority is Priority.HIGH

        assert (await service.update_status(x, IncidentStatus.RESOLVED)).ok
        assert (await _view(session_factory, x)).status is IncidentStatus.RESOLVED

        closed = await service.close(x)
        assert closed.ok
        assert closed.version == 5
        assert (await _view(session_factory, x)).status is IncidentStatus.CLOSED

        again = await service.close(x)
        assert again.kind is OutcomeKind.INVALID_STATE
        assert (await _view(session_factory, x)).last_sequence == 5

    @pytest.mark.asyncio
    async def test_acknowledged_incident_can_be_closed(self, service, event_store) -> None:
        x = (await service.create_incident("n", "d")).incident_id
        assert (await service.acknowledge(x)).ok
        assert (await service.update_status(x, IncidentStatus.ACKNOWLEDGED)).ok
        assert (await service.close(x)).ok
        agg = IncidentAggregate.from_events(await event_store.load(x))
        assert agg.acknowledged is True
        assert agg.status is IncidentStatus.CLOSED


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_not_found(self, service) -> None:
        missing = uuid4()
        for outcome in [
            await service.assign_agent(missing, uuid4()),
            await service.set_priority(missing, Priority.HIGH),
            await service.add_comment(missing, "t", "a"),
            await service.update_status(missing, IncidentStatus.RESOLVED),
            await service.acknowledge(missing),
            await service.close(missing),
        ]:
            assert outcome.kind is OutcomeKind.NOT_FOUND
            assert outcome.incident_id == missing

    @pytest.mark.asyncio
    async def test_assign_agent_twice(self, service, event_store, session_factory) -> None:
        x = (await service.create_incident("n", "d")).incident_id
        first, second = uuid4(), uuid4()
        assert (await service.assign_agent(x, first)).ok
        outcome = await service.assign_agent(x, second)
        assert outcome.kind is OutcomeKind.INVALID_STATE
        assert outcome.reason == "Agent already assigned."
        assert IncidentAggregate.from_events(await event_store.load(x)).assigned_agent_id == first
        assert (await _view(session_factory, x)).assigned_agent_id == first

    @pytest.mark.asyncio
    async def test_close_open_incident_writes_nothing(self, service, event_store) -> None:
        x = (await service.create_incident("n", "d")).incident_id
        assert (await service.close(x)).kind is OutcomeKind.INVALID_STATE
        assert len(await event_store.load(x)) == 1


class TestRetries:
    @pytest.mark.asyncio
    async def test_conflict_is_retried_from_fresh_load(self, session_factory, projector) -> None:
        store = RacingEventStore(session_factory, races=1)
        service = IncidentCommandService(store, InlinePublisher(projector, store))
        x = (await service.create_incident("n", "d")).incident_id

        outcome = await service.set_priority(x, Priority.CRITICAL)
        assert outcome.ok
        assert outcome.version == 3
        assert store.appends == 3

        agg = IncidentAggregate.from_events(await store.load(x))
        assert agg.comments == ["rival"]
        assert agg.priority is Priority.CRITICAL
        # 割り込んだ書き込みは発行されていないが、catch_up で追いつく
        view = await _view(session_factory, x)
        assert view.last_comment == "rival"
        assert view.priority is Priority.CRITICAL

    @pytest.mark.asyncio
    async def test_business_rule_failure_after_conflict_is_not_retried(self, session_factory, projector) -> None:
        store = RacingEventStore(session_factory, races=0)
        service = IncidentCommandService(store, InlinePublisher(projector, store))
        x = (await service.create_incident("n", "d")).incident_id
        store.races = 1

        # 1 回目は割り込みで競合して再試行される。2 回目はルール違反なので追記もしない
        assert (await service.assign_agent(x, uuid4())).ok
        appends = store.appends
        assert (await service.assign_agent(x, uuid4())).kind is OutcomeKind.INVALID_STATE
        assert store.appends == appends

    @pytest.mark.asyncio
    async def test_exhausted_retries_report_conflict(self, session_factory) -> None:
        store = RacingEventStore(session_factory, races=10)
        publisher = RecordingPublisher()
        service = IncidentCommandService(store, publisher, max_attempts=3)
        x = (await service.create_incident("n", "d")).incident_id

        outcome = await service.update_status(x, IncidentStatus.RESOLVED)
        assert outcome.kind is OutcomeKind.CONFLICT
        agg = IncidentAggregate.from_events(await store.load(x))
        assert agg.status is IncidentStatus.OPEN
        assert agg.comments == ["rival", "rival", "rival"]
        assert [e.kind for e in publisher.published] == ["IncidentCreated"]

    def test_max_attempts_must_be_positive(self, event_store) -> None:
        with pytest.raises(ValueError):
            IncidentCommandService(event_store, RecordingPublisher(), max_attempts=0)


class TestFailures:
    @pytest.mark.asyncio
    async def test_publish_failure_does_not_fail_committed_command(self, event_store) -> None:
        service = IncidentCommandService(event_store, RecordingPublisher(fail=True))
        outcome = await service.create_incident("n", "d")
        assert outcome.ok
        assert len(await event_store.load(outcome.incident_id)) == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_propagates(self, session_factory) -> None:
        publisher = RecordingPublisher()
        service = IncidentCommandService(BrokenEventStore(session_factory), publisher)
        with pytest.raises(PersistenceError):
            await service.create_incident("n", "d")
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_lost_final_publish_is_repaired_by_sync_all(self, event_store, projector, session_factory) -> None:
        publisher = FailingInlinePublisher(projector, event_store)
        service = IncidentCommandService(event_store, publisher)
        x = (await service.create_incident("n", "d")).incident_id
        assert (await service.update_status(x, IncidentStatus.RESOLVED)).ok

        publisher.fail_next = True
        assert (await service.close(x)).ok
        # 後続のイベントがないので、配信経路だけでは Closed にならない
        view = await _view(session_factory, x)
        assert view.status is IncidentStatus.RESOLVED
        assert await projector.lagging_incidents() == [x]

        assert await projector.sync_all(event_store) == 1
        view = await _view(session_factory, x)
        assert view.status is IncidentStatus.CLOSED
        assert view.last_sequence == 3
        assert await projector.lagging_incidents() == []
        assert await projector.sync_all(event_store) == 0
