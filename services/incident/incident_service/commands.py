"""
Incident Service — コマンドハンドラ (CQRS の Write 側)

各コマンドは 1 サイクルで:
  1. イベントストアから集約を再構築 (読み込んだバージョンを記録)
  2. 集約のコマンドメソッドでルールを検証し、イベントを生成
  3. 読み込んだバージョンを expected_version にして追記
  4. コミット済みイベントを発行 (リードモデルへ)

追記で競合した場合は、別の書き込みが割り込んだということなので
ロードからやり直す (回数制限あり)。ビジネスルール違反はやり直さない。
"""

import logging
from collections.abc import Callable
from uuid import UUID, uuid4

from .aggregate import IncidentAggregate
from .errors import VersionConflictError
from .event_store import EventStore
from .events import IncidentStatus, Priority
from .outcomes import CommandOutcome, Rejection
from .publisher import EventPublisher

logger = logging.getLogger(__name__)


class IncidentCommandService:
    def __init__(
        self,
        event_store: EventStore,
        publisher: EventPublisher,
        max_attempts: int = 3,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._event_store = event_store
        self._publisher = publisher
        self._max_attempts = max_attempts

    # ── コマンド ─────────────────────────────────────

    async def create_incident(self, name: str, description: str) -> CommandOutcome:
        """インシデント起票コマンド。新しい ID を採番して IncidentCreated を追記する。"""
        incident_id = uuid4()
        agg = IncidentAggregate.create(incident_id, name, description)
        try:
            await self._commit(agg)
        except VersionConflictError:
            # 採番したばかりの ID なので通常は起きない
            logger.warning("Incident id %s already has history", incident_id)
            return CommandOutcome.conflict(incident_id, 1)
        logger.info("Created incident %s", incident_id)
        return CommandOutcome.accepted(incident_id, agg.version)

    async def assign_agent(self, incident_id: UUID, agent_id: UUID) -> CommandOutcome:
        return await self._execute(incident_id, lambda agg: agg.assign_agent(agent_id))

    async def set_priority(self, incident_id: UUID, priority: Priority) -> CommandOutcome:
        return await self._execute(incident_id, lambda agg: agg.set_priority(priority))

    async def add_comment(self, incident_id: UUID, text: str, author: str) -> CommandOutcome:
        return await self._execute(incident_id, lambda agg: agg.add_comment(text, author))

    async def update_status(self, incident_id: UUID, status: IncidentStatus) -> CommandOutcome:
        return await self._execute(incident_id, lambda agg: agg.update_status(status))

    async def acknowledge(self, incident_id: UUID) -> CommandOutcome:
        return await self._execute(incident_id, lambda agg: agg.acknowledge())

    async def close(self, incident_id: UUID) -> CommandOutcome:
        return await self._execute(incident_id, lambda agg: agg.close())

    # ── load → 検証 → 追記 ───────────────────────────

    async def _execute(
        self,
        incident_id: UUID,
        command: Callable[[IncidentAggregate], Rejection | None],
    ) -> CommandOutcome:
        for attempt in range(1, self._max_attempts + 1):
            events = await self._event_store.load(incident_id)
            if not events:
                return CommandOutcome.not_found(incident_id)

            agg = IncidentAggregate.from_events(events)
            rejection = command(agg)
            if rejection is not None:
                logger.info("Rejected command on %s: %s", incident_id, rejection.reason)
                return CommandOutcome.invalid_state(incident_id, rejection.reason)

            try:
                await self._commit(agg)
            except VersionConflictError as exc:
                logger.warning("%s (attempt %d/%d)", exc, attempt, self._max_attempts)
                continue
            return CommandOutcome.accepted(incident_id, agg.version)

        return CommandOutcome.conflict(incident_id, self._max_attempts)

    async def _commit(self, agg: IncidentAggregate) -> None:
        changes = agg.changes
        if not changes:
            return
        await self._event_store.append(agg.id, agg.version, changes)
        agg.mark_committed()

        # イベントストアが正。発行に失敗してもコマンドは成功扱いにし、
        # リードモデルは subscriber.run_read_model_sweeper の定期 sync_all で追いつく
        try:
            await self._publisher.publish(changes)
        except Exception:
            logger.exception("Failed to publish %d event(s) for incident %s", len(changes), agg.id)
