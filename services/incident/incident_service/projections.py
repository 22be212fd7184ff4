"""
Incident Service — イベント投影 (Projection)

CQRS の Read 側: イベントストアにコミット済みのイベントを
incidents_read_model テーブルに投影する。

配信は at-least-once なので、同じイベントが何度届いても結果は変わらない (冪等)。
  - IncidentCreated: INSERT ... ON CONFLICT DO NOTHING
  - それ以外:       last_sequence = sequence - 1 の行だけを UPDATE
UPDATE が 1 行も当たらなければ、行の last_sequence を見て
「重複 (無視)」か「順序違反 (OutOfOrderEventError)」かを判定する。
"""

import logging
from collections.abc import Callable
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import OutOfOrderEventError, PersistenceError, UnknownEventError
from .event_store import EventStore
from .events import (
    AgentAssigned,
    CommentAdded,
    IncidentAcknowledged,
    IncidentClosed,
    IncidentCreated,
    IncidentEvent,
    IncidentStatus,
    Priority,
    PrioritySet,
    StatusUpdated,
)

logger = logging.getLogger(__name__)


# ── イベント → 更新する列 ─────────────────────────

def _agent_assigned(event: AgentAssigned) -> dict:
    return {"assigned_agent_id": str(event.agent_id)}


def _priority_set(event: PrioritySet) -> dict:
    return {"priority": event.priority.value}


def _comment_added(event: CommentAdded) -> dict:
    # リードモデルは最新のコメントだけを持つ
    return {"last_comment": event.text}


def _status_updated(event: StatusUpdated) -> dict:
    return {"status": event.status.value}


def _incident_closed(_event: IncidentClosed) -> dict:
    return {"status": IncidentStatus.CLOSED.value}


def _no_read_model_effect(_event: IncidentEvent) -> dict:
    # Ack フラグはリードモデルに列がない。last_sequence だけ進める
    return {}


COLUMN_UPDATES: dict[type[IncidentEvent], Callable[..., dict]] = {
    AgentAssigned: _agent_assigned,
    PrioritySet: _priority_set,
    CommentAdded: _comment_added,
    StatusUpdated: _status_updated,
    IncidentClosed: _incident_closed,
    IncidentAcknowledged: _no_read_model_effect,
}


class IncidentProjector:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def apply(self, event: IncidentEvent) -> bool:
        """
        イベントをリードモデルに適用する。

        True: 行を変更した / False: 重複配信なので何もしなかった
        """
        columns_for = None
        if not isinstance(event, IncidentCreated):
            columns_for = COLUMN_UPDATES.get(type(event))
            if columns_for is None:
                raise UnknownEventError(getattr(event, "kind", type(event).__name__),
                                        getattr(event, "schema_version", None))

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    if columns_for is None:
                        applied = await self._project_incident_created(session, event)
                    else:
                        applied = await self._project_update(session, event, columns_for(event))
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Failed to project {event.kind} for incident {event.incident_id}") from exc

        if applied:
            logger.debug("Projected %s #%d for %s", event.kind, event.sequence, event.incident_id)
        else:
            logger.info("Ignored duplicate %s #%d for %s", event.kind, event.sequence, event.incident_id)
        return applied

    async def apply_or_catch_up(self, event: IncidentEvent, event_store: EventStore) -> None:
        """順序違反ならイベントストアから読み直して追いつく。"""
        try:
            await self.apply(event)
        except OutOfOrderEventError as exc:
            logger.warning("%s; catching up from the event store", exc)
            await self.catch_up(event_store, event.incident_id)

    async def catch_up(self, event_store: EventStore, incident_id: UUID) -> int:
        """
        リードモデルの last_sequence より後のイベントをイベントストアから読み直して適用する。
        配信の抜けや順序違反から回復するために使う。適用した件数を返す。
        """
        async with self._session_factory() as session:
            try:
                last_sequence = await self._last_sequence(session, incident_id)
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Failed to read projection state for {incident_id}") from exc

        applied = 0
        for event in await event_store.load(incident_id, after=last_sequence or 0):
            if await self.apply(event):
                applied += 1
        logger.info("Caught up read model for %s (%d event(s) applied)", incident_id, applied)
        return applied

    async def lagging_incidents(self) -> list[UUID]:
        """イベントストアの末尾よりリードモデルが遅れている (または行がない) インシデント。"""
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    text("""
                        SELECT e.incident_id
                        FROM incident_events e
                        LEFT JOIN incidents_read_model r ON r.id = e.incident_id
                        GROUP BY e.incident_id, r.last_sequence
                        HAVING r.last_sequence IS NULL OR MAX(e.sequence) > r.last_sequence
                    """),
                )
                rows = result.fetchall()
            except SQLAlchemyError as exc:
                raise PersistenceError("Failed to compare the read model with the event log") from exc
        return [UUID(str(row.incident_id)) for row in rows]

    async def sync_all(self, event_store: EventStore) -> int:
        """
        遅れているインシデントをすべて catch_up する。

        発行の失敗や配信の取りこぼしは、後続のイベントが来なくてもここで回復する。
        """
        applied = 0
        for incident_id in await self.lagging_incidents():
            applied += await self.catch_up(event_store, incident_id)
        return applied

    # ── 投影ハンドラ ─────────────────────────────────

    async def _project_incident_created(self, session, event: IncidentCreated) -> bool:
        result = await session.execute(
            text("""
                INSERT INTO incidents_read_model
                    (id, name, description, assigned_agent_id, priority, status,
                     last_comment, last_sequence, updated_at)
                VALUES
                    (:id, :name, :description, NULL, :priority, :status,
                     NULL, :sequence, :updated_at)
                ON CONFLICT (id) DO NOTHING
            """),
            {
                "id": str(event.incident_id),
                "name": event.name,
                "description": event.description,
                "priority": Priority.LOW.value,
                "status": IncidentStatus.OPEN.value,
                "sequence": event.sequence,
                "updated_at": event.occurred_at.isoformat(),
            },
        )
        return result.rowcount > 0

    async def _project_update(self, session, event: IncidentEvent, columns: dict) -> bool:
        assignments = "".join(f"{column} = :{column}, " for column in columns)
        result = await session.execute(
            text(f"""
                UPDATE incidents_read_model
                SET {assignments}last_sequence = :sequence, updated_at = :updated_at
                WHERE id = :id AND last_sequence = :previous
            """),
            {
                **columns,
                "id": str(event.incident_id),
                "sequence": event.sequence,
                "previous": event.sequence - 1,
                "updated_at": event.occurred_at.isoformat(),
            },
        )
        if result.rowcount > 0:
            return True

        last_sequence = await self._last_sequence(session, event.incident_id)
        if last_sequence is not None and last_sequence >= event.sequence:
            return False
        # 行がまだない (IncidentCreated より先に届いた) か、途中のイベントが抜けている
        raise OutOfOrderEventError(event.incident_id, event.sequence, last_sequence)

    @staticmethod
    async def _last_sequence(session, incident_id: UUID) -> int | None:
        result = await session.execute(
            text("SELECT last_sequence FROM incidents_read_model WHERE id = :id"),
            {"id": str(incident_id)},
        )
        return result.scalar()
