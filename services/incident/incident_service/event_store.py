"""
Incident Service — イベントストア

Event Sourcing の中核コンポーネント。
イベントを DB に追記し、集約の再構築に使う。

順序はインシデントごとのシーケンス番号だけで決まる (時刻は使わない)。
追記は compare-and-append:
  1. 同じトランザクション内で現在の末尾シーケンスを読み、expected_version と比較
  2. 同時に追記した別の書き込みは主キー (incident_id, sequence) の UNIQUE 違反で検知
どちらの場合も VersionConflictError となり、何も書き込まれない。
"""

import logging
from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import PersistenceError, VersionConflictError
from .events import IncidentEvent, decode_event, encode_event

logger = logging.getLogger(__name__)


class EventStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        incident_id: UUID,
        expected_version: int,
        events: Sequence[IncidentEvent],
    ) -> int:
        """
        イベントをまとめて追記し、新しい末尾バージョンを返す。

        すべて書き込まれるか、何も書き込まれないかのどちらか。
        """
        if not events:
            return expected_version
        for offset, event in enumerate(events, start=1):
            if event.incident_id != incident_id:
                raise ValueError(f"Event {event.kind} belongs to {event.incident_id}, not {incident_id}")
            if event.sequence != expected_version + offset:
                raise ValueError(
                    f"Event {event.kind} has sequence {event.sequence}, "
                    f"expected {expected_version + offset}"
                )

        rows = [encode_event(e) for e in events]
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    current = await self._current_version(session, incident_id)
                    if current != expected_version:
                        raise VersionConflictError(incident_id, expected_version, current)
                    await session.execute(
                        text("""
                            INSERT INTO incident_events
                                (incident_id, sequence, kind, schema_version, occurred_at, payload)
                            VALUES
                                (:incident_id, :sequence, :kind, :schema_version, :occurred_at, :payload)
                        """),
                        rows,
                    )
            except IntegrityError as exc:
                raise VersionConflictError(incident_id, expected_version) from exc
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Failed to append events for incident {incident_id}") from exc

        new_version = expected_version + len(rows)
        logger.debug("Appended %d event(s) to %s (version %d)", len(rows), incident_id, new_version)
        return new_version

    async def load(self, incident_id: UUID, after: int = 0) -> list[IncidentEvent]:
        """
        指定したインシデントのイベントをシーケンス順に読み出す。
        集約を再構築（リプレイ）するために使う。after より後のものだけに絞れる。
        """
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    text("""
                        SELECT sequence, kind, schema_version, occurred_at, payload
                        FROM incident_events
                        WHERE incident_id = :incident_id AND sequence > :after
                        ORDER BY sequence ASC
                    """),
                    {"incident_id": str(incident_id), "after": after},
                )
                rows = result.fetchall()
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Failed to load events for incident {incident_id}") from exc

        # 1 件でもデコードできなければ UnknownEventError でロード全体を中断する
        return [
            decode_event(
                incident_id,
                row.sequence,
                row.kind,
                row.schema_version,
                row.occurred_at,
                row.payload,
            )
            for row in rows
        ]

    async def load_all(self) -> list[dict]:
        """すべてのイベントを生の行として返す（デバッグ用）。"""
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    text("""
                        SELECT incident_id, sequence, kind, schema_version, occurred_at, payload
                        FROM incident_events
                        ORDER BY incident_id ASC, sequence ASC
                    """),
                )
                rows = result.fetchall()
            except SQLAlchemyError as exc:
                raise PersistenceError("Failed to load the event log") from exc
        return [
            {
                "incident_id": row.incident_id,
                "sequence": row.sequence,
                "kind": row.kind,
                "schema_version": row.schema_version,
                "occurred_at": row.occurred_at,
                "payload": row.payload,
            }
            for row in rows
        ]

    @staticmethod
    async def _current_version(session, incident_id: UUID) -> int:
        result = await session.execute(
            text("SELECT MAX(sequence) FROM incident_events WHERE incident_id = :incident_id"),
            {"incident_id": str(incident_id)},
        )
        return result.scalar() or 0
