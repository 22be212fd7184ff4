"""
Incident Service — クエリハンドラ (CQRS の Read 側)

読み取りはリードモデル(Read Model)から行う。
リードモデルはイベントから投影(Projection)された非正規化データで、
ポイント検索に最適化されている。イベントストアより遅れることはあっても、先行することはない。
"""

from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .events import IncidentStatus, Priority


class IncidentView(BaseModel):
    id: UUID
    name: str
    description: str
    assigned_agent_id: UUID | None = None
    priority: Priority
    status: IncidentStatus
    last_comment: str | None = None
    last_sequence: int
    updated_at: str


def _to_view(row) -> IncidentView:
    return IncidentView(
        id=row.id,
        name=row.name,
        description=row.description,
        assigned_agent_id=row.assigned_agent_id,
        priority=row.priority,
        status=row.status,
        last_comment=row.last_comment,
        last_sequence=row.last_sequence,
        updated_at=row.updated_at,
    )


async def get_incident(session: AsyncSession, incident_id: UUID) -> IncidentView | None:
    """リードモデルからインシデントを取得する。"""
    result = await session.execute(
        text("SELECT * FROM incidents_read_model WHERE id = :id"),
        {"id": str(incident_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return _to_view(row)


async def list_incidents(session: AsyncSession) -> list[IncidentView]:
    """全インシデントをリードモデルから取得する (最近更新されたもの順)。"""
    result = await session.execute(
        text("SELECT * FROM incidents_read_model ORDER BY updated_at DESC"),
    )
    return [_to_view(row) for row in result.fetchall()]
