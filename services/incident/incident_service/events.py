"""
Incident Service — イベント定義

Event Sourcing では、ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。

各イベントクラスは kind と schema_version を持つ。
保存済みイベントは (kind, schema_version) の組でデコーダを選ぶので、
ペイロードの形が変わっても古い履歴をリプレイできる。
"""

import json
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import UnknownEventError


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class IncidentStatus(str, Enum):
    OPEN = "Open"
    IN_PROGRESS = "InProgress"
    RESOLVED = "Resolved"
    ACKNOWLEDGED = "Acknowledged"
    CLOSED = "Closed"


ENVELOPE_FIELDS = {"incident_id", "sequence", "occurred_at"}


class IncidentEvent(BaseModel):
    """全イベント共通のエンベロープ"""
    model_config = ConfigDict(frozen=True)

    kind: ClassVar[str]
    schema_version: ClassVar[int] = 1

    incident_id: UUID
    sequence: int
    occurred_at: datetime

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude=ENVELOPE_FIELDS)


class IncidentCreated(IncidentEvent):
    """インシデントが起票された"""
    kind: ClassVar[str] = "IncidentCreated"

    name: str
    description: str


class AgentAssigned(IncidentEvent):
    """担当者が割り当てられた"""
    kind: ClassVar[str] = "AgentAssigned"

    agent_id: UUID


class PrioritySet(IncidentEvent):
    """優先度が設定された"""
    kind: ClassVar[str] = "PrioritySet"

    priority: Priority


class CommentAdded(IncidentEvent):
    """コメントが追加された (v2: comment → text に改名)"""
    kind: ClassVar[str] = "CommentAdded"
    schema_version: ClassVar[int] = 2

    text: str
    author: str


class StatusUpdated(IncidentEvent):
    """ステータスが更新された"""
    kind: ClassVar[str] = "StatusUpdated"

    status: IncidentStatus


class IncidentAcknowledged(IncidentEvent):
    """インシデントが確認(Ack)された"""
    kind: ClassVar[str] = "IncidentAcknowledged"


class IncidentClosed(IncidentEvent):
    """インシデントがクローズされた"""
    kind: ClassVar[str] = "IncidentClosed"


EVENT_TYPES: tuple[type[IncidentEvent], ...] = (
    IncidentCreated,
    AgentAssigned,
    PrioritySet,
    CommentAdded,
    StatusUpdated,
    IncidentAcknowledged,
    IncidentClosed,
)


# ── ペイロードのアップキャスト ───────────────────

def _current(data: dict) -> dict:
    return data


def _comment_added_v1(data: dict) -> dict:
    # v1 は本文を "comment" キーで保存していた
    upgraded = {k: v for k, v in data.items() if k != "comment"}
    upgraded["text"] = data.get("comment")
    return upgraded


DECODERS: dict[tuple[str, int], tuple[type[IncidentEvent], Callable[[dict], dict]]] = {
    ("IncidentCreated", 1): (IncidentCreated, _current),
    ("AgentAssigned", 1): (AgentAssigned, _current),
    ("PrioritySet", 1): (PrioritySet, _current),
    ("CommentAdded", 1): (CommentAdded, _comment_added_v1),
    ("CommentAdded", 2): (CommentAdded, _current),
    ("StatusUpdated", 1): (StatusUpdated, _current),
    ("IncidentAcknowledged", 1): (IncidentAcknowledged, _current),
    ("IncidentClosed", 1): (IncidentClosed, _current),
}


# ── エンコード / デコード ─────────────────────────

def encode_event(event: IncidentEvent) -> dict[str, Any]:
    """イベントを保存・配信用の行 (イベントストアの列と同じ形) に変換する。"""
    return {
        "incident_id": str(event.incident_id),
        "sequence": event.sequence,
        "kind": event.kind,
        "schema_version": event.schema_version,
        "occurred_at": event.occurred_at.isoformat(),
        "payload": json.dumps(event.payload()),
    }


def decode_event(
    incident_id: UUID | str,
    sequence: int | str,
    kind: str,
    schema_version: int | str,
    occurred_at: datetime | str,
    payload: str | dict,
) -> IncidentEvent:
    """
    保存済みの行をイベントに戻す。

    (kind, schema_version) が未知、またはペイロードが壊れている場合は
    UnknownEventError。読み飛ばすと状態が履歴とずれるので、必ず失敗させる。
    """
    try:
        version = int(schema_version)
    except (TypeError, ValueError) as exc:
        raise UnknownEventError(kind, None, f"bad schema version {schema_version!r}") from exc

    entry = DECODERS.get((kind, version))
    if entry is None:
        raise UnknownEventError(kind, version)
    event_cls, upcast = entry

    try:
        data = json.loads(payload) if isinstance(payload, str) else dict(payload)
        if not isinstance(data, dict):
            raise ValueError("payload is not an object")
        fields = upcast(data)
        return event_cls.model_validate({
            **fields,
            "incident_id": incident_id,
            "sequence": sequence,
            "occurred_at": occurred_at,
        })
    except (ValueError, ValidationError) as exc:
        raise UnknownEventError(kind, version, str(exc)) from exc
