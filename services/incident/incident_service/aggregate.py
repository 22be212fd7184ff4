"""
Incident Service — インシデント集約 (Incident Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

_apply_xxx メソッド: 各イベントを適用して状態を変更する
コマンドメソッド:   現在の状態でルールを検証し、新しいイベントを 1 つ生成する
"""

from collections.abc import Iterable
from datetime import datetime, timezone
from uuid import UUID

from .errors import UnknownEventError
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
from .outcomes import Rejection

CLOSABLE_STATUSES = frozenset({IncidentStatus.RESOLVED, IncidentStatus.ACKNOWLEDGED})


class IncidentAggregate:
    """
    インシデント集約 — イベントから現在の状態を再構築する。

    状態遷移:
        Open → (任意の StatusUpdated) → Resolved / Acknowledged → Closed
        Close は Resolved / Acknowledged のときだけ許可される
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.name: str = ""
        self.description: str = ""
        self.assigned_agent_id: UUID | None = None
        self.priority: Priority = Priority.LOW
        self.status: IncidentStatus = IncidentStatus.OPEN
        self.comments: list[str] = []
        self.acknowledged: bool = False
        # 永続化済みの最後のシーケンス番号 (= 追記時の expected_version)
        self.version: int = 0
        self._changes: list[IncidentEvent] = []
        self._handlers = {
            IncidentCreated: self._apply_incident_created,
            AgentAssigned: self._apply_agent_assigned,
            PrioritySet: self._apply_priority_set,
            CommentAdded: self._apply_comment_added,
            StatusUpdated: self._apply_status_updated,
            IncidentAcknowledged: self._apply_incident_acknowledged,
            IncidentClosed: self._apply_incident_closed,
        }

    # ── イベント適用メソッド ──────────────────────────

    def _apply_incident_created(self, event: IncidentCreated) -> None:
        self.id = event.incident_id
        self.name = event.name
        self.description = event.description
        self.status = IncidentStatus.OPEN
        self.priority = Priority.LOW

    def _apply_agent_assigned(self, event: AgentAssigned) -> None:
        self.assigned_agent_id = event.agent_id

    def _apply_priority_set(self, event: PrioritySet) -> None:
        self.priority = event.priority

    def _apply_comment_added(self, event: CommentAdded) -> None:
        self.comments.append(event.text)

    def _apply_status_updated(self, event: StatusUpdated) -> None:
        self.status = event.status

    def _apply_incident_acknowledged(self, _event: IncidentAcknowledged) -> None:
        self.acknowledged = True

    def _apply_incident_closed(self, _event: IncidentClosed) -> None:
        self.status = IncidentStatus.CLOSED

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event: IncidentEvent) -> None:
        """イベントの型に応じた apply メソッドを呼び出す。未知の型は失敗させる。"""
        handler = self._handlers.get(type(event))
        if handler is None:
            raise UnknownEventError(getattr(event, "kind", type(event).__name__),
                                    getattr(event, "schema_version", None))
        handler(event)

    @classmethod
    def from_events(cls, events: Iterable[IncidentEvent]) -> "IncidentAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e)
            agg.version = e.sequence
        return agg

    @classmethod
    def create(cls, incident_id: UUID, name: str, description: str) -> "IncidentAggregate":
        """新しいインシデントを起票する (IncidentCreated が未コミットで 1 件積まれる)。"""
        agg = cls()
        agg._record(IncidentCreated, incident_id=incident_id, name=name, description=description)
        return agg

    def snapshot(self) -> dict:
        """リプレイ結果の状態 (JSON に出せる形)。"""
        return {
            "id": str(self.id) if self.id else None,
            "name": self.name,
            "description": self.description,
            "assigned_agent_id": str(self.assigned_agent_id) if self.assigned_agent_id else None,
            "priority": self.priority.value,
            "status": self.status.value,
            "comments": list(self.comments),
            "acknowledged": self.acknowledged,
            "version": self.version,
        }

    # ── 未コミットイベント ───────────────────────────

    @property
    def changes(self) -> tuple[IncidentEvent, ...]:
        return tuple(self._changes)

    def mark_committed(self) -> None:
        """追記が成功したあとに呼ぶ。バッファを一括で空にしてバージョンを進める。"""
        if self._changes:
            self.version = self._changes[-1].sequence
        self._changes = []

    def _record(self, event_cls: type[IncidentEvent], **payload) -> None:
        payload.setdefault("incident_id", self.id)
        event = event_cls(
            sequence=self.version + len(self._changes) + 1,
            occurred_at=datetime.now(timezone.utc),
            **payload,
        )
        self.apply_event(event)
        self._changes.append(event)

    # ── コマンドメソッド ─────────────────────────────

    def assign_agent(self, agent_id: UUID) -> Rejection | None:
        if self.assigned_agent_id is not None:
            return Rejection(reason="Agent already assigned.")
        self._record(AgentAssigned, agent_id=agent_id)
        return None

    def set_priority(self, priority: Priority) -> Rejection | None:
        self._record(PrioritySet, priority=priority)
        return None

    def add_comment(self, text: str, author: str) -> Rejection | None:
        self._record(CommentAdded, text=text, author=author)
        return None

    def update_status(self, status: IncidentStatus) -> Rejection | None:
        self._record(StatusUpdated, status=status)
        return None

    def acknowledge(self) -> Rejection | None:
        self._record(IncidentAcknowledged)
        return None

    def close(self) -> Rejection | None:
        if self.status not in CLOSABLE_STATUSES:
            return Rejection(reason="Cannot close an unresolved or unacknowledged incident.")
        self._record(IncidentClosed)
        return None
