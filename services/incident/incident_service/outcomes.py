"""
Incident Service — コマンドの結果

NotFound / InvalidState / Conflict は呼び出し側に返す「結果」であり、例外ではない。
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class Rejection(BaseModel):
    """集約のビジネスルール違反。状態も未コミットイベントも変更されていない。"""
    model_config = ConfigDict(frozen=True)

    reason: str


class OutcomeKind(str, Enum):
    ACCEPTED = "accepted"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    CONFLICT = "conflict"


class CommandOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    incident_id: UUID
    version: int | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.ACCEPTED

    @classmethod
    def accepted(cls, incident_id: UUID, version: int) -> "CommandOutcome":
        return cls(kind=OutcomeKind.ACCEPTED, incident_id=incident_id, version=version)

    @classmethod
    def not_found(cls, incident_id: UUID) -> "CommandOutcome":
        return cls(kind=OutcomeKind.NOT_FOUND, incident_id=incident_id, reason="Incident not found")

    @classmethod
    def invalid_state(cls, incident_id: UUID, reason: str) -> "CommandOutcome":
        return cls(kind=OutcomeKind.INVALID_STATE, incident_id=incident_id, reason=reason)

    @classmethod
    def conflict(cls, incident_id: UUID, attempts: int) -> "CommandOutcome":
        return cls(
            kind=OutcomeKind.CONFLICT,
            incident_id=incident_id,
            reason=f"Concurrent modification, gave up after {attempts} attempts",
        )
