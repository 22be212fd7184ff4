"""
Incident Service — インフラ層の例外

ビジネスルール違反や NotFound は例外ではなく CommandOutcome で返す (outcomes.py)。
ここにあるのは、ストレージやイベント配信で起きる「処理を続行できない」失敗だけ。
"""

from uuid import UUID


class IncidentStoreError(Exception):
    """Incident Service のインフラ例外の基底クラス"""


class VersionConflictError(IncidentStoreError):
    """
    楽観的ロックの競合。

    読み込んだ時点のバージョンと、追記しようとした時点の末尾バージョンが一致しない
    = 別の書き込みが先に入った。コマンドサービスがロードからやり直す。
    """

    def __init__(self, incident_id: UUID, expected_version: int, actual_version: int | None = None):
        self.incident_id = incident_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        actual = "unknown" if actual_version is None else actual_version
        super().__init__(
            f"Version conflict on incident {incident_id}: "
            f"expected {expected_version}, found {actual}"
        )


class UnknownEventError(IncidentStoreError):
    """(kind, schema_version) の組を現在のコードでデコード・適用できない。"""

    def __init__(self, kind: str, schema_version: int | None = None, detail: str = ""):
        self.kind = kind
        self.schema_version = schema_version
        message = f"Unknown event kind or version: {kind} v{schema_version}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class PersistenceError(IncidentStoreError):
    """DB アクセスの一時的な失敗。部分的な書き込みは残らないので、呼び出し側で再試行できる。"""


class OutOfOrderEventError(IncidentStoreError):
    """
    リードモデルに対してイベントが順序どおりに届かなかった。

    IncidentCreated より前のイベント、またはシーケンスの抜け (gap)。
    """

    def __init__(self, incident_id: UUID, sequence: int, last_sequence: int | None):
        self.incident_id = incident_id
        self.sequence = sequence
        self.last_sequence = last_sequence
        if last_sequence is None:
            reason = "no read-model row yet"
        else:
            reason = f"read model is at sequence {last_sequence}"
        super().__init__(f"Event {sequence} for incident {incident_id} arrived out of order: {reason}")
