"""
Incident Service — テーブル定義

incident_events:      イベントストア (追記のみ)。主キー (incident_id, sequence) が楽観的ロックを兼ねる。
incidents_read_model: イベントから投影した非正規化ビュー。last_sequence で冪等性と順序を判定する。
"""

from sqlalchemy import Column, Integer, MetaData, PrimaryKeyConstraint, String, Table, Text

metadata = MetaData()

incident_events = Table(
    "incident_events",
    metadata,
    Column("incident_id", String(36), nullable=False),
    Column("sequence", Integer, nullable=False),
    Column("kind", String(64), nullable=False),
    Column("schema_version", Integer, nullable=False),
    # ISO-8601 (UTC)。順序付けには使わない
    Column("occurred_at", String(40), nullable=False),
    Column("payload", Text, nullable=False),
    PrimaryKeyConstraint("incident_id", "sequence", name="pk_incident_events"),
)

incidents_read_model = Table(
    "incidents_read_model",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("description", String(500), nullable=False),
    Column("assigned_agent_id", String(36), nullable=True),
    Column("priority", String(16), nullable=False),
    Column("status", String(16), nullable=False),
    Column("last_comment", Text, nullable=True),
    Column("last_sequence", Integer, nullable=False),
    Column("updated_at", String(40), nullable=False),
)
