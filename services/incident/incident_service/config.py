"""
Incident Service — 設定

接続先などの設定は環境変数から一度だけ読み込み、
Settings としてイベントストア・プロジェクタのコンストラクタに明示的に渡す。
"""

import os
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str
    redis_url: str = "redis://localhost:6379"
    event_stream: str = "incident_events"
    consumer_group: str = "incident-read-model"
    consumer_name: str = "projector-1"
    # stream: Redis Streams 経由で非同期に投影 / inline: 追記直後に同じリクエスト内で投影
    projection_mode: Literal["stream", "inline"] = "stream"
    max_append_attempts: int = Field(default=3, ge=1)
    stream_max_len: int = Field(default=10_000, ge=1)
    pending_retry_s: float = Field(default=5.0, ge=0)
    sweep_interval_s: float = Field(default=30.0, gt=0)
    create_schema: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """環境変数から設定を組み立てる。DATABASE_URL だけは必須。"""
        env = os.environ if environ is None else environ
        values: dict[str, str] = {"database_url": env["DATABASE_URL"]}
        optional = {
            "redis_url": "REDIS_URL",
            "event_stream": "INCIDENT_EVENT_STREAM",
            "consumer_group": "INCIDENT_CONSUMER_GROUP",
            "consumer_name": "INCIDENT_CONSUMER_NAME",
            "projection_mode": "PROJECTION_MODE",
            "max_append_attempts": "MAX_APPEND_ATTEMPTS",
            "stream_max_len": "STREAM_MAX_LEN",
            "pending_retry_s": "PENDING_RETRY_SECONDS",
            "sweep_interval_s": "READ_MODEL_SWEEP_SECONDS",
            "create_schema": "CREATE_SCHEMA",
            "log_level": "LOG_LEVEL",
        }
        for field, var in optional.items():
            if var in env:
                values[field] = env[var]
        return cls(**values)
