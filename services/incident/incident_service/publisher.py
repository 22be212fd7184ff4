"""
Incident Service — イベント発行

コミット済みのイベントだけをリードモデル側へ渡す。
  RedisStreamPublisher: Redis Streams に XADD (サブスクライバが非同期に投影)
  InlinePublisher:      同じプロセスでそのままプロジェクタに適用
"""

from collections.abc import Sequence
from typing import Protocol

import redis.asyncio as aioredis

from .event_store import EventStore
from .events import IncidentEvent, encode_event
from .projections import IncidentProjector


class EventPublisher(Protocol):
    async def publish(self, events: Sequence[IncidentEvent]) -> None: ...


class RedisStreamPublisher:
    def __init__(self, redis: aioredis.Redis, stream: str, max_len: int = 10_000) -> None:
        self._redis = redis
        self._stream = stream
        self._max_len = max_len

    async def publish(self, events: Sequence[IncidentEvent]) -> None:
        for event in events:
            await self._redis.xadd(
                self._stream, encode_event(event), maxlen=self._max_len, approximate=True
            )


class InlinePublisher:
    def __init__(self, projector: IncidentProjector, event_store: EventStore) -> None:
        self._projector = projector
        self._event_store = event_store

    async def publish(self, events: Sequence[IncidentEvent]) -> None:
        for event in events:
            await self._projector.apply_or_catch_up(event, self._event_store)
