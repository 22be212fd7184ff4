"""
Incident Service — Redis Streams サブスクライバー

incident_events ストリームをコンシューマグループで購読し、
受信したイベントをリードモデルに投影(Projection)する。

Pub/Sub と違い、Streams は処理済み (XACK) になるまでエントリを保留リストに残す。
起動時にはまず自分の保留エントリ ("0") を読み直し、その後で新着 (">") を読む。
投影に失敗したエントリは ACK しないので、一定時間後に保留リストから読み直される (at-least-once)。
run_read_model_sweeper は配信に頼らず、イベントストアとリードモデルの差を定期的に埋める。
"""

import asyncio
import logging

import redis.asyncio as aioredis

from .config import Settings
from .event_store import EventStore
from .events import decode_event
from .projections import IncidentProjector

logger = logging.getLogger(__name__)


async def handle_message(
    fields: dict[str, str],
    projector: IncidentProjector,
    event_store: EventStore,
) -> None:
    """ストリームの 1 エントリをデコードしてリードモデルに適用する。"""
    event = decode_event(
        fields["incident_id"],
        fields["sequence"],
        fields["kind"],
        fields["schema_version"],
        fields["occurred_at"],
        fields["payload"],
    )
    await projector.apply_or_catch_up(event, event_store)


async def ensure_consumer_group(redis: aioredis.Redis, stream: str, group: str) -> None:
    try:
        await redis.xgroup_create(stream, group, id="0", mkstream=True)
    except aioredis.ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise


async def run_subscriber(
    redis: aioredis.Redis,
    settings: Settings,
    projector: IncidentProjector,
    event_store: EventStore,
    shutdown_event: asyncio.Event,
    block_ms: int = 1000,
    batch_size: int = 10,
    pending_retry_s: float = 5.0,
) -> None:
    """
    shutdown_event がセットされるまでストリームを読み続ける。

    投影に失敗したエントリは保留リストに残り、pending_retry_s 秒後に "0" から読み直す。
    """
    stream = settings.event_stream
    group = settings.consumer_group
    await ensure_consumer_group(redis, stream, group)
    logger.info("Subscribed to %s as %s/%s", stream, group, settings.consumer_name)

    loop = asyncio.get_running_loop()
    # 最初は自分の保留エントリ (ID "0" 以降) を読み直し、読み切ったら新着 (">") に切り替える
    cursor = "0"
    retry_at: float | None = None
    while not shutdown_event.is_set():
        if cursor == ">" and retry_at is not None and loop.time() >= retry_at:
            cursor = "0"
            retry_at = None
        replaying = cursor != ">"
        try:
            entries = await redis.xreadgroup(
                groupname=group,
                consumername=settings.consumer_name,
                streams={stream: cursor},
                count=batch_size,
                block=None if replaying else block_ms,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Failed to read from %s", stream)
            await asyncio.sleep(1)
            continue

        messages = [m for _stream, batch in entries or [] for m in batch]
        if replaying:
            cursor = messages[-1][0] if messages else ">"

        for message_id, fields in messages:
            if not fields:
                # トリム済みのエントリ。保留リストから外すだけ
                await redis.xack(stream, group, message_id)
                continue
            try:
                await handle_message(fields, projector, event_store)
            except Exception:
                logger.exception("Failed to project stream entry %s", message_id)
                if retry_at is None:
                    retry_at = loop.time() + pending_retry_s
                continue
            await redis.xack(stream, group, message_id)
            logger.debug("Projected stream entry %s", message_id)


async def run_read_model_sweeper(
    projector: IncidentProjector,
    event_store: EventStore,
    shutdown_event: asyncio.Event,
    interval_s: float = 30.0,
) -> None:
    """
    起動直後と interval_s 秒ごとに、イベントストアより遅れているリードモデルを追いつかせる。
    発行に失敗した最後のイベントなど、後続のイベントでは回復できない遅れを拾う。
    """
    while True:
        try:
            applied = await projector.sync_all(event_store)
            if applied:
                logger.info("Read-model sweep applied %d event(s)", applied)
        except Exception:
            logger.exception("Read-model sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)
            return
        except asyncio.TimeoutError:
            continue
