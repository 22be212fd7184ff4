"""
Incident Service — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
Event Sourcing により、すべての状態変更をイベントとして記録する。

┌──────────────┐  XADD   ┌────────────────┐  XREADGROUP  ┌──────────────┐
│ Command 側   │ ──────▶ │ Redis Streams  │ ───────────▶ │ Projector    │
│ (event_store)│         │ incident_events│              │ (read model) │
└──────────────┘         └────────────────┘              └──────────────┘

PROJECTION_MODE=inline の場合は Redis を使わず、追記直後に同じリクエスト内で投影する。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import queries
from .aggregate import IncidentAggregate
from .commands import IncidentCommandService
from .config import Settings
from .db import create_engine, create_schema, create_session_factory
from .errors import PersistenceError, UnknownEventError
from .event_store import EventStore
from .events import IncidentStatus, Priority
from .outcomes import CommandOutcome, OutcomeKind
from .projections import IncidentProjector
from .publisher import InlinePublisher, RedisStreamPublisher
from .subscriber import run_read_model_sweeper, run_subscriber

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────

class CreateIncidentRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=500)


class AssignAgentRequest(BaseModel):
    agent_id: UUID


class SetPriorityRequest(BaseModel):
    priority: Priority


class AddCommentRequest(BaseModel):
    text: str = Field(min_length=1)
    author: str = Field(min_length=1)


class UpdateStatusRequest(BaseModel):
    status: IncidentStatus


_STATUS_CODES = {
    OutcomeKind.NOT_FOUND: 404,
    OutcomeKind.INVALID_STATE: 409,
    OutcomeKind.CONFLICT: 409,
}


def _respond(outcome: CommandOutcome) -> dict:
    if not outcome.ok:
        raise HTTPException(_STATUS_CODES[outcome.kind], outcome.reason)
    return {"incident_id": str(outcome.incident_id), "version": outcome.version}


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings.from_env()
        logging.basicConfig(level=cfg.log_level)

        engine = create_engine(cfg)
        if cfg.create_schema:
            await create_schema(engine)
        session_factory = create_session_factory(engine)
        event_store = EventStore(session_factory)
        projector = IncidentProjector(session_factory)

        redis_conn: aioredis.Redis | None = None
        shutdown_event = asyncio.Event()
        tasks: list[asyncio.Task] = []
        if cfg.projection_mode == "stream":
            redis_conn = aioredis.from_url(cfg.redis_url, decode_responses=True)
            publisher = RedisStreamPublisher(redis_conn, cfg.event_stream, cfg.stream_max_len)
            tasks.append(asyncio.create_task(
                run_subscriber(redis_conn, cfg, projector, event_store, shutdown_event,
                               pending_retry_s=cfg.pending_retry_s)
            ))
        else:
            publisher = InlinePublisher(projector, event_store)
        # どちらのモードでも、発行失敗などで取り残された遅れを定期的に埋める
        tasks.append(asyncio.create_task(
            run_read_model_sweeper(projector, event_store, shutdown_event, cfg.sweep_interval_s)
        ))

        app.state.session_factory = session_factory
        app.state.event_store = event_store
        app.state.projector = projector
        app.state.service = IncidentCommandService(event_store, publisher, cfg.max_append_attempts)
        logger.info("Incident service started (projection mode: %s)", cfg.projection_mode)
        yield

        shutdown_event.set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if redis_conn is not None:
            await redis_conn.aclose()
        await engine.dispose()

    app = FastAPI(title="Incident Service", lifespan=lifespan)

    @app.exception_handler(PersistenceError)
    async def persistence_error(_request: Request, exc: PersistenceError):
        logger.error("Persistence failure: %s", exc)
        return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True})

    @app.exception_handler(UnknownEventError)
    async def unknown_event_error(_request: Request, exc: UnknownEventError):
        logger.error("Cannot replay event history: %s", exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    # ── Command Endpoints (Write 側) ─────────────────

    @app.post("/commands/incidents", status_code=201)
    async def cmd_create_incident(req: CreateIncidentRequest, request: Request):
        """インシデント起票コマンド"""
        outcome = await request.app.state.service.create_incident(req.name, req.description)
        return _respond(outcome)

    @app.post("/commands/incidents/{incident_id}/assign-agent")
    async def cmd_assign_agent(incident_id: UUID, req: AssignAgentRequest, request: Request):
        """担当者割り当てコマンド (未割り当てのときだけ成功)"""
        return _respond(await request.app.state.service.assign_agent(incident_id, req.agent_id))

    @app.post("/commands/incidents/{incident_id}/priority")
    async def cmd_set_priority(incident_id: UUID, req: SetPriorityRequest, request: Request):
        return _respond(await request.app.state.service.set_priority(incident_id, req.priority))

    @app.post("/commands/incidents/{incident_id}/comments")
    async def cmd_add_comment(incident_id: UUID, req: AddCommentRequest, request: Request):
        return _respond(await request.app.state.service.add_comment(incident_id, req.text, req.author))

    @app.post("/commands/incidents/{incident_id}/status")
    async def cmd_update_status(incident_id: UUID, req: UpdateStatusRequest, request: Request):
        return _respond(await request.app.state.service.update_status(incident_id, req.status))

    @app.post("/commands/incidents/{incident_id}/acknowledge")
    async def cmd_acknowledge(incident_id: UUID, request: Request):
        return _respond(await request.app.state.service.acknowledge(incident_id))

    @app.post("/commands/incidents/{incident_id}/close")
    async def cmd_close(incident_id: UUID, request: Request):
        """クローズコマンド (Resolved / Acknowledged のときだけ成功)"""
        return _respond(await request.app.state.service.close(incident_id))

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/queries/incidents")
    async def query_list_incidents(request: Request):
        """全インシデントをリードモデルから取得"""
        async with request.app.state.session_factory() as session:
            return await queries.list_incidents(session)

    @app.get("/queries/incidents/{incident_id}")
    async def query_get_incident(incident_id: UUID, request: Request):
        """指定インシデントをリードモデルから取得"""
        async with request.app.state.session_factory() as session:
            incident = await queries.get_incident(session, incident_id)
        if not incident:
            raise HTTPException(404, "Incident not found")
        return incident

    @app.post("/queries/incidents/{incident_id}/rebuild")
    async def rebuild_incident(incident_id: UUID, request: Request):
        """イベントストアから読み直してリードモデルを追いつかせる (手動修復用)"""
        event_store = request.app.state.event_store
        if not await event_store.load(incident_id):
            raise HTTPException(404, "Incident not found")
        applied = await request.app.state.projector.catch_up(event_store, incident_id)
        async with request.app.state.session_factory() as session:
            incident = await queries.get_incident(session, incident_id)
        return {"incident_id": str(incident_id), "applied": applied, "incident": incident}

    # ── Event Store (デバッグ用) ─────────────────────

    @app.get("/events")
    async def get_all_events(request: Request):
        """イベントストアの全イベントを返す"""
        return await request.app.state.event_store.load_all()

    @app.get("/events/{incident_id}")
    async def get_incident_events(incident_id: UUID, request: Request):
        """指定インシデントのイベントを返す"""
        events = await request.app.state.event_store.load(incident_id)
        return [{"kind": e.kind, "schema_version": e.schema_version, **e.model_dump(mode="json")} for e in events]

    @app.get("/events/{incident_id}/state")
    async def get_incident_state(incident_id: UUID, request: Request):
        """イベントをリプレイした集約の状態を返す (リードモデルを経由しない)"""
        events = await request.app.state.event_store.load(incident_id)
        if not events:
            raise HTTPException(404, "Incident not found")
        return IncidentAggregate.from_events(events).snapshot()

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "incident-service"}

    return app


app = create_app()
