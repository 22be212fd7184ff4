"""
Incident Service — DB 接続

エンジンとセッションファクトリは Settings から作り、
EventStore / IncidentProjector に渡す。セッションは操作ごとに取得・解放する。
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .config import Settings
from .schema import metadata


def create_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルがなければ作成する (開発・テスト用)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
