from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings
from .domain.repositories import DocumentStore
from .infrastructure.document_store import InMemoryDocumentStore, SqlAlchemyDocumentStore
from .models import Base

MEMORY_URL_PREFIX = "memory://"


def create_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(
        settings.database_url,
        echo=settings.echo_sql,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


async def init_models(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def build_document_store(settings: Settings) -> DocumentStore:
    if settings.database_url.startswith(MEMORY_URL_PREFIX):
        return InMemoryDocumentStore(
            max_retries=settings.store_max_retries,
            backoff_seconds=settings.store_retry_backoff_seconds,
        )
    engine = create_engine(settings)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return SqlAlchemyDocumentStore(
        session_factory,
        max_retries=settings.store_max_retries,
        backoff_seconds=settings.store_retry_backoff_seconds,
        engine=engine,
    )
