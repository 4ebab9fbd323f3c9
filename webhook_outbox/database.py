import logging
from typing import Any, AsyncGenerator, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from webhook_outbox.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def _engine_options(url: str) -> Dict[str, Any]:
	if url.startswith("sqlite"):
		# Single shared connection so in-memory databases survive between sessions
		return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
	return {
		"pool_size": settings.DB_POOL_SIZE,
		"max_overflow": settings.DB_MAX_OVERFLOW,
		"pool_pre_ping": settings.DB_POOL_PRE_PING,
	}


def build_engine(url: str) -> AsyncEngine:
	if url.startswith("postgresql://"):
		url = url.replace("postgresql://", "postgresql+asyncpg://")
	return create_async_engine(url, echo=settings.DB_ECHO, **_engine_options(url))


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
	return async_sessionmaker(
		bind,
		class_=AsyncSession,
		expire_on_commit=False,
		autoflush=False,
	)


engine = build_engine(settings.DATABASE_URL)

# Session factory
AsyncSessionLocal = build_session_factory(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
	async with AsyncSessionLocal() as session:
		try:
			yield session
			await session.commit()
		except Exception:
			await session.rollback()
			raise


async def init_db(bind: AsyncEngine = engine):
	"""Create tables that do not exist yet"""
	# Register the models on Base.metadata
	from webhook_outbox.models import outbox  # noqa: F401

	try:
		async with bind.begin() as conn:
			await conn.run_sync(Base.metadata.create_all)
		logger.info("Database initialized successfully")
	except Exception as e:
		logger.error(f"Database initialization failed: {e}")
		raise


async def close_db():
	"""Close database connections"""
	await engine.dispose()
	logger.info("Database connections closed")


async def check_db_connection() -> bool:
	"""Check if database is healthy"""
	try:
		async with AsyncSessionLocal() as session:
			await session.execute(text("SELECT 1"))
			return True
	except Exception as e:
		logger.error(f"Database health check failed: {e}")
		return False
