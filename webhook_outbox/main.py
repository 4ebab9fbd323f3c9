import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI

from webhook_outbox.api.v1 import outbox
from webhook_outbox.config import settings
from webhook_outbox.core.exceptions import ConfigurationError
from webhook_outbox.database import AsyncSessionLocal, init_db, close_db, check_db_connection
from webhook_outbox.middleware.api_key import APIKeyMiddleware
from webhook_outbox.middleware.logging import LoggingMiddleware
from webhook_outbox.middleware.monitoring import MonitoringMiddleware
from webhook_outbox.middleware.request_id import RequestIDMiddleware
from webhook_outbox.monitoring import metrics
from webhook_outbox.workers.outbox_worker import build_worker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.REQUIRE_API_KEY and not settings.API_KEYS:
		raise ConfigurationError("REQUIRE_API_KEY is set but API_KEYS is empty")

	if settings.AUTO_CREATE_TABLES:
		await init_db()

	worker = None
	worker_task = None
	http_client = None
	if settings.OUTBOX_EMBEDDED_WORKER:
		http_client = httpx.AsyncClient()
		worker = build_worker(AsyncSessionLocal, http_client, settings.outbox_config())
		worker_task = asyncio.create_task(worker.start())

	try:
		yield
	finally:
		if worker:
			await worker.stop()
			worker_task.cancel()
			try:
				await worker_task
			except asyncio.CancelledError:
				pass
			await http_client.aclose()
		await close_db()


app = FastAPI(
	title=settings.APP_NAME,
	description="Ordered, signed, at-least-once webhook delivery with dead-letter replay.",
	version=settings.APP_VERSION,
	docs_url="/docs",
	redoc_url="/redoc" if settings.DEBUG else None,
	lifespan=lifespan,
)

# Custom middleware
app.add_middleware(MonitoringMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)

if settings.REQUIRE_API_KEY:
	app.add_middleware(
		APIKeyMiddleware,
		api_keys=settings.API_KEYS,
		exclude_paths=["/docs", "/redoc", "/openapi.json", "/internal/metrics"]
	)

# Include routers
app.include_router(outbox.router, prefix=f"{settings.API_V1_PREFIX}/outbox", tags=["outbox"])

# Monitoring endpoints (internal use)
if settings.EXPOSE_METRICS:
	app.include_router(
		metrics.router,
		prefix="/internal",
		tags=["monitoring"]
	)


@app.get("/health")
async def health_check():
	db_healthy = await check_db_connection()
	return {
		"status": "healthy" if db_healthy else "degraded",
		"database": "connected" if db_healthy else "disconnected",
		"timestamp": datetime.now(timezone.utc).isoformat(),
		"version": settings.APP_VERSION
	}
