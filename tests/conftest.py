import os

os.environ.setdefault("WEBHOOK_SIGNING_SECRET", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["OUTBOX_EMBEDDED_WORKER"] = "false"
os.environ["REQUIRE_API_KEY"] = "false"

import random
from datetime import datetime, timedelta
from typing import AsyncGenerator

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from webhook_outbox.api.v1.outbox import get_outbox_store
from webhook_outbox.config import OutboxConfig
from webhook_outbox.database import Base, build_session_factory
from webhook_outbox.main import app
from webhook_outbox.models import outbox as outbox_models  # noqa: F401
from webhook_outbox.services.delivery_client import DeliveryClient
from webhook_outbox.services.outbox_store import OutboxStore
from webhook_outbox.workers.outbox_worker import OutboxWorker

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
SECRET = "test-secret"


class FakeClock:
	"""Manually advanced naive-UTC clock"""

	def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
		self.now = start

	def __call__(self) -> datetime:
		return self.now

	def advance(self, seconds: float):
		self.now += timedelta(seconds=seconds)


class ScriptedReceiver:
	"""
	Webhook destination for httpx.MockTransport.

	Responses are scripted per aggregate (read from the X-Webhooks-Aggregate
	header); once a script runs out the receiver answers 200.
	"""

	def __init__(self):
		self.scripts = {}
		self.requests = []
		self.log = []
		self.delivered = []

	def script(self, aggregate_id: str, *responses):
		self.scripts.setdefault(aggregate_id, []).extend(responses)

	def handle(self, request: httpx.Request) -> httpx.Response:
		aggregate_id = request.headers.get("X-Webhooks-Aggregate")
		sequence = int(request.headers.get("X-Webhooks-Sequence", "-1"))
		self.requests.append(request)

		script = self.scripts.get(aggregate_id) or []
		response = script.pop(0) if script else 200
		if isinstance(response, Exception):
			self.log.append((aggregate_id, sequence, None))
			raise response
		if isinstance(response, int):
			response = httpx.Response(response)

		self.log.append((aggregate_id, sequence, response.status_code))
		if 200 <= response.status_code < 300:
			self.delivered.append((aggregate_id, sequence))
		return response


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture
async def engine():
	"""In-memory database shared by every session of a test"""
	engine = create_async_engine(
		TEST_DATABASE_URL,
		connect_args={"check_same_thread": False},
		poolclass=StaticPool,
	)
	async with engine.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)

	yield engine

	await engine.dispose()


@pytest.fixture
def store(engine, clock) -> OutboxStore:
	return OutboxStore(build_session_factory(engine), clock=clock)


@pytest.fixture
def receiver() -> ScriptedReceiver:
	return ScriptedReceiver()


@pytest.fixture
async def http_client(receiver) -> AsyncGenerator[httpx.AsyncClient, None]:
	async with httpx.AsyncClient(transport=httpx.MockTransport(receiver.handle)) as client:
		yield client


@pytest.fixture
def config() -> OutboxConfig:
	return OutboxConfig(signing_secret=SECRET, max_attempts=10, batch_size=100)


@pytest.fixture
def make_worker(store, http_client, clock):
	def _make(config: OutboxConfig, **kwargs) -> OutboxWorker:
		return OutboxWorker(
			store=store,
			client=DeliveryClient(http_client, timeout=config.delivery_timeout_seconds),
			config=config,
			clock=clock,
			rng=random.Random(1234),
			**kwargs
		)
	return _make


@pytest.fixture
def worker(make_worker, config) -> OutboxWorker:
	return make_worker(config)


@pytest.fixture
async def client(store) -> AsyncGenerator[httpx.AsyncClient, None]:
	"""API client bound to the test store"""
	app.dependency_overrides[get_outbox_store] = lambda: store

	async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
		yield client

	app.dependency_overrides.clear()
