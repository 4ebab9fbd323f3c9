import httpx
import pytest
from fastapi import FastAPI

from webhook_outbox.middleware.api_key import APIKeyMiddleware


@pytest.fixture
def guarded_app() -> FastAPI:
	app = FastAPI()
	app.add_middleware(APIKeyMiddleware, api_keys=["key-1", "key-2"], exclude_paths=["/docs"])

	@app.get("/health")
	async def health():
		return {"status": "healthy"}

	@app.get("/api/v1/outbox/")
	async def listing():
		return {"data": []}

	return app


async def test_api_key_required(guarded_app):
	async with httpx.AsyncClient(transport=httpx.ASGITransport(app=guarded_app), base_url="http://test") as client:
		missing = await client.get("/api/v1/outbox/")
		wrong = await client.get("/api/v1/outbox/", headers={"X-API-Key": "nope"})
		ok = await client.get("/api/v1/outbox/", headers={"X-API-Key": "key-2"})
		health = await client.get("/health")

	assert missing.status_code == 401
	assert wrong.status_code == 401
	assert ok.status_code == 200
	assert health.status_code == 200
