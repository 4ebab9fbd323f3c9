import secrets
from datetime import datetime, timezone
from typing import List, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request, status
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class APIKeyMiddleware(BaseHTTPMiddleware):
	"""Static API key guard for the management API"""

	def __init__(self, app, api_keys: List[str], exclude_paths: Optional[List[str]] = None):
		super().__init__(app)
		self.api_keys = [key for key in api_keys if key]
		self.exclude_paths = exclude_paths or []

	async def dispatch(self, request: Request, call_next):
		path = request.url.path
		if path == "/health" or any(path.startswith(excluded) for excluded in self.exclude_paths):
			return await call_next(request)

		api_key = request.headers.get("X-API-Key")

		if not api_key or not self.validate_api_key(api_key):
			logger.warning(f"Invalid API key attempt from {request.client.host if request.client else 'unknown'}")
			return JSONResponse(
				status_code=status.HTTP_401_UNAUTHORIZED,
				content={
					"error": "Unauthorized",
					"message": "Invalid or missing API key",
					"timestamp": datetime.now(timezone.utc).isoformat()
				},
				headers={"WWW-Authenticate": 'ApiKey realm="API"'}
			)

		return await call_next(request)

	def validate_api_key(self, api_key: str) -> bool:
		return any(secrets.compare_digest(api_key.encode(), key.encode()) for key in self.api_keys)
