from dataclasses import dataclass
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dotenv import load_dotenv
load_dotenv()


@dataclass(frozen=True)
class OutboxConfig:
	"""Immutable delivery settings handed to the worker, signer and backoff policy"""
	signing_secret: str
	max_attempts: int = 10
	backoff_base_ms: int = 1000
	backoff_factor: float = 2.0
	backoff_max_ms: int = 300_000
	backoff_jitter: float = 0.1
	delivery_timeout_seconds: float = 5.0
	lease_seconds: float = 35.0
	batch_size: int = 100
	poll_interval_seconds: float = 1.0


class Settings(BaseSettings):
	# App
	APP_NAME: str = "Webhook Outbox"
	APP_VERSION: str = "1.0.0"
	API_V1_PREFIX: str = "/api/v1"
	DEBUG: bool = False
	ENVIRONMENT: str = "development"  # development, staging, production
	LOG_LEVEL: str = "INFO"

	# Database
	DATABASE_URL: str = "sqlite+aiosqlite:///./webhook_outbox.db"
	DB_POOL_SIZE: int = 20
	DB_MAX_OVERFLOW: int = 40
	DB_POOL_PRE_PING: bool = True
	DB_ECHO: bool = False
	AUTO_CREATE_TABLES: bool = False

	# Redis (Celery broker)
	REDIS_URL: str = "redis://localhost:6379/0"

	# Signing
	WEBHOOK_SIGNING_SECRET: str

	# Outbox delivery
	OUTBOX_MAX_ATTEMPTS: int = 10
	OUTBOX_BACKOFF_BASE_MS: int = 1000
	OUTBOX_BACKOFF_FACTOR: float = 2.0
	OUTBOX_BACKOFF_MAX_MS: int = 300_000
	OUTBOX_BACKOFF_JITTER: float = 0.1
	OUTBOX_DELIVERY_TIMEOUT_SECONDS: float = 5.0
	OUTBOX_LEASE_SECONDS: float = 35.0
	OUTBOX_BATCH_SIZE: int = 100
	OUTBOX_POLL_INTERVAL_SECONDS: float = 1.0
	OUTBOX_EMBEDDED_WORKER: bool = False
	OUTBOX_BEAT_INTERVAL_SECONDS: float = 5.0

	# Security
	REQUIRE_API_KEY: bool = False
	API_KEYS: List[str] = []

	# Monitoring
	EXPOSE_METRICS: bool = True

	model_config = SettingsConfigDict(
		env_file=".env",
		env_file_encoding="utf-8",
		case_sensitive=True
	)

	@field_validator("WEBHOOK_SIGNING_SECRET")
	@classmethod
	def secret_not_blank(cls, v: str) -> str:
		if not v or not v.strip():
			raise ValueError("WEBHOOK_SIGNING_SECRET must not be empty")
		return v

	@field_validator("OUTBOX_MAX_ATTEMPTS", "OUTBOX_BACKOFF_BASE_MS", "OUTBOX_BACKOFF_MAX_MS", "OUTBOX_BATCH_SIZE")
	@classmethod
	def positive_int(cls, v: int) -> int:
		if v < 1:
			raise ValueError("must be >= 1")
		return v

	@field_validator("OUTBOX_BACKOFF_JITTER")
	@classmethod
	def jitter_ratio(cls, v: float) -> float:
		if not 0.0 <= v < 1.0:
			raise ValueError("must be within [0, 1)")
		return v

	def outbox_config(self) -> OutboxConfig:
		return OutboxConfig(
			signing_secret=self.WEBHOOK_SIGNING_SECRET,
			max_attempts=self.OUTBOX_MAX_ATTEMPTS,
			backoff_base_ms=self.OUTBOX_BACKOFF_BASE_MS,
			backoff_factor=self.OUTBOX_BACKOFF_FACTOR,
			backoff_max_ms=self.OUTBOX_BACKOFF_MAX_MS,
			backoff_jitter=self.OUTBOX_BACKOFF_JITTER,
			delivery_timeout_seconds=self.OUTBOX_DELIVERY_TIMEOUT_SECONDS,
			lease_seconds=self.OUTBOX_LEASE_SECONDS,
			batch_size=self.OUTBOX_BATCH_SIZE,
			poll_interval_seconds=self.OUTBOX_POLL_INTERVAL_SECONDS,
		)


@lru_cache()
def get_settings() -> Settings:
	return Settings()


settings = get_settings()
