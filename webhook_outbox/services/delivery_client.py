import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/json"
RETRYABLE_CLIENT_ERRORS = {408, 429}


class DeliveryOutcome(str, enum.Enum):
	SUCCESS = "success"
	RETRYABLE = "retryable"
	PERMANENT = "permanent"


@dataclass(frozen=True)
class DeliveryResult:
	outcome: DeliveryOutcome
	status_code: Optional[int] = None
	error: Optional[str] = None
	retry_after_ms: Optional[int] = None
	duration_seconds: float = 0.0


def classify_status(status_code: int) -> DeliveryOutcome:
	"""Map an HTTP status to success / retryable / permanent"""
	if 200 <= status_code < 300:
		return DeliveryOutcome.SUCCESS
	if status_code in RETRYABLE_CLIENT_ERRORS or status_code >= 500:
		return DeliveryOutcome.RETRYABLE
	if 400 <= status_code < 500:
		return DeliveryOutcome.PERMANENT
	# 1xx/3xx carry no usable delivery verdict
	return DeliveryOutcome.RETRYABLE


def parse_retry_after(headers, now: Optional[datetime] = None) -> Optional[int]:
	"""
	Normalize a retry hint to milliseconds.

	Understands ``Retry-After-Ms`` (integer ms) and ``Retry-After`` as either
	delta-seconds or an HTTP-date. Returns None for absent, negative or
	unparseable values.
	"""
	raw_ms = headers.get("retry-after-ms")
	if raw_ms is not None:
		try:
			value = int(float(raw_ms.strip()))
		except ValueError:
			value = -1
		if value >= 0:
			return value

	raw = headers.get("retry-after")
	if raw is None:
		return None
	raw = raw.strip()

	try:
		seconds = float(raw)
	except ValueError:
		seconds = None

	if seconds is not None:
		if seconds < 0:
			return None
		return int(seconds * 1000)

	try:
		when = parsedate_to_datetime(raw)
	except (TypeError, ValueError):
		return None
	if when is None:
		return None
	if when.tzinfo is None:
		when = when.replace(tzinfo=timezone.utc)
	now = now or datetime.now(timezone.utc)
	if now.tzinfo is None:
		now = now.replace(tzinfo=timezone.utc)
	return max(0, int((when - now).total_seconds() * 1000))


class DeliveryClient:
	"""Performs a single signed POST and classifies what came back"""

	def __init__(self, http_client: httpx.AsyncClient, timeout: float = 5.0):
		self.http_client = http_client
		self.timeout = timeout

	async def deliver(self, url: str, body: bytes, headers: Dict[str, str]) -> DeliveryResult:
		request_headers = {"Content-Type": CONTENT_TYPE, **headers}
		started = datetime.now(timezone.utc)

		# httpx applies its timeout per phase; wait_for bounds the whole call
		try:
			response = await asyncio.wait_for(
				self.http_client.post(
					url,
					content=body,
					headers=request_headers,
					timeout=self.timeout,
				),
				timeout=self.timeout,
			)
		except asyncio.TimeoutError:
			return self._failure(f"Timeout after {self.timeout}s: deadline exceeded", started)
		except httpx.TimeoutException as e:
			return self._failure(f"Timeout after {self.timeout}s: {e.__class__.__name__}", started)
		except httpx.HTTPError as e:
			# Connection refused, DNS failure, malformed response...
			return self._failure(f"{e.__class__.__name__}: {e}", started)

		duration = (datetime.now(timezone.utc) - started).total_seconds()
		outcome = classify_status(response.status_code)
		error = None
		retry_after_ms = None

		if outcome != DeliveryOutcome.SUCCESS:
			error = f"HTTP {response.status_code}"
			reason = response.reason_phrase
			if reason:
				error = f"{error} {reason}"
			if outcome == DeliveryOutcome.RETRYABLE:
				retry_after_ms = parse_retry_after(response.headers)

		return DeliveryResult(
			outcome=outcome,
			status_code=response.status_code,
			error=error,
			retry_after_ms=retry_after_ms,
			duration_seconds=duration,
		)

	@staticmethod
	def _failure(error: str, started: datetime) -> DeliveryResult:
		logger.debug(f"Delivery transport failure: {error}")
		return DeliveryResult(
			outcome=DeliveryOutcome.RETRYABLE,
			error=error[:1000],
			duration_seconds=(datetime.now(timezone.utc) - started).total_seconds(),
		)
