import asyncio
import json
import logging
import random
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import List, Optional

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from webhook_outbox.config import OutboxConfig
from webhook_outbox.core.clock import Clock, utcnow, to_epoch_ms
from webhook_outbox.models.outbox import OutboxEntry, OutboxStatus
from webhook_outbox.monitoring import metrics
from webhook_outbox.services.backoff import BackoffPolicy
from webhook_outbox.services.delivery_client import DeliveryClient, DeliveryOutcome, DeliveryResult
from webhook_outbox.services.ordering import is_eligible
from webhook_outbox.services.outbox_store import OutboxStore
from webhook_outbox.services.signer import Signer, SIGNATURE_HEADER

logger = logging.getLogger(__name__)


@dataclass
class DeliveryObservation:
	"""What happened to one entry during one attempt"""
	entry_id: str
	aggregate_id: str
	sequence: int
	attempt: int
	outcome: str
	status: str
	status_code: Optional[int] = None
	next_delay_ms: Optional[int] = None
	error: Optional[str] = None
	applied: bool = True

	def as_dict(self) -> dict:
		return asdict(self)


class OutboxWorker:
	"""
	Delivers due outbox entries.

	A tick reads everything it needs from the store, so several workers
	(threads, processes, hosts) can tick against the same table; the
	store's conditional lease guarantees a single owner per attempt.
	"""

	def __init__(
			self,
			store: OutboxStore,
			client: DeliveryClient,
			config: OutboxConfig,
			signer: Optional[Signer] = None,
			backoff: Optional[BackoffPolicy] = None,
			clock: Clock = utcnow,
			rng: Optional[random.Random] = None
	):
		self.store = store
		self.client = client
		self.config = config
		self.signer = signer or Signer(config.signing_secret)
		self.backoff = backoff or BackoffPolicy.from_config(config)
		self.clock = clock
		self.rng = rng or random.Random()
		self._running = False

	async def start(self):
		"""Tick until stopped"""
		self._running = True
		logger.info("Outbox worker started")

		while self._running:
			processed = 0
			try:
				processed = len(await self.tick())
				metrics.worker_ticks.labels(result="ok").inc()
			except Exception as e:
				metrics.worker_ticks.labels(result="error").inc()
				logger.error(f"Outbox worker error: {e}", exc_info=True)

			# A full batch likely means more work is already due
			if processed < self.config.batch_size:
				await asyncio.sleep(self.config.poll_interval_seconds)

	async def stop(self):
		"""Stop after the current tick"""
		self._running = False
		logger.info("Outbox worker stopped")

	async def tick(self) -> List[DeliveryObservation]:
		"""Run one bounded pass over the due entries, in (aggregate, sequence) order"""
		now = self.clock()

		released = await self.store.release_expired_leases(now)
		if released:
			metrics.leases_recovered.inc(released)

		candidates = await self.store.fetch_due(now, limit=self.config.batch_size)
		if not candidates:
			return []

		logger.debug(f"Processing {len(candidates)} due outbox entries")

		observations = []
		attempted = set()
		for entry in candidates:
			# One attempt per aggregate per tick: successors wait for the next tick
			if entry.aggregate_id in attempted:
				continue
			try:
				if not await is_eligible(entry, self.store):
					logger.debug(f"Entry {entry.aggregate_id}#{entry.sequence} blocked by predecessor")
					continue

				leased = await self.store.lease(entry.id, self.clock(), self.config.lease_seconds)
				if leased is None:
					logger.debug(f"Entry {entry.aggregate_id}#{entry.sequence} leased elsewhere, skipping")
					continue

				attempted.add(entry.aggregate_id)
				observations.append(await self._attempt(leased))
			except Exception as e:
				logger.error(f"Failed to process outbox entry {entry.id}: {e}", exc_info=True)

		return observations

	async def _attempt(self, entry: OutboxEntry) -> DeliveryObservation:
		attempt = entry.attempts + 1
		body = entry.payload.encode("utf-8")
		timestamp_ms = to_epoch_ms(self.clock())
		headers = {
			SIGNATURE_HEADER: self.signer.header(timestamp_ms, body),
			"X-Webhooks-Id": str(entry.id),
			"X-Webhooks-Aggregate": entry.aggregate_id,
			"X-Webhooks-Sequence": str(entry.sequence),
			"X-Webhooks-Attempt": str(attempt),
		}

		try:
			result = await self.client.deliver(entry.target_url, body, headers)
		except Exception as e:
			logger.error(f"Unexpected delivery error for {entry.id}: {e}", exc_info=True)
			result = DeliveryResult(
				outcome=DeliveryOutcome.RETRYABLE,
				error=f"Unexpected delivery error: {e}",
			)

		metrics.delivery_duration.observe(result.duration_seconds)
		observation = await self._apply(entry, attempt, result)
		self._observe(observation)
		return observation

	async def _apply(self, entry: OutboxEntry, attempt: int, result: DeliveryResult) -> DeliveryObservation:
		next_delay_ms = None

		if result.outcome == DeliveryOutcome.SUCCESS:
			status = OutboxStatus.DELIVERED
			applied = await self.store.mark_delivered(entry.id, entry.lease_token, result.status_code)
		elif result.outcome == DeliveryOutcome.PERMANENT or attempt >= self.config.max_attempts:
			status = OutboxStatus.DEAD
			applied = await self.store.mark_dead(entry.id, entry.lease_token, result.status_code, result.error)
		else:
			status = OutboxStatus.PENDING
			next_delay_ms = self.backoff.next_delay(entry.attempts, result.retry_after_ms, rng=self.rng)
			next_attempt_at = self.clock() + timedelta(milliseconds=next_delay_ms)
			applied = await self.store.mark_retry(
				entry.id, entry.lease_token, result.status_code, result.error, next_attempt_at
			)

		return DeliveryObservation(
			entry_id=str(entry.id),
			aggregate_id=entry.aggregate_id,
			sequence=entry.sequence,
			attempt=attempt,
			outcome=result.outcome.value,
			status=status.value,
			status_code=result.status_code,
			next_delay_ms=next_delay_ms,
			error=result.error,
			applied=applied,
		)

	@staticmethod
	def _observe(observation: DeliveryObservation):
		metrics.delivery_attempts.labels(outcome=observation.outcome, status=observation.status).inc()

		if observation.status == OutboxStatus.DEAD and observation.applied:
			metrics.entries_dead.inc()
			logger.warning(json.dumps(observation.as_dict()))
		else:
			logger.info(json.dumps(observation.as_dict()))


def build_worker(
		session_factory: async_sessionmaker,
		http_client: httpx.AsyncClient,
		config: OutboxConfig,
		clock: Clock = utcnow
) -> OutboxWorker:
	"""Wire store, client, signer and backoff from configuration"""
	return OutboxWorker(
		store=OutboxStore(session_factory, clock=clock),
		client=DeliveryClient(http_client, timeout=config.delivery_timeout_seconds),
		config=config,
		clock=clock,
	)
