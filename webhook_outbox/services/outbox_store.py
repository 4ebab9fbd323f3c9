import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import aliased

from webhook_outbox.core.clock import Clock, utcnow
from webhook_outbox.core.exceptions import DuplicateEntryError, EntryNotFoundError, InvalidTransitionError
from webhook_outbox.models.outbox import OutboxEntry, OutboxStatus

logger = logging.getLogger(__name__)

PENDING = OutboxStatus.PENDING.value
DELIVERING = OutboxStatus.DELIVERING.value
DELIVERED = OutboxStatus.DELIVERED.value
DEAD = OutboxStatus.DEAD.value


class OutboxStore:
	"""
	Durable outbox table and its state transitions.

	Every transition is a single conditional UPDATE on the expected prior
	status, each in its own short transaction. Leasing therefore needs no
	row lock held across the delivery call: of several concurrent callers
	only one sees ``rowcount == 1``.
	"""

	def __init__(self, session_factory: async_sessionmaker, clock: Clock = utcnow):
		self.session_factory = session_factory
		self.clock = clock

	async def enqueue(
			self,
			aggregate_id: str,
			sequence: int,
			target_url: str,
			payload: str
	) -> OutboxEntry:
		"""Create a pending entry, eligible immediately"""
		now = self.clock()
		async with self.session_factory() as db:
			existing = await db.execute(
				select(OutboxEntry.id).where(
					and_(
						OutboxEntry.aggregate_id == aggregate_id,
						OutboxEntry.sequence == sequence
					)
				)
			)
			if existing.scalar_one_or_none() is not None:
				raise DuplicateEntryError(aggregate_id, sequence)

			entry = OutboxEntry(
				aggregate_id=aggregate_id,
				sequence=sequence,
				target_url=target_url,
				payload=payload,
				status=PENDING,
				attempts=0,
				next_attempt_at=now,
				created_at=now,
				updated_at=now,
			)
			db.add(entry)
			try:
				await db.commit()
			except IntegrityError:
				# Lost a race with a concurrent enqueue of the same key
				await db.rollback()
				raise DuplicateEntryError(aggregate_id, sequence)
			await db.refresh(entry)

		logger.info(f"Enqueued outbox entry {aggregate_id}#{sequence} -> {target_url}")
		return entry

	async def get(self, entry_id: UUID) -> Optional[OutboxEntry]:
		async with self.session_factory() as db:
			return await db.get(OutboxEntry, entry_id)

	async def get_by_key(self, aggregate_id: str, sequence: int) -> Optional[OutboxEntry]:
		async with self.session_factory() as db:
			result = await db.execute(
				select(OutboxEntry).where(
					and_(
						OutboxEntry.aggregate_id == aggregate_id,
						OutboxEntry.sequence == sequence
					)
				)
			)
			return result.scalar_one_or_none()

	async def get_status(self, aggregate_id: str, sequence: int) -> Optional[str]:
		async with self.session_factory() as db:
			result = await db.execute(
				select(OutboxEntry.status).where(
					and_(
						OutboxEntry.aggregate_id == aggregate_id,
						OutboxEntry.sequence == sequence
					)
				)
			)
			return result.scalar_one_or_none()

	async def list_entries(
			self,
			status: Optional[str] = None,
			aggregate_id: Optional[str] = None,
			limit: int = 100
	) -> List[OutboxEntry]:
		"""Read-only listing for inspection"""
		async with self.session_factory() as db:
			query = select(OutboxEntry)
			if status:
				query = query.where(OutboxEntry.status == status)
			if aggregate_id:
				query = query.where(OutboxEntry.aggregate_id == aggregate_id)

			query = query.order_by(OutboxEntry.aggregate_id, OutboxEntry.sequence).limit(limit)
			result = await db.execute(query)
			return list(result.scalars().all())

	async def count_by_status(self) -> Dict[str, int]:
		async with self.session_factory() as db:
			result = await db.execute(
				select(OutboxEntry.status, func.count()).group_by(OutboxEntry.status)
			)
			counts = {status.value: 0 for status in OutboxStatus}
			counts.update({row[0]: row[1] for row in result.all()})
			return counts

	async def fetch_due(self, now: datetime, limit: int = 100) -> List[OutboxEntry]:
		"""
		Due pending entries whose predecessor does not hold them back, in
		delivery order.

		Entries waiting on an undelivered ``(aggregate, sequence - 1)`` are
		filtered out here rather than by the caller, so a long blocked chain
		cannot fill the batch and starve other aggregates.
		"""
		predecessor = aliased(OutboxEntry)
		blocked = (
			select(predecessor.id)
			.where(
				and_(
					predecessor.aggregate_id == OutboxEntry.aggregate_id,
					predecessor.sequence == OutboxEntry.sequence - 1,
					predecessor.status != DELIVERED
				)
			)
			.exists()
		)

		async with self.session_factory() as db:
			result = await db.execute(
				select(OutboxEntry)
				.where(
					and_(
						OutboxEntry.status == PENDING,
						OutboxEntry.next_attempt_at <= now,
						~blocked
					)
				)
				.order_by(OutboxEntry.aggregate_id, OutboxEntry.sequence)
				.limit(limit)
			)
			return list(result.scalars().all())

	async def lease(self, entry_id: UUID, now: datetime, lease_seconds: float) -> Optional[OutboxEntry]:
		"""
		Atomically move a due pending entry to delivering.

		Returns the leased entry, carrying a fresh ``lease_token`` that the
		holder must present to finish the attempt, or None when another
		worker got there first or the entry is no longer due.
		"""
		token = uuid4().hex
		async with self.session_factory() as db:
			result = await db.execute(
				update(OutboxEntry)
				.where(
					and_(
						OutboxEntry.id == entry_id,
						OutboxEntry.status == PENDING,
						OutboxEntry.next_attempt_at <= now
					)
				)
				.values(
					status=DELIVERING,
					lease_token=token,
					lease_expires_at=now + timedelta(seconds=lease_seconds),
					updated_at=now,
				)
				.execution_options(synchronize_session=False)
			)
			await db.commit()
			if result.rowcount != 1:
				return None
			return await db.get(OutboxEntry, entry_id, populate_existing=True)

	async def mark_delivered(self, entry_id: UUID, lease_token: str, status_code: Optional[int]) -> bool:
		now = self.clock()
		return await self._finish_attempt(
			entry_id,
			lease_token,
			status=DELIVERED,
			last_status_code=status_code,
			last_error=None,
			delivered_at=now,
			updated_at=now,
		)

	async def mark_retry(
			self,
			entry_id: UUID,
			lease_token: str,
			status_code: Optional[int],
			error: Optional[str],
			next_attempt_at: datetime
	) -> bool:
		return await self._finish_attempt(
			entry_id,
			lease_token,
			status=PENDING,
			last_status_code=status_code,
			last_error=error,
			next_attempt_at=next_attempt_at,
			updated_at=self.clock(),
		)

	async def mark_dead(
			self,
			entry_id: UUID,
			lease_token: str,
			status_code: Optional[int],
			error: Optional[str]
	) -> bool:
		return await self._finish_attempt(
			entry_id,
			lease_token,
			status=DEAD,
			last_status_code=status_code,
			last_error=error,
			updated_at=self.clock(),
		)

	async def _finish_attempt(self, entry_id: UUID, lease_token: str, **values) -> bool:
		"""Close the attempt held under ``lease_token``; False if that lease was lost meanwhile"""
		if values.get("last_error"):
			values["last_error"] = values["last_error"][:1000]

		async with self.session_factory() as db:
			result = await db.execute(
				update(OutboxEntry)
				.where(
					and_(
						OutboxEntry.id == entry_id,
						OutboxEntry.status == DELIVERING,
						OutboxEntry.lease_token == lease_token
					)
				)
				.values(
					attempts=OutboxEntry.attempts + 1,
					lease_token=None,
					lease_expires_at=None,
					**values
				)
				.execution_options(synchronize_session=False)
			)
			await db.commit()

		if result.rowcount != 1:
			logger.warning(f"Outbox entry {entry_id} is no longer held by this lease; result '{values['status']}' discarded")
			return False
		return True

	async def replay(self, entry_id: UUID) -> OutboxEntry:
		"""Reset a dead entry to pending with a fresh attempt budget"""
		now = self.clock()
		async with self.session_factory() as db:
			result = await db.execute(
				update(OutboxEntry)
				.where(
					and_(
						OutboxEntry.id == entry_id,
						OutboxEntry.status == DEAD
					)
				)
				.values(
					status=PENDING,
					attempts=0,
					next_attempt_at=now,
					lease_token=None,
					lease_expires_at=None,
					updated_at=now,
				)
				.execution_options(synchronize_session=False)
			)
			await db.commit()

			entry = await db.get(OutboxEntry, entry_id, populate_existing=True)

		if entry is None:
			raise EntryNotFoundError(entry_id)
		if result.rowcount != 1:
			raise InvalidTransitionError(entry_id, entry.status, "replay")

		logger.info(f"Replayed outbox entry {entry.aggregate_id}#{entry.sequence}")
		return entry

	async def release_expired_leases(self, now: datetime) -> int:
		"""Return entries whose lease ran out (crashed worker) to pending"""
		async with self.session_factory() as db:
			result = await db.execute(
				update(OutboxEntry)
				.where(
					and_(
						OutboxEntry.status == DELIVERING,
						OutboxEntry.lease_expires_at < now
					)
				)
				.values(
					status=PENDING,
					next_attempt_at=now,
					lease_token=None,
					lease_expires_at=None,
					last_error="lease expired",
					updated_at=now,
				)
				.execution_options(synchronize_session=False)
			)
			await db.commit()

		released = result.rowcount or 0
		if released:
			logger.warning(f"Released {released} expired outbox lease(s)")
		return released
