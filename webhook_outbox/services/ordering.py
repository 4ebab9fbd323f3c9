from typing import Optional

from webhook_outbox.models.outbox import OutboxEntry, OutboxStatus


def predecessor_allows(predecessor_status: Optional[str]) -> bool:
	"""A successor may go once its predecessor is absent or delivered"""
	return predecessor_status is None or predecessor_status == OutboxStatus.DELIVERED


async def is_eligible(entry: OutboxEntry, store) -> bool:
	"""
	Per-aggregate ordering check for ``(aggregate, sequence)``.

	Only the immediate predecessor ``sequence - 1`` is consulted. A pending,
	delivering or dead predecessor blocks this entry until it is delivered;
	a dead one keeps blocking until it is replayed and goes through.
	"""
	if entry.sequence <= 0:
		return True
	status = await store.get_status(entry.aggregate_id, entry.sequence - 1)
	return predecessor_allows(status)
