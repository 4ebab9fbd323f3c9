import uuid
from datetime import timedelta

import pytest

from webhook_outbox.core.exceptions import DuplicateEntryError, EntryNotFoundError, InvalidTransitionError
from webhook_outbox.models.outbox import OutboxStatus

URL = "https://hooks.example.com/in"


async def test_enqueue_creates_pending_entry(store, clock):
	entry = await store.enqueue("order-1", 0, URL, '{"a":1}')

	assert entry.status == OutboxStatus.PENDING
	assert entry.attempts == 0
	assert entry.next_attempt_at == clock.now
	assert entry.last_status_code is None
	assert entry.payload == '{"a":1}'


async def test_duplicate_aggregate_sequence_is_rejected(store):
	await store.enqueue("order-1", 0, URL, "{}")
	with pytest.raises(DuplicateEntryError):
		await store.enqueue("order-1", 0, URL, '{"other":true}')

	# Same sequence on another aggregate is fine
	await store.enqueue("order-2", 0, URL, "{}")


async def test_fetch_due_orders_by_aggregate_then_sequence(store, clock):
	await store.enqueue("b", 5, URL, "{}")
	await store.enqueue("a", 2, URL, "{}")
	await store.enqueue("b", 0, URL, "{}")
	await store.enqueue("a", 0, URL, "{}")

	due = await store.fetch_due(clock.now)
	assert [(e.aggregate_id, e.sequence) for e in due] == [("a", 0), ("a", 2), ("b", 0), ("b", 5)]


async def test_fetch_due_leaves_out_entries_behind_an_undelivered_predecessor(store, clock):
	for seq in range(4):
		await store.enqueue("a", seq, URL, "{}")
	await store.enqueue("b", 0, URL, "{}")

	due = await store.fetch_due(clock.now, limit=2)
	assert [(e.aggregate_id, e.sequence) for e in due] == [("a", 0), ("b", 0)]

	leased = await store.lease(due[0].id, clock.now, 30)
	await store.mark_dead(due[0].id, leased.lease_token, 400, "HTTP 400")
	due = await store.fetch_due(clock.now, limit=2)
	assert [(e.aggregate_id, e.sequence) for e in due] == [("b", 0)]


async def test_fetch_due_skips_future_entries(store, clock):
	entry = await store.enqueue("a", 0, URL, "{}")
	leased = await store.lease(entry.id, clock.now, 30)
	clock.advance(1)
	await store.mark_retry(entry.id, leased.lease_token, 500, "HTTP 500", clock.now + timedelta(seconds=10))

	assert await store.fetch_due(clock.now) == []
	clock.advance(10)
	assert len(await store.fetch_due(clock.now)) == 1


async def test_lease_is_exclusive(store, clock):
	entry = await store.enqueue("a", 0, URL, "{}")

	first = await store.lease(entry.id, clock.now, 30)
	second = await store.lease(entry.id, clock.now, 30)

	assert first is not None
	assert first.status == OutboxStatus.DELIVERING
	assert first.attempts == 0
	assert second is None


async def test_lease_refuses_entries_not_yet_due(store, clock):
	entry = await store.enqueue("a", 0, URL, "{}")
	leased = await store.lease(entry.id, clock.now, 30)
	await store.mark_retry(entry.id, leased.lease_token, 503, "HTTP 503", clock.now + timedelta(seconds=5))

	assert await store.lease(entry.id, clock.now, 30) is None


async def test_completion_requires_delivering(store, clock):
	entry = await store.enqueue("a", 0, URL, "{}")

	assert await store.mark_delivered(entry.id, "not-a-lease", 200) is False
	assert await store.mark_dead(entry.id, "not-a-lease", 400, "HTTP 400") is False

	refreshed = await store.get(entry.id)
	assert refreshed.status == OutboxStatus.PENDING
	assert refreshed.attempts == 0


async def test_mark_delivered_counts_attempt_and_clears_error(store, clock):
	entry = await store.enqueue("a", 0, URL, "{}")
	leased = await store.lease(entry.id, clock.now, 30)
	await store.mark_retry(entry.id, leased.lease_token, 500, "HTTP 500", clock.now)
	leased = await store.lease(entry.id, clock.now, 30)

	assert await store.mark_delivered(entry.id, leased.lease_token, 200) is True

	refreshed = await store.get(entry.id)
	assert refreshed.status == OutboxStatus.DELIVERED
	assert refreshed.attempts == 2
	assert refreshed.last_status_code == 200
	assert refreshed.last_error is None
	assert refreshed.delivered_at == clock.now
	assert refreshed.lease_expires_at is None
	assert refreshed.lease_token is None


async def test_replay_resets_dead_entry(store, clock):
	entry = await store.enqueue("a", 0, URL, "{}")
	leased = await store.lease(entry.id, clock.now, 30)
	await store.mark_dead(entry.id, leased.lease_token, 410, "HTTP 410 Gone")
	clock.advance(3600)

	replayed = await store.replay(entry.id)

	assert replayed.status == OutboxStatus.PENDING
	assert replayed.attempts == 0
	assert replayed.next_attempt_at == clock.now
	assert [e.id for e in await store.fetch_due(clock.now)] == [entry.id]


@pytest.mark.parametrize("prepare", ["pending", "delivering", "delivered"])
async def test_replay_of_non_dead_entry_changes_nothing(store, clock, prepare):
	entry = await store.enqueue("a", 0, URL, "{}")
	if prepare in ("delivering", "delivered"):
		leased = await store.lease(entry.id, clock.now, 30)
	if prepare == "delivered":
		await store.mark_delivered(entry.id, leased.lease_token, 200)
	before = await store.get(entry.id)

	with pytest.raises(InvalidTransitionError):
		await store.replay(entry.id)

	after = await store.get(entry.id)
	assert after.status == before.status == prepare
	assert after.attempts == before.attempts
	assert after.next_attempt_at == before.next_attempt_at


async def test_replay_unknown_entry(store):
	with pytest.raises(EntryNotFoundError):
		await store.replay(uuid.uuid4())


async def test_expired_leases_return_to_pending(store, clock):
	entry = await store.enqueue("a", 0, URL, "{}")
	await store.lease(entry.id, clock.now, 10)

	clock.advance(5)
	assert await store.release_expired_leases(clock.now) == 0

	clock.advance(6)
	assert await store.release_expired_leases(clock.now) == 1

	refreshed = await store.get(entry.id)
	assert refreshed.status == OutboxStatus.PENDING
	assert refreshed.attempts == 0
	assert refreshed.last_error == "lease expired"
	assert refreshed.next_attempt_at == clock.now


async def test_list_and_count(store, clock):
	first = await store.enqueue("a", 0, URL, "{}")
	await store.enqueue("a", 1, URL, "{}")
	await store.enqueue("b", 0, URL, "{}")
	leased = await store.lease(first.id, clock.now, 30)
	await store.mark_dead(first.id, leased.lease_token, 400, "HTTP 400")

	dead = await store.list_entries(status="dead")
	assert [(e.aggregate_id, e.sequence) for e in dead] == [("a", 0)]
	assert len(await store.list_entries(aggregate_id="a")) == 2
	assert len(await store.list_entries(limit=1)) == 1

	assert await store.count_by_status() == {"pending": 2, "delivering": 0, "delivered": 0, "dead": 1}


async def test_leases_carry_distinct_tokens(store, clock):
	entry = await store.enqueue("a", 0, URL, "{}")
	first = await store.lease(entry.id, clock.now, 30)
	await store.mark_retry(entry.id, first.lease_token, 500, "HTTP 500", clock.now)
	second = await store.lease(entry.id, clock.now, 30)

	assert first.lease_token
	assert second.lease_token
	assert first.lease_token != second.lease_token


async def test_late_result_from_expired_lease_is_discarded(store, clock):
	entry = await store.enqueue("a", 0, URL, "{}")
	stale = await store.lease(entry.id, clock.now, 30)

	clock.advance(40)
	assert await store.release_expired_leases(clock.now) == 1
	current = await store.lease(entry.id, clock.now, 30)
	assert current is not None

	# The first holder finally hears back and tries to record its result
	assert await store.mark_dead(entry.id, stale.lease_token, 500, "HTTP 500") is False

	refreshed = await store.get(entry.id)
	assert refreshed.status == OutboxStatus.DELIVERING
	assert refreshed.attempts == 0
	assert refreshed.lease_token == current.lease_token

	assert await store.mark_delivered(entry.id, current.lease_token, 200) is True
	refreshed = await store.get(entry.id)
	assert refreshed.status == OutboxStatus.DELIVERED
	assert refreshed.attempts == 1
