import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status, Query, Depends

from webhook_outbox.core.exceptions import DuplicateEntryError, InvalidTransitionError, EntryNotFoundError
from webhook_outbox.database import AsyncSessionLocal
from webhook_outbox.models.outbox import OutboxStatus
from webhook_outbox.monitoring import metrics
from webhook_outbox.schemas.outbox import (
	OutboxEnqueue, OutboxEntryResponse, OutboxListResponse, OutboxStatsResponse, serialize_payload
)
from webhook_outbox.services.outbox_store import OutboxStore

router = APIRouter()
logger = logging.getLogger(__name__)


def get_outbox_store() -> OutboxStore:
	return OutboxStore(AsyncSessionLocal)


@router.post("/", response_model=OutboxEntryResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_entry(
		entry_data: OutboxEnqueue,
		store: OutboxStore = Depends(get_outbox_store)
):
	"""Queue a webhook for ordered delivery"""
	try:
		entry = await store.enqueue(
			aggregate_id=entry_data.aggregate_id,
			sequence=entry_data.sequence,
			target_url=str(entry_data.target_url),
			payload=serialize_payload(entry_data.payload),
		)
	except DuplicateEntryError as e:
		raise HTTPException(
			status_code=status.HTTP_409_CONFLICT,
			detail=str(e)
		)

	return OutboxEntryResponse.model_validate(entry)


@router.get("/", response_model=OutboxListResponse)
async def list_entries(
		status_filter: Optional[OutboxStatus] = Query(None, alias="status"),
		aggregate_id: Optional[str] = None,
		limit: int = Query(100, ge=1, le=1000),
		store: OutboxStore = Depends(get_outbox_store)
):
	"""List entries, optionally filtered by status and aggregate"""
	entries = await store.list_entries(
		status=status_filter.value if status_filter else None,
		aggregate_id=aggregate_id,
		limit=limit,
	)
	return OutboxListResponse(
		count=len(entries),
		limit=limit,
		data=[OutboxEntryResponse.model_validate(e) for e in entries]
	)


@router.get("/stats", response_model=OutboxStatsResponse)
async def entry_stats(store: OutboxStore = Depends(get_outbox_store)):
	"""Entry counts per status"""
	return OutboxStatsResponse(counts=await store.count_by_status())


@router.get("/{entry_id}", response_model=OutboxEntryResponse)
async def get_entry(
		entry_id: UUID,
		store: OutboxStore = Depends(get_outbox_store)
):
	entry = await store.get(entry_id)
	if not entry:
		raise HTTPException(
			status_code=status.HTTP_404_NOT_FOUND,
			detail="Outbox entry not found"
		)
	return OutboxEntryResponse.model_validate(entry)


@router.post("/{entry_id}/replay", response_model=OutboxEntryResponse)
async def replay_entry(
		entry_id: UUID,
		store: OutboxStore = Depends(get_outbox_store)
):
	"""Send a dead entry back to pending with a fresh attempt budget"""
	try:
		entry = await store.replay(entry_id)
	except EntryNotFoundError:
		raise HTTPException(
			status_code=status.HTTP_404_NOT_FOUND,
			detail="Outbox entry not found"
		)
	except InvalidTransitionError as e:
		raise HTTPException(
			status_code=status.HTTP_409_CONFLICT,
			detail=f"Only dead entries can be replayed (current status: {e.current_status})"
		)

	metrics.replays.inc()
	return OutboxEntryResponse.model_validate(entry)
