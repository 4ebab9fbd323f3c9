import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict, AnyHttpUrl, field_validator

from webhook_outbox.models.outbox import OutboxStatus


def serialize_payload(payload: Any) -> str:
	"""The exact JSON text stored, signed and sent on every attempt"""
	return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


class OutboxEnqueue(BaseModel):
	aggregate_id: str = Field(..., min_length=1, max_length=255)
	sequence: int = Field(..., ge=0)
	target_url: AnyHttpUrl
	payload: Any

	@field_validator("aggregate_id")
	def strip_aggregate(cls, v):
		v = v.strip()
		if not v:
			raise ValueError("aggregate_id must not be blank")
		return v


class OutboxEntryResponse(BaseModel):
	id: UUID
	aggregate_id: str
	sequence: int
	target_url: str
	payload: Any
	status: OutboxStatus
	attempts: int
	next_attempt_at: datetime
	last_status_code: Optional[int] = None
	last_error: Optional[str] = None
	delivered_at: Optional[datetime] = None
	created_at: datetime
	updated_at: datetime

	model_config = ConfigDict(from_attributes=True)

	@field_validator("payload", mode="before")
	def decode_payload(cls, v):
		if isinstance(v, (str, bytes)):
			try:
				return json.loads(v)
			except ValueError:
				return v
		return v


class OutboxListResponse(BaseModel):
	count: int
	limit: int
	data: List[OutboxEntryResponse]


class OutboxStatsResponse(BaseModel):
	counts: Dict[str, int]
