import enum

from sqlalchemy import Column, String, Integer, Text, DateTime, Index, UniqueConstraint

from webhook_outbox.core.clock import utcnow
from webhook_outbox.database import Base
from webhook_outbox.models.base import BaseModel


class OutboxStatus(str, enum.Enum):
	PENDING = "pending"
	DELIVERING = "delivering"
	DELIVERED = "delivered"
	DEAD = "dead"


class OutboxEntry(Base, BaseModel):
	__tablename__ = "outbox_entries"

	aggregate_id = Column(String(255), nullable=False)
	sequence = Column(Integer, nullable=False)
	target_url = Column(String(2048), nullable=False)
	payload = Column(Text, nullable=False)  # exact body bytes sent on every attempt
	status = Column(String(20), nullable=False, default=OutboxStatus.PENDING.value, index=True)
	attempts = Column(Integer, nullable=False, default=0)
	next_attempt_at = Column(DateTime, nullable=False, default=utcnow)
	lease_expires_at = Column(DateTime)
	lease_token = Column(String(32))  # identifies the current holder of a delivering entry
	last_status_code = Column(Integer)
	last_error = Column(Text)
	delivered_at = Column(DateTime)

	__table_args__ = (
		UniqueConstraint("aggregate_id", "sequence", name="uq_outbox_aggregate_sequence"),
		Index("ix_outbox_due", "status", "next_attempt_at"),
	)

	def __repr__(self):
		return f"<OutboxEntry {self.aggregate_id}#{self.sequence} {self.status}>"
