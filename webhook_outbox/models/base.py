import uuid

from sqlalchemy import Column, DateTime, Uuid

from webhook_outbox.core.clock import utcnow


class BaseModel:
	"""Common id and timestamp columns"""

	id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
