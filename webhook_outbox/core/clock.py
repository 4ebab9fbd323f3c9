from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
	"""Naive UTC timestamp, the form every datetime column is stored in"""
	return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_ms(moment: datetime) -> int:
	if moment.tzinfo is None:
		moment = moment.replace(tzinfo=timezone.utc)
	return int(moment.timestamp() * 1000)
