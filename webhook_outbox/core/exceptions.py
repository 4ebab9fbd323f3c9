class OutboxError(Exception):
	"""Base class for outbox errors"""


class ConfigurationError(OutboxError):
	"""Raised at startup when signing or delivery settings are unusable"""


class DuplicateEntryError(OutboxError):
	def __init__(self, aggregate_id: str, sequence: int):
		self.aggregate_id = aggregate_id
		self.sequence = sequence
		super().__init__(f"Entry {aggregate_id}#{sequence} already exists")


class EntryNotFoundError(OutboxError):
	def __init__(self, entry_id):
		self.entry_id = entry_id
		super().__init__(f"Outbox entry {entry_id} not found")


class InvalidTransitionError(OutboxError):
	def __init__(self, entry_id, current_status: str, requested: str):
		self.entry_id = entry_id
		self.current_status = current_status
		self.requested = requested
		super().__init__(f"Cannot {requested} entry {entry_id} in status '{current_status}'")


class InvalidSignatureHeader(OutboxError):
	"""Signature header could not be parsed"""
