import random
from dataclasses import dataclass
from typing import Optional

from webhook_outbox.config import OutboxConfig
from webhook_outbox.core.exceptions import ConfigurationError


@dataclass(frozen=True)
class BackoffPolicy:
	"""
	Exponential retry delay with symmetric jitter.

	nominal = min(max_ms, base_ms * factor ** attempt_count), then perturbed
	uniformly within +/- jitter of its value. A retry-after hint from the
	destination replaces the computed delay (clamped to max_ms, no jitter).
	"""
	base_ms: int = 1000
	factor: float = 2.0
	max_ms: int = 300_000
	jitter: float = 0.1

	def __post_init__(self):
		if self.base_ms <= 0 or self.max_ms <= 0:
			raise ConfigurationError("Backoff base and max delay must be positive")
		if self.factor < 1.0:
			raise ConfigurationError("Backoff factor must be >= 1")
		if not 0.0 <= self.jitter < 1.0:
			raise ConfigurationError("Backoff jitter must be within [0, 1)")

	@classmethod
	def from_config(cls, config: OutboxConfig) -> "BackoffPolicy":
		return cls(
			base_ms=config.backoff_base_ms,
			factor=config.backoff_factor,
			max_ms=config.backoff_max_ms,
			jitter=config.backoff_jitter,
		)

	def nominal_delay(self, attempt_count: int) -> int:
		attempt_count = max(0, attempt_count)
		try:
			raw = self.base_ms * (self.factor ** attempt_count)
		except OverflowError:
			return self.max_ms
		return int(min(float(self.max_ms), raw))

	def next_delay(
			self,
			attempt_count: int,
			retry_after_ms: Optional[int] = None,
			rng: Optional[random.Random] = None
	) -> int:
		if retry_after_ms is not None and retry_after_ms >= 0:
			return min(int(retry_after_ms), self.max_ms)

		nominal = self.nominal_delay(attempt_count)
		if not self.jitter:
			return nominal
		rng = rng or random
		spread = nominal * self.jitter
		return max(0, int(round(nominal + rng.uniform(-spread, spread))))
