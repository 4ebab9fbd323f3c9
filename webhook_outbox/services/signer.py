import hashlib
import hmac
import time
from typing import Optional, Tuple

from webhook_outbox.core.exceptions import ConfigurationError, InvalidSignatureHeader

SIGNATURE_HEADER = "X-Webhooks-Signature"


def _as_bytes(value) -> bytes:
	return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def sign(secret: str, timestamp_ms: int, body: bytes) -> str:
	"""HMAC-SHA256 over "<timestamp_ms>.<body>", lowercase hex"""
	message = str(int(timestamp_ms)).encode("ascii") + b"." + _as_bytes(body)
	return hmac.new(_as_bytes(secret), message, hashlib.sha256).hexdigest()


def signature_header(secret: str, timestamp_ms: int, body: bytes) -> str:
	return f"t={int(timestamp_ms)}, s={sign(secret, timestamp_ms, body)}"


def parse_signature_header(value: str) -> Tuple[int, str]:
	"""Split a "t=<ms>, s=<hex>" header into (timestamp_ms, digest)"""
	parts = {}
	for item in (value or "").split(","):
		key, sep, val = item.strip().partition("=")
		if sep:
			parts[key.strip()] = val.strip()

	if "t" not in parts or "s" not in parts:
		raise InvalidSignatureHeader(f"Malformed signature header: {value!r}")
	try:
		timestamp_ms = int(parts["t"])
	except ValueError:
		raise InvalidSignatureHeader(f"Invalid signature timestamp: {parts['t']!r}")
	return timestamp_ms, parts["s"].lower()


def verify_signature(
		secret: str,
		header: str,
		body: bytes,
		tolerance_ms: Optional[int] = None,
		now_ms: Optional[int] = None
) -> bool:
	"""Receiver-side check of a signature header against the raw request body"""
	try:
		timestamp_ms, digest = parse_signature_header(header)
	except InvalidSignatureHeader:
		return False

	if tolerance_ms is not None:
		now_ms = int(time.time() * 1000) if now_ms is None else now_ms
		if abs(now_ms - timestamp_ms) > tolerance_ms:
			return False

	return hmac.compare_digest(sign(secret, timestamp_ms, body), digest)


class Signer:
	"""Holds the shared secret and produces signature headers"""

	def __init__(self, secret: str):
		if not secret:
			raise ConfigurationError("Webhook signing secret is not configured")
		self._secret = secret

	def sign(self, timestamp_ms: int, body: bytes) -> str:
		return sign(self._secret, timestamp_ms, body)

	def header(self, timestamp_ms: int, body: bytes) -> str:
		return signature_header(self._secret, timestamp_ms, body)

	def verify(self, header: str, body: bytes, tolerance_ms: Optional[int] = None) -> bool:
		return verify_signature(self._secret, header, body, tolerance_ms=tolerance_ms)
