import pytest
from pydantic import ValidationError

from webhook_outbox.config import Settings, OutboxConfig


def test_defaults():
	settings = Settings(WEBHOOK_SIGNING_SECRET="s3cret")
	config = settings.outbox_config()

	assert isinstance(config, OutboxConfig)
	assert config.signing_secret == "s3cret"
	assert config.max_attempts == 10
	assert config.backoff_base_ms == 1000
	assert config.backoff_factor == 2.0
	assert config.backoff_max_ms == 300_000
	assert config.backoff_jitter == 0.1
	assert config.delivery_timeout_seconds == 5.0


@pytest.mark.parametrize("secret", ["", "   "])
def test_blank_secret_is_rejected(secret):
	with pytest.raises(ValidationError):
		Settings(WEBHOOK_SIGNING_SECRET=secret)


@pytest.mark.parametrize("overrides", [
	{"OUTBOX_MAX_ATTEMPTS": 0},
	{"OUTBOX_BACKOFF_BASE_MS": 0},
	{"OUTBOX_BACKOFF_JITTER": 1.0},
])
def test_invalid_delivery_settings(overrides):
	with pytest.raises(ValidationError):
		Settings(WEBHOOK_SIGNING_SECRET="s3cret", **overrides)


def test_config_is_immutable():
	config = OutboxConfig(signing_secret="s3cret")
	with pytest.raises(AttributeError):
		config.max_attempts = 1
