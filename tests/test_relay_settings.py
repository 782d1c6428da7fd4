"""Tests for environment configuration."""

import pytest

from utils.relay_settings import DEFAULT_UPSTREAM_URL, RelaySettings

REQUIRED = {"ELEVEN_KEY": "key", "STREAM_WEBHOOK_URL": "https://hooks.example.test/stream"}


def test_defaults():
	settings = RelaySettings.from_env(dict(REQUIRED))

	assert settings.api_key == "key"
	assert settings.default_agent_id is None
	assert settings.port == 8080
	assert settings.idle_minutes == 7.0
	assert settings.idle_seconds == 420.0
	assert settings.upstream_url == DEFAULT_UPSTREAM_URL
	assert settings.ready_timeout_seconds == 10.0


def test_overrides():
	env = dict(
		REQUIRED,
		DEFAULT_AGENT_ID="agent-1",
		PORT="9000",
		IDLE_MINUTES="0.5",
		ELEVEN_WSS_URL="wss://example.test/convai",
		READY_TIMEOUT_SECONDS="3",
		LOG_LEVEL="debug",
	)

	settings = RelaySettings.from_env(env)

	assert settings.default_agent_id == "agent-1"
	assert settings.port == 9000
	assert settings.idle_seconds == 30.0
	assert settings.upstream_url == "wss://example.test/convai"
	assert settings.ready_timeout_seconds == 3.0
	assert settings.log_level == "DEBUG"


@pytest.mark.parametrize("missing", ["ELEVEN_KEY", "STREAM_WEBHOOK_URL"])
def test_required_values(missing):
	env = dict(REQUIRED)
	env[missing] = " "

	with pytest.raises(RuntimeError):
		RelaySettings.from_env(env)


@pytest.mark.parametrize("value", ["seven", "0", "-1"])
def test_invalid_idle_minutes(value):
	with pytest.raises(RuntimeError):
		RelaySettings.from_env(dict(REQUIRED, IDLE_MINUTES=value))
