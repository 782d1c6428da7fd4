"""HTTP-level tests for the relay routes."""

import pytest
from fastapi.testclient import TestClient

from main import create_app
from tests.fakes import FakeConnector
from utils.relay_settings import RelaySettings

SETTINGS = RelaySettings(
	api_key="secret",
	webhook_url="https://hooks.example.test/stream",
	default_agent_id="default-agent",
	upstream_url="wss://example.test/convai",
	ready_timeout_seconds=1.0,
)


@pytest.fixture
def connector():
	return FakeConnector()


@pytest.fixture
def client(connector):
	with TestClient(create_app(settings=SETTINGS, connector=connector)) as test_client:
		yield test_client


def test_send_relays_message(client, connector):
	response = client.post("/send", json={"sessionKey": "s1", "text": "Hello"})

	assert response.status_code == 200
	assert response.json() == {"ok": True}
	assert connector.sockets[0].frames("user_message") == [{"type": "user_message", "text": "Hello"}]
	assert connector.headers == [{"xi-api-key": "secret"}]


def test_send_accepts_legacy_field_names(client, connector):
	response = client.post(
		"/send",
		json={"psid": "s1", "text": "Hello", "agentId": "agent-9", "initContext": {"type": "init"}},
	)

	assert response.status_code == 200
	assert connector.urls == ["wss://example.test/convai?agent_id=agent-9"]
	assert connector.sockets[0].sent == [{"type": "init"}, {"type": "user_message", "text": "Hello"}]


@pytest.mark.parametrize("body", [{"sessionKey": "s1"}, {"text": "Hello"}, {}])
def test_send_validation_failure(client, connector, body):
	response = client.post("/send", json=body)

	assert response.status_code == 400
	assert response.json()["ok"] is False
	assert response.json()["error"]
	assert connector.calls == 0


def test_send_rejects_non_object_body(client):
	response = client.post("/send", content=b"not json", headers={"content-type": "application/json"})

	assert response.status_code == 400
	assert response.json()["ok"] is False


def test_send_delivery_failure():
	connector = FakeConnector(fail=OSError("refused"))
	with TestClient(create_app(settings=SETTINGS, connector=connector)) as client:
		response = client.post("/send", json={"sessionKey": "s1", "text": "Hello"})

	assert response.status_code == 500
	assert response.json()["ok"] is False
	assert "refused" in response.json()["error"]


def test_health_and_debug_sessions(client):
	assert client.get("/health").json() == {"ok": True, "sessionCount": 0}

	client.post("/send", json={"sessionKey": "a", "text": "Hello"})
	client.post("/send", json={"sessionKey": "b", "text": "Hello"})

	assert client.get("/health").json() == {"ok": True, "sessionCount": 2}
	listing = client.get("/debug/sessions").json()
	assert listing["count"] == 2
	assert sorted(item["sessionKey"] for item in listing["sessions"]) == ["a", "b"]
	assert all(isinstance(item["lastActivity"], float) for item in listing["sessions"])


def test_shutdown_closes_upstream_connections(connector):
	with TestClient(create_app(settings=SETTINGS, connector=connector)) as client:
		client.post("/send", json={"sessionKey": "s1", "text": "Hello"})

	assert connector.sockets[0].closed is True
	assert connector.sockets[0].close_reason == "shutdown"


def test_send_reports_which_field_is_invalid(client, connector):
	response = client.post("/send", json={"sessionKey": "s1", "text": 42})

	assert response.status_code == 400
	assert response.json()["ok"] is False
	assert response.json()["error"].startswith("text:")
	assert connector.calls == 0


def test_send_rejects_malformed_json(client):
	response = client.post("/send", content=b"{not json", headers={"content-type": "application/json"})

	assert response.status_code == 400
	assert response.json()["error"] == "Request body must be valid JSON"
