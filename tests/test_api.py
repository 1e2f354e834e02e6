import json

import pytest
from fastapi.testclient import TestClient

from valheim_bot.main import create_app
from valheim_bot.models import ContainerState
from valheim_bot.secret_provider import DISCORD_PUBLIC_KEY, SecretProvider
from valheim_bot.server_manager import STARTING_MESSAGE
from valheim_bot.signature import SignatureVerifier


class FlakyVaultSecrets(SecretProvider):
    """Key Vault stand-in whose first lookups fail."""

    def __init__(self, public_key: str, failures: int = 1) -> None:
        super().__init__()
        self.public_key = public_key
        self.failures = failures
        self.calls = 0

    async def _fetch(self, name: str):
        self.calls += 1
        if self.calls <= self.failures:
            return None
        return self.public_key if name == DISCORD_PUBLIC_KEY else None


def _body(payload: dict) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _command(subcommand=None, name="valheim") -> bytes:
    options = [{"name": subcommand}] if subcommand else []
    return _body(
        {
            "type": 2,
            "token": "tok-1",
            "application_id": "app-1",
            "data": {"name": name, "options": options},
        }
    )


@pytest.fixture
def app(config, manager, public_key_hex):
    return create_app(config, manager=manager, verifier=SignatureVerifier(public_key_hex))


@pytest.fixture
def client(app):
    return TestClient(app)


def _post(client, body: bytes, headers: dict):
    return client.post("/interactions", content=body, headers={"Content-Type": "application/json", **headers})


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_ping_returns_pong(client, sign):
    body = _body({"type": 1})
    response = _post(client, body, sign(body))
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    assert response.json() == {"type": 1}


def test_ping_without_signature_still_returns_pong(client):
    response = _post(client, _body({"type": 1}), {})
    assert response.status_code == 200
    assert response.json() == {"type": 1}


def test_missing_signature_headers_unauthorized(client):
    response = _post(client, _command("status"), {})
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_invalid_signature_unauthorized(client, sign):
    headers = sign(_command("stop"))
    response = _post(client, _command("status"), headers)
    assert response.status_code == 401


def test_malformed_body(client):
    response = _post(client, b"{not json", {})
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON body"}


def test_signed_empty_object_returns_pong(client, sign):
    body = b"{}"
    response = _post(client, body, sign(body))
    assert response.status_code == 200
    assert response.json() == {"type": 1}


def test_unknown_command(client, sign):
    body = _command("status", name="unknown")
    response = _post(client, body, sign(body))
    assert response.status_code == 200
    data = response.json()
    assert data["type"] == 4
    assert "Unknown command" in data["data"]["content"]
    assert data["data"]["flags"] == 64


def test_no_subcommand(client, sign):
    body = _command()
    response = _post(client, body, sign(body))
    assert "No subcommand" in response.json()["data"]["content"]


def test_unknown_subcommand(client, sign):
    body = _command("restart")
    response = _post(client, body, sign(body))
    assert response.json()["data"]["content"] == "Unknown subcommand"


def test_status_without_instance(client, sign):
    body = _command("status")
    response = _post(client, body, sign(body))
    assert response.status_code == 200
    data = response.json()
    assert data["type"] == 4
    assert "STOPPED" in data["data"]["content"]


def test_stop_when_running(client, sign, compute):
    compute.set_state(ContainerState.RUNNING)
    body = _command("stop")
    response = _post(client, body, sign(body))
    assert response.json()["data"]["content"] == "Server is shutting down..."
    assert compute.deleted == [("valheim-test", False)]


def test_start_defers_and_notifies(app, sign, sent, compute):
    body = _command("start")
    with TestClient(app) as client:
        response = _post(client, body, sign(body))
        assert response.status_code == 200
        assert response.json() == {"type": 5}

    contents = [content for _, content in sent]
    assert contents[0] == STARTING_MESSAGE
    assert "Server is ready" in contents[-1]
    assert len(compute.created) == 1


def test_status_query_error_reports_unknown(client, sign, compute):
    compute.get_error = RuntimeError("boom")
    body = _command("status")
    response = _post(client, body, sign(body))
    assert response.status_code == 200
    assert "UNKNOWN" in response.json()["data"]["content"]


def test_unhandled_error_returns_500(app, sign, compute):
    compute.get_error = RuntimeError("boom")
    client = TestClient(app, raise_server_exceptions=False)
    body = _command("stop")
    response = _post(client, body, sign(body))
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_unconfigured_key_rejects_commands(config, manager, sign):
    client = TestClient(create_app(config, manager=manager))
    body = _command("status")
    response = _post(client, body, sign(body))
    assert response.status_code == 401


def test_vault_key_lookup_is_retried_after_failure(config, manager, public_key_hex, sign):
    config = config.model_copy(update={"key_vault_name": "valheim-vault"})
    secrets = FlakyVaultSecrets(public_key_hex)
    manager.secrets = secrets
    client = TestClient(create_app(config, manager=manager))
    body = _command("status")

    first = _post(client, body, sign(body))
    second = _post(client, body, sign(body))

    assert first.status_code == 401
    assert second.status_code == 200
    assert "STOPPED" in second.json()["data"]["content"]
    assert secrets.calls == 2


def test_vault_key_is_kept_once_resolved(config, manager, public_key_hex, sign):
    config = config.model_copy(update={"key_vault_name": "valheim-vault"})
    app = create_app(config, manager=manager)
    manager.secrets = FlakyVaultSecrets(public_key_hex, failures=0)
    client = TestClient(app)
    body = _command("status")

    assert _post(client, body, sign(body)).status_code == 200
    assert app.state.verifier is not None
    assert app.state.verifier.configured
