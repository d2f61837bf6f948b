"""Tests for the relay HTTP surface (our_whispers/server.py).

Tests cover:
1. Health endpoint
2. /register status codes and bodies
3. /send status codes and bodies
4. /cleanup key checks
5. Body limits and JSON parsing
6. Threadpool offload of directory work
7. Gateway wiring from settings
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from starlette.testclient import TestClient

from our_whispers.cipher import encrypt
from our_whispers.config import WhispersSettings
from our_whispers.delivery import ExpoPushDelivery
from our_whispers.directory import InMemoryRecipientDirectory, PostgresRecipientDirectory
from our_whispers.gateway import RelayGateway
from our_whispers.request_auth import InMemoryReplayCache, compose_relay_request
from our_whispers.server import build_gateway, create_app

CLEANUP_KEY = "test-cleanup-key"


def _send_body(sender, recipient, text, clock):
    sender_identity, sender_secret = sender
    recipient_identity, _ = recipient
    envelope = encrypt(sender_secret, sender_identity, recipient_identity, text, clock=clock)
    return compose_relay_request(sender_secret, sender_identity, recipient_identity, envelope, clock=clock).to_dict()


@pytest.fixture
def settings():
    return WhispersSettings(cleanup_key=CLEANUP_KEY)


@pytest.fixture
def client(settings, gateway):
    return TestClient(create_app(settings=settings, gateway=gateway))


@pytest.fixture
def registered_client(client, bob, bob_token):
    bob_identity, _ = bob
    response = client.post("/register", json={"recipientId": bob_identity.to_dict(), "deliveryToken": bob_token})
    assert response.status_code == 200
    return client


# ============================================================================
# Health Tests
# ============================================================================


class TestHealth:
    """Test liveness endpoint."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert "timestamp" in data


# ============================================================================
# Register Endpoint Tests
# ============================================================================


class TestRegisterEndpoint:
    """Test POST /register."""

    def test_register(self, client, directory, alice, alice_token):
        alice_identity, _ = alice

        response = client.post(
            "/register",
            json={"recipientId": alice_identity.to_dict(), "deliveryToken": alice_token},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "recipient": alice_identity.to_dict()}
        assert directory.lookup(alice_identity).delivery_token == alice_token

    def test_register_identity_as_string(self, client, alice, alice_token):
        alice_identity, _ = alice

        response = client.post(
            "/register",
            json={"recipientId": alice_identity.to_json(), "expoPushToken": alice_token},
        )

        assert response.status_code == 200

    def test_register_missing_fields(self, client):
        response = client.post("/register", json={})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "MalformedRequestError"

    def test_register_bad_token(self, client, alice):
        alice_identity, _ = alice

        response = client.post(
            "/register",
            json={"recipientId": alice_identity.to_dict(), "deliveryToken": "nope"},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid delivery token format"

    def test_register_bad_identity(self, client, alice_token):
        response = client.post(
            "/register",
            json={"recipientId": {"signingPublic": "zz"}, "deliveryToken": alice_token},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidIdentityError"

    def test_register_invalid_json(self, client):
        response = client.post("/register", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid JSON"

    def test_register_body_too_large(self, gateway):
        client = TestClient(create_app(settings=WhispersSettings(max_body_bytes=64), gateway=gateway))

        response = client.post("/register", content=b"{" + b" " * 100 + b"}")

        assert response.status_code == 413
        assert response.json()["error"] == "PayloadTooLarge"

    def test_register_unexpected_error(self, settings):
        gateway = MagicMock()
        gateway.register.side_effect = RuntimeError("database down")
        client = TestClient(create_app(settings=settings, gateway=gateway))

        response = client.post("/register", json={})

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": "InternalError",
            "message": "Failed to register recipient",
        }

    def test_register_get_not_allowed(self, client):
        assert client.get("/register").status_code == 405


# ============================================================================
# Send Endpoint Tests
# ============================================================================


class TestSendEndpoint:
    """Test POST /send."""

    def test_send(self, registered_client, delivery, alice, bob, bob_token, clock):
        response = registered_client.post("/send", json=_send_body(alice, bob, "hi", clock))

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "ticket": {"status": "ok", "id": "ticket-1", "details": {}},
        }
        assert delivery.sent[0].token == bob_token

    def test_send_missing_fields(self, registered_client, alice, bob, clock):
        body = _send_body(alice, bob, "hi", clock)
        del body["encryptedMessage"]

        response = registered_client.post("/send", json=body)

        assert response.status_code == 400
        assert response.json()["message"] == "Missing required fields: encryptedMessage"

    def test_send_unregistered_recipient(self, registered_client, alice, carol, clock):
        response = registered_client.post("/send", json=_send_body(alice, carol, "hi", clock))

        assert response.status_code == 404
        assert response.json()["error"] == "RecipientNotFoundError"
        assert response.json()["message"] == "Recipient not found"

    def test_send_stale(self, registered_client, alice, bob, clock):
        body = _send_body(alice, bob, "hi", clock)
        clock.advance(10 * 60 * 1000)

        response = registered_client.post("/send", json=body)

        assert response.status_code == 401
        assert response.json()["error"] == "ExpiredOrFutureTimestampError"

    def test_send_bad_signature(self, registered_client, alice, bob, clock):
        body = _send_body(alice, bob, "hi", clock)
        body["signature"] = "00" * 64

        response = registered_client.post("/send", json=body)

        assert response.status_code == 401
        assert response.json()["error"] == "AuthenticationError"

    def test_send_delivery_failure(self, settings, failing_delivery, directory, clock, alice, bob, bob_token):
        gateway = RelayGateway(directory=directory, delivery=failing_delivery, clock=clock)
        client = TestClient(create_app(settings=settings, gateway=gateway))
        bob_identity, _ = bob
        client.post("/register", json={"recipientId": bob_identity.to_dict(), "deliveryToken": bob_token})

        response = client.post("/send", json=_send_body(alice, bob, "hi", clock))

        assert response.status_code == 502
        assert response.json()["error"] == "DeliveryError"

    def test_send_unexpected_error(self, settings):
        gateway = MagicMock()
        gateway.send = AsyncMock(side_effect=RuntimeError("boom"))
        client = TestClient(create_app(settings=settings, gateway=gateway))

        response = client.post("/send", json={})

        assert response.status_code == 500
        assert response.json()["message"] == "Failed to send notification"


# ============================================================================
# Cleanup Endpoint Tests
# ============================================================================


class TestCleanupEndpoint:
    """Test POST /cleanup."""

    def test_cleanup(self, client):
        response = client.post("/cleanup", json={"key": CLEANUP_KEY})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "deletedCount": 0,
            "message": "Removed 0 stale registration(s)",
        }

    def test_cleanup_uses_configured_age(self, settings):
        gateway = MagicMock()
        gateway.cleanup.return_value = 4
        settings.stale_after_hours = 12
        client = TestClient(create_app(settings=settings, gateway=gateway))

        response = client.post("/cleanup", json={"key": CLEANUP_KEY})

        assert response.json()["deletedCount"] == 4
        assert gateway.cleanup.call_args[0][0].total_seconds() == 12 * 3600

    @pytest.mark.parametrize("body", [{}, {"key": "wrong"}, {"key": 123}, ["key"]])
    def test_cleanup_bad_key(self, client, body):
        response = client.post("/cleanup", json=body)

        assert response.status_code == 401
        assert response.json()["error"] == "AuthenticationError"

    def test_cleanup_disabled_without_key(self, gateway):
        client = TestClient(create_app(settings=WhispersSettings(), gateway=gateway))

        response = client.post("/cleanup", json={"key": ""})

        assert response.status_code == 401

    def test_cleanup_failure(self, settings):
        gateway = MagicMock()
        gateway.cleanup.side_effect = RuntimeError("database down")
        client = TestClient(create_app(settings=settings, gateway=gateway))

        response = client.post("/cleanup", json={"key": CLEANUP_KEY})

        assert response.status_code == 500


# ============================================================================
# Request Body Tests
# ============================================================================


class TestRequestBody:
    """Test body limits and parsing shared by the POST endpoints."""

    @pytest.mark.parametrize("path", ["/register", "/send", "/cleanup"])
    def test_deeply_nested_json(self, gateway, path):
        """Nesting deep enough to exhaust the parser is a client error."""
        client = TestClient(create_app(settings=WhispersSettings(max_body_bytes=1 << 20), gateway=gateway))
        body = b"[" * 100_000 + b"]" * 100_000

        response = client.post(path, content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid JSON"

    @pytest.mark.parametrize("path", ["/register", "/send", "/cleanup"])
    def test_declared_length_too_large(self, gateway, path):
        client = TestClient(create_app(settings=WhispersSettings(max_body_bytes=64), gateway=gateway))

        response = client.post(path, content=b"[" + b"0," * 50 + b"0]")

        assert response.status_code == 413
        assert response.json()["error"] == "PayloadTooLarge"

    def test_chunked_body_too_large(self, gateway):
        """Bodies without a Content-Length are capped while streaming."""
        client = TestClient(create_app(settings=WhispersSettings(max_body_bytes=64), gateway=gateway))

        def chunks():
            for _ in range(10):
                yield b" " * 16

        response = client.post("/register", content=chunks())

        assert response.status_code == 413

    def test_chunked_body_within_limit(self, client, directory, alice, alice_token):
        alice_identity, _ = alice
        payload = json.dumps({"recipientId": alice_identity.to_dict(), "deliveryToken": alice_token}).encode()

        def chunks():
            for i in range(0, len(payload), 32):
                yield payload[i : i + 32]

        response = client.post("/register", content=chunks())

        assert response.status_code == 200
        assert directory.lookup(alice_identity) is not None


# ============================================================================
# Worker Thread Tests
# ============================================================================


def _inline_threadpool():
    return AsyncMock(side_effect=lambda func, *args: func(*args))


class TestDirectoryWorkOffloaded:
    """Directory-backed gateway calls are handed to the threadpool."""

    def test_register_offloaded(self, client, gateway, alice, alice_token):
        alice_identity, _ = alice
        body = {"recipientId": alice_identity.to_dict(), "deliveryToken": alice_token}

        with patch("our_whispers.server.run_in_threadpool", _inline_threadpool()) as offload:
            response = client.post("/register", json=body)

        assert response.status_code == 200
        offload.assert_awaited_once_with(gateway.register, body)

    def test_cleanup_offloaded(self, client, gateway):
        with patch("our_whispers.server.run_in_threadpool", _inline_threadpool()) as offload:
            response = client.post("/cleanup", json={"key": CLEANUP_KEY})

        assert response.status_code == 200
        func, max_age = offload.await_args[0]
        assert func == gateway.cleanup
        assert max_age.total_seconds() == 24 * 3600

    def test_send_lookup_offloaded(self, registered_client, delivery, alice, bob, clock):
        with patch("our_whispers.gateway.run_in_threadpool", _inline_threadpool()) as offload:
            response = registered_client.post("/send", json=_send_body(alice, bob, "hi", clock))

        assert response.status_code == 200
        assert offload.await_args[0][1] == bob[0]
        assert len(delivery.sent) == 1



# ============================================================================
# Wiring Tests
# ============================================================================


class TestBuildGateway:
    """Test gateway construction from settings."""

    def test_in_memory_by_default(self):
        gateway = build_gateway(WhispersSettings())

        assert isinstance(gateway.directory, InMemoryRecipientDirectory)
        assert isinstance(gateway.delivery, ExpoPushDelivery)
        assert gateway.authenticator.replay_cache is None

    def test_postgres_when_configured(self):
        gateway = build_gateway(WhispersSettings(database_url="postgresql://relay"))

        assert isinstance(gateway.directory, PostgresRecipientDirectory)
        assert gateway.directory.dsn == "postgresql://relay"

    def test_settings_flow_through(self):
        settings = WhispersSettings(
            timestamp_tolerance_ms=1234,
            replay_cache=True,
            expo_push_url="http://push.test/send",
            expo_access_token="tok",
            delivery_timeout_seconds=2.5,
        )

        gateway = build_gateway(settings)

        assert gateway.authenticator.tolerance_ms == 1234
        assert isinstance(gateway.authenticator.replay_cache, InMemoryReplayCache)
        assert gateway.delivery.push_url == "http://push.test/send"
        assert gateway.delivery.access_token == "tok"
        assert gateway.delivery.timeout_seconds == 2.5

    def test_create_app_state(self, settings, gateway):
        app = create_app(settings=settings, gateway=gateway)

        assert app.state.gateway is gateway
        assert app.state.settings is settings

    def test_create_app_from_env(self, clean_env, monkeypatch):
        monkeypatch.setenv("WHISPERS_TIMESTAMP_TOLERANCE_MS", "5000")

        app = create_app()

        assert app.state.settings.timestamp_tolerance_ms == 5000
        assert app.state.gateway.authenticator.tolerance_ms == 5000
