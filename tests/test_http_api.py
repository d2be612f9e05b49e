"""Tests for the FastAPI adapter."""

import pytest
from fastapi.testclient import TestClient

from orderbot.adapters.http_api import create_app
from tests.conftest import IDENTITY


@pytest.fixture
def media_dir(tmp_path):
    (tmp_path / "audio_1.mp3").write_bytes(b"ID3-audio")
    return tmp_path


@pytest.fixture
def client(orchestrator, media_dir):
    return TestClient(create_app(orchestrator, media_dir=str(media_dir)))


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestMessageEndpoint:
    def test_message_turn(self, client):
        response = client.post("/api/message", json={"identity": IDENTITY, "text": "quero uma pizza"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["text"] == "Certo!"
        assert body["state"] == 1
        assert body["all_images"] == []

    def test_blank_identity_rejected(self, client):
        response = client.post("/api/message", json={"identity": "  ", "text": "oi"})
        assert response.status_code == 400

    def test_missing_identity_is_validation_error(self, client):
        response = client.post("/api/message", json={"text": "oi"})
        assert response.status_code == 422


class TestValidateAddressEndpoint:
    def test_address_with_number(self, client):
        response = client.post(
            "/api/validate-address", json={"address": "Rua Augusta, 1234, 01305-000"}
        )
        body = response.json()
        assert body["valid"] is True
        assert body["formatted_address"].startswith("Rua Augusta, 1234")

    def test_address_needs_number(self, client):
        response = client.post("/api/validate-address", json={"address": "01305-000"})
        body = response.json()
        assert body["valid"] is False
        assert body["requires_number"] is True


class TestMediaEndpoint:
    def test_serves_audio(self, client):
        response = client.get("/api/media/audio_1.mp3")
        assert response.status_code == 200
        assert response.content == b"ID3-audio"
        assert response.headers["content-type"] == "audio/mpeg"

    def test_missing_file(self, client):
        assert client.get("/api/media/nope.mp3").status_code == 404

    def test_parent_directory_not_served(self, client):
        assert client.get("/api/media/..").status_code == 404
