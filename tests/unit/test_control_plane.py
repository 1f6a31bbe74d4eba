"""Unit tests for the control plane HTTP endpoints."""

from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock, Mock

import aiohttp
import jwt
import pytest
from aiohttp.test_utils import TestClient, TestServer

from voice_relay.config import LiveKitConfig, RelayConfig, TransformConfig
from voice_relay.control_plane import create_app
from voice_relay.voices import InMemoryVoiceStore


@pytest.fixture
def config() -> RelayConfig:
    return RelayConfig(
        livekit=LiveKitConfig(url="wss://livekit.example.com", api_key="key", api_secret="secret"),
        transform=TransformConfig(api_key="xi-key"),
    )


@pytest.fixture
def store() -> InMemoryVoiceStore:
    return InMemoryVoiceStore()


@pytest.fixture
def transform_client() -> Mock:
    client = Mock()
    client.list_voices = AsyncMock(return_value={"voices": [{"voice_id": "v1", "name": "Rachel"}]})
    return client


@pytest.fixture
def relay_status() -> dict[str, Any]:
    return {"connected": True, "active_routes": 2}


@pytest.fixture
async def client(
    config: RelayConfig,
    store: InMemoryVoiceStore,
    transform_client: Mock,
    relay_status: dict[str, Any],
) -> AsyncGenerator[TestClient, None]:
    app = create_app(config, store, transform_client, status_provider=lambda: relay_status)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


class TestGetToken:
    async def test_issues_token(self, client: TestClient) -> None:
        resp = await client.get("/get-token", params={"roomName": "room-1", "identity": "alice"})

        assert resp.status == 200
        data = await resp.json()
        assert data["wsUrl"] == "wss://livekit.example.com"
        assert data["room"] == "room-1"
        assert data["identity"] == "alice"
        claims = jwt.decode(data["token"], "secret", algorithms=["HS256"], options={"verify_aud": False})
        assert claims["sub"] == "alice"
        assert claims["video"]["room"] == "room-1"
        assert claims["video"]["roomJoin"] is True

    async def test_missing_parameters(self, client: TestClient) -> None:
        resp = await client.get("/get-token", params={"roomName": "room-1"})

        assert resp.status == 400
        assert "identity" in (await resp.json())["error"]

    async def test_missing_credentials(self, client: TestClient, config: RelayConfig) -> None:
        config.livekit.api_secret = ""

        resp = await client.get("/get-token", params={"roomName": "room-1", "identity": "alice"})

        assert resp.status == 500
        assert (await resp.json())["error"] == "LiveKit credentials not configured"


class TestVoices:
    async def test_list_voices(self, client: TestClient) -> None:
        resp = await client.get("/voices")

        assert resp.status == 200
        assert (await resp.json())["voices"][0]["name"] == "Rachel"

    async def test_auth_failure(self, client: TestClient, transform_client: Mock) -> None:
        transform_client.list_voices.side_effect = aiohttp.ClientResponseError(
            request_info=Mock(), history=(), status=401, message="Unauthorized"
        )

        resp = await client.get("/voices")

        assert resp.status == 500
        data = await resp.json()
        assert data["error"] == "ElevenLabs API authentication failed"
        assert "hint" in data

    async def test_network_failure(self, client: TestClient, transform_client: Mock) -> None:
        transform_client.list_voices.side_effect = aiohttp.ClientConnectionError("refused")

        resp = await client.get("/voices")

        assert resp.status == 500
        assert (await resp.json())["error"] == "Failed to fetch voices"

    async def test_missing_api_key(self, client: TestClient, config: RelayConfig) -> None:
        config.transform.api_key = ""

        resp = await client.get("/voices")

        assert resp.status == 500


class TestVoiceSelection:
    async def test_set_and_get_voice(self, client: TestClient, store: InMemoryVoiceStore) -> None:
        resp = await client.post("/set-voice", json={"userId": "alice", "voiceId": "voice-a"})

        assert resp.status == 200
        assert await resp.json() == {"success": True}
        assert store.get_voice("alice") == "voice-a"

        resp = await client.get("/get-voice/alice")
        assert await resp.json() == {
            "success": True,
            "userId": "alice",
            "voiceSelection": "voice-a",
        }

    async def test_set_voice_form_encoded(self, client: TestClient, store: InMemoryVoiceStore) -> None:
        resp = await client.post("/set-voice", data={"userId": "bob", "voiceId": "voice-b"})

        assert resp.status == 200
        assert store.get_voice("bob") == "voice-b"

    async def test_set_voice_missing_fields(self, client: TestClient) -> None:
        resp = await client.post("/set-voice", json={"userId": "alice"})

        assert resp.status == 400

    async def test_set_voice_invalid_json(self, client: TestClient) -> None:
        resp = await client.post(
            "/set-voice", data="{not json", headers={"Content-Type": "application/json"}
        )

        assert resp.status == 400

    async def test_get_voice_default(self, client: TestClient) -> None:
        resp = await client.get("/get-voice/nobody")

        data = await resp.json()
        assert data["voiceSelection"] == "pNInz6obpgDQGcFmaJgB"


class TestMisc:
    async def test_health(self, client: TestClient) -> None:
        resp = await client.get("/health")

        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "healthy"
        assert data["relay"]["active_routes"] == 2

    async def test_health_disconnected(
        self, client: TestClient, relay_status: dict[str, Any]
    ) -> None:
        relay_status["connected"] = False

        resp = await client.get("/health")

        assert resp.status == 503

    async def test_unknown_route(self, client: TestClient) -> None:
        resp = await client.get("/nope")

        assert resp.status == 404
        assert (await resp.json())["error"] == "Route not found"

    async def test_cors_headers(self, client: TestClient) -> None:
        resp = await client.get("/get-voice/alice")
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

        resp = await client.options("/set-voice")
        assert resp.status == 200
