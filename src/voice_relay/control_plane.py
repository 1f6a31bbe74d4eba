"""Control plane HTTP endpoints.

Small aiohttp application used by browser clients:
- GET  /get-token           Issue a room access token
- GET  /voices              Proxy the transformation service's voice list
- POST /set-voice           Store a participant's voice selection
- GET  /get-voice/{userId}  Read a participant's voice selection
- GET  /health              Relay status snapshot

Voice selections live in an in-memory store that the relay reads when a
participant joins.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
from aiohttp import web

from voice_relay.config import RelayConfig
from voice_relay.livekit_utils.tokens import create_access_token
from voice_relay.transform_client import TransformClient
from voice_relay.voices import InMemoryVoiceStore

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": (
        "Origin, X-Requested-With, Content-Type, Accept, Authorization"
    ),
}


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Allow cross-origin calls from development frontends."""
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=200)
    else:
        response = await handler(request)
    response.headers.update(CORS_HEADERS)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Render unknown routes and unhandled errors as JSON."""
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return web.json_response(
            {"error": "Route not found", "path": request.path_qs}, status=404
        )
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(
            "Unhandled control plane error",
            extra={"path": request.path, "error": str(e)},
            exc_info=True,
        )
        return web.json_response(
            {"error": "Internal server error", "details": str(e)}, status=500
        )


class ControlPlaneHandler:
    """Request handlers for the control plane."""

    def __init__(
        self,
        config: RelayConfig,
        store: InMemoryVoiceStore,
        transform_client: TransformClient,
        status_provider: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        """Initialize control plane handler.

        Args:
            config: Relay configuration (LiveKit credentials, default voice)
            store: Voice selection store shared with the relay
            transform_client: Client used to list available voices
            status_provider: Returns the relay status for /health (optional)
        """
        self.config = config
        self.store = store
        self.transform_client = transform_client
        self.status_provider = status_provider
        self.start_time = time.time()

    async def get_token(self, request: web.Request) -> web.Response:
        room_name = request.query.get("roomName")
        identity = request.query.get("identity")

        if not room_name or not identity:
            return web.json_response(
                {"error": "Missing required parameters: roomName and identity"}, status=400
            )

        livekit = self.config.livekit
        if not livekit.api_key or not livekit.api_secret:
            return web.json_response({"error": "LiveKit credentials not configured"}, status=500)

        try:
            token = create_access_token(livekit, room_name, identity)
        except Exception as e:
            logger.error("Failed to generate token", extra={"identity": identity, "error": str(e)})
            return web.json_response(
                {"error": "Failed to generate token", "details": str(e)}, status=500
            )

        logger.info("Token issued", extra={"room": room_name, "identity": identity})
        return web.json_response(
            {"token": token, "wsUrl": livekit.url, "room": room_name, "identity": identity}
        )

    async def list_voices(self, request: web.Request) -> web.Response:
        """Return the transformation service's voice list unchanged."""
        if not self.config.transform.api_key:
            return web.json_response(
                {"error": "ElevenLabs API key not configured"}, status=500
            )

        try:
            voices = await self.transform_client.list_voices()
        except aiohttp.ClientResponseError as e:
            if e.status == 401:
                logger.error("Voice service authentication failed", extra={"error": e.message})
                return web.json_response(
                    {
                        "error": "ElevenLabs API authentication failed",
                        "details": e.message or "Unauthorized - check API key and permissions",
                        "hint": "Check that the API key has the voices_read permission",
                    },
                    status=500,
                )
            logger.error("Failed to fetch voices", extra={"status": e.status, "error": e.message})
            return web.json_response(
                {"error": "Failed to fetch voices", "details": f"{e.status} {e.message}"},
                status=500,
            )
        except (TimeoutError, aiohttp.ClientError) as e:
            logger.error("Failed to fetch voices", extra={"error": str(e)})
            return web.json_response(
                {"error": "Failed to fetch voices", "details": str(e)}, status=500
            )

        return web.json_response(voices)

    async def set_voice(self, request: web.Request) -> web.Response:
        if request.content_type == "application/json":
            try:
                body = await request.json()
            except ValueError:
                return web.json_response({"error": "Invalid JSON body"}, status=400)
        else:
            body = dict(await request.post())

        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid JSON body"}, status=400)

        user_id = body.get("userId")
        voice_id = body.get("voiceId")
        if not user_id or not voice_id:
            return web.json_response(
                {"error": "Missing required parameters: userId and voiceId"}, status=400
            )

        self.store.set_voice(str(user_id), str(voice_id))
        logger.info("Voice selection stored", extra={"user_id": user_id, "voice_id": voice_id})
        return web.json_response({"success": True})

    async def get_voice(self, request: web.Request) -> web.Response:
        user_id = request.match_info["userId"]
        selection = self.store.get_voice(user_id) or self.config.control_plane.default_voice_id
        return web.json_response(
            {"success": True, "userId": user_id, "voiceSelection": selection}
        )

    async def health(self, request: web.Request) -> web.Response:
        """Relay health.

        Returns:
            200 OK: Relay is connected (or no relay is attached)
            503 Service Unavailable: Relay is disconnected
        """
        relay = self.status_provider() if self.status_provider is not None else None
        healthy = relay is None or bool(relay.get("connected"))
        return web.json_response(
            {
                "status": "healthy" if healthy else "unhealthy",
                "uptime_seconds": time.time() - self.start_time,
                "voice_selections": len(self.store),
                "relay": relay,
            },
            status=200 if healthy else 503,
        )


def create_app(
    config: RelayConfig,
    store: InMemoryVoiceStore,
    transform_client: TransformClient,
    status_provider: Callable[[], dict[str, Any]] | None = None,
) -> web.Application:
    """Build the control plane application.

    Args:
        config: Relay configuration
        store: Voice selection store
        transform_client: Client used by /voices
        status_provider: Relay status callback for /health

    Returns:
        Configured aiohttp application
    """
    handler = ControlPlaneHandler(config, store, transform_client, status_provider)

    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app.router.add_get("/get-token", handler.get_token)
    app.router.add_get("/voices", handler.list_voices)
    app.router.add_post("/set-voice", handler.set_voice)
    app.router.add_get("/get-voice/{userId}", handler.get_voice)
    app.router.add_get("/health", handler.health)

    logger.info(
        "Control plane endpoints configured: "
        "/get-token, /voices, /set-voice, /get-voice/{userId}, /health"
    )
    return app


async def start_control_plane(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Serve ``app`` on host:port; the caller cleans up the returned runner."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Control plane server started", extra={"host": host, "port": port})
    return runner
