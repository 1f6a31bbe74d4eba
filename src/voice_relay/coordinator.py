"""Session coordinator for the voice relay.

Owns the room connection lifecycle and participant bookkeeping:
1. Connects to the room and builds routes for participants already present
   before any of their audio is relayed
2. Assigns a voice and creates a route when a participant joins
3. Starts a relay loop when a participant's audio track is subscribed
4. Stops the loop, removes the route and forgets the voice when they leave
5. Schedules a single reconnect attempt after a connection loss
6. Runs a low-frequency housekeeping timer (quota and debounce expiry,
   periodic status log)

Nothing survives a reconnect: routes, voice assignments and stream tasks
are rebuilt from scratch for every connection.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from livekit import rtc

from voice_relay.config import RelayConfig
from voice_relay.livekit_utils.tokens import create_access_token
from voice_relay.pipeline import AudioRelayPipeline, FrameSource
from voice_relay.routes import RouteError, RouteRegistry
from voice_relay.transform_client import TransformClient
from voice_relay.transport.base import TrackPublisher
from voice_relay.transport.livekit_transport import (
    LiveKitTrackPublisher,
    classify_disconnect,
    is_audio_track,
    iter_track_frames,
)
from voice_relay.voices import VoiceAssigner, VoiceAssignment

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Session connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class SessionState:
    """Session-scoped state owned by the coordinator."""

    room_name: str
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    reconnect_attempts: int = 0
    voices: dict[str, VoiceAssignment] = field(default_factory=dict)


class SessionCoordinator:
    """Connects the relay to one room and keeps per-participant state consistent.

    Event callbacks from the room are synchronous; each one spawns a task so
    no handler blocks the room's event dispatch.
    """

    def __init__(
        self,
        config: RelayConfig,
        voice_assigner: VoiceAssigner,
        transform_client: TransformClient,
        room_factory: Callable[[], rtc.Room] = rtc.Room,
        publisher_factory: Callable[[rtc.Room], TrackPublisher] | None = None,
        frame_source: Callable[[rtc.Track], FrameSource] | None = None,
        token_factory: Callable[[str, str], str] | None = None,
    ) -> None:
        """Initialize session coordinator.

        Args:
            config: Relay configuration
            voice_assigner: Resolves voices for joining participants
            transform_client: Shared transformation client (holds quota state)
            room_factory: Creates a fresh room per connection
            publisher_factory: Builds the output publisher for a room
            frame_source: Turns a subscribed track into an inbound frame stream
            token_factory: Issues the relay's access token (room, identity)
        """
        self.config = config
        self.voice_assigner = voice_assigner
        self.client = transform_client
        self.state = SessionState(room_name=config.livekit.room_name)

        self._room_factory = room_factory
        self._publisher_factory = publisher_factory or (
            lambda room: LiveKitTrackPublisher(room, config.transform.output_sample_rate)
        )
        self._frame_source = frame_source or (
            lambda track: iter_track_frames(track, config.chunking.sample_rate)
        )
        self._token_factory = token_factory or (
            lambda room_name, identity: create_access_token(
                config.livekit, room_name, identity, can_update_own_metadata=True
            )
        )

        self.room: rtc.Room | None = None
        self.registry: RouteRegistry | None = None
        self.pipeline: AudioRelayPipeline | None = None

        self._ready = asyncio.Event()
        self._pending_joins: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._reconnect_task: asyncio.Task | None = None
        self._housekeeping_task: asyncio.Task | None = None
        self._closed = False

    @property
    def identity(self) -> str:
        return self.config.livekit.identity

    @property
    def voices(self) -> dict[str, VoiceAssignment]:
        return self.state.voices

    @property
    def is_connected(self) -> bool:
        return self.room is not None and self._room_connected(self.room)

    @staticmethod
    def _room_connected(room: rtc.Room) -> bool:
        return room.connection_state == rtc.ConnectionState.CONN_CONNECTED

    # Connection lifecycle

    async def connect(self, room_name: str | None = None) -> None:
        """Connect to the room and build routes for everyone already present.

        Raises:
            ConnectionError: If the room connection fails
        """
        if self._closed:
            raise RuntimeError("Session coordinator is closed")

        self._cancel_stale_reconnect()
        await self._teardown_session(disconnect_room=True)

        room_name = room_name or self.state.room_name
        self.state.room_name = room_name
        self.state.connection_state = ConnectionState.CONNECTING

        room = self._room_factory()
        self.room = room
        self.registry = RouteRegistry(
            self._publisher_factory(room), route_prefix=self.config.livekit.route_prefix
        )
        self.pipeline = AudioRelayPipeline(
            self.registry,
            self.client,
            chunking=self.config.chunking,
            recovery=self.config.recovery,
            self_identity_prefix=self.identity,
            output_sample_rate=self.config.transform.output_sample_rate,
            is_connected=lambda: self._room_connected(room),
        )
        self._ready = asyncio.Event()
        self._register_handlers(room)

        logger.info(
            "Connecting to room",
            extra={"room": room_name, "identity": self.identity, "url": self.config.livekit.url},
        )

        try:
            token = self._token_factory(room_name, self.identity)
            await room.connect(
                self.config.livekit.url,
                token,
                options=rtc.RoomOptions(auto_subscribe=True),
            )
        except Exception as e:
            self._detach_session()
            raise ConnectionError(f"Failed to connect to room '{room_name}': {e}") from e

        self.state.connection_state = ConnectionState.CONNECTED
        logger.info("Connected to room", extra={"room": room_name})

        # Routes for participants already present must exist before any
        # track-subscribed event is processed.
        existing = [
            p.identity
            for p in list(room.remote_participants.values())
            if p.identity and not p.identity.startswith(self.identity)
        ]
        ready = self._ready
        joins = [self._begin_join(identity) for identity in existing]
        if joins:
            await asyncio.gather(*joins, return_exceptions=True)
        if ready is not self._ready:
            return
        ready.set()

        logger.info(
            "Existing participants routed",
            extra={"room": room_name, "count": len(existing), "participants": existing},
        )
        self._ensure_housekeeping()

    async def disconnect(self) -> None:
        """Intentionally leave the room; no reconnect is scheduled."""
        self._cancel_stale_reconnect()
        await self._teardown_session(disconnect_room=True, unpublish=True)

    async def close(self) -> None:
        """Disconnect and release every resource owned by the coordinator."""
        if self._closed:
            return
        self._closed = True

        await self.disconnect()

        if self._housekeeping_task is not None:
            self._housekeeping_task.cancel()
            await asyncio.gather(self._housekeeping_task, return_exceptions=True)
            self._housekeeping_task = None

        background = list(self._background)
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)

        await self.client.close()
        await self.voice_assigner.lookup.close()
        logger.info("Session coordinator closed")

    async def _teardown_session(self, disconnect_room: bool, unpublish: bool = False) -> None:
        await self._dispose_session(
            *self._detach_session(), disconnect_room=disconnect_room, unpublish=unpublish
        )

    def _detach_session(
        self,
    ) -> tuple[rtc.Room | None, AudioRelayPipeline | None, RouteRegistry | None, list[asyncio.Task]]:
        """Forget the current session synchronously so later events cannot reach it."""
        room, pipeline, registry = self.room, self.pipeline, self.registry
        self.room = None
        self.pipeline = None
        self.registry = None

        # Release track handlers still waiting on the previous session
        stale_ready = self._ready
        self._ready = asyncio.Event()
        stale_ready.set()

        joins = list(self._pending_joins.values())
        self._pending_joins.clear()
        self.state.voices.clear()
        self.state.connection_state = ConnectionState.DISCONNECTED
        return room, pipeline, registry, joins

    async def _dispose_session(
        self,
        room: rtc.Room | None,
        pipeline: AudioRelayPipeline | None,
        registry: RouteRegistry | None,
        joins: list[asyncio.Task],
        disconnect_room: bool,
        unpublish: bool = False,
    ) -> None:
        for task in joins:
            task.cancel()
        if joins:
            await asyncio.gather(*joins, return_exceptions=True)

        if pipeline is not None:
            await pipeline.shutdown()
        if registry is not None:
            await registry.clear(unpublish=unpublish)

        if disconnect_room and room is not None:
            try:
                await room.disconnect()
            except Exception as e:
                logger.warning("Error disconnecting from room", extra={"error": str(e)})

    def _cancel_stale_reconnect(self) -> None:
        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if task is not asyncio.current_task():
            self._reconnect_task = None

    # Room events

    def _register_handlers(self, room: rtc.Room) -> None:
        def on_participant_connected(participant: rtc.RemoteParticipant) -> None:
            if room is self.room:
                self.on_participant_connected(participant.identity)

        def on_participant_disconnected(participant: rtc.RemoteParticipant) -> None:
            if room is self.room:
                self.on_participant_disconnected(participant.identity)

        def on_track_subscribed(
            track: rtc.Track,
            publication: rtc.RemoteTrackPublication,
            participant: rtc.RemoteParticipant,
        ) -> None:
            if room is self.room:
                self.on_track_subscribed(track, participant.identity)

        def on_track_unsubscribed(
            track: rtc.Track,
            publication: rtc.RemoteTrackPublication,
            participant: rtc.RemoteParticipant,
        ) -> None:
            logger.info("Track unsubscribed", extra={"identity": participant.identity})

        def on_disconnected(reason: Any = None) -> None:
            if room is self.room:
                self.on_disconnected(reason)

        room.on("participant_connected", on_participant_connected)
        room.on("participant_disconnected", on_participant_disconnected)
        room.on("track_subscribed", on_track_subscribed)
        room.on("track_unsubscribed", on_track_unsubscribed)
        room.on("disconnected", on_disconnected)

    def on_participant_connected(self, identity: str) -> None:
        if not identity or identity.startswith(self.identity):
            return
        logger.info("Participant connected", extra={"identity": identity})
        self._begin_join(identity)

    def on_participant_disconnected(self, identity: str) -> None:
        if not identity:
            return
        logger.info("Participant disconnected", extra={"identity": identity})
        self._spawn(self.handle_participant_left(identity), name=f"leave-{identity}")

    def on_track_subscribed(self, track: rtc.Track, identity: str) -> None:
        if not is_audio_track(track):
            return
        if not identity or identity.startswith(self.identity):
            return
        logger.info("Audio track subscribed", extra={"identity": identity})
        self._spawn(self._start_relay(track, identity), name=f"track-{identity}")

    def on_disconnected(self, reason: Any) -> None:
        kind = classify_disconnect(reason)
        logger.info(
            "Disconnected from room",
            extra={"reason": str(reason), "kind": kind.value},
        )
        session = self._detach_session()
        self._spawn(self._dispose_session(*session, disconnect_room=False), name="teardown")

        if self._closed or not kind.should_reconnect:
            logger.info("Not reconnecting after disconnect", extra={"kind": kind.value})
            return
        self._schedule_reconnect()

    # Participant handling

    async def handle_participant_joined(self, identity: str) -> None:
        """Assign a voice and create the participant's route.

        Lookup falls back to the default voice; a route failure is logged and
        leaves the participant without a route.
        """
        registry = self.registry
        if registry is None:
            return

        assignment = await self.voice_assigner.assign(identity)
        if registry is not self.registry:
            return
        self.state.voices[identity] = assignment
        logger.info(
            "Voice assigned",
            extra={
                "identity": identity,
                "voice_id": assignment.voice_id,
                "voice": assignment.display_name,
            },
        )

        try:
            route = await registry.create_route(identity, assignment.voice_id)
        except RouteError as e:
            logger.error("Failed to create route", extra={"identity": identity, "error": str(e)})
            return

        logger.info(
            "Route created",
            extra={"identity": identity, "route": route.route_key, "voice_id": route.voice_id},
        )
        self._start_existing_tracks(identity)

    async def handle_participant_left(self, identity: str) -> None:
        """Stop the relay loop, remove the route, then forget the voice."""
        join = self._pending_joins.get(identity)
        if join is not None and join is not asyncio.current_task():
            await asyncio.gather(join, return_exceptions=True)

        if self.pipeline is not None:
            self.pipeline.stop(identity)
        if self.registry is not None:
            await self.registry.remove_route(identity)
        self.state.voices.pop(identity, None)
        logger.info("Participant cleaned up", extra={"identity": identity})

    async def _start_relay(self, track: rtc.Track, identity: str) -> None:
        ready = self._ready
        await ready.wait()
        if ready is not self._ready or self.pipeline is None:
            return

        join = self._pending_joins.get(identity)
        if join is not None:
            await asyncio.gather(join, return_exceptions=True)
            if ready is not self._ready or self.pipeline is None:
                return

        self.pipeline.request_stream(identity, self._frame_source(track))

    def _start_existing_tracks(self, identity: str) -> None:
        """Start relaying an audio track that was subscribed before the route existed."""
        if self.room is None or self.pipeline is None:
            return
        if self.pipeline.registry.is_streaming(identity):
            return

        participant = self.room.remote_participants.get(identity)
        if participant is None:
            return

        for publication in participant.track_publications.values():
            track = publication.track
            if track is not None and is_audio_track(track):
                logger.info("Starting audio stream for existing track", extra={"identity": identity})
                self.pipeline.request_stream(identity, self._frame_source(track))
                break

    def _begin_join(self, identity: str) -> asyncio.Task:
        """Run the join of ``identity`` as a task a later leave can wait for."""
        task = self._spawn(self.handle_participant_joined(identity), name=f"join-{identity}")
        self._pending_joins[identity] = task
        task.add_done_callback(lambda t: self._forget_join(identity, t))
        return task

    def _forget_join(self, identity: str, task: asyncio.Task) -> None:
        if self._pending_joins.get(identity) is task:
            del self._pending_joins[identity]

    # Reconnect and housekeeping

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay(), name="reconnect")

    async def _reconnect_after_delay(self) -> None:
        delay = self.config.recovery.reconnect_delay_s
        logger.info("Reconnect scheduled", extra={"delay_s": delay})
        await asyncio.sleep(delay)

        self.state.reconnect_attempts += 1
        logger.info("Attempting to reconnect", extra={"attempt": self.state.reconnect_attempts})
        try:
            await self.connect(self.state.room_name)
        except ConnectionError as e:
            logger.error("Reconnect failed", extra={"error": str(e)})
            return
        logger.info("Reconnection successful", extra={"room": self.state.room_name})

    def _ensure_housekeeping(self) -> None:
        if self._housekeeping_task is None or self._housekeeping_task.done():
            self._housekeeping_task = asyncio.create_task(
                self._housekeeping_loop(), name="housekeeping"
            )

    async def _housekeeping_loop(self) -> None:
        interval = self.config.recovery.housekeeping_interval_s
        while True:
            await asyncio.sleep(interval)
            self.run_housekeeping()

    def run_housekeeping(self) -> None:
        """Expire quota and debounce markers and log the relay status."""
        if self.client.quota.expire():
            logger.info("Quota cooldown elapsed, resuming transformation")
        if self.pipeline is not None:
            self.pipeline.recently_recreated.purge_expired()
        logger.info("Room status", extra={"status": self.status()})

    def status(self) -> dict[str, Any]:
        """Snapshot of the relay for logs and the health endpoint."""
        participants = list(self.room.remote_participants) if self.room is not None else []
        return {
            "connected": self.is_connected,
            "room_name": self.state.room_name,
            "connection_state": self.state.connection_state.value,
            "participant_count": len(participants),
            "participants": participants,
            "active_routes": len(self.registry) if self.registry is not None else 0,
            "active_voice_transforms": (
                len(self.registry.streaming_identities) if self.registry is not None else 0
            ),
            "reconnect_attempts": self.state.reconnect_attempts,
            "quota_exhausted": self.client.quota.is_exhausted(),
            "transform_requests": self.client.requests_sent,
            "stats": self.pipeline.stats.as_dict() if self.pipeline is not None else {},
        }

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            logger.error(
                "Background task failed",
                extra={"task": task.get_name(), "error": str(exc)},
                exc_info=exc,
            )
