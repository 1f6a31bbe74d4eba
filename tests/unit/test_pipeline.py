"""Unit tests for AudioRelayPipeline.

Drives per-speaker relay loops with synthetic frame sources, a fake
transformation client and fake output channels.
"""

import asyncio
import logging

import numpy as np
import pytest

from tests.helpers.relay_fakes import (
    FakeClock,
    FakePublisher,
    FakeTransformClient,
    frames_of,
    speech_frames,
    wait_until,
)
from voice_relay.config import ChunkingConfig, RecoveryConfig
from voice_relay.pipeline import AudioRelayPipeline, ExpiringSet, SpeakerState
from voice_relay.routes import RouteRegistry
from voice_relay.transform_client import TransformResult, TransformStatus
from voice_relay.transport.base import ChannelFaultKind
from voice_relay.utils.logging import LOG_FORMAT, ContextFormatter


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def registry(publisher: FakePublisher) -> RouteRegistry:
    return RouteRegistry(publisher)


@pytest.fixture
def client() -> FakeTransformClient:
    return FakeTransformClient()


@pytest.fixture
def connected() -> dict[str, bool]:
    return {"value": True}


@pytest.fixture
def pipeline(
    registry: RouteRegistry,
    client: FakeTransformClient,
    clock: FakeClock,
    connected: dict[str, bool],
) -> AudioRelayPipeline:
    return AudioRelayPipeline(
        registry,
        client,  # type: ignore[arg-type]
        chunking=ChunkingConfig(min_interval_ms=0),
        recovery=RecoveryConfig(route_retry_delay_s=0.01, recreate_debounce_s=5.0),
        is_connected=lambda: connected["value"],
        clock=clock,
    )


async def run_stream(pipeline: AudioRelayPipeline, identity: str, duration_ms: int) -> None:
    assert pipeline.request_stream(identity, frames_of(speech_frames(duration_ms)))
    handle_task = pipeline.registry._streams[identity].task
    await handle_task


class TestChunking:
    """Test chunk emission through the relay loop."""

    async def test_one_and_a_half_seconds_makes_two_calls(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        client: FakeTransformClient,
        publisher: FakePublisher,
    ) -> None:
        await registry.create_route("alice", "voice-a")

        await run_stream(pipeline, "alice", 1500)

        assert [call[1].size for call in client.calls] == [48000, 24000]
        assert all(call[0] == "voice-a" for call in client.calls)
        channel = publisher.channels[0]
        assert len(channel.frames) == 75
        assert all(frame.size == 960 for frame in channel.frames)
        assert pipeline.stats.chunks_emitted == 2
        assert pipeline.stats.chunks_converted == 2
        assert pipeline.stats.frames_published == 75

    async def test_short_tail_not_sent(
        self, pipeline: AudioRelayPipeline, registry: RouteRegistry, client: FakeTransformClient
    ) -> None:
        await registry.create_route("alice", "voice-a")

        await run_stream(pipeline, "alice", 1400)

        assert [call[1].size for call in client.calls] == [48000]

    async def test_published_audio_preserves_order(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        publisher: FakePublisher,
    ) -> None:
        await registry.create_route("alice", "voice-a")
        blocks = [np.full(960, i, dtype=np.int16) for i in range(50)]

        assert pipeline.request_stream("alice", frames_of(blocks))
        await registry._streams["alice"].task

        channel = publisher.channels[0]
        assert [int(frame[0]) for frame in channel.frames] == list(range(50))

    async def test_state_returns_to_idle(
        self, pipeline: AudioRelayPipeline, registry: RouteRegistry
    ) -> None:
        await registry.create_route("alice", "voice-a")
        hold = asyncio.Event()

        pipeline.request_stream("alice", frames_of(speech_frames(100), hold=hold))
        await wait_until(lambda: pipeline.state_of("alice") is SpeakerState.STREAMING)

        hold.set()
        await registry._streams["alice"].task
        assert pipeline.state_of("alice") is SpeakerState.IDLE


class TestStreamStart:
    """Test when relay loops are started."""

    async def test_self_identity_ignored(
        self, pipeline: AudioRelayPipeline, registry: RouteRegistry
    ) -> None:
        await registry.create_route("audio-worker", "voice-a")

        assert not pipeline.request_stream("audio-worker", frames_of([]))
        assert not pipeline.request_stream("audio-worker-2", frames_of([]))
        assert not registry.is_streaming("audio-worker")

    async def test_duplicate_request_is_noop(
        self, pipeline: AudioRelayPipeline, registry: RouteRegistry
    ) -> None:
        await registry.create_route("alice", "voice-a")
        hold = asyncio.Event()

        assert pipeline.request_stream("alice", frames_of([], hold=hold))
        assert not pipeline.request_stream("alice", frames_of([]))
        assert pipeline.stats.streams_started == 1

        hold.set()
        await registry._streams["alice"].task

    async def test_route_ready_on_retry(
        self, pipeline: AudioRelayPipeline, registry: RouteRegistry, client: FakeTransformClient
    ) -> None:
        assert not pipeline.request_stream("alice", frames_of(speech_frames(1000)))
        await registry.create_route("alice", "voice-a")

        await wait_until(lambda: len(client.calls) == 1)
        assert client.calls[0][0] == "voice-a"

    async def test_route_missing_after_retry_abandons(
        self, pipeline: AudioRelayPipeline, registry: RouteRegistry
    ) -> None:
        assert not pipeline.request_stream("alice", frames_of(speech_frames(1000)))
        # A second request while the retry is pending does not schedule another
        assert not pipeline.request_stream("alice", frames_of(speech_frames(1000)))

        await asyncio.sleep(0.05)

        assert not registry.is_streaming("alice")
        assert pipeline.stats.streams_started == 0

    async def test_stop_cancels_pending_retry(
        self, pipeline: AudioRelayPipeline, registry: RouteRegistry
    ) -> None:
        pipeline.request_stream("alice", frames_of(speech_frames(1000)))
        pipeline.stop("alice")
        await registry.create_route("alice", "voice-a")

        await asyncio.sleep(0.05)

        assert pipeline.stats.streams_started == 0


class TestStop:
    """Test leave and shutdown behaviour."""

    async def test_stop_at_chunk_boundary(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        client: FakeTransformClient,
    ) -> None:
        await registry.create_route("alice", "voice-a")
        hold = asyncio.Event()

        pipeline.request_stream("alice", frames_of(speech_frames(1600), hold=hold))
        await wait_until(lambda: len(client.calls) == 1)
        assert pipeline.stop("alice")
        hold.set()
        await registry._streams["alice"].task

        # The 600ms tail is not flushed after a stop
        assert len(client.calls) == 1

    async def test_shutdown_cancels_streams(
        self, pipeline: AudioRelayPipeline, registry: RouteRegistry
    ) -> None:
        await registry.create_route("alice", "voice-a")
        pipeline.request_stream("alice", frames_of([], hold=asyncio.Event()))
        pipeline.request_stream("bob", frames_of([]))

        await pipeline.shutdown()

        assert registry.streaming_identities == []

    async def test_route_removed_drops_chunks(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        client: FakeTransformClient,
    ) -> None:
        await registry.create_route("alice", "voice-a")
        hold = asyncio.Event()
        pipeline.request_stream("alice", frames_of(speech_frames(1000), hold=hold))
        await wait_until(lambda: len(client.calls) == 1)

        await registry.remove_route("alice")
        hold.set()
        await registry._streams["alice"].task

        assert len(client.calls) == 1

    async def test_disconnected_session_publishes_nothing(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        publisher: FakePublisher,
        client: FakeTransformClient,
        connected: dict[str, bool],
    ) -> None:
        await registry.create_route("alice", "voice-a")
        connected["value"] = False

        await run_stream(pipeline, "alice", 1000)

        assert publisher.channels[0].frames == []
        assert client.calls == []
        assert pipeline.stats.chunks_skipped == 1


class TestTransformOutcomes:
    """Test chunk handling for non-converted results."""

    async def test_silence_and_quota_publish_nothing(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        client: FakeTransformClient,
        publisher: FakePublisher,
    ) -> None:
        client.results = [
            TransformResult(TransformStatus.SKIPPED_SILENCE, level_db=-120.0),
            TransformResult(TransformStatus.QUOTA, http_status=429),
            TransformResult(TransformStatus.SKIPPED_QUOTA),
            TransformResult(TransformStatus.SERVICE_ERROR, http_status=500, detail="boom"),
        ]
        await registry.create_route("alice", "voice-a")

        await run_stream(pipeline, "alice", 4000)

        assert len(client.calls) == 4
        assert publisher.channels[0].frames == []
        assert pipeline.stats.chunks_skipped == 2
        assert pipeline.stats.chunks_failed == 2

    async def test_failure_does_not_stop_stream(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        client: FakeTransformClient,
        publisher: FakePublisher,
    ) -> None:
        client.results = [TransformResult(TransformStatus.TIMEOUT, detail="timed out")]
        await registry.create_route("alice", "voice-a")

        await run_stream(pipeline, "alice", 2000)

        assert len(client.calls) == 2
        assert len(publisher.channels[0].frames) == 50


class TestRouteRecovery:
    """Test reactions to capture faults."""

    async def test_invalid_channel_recreated_once_within_window(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        publisher: FakePublisher,
        clock: FakeClock,
    ) -> None:
        publisher.fault_for_new = ChannelFaultKind.INVALID
        await registry.create_route("alice", "voice-a")

        await run_stream(pipeline, "alice", 2000)

        # First chunk recreates the route; the second is inside the window
        assert len(publisher.channels) == 2
        assert pipeline.stats.routes_recreated == 1
        assert registry.get("alice").voice_id == "voice-a"

        clock.advance(5.0)
        await run_stream(pipeline, "alice", 1000)

        assert len(publisher.channels) == 3
        assert pipeline.stats.routes_recreated == 2

    async def test_transient_failure_abandons_chunk_only(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        publisher: FakePublisher,
    ) -> None:
        route = await registry.create_route("alice", "voice-a")
        channel = route.channel
        channel.fault = ChannelFaultKind.FAILED
        channel.fail_after = 10

        await run_stream(pipeline, "alice", 2000)

        assert len(channel.frames) == 10
        assert len(publisher.channels) == 1
        assert pipeline.stats.routes_recreated == 0

    async def test_recreate_failure_is_logged(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        publisher: FakePublisher,
    ) -> None:
        publisher.fault_for_new = ChannelFaultKind.INVALID
        await registry.create_route("alice", "voice-a")
        publisher.fail_publish = True

        await run_stream(pipeline, "alice", 1000)

        assert registry.get("alice") is None
        assert pipeline.stats.routes_recreated == 0


class TestExpiringSet:
    def test_window(self) -> None:
        clock = FakeClock(0.0)
        marks = ExpiringSet(5.0, clock=clock)

        assert marks.add("alice")
        assert not marks.add("alice")
        assert "alice" in marks
        assert len(marks) == 1

        clock.advance(5.0)
        assert "alice" not in marks
        assert marks.purge_expired() == 1
        assert marks.add("alice")


class TestRejoin:
    """Test a participant leaving and rejoining while a chunk is in flight."""

    async def test_rejoin_during_convert_starts_new_stream(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        client: FakeTransformClient,
        publisher: FakePublisher,
    ) -> None:
        await registry.create_route("alice", "voice-a")
        gate = asyncio.Event()
        client.gate = gate
        pipeline.request_stream("alice", frames_of(speech_frames(1000), hold=asyncio.Event()))
        await wait_until(lambda: len(client.calls) == 1)
        old_task = registry._streams["alice"].task

        # Leave, then rejoin with a new voice before the first convert returns
        pipeline.stop("alice")
        await registry.remove_route("alice")
        new_route = await registry.create_route("alice", "voice-b")
        client.gate = None

        assert pipeline.request_stream("alice", frames_of(speech_frames(1000)))
        assert registry.is_streaming("alice")
        new_task = registry._streams["alice"].task

        gate.set()
        await old_task
        await new_task

        assert [call[0] for call in client.calls] == ["voice-a", "voice-b"]
        assert publisher.channels[0].frames == []
        assert len(new_route.channel.frames) == 50
        assert pipeline.stats.streams_started == 2

    async def test_replaced_route_not_written_by_in_flight_chunk(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        client: FakeTransformClient,
        publisher: FakePublisher,
    ) -> None:
        await registry.create_route("alice", "voice-a")
        gate = asyncio.Event()
        client.gate = gate
        hold = asyncio.Event()
        pipeline.request_stream("alice", frames_of(speech_frames(1000), hold=hold))
        await wait_until(lambda: len(client.calls) == 1)

        await registry.create_route("alice", "voice-b")
        gate.set()
        await wait_until(lambda: pipeline.stats.chunks_converted == 1)

        assert [len(channel.frames) for channel in publisher.channels] == [0, 0]
        assert pipeline.stats.frames_published == 0

        hold.set()
        await registry._streams["alice"].task


class TestLogging:
    async def test_failure_log_carries_identity_and_kind(
        self,
        pipeline: AudioRelayPipeline,
        registry: RouteRegistry,
        client: FakeTransformClient,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        client.results = [TransformResult(TransformStatus.SERVICE_ERROR, http_status=500)]
        await registry.create_route("alice", "voice-a")

        with caplog.at_level(logging.WARNING, logger="voice_relay.pipeline"):
            await run_stream(pipeline, "alice", 1000)

        record = next(
            r for r in caplog.records if r.getMessage() == "Voice transformation failed, dropping chunk"
        )
        line = ContextFormatter(LOG_FORMAT).format(record)
        assert '"identity": "alice"' in line
        assert '"kind": "service_error"' in line
        assert '"status": 500' in line
