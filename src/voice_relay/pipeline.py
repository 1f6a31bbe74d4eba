"""Per-speaker audio relay loop.

Consumes a speaker's inbound frames, batches them into chunks, sends each
chunk through the transformation client and publishes the transformed audio
into the speaker's route in 20ms frames.

State Transitions (per speaker):
- IDLE → STREAMING (inbound audio track observed and a route exists)
- STREAMING → DRAINING (inbound frame sequence exhausted)
- DRAINING → STOPPED (after at most one flush attempt)
- STREAMING → STOPPED (participant left or unrecoverable capture error)

Chunks are processed inline in the speaker's single task, so chunk n is
fully published (or abandoned) before chunk n+1 starts accumulating.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import asdict, dataclass
from enum import Enum

import numpy as np
from numpy.typing import NDArray

from voice_relay.audio.buffer import ChunkAccumulator
from voice_relay.audio.packetizer import split_into_frames
from voice_relay.config import ChunkingConfig, RecoveryConfig
from voice_relay.routes import Route, RouteError, RouteRegistry, StreamHandle
from voice_relay.transform_client import TransformClient, TransformStatus
from voice_relay.transport.base import ChannelError, ChannelFaultKind

logger = logging.getLogger(__name__)

FrameSource = AsyncIterator[NDArray[np.int16]]


class SpeakerState(Enum):
    """Relay loop states for one speaker."""

    IDLE = "idle"
    STREAMING = "streaming"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class RelayStats:
    """Process-wide relay counters."""

    streams_started: int = 0
    chunks_emitted: int = 0
    chunks_converted: int = 0
    chunks_skipped: int = 0
    chunks_failed: int = 0
    frames_published: int = 0
    routes_recreated: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class ExpiringSet:
    """Set of identities whose membership lapses after a fixed window."""

    def __init__(self, window_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = window_s
        self._clock = clock
        self._marked: dict[str, float] = {}

    def __contains__(self, identity: object) -> bool:
        marked_at = self._marked.get(identity)  # type: ignore[arg-type]
        if marked_at is None:
            return False
        return self._clock() - marked_at < self.window_s

    def __len__(self) -> int:
        return sum(1 for identity in list(self._marked) if identity in self)

    def add(self, identity: str) -> bool:
        """Mark ``identity``; returns False if it is already marked."""
        if identity in self:
            return False
        self._marked[identity] = self._clock()
        return True

    def purge_expired(self) -> int:
        """Forget expired marks and return how many were removed."""
        expired = [identity for identity in self._marked if identity not in self]
        for identity in expired:
            del self._marked[identity]
        return len(expired)


class AudioRelayPipeline:
    """Starts and runs per-speaker relay loops.

    Thread-safety: use from a single event loop. Distinct speakers run in
    independent tasks and only share the route registry and the
    transformation client's quota state.
    """

    def __init__(
        self,
        registry: RouteRegistry,
        client: TransformClient,
        chunking: ChunkingConfig | None = None,
        recovery: RecoveryConfig | None = None,
        self_identity_prefix: str = "audio-worker",
        output_sample_rate: int = 48000,
        is_connected: Callable[[], bool] = lambda: True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the relay pipeline.

        Args:
            registry: Source of truth for routes and stream tasks
            client: Transformation client
            chunking: Chunk duration, rate limit and output framing
            recovery: Route retry and recreation debounce timings
            self_identity_prefix: Identities with this prefix are our own output
            output_sample_rate: Sample rate of transformed PCM
            is_connected: Session connection check before each capture
            clock: Monotonic clock in seconds
        """
        self.registry = registry
        self.client = client
        self.chunking = chunking or ChunkingConfig()
        self.recovery = recovery or RecoveryConfig()
        self.self_identity_prefix = self_identity_prefix
        self.output_sample_rate = output_sample_rate
        self._is_connected = is_connected
        self._clock = clock

        self.recently_recreated = ExpiringSet(self.recovery.recreate_debounce_s, clock=clock)
        self.stats = RelayStats()
        self._states: dict[str, SpeakerState] = {}
        self._deferred: dict[str, asyncio.Task] = {}

    def state_of(self, identity: str) -> SpeakerState:
        return self._states.get(identity, SpeakerState.IDLE)

    def is_self(self, identity: str) -> bool:
        return identity.startswith(self.self_identity_prefix)

    def request_stream(self, identity: str, frames: FrameSource) -> bool:
        """Idle → Streaming transition for an observed inbound audio track.

        Ignores our own published output and identities already streaming.
        When no route exists yet, one retry is scheduled after
        ``route_retry_delay_s``; if the route is still missing then, the
        attempt is abandoned.

        Returns:
            True if a relay loop was started now
        """
        if not identity or self.is_self(identity):
            return False

        if self.registry.is_streaming(identity):
            logger.info("Audio stream already active, skipping duplicate", extra={"identity": identity})
            return False

        if self.registry.get(identity) is None:
            if identity in self._deferred:
                return False
            logger.info("Route not ready, retrying shortly", extra={"identity": identity})
            task = asyncio.create_task(self._start_when_routed(identity, frames))
            self._deferred[identity] = task
            return False

        return self._start(identity, frames)

    def cancel_pending(self, identity: str) -> None:
        """Cancel a scheduled route-readiness retry for ``identity``."""
        task = self._deferred.pop(identity, None)
        if task is not None:
            task.cancel()

    def stop(self, identity: str) -> bool:
        """Cooperatively stop the relay loop of ``identity``; no-op if none."""
        self.cancel_pending(identity)
        return self.registry.stop_stream(identity)

    async def shutdown(self) -> None:
        """Cancel retries and every running relay loop."""
        for identity in list(self._deferred):
            self.cancel_pending(identity)
        await self.registry.cancel_all_streams()

    async def _start_when_routed(self, identity: str, frames: FrameSource) -> None:
        try:
            await asyncio.sleep(self.recovery.route_retry_delay_s)
        finally:
            self._deferred.pop(identity, None)

        if self.registry.get(identity) is None:
            logger.warning(
                "Route still not available after retry, abandoning stream",
                extra={"identity": identity},
            )
            return
        self._start(identity, frames)

    def _start(self, identity: str, frames: FrameSource) -> bool:
        handle = self.registry.start_stream(identity, lambda h: self._run(h, frames))
        if handle is None:
            return False

        self.stats.streams_started += 1
        route = self.registry.get(identity)
        logger.info(
            "Starting audio stream",
            extra={"identity": identity, "voice_id": route.voice_id if route else None},
        )
        return True

    async def _run(self, handle: StreamHandle, frames: FrameSource) -> None:
        identity = handle.identity
        accumulator = ChunkAccumulator(
            sample_rate=self.chunking.sample_rate,
            chunk_ms=self.chunking.chunk_ms,
            min_interval_ms=self.chunking.min_interval_ms,
            flush_min_fraction=self.chunking.flush_min_fraction,
            clock=self._clock,
        )
        self._states[identity] = SpeakerState.STREAMING

        try:
            while not handle.stopped:
                try:
                    block = await anext(frames)
                except StopAsyncIteration:
                    break
                if handle.stopped:
                    break
                accumulator.push(block)
                if accumulator.ready():
                    await self._relay_chunk(handle, accumulator.drain())

            if not handle.stopped:
                self._states[identity] = SpeakerState.DRAINING
                tail = accumulator.flush()
                if tail is not None:
                    await self._relay_chunk(handle, tail)

            logger.info("Audio stream ended", extra={"identity": identity})

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Audio stream failed",
                extra={"identity": identity, "error": str(e)},
                exc_info=True,
            )
        finally:
            self._states.pop(identity, None)
            close = getattr(frames, "aclose", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.debug("Error closing frame source", extra={"error": str(e)})

    async def _relay_chunk(self, handle: StreamHandle, samples: NDArray[np.int16]) -> None:
        """Transform one chunk and publish the result; never raises for chunk faults."""
        identity = handle.identity
        self.stats.chunks_emitted += 1

        route = self.registry.get(identity)
        if route is None:
            logger.debug("No route for speaker, dropping chunk", extra={"identity": identity})
            self.stats.chunks_skipped += 1
            return

        if not self._is_connected():
            logger.debug("Session not connected, dropping chunk", extra={"identity": identity})
            self.stats.chunks_skipped += 1
            return

        result = await self.client.convert(route.voice_id, samples)

        if result.ok and result.pcm is not None:
            self.stats.chunks_converted += 1
            published = await self._publish(handle, route, result.pcm)
            logger.debug(
                "Voice transformation complete",
                extra={"identity": identity, "samples": int(result.pcm.size), "frames": published},
            )
            return

        if result.skipped:
            self.stats.chunks_skipped += 1
            return

        self.stats.chunks_failed += 1
        if result.status is TransformStatus.QUOTA:
            return

        logger.warning(
            "Voice transformation failed, dropping chunk",
            extra={
                "identity": identity,
                "kind": result.status.value,
                "status": result.http_status,
                "detail": result.detail,
            },
        )

    async def _publish(self, handle: StreamHandle, route: Route, pcm: NDArray[np.int16]) -> int:
        """Capture transformed PCM into ``route`` frame by frame.

        The chunk is abandoned as soon as the stream is stopped or the
        identity's registered route is no longer ``route``.

        Returns:
            Number of frames captured
        """
        identity = handle.identity
        published = 0
        for frame in split_into_frames(pcm, self.output_sample_rate, self.chunking.frame_ms):
            if handle.stopped:
                logger.info("Stream stopped during publish", extra={"identity": identity})
                break

            if not self._is_connected():
                logger.info("Session disconnected during publish", extra={"identity": identity})
                break

            if self.registry.get(identity) is not route or not route.channel.is_open:
                logger.info("Route removed during publish", extra={"identity": identity})
                break

            try:
                await route.channel.capture(frame)
            except ChannelError as e:
                if e.kind is ChannelFaultKind.INVALID:
                    await self._recover_route(route)
                else:
                    logger.warning(
                        "Frame capture failed, abandoning chunk",
                        extra={"identity": identity, "frame": published + 1, "error": str(e)},
                    )
                break

            published += 1

        self.stats.frames_published += published
        return published

    async def _recover_route(self, route: Route) -> None:
        identity = route.identity
        if self.registry.get(identity) is not route:
            return
        if not self.recently_recreated.add(identity):
            logger.debug("Route recently recreated, not retrying", extra={"identity": identity})
            return

        logger.info("Output channel invalid, recreating route", extra={"identity": identity})
        try:
            await self.registry.recreate_route(identity)
        except RouteError as e:
            logger.error(
                "Failed to recreate route",
                extra={"identity": identity, "error": str(e)},
            )
            return
        self.stats.routes_recreated += 1
