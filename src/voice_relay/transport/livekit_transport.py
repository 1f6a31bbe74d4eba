"""LiveKit transport implementation for relay output channels.

Wraps ``rtc.AudioSource``/``rtc.LocalAudioTrack`` as output channels,
reads subscribed remote tracks as int16 frame streams, and classifies
capture errors and disconnect reasons once, at this boundary.
"""

import logging
from collections.abc import AsyncIterator

import numpy as np
from livekit import rtc
from numpy.typing import NDArray

from voice_relay.audio.packetizer import CHANNELS, SAMPLE_RATE_HZ
from voice_relay.transport.base import (
    ChannelError,
    ChannelFaultKind,
    DisconnectKind,
    OutputChannel,
    TrackPublisher,
)

logger = logging.getLogger(__name__)

# Messages raised by the native capture path once the source is unusable
INVALID_CAPTURE_MARKERS = ("InvalidState", "failed to capture frame")

CONNECTION_LOST_REASONS = frozenset(
    {
        "UNKNOWN_REASON",
        "SIGNAL_CLOSE",
        "CONNECTION_TIMEOUT",
        "MEDIA_FAILURE",
        "STATE_MISMATCH",
        "JOIN_FAILURE",
    }
)
CLIENT_INITIATED_REASONS = frozenset({"CLIENT_INITIATED"})


def classify_disconnect(reason: object) -> DisconnectKind:
    """Map a LiveKit disconnect reason to a DisconnectKind.

    Args:
        reason: ``rtc.DisconnectReason`` value (int) or its name

    Returns:
        CONNECTION_LOST for transport-level losses, CLIENT_INITIATED for our
        own disconnects, SERVER_INITIATED for everything else
    """
    if isinstance(reason, str):
        name = reason
    else:
        try:
            name = rtc.DisconnectReason.Name(reason)  # type: ignore[arg-type]
        except (ValueError, TypeError):
            name = "UNKNOWN_REASON"

    if name in CLIENT_INITIATED_REASONS:
        return DisconnectKind.CLIENT_INITIATED
    if name in CONNECTION_LOST_REASONS:
        return DisconnectKind.CONNECTION_LOST
    return DisconnectKind.SERVER_INITIATED


def classify_capture_error(error: Exception) -> ChannelFaultKind:
    """Classify a native capture exception."""
    message = str(error)
    if any(marker in message for marker in INVALID_CAPTURE_MARKERS):
        return ChannelFaultKind.INVALID
    return ChannelFaultKind.FAILED


class LiveKitOutputChannel(OutputChannel):
    """Audio source and local track published for one route."""

    def __init__(
        self,
        name: str,
        source: rtc.AudioSource,
        track: rtc.LocalAudioTrack,
        sample_rate: int = SAMPLE_RATE_HZ,
    ) -> None:
        self._name = name
        self._source = source
        self._track = track
        self._sample_rate = sample_rate
        self._open = True

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def track(self) -> rtc.LocalAudioTrack:
        return self._track

    async def capture(self, frame: NDArray[np.int16]) -> None:
        if not self._open:
            raise ChannelError(ChannelFaultKind.INVALID, f"Channel {self._name} is closed")

        audio_frame = rtc.AudioFrame.create(
            sample_rate=self._sample_rate,
            num_channels=CHANNELS,
            samples_per_channel=frame.size,
        )
        np.copyto(np.asarray(audio_frame.data), frame)

        try:
            await self._source.capture_frame(audio_frame)
        except Exception as e:
            raise ChannelError(classify_capture_error(e), str(e)) from e

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        await self._source.aclose()


class LiveKitTrackPublisher(TrackPublisher):
    """Publishes route channels as tracks of the room's local participant."""

    def __init__(self, room: rtc.Room, sample_rate: int = SAMPLE_RATE_HZ) -> None:
        self._room = room
        self._sample_rate = sample_rate

    async def publish(self, name: str) -> OutputChannel:
        source = rtc.AudioSource(self._sample_rate, num_channels=CHANNELS)
        track = rtc.LocalAudioTrack.create_audio_track(name, source)
        options = rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_MICROPHONE)

        try:
            await self._room.local_participant.publish_track(track, options)
        except Exception:
            await source.aclose()
            raise

        logger.info("Output track published", extra={"track": name})
        return LiveKitOutputChannel(name, source, track, self._sample_rate)

    async def unpublish(self, channel: OutputChannel) -> None:
        if not isinstance(channel, LiveKitOutputChannel):
            raise TypeError(f"Cannot unpublish {type(channel).__name__} from LiveKit")

        try:
            await self._room.local_participant.unpublish_track(channel.track.sid)
        finally:
            await channel.close()

        logger.info("Output track unpublished", extra={"track": channel.name})


def is_audio_track(track: rtc.Track | None) -> bool:
    return track is not None and track.kind == rtc.TrackKind.KIND_AUDIO


async def iter_track_frames(
    track: rtc.Track,
    sample_rate: int = SAMPLE_RATE_HZ,
) -> AsyncIterator[NDArray[np.int16]]:
    """Yield a remote track's audio as mono int16 blocks in arrival order.

    The underlying stream is only opened once iteration starts and is
    closed when the track ends or the consumer stops.
    """
    stream = rtc.AudioStream(track, sample_rate=sample_rate, num_channels=CHANNELS)
    try:
        async for event in stream:
            frame = event.frame
            samples = np.frombuffer(frame.data, dtype=np.int16)
            if samples.size == 0:
                continue
            yield samples.copy()
    finally:
        await stream.aclose()
