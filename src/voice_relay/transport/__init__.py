"""Transport layer for publishing relayed audio.

The base module defines transport-agnostic output channels; the LiveKit
module implements them on top of ``livekit.rtc``.
"""

from .base import (
    ChannelError,
    ChannelFaultKind,
    DisconnectKind,
    OutputChannel,
    TrackPublisher,
)

__all__ = [
    "ChannelError",
    "ChannelFaultKind",
    "DisconnectKind",
    "OutputChannel",
    "TrackPublisher",
]
