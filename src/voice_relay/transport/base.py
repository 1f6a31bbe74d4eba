"""Base transport abstraction for relay output channels.

Defines the interface the route registry and relay loop use to publish
transformed audio, so the LiveKit specifics stay in one module and the
core can be exercised with in-memory channels.
"""

from abc import ABC, abstractmethod
from enum import Enum

import numpy as np
from numpy.typing import NDArray


class ChannelFaultKind(Enum):
    """Classification of a failed frame capture."""

    INVALID = "invalid"  # channel can no longer accept audio; recreate it
    FAILED = "failed"  # transient failure of a single capture


class DisconnectKind(Enum):
    """Classification of a session disconnect."""

    CONNECTION_LOST = "connection_lost"
    CLIENT_INITIATED = "client_initiated"
    SERVER_INITIATED = "server_initiated"

    @property
    def should_reconnect(self) -> bool:
        return self is DisconnectKind.CONNECTION_LOST


class ChannelError(Exception):
    """Raised by OutputChannel.capture with a structured fault kind."""

    def __init__(self, kind: ChannelFaultKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class OutputChannel(ABC):
    """A published audio output owned by exactly one route."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Published track name."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """False once the channel has been unpublished or closed."""
        pass

    @abstractmethod
    async def capture(self, frame: NDArray[np.int16]) -> None:
        """Capture one fixed-size PCM frame.

        Args:
            frame: Mono int16 samples (one 20ms frame)

        Raises:
            ChannelError: If the frame could not be captured
        """
        pass


class TrackPublisher(ABC):
    """Creates and removes published output channels in the session."""

    @abstractmethod
    async def publish(self, name: str) -> OutputChannel:
        """Create a fresh output channel and publish it under ``name``.

        Raises:
            Exception: If publishing fails; nothing stays published
        """
        pass

    @abstractmethod
    async def unpublish(self, channel: OutputChannel) -> None:
        """Unpublish and close ``channel``."""
        pass
