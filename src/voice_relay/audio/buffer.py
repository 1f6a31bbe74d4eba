"""Per-speaker chunk accumulator for transformation requests.

This module buffers inbound PCM blocks for one speaker until a full chunk
is available, then hands the contiguous chunk to the transformation client.

Key features:
- Samples are kept in arrival order, never duplicated or dropped
- A chunk is ready only when the buffered duration reaches the chunk size
  and the minimum interval since the previous chunk has elapsed
- A final partial chunk is flushed at stream end only when it holds at
  least ``flush_min_fraction`` of a chunk

Design:
    frame → push() → ready()? → drain() → TransformClient.convert()
    end of stream → flush() → TransformClient.convert() (if long enough)
"""

import logging
import time
from collections.abc import Callable
from typing import Final

import numpy as np
from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE: Final[int] = 48000  # Hz
DEFAULT_CHUNK_MS: Final[int] = 1000
DEFAULT_MIN_INTERVAL_MS: Final[int] = 200
DEFAULT_FLUSH_MIN_FRACTION: Final[float] = 0.5


class ChunkAccumulator:
    """Buffer of raw PCM blocks for a single speaker.

    Not shared between speakers; each relay loop owns its own instance, so
    no locking is needed.

    Example:
        ```python
        accumulator = ChunkAccumulator(sample_rate=48000, chunk_ms=1000)
        async for block in frames:
            accumulator.push(block)
            if accumulator.ready():
                await relay(accumulator.drain())
        tail = accumulator.flush()
        if tail is not None:
            await relay(tail)
        ```
    """

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        chunk_ms: int = DEFAULT_CHUNK_MS,
        min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS,
        flush_min_fraction: float = DEFAULT_FLUSH_MIN_FRACTION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the accumulator.

        Args:
            sample_rate: Sample rate of the pushed blocks in Hz
            chunk_ms: Chunk duration that makes the accumulator ready
            min_interval_ms: Minimum time between two emitted chunks
            flush_min_fraction: Share of a chunk a trailing flush must hold
            clock: Monotonic clock in seconds

        Raises:
            ValueError: If parameters are invalid
        """
        if sample_rate <= 0:
            raise ValueError(f"Sample rate must be positive, got {sample_rate}")
        if chunk_ms <= 0:
            raise ValueError(f"Chunk duration must be positive, got {chunk_ms}")
        if min_interval_ms < 0:
            raise ValueError(f"Minimum interval must not be negative, got {min_interval_ms}")

        self.sample_rate = sample_rate
        self.samples_per_chunk = max(1, (sample_rate * chunk_ms) // 1000)
        self.min_interval_s = min_interval_ms / 1000.0
        self.flush_min_samples = self.samples_per_chunk * flush_min_fraction
        self._clock = clock

        self._blocks: list[NDArray[np.int16]] = []
        self._total_samples = 0
        self._last_emit_ts: float | None = None

    @property
    def buffered_samples(self) -> int:
        """Number of samples currently buffered."""
        return self._total_samples

    def duration_ms(self) -> float:
        """Buffered audio duration in milliseconds."""
        return self._total_samples * 1000.0 / self.sample_rate

    def push(self, block: ArrayLike) -> None:
        """Append a PCM block; empty blocks are ignored."""
        samples = np.asarray(block, dtype=np.int16).ravel()
        if samples.size == 0:
            return
        self._blocks.append(samples)
        self._total_samples += samples.size

    def ready(self) -> bool:
        """True when a full chunk is buffered and the rate limit allows emitting."""
        if self.buffered_samples < self.samples_per_chunk:
            return False
        if self._last_emit_ts is None:
            return True
        return self._clock() - self._last_emit_ts >= self.min_interval_s

    def drain(self) -> NDArray[np.int16]:
        """Return every buffered sample as one contiguous block and clear the buffer."""
        merged = self._take()
        self._last_emit_ts = self._clock()
        return merged

    def flush(self) -> NDArray[np.int16] | None:
        """Drain a trailing partial chunk if it is long enough.

        Returns:
            The remaining samples, or None when the tail is shorter than the
            flush threshold (the tail is discarded either way)
        """
        if self.buffered_samples == 0:
            return None
        if self.buffered_samples < self.flush_min_samples:
            logger.debug(
                "Discarding short tail",
                extra={"samples": self.buffered_samples, "duration_ms": self.duration_ms()},
            )
            self.clear()
            return None
        return self.drain()

    def clear(self) -> None:
        """Drop all buffered samples."""
        self._blocks.clear()
        self._total_samples = 0

    def _take(self) -> NDArray[np.int16]:
        if not self._blocks:
            merged = np.zeros(0, dtype=np.int16)
        elif len(self._blocks) == 1:
            merged = self._blocks[0].copy()
        else:
            merged = np.concatenate(self._blocks)
        self.clear()
        return merged
