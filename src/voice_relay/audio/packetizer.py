"""Audio frame packetization utilities.

Slices transformed PCM into fixed-duration frames for capture into an
output channel.

Frame format:
    - Duration: 20ms
    - Sample rate: 48kHz
    - Channels: mono
    - Bit depth: 16-bit signed integer
    - Frame size: 960 samples
"""

import numpy as np
from numpy.typing import NDArray

# Audio constants
SAMPLE_RATE_HZ: int = 48000
FRAME_DURATION_MS: int = 20
CHANNELS: int = 1


def samples_per_frame(
    sample_rate: int = SAMPLE_RATE_HZ, frame_ms: int = FRAME_DURATION_MS
) -> int:
    """Number of samples in one frame (960 for 20ms @ 48kHz)."""
    return sample_rate * frame_ms // 1000


def split_into_frames(
    pcm: NDArray[np.int16],
    sample_rate: int = SAMPLE_RATE_HZ,
    frame_ms: int = FRAME_DURATION_MS,
) -> list[NDArray[np.int16]]:
    """Slice PCM into consecutive full frames in order.

    A trailing partial frame is dropped.

    Args:
        pcm: Mono int16 samples
        sample_rate: Sample rate in Hz
        frame_ms: Frame duration in milliseconds

    Returns:
        List of frames (views into ``pcm``)
    """
    frame_size = samples_per_frame(sample_rate, frame_ms)
    if frame_size <= 0:
        raise ValueError(f"Frame size must be positive, got {frame_size}")

    full_frames = pcm.size // frame_size
    return [pcm[i * frame_size : (i + 1) * frame_size] for i in range(full_frames)]
