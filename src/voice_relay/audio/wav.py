"""Minimal WAV container for mono 16-bit PCM.

The transformation service parses uploads strictly, so the header follows
the canonical 44-byte RIFF layout: RIFF/WAVE, a 16-byte ``fmt `` chunk with
PCM format code 1, then a single ``data`` chunk.
"""

import struct
from typing import Final

import numpy as np
from numpy.typing import ArrayLike, NDArray

WAV_HEADER_SIZE: Final[int] = 44
PCM_FORMAT_CODE: Final[int] = 1
BITS_PER_SAMPLE: Final[int] = 16

_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


def encode_wav(samples: ArrayLike, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap 16-bit PCM samples in a WAV container.

    Args:
        samples: 16-bit signed PCM samples (interleaved when channels > 1)
        sample_rate: Sample rate in Hz
        channels: Channel count

    Returns:
        WAV file bytes (44-byte header followed by little-endian PCM)
    """
    if sample_rate <= 0:
        raise ValueError(f"Sample rate must be positive, got {sample_rate}")

    pcm = np.asarray(samples, dtype=np.int16).ravel().astype("<i2").tobytes()
    block_align = channels * BITS_PER_SAMPLE // 8
    byte_rate = sample_rate * block_align
    header = _HEADER.pack(
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        PCM_FORMAT_CODE,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        len(pcm),
    )
    return header + pcm


def decode_pcm16(data: bytes) -> NDArray[np.int16]:
    """Interpret raw little-endian PCM bytes as int16 samples.

    A trailing odd byte is ignored.
    """
    usable = len(data) - (len(data) % 2)
    return np.frombuffer(data[:usable], dtype="<i2").astype(np.int16)
