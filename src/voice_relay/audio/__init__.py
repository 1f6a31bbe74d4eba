"""Audio utilities for chunking, silence gating, WAV encoding and framing.

This module provides the PCM helpers used by the relay loop: per-speaker
chunk accumulation, RMS speech-level gating, the minimal WAV container
sent to the transformation service, and 20ms output framing.
"""

from .buffer import ChunkAccumulator
from .packetizer import samples_per_frame, split_into_frames
from .silence import SilenceGate, speech_level_db
from .wav import decode_pcm16, encode_wav

__all__ = [
    "ChunkAccumulator",
    "SilenceGate",
    "speech_level_db",
    "encode_wav",
    "decode_pcm16",
    "samples_per_frame",
    "split_into_frames",
]
