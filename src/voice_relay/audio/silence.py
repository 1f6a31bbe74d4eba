"""Speech level gate for 16-bit PCM blocks.

Classifies a block of samples as speech or silence from its RMS level in
dBFS. Blocks below the threshold are never sent for transformation.
"""

from typing import Final

import numpy as np
from numpy.typing import ArrayLike

FULL_SCALE: Final[float] = 32768.0
DEFAULT_FLOOR_DB: Final[float] = -120.0
DEFAULT_SPEECH_THRESHOLD_DB: Final[float] = -55.0


def speech_level_db(samples: ArrayLike, floor_db: float = DEFAULT_FLOOR_DB) -> float:
    """Compute the RMS level of a PCM block in dBFS.

    Args:
        samples: 16-bit signed PCM samples
        floor_db: Lowest value returned (silent or empty input)

    Returns:
        Level in dBFS, clamped to ``floor_db``
    """
    pcm = np.asarray(samples, dtype=np.int16).ravel()
    if pcm.size == 0:
        return floor_db

    normalized = pcm.astype(np.float64) / FULL_SCALE
    rms = float(np.sqrt(np.mean(normalized * normalized)))
    level = 20.0 * np.log10(rms + 1e-12)
    return max(floor_db, float(level))


class SilenceGate:
    """Speech/silence classifier with a single threshold.

    Example:
        ```python
        gate = SilenceGate(threshold_db=-55.0)
        if gate.is_speech(chunk):
            await client.convert(voice_id, chunk)
        ```
    """

    def __init__(
        self,
        threshold_db: float = DEFAULT_SPEECH_THRESHOLD_DB,
        floor_db: float = DEFAULT_FLOOR_DB,
    ) -> None:
        if threshold_db < floor_db:
            raise ValueError(
                f"Threshold {threshold_db} dB is below the floor {floor_db} dB"
            )
        self.threshold_db = threshold_db
        self.floor_db = floor_db

    def classify(self, samples: ArrayLike) -> float:
        """Return the speech level of ``samples`` in dBFS."""
        return speech_level_db(samples, self.floor_db)

    def is_speech(self, samples: ArrayLike) -> bool:
        """True when the block is at or above the speech threshold."""
        return self.classify(samples) >= self.threshold_db
