"""LiveKit voice relay.

Joins a room as a worker participant, transforms each participant's speech
into their selected voice and republishes it as a dedicated audio track.
"""

__version__ = "0.1.0"
