"""HTTP client for the external voice transformation service.

Sends one PCM chunk per request as a multipart WAV upload and returns the
transformed PCM, or a classified failure. Service and network faults are
never raised; callers branch on ``TransformResult.status``.

Example usage:
    >>> client = TransformClient(config.transform, quota=QuotaState())
    >>> result = await client.convert("pNInz6obpgDQGcFmaJgB", chunk)
    >>> if result.ok:
    ...     publish(result.pcm)
    >>> await client.close()
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import aiohttp
import numpy as np
from numpy.typing import NDArray

from voice_relay.audio.silence import SilenceGate
from voice_relay.audio.wav import decode_pcm16, encode_wav
from voice_relay.config import TransformConfig

logger = logging.getLogger(__name__)

QUOTA_STATUS_CODES = frozenset({401, 429})
QUOTA_MARKERS = ("quota_exceeded", "quota", "rate_limit", "too_many_concurrent_requests")
MAX_ERROR_BODY_CHARS = 500


class TransformStatus(Enum):
    """Outcome of a single convert() call."""

    CONVERTED = "converted"
    SKIPPED_SILENCE = "skipped_silence"
    SKIPPED_QUOTA = "skipped_quota"
    QUOTA = "quota"
    SERVICE_ERROR = "service_error"
    TIMEOUT = "timeout"
    EMPTY_RESPONSE = "empty_response"


_FAILURES = frozenset(
    {
        TransformStatus.QUOTA,
        TransformStatus.SERVICE_ERROR,
        TransformStatus.TIMEOUT,
        TransformStatus.EMPTY_RESPONSE,
    }
)


@dataclass
class TransformResult:
    """Transformed PCM or a classified failure."""

    status: TransformStatus
    pcm: NDArray[np.int16] | None = None
    http_status: int | None = None
    detail: str | None = None
    level_db: float | None = None

    @property
    def ok(self) -> bool:
        return self.status is TransformStatus.CONVERTED

    @property
    def skipped(self) -> bool:
        """No request was made (silence or active quota cooldown)."""
        return self.status in (TransformStatus.SKIPPED_SILENCE, TransformStatus.SKIPPED_QUOTA)

    @property
    def failed(self) -> bool:
        return self.status in _FAILURES


class QuotaState:
    """Process-wide quota exhaustion marker.

    Holds the time the service last reported quota or rate-limit exhaustion.
    While inside the cooldown window every transformation is skipped.
    Writes are plain timestamp assignments; last writer wins.
    """

    def __init__(
        self,
        cooldown_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cooldown_s = cooldown_s
        self._clock = clock
        self.exhausted_since: float | None = None

    def mark_exhausted(self) -> bool:
        """Record exhaustion now.

        Returns:
            True if this call moved the state from clear to exhausted
        """
        was_clear = self.exhausted_since is None
        self.exhausted_since = self._clock()
        return was_clear

    def clear(self) -> bool:
        """Clear exhaustion; returns True if it was set."""
        was_set = self.exhausted_since is not None
        self.exhausted_since = None
        return was_set

    def is_exhausted(self) -> bool:
        """True while inside the cooldown window."""
        if self.exhausted_since is None:
            return False
        return self._clock() - self.exhausted_since < self.cooldown_s

    def expire(self) -> bool:
        """Clear the marker if its cooldown has elapsed.

        Returns:
            True if an expired marker was cleared
        """
        if self.exhausted_since is not None and not self.is_exhausted():
            self.exhausted_since = None
            return True
        return False


def is_quota_response(status: int, body: str) -> bool:
    """Classify a non-2xx response as quota/rate-limit exhaustion.

    429 always signals a rate limit; 401 only counts when the body carries
    a quota indicator (otherwise it is a credential problem).
    """
    if status not in QUOTA_STATUS_CODES:
        return False
    if status == 429:
        return True
    lowered = body.lower()
    return any(marker in lowered for marker in QUOTA_MARKERS)


class TransformClient:
    """Async client for the speech-to-speech transformation endpoint.

    Safe to call concurrently from several speaker loops; the only shared
    state is the aiohttp session, the QuotaState and the success timestamp.
    """

    def __init__(
        self,
        config: TransformConfig,
        quota: QuotaState | None = None,
        gate: SilenceGate | None = None,
        input_sample_rate: int = 48000,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize transformation client.

        Args:
            config: Service endpoint, credential and timeout settings
            quota: Shared quota state (created from config if omitted)
            gate: Silence gate applied before every request
            input_sample_rate: Sample rate declared in the uploaded WAV
            session: Optional externally managed aiohttp session
            clock: Monotonic clock in seconds
        """
        self.config = config
        self.quota = quota or QuotaState(config.quota_cooldown_s, clock=clock)
        self.gate = gate or SilenceGate()
        self.input_sample_rate = input_sample_rate
        self._clock = clock
        self._session = session
        self._owns_session = session is None
        self.last_successful_call: float | None = None
        self.requests_sent = 0

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the aiohttp session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def endpoint(self, voice_id: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/speech-to-speech/{voice_id}/stream"

    async def convert(self, voice_id: str, pcm_chunk: NDArray[np.int16]) -> TransformResult:
        """Transform one chunk of speech into the given voice.

        Args:
            voice_id: Target voice identifier
            pcm_chunk: Mono int16 samples at ``input_sample_rate``

        Returns:
            TransformResult with transformed PCM, a skip, or a classified failure
        """
        if self.quota.is_exhausted():
            return TransformResult(TransformStatus.SKIPPED_QUOTA)

        level_db = self.gate.classify(pcm_chunk)
        if level_db < self.gate.threshold_db:
            return TransformResult(TransformStatus.SKIPPED_SILENCE, level_db=level_db)

        form = aiohttp.FormData()
        form.add_field(
            "audio",
            encode_wav(pcm_chunk, self.input_sample_rate),
            filename="chunk.wav",
            content_type="audio/wav",
        )
        params = {
            "output_format": self.config.output_format,
            "optimize_streaming_latency": str(self.config.optimize_streaming_latency),
        }
        headers = {"xi-api-key": self.config.api_key}
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_s)

        session = await self._ensure_session()
        self.requests_sent += 1
        logger.debug(
            "Sending chunk for transformation",
            extra={"voice_id": voice_id, "samples": int(pcm_chunk.size), "level_db": level_db},
        )

        try:
            async with session.post(
                self.endpoint(voice_id),
                data=form,
                params=params,
                headers=headers,
                timeout=timeout,
            ) as response:
                body = await response.read()
                status = response.status
        except (TimeoutError, aiohttp.ClientError) as e:
            return TransformResult(
                TransformStatus.TIMEOUT,
                detail=f"{type(e).__name__}: {e}",
                level_db=level_db,
            )

        if 200 <= status < 300:
            if not body:
                return TransformResult(
                    TransformStatus.EMPTY_RESPONSE, http_status=status, level_db=level_db
                )
            self._record_success()
            return TransformResult(
                TransformStatus.CONVERTED,
                pcm=decode_pcm16(body),
                http_status=status,
                level_db=level_db,
            )

        text = body.decode("utf-8", errors="replace")
        if is_quota_response(status, text):
            if self.quota.mark_exhausted():
                logger.error(
                    "Transformation quota exhausted, pausing requests",
                    extra={"status": status, "cooldown_s": self.quota.cooldown_s},
                )
            return TransformResult(
                TransformStatus.QUOTA,
                http_status=status,
                detail=text[:MAX_ERROR_BODY_CHARS],
                level_db=level_db,
            )

        return TransformResult(
            TransformStatus.SERVICE_ERROR,
            http_status=status,
            detail=text[:MAX_ERROR_BODY_CHARS],
            level_db=level_db,
        )

    def _record_success(self) -> None:
        self.last_successful_call = self._clock()
        if self.quota.clear():
            logger.info("Transformation quota restored, resuming processing")

    async def list_voices(self) -> dict:
        """Fetch the service's voice catalogue.

        Raises:
            aiohttp.ClientResponseError: If the service rejects the request
        """
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_s)
        async with session.get(
            f"{self.config.base_url.rstrip('/')}/voices",
            headers={"xi-api-key": self.config.api_key},
            timeout=timeout,
        ) as response:
            response.raise_for_status()
            return await response.json()
