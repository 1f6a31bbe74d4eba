"""Voice assignment lookup.

Resolves which voice a participant's speech is transformed into. The
control plane owns the selections; the relay only reads them and falls
back to a default voice when a lookup fails or finds nothing.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from urllib.parse import quote

import aiohttp

from voice_relay.config import DEFAULT_VOICE_ID, DEFAULT_VOICE_NAME

logger = logging.getLogger(__name__)


class VoiceLookupError(Exception):
    """Raised when the voice lookup backend cannot be queried."""

    pass


@dataclass(frozen=True)
class VoiceAssignment:
    """Voice assigned to a participant for the lifetime of their session."""

    voice_id: str
    display_name: str
    is_default: bool = False


class VoiceLookup(ABC):
    """Read-only voice selection lookup."""

    @abstractmethod
    async def lookup(self, identity: str) -> str | None:
        """Return the selected voice id for ``identity`` or None.

        Raises:
            VoiceLookupError: If the backend is unreachable
        """
        pass

    async def close(self) -> None:
        pass


class InMemoryVoiceStore(VoiceLookup):
    """In-memory user → voice id mapping, written by the control plane."""

    def __init__(self) -> None:
        self._selections: dict[str, str] = {}

    def set_voice(self, user_id: str, voice_id: str) -> None:
        self._selections[user_id] = voice_id

    def get_voice(self, user_id: str) -> str | None:
        return self._selections.get(user_id)

    def __len__(self) -> int:
        return len(self._selections)

    async def lookup(self, identity: str) -> str | None:
        return self._selections.get(identity)


class HttpVoiceLookup(VoiceLookup):
    """Looks up selections from an out-of-process control plane.

    Queries ``GET {base_url}/get-voice/{identity}`` and reads
    ``voiceSelection`` from the JSON body.
    """

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 5.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def lookup(self, identity: str) -> str | None:
        session = await self._ensure_session()
        url = f"{self.base_url}/get-voice/{quote(identity, safe='')}"
        try:
            async with session.get(
                url, timeout=aiohttp.ClientTimeout(total=self.timeout_s)
            ) as response:
                if response.status == 404:
                    return None
                response.raise_for_status()
                data = await response.json(content_type=None)
        except (TimeoutError, aiohttp.ClientError, ValueError) as e:
            raise VoiceLookupError(f"Voice lookup failed for {identity}: {e}") from e

        if not isinstance(data, dict):
            return None
        selection = data.get("voiceSelection")
        return selection or None


class VoiceAssigner:
    """Turns lookups into assignments with default-voice fallback."""

    def __init__(
        self,
        lookup: VoiceLookup,
        default_voice_id: str = DEFAULT_VOICE_ID,
        default_voice_name: str = DEFAULT_VOICE_NAME,
    ) -> None:
        self.lookup = lookup
        self.default_voice_id = default_voice_id
        self.default_voice_name = default_voice_name

    async def assign(self, identity: str) -> VoiceAssignment:
        """Resolve the voice for ``identity``; never raises."""
        try:
            voice_id = await self.lookup.lookup(identity)
        except Exception as e:
            logger.warning(
                "Voice lookup failed, using fallback voice",
                extra={"identity": identity, "error": str(e)},
            )
            return VoiceAssignment(
                self.default_voice_id, f"{self.default_voice_name} (Fallback)", is_default=True
            )

        if not voice_id:
            return VoiceAssignment(
                self.default_voice_id, f"{self.default_voice_name} (Default)", is_default=True
            )

        is_default = voice_id == self.default_voice_id
        name = f"{self.default_voice_name} (Default)" if is_default else "Custom Voice"
        return VoiceAssignment(voice_id, name, is_default=is_default)
