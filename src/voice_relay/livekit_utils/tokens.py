"""LiveKit access token generation.

Issues JWTs for the relay itself and, through the control plane, for
browser participants joining the shared room.
"""

from datetime import timedelta

from livekit.api import AccessToken, VideoGrants

from voice_relay.config import LiveKitConfig


def create_access_token(
    config: LiveKitConfig,
    room_name: str,
    participant_identity: str,
    ttl_hours: int | None = None,
    can_update_own_metadata: bool = False,
) -> str:
    """Generate a JWT access token for a room participant.

    Args:
        config: LiveKit credentials
        room_name: Name of the room to grant access to
        participant_identity: Unique identifier for the participant
        ttl_hours: Token validity in hours (defaults to config.token_ttl_hours)
        can_update_own_metadata: Grant metadata updates (used by the relay)

    Returns:
        JWT token string

    Raises:
        ValueError: If LiveKit credentials are not configured
    """
    if not config.api_key or not config.api_secret:
        raise ValueError(
            "LiveKit credentials not configured. "
            "Set LIVEKIT_API_KEY and LIVEKIT_API_SECRET."
        )

    token = AccessToken(config.api_key, config.api_secret)
    token.with_identity(participant_identity)
    token.with_name(participant_identity)
    token.with_grants(
        VideoGrants(
            room_join=True,
            room=room_name,
            can_publish=True,
            can_subscribe=True,
            can_publish_data=True,
            can_update_own_metadata=can_update_own_metadata,
        )
    )
    token.with_ttl(timedelta(hours=ttl_hours or config.token_ttl_hours))

    return token.to_jwt()
