"""LiveKit helpers shared by the relay and the control plane."""

from .tokens import create_access_token

__all__ = ["create_access_token"]
