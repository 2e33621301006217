"""Route registrations for the WebAuthn gateway."""

from .webauthn import EXTENSION_KEY, bp

__all__ = ["EXTENSION_KEY", "bp"]
