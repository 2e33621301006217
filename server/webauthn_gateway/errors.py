"""Exception types raised by the ceremony orchestrator and its collaborators."""
from __future__ import annotations

__all__ = [
    "CeremonyError",
    "CeremonyTimeoutError",
    "ChallengeExpiredError",
    "IdentityGenerationError",
    "InvalidStateError",
    "StorageError",
    "UserNotFoundError",
    "ValidationError",
    "WebAuthnGatewayError",
]


class WebAuthnGatewayError(Exception):
    """Base class for every error the gateway converts into an HTTP response."""


class ValidationError(WebAuthnGatewayError):
    """The request body or query string could not be interpreted."""


class UserNotFoundError(WebAuthnGatewayError):
    """No user is stored under the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__("user not found")
        self.name = name


class InvalidStateError(WebAuthnGatewayError):
    """A finish step was called without a matching pending challenge."""


class ChallengeExpiredError(InvalidStateError):
    """The pending challenge outlived its lifetime or its attempt budget."""


class CeremonyError(WebAuthnGatewayError):
    """The ceremony engine rejected a response or could not issue a challenge."""


class CeremonyTimeoutError(WebAuthnGatewayError):
    """The ceremony engine did not answer within the configured timeout."""


class IdentityGenerationError(WebAuthnGatewayError):
    """A fresh user handle could not be generated."""


class StorageError(WebAuthnGatewayError):
    """The user directory's backing medium failed."""
