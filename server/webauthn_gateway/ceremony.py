"""Adapter between the ceremony orchestrator and the ``fido2`` WebAuthn server."""
from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import fido2.features
from fido2.server import Fido2Server
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    AttestationConveyancePreference,
    AttestedCredentialData,
    AuthenticatorData,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialUserEntity,
    UserVerificationRequirement,
)

from .errors import CeremonyError
from .storage import UserIdentity


def _enable_json_mapping(feature: Any = None) -> None:
    """Make fido2 emit and accept WebAuthn JSON (base64url strings)."""

    if feature is None:
        feature = fido2.features.webauthn_json_mapping
    try:
        feature.enabled = True
    except ValueError:  # already configured by the embedding process
        pass
    if not feature.enabled:
        raise RuntimeError(
            "fido2 webauthn_json_mapping was disabled by the embedding process; "
            "the gateway needs it enabled"
        )


_enable_json_mapping()

__all__ = [
    "CeremonyEngine",
    "CredentialRecord",
    "Fido2CeremonyEngine",
    "make_json_safe",
]

logger = logging.getLogger(__name__)

# fido2 reports malformed or mismatching responses through these.
_ENGINE_ERRORS = (ValueError, KeyError, TypeError, AttributeError)


@dataclass
class CredentialRecord:
    """A public key credential enrolled by a user."""

    credential_data: AttestedCredentialData
    sign_count: int = 0
    created_at: float = field(default_factory=time.time)
    last_used_at: Optional[float] = None

    @property
    def credential_id(self) -> bytes:
        return bytes(self.credential_data.credential_id)


class CeremonyEngine(Protocol):
    """The four ceremony operations the orchestrator relies on."""

    def begin_registration(self, identity: UserIdentity) -> Tuple[Dict[str, Any], Mapping[str, Any]]:
        ...

    def finish_registration(
        self, identity: UserIdentity, state: Mapping[str, Any], response: Mapping[str, Any]
    ) -> CredentialRecord:
        ...

    def begin_login(self, identity: UserIdentity) -> Tuple[Dict[str, Any], Mapping[str, Any]]:
        ...

    def finish_login(
        self, identity: UserIdentity, state: Mapping[str, Any], response: Mapping[str, Any]
    ) -> CredentialRecord:
        ...


def make_json_safe(value: Any) -> Any:
    """Recursively convert bytes-like WebAuthn option values into JSON-friendly data."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return websafe_encode(bytes(value))
    if isinstance(value, Mapping):
        return {key: make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    return value


def _extract_sign_count(response: Mapping[str, Any]) -> Optional[int]:
    credential_response = response.get("response")
    if not isinstance(credential_response, Mapping):
        return None
    auth_data_b64 = credential_response.get("authenticatorData")
    if not isinstance(auth_data_b64, str):
        return None
    try:
        return AuthenticatorData(websafe_decode(auth_data_b64)).counter
    except _ENGINE_ERRORS:
        return None


class Fido2CeremonyEngine:
    """:class:`CeremonyEngine` backed by :class:`fido2.server.Fido2Server`.

    ``origins`` restricts the accepted ``clientDataJSON.origin`` values. When
    it is empty, fido2's own check (origin host must match the RP ID over
    HTTPS) applies.
    """

    def __init__(
        self,
        rp: PublicKeyCredentialRpEntity,
        *,
        origins: Optional[Sequence[str]] = None,
        user_verification: Optional[str] = UserVerificationRequirement.PREFERRED,
        attestation: Optional[str] = AttestationConveyancePreference.NONE,
    ) -> None:
        self.rp = rp
        self.origins = frozenset(origins or ())
        self.user_verification = user_verification
        verify_origin = self._verify_origin if self.origins else None
        self._server = Fido2Server(rp, attestation=attestation, verify_origin=verify_origin)

    def _verify_origin(self, origin: str) -> bool:
        return origin in self.origins

    @staticmethod
    def _credential_data(identity: UserIdentity) -> List[AttestedCredentialData]:
        return [record.credential_data for record in identity.credentials]

    @staticmethod
    def _user_entity(identity: UserIdentity) -> PublicKeyCredentialUserEntity:
        return PublicKeyCredentialUserEntity(
            name=identity.name,
            id=identity.id,
            display_name=identity.display_name,
        )

    def begin_registration(self, identity: UserIdentity) -> Tuple[Dict[str, Any], Mapping[str, Any]]:
        try:
            options, state = self._server.register_begin(
                self._user_entity(identity),
                self._credential_data(identity),
                user_verification=self.user_verification,
            )
        except _ENGINE_ERRORS as exc:
            raise CeremonyError("failed to begin registration") from exc
        return make_json_safe(dict(options)), dict(state)

    def finish_registration(
        self, identity: UserIdentity, state: Mapping[str, Any], response: Mapping[str, Any]
    ) -> CredentialRecord:
        try:
            auth_data = self._server.register_complete(dict(state), response)
        except _ENGINE_ERRORS as exc:
            raise CeremonyError(str(exc) or "invalid registration response") from exc

        if auth_data.credential_data is None:
            raise CeremonyError("registration response carries no credential data")

        logger.debug(
            "Attested credential for %s uses COSE algorithm %s",
            identity.name,
            auth_data.credential_data.public_key.get(3),
        )
        return CredentialRecord(auth_data.credential_data, sign_count=auth_data.counter)

    def begin_login(self, identity: UserIdentity) -> Tuple[Dict[str, Any], Mapping[str, Any]]:
        if not identity.credentials:
            raise CeremonyError("found no credentials for user")

        try:
            options, state = self._server.authenticate_begin(
                self._credential_data(identity),
                user_verification=self.user_verification,
            )
        except _ENGINE_ERRORS as exc:
            raise CeremonyError("failed to begin login") from exc
        return make_json_safe(dict(options)), dict(state)

    def finish_login(
        self, identity: UserIdentity, state: Mapping[str, Any], response: Mapping[str, Any]
    ) -> CredentialRecord:
        try:
            matched = self._server.authenticate_complete(
                dict(state), self._credential_data(identity), response
            )
        except _ENGINE_ERRORS as exc:
            raise CeremonyError(str(exc) or "invalid assertion response") from exc

        matched_id = bytes(matched.credential_id)
        record = next(
            (entry for entry in identity.credentials if entry.credential_id == matched_id),
            None,
        )
        if record is None:
            raise CeremonyError("credential is not registered for this user")

        sign_count = _extract_sign_count(response)
        if sign_count is None:
            sign_count = record.sign_count
        elif (sign_count or record.sign_count) and sign_count <= record.sign_count:
            raise CeremonyError("signature counter did not increase; the authenticator may be cloned")

        return dataclasses.replace(record, sign_count=sign_count, last_used_at=time.time())
