"""Configuration and wiring for the WebAuthn gateway."""
from __future__ import annotations

import os
import re
from typing import Any, Dict, List, Mapping, Optional

from fido2.webauthn import PublicKeyCredentialRpEntity, UserVerificationRequirement

from .ceremony import Fido2CeremonyEngine
from .orchestrator import (
    DEFAULT_CHALLENGE_TTL,
    DEFAULT_ENGINE_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    CeremonyOrchestrator,
)
from .storage import FileUserDirectory, InMemoryUserDirectory, UserDirectory

__all__ = [
    "build_rp_entity",
    "create_ceremony_engine",
    "create_orchestrator",
    "create_user_directory",
    "load_settings",
]

_DEFAULT_RP_NAME = "WebAuthn Gateway"
_DEFAULT_RP_ID = "localhost"
_DEFAULT_RP_ORIGINS = "http://localhost:8000"


def _parse_origins(raw_value: Optional[str]) -> List[str]:
    """Normalise a comma or newline separated list of origins."""

    if raw_value is None:
        return []

    components = re.split(r"[,;\s]+", raw_value)
    return [component.strip().rstrip("/") for component in components if component.strip()]


def _env_number(environ: Mapping[str, str], name: str, default: float) -> float:
    raw_value = environ.get(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        return float(raw_value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw_value!r}") from exc


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Read the gateway settings from the environment."""

    if environ is None:
        environ = os.environ

    user_verification = environ.get(
        "WEBAUTHN_USER_VERIFICATION", UserVerificationRequirement.PREFERRED.value
    ).strip().lower()
    allowed = sorted(member.value for member in UserVerificationRequirement)
    if user_verification not in allowed:
        raise ValueError(
            f"WEBAUTHN_USER_VERIFICATION must be one of {allowed}, got {user_verification!r}"
        )

    return {
        "FIDO_SERVER_RP_NAME": environ.get("FIDO_SERVER_RP_NAME", _DEFAULT_RP_NAME),
        "FIDO_SERVER_RP_ID": environ.get("FIDO_SERVER_RP_ID", _DEFAULT_RP_ID),
        "FIDO_SERVER_RP_ORIGINS": _parse_origins(
            environ.get("FIDO_SERVER_RP_ORIGINS", _DEFAULT_RP_ORIGINS)
        ),
        "WEBAUTHN_STORAGE_PATH": environ.get("WEBAUTHN_STORAGE_PATH") or None,
        "WEBAUTHN_CHALLENGE_TTL": _env_number(
            environ, "WEBAUTHN_CHALLENGE_TTL", DEFAULT_CHALLENGE_TTL
        ),
        "WEBAUTHN_MAX_FINISH_ATTEMPTS": int(
            _env_number(environ, "WEBAUTHN_MAX_FINISH_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)
        ),
        "WEBAUTHN_ENGINE_TIMEOUT": _env_number(
            environ, "WEBAUTHN_ENGINE_TIMEOUT", DEFAULT_ENGINE_TIMEOUT
        ),
        "WEBAUTHN_USER_VERIFICATION": user_verification,
    }


def build_rp_entity(settings: Mapping[str, Any]) -> PublicKeyCredentialRpEntity:
    """Create the ``PublicKeyCredentialRpEntity`` for the single relying party."""

    rp_id = (settings.get("FIDO_SERVER_RP_ID") or _DEFAULT_RP_ID).strip().lower()
    rp_name = settings.get("FIDO_SERVER_RP_NAME") or _DEFAULT_RP_NAME
    return PublicKeyCredentialRpEntity(name=rp_name, id=rp_id)


def create_user_directory(settings: Mapping[str, Any]) -> UserDirectory:
    storage_path = settings.get("WEBAUTHN_STORAGE_PATH")
    if storage_path:
        return FileUserDirectory(storage_path)
    return InMemoryUserDirectory()


def create_ceremony_engine(settings: Mapping[str, Any]) -> Fido2CeremonyEngine:
    return Fido2CeremonyEngine(
        build_rp_entity(settings),
        origins=settings.get("FIDO_SERVER_RP_ORIGINS") or (),
        user_verification=settings.get("WEBAUTHN_USER_VERIFICATION"),
    )


def create_orchestrator(settings: Mapping[str, Any]) -> CeremonyOrchestrator:
    """Build the orchestrator together with its directory and engine."""

    return CeremonyOrchestrator(
        create_user_directory(settings),
        create_ceremony_engine(settings),
        challenge_ttl=settings.get("WEBAUTHN_CHALLENGE_TTL"),
        max_attempts=settings.get("WEBAUTHN_MAX_FINISH_ATTEMPTS"),
        engine_timeout=settings.get("WEBAUTHN_ENGINE_TIMEOUT"),
    )
