"""Sequencing of the WebAuthn registration and login ceremonies.

Each ceremony is split over two stateless calls. A *begin* call asks the
ceremony engine for a challenge and parks the engine's session state on the
user record; the matching *finish* call, correlated only by the user name the
caller supplies again, hands that state back to the engine together with the
authenticator response.

Registration: ``Idle -> AwaitingRegistrationResponse -> Registered``
Login: ``Idle/Registered -> AwaitingLoginResponse -> Authenticated``

Every step runs under the directory's lock for the user name, so the
read-modify-write of one record is never interleaved with another step for
the same user.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Mapping, Optional

from .ceremony import CeremonyEngine, CredentialRecord
from .errors import (
    CeremonyError,
    CeremonyTimeoutError,
    ChallengeExpiredError,
    InvalidStateError,
    UserNotFoundError,
)
from .storage import PendingChallenge, UserDirectory, UserIdentity

__all__ = [
    "CeremonyOrchestrator",
    "DEFAULT_CHALLENGE_TTL",
    "DEFAULT_ENGINE_TIMEOUT",
    "DEFAULT_MAX_ATTEMPTS",
]

logger = logging.getLogger(__name__)

DEFAULT_CHALLENGE_TTL = 300.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_ENGINE_TIMEOUT = 10.0

_REGISTRATION = "pending_registration"
_LOGIN = "pending_login"


def _merge_credential(credentials: List[Any], record: CredentialRecord) -> None:
    for index, existing in enumerate(credentials):
        if existing.credential_id == record.credential_id:
            credentials[index] = record
            return
    credentials.append(record)


class CeremonyOrchestrator:
    """Run the four ceremony steps against an injected directory and engine.

    ``challenge_ttl`` bounds how long a pending challenge stays usable and
    ``max_attempts`` how many rejected finish calls it survives; ``0`` or
    ``None`` disables either limit. ``engine_timeout`` bounds each engine
    call in seconds.
    """

    def __init__(
        self,
        directory: UserDirectory,
        engine: CeremonyEngine,
        *,
        challenge_ttl: Optional[float] = DEFAULT_CHALLENGE_TTL,
        max_attempts: Optional[int] = DEFAULT_MAX_ATTEMPTS,
        engine_timeout: Optional[float] = DEFAULT_ENGINE_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.engine = engine
        self.challenge_ttl = challenge_ttl
        self.max_attempts = max_attempts
        self.engine_timeout = engine_timeout
        self._clock = clock
        self._executor: Optional[ThreadPoolExecutor] = None
        if engine_timeout:
            self._executor = ThreadPoolExecutor(thread_name_prefix="ceremony-engine")

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def _call_engine(self, operation: Callable[..., Any], *args: Any) -> Any:
        if self._executor is None:
            return operation(*args)

        future = self._executor.submit(operation, *args)
        try:
            return future.result(timeout=self.engine_timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise CeremonyTimeoutError(
                f"ceremony engine did not respond within {self.engine_timeout} seconds"
            ) from exc

    def _active_challenge(self, user: UserIdentity, kind: str) -> PendingChallenge:
        pending = getattr(user, kind)
        if pending is None:
            raise InvalidStateError("no pending challenge for user")

        if self.challenge_ttl and self._clock() - pending.issued_at > self.challenge_ttl:
            setattr(user, kind, None)
            self.directory.save(user)
            logger.warning("Discarded expired %s challenge for %s", kind, user.name)
            raise ChallengeExpiredError("challenge expired; begin the ceremony again")
        return pending

    def _record_failure(self, user: UserIdentity, kind: str) -> None:
        pending = getattr(user, kind)
        pending.failed_attempts += 1
        if self.max_attempts and pending.failed_attempts >= self.max_attempts:
            setattr(user, kind, None)
            logger.warning(
                "Discarded %s challenge for %s after %d rejected responses",
                kind,
                user.name,
                pending.failed_attempts,
            )
        self.directory.save(user)

    def _issue(self, user: UserIdentity, kind: str, state: Mapping[str, Any]) -> None:
        setattr(user, kind, PendingChallenge(state=state, issued_at=self._clock()))
        self.directory.save(user)

    def register_begin(self, name: str, display_name: str) -> Dict[str, Any]:
        """Issue a registration challenge, creating the user on first use."""

        with self.directory.lock(name):
            try:
                user = self.directory.get(name)
            except UserNotFoundError:
                user = UserIdentity.create(name, display_name)
                logger.info("Created user %s", name)
            else:
                # Re-registration keeps the handle and the enrolled credentials.
                if display_name:
                    user.display_name = display_name

            options, state = self._call_engine(self.engine.begin_registration, user)
            self._issue(user, _REGISTRATION, state)
        return options

    def register_finish(self, name: str, response: Mapping[str, Any]) -> CredentialRecord:
        """Verify an attestation response and enroll the resulting credential."""

        with self.directory.lock(name):
            user = self.directory.get(name)
            pending = self._active_challenge(user, _REGISTRATION)
            try:
                credential = self._call_engine(
                    self.engine.finish_registration, user, pending.state, response
                )
            except CeremonyError as exc:
                logger.warning("Rejected registration response for %s: %s", name, exc)
                self._record_failure(user, _REGISTRATION)
                raise

            user.credentials.append(credential)
            user.pending_registration = None
            self.directory.save(user)

        logger.info("Registered a new credential for %s", name)
        return credential

    def login_begin(self, name: str) -> Dict[str, Any]:
        """Issue an authentication challenge for an existing user."""

        with self.directory.lock(name):
            user = self.directory.get(name)
            options, state = self._call_engine(self.engine.begin_login, user)
            self._issue(user, _LOGIN, state)
        return options

    def login_finish(self, name: str, response: Mapping[str, Any]) -> CredentialRecord:
        """Verify an assertion response against the pending login challenge."""

        with self.directory.lock(name):
            user = self.directory.get(name)
            pending = self._active_challenge(user, _LOGIN)
            try:
                credential = self._call_engine(
                    self.engine.finish_login, user, pending.state, response
                )
            except CeremonyError as exc:
                logger.warning("Rejected login response for %s: %s", name, exc)
                self._record_failure(user, _LOGIN)
                raise

            _merge_credential(user.credentials, credential)
            user.pending_login = None
            self.directory.save(user)

        logger.info("Authenticated %s", name)
        return credential
