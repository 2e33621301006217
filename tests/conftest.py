import hashlib
import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

ROOT = Path(__file__).resolve().parents[1]
for candidate in (ROOT, ROOT / "server"):
    if str(candidate) not in sys.path:
        sys.path.insert(0, str(candidate))

from fido2.cose import ES256  # noqa: E402
from fido2.utils import websafe_encode  # noqa: E402
from fido2.webauthn import (  # noqa: E402
    AttestationObject,
    AttestedCredentialData,
    AuthenticatorData,
    CollectedClientData,
)

from webauthn_gateway.app import create_app  # noqa: E402
from webauthn_gateway.ceremony import CredentialRecord  # noqa: E402
from webauthn_gateway.errors import CeremonyError  # noqa: E402
from webauthn_gateway.orchestrator import CeremonyOrchestrator  # noqa: E402
from webauthn_gateway.storage import InMemoryUserDirectory  # noqa: E402

RP_ID = "localhost"
ORIGIN = "http://localhost:8000"

TEST_SETTINGS = {
    "FIDO_SERVER_RP_ID": RP_ID,
    "FIDO_SERVER_RP_NAME": "Test RP",
    "FIDO_SERVER_RP_ORIGINS": [ORIGIN],
    "WEBAUTHN_STORAGE_PATH": None,
    "WEBAUTHN_CHALLENGE_TTL": 300.0,
    "WEBAUTHN_MAX_FINISH_ATTEMPTS": 3,
    "WEBAUTHN_ENGINE_TIMEOUT": 0,
    "WEBAUTHN_USER_VERIFICATION": "discouraged",
    "TESTING": True,
}


class SoftAuthenticator:
    """ES256 authenticator producing WebAuthn JSON responses with "none" attestation."""

    def __init__(self, rp_id=RP_ID, origin=ORIGIN):
        self.rp_id_hash = hashlib.sha256(rp_id.encode("utf-8")).digest()
        self.origin = origin
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = os.urandom(32)
        self.counter = 0

    def _credential(self, response):
        encoded_id = websafe_encode(self.credential_id)
        return {
            "id": encoded_id,
            "rawId": encoded_id,
            "type": "public-key",
            "response": response,
            "clientExtensionResults": {},
        }

    def attest(self, options, origin=None):
        challenge = options["publicKey"]["challenge"]
        client_data = CollectedClientData.create(
            CollectedClientData.TYPE.CREATE, challenge, origin or self.origin
        )
        credential_data = AttestedCredentialData.create(
            bytes(16),
            self.credential_id,
            ES256.from_cryptography_key(self.private_key.public_key()),
        )
        auth_data = AuthenticatorData.create(
            self.rp_id_hash,
            AuthenticatorData.FLAG.UP | AuthenticatorData.FLAG.AT,
            counter=self.counter,
            credential_data=credential_data,
        )
        attestation_object = AttestationObject.create("none", auth_data, {})
        return self._credential(
            {
                "clientDataJSON": websafe_encode(bytes(client_data)),
                "attestationObject": websafe_encode(bytes(attestation_object)),
            }
        )

    def assert_(self, options, counter=None):
        if counter is None:
            self.counter += 1
            counter = self.counter
        challenge = options["publicKey"]["challenge"]
        client_data = CollectedClientData.create(
            CollectedClientData.TYPE.GET, challenge, self.origin
        )
        auth_data = AuthenticatorData.create(
            self.rp_id_hash, AuthenticatorData.FLAG.UP, counter=counter
        )
        signature = self.private_key.sign(
            bytes(auth_data) + client_data.hash, ec.ECDSA(hashes.SHA256())
        )
        return self._credential(
            {
                "clientDataJSON": websafe_encode(bytes(client_data)),
                "authenticatorData": websafe_encode(bytes(auth_data)),
                "signature": websafe_encode(signature),
            }
        )


class FakeEngine:
    """Deterministic ceremony engine: a response must echo the issued challenge."""

    def __init__(self):
        self.issued = 0
        self.calls = []

    def _issue(self, kind):
        self.issued += 1
        challenge = f"{kind}-{self.issued}"
        return {"publicKey": {"challenge": challenge}}, {"challenge": challenge}

    def _check(self, state, response):
        if response.get("challenge") != state["challenge"]:
            raise CeremonyError("Wrong challenge in response.")

    def begin_registration(self, identity):
        self.calls.append(("begin_registration", identity.name))
        return self._issue("registration")

    def finish_registration(self, identity, state, response):
        self.calls.append(("finish_registration", identity.name))
        self._check(state, response)
        credential_data = SimpleNamespace(credential_id=response["credentialId"])
        return CredentialRecord(credential_data, sign_count=0)

    def begin_login(self, identity):
        self.calls.append(("begin_login", identity.name))
        if not identity.credentials:
            raise CeremonyError("found no credentials for user")
        return self._issue("login")

    def finish_login(self, identity, state, response):
        self.calls.append(("finish_login", identity.name))
        self._check(state, response)
        for record in identity.credentials:
            if record.credential_id == response["credentialId"]:
                return CredentialRecord(
                    record.credential_data,
                    sign_count=response.get("signCount", record.sign_count + 1),
                    created_at=record.created_at,
                    last_used_at=1.0,
                )
        raise CeremonyError("Unknown credential ID.")


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def directory():
    return InMemoryUserDirectory()


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orchestrator(directory, fake_engine, clock):
    instance = CeremonyOrchestrator(
        directory,
        fake_engine,
        challenge_ttl=300,
        max_attempts=3,
        engine_timeout=None,
        clock=clock,
    )
    yield instance
    instance.close()


@pytest.fixture
def authenticator():
    return SoftAuthenticator()


@pytest.fixture
def app():
    application = create_app(TEST_SETTINGS)
    yield application
    application.extensions["webauthn_gateway"].close()


@pytest.fixture
def client(app):
    with app.test_client() as test_client:
        yield test_client
